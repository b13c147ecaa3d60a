"""Cable upgrade advice from a calculation result.

Pure module: reads a ``CalculationResult`` and the project, returns
recommendation dicts. For every node whose voltage deviation exceeds the
warning threshold, the cables on its path from the source are candidates;
each candidate is proposed the next lower-R12 type of the same material
that fits the cable's installation method.
"""

from __future__ import annotations

from lvflow.network.cable_library import CablePose, CableType, filter_cable_types
from lvflow.network.grid_codes import NF_C_14_100, ComplianceProfile
from lvflow.network.network_model import Project
from lvflow.network.results import CalculationResult
from lvflow.network.topology import resolve_topology


def propose_cable_upgrades(
    result: CalculationResult,
    project: Project,
    profile: ComplianceProfile = NF_C_14_100,
) -> list[dict]:
    """Return upgrade recommendations for cables feeding out-of-limit nodes.

    Returns:
        list of dicts with level, code, message, suggestion, action
    """
    recommendations: list[dict] = []
    limits = profile.limits
    topology = resolve_topology(project.nodes, project.cables)
    cables = {c.id: c for c in project.cables}
    types = project.cable_type_map()

    offending = sorted(
        (nv for nv in result.nodes.values() if nv.voltage_drop_pct > limits.warning_pct),
        key=lambda nv: nv.voltage_drop_pct,
        reverse=True,
    )
    seen: set[str] = set()

    for nv in offending:
        level = "error" if nv.voltage_drop_pct > limits.critical_pct else "warning"
        for cable_id in topology.path_to_source(nv.node_id):
            if cable_id in seen:
                continue
            seen.add(cable_id)
            cable = cables[cable_id]
            current = types.get(cable.type_id)
            if current is None:
                continue

            upgrade = _best_upgrade(current, cable.pose, project.cable_types)
            if upgrade is None:
                recommendations.append({
                    "level": level,
                    "code": "NO_UPGRADE_AVAILABLE",
                    "message": (
                        f"Node '{nv.node_id}' deviation {nv.voltage_drop_pct:.1f}% "
                        f"(limit {limits.warning_pct:.0f}%), cable '{cable_id}' is already "
                        f"the lowest-resistance {current.material.value} type"
                    ),
                    "suggestion": "Split the feeder or add a voltage regulator",
                    "action": None,
                })
                continue

            recommendations.append({
                "level": level,
                "code": "VOLTAGE_DROP",
                "message": (
                    f"Node '{nv.node_id}' deviation {nv.voltage_drop_pct:.1f}% "
                    f"(limit {limits.warning_pct:.0f}%)"
                ),
                "suggestion": f"Upgrade cable '{cable_id}' from {current.label} to {upgrade.label}",
                "action": {
                    "type": "update_cable",
                    "target_id": cable_id,
                    "field": "type_id",
                    "old_value": current.id,
                    "new_value": upgrade.id,
                    "description": f"R12 {current.r12_ohm_per_km:.3f} -> {upgrade.r12_ohm_per_km:.3f} Ω/km",
                },
            })

    return recommendations


def _best_upgrade(current: CableType, pose: CablePose, library: list[CableType]) -> CableType | None:
    candidates = [
        ct for ct in filter_cable_types(
            material=current.material,
            pose=pose,
            max_r12_ohm_per_km=current.r12_ohm_per_km,
            library=library,
        )
        if ct.id != current.id
    ]
    if not candidates:
        return None
    # Smallest step up: the highest R12 still below the current one
    return max(candidates, key=lambda ct: ct.r12_ohm_per_km)
