"""EQUI8-style neutral current compensator.

Closed-form empirical model of a shunt device that absorbs part of the
neutral current at a node of a 4-wire network and rebalances its phase
voltages:

  Umoy      = mean(U_A, U_B, U_C)
  dU_init   = max(U) − min(U)
  ratio_i   = (U_i − Umoy) / dU_init
  k         = 2·Zph / (Zph + Zn)
  dU_EQUI8  = dU_init · k / (0.9119·ln(Zph) + 3.8654)
  I_EQUI8   = 0.392 · Zph^−0.8065 · dU_init · k
  U_EQUI8_i = Umoy + ratio_i · dU_EQUI8

The formulas are fitted for Zph, Zn >= 0.15 Ω; below that the result is
still computed and a precision warning is attached.

Apparent power S = 3 · Umoy · I_EQUI8. Above the device rating the device
is ``limited`` and the correction is re-scaled linearly by S_max / S.

Nodes downstream of the device get the same per-phase shift and an extra
drop I_EQUI8 · Σ|Z1| along the path from the device (single pass, the
flow is not re-solved).
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from lvflow.network.results import NodeVoltage, PhaseValues

MIN_IMPEDANCE_OHM: float = 0.15
NEGLIGIBLE_SPREAD_V: float = 0.01

_LOG_SLOPE = 0.9119
_LOG_OFFSET = 3.8654
_CURRENT_COEFF = 0.392
_CURRENT_EXPONENT = -0.8065


class CompensatorStatus(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"          # below threshold, no correction
    INACTIVE = "inactive"  # not applicable (missing node, 3-wire, balanced model)
    LIMITED = "limited"


@dataclass(frozen=True)
class Equi8Computation:
    """Raw output of the closed-form model."""
    initial_v: tuple[float, float, float]
    corrected_v: tuple[float, float, float]
    mean_v: float
    spread_init_v: float
    spread_equi8_v: float
    ratios: tuple[float, float, float]
    current_a: float
    warning: str | None = None


def compute_equi8(
    voltages_v: tuple[float, float, float],
    zph_ohm: float,
    zn_ohm: float,
    min_impedance_ohm: float = MIN_IMPEDANCE_OHM,
) -> Equi8Computation:
    """Apply the EQUI8 formulas to three phase-to-neutral voltages.

    Raises:
        ValueError: if an impedance is not strictly positive.
    """
    if zph_ohm <= 0 or zn_ohm <= 0:
        raise ValueError(f"EQUI8 impedances must be positive (Zph={zph_ohm}, Zn={zn_ohm})")

    warning = None
    if zph_ohm < min_impedance_ohm or zn_ohm < min_impedance_ohm:
        warning = (
            f"Zph={zph_ohm:.3f} Ω / Zn={zn_ohm:.3f} Ω outside the validity domain "
            f"(>= {min_impedance_ohm} Ω), reduced precision"
        )

    mean = sum(voltages_v) / 3.0
    spread = max(voltages_v) - min(voltages_v)
    if spread < NEGLIGIBLE_SPREAD_V:
        return Equi8Computation(
            initial_v=tuple(voltages_v),
            corrected_v=tuple(voltages_v),
            mean_v=mean,
            spread_init_v=spread,
            spread_equi8_v=spread,
            ratios=(0.0, 0.0, 0.0),
            current_a=0.0,
            warning=warning,
        )

    k = 2 * zph_ohm / (zph_ohm + zn_ohm)
    spread_equi8 = spread * k / (_LOG_SLOPE * math.log(zph_ohm) + _LOG_OFFSET)
    current = _CURRENT_COEFF * zph_ohm ** _CURRENT_EXPONENT * spread * k
    ratios = tuple((v - mean) / spread for v in voltages_v)
    corrected = tuple(mean + r * spread_equi8 for r in ratios)

    return Equi8Computation(
        initial_v=tuple(voltages_v),
        corrected_v=corrected,
        mean_v=mean,
        spread_init_v=spread,
        spread_equi8_v=spread_equi8,
        ratios=ratios,
        current_a=current,
        warning=warning,
    )


@dataclass
class CompensatorResult:
    """Outcome of one compensation pass for a device."""
    compensator_id: str
    node_id: str
    status: CompensatorStatus
    initial_voltages_v: PhaseValues | None = None
    corrected_voltages_v: PhaseValues | None = None
    neutral_current_initial_a: float = 0.0
    neutral_current_after_a: float = 0.0
    compensator_current_a: float = 0.0
    reduction_pct: float = 0.0
    compensation_kva: float = 0.0
    limited: bool = False
    warning: str | None = None
    reason: str | None = None
    affected_node_ids: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "compensator_id": self.compensator_id,
            "node_id": self.node_id,
            "status": self.status.value,
            "initial_voltages_v": None if self.initial_voltages_v is None else self.initial_voltages_v.to_dict(3),
            "corrected_voltages_v": (
                None if self.corrected_voltages_v is None else self.corrected_voltages_v.to_dict(3)
            ),
            "neutral_current_initial_a": round(self.neutral_current_initial_a, 3),
            "neutral_current_after_a": round(self.neutral_current_after_a, 3),
            "compensator_current_a": round(self.compensator_current_a, 3),
            "reduction_pct": round(self.reduction_pct, 2),
            "compensation_kva": round(self.compensation_kva, 3),
            "limited": self.limited,
            "warning": self.warning,
            "reason": self.reason,
            "affected_node_ids": list(self.affected_node_ids),
        }


@dataclass
class NeutralCompensatorConfig:
    """EQUI8 device attached to a node.

    ``apply_to_flow`` False reports the correction without modifying the
    node voltages of the result.
    """
    id: str
    node_id: str
    enabled: bool = True
    name: str = ""
    max_power_kva: float = 50.0
    tolerance_a: float = 5.0
    zph_ohm: float = 0.5
    zn_ohm: float = 0.2
    min_impedance_ohm: float = MIN_IMPEDANCE_OHM
    apply_to_flow: bool = True
    result: CompensatorResult | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.max_power_kva <= 0:
            raise ValueError(f"Compensator {self.id}: max power must be positive")
        if self.tolerance_a < 0:
            raise ValueError(f"Compensator {self.id}: tolerance must be non-negative")
        if self.zph_ohm <= 0 or self.zn_ohm <= 0:
            raise ValueError(f"Compensator {self.id}: impedances must be positive")


def compensate(
    config: NeutralCompensatorConfig,
    voltages_v: tuple[float, float, float],
    neutral_current_a: float,
) -> tuple[CompensatorResult, Equi8Computation | None]:
    """Run the device on one node state (no propagation)."""
    initial = PhaseValues(*voltages_v)
    spread = max(voltages_v) - min(voltages_v)

    if neutral_current_a <= config.tolerance_a or spread < NEGLIGIBLE_SPREAD_V:
        return CompensatorResult(
            compensator_id=config.id,
            node_id=config.node_id,
            status=CompensatorStatus.IDLE,
            initial_voltages_v=initial,
            corrected_voltages_v=initial,
            neutral_current_initial_a=neutral_current_a,
            neutral_current_after_a=neutral_current_a,
            reason="below activation threshold",
        ), None

    computation = compute_equi8(voltages_v, config.zph_ohm, config.zn_ohm, config.min_impedance_ohm)
    current = computation.current_a
    corrected = computation.corrected_v
    s_kva = 3 * computation.mean_v * current / 1000.0

    limited = s_kva > config.max_power_kva
    status = CompensatorStatus.ACTIVE
    if limited:
        factor = config.max_power_kva / s_kva
        current *= factor
        corrected = tuple(u0 + (u1 - u0) * factor for u0, u1 in zip(voltages_v, corrected))
        s_kva = config.max_power_kva
        status = CompensatorStatus.LIMITED

    after = max(neutral_current_a - current, 0.0)
    reduction = (neutral_current_a - after) / neutral_current_a * 100.0

    return CompensatorResult(
        compensator_id=config.id,
        node_id=config.node_id,
        status=status,
        initial_voltages_v=initial,
        corrected_voltages_v=PhaseValues(*corrected),
        neutral_current_initial_a=neutral_current_a,
        neutral_current_after_a=after,
        compensator_current_a=current,
        reduction_pct=reduction,
        compensation_kva=s_kva,
        limited=limited,
        warning=computation.warning,
    ), computation


def shift_node_voltage(node: NodeVoltage, deltas_v: tuple[float, float, float]) -> NodeVoltage:
    """Return ``node`` with each phase magnitude moved by ``deltas_v`` (angles kept)."""
    old = node.voltages_v.as_tuple()
    new = tuple(max(v + d, 0.0) for v, d in zip(old, deltas_v))
    phasors = tuple(
        p * (n / o) if o > 0 else p
        for p, o, n in zip(node.phasors, old, new)
    )
    inputs = node.input_voltages_v.as_tuple()
    return replace(
        node,
        voltages_v=PhaseValues(*new),
        input_voltages_v=PhaseValues(*(max(v + d, 0.0) for v, d in zip(inputs, deltas_v))),
        phasors=phasors,
    )


def propagate_downstream(
    nodes: dict[str, NodeVoltage],
    device_node_id: str,
    shifts_v: tuple[float, float, float],
    compensator_current_a: float,
    path_impedance_ohm: dict[str, float],
) -> dict[str, NodeVoltage]:
    """Apply the device correction to its node and every node below it.

    Args:
        nodes: node voltages of the result being corrected
        device_node_id: node carrying the compensator
        shifts_v: per-phase correction at the device node
        compensator_current_a: current absorbed by the device
        path_impedance_ohm: Σ|Z1| from the device node to each downstream node
    """
    updated = dict(nodes)
    updated[device_node_id] = shift_node_voltage(nodes[device_node_id], shifts_v)
    for nid, z_path in path_impedance_ohm.items():
        extra = compensator_current_a * z_path
        updated[nid] = shift_node_voltage(nodes[nid], tuple(s - extra for s in shifts_v))
    return updated
