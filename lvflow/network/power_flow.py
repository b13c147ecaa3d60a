"""Backward/forward sweep phase flow solver for radial LV networks.

Algorithm:
1. Resolve the radial tree from the source (structural errors raise
   ``InvalidTopologyError`` before any computation)
2. Net complex power per node and phase: diversified loads minus
   diversified productions at the project power factor, split across
   phases by the load model
3. Flat start: every node at the source voltage
4. Backward sweep: node currents I = conj(S / V), cable current = sum of
   the subtree currents (scaled by the regulation ratio of the node)
5. Forward sweep: busbar = source − Z_tr·I_root, then for each cable
   V_child = V_parent − Z1·I_phase − Z_N·I_N (Z_N only on 4-wire
   unbalanced networks), V_out = ratio × V_in on regulated nodes
6. Repeat until the largest voltage change is below tolerance

Balanced mode solves the positive-sequence phase A only and reports its
magnitude on the three phases, so phase results are exactly symmetric.
Unbalanced mode sweeps the three phasors (0°, −120°, +120°).

Voltages are internally star-equivalent phase voltages (U_line/√3).

3-wire networks are approximated: unbalanced loads stay star-connected per
phase with no return path, so each phase sees only its own series drop.
The residual sum of the phase currents is not carried by any conductor and
the reported neutral current is 0.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

import numpy as np

from lvflow.diagnostics import NULL_DIAGNOSTICS, Diagnostics
from lvflow.errors import InvalidTopologyError
from lvflow.network.busbar import build_virtual_busbar
from lvflow.network.cable_library import CableType
from lvflow.network.grid_codes import NF_C_14_100, ComplianceProfile
from lvflow.network.impedance import (
    cable_impedance,
    complex_power,
    neutral_coupling_impedance,
    transformer_impedance,
)
from lvflow.network.network_model import (
    Cable,
    LoadModel,
    Node,
    PhaseDistribution,
    PhaseShares,
    Project,
    Scenario,
    VoltageSystem,
)
from lvflow.network.phasor import ROTATION, three_phase
from lvflow.network.results import CableResult, CalculationResult, NodeVoltage, PhaseValues
from lvflow.network.topology import NetworkTopology, resolve_topology
from lvflow.network.transformer_model import TransformerConfig
from lvflow.network.voltage_reference import source_voltage

logger = logging.getLogger(__name__)

MAX_SWEEP_ITERATIONS: int = 100
SWEEP_TOLERANCE_V: float = 1e-4
# Node voltages below this fraction of nominal draw no current
MIN_VOLTAGE_FRACTION: float = 0.01

# Per-node per-phase regulation ratios, owned by the caller for one pass
RatioTable = Mapping[str, Sequence[float]]


@dataclass
class SweepState:
    """Converged (or last) state of one sweep."""
    v_in: dict[str, np.ndarray]
    v_out: dict[str, np.ndarray]
    node_currents: dict[str, np.ndarray]
    cable_currents: dict[str, np.ndarray]  # keyed by downstream node id
    busbar: np.ndarray
    root_current: np.ndarray
    converged: bool
    iterations: int
    max_delta_v: float


def unbalanced_shares(unbalance_pct: float) -> PhaseShares:
    """Load split from the unbalance percentage: A gets 1/3·(1+u), B and C 1/3·(1−u/2)."""
    u = unbalance_pct / 100.0
    return PhaseShares(100.0 / 3 * (1 + u), 100.0 / 3 * (1 - u / 2), 100.0 / 3 * (1 - u / 2))


class ElectricalCalculator:
    """Phase flow solver for one scenario at a time."""

    def __init__(
        self,
        max_iterations: int = MAX_SWEEP_ITERATIONS,
        tolerance_v: float = SWEEP_TOLERANCE_V,
        compliance: ComplianceProfile = NF_C_14_100,
        diagnostics: Diagnostics | None = None,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.max_iterations = max_iterations
        self.tolerance_v = tolerance_v
        self.compliance = compliance
        self.diagnostics = diagnostics or NULL_DIAGNOSTICS

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def calculate_project(
        self,
        project: Project,
        scenario: Scenario,
        load_diversity_pct: float | None = None,
        production_diversity_pct: float | None = None,
        load_model: LoadModel | None = None,
        phase_distribution: PhaseDistribution | None = None,
        regulation: RatioTable | None = None,
    ) -> CalculationResult:
        """Run ``calculate_scenario`` with the project settings, allowing overrides."""
        u_source, origin = source_voltage(project)
        logger.debug("Source voltage %.2f V (%s)", u_source, origin)
        return self.calculate_scenario(
            nodes=project.nodes,
            cables=project.cables,
            cable_types=project.cable_types,
            scenario=scenario,
            load_diversity_pct=project.load_diversity_pct if load_diversity_pct is None else load_diversity_pct,
            production_diversity_pct=(
                project.production_diversity_pct if production_diversity_pct is None
                else production_diversity_pct
            ),
            transformer=project.transformer,
            load_model=load_model or project.load_model,
            unbalance_pct=project.unbalance_pct,
            phase_distribution=phase_distribution or project.phase_distribution,
            voltage_system=project.voltage_system,
            cos_phi=project.cos_phi,
            source_voltage_v=u_source,
            regulation=regulation,
        )

    def calculate_scenario(
        self,
        nodes: list[Node],
        cables: list[Cable],
        cable_types: list[CableType],
        scenario: Scenario,
        load_diversity_pct: float = 100.0,
        production_diversity_pct: float = 100.0,
        transformer: TransformerConfig | None = None,
        load_model: LoadModel = LoadModel.BALANCED,
        unbalance_pct: float = 0.0,
        phase_distribution: PhaseDistribution | None = None,
        voltage_system: VoltageSystem = VoltageSystem.TETRAPHASE_400V,
        cos_phi: float = 0.95,
        source_voltage_v: float | None = None,
        regulation: RatioTable | None = None,
    ) -> CalculationResult:
        """Compute voltages, currents, losses and compliance for one scenario.

        Args:
            nodes, cables, cable_types: network description
            scenario: which injections are active
            load_diversity_pct, production_diversity_pct: diversity factors (%)
            transformer: source transformer, None for an ideal source
            load_model: balanced (positive sequence) or per-phase unbalanced
            unbalance_pct: load unbalance used when no manual distribution is given
            phase_distribution: manual per-phase split (per-node ones take precedence)
            voltage_system: 3-wire 230 V or 4-wire 230/400 V
            cos_phi: power factor of loads and productions
            source_voltage_v: source line voltage (defaults to transformer / system nominal)
            regulation: per-node per-phase voltage ratios for this pass

        Raises:
            InvalidTopologyError: no/several sources, unknown nodes or cable
                types, cycles.
        """
        if not 0 <= cos_phi <= 1:
            raise ValueError(f"cos phi must be within [0, 1], got {cos_phi}")

        topology = resolve_topology(nodes, cables)
        type_map = {ct.id: ct for ct in cable_types}
        cable_map = {c.id: c for c in cables}
        node_map = {n.id: n for n in nodes}

        for cable_id in topology.connected_cable_ids:
            if cable_map[cable_id].type_id not in type_map:
                raise InvalidTopologyError(
                    InvalidTopologyError.UNKNOWN_CABLE_TYPE,
                    f"Cable {cable_id} references unknown cable type {cable_map[cable_id].type_id}",
                    cable_id,
                )

        if source_voltage_v is None:
            source_voltage_v = transformer.nominal_voltage_v if transformer else voltage_system.line_voltage_v

        n_phases = 1 if load_model is LoadModel.BALANCED else 3
        with_neutral = voltage_system.has_neutral and n_phases == 3

        # Series impedances keyed by downstream node
        z1: dict[str, complex] = {}
        zn: dict[str, complex] = {}
        for nid in topology.order[1:]:
            cable = cable_map[topology.parent_cable[nid]]
            ctype = type_map[cable.type_id]
            z1[nid] = cable_impedance(ctype, cable.length_m)
            zn[nid] = neutral_coupling_impedance(ctype, cable.length_m) if with_neutral else 0j
        z_tr = transformer_impedance(transformer)

        injections, node_net_kva, totals = self._node_injections(
            topology, node_map, scenario, load_diversity_pct, production_diversity_pct,
            load_model, unbalance_pct, phase_distribution, cos_phi,
        )

        ratios = self._ratio_arrays(topology, regulation, n_phases)

        v_phase = source_voltage_v / math.sqrt(3)
        source_phasors = three_phase(v_phase)[:n_phases]
        state = self._sweep(topology, injections, z1, zn, z_tr, ratios, source_phasors, with_neutral)

        if not state.converged:
            logger.warning(
                "Phase flow did not converge after %d sweeps (max dV %.3g V)",
                state.iterations, state.max_delta_v,
                extra={"scenario": scenario.value},
            )
        self.diagnostics.emit(
            "power_flow.sweep",
            scenario=scenario.value,
            iterations=state.iterations,
            converged=state.converged,
            max_delta_v=state.max_delta_v,
        )

        return self._build_result(
            topology=topology,
            cable_map=cable_map,
            scenario=scenario,
            voltage_system=voltage_system,
            load_model=load_model,
            load_diversity_pct=load_diversity_pct,
            production_diversity_pct=production_diversity_pct,
            source_voltage_v=source_voltage_v,
            source_phasors=source_phasors,
            state=state,
            z1=z1,
            zn=zn,
            z_tr=z_tr,
            with_neutral=with_neutral,
            injections=injections,
            node_net_kva=node_net_kva,
            totals=totals,
        )

    # ------------------------------------------------------------------
    # Injections
    # ------------------------------------------------------------------

    def _node_injections(
        self,
        topology: NetworkTopology,
        node_map: dict[str, Node],
        scenario: Scenario,
        load_diversity_pct: float,
        production_diversity_pct: float,
        load_model: LoadModel,
        unbalance_pct: float,
        phase_distribution: PhaseDistribution | None,
        cos_phi: float,
    ) -> tuple[dict[str, np.ndarray], dict[str, float], dict[str, float]]:
        """Per-phase net complex power (VA) of every connected node.

        Returns (injections, net kVA per node, totals).
        """
        load_factor = load_diversity_pct / 100.0 if scenario.includes_loads else 0.0
        prod_factor = production_diversity_pct / 100.0 if scenario.includes_productions else 0.0

        default_load_shares = (
            phase_distribution.loads if phase_distribution is not None
            else unbalanced_shares(unbalance_pct)
        )
        default_prod_shares = (
            phase_distribution.productions if phase_distribution is not None
            else PhaseShares.equal()
        )

        injections: dict[str, np.ndarray] = {}
        net_kva: dict[str, float] = {}
        total_load = total_prod = 0.0

        for nid in topology.order:
            node = node_map[nid]
            load_kva = node.load_kva * load_factor
            prod_kva = node.production_kva * prod_factor
            total_load += load_kva
            total_prod += prod_kva
            net_kva[nid] = load_kva - prod_kva

            match load_model:
                case LoadModel.BALANCED:
                    s = complex_power(load_kva, cos_phi) - complex_power(prod_kva, cos_phi)
                    injections[nid] = np.array([s / 3.0], dtype=np.complex128)
                case LoadModel.UNBALANCED:
                    dist = node.phase_distribution
                    load_shares = dist.loads if dist is not None else default_load_shares
                    prod_shares = dist.productions if dist is not None else default_prod_shares
                    injections[nid] = np.array(
                        [
                            complex_power(load_kva * fl, cos_phi) - complex_power(prod_kva * fp, cos_phi)
                            for fl, fp in zip(load_shares.fractions(), prod_shares.fractions())
                        ],
                        dtype=np.complex128,
                    )

        totals = {
            "loads_kva": total_load,
            "productions_kva": total_prod,
            "load_kw": total_load * cos_phi,
            "production_kw": total_prod * cos_phi,
        }
        return injections, net_kva, totals

    @staticmethod
    def _ratio_arrays(
        topology: NetworkTopology,
        regulation: RatioTable | None,
        n_phases: int,
    ) -> dict[str, np.ndarray]:
        ratios: dict[str, np.ndarray] = {}
        for nid, values in (regulation or {}).items():
            if nid not in topology.parent or nid == topology.source_id:
                continue
            arr = np.asarray(values, dtype=np.float64)
            if arr.shape != (3,) or not np.all(np.isfinite(arr)) or np.any(arr <= 0):
                raise ValueError(f"Invalid regulation ratios for node {nid}: {values}")
            ratios[nid] = arr[:n_phases]
        return ratios

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def _sweep(
        self,
        topology: NetworkTopology,
        injections: dict[str, np.ndarray],
        z1: dict[str, complex],
        zn: dict[str, complex],
        z_tr: complex,
        ratios: dict[str, np.ndarray],
        source_phasors: np.ndarray,
        with_neutral: bool,
    ) -> SweepState:
        order = topology.order
        n_phases = source_phasors.size
        v_min = MIN_VOLTAGE_FRACTION * float(np.abs(source_phasors[0]))
        one = np.ones(n_phases)

        v_in = {nid: source_phasors.copy() for nid in order}
        v_out = {nid: source_phasors * ratios.get(nid, one) for nid in order}
        node_currents: dict[str, np.ndarray] = {}
        cable_currents: dict[str, np.ndarray] = {}
        busbar = source_phasors.copy()
        root_current = np.zeros(n_phases, dtype=np.complex128)

        converged = False
        max_delta = float("inf")
        iterations = 0

        for iterations in range(1, self.max_iterations + 1):
            # Backward: node currents then subtree sums from the leaves up
            for nid in order:
                v = v_out[nid]
                mag = np.abs(v)
                safe = np.where(mag < v_min, 1.0, v)
                current = np.conj(injections[nid] / safe)
                if np.any(mag < v_min):
                    current = np.where(mag < v_min, 0j, current)
                    self.diagnostics.emit("power_flow.degenerate_voltage", node_id=nid)
                node_currents[nid] = current

            downstream: dict[str, np.ndarray] = {}
            for nid in reversed(order):
                total = node_currents[nid].copy()
                for _, child in topology.children[nid]:
                    total += cable_currents[child]
                downstream[nid] = total
                if nid != topology.source_id:
                    cable_currents[nid] = ratios.get(nid, one) * total

            root_current = downstream[topology.source_id]

            # Forward: voltages from the source down
            new_in: dict[str, np.ndarray] = {}
            new_out: dict[str, np.ndarray] = {}
            busbar = source_phasors - z_tr * root_current
            new_in[topology.source_id] = busbar
            new_out[topology.source_id] = busbar
            for nid in order[1:]:
                i_phase = cable_currents[nid]
                drop = z1[nid] * i_phase
                if with_neutral:
                    drop = drop + zn[nid] * np.sum(i_phase)
                vin = new_out[topology.parent[nid]] - drop
                new_in[nid] = vin
                new_out[nid] = vin * ratios.get(nid, one)

            if not all(np.all(np.isfinite(v)) for v in new_out.values()):
                logger.warning("Non-finite voltages in sweep %d, keeping last finite state", iterations)
                converged = False
                break

            max_delta = max(float(np.max(np.abs(new_in[n] - v_in[n]))) for n in order)
            v_in, v_out = new_in, new_out
            if max_delta < self.tolerance_v:
                converged = True
                break

        return SweepState(
            v_in=v_in,
            v_out=v_out,
            node_currents=node_currents,
            cable_currents=cable_currents,
            busbar=busbar,
            root_current=root_current,
            converged=converged,
            iterations=iterations,
            max_delta_v=max_delta,
        )

    # ------------------------------------------------------------------
    # Result assembly
    # ------------------------------------------------------------------

    def _build_result(
        self,
        topology: NetworkTopology,
        cable_map: dict[str, Cable],
        scenario: Scenario,
        voltage_system: VoltageSystem,
        load_model: LoadModel,
        load_diversity_pct: float,
        production_diversity_pct: float,
        source_voltage_v: float,
        source_phasors: np.ndarray,
        state: SweepState,
        z1: dict[str, complex],
        zn: dict[str, complex],
        z_tr: complex,
        with_neutral: bool,
        injections: dict[str, np.ndarray],
        node_net_kva: dict[str, float],
        totals: dict[str, float],
    ) -> CalculationResult:
        scale = voltage_system.display_scale
        nominal = voltage_system.nominal_display_v
        balanced = source_phasors.size == 1

        def expand(values: np.ndarray) -> np.ndarray:
            # Balanced results carry phase A only
            return values[0] * ROTATION if balanced else values

        def magnitudes(values: np.ndarray) -> PhaseValues:
            if balanced:
                return PhaseValues.uniform(float(abs(values[0])))
            return PhaseValues(*(float(abs(v)) for v in values))

        def display(values: np.ndarray) -> PhaseValues:
            m = magnitudes(values)
            return PhaseValues(m.a * scale, m.b * scale, m.c * scale)

        node_voltages: dict[str, NodeVoltage] = {}
        for nid in topology.order:
            phasors = expand(state.v_out[nid]) * scale
            node_voltages[nid] = NodeVoltage(
                node_id=nid,
                circuit_number=topology.node_circuit.get(nid),
                voltages_v=display(state.v_out[nid]),
                input_voltages_v=display(state.v_in[nid]),
                phasors=(complex(phasors[0]), complex(phasors[1]), complex(phasors[2])),
                nominal_v=nominal,
            )

        cable_results: dict[str, CableResult] = {}
        head_currents: dict[str, float] = {}
        cable_losses_kw = 0.0
        for nid in topology.order[1:]:
            cable_id = topology.parent_cable[nid]
            parent = topology.parent[nid]
            currents = state.cable_currents[nid]
            current_mags = magnitudes(currents)
            i_sq = sum(x ** 2 for x in current_mags.as_tuple())
            neutral_a = abs(complex(np.sum(currents))) if with_neutral else 0.0
            losses = z1[nid].real * i_sq
            if with_neutral:
                losses += zn[nid].real * neutral_a ** 2
            losses_kw = losses / 1000.0
            cable_losses_kw += losses_kw

            up = display(state.v_out[parent])
            down = display(state.v_in[nid])
            drops = PhaseValues(up.a - down.a, up.b - down.b, up.c - down.c)

            s_va = np.sum(state.v_out[parent] * np.conj(currents))
            if balanced:
                s_va = 3 * s_va

            full_currents = expand(currents)
            result = CableResult(
                cable_id=cable_id,
                upstream_node_id=parent,
                downstream_node_id=nid,
                circuit_number=topology.node_circuit[nid],
                length_m=cable_map[cable_id].length_m,
                currents_a=current_mags,
                current_phasors=tuple(complex(c) for c in full_currents),
                neutral_current_a=neutral_a,
                voltage_drops_v=drops,
                losses_kw=losses_kw,
                apparent_power_kva=abs(complex(s_va)) / 1000.0,
            )
            cable_results[cable_id] = result
            if parent == topology.source_id:
                head_currents[cable_id] = current_mags.max

        root = expand(state.root_current)
        transformer_losses_kw = z_tr.real * float(np.sum(np.abs(root) ** 2)) / 1000.0
        source_power_kw = float(np.real(np.sum(expand(source_phasors) * np.conj(root)))) / 1000.0

        node_net_power_va = {
            nid: complex(np.sum(s) * (3 if balanced else 1)) for nid, s in injections.items()
        }

        busbar = build_virtual_busbar(
            topology=topology,
            voltage_system=voltage_system,
            source_phasors=expand(source_phasors),
            busbar_phasors=expand(state.busbar),
            root_currents=root,
            transformer_z=z_tr,
            include_neutral=with_neutral,
            node_net_kva=node_net_kva,
            node_net_power_va=node_net_power_va,
            head_currents_a=head_currents,
            node_voltages=node_voltages,
        )

        max_under = max_over = 0.0
        under_circuit = over_circuit = None
        for nid, nv in node_voltages.items():
            if nv.undervoltage_pct > max_under:
                max_under, under_circuit = nv.undervoltage_pct, nv.circuit_number
            if nv.overvoltage_pct > max_over:
                max_over, over_circuit = nv.overvoltage_pct, nv.circuit_number
        if max_over > max_under:
            max_drop, max_circuit = max_over, over_circuit
        else:
            max_drop, max_circuit = max_under, under_circuit

        compliance = self.compliance.classify_network(
            [d for nv in node_voltages.values() for d in nv.deviations_pct.as_tuple()]
        )

        ordered = tuple(cable_results[cid] for cid in topology.ordered_cable_ids())

        return CalculationResult(
            scenario=scenario,
            voltage_system=voltage_system,
            load_model=load_model,
            load_diversity_pct=load_diversity_pct,
            production_diversity_pct=production_diversity_pct,
            source_voltage_v=source_voltage_v,
            cables=ordered,
            nodes=node_voltages,
            total_loads_kva=totals["loads_kva"],
            total_productions_kva=totals["productions_kva"],
            load_power_kw=totals["load_kw"],
            production_power_kw=totals["production_kw"],
            global_losses_kw=cable_losses_kw,
            transformer_losses_kw=transformer_losses_kw,
            source_power_kw=source_power_kw,
            max_voltage_drop_pct=max_drop,
            max_voltage_drop_circuit=max_circuit,
            max_undervoltage_pct=max_under,
            max_overvoltage_pct=max_over,
            compliance=compliance,
            virtual_busbar=busbar,
            topology=topology.to_dict(),
            disconnected_node_ids=frozenset(topology.disconnected_node_ids),
            sweep_converged=state.converged,
            sweep_iterations=state.iterations,
        )
