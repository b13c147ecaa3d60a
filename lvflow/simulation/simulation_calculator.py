"""Equipment regulation orchestrator.

``SimulationCalculator`` extends the phase flow solver with the regulation
equipment of a project:

1. Baseline flow (or forced-mode calibration for the forced scenario).
2. SRG2 regulators: bounded fixed point through ``ConvergenceController``.
   Each pass solves the network with a fresh ratio side table, re-reads the
   regulator input voltages (upstream of the device, never its own output)
   and derives the next switch states. The loop stops when two consecutive
   passes differ by less than the tolerance. A pass whose phase flow did
   not converge never satisfies the tolerance.
3. EQUI8 compensators: applied once on the final node voltages, with the
   single-pass downstream propagation.

Misconfigured devices (unknown or disconnected node, source node, power
limit exceeded) are reported on their own result and never abort the
calculation.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace

from lvflow.diagnostics import Diagnostics
from lvflow.network.grid_codes import NF_C_14_100, ComplianceProfile
from lvflow.network.impedance import cable_impedance
from lvflow.network.network_model import (
    LoadModel,
    PhaseDistribution,
    Project,
    Scenario,
)
from lvflow.network.power_flow import (
    MAX_SWEEP_ITERATIONS,
    SWEEP_TOLERANCE_V,
    ElectricalCalculator,
)
from lvflow.network.results import CalculationResult, NodeVoltage
from lvflow.network.topology import NetworkTopology, resolve_topology
from lvflow.simulation.convergence import (
    ConvergenceController,
    ConvergenceReport,
    ConvergenceStatus,
    IterationStep,
)
from lvflow.simulation.forced_mode import ForcedModeCalibrator, ForcedModeResult
from lvflow.simulation.neutral_compensator import (
    MIN_IMPEDANCE_OHM,
    CompensatorResult,
    CompensatorStatus,
    NeutralCompensatorConfig,
    compensate,
    propagate_downstream,
)
from lvflow.simulation.voltage_regulator import (
    RegulatorResult,
    RegulatorState,
    RegulatorStatus,
    RegulatorType,
    VoltageRegulatorConfig,
    check_power_limits,
    compute_states,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SimulationSettings:
    """Tolerances and iteration ceilings of the regulation procedures."""
    regulation_tolerance_v: float = 0.5
    regulation_max_iterations: int = 10
    forced_tolerance_v: float = 0.5
    forced_max_iterations: int = 30
    diversity_min_pct: float = 0.0
    diversity_max_pct: float = 150.0
    diversity_max_evaluations: int = 40
    compensator_min_impedance_ohm: float = MIN_IMPEDANCE_OHM


@dataclass
class SimulationEquipment:
    regulators: list[VoltageRegulatorConfig] = field(default_factory=list)
    compensators: list[NeutralCompensatorConfig] = field(default_factory=list)


@dataclass(frozen=True)
class RegulationEntry:
    """Transient regulation state of one node for one pass."""
    regulator_id: str
    node_id: str
    states: tuple[RegulatorState, RegulatorState, RegulatorState]
    ratios: tuple[float, float, float]


@dataclass(frozen=True)
class RegulationPass:
    """Side table of regulated nodes, created fresh for every pass."""
    entries: tuple[RegulationEntry, ...] = ()

    def ratio_table(self) -> dict[str, tuple[float, float, float]]:
        return {e.node_id: e.ratios for e in self.entries}

    def states_of(self, node_id: str) -> tuple[RegulatorState, ...] | None:
        for e in self.entries:
            if e.node_id == node_id:
                return e.states
        return None

    def signature(self) -> tuple:
        return tuple((e.node_id, tuple(s.value for s in e.states)) for e in self.entries)


@dataclass
class _FlowInputs:
    """Scenario overrides shared by every pass of one calculation."""
    scenario: Scenario
    load_diversity_pct: float
    production_diversity_pct: float
    load_model: LoadModel
    phase_distribution: PhaseDistribution | None


class SimulationCalculator(ElectricalCalculator):
    """Phase flow solver with SRG2 regulators, EQUI8 compensators and forced mode."""

    def __init__(
        self,
        max_iterations: int = MAX_SWEEP_ITERATIONS,
        tolerance_v: float = SWEEP_TOLERANCE_V,
        compliance: ComplianceProfile = NF_C_14_100,
        diagnostics: Diagnostics | None = None,
        settings: SimulationSettings | None = None,
    ):
        super().__init__(max_iterations, tolerance_v, compliance, diagnostics)
        self.settings = settings or SimulationSettings()

    def calculate_with_simulation(
        self,
        project: Project,
        scenario: Scenario,
        equipment: SimulationEquipment | None = None,
        load_diversity_pct: float | None = None,
        production_diversity_pct: float | None = None,
    ) -> CalculationResult:
        """Compute ``scenario`` with every enabled device of ``equipment``.

        The ``result`` attribute of each device config is replaced by this
        call. Raises ``InvalidTopologyError`` on structural errors and
        ``CalculationInputError`` on unusable forced-mode measurements.
        """
        equipment = equipment or SimulationEquipment()
        topology = resolve_topology(project.nodes, project.cables)

        flow = _FlowInputs(
            scenario=scenario,
            load_diversity_pct=project.load_diversity_pct if load_diversity_pct is None else load_diversity_pct,
            production_diversity_pct=(
                project.production_diversity_pct if production_diversity_pct is None
                else production_diversity_pct
            ),
            load_model=project.load_model,
            phase_distribution=project.phase_distribution,
        )

        calibration: ForcedModeResult | None = None
        if scenario is Scenario.FORCED and project.forced_mode is not None:
            calibrator = ForcedModeCalibrator(
                self,
                tolerance_v=self.settings.forced_tolerance_v,
                max_iterations=self.settings.forced_max_iterations,
                diversity_bounds=(self.settings.diversity_min_pct, self.settings.diversity_max_pct),
                max_diversity_evaluations=self.settings.diversity_max_evaluations,
                diagnostics=self.diagnostics,
            )
            baseline = calibrator.calibrate(project, project.forced_mode, load_diversity_pct)
            calibration = baseline.calibration
            flow.load_diversity_pct = calibration.load_diversity_pct
            flow.load_model = LoadModel.UNBALANCED
            flow.phase_distribution = calibration.distribution
        else:
            if scenario is Scenario.FORCED:
                logger.warning(
                    "Forced scenario without measurement configuration, computing with project diversity",
                    extra={"scenario": scenario.value},
                )
            baseline = self._solve(project, flow, None)

        result, regulation_status = self._run_regulators(project, topology, flow, baseline, equipment.regulators)
        result = self._run_compensators(project, topology, result, equipment.compensators)

        statuses = [
            s for s in (
                regulation_status,
                calibration.status.value if calibration is not None else None,
                None if result.sweep_converged else ConvergenceStatus.NOT_CONVERGED.value,
            ) if s is not None
        ]
        convergence_status = None
        if statuses:
            convergence_status = (
                ConvergenceStatus.CONVERGED.value
                if all(s == ConvergenceStatus.CONVERGED.value for s in statuses)
                else ConvergenceStatus.NOT_CONVERGED.value
            )

        return replace(
            result,
            convergence_status=convergence_status,
            calibration=calibration,
            equipment={
                "regulators": [r.result.to_dict() for r in equipment.regulators if r.result is not None],
                "compensators": [c.result.to_dict() for c in equipment.compensators if c.result is not None],
            },
        )

    # ------------------------------------------------------------------
    # Flow
    # ------------------------------------------------------------------

    def _solve(
        self,
        project: Project,
        flow: _FlowInputs,
        regulation: RegulationPass | None,
    ) -> CalculationResult:
        return self.calculate_project(
            project,
            flow.scenario,
            load_diversity_pct=flow.load_diversity_pct,
            production_diversity_pct=flow.production_diversity_pct,
            load_model=flow.load_model,
            phase_distribution=flow.phase_distribution,
            regulation=regulation.ratio_table() if regulation is not None else None,
        )

    @staticmethod
    def _path_impedance(project: Project, topology: NetworkTopology, cable_ids: list[str]) -> float:
        types = project.cable_type_map()
        cables = {c.id: c for c in project.cables}
        return sum(
            abs(cable_impedance(types[cables[cid].type_id], cables[cid].length_m))
            for cid in cable_ids
        )

    # ------------------------------------------------------------------
    # Regulators
    # ------------------------------------------------------------------

    def _eligible_regulators(
        self,
        project: Project,
        topology: NetworkTopology,
        flow: _FlowInputs,
        regulators: list[VoltageRegulatorConfig],
    ) -> list[tuple[VoltageRegulatorConfig, float]]:
        """Set the result of devices that cannot regulate; return the others with their path impedance."""
        eligible: list[tuple[VoltageRegulatorConfig, float]] = []
        claimed: set[str] = set()
        load_factor = flow.load_diversity_pct / 100.0 if flow.scenario.includes_loads else 0.0
        prod_factor = flow.production_diversity_pct / 100.0 if flow.scenario.includes_productions else 0.0
        expected_type = RegulatorType.for_voltage_system(project.voltage_system)

        for config in regulators:
            reason = None
            if not config.enabled:
                reason = "disabled"
            elif project.node(config.node_id) is None:
                reason = f"node {config.node_id} does not exist"
            elif not topology.is_connected(config.node_id):
                reason = f"node {config.node_id} is not connected to the source"
            elif config.node_id == topology.source_id:
                reason = "a regulator cannot be placed on the source node"
            elif config.node_id in claimed:
                reason = f"node {config.node_id} already carries a regulator"

            if reason is not None:
                config.result = RegulatorResult(
                    regulator_id=config.id,
                    node_id=config.node_id,
                    status=RegulatorStatus.INACTIVE,
                    reason=reason,
                )
                self.diagnostics.emit("simulation.regulator_inactive", regulator_id=config.id, reason=reason)
                logger.info("Regulator %s inactive: %s", config.id, reason, extra={"node_id": config.node_id})
                continue

            if config.regulator_type is not expected_type:
                logger.warning(
                    "Regulator %s is %s on a %s network",
                    config.id, config.regulator_type.value, project.voltage_system.value,
                    extra={"node_id": config.node_id},
                )

            claimed.add(config.node_id)
            path_z = self._path_impedance(project, topology, topology.path_to_source(config.node_id))
            subtree = topology.downstream_nodes(config.node_id, include_self=True)
            load_kva = sum(project.node(nid).load_kva for nid in subtree) * load_factor
            prod_kva = sum(project.node(nid).production_kva for nid in subtree) * prod_factor

            limit = check_power_limits(config, load_kva, prod_kva)
            if limit is not None:
                config.result = RegulatorResult(
                    regulator_id=config.id,
                    node_id=config.node_id,
                    status=RegulatorStatus.LIMITED,
                    downstream_load_kva=load_kva,
                    downstream_production_kva=prod_kva,
                    path_impedance_ohm=path_z,
                    limited=True,
                    reason=limit,
                )
                self.diagnostics.emit("simulation.regulator_limited", regulator_id=config.id, reason=limit)
                logger.warning("Regulator %s limited: %s", config.id, limit, extra={"node_id": config.node_id})
                continue

            config.result = RegulatorResult(
                regulator_id=config.id,
                node_id=config.node_id,
                status=RegulatorStatus.ACTIVE,
                downstream_load_kva=load_kva,
                downstream_production_kva=prod_kva,
                path_impedance_ohm=path_z,
            )
            eligible.append((config, path_z))
        return eligible

    @staticmethod
    def _next_pass(
        active: list[VoltageRegulatorConfig],
        result: CalculationResult,
        previous: RegulationPass | None,
    ) -> RegulationPass:
        entries = []
        for config in active:
            inputs = result.node(config.node_id).input_voltages_v.as_tuple()
            prev_states = previous.states_of(config.node_id) if previous is not None else None
            states = compute_states(config, inputs, prev_states)
            entries.append(RegulationEntry(
                regulator_id=config.id,
                node_id=config.node_id,
                states=states,
                ratios=tuple(config.ratio(s) for s in states),
            ))
        return RegulationPass(tuple(entries))

    def _run_regulators(
        self,
        project: Project,
        topology: NetworkTopology,
        flow: _FlowInputs,
        baseline: CalculationResult,
        regulators: list[VoltageRegulatorConfig],
    ) -> tuple[CalculationResult, str | None]:
        if not regulators:
            return baseline, None
        eligible = self._eligible_regulators(project, topology, flow, regulators)
        if not eligible:
            return baseline, None
        active = [config for config, _ in eligible]

        previous: dict[str, CalculationResult] = {"result": baseline}

        def evaluate(regulation: RegulationPass, iteration: int) -> IterationStep:
            result = self._solve(project, flow, regulation)
            # States read from an unsettled sweep cannot count as a fixed point
            delta = _max_voltage_change(previous["result"], result) if result.sweep_converged else math.inf
            previous["result"] = result
            return IterationStep(
                state=self._next_pass(active, result, regulation),
                metric=delta,
                signature=regulation.signature(),
                payload=(result, regulation),
            )

        controller = ConvergenceController(
            max_iterations=self.settings.regulation_max_iterations,
            tolerance=self.settings.regulation_tolerance_v,
            patience=None,
            name="regulation",
            diagnostics=self.diagnostics,
        )
        report: ConvergenceReport = controller.run(self._next_pass(active, baseline, None), evaluate)
        result, regulation = report.last.payload

        for config in active:
            node = result.node(config.node_id)
            states = regulation.states_of(config.node_id)
            config.result = replace(
                config.result,
                states=states,
                ratios=tuple(config.ratio(s) for s in states),
                input_voltages_v=node.input_voltages_v,
                output_voltages_v=node.voltages_v,
                iterations=report.iterations,
                convergence_status=report.status.value,
            )
        logger.info(
            "Regulation %s after %d passes (%d active devices)",
            report.status.value, report.iterations, len(active),
            extra={"scenario": flow.scenario.value},
        )
        return result, report.status.value

    # ------------------------------------------------------------------
    # Compensators
    # ------------------------------------------------------------------

    def _run_compensators(
        self,
        project: Project,
        topology: NetworkTopology,
        result: CalculationResult,
        compensators: list[NeutralCompensatorConfig],
    ) -> CalculationResult:
        if not compensators:
            return result

        nodes = dict(result.nodes)
        applied = False
        incoming = {c.downstream_node_id: c for c in result.cables}

        for config in compensators:
            reason = None
            if not config.enabled:
                reason = "disabled"
            elif project.node(config.node_id) is None:
                reason = f"node {config.node_id} does not exist"
            elif not topology.is_connected(config.node_id) or config.node_id == topology.source_id:
                reason = f"node {config.node_id} has no feeding cable"
            elif not project.voltage_system.has_neutral:
                reason = "no neutral conductor on a 3-wire network"
            elif result.load_model is not LoadModel.UNBALANCED:
                reason = "balanced load model, no neutral current"

            if reason is not None:
                config.result = CompensatorResult(
                    compensator_id=config.id,
                    node_id=config.node_id,
                    status=CompensatorStatus.INACTIVE,
                    reason=reason,
                )
                self.diagnostics.emit("simulation.compensator_inactive", compensator_id=config.id, reason=reason)
                continue

            device = config
            if config.min_impedance_ohm == MIN_IMPEDANCE_OHM:
                device = replace(config, min_impedance_ohm=self.settings.compensator_min_impedance_ohm, result=None)

            neutral_a = incoming[config.node_id].neutral_current_a
            outcome, computation = compensate(device, nodes[config.node_id].voltages_v.as_tuple(), neutral_a)

            affected: tuple[str, ...] = ()
            if computation is not None and config.apply_to_flow:
                shifts = tuple(
                    c - i for c, i in zip(outcome.corrected_voltages_v.as_tuple(), outcome.initial_voltages_v.as_tuple())
                )
                downstream = topology.downstream_nodes(config.node_id)
                path_z = {
                    nid: self._path_impedance(project, topology, topology.path_between(config.node_id, nid))
                    for nid in downstream
                }
                nodes = propagate_downstream(nodes, config.node_id, shifts, outcome.compensator_current_a, path_z)
                affected = (config.node_id, *downstream)
                applied = True

            if outcome.warning:
                logger.warning("Compensator %s: %s", config.id, outcome.warning, extra={"node_id": config.node_id})
            outcome = replace(outcome, affected_node_ids=affected)
            self.diagnostics.emit(
                "simulation.compensator",
                compensator_id=config.id,
                status=outcome.status.value,
                current_a=outcome.compensator_current_a,
                reduction_pct=outcome.reduction_pct,
            )
            config.result = outcome

        if not applied:
            return result
        return self._refresh_voltage_metrics(result, nodes)

    def _refresh_voltage_metrics(
        self,
        result: CalculationResult,
        nodes: dict[str, NodeVoltage],
    ) -> CalculationResult:
        """Recompute the voltage aggregates after node voltages were corrected in place."""
        max_under = max_over = 0.0
        under_circuit = over_circuit = None
        for nv in nodes.values():
            if nv.undervoltage_pct > max_under:
                max_under, under_circuit = nv.undervoltage_pct, nv.circuit_number
            if nv.overvoltage_pct > max_over:
                max_over, over_circuit = nv.overvoltage_pct, nv.circuit_number
        if max_over > max_under:
            max_drop, max_circuit = max_over, over_circuit
        else:
            max_drop, max_circuit = max_under, under_circuit
        compliance = self.compliance.classify_network(
            [d for nv in nodes.values() for d in nv.deviations_pct.as_tuple()]
        )
        return replace(
            result,
            nodes=nodes,
            max_voltage_drop_pct=max_drop,
            max_voltage_drop_circuit=max_circuit,
            max_undervoltage_pct=max_under,
            max_overvoltage_pct=max_over,
            compliance=compliance,
        )


def _max_voltage_change(before: CalculationResult, after: CalculationResult) -> float:
    """Largest per-phase change of node output voltages between two passes."""
    delta = 0.0
    for nid, node in after.nodes.items():
        old = before.nodes.get(nid)
        if old is None:
            return math.inf
        for a, b in zip(old.voltages_v.as_tuple(), node.voltages_v.as_tuple()):
            delta = max(delta, abs(a - b))
    return delta

