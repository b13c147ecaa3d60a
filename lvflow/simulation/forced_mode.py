"""Forced-mode calibration against field voltage measurements.

Two sub-procedures run in sequence on the measurement node:

1. Diversity calibration ("night" baseline): with productions switched off,
   find the global load diversity (0-150 %) whose computed mean phase
   voltage matches the target voltage. Uses ``scipy.optimize.brentq`` when
   the objective changes sign over the range; every evaluation is counted
   against a budget and the best (minimum error) evaluation is always
   reported, preferring solves whose phase flow converged.

2. Phase distribution fixed point: starting from a distribution seeded
   from the measured voltage pattern (higher voltage, less load and more
   production), recompute the network, compare the three phase voltages
   with the measurements and move load share away from phases computed too
   low. Production shares mirror the load correction. The step is damped
   and halved (restarting from the best distribution) whenever it fails to
   improve; the ``ConvergenceController`` bounds the loop.

Missing measurements (up to two) are estimated as
U_missing = U_nom + (U_nom − mean(supplied)).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from typing import Any

from scipy.optimize import brentq

from lvflow.diagnostics import NULL_DIAGNOSTICS, Diagnostics
from lvflow.errors import CalculationInputError
from lvflow.network.network_model import (
    ForcedModeConfig,
    LoadModel,
    PhaseDistribution,
    PhaseShares,
    Project,
    Scenario,
)
from lvflow.network.power_flow import ElectricalCalculator
from lvflow.network.results import CalculationResult
from lvflow.network.topology import resolve_topology
from lvflow.simulation.convergence import (
    ConvergenceController,
    ConvergenceStatus,
    IterationStep,
)

logger = logging.getLogger(__name__)

# ======================================================================
# Defaults
# ======================================================================

TOLERANCE_V: float = 0.5
MAX_ITERATIONS: int = 30
DIVERSITY_MIN_PCT: float = 0.0
DIVERSITY_MAX_PCT: float = 150.0
MAX_DIVERSITY_EVALUATIONS: int = 40
DIVERSITY_XTOL_PCT: float = 1e-3

INITIAL_GAIN: float = 0.4
SEED_SENSITIVITY: float = 10.0
# Share change per volt when the network shows almost no drop
FALLBACK_PCT_PER_VOLT: float = 2.0
MIN_DROP_V: float = 0.5


@dataclass
class DiversityCalibration:
    target_v: float
    diversity_pct: float
    achieved_v: float
    error_v: float
    evaluations: int
    converged: bool
    method: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_v": round(self.target_v, 3),
            "diversity_pct": round(self.diversity_pct, 4),
            "achieved_v": round(self.achieved_v, 3),
            "error_v": round(self.error_v, 4),
            "evaluations": self.evaluations,
            "converged": self.converged,
            "method": self.method,
        }


@dataclass
class ForcedModeResult:
    measurement_node_id: str
    measured_v: tuple[float, float, float]
    estimated_phases: tuple[str, ...]
    diversity: DiversityCalibration | None
    load_diversity_pct: float
    distribution: PhaseDistribution
    computed_v: tuple[float, float, float]
    iterations: int
    status: ConvergenceStatus
    reason: str
    history: list[float] = field(default_factory=list)

    @property
    def errors_v(self) -> tuple[float, float, float]:
        return tuple(m - c for m, c in zip(self.measured_v, self.computed_v))

    @property
    def max_error_v(self) -> float:
        return max(abs(e) for e in self.errors_v)

    def to_dict(self) -> dict[str, Any]:
        return {
            "measurement_node_id": self.measurement_node_id,
            "measured_v": [round(v, 3) for v in self.measured_v],
            "estimated_phases": list(self.estimated_phases),
            "diversity": None if self.diversity is None else self.diversity.to_dict(),
            "load_diversity_pct": round(self.load_diversity_pct, 4),
            "distribution": self.distribution.to_dict(),
            "computed_v": [round(v, 3) for v in self.computed_v],
            "errors_v": [round(e, 4) for e in self.errors_v],
            "iterations": self.iterations,
            "status": self.status.value,
            "reason": self.reason,
        }


def complete_measurements(
    measured: tuple[float | None, float | None, float | None],
    nominal_v: float,
) -> tuple[tuple[float, float, float], tuple[str, ...]]:
    """Fill missing phase voltages from the nominal voltage and the supplied average.

    Raises:
        CalculationInputError: if no phase voltage is supplied.
    """
    supplied = [v for v in measured if v is not None and math.isfinite(v) and v > 0]
    if not supplied:
        raise CalculationInputError("Forced mode needs at least one measured phase voltage")
    if len(supplied) == 3:
        return (measured[0], measured[1], measured[2]), ()

    avg = sum(supplied) / len(supplied)
    estimate = nominal_v + (nominal_v - avg)
    values = []
    estimated = []
    for phase, v in zip("ABC", measured):
        if v is None or not math.isfinite(v) or v <= 0:
            values.append(estimate)
            estimated.append(phase)
        else:
            values.append(v)
    logger.warning(
        "Missing measured voltage on phase(s) %s estimated at %.2f V (nominal %.2f V, supplied mean %.2f V)",
        ",".join(estimated), estimate, nominal_v, avg,
        extra={"event": "forced_mode.estimated_measurement"},
    )
    return (values[0], values[1], values[2]), tuple(estimated)


def seed_distribution(measured: tuple[float, float, float]) -> PhaseDistribution:
    """Distribution guess from the voltage pattern alone."""
    mean = sum(measured) / 3.0
    deltas = [(v - mean) / mean for v in measured]
    third = 100.0 / 3
    loads = PhaseShares.normalized(*(third * (1 - SEED_SENSITIVITY * d) for d in deltas))
    prods = PhaseShares.normalized(*(third * (1 + SEED_SENSITIVITY * d) for d in deltas))
    return PhaseDistribution(loads=loads, productions=prods)


@dataclass
class _DistributionState:
    distribution: PhaseDistribution
    gain: float


class ForcedModeCalibrator:
    """Runs diversity calibration then the phase distribution fixed point."""

    def __init__(
        self,
        calculator: ElectricalCalculator,
        tolerance_v: float = TOLERANCE_V,
        max_iterations: int = MAX_ITERATIONS,
        diversity_bounds: tuple[float, float] = (DIVERSITY_MIN_PCT, DIVERSITY_MAX_PCT),
        max_diversity_evaluations: int = MAX_DIVERSITY_EVALUATIONS,
        diagnostics: Diagnostics | None = None,
    ):
        if diversity_bounds[0] < 0 or diversity_bounds[1] <= diversity_bounds[0]:
            raise ValueError(f"Invalid diversity bounds {diversity_bounds}")
        if max_diversity_evaluations < 3:
            raise ValueError("max_diversity_evaluations must be at least 3")
        self.calculator = calculator
        self.tolerance_v = tolerance_v
        self.max_iterations = max_iterations
        self.diversity_bounds = diversity_bounds
        self.max_diversity_evaluations = max_diversity_evaluations
        self.diagnostics = diagnostics or NULL_DIAGNOSTICS

    # ------------------------------------------------------------------

    def calibrate(
        self,
        project: Project,
        config: ForcedModeConfig,
        load_diversity_pct: float | None = None,
    ) -> CalculationResult:
        """Full forced-mode run; the returned result carries the calibration.

        ``load_diversity_pct`` overrides the project diversity when no target
        voltage drives the diversity search.
        """
        tolerance = config.tolerance_v if config.tolerance_v is not None else self.tolerance_v
        node_id = config.measurement_node_id
        topology = resolve_topology(project.nodes, project.cables)
        if not topology.is_connected(node_id):
            raise CalculationInputError(
                f"Measurement node {node_id} is missing or not connected to the source"
            )

        nominal = project.voltage_system.nominal_display_v
        measured, estimated = complete_measurements(config.measured_voltages_v, nominal)

        diversity = None
        load_diversity = project.load_diversity_pct if load_diversity_pct is None else load_diversity_pct
        if config.target_voltage_v:
            diversity = self.calibrate_diversity(project, node_id, config.target_voltage_v, tolerance)
            load_diversity = diversity.diversity_pct

        report, best_result = self._converge_distribution(
            project, node_id, measured, load_diversity, tolerance,
        )
        best_state: _DistributionState = report.best.payload[1]
        computed = best_result.node(node_id).voltages_v.as_tuple()

        calibration = ForcedModeResult(
            measurement_node_id=node_id,
            measured_v=measured,
            estimated_phases=estimated,
            diversity=diversity,
            load_diversity_pct=load_diversity,
            distribution=best_state.distribution,
            computed_v=computed,
            iterations=report.iterations,
            status=report.status,
            reason=report.reason.value,
            history=report.history,
        )
        logger.info(
            "Forced mode %s after %d iterations (max error %.3f V, diversity %.2f%%)",
            report.status.value, report.iterations, calibration.max_error_v, load_diversity,
            extra={"event": "forced_mode.done", "scenario": Scenario.FORCED.value},
        )
        return replace(
            best_result,
            convergence_status=report.status.value,
            calibration=calibration,
        )

    # ------------------------------------------------------------------
    # Diversity calibration
    # ------------------------------------------------------------------

    def calibrate_diversity(
        self,
        project: Project,
        node_id: str,
        target_v: float,
        tolerance_v: float | None = None,
    ) -> DiversityCalibration:
        """Search the load diversity matching ``target_v`` with productions off."""
        tolerance = self.tolerance_v if tolerance_v is None else tolerance_v
        evaluations: list[tuple[float, float, float, bool]] = []  # (diversity, voltage, error, sweep converged)
        cache: dict[float, float] = {}

        def objective(diversity_pct: float) -> float:
            # brentq starts by evaluating both bounds again
            if diversity_pct in cache:
                return cache[diversity_pct]
            if len(evaluations) >= self.max_diversity_evaluations:
                raise RuntimeError("diversity evaluation budget exhausted")
            result = self.calculator.calculate_project(
                project, Scenario.WITHDRAWAL, load_diversity_pct=diversity_pct,
            )
            voltage = result.node(node_id).voltages_v.mean
            error = voltage - target_v
            evaluations.append((diversity_pct, voltage, error, result.sweep_converged))
            cache[diversity_pct] = error
            self.diagnostics.emit(
                "forced_mode.diversity_evaluation",
                diversity_pct=diversity_pct, voltage_v=voltage, error_v=error,
            )
            return error

        lo, hi = self.diversity_bounds
        f_lo = objective(lo)
        f_hi = objective(hi)
        method = "bounded"
        if f_lo == 0.0 or f_hi == 0.0:
            logger.info("Target %.2f V met exactly at a diversity bound", target_v)
        elif f_lo * f_hi < 0:
            method = "brentq"
            try:
                brentq(
                    objective, lo, hi,
                    xtol=DIVERSITY_XTOL_PCT,
                    maxiter=self.max_diversity_evaluations - 2,
                    full_output=True,
                    disp=False,
                )
            except (ValueError, RuntimeError) as exc:
                logger.info("Diversity search stopped early: %s", exc)
        else:
            logger.warning(
                "Target %.2f V not reachable within %.0f-%.0f%% diversity, using closest bound",
                target_v, lo, hi,
            )

        settled = [e for e in evaluations if e[3]] or evaluations
        best = min(settled, key=lambda e: abs(e[2]))
        return DiversityCalibration(
            target_v=target_v,
            diversity_pct=best[0],
            achieved_v=best[1],
            error_v=best[2],
            evaluations=len(evaluations),
            converged=abs(best[2]) <= tolerance,
            method=method,
        )

    # ------------------------------------------------------------------
    # Phase distribution fixed point
    # ------------------------------------------------------------------

    def _converge_distribution(
        self,
        project: Project,
        node_id: str,
        measured: tuple[float, float, float],
        load_diversity_pct: float,
        tolerance_v: float,
    ):
        scale = project.voltage_system.display_scale
        best: dict[str, Any] = {}

        def compute(distribution: PhaseDistribution) -> CalculationResult:
            return self.calculator.calculate_project(
                project,
                Scenario.FORCED,
                load_diversity_pct=load_diversity_pct,
                load_model=LoadModel.UNBALANCED,
                phase_distribution=distribution,
            )

        def next_distribution(
            distribution: PhaseDistribution,
            errors: tuple[float, ...],
            pct_per_volt: float,
            gain: float,
        ) -> PhaseDistribution:
            steps = [gain * pct_per_volt * e for e in errors]
            loads = distribution.loads
            prods = distribution.productions
            new_loads = PhaseShares.normalized(loads.a - steps[0], loads.b - steps[1], loads.c - steps[2])
            moved = (
                loads.a - new_loads.a,
                loads.b - new_loads.b,
                loads.c - new_loads.c,
            )
            new_prods = PhaseShares.normalized(prods.a + moved[0], prods.b + moved[1], prods.c + moved[2])
            return PhaseDistribution(loads=new_loads, productions=new_prods)

        def evaluate(state: _DistributionState, iteration: int) -> IterationStep:
            result = compute(state.distribution)
            computed = result.node(node_id).voltages_v.as_tuple()
            errors = tuple(m - c for m, c in zip(measured, computed))
            metric = max(abs(e) for e in errors) if result.sweep_converged else math.inf

            source_v = result.source_voltage_v / math.sqrt(3) * scale
            drop = source_v - sum(computed) / 3.0
            pct_per_volt = (100.0 / 3) / drop if drop > MIN_DROP_V else FALLBACK_PCT_PER_VOLT

            self.diagnostics.emit(
                "forced_mode.distribution",
                iteration=iteration,
                computed_v=computed,
                errors_v=errors,
                gain=state.gain,
                distribution=state.distribution.to_dict(),
            )

            if not best or metric < best["metric"]:
                best.update(
                    metric=metric, state=state, errors=errors,
                    pct_per_volt=pct_per_volt, result=result,
                )
                following = _DistributionState(
                    next_distribution(state.distribution, errors, pct_per_volt, state.gain),
                    state.gain,
                )
            else:
                # Step overshot: retry from the best distribution with half the gain
                gain = state.gain / 2
                following = _DistributionState(
                    next_distribution(best["state"].distribution, best["errors"], best["pct_per_volt"], gain),
                    gain,
                )
            return IterationStep(state=following, metric=metric, payload=(result, state))

        controller = ConvergenceController(
            max_iterations=self.max_iterations,
            tolerance=tolerance_v,
            patience=4,
            name="forced_mode",
            diagnostics=self.diagnostics,
        )
        initial = _DistributionState(seed_distribution(measured), INITIAL_GAIN)
        report = controller.run(initial, evaluate)
        best_result = report.best.payload[0]
        return report, best_result
