"""Tests for lvflow.simulation.forced_mode: calibration against measured voltages."""

from __future__ import annotations

import logging

import pytest

from lvflow.diagnostics import Diagnostics
from lvflow.errors import CalculationInputError
from lvflow.network.network_model import ForcedModeConfig, Scenario
from lvflow.network.power_flow import ElectricalCalculator
from lvflow.simulation.convergence import ConvergenceStatus
from lvflow.simulation.forced_mode import (
    ForcedModeCalibrator,
    complete_measurements,
    seed_distribution,
)
from lvflow.simulation.simulation_calculator import SimulationCalculator, SimulationSettings

NOMINAL_400V = 400.0 / 3 ** 0.5


class RecordingCalculator(ElectricalCalculator):
    """Phase flow solver remembering the diversity of every solve."""

    def __init__(self):
        super().__init__()
        self.diversities: list[float | None] = []

    def calculate_project(self, project, scenario, load_diversity_pct=None, **kwargs):
        self.diversities.append(load_diversity_pct)
        return super().calculate_project(project, scenario, load_diversity_pct=load_diversity_pct, **kwargs)


# ======================================================================
# Measurement handling
# ======================================================================


class TestMeasurements:
    """Missing phases and the seed distribution."""

    def test_complete_set_unchanged(self):
        values, estimated = complete_measurements((231.0, 229.0, 227.0), NOMINAL_400V)
        assert values == (231.0, 229.0, 227.0)
        assert estimated == ()

    def test_missing_phase_estimated(self, caplog):
        with caplog.at_level(logging.WARNING, logger="lvflow.simulation.forced_mode"):
            values, estimated = complete_measurements((231.0, None, 227.0), NOMINAL_400V)
        # U_nom + (U_nom - 229)
        assert values[1] == pytest.approx(2 * NOMINAL_400V - 229.0)
        assert values[1] == pytest.approx(232.88, abs=1e-2)
        assert estimated == ("B",)
        assert "estimated" in caplog.text

    def test_two_missing_phases(self):
        values, estimated = complete_measurements((None, 225.0, None), 230.0)
        assert values == (235.0, 225.0, 235.0)
        assert estimated == ("A", "C")

    def test_nothing_supplied(self):
        with pytest.raises(CalculationInputError, match="at least one"):
            complete_measurements((None, None, None), NOMINAL_400V)

    def test_seed_follows_voltage_pattern(self):
        """The highest measured phase gets the least load and the most production."""
        seed = seed_distribution((231.0, 229.0, 227.0))
        assert seed.loads.a < seed.loads.b < seed.loads.c
        assert seed.productions.a > seed.productions.b > seed.productions.c
        assert seed.loads.a + seed.loads.b + seed.loads.c == pytest.approx(100.0)

    def test_seed_equal_for_flat_measurements(self):
        seed = seed_distribution((230.0, 230.0, 230.0))
        assert seed.loads.fractions() == pytest.approx((1 / 3, 1 / 3, 1 / 3))


# ======================================================================
# Diversity calibration
# ======================================================================


class TestDiversityCalibration:
    """Search of the global load diversity."""

    def test_root_found(self, forced_project):
        calibrator = ForcedModeCalibrator(SimulationCalculator())
        calibration = calibrator.calibrate_diversity(forced_project, "n2", 229.0)
        assert calibration.method == "brentq"
        assert calibration.converged
        assert abs(calibration.error_v) <= 0.5
        assert 0.0 < calibration.diversity_pct < 150.0
        assert calibration.evaluations <= 40

    def test_budget_respected(self, forced_project):
        calibrator = ForcedModeCalibrator(SimulationCalculator(), max_diversity_evaluations=3)
        calibration = calibrator.calibrate_diversity(forced_project, "n2", 229.0, tolerance_v=1e-6)
        assert calibration.evaluations == 3
        assert calibration.method == "brentq"
        assert not calibration.converged, "One interior evaluation cannot reach a micro-volt tolerance"

    def test_bounds_not_evaluated_twice(self, forced_project):
        calc = RecordingCalculator()
        calibration = ForcedModeCalibrator(calc).calibrate_diversity(forced_project, "n2", 229.0)
        assert calibration.method == "brentq"
        assert len(calc.diversities) == calibration.evaluations
        assert len(set(calc.diversities)) == len(calc.diversities), f"Repeated solves {calc.diversities}"

    def test_target_met_at_bound(self, forced_project, caplog):
        night = SimulationCalculator().calculate_project(forced_project, Scenario.WITHDRAWAL, load_diversity_pct=0.0)
        target = night.node("n2").voltages_v.mean
        with caplog.at_level(logging.INFO, logger="lvflow.simulation.forced_mode"):
            calibration = ForcedModeCalibrator(SimulationCalculator()).calibrate_diversity(
                forced_project, "n2", target,
            )
        assert calibration.method == "bounded"
        assert calibration.converged
        assert calibration.diversity_pct == 0.0
        assert calibration.evaluations == 2
        assert "not reachable" not in caplog.text
        assert "met exactly" in caplog.text

    def test_unsettled_solves_not_selected(self, forced_project):
        """With one sweep per solve only the no-load evaluation settles."""
        calibrator = ForcedModeCalibrator(SimulationCalculator(max_iterations=1))
        calibration = calibrator.calibrate_diversity(forced_project, "n2", 229.0)
        assert calibration.evaluations > 2
        assert calibration.diversity_pct == 0.0
        assert not calibration.converged

    def test_unreachable_target_uses_closest_bound(self, forced_project):
        diagnostics = Diagnostics(record=True)
        calibrator = ForcedModeCalibrator(SimulationCalculator(), diagnostics=diagnostics)
        calibration = calibrator.calibrate_diversity(forced_project, "n2", 250.0)
        assert calibration.method == "bounded"
        assert not calibration.converged
        assert calibration.diversity_pct == 0.0
        assert calibration.evaluations == 2
        assert len(diagnostics.named("forced_mode.diversity_evaluation")) == 2

    @pytest.mark.parametrize("kwargs", [
        {"diversity_bounds": (50.0, 10.0)},
        {"diversity_bounds": (-1.0, 100.0)},
        {"max_diversity_evaluations": 2},
    ])
    def test_invalid_settings(self, kwargs):
        with pytest.raises(ValueError):
            ForcedModeCalibrator(SimulationCalculator(), **kwargs)


# ======================================================================
# Full forced scenario
# ======================================================================


class TestForcedScenario:
    """Diversity calibration followed by the phase distribution fixed point."""

    def test_converges_to_measurements(self, forced_project):
        diagnostics = Diagnostics(record=True)
        result = SimulationCalculator(diagnostics=diagnostics).calculate_with_simulation(
            forced_project, Scenario.FORCED,
        )
        calibration = result.calibration
        assert calibration is not None
        assert calibration.status is ConvergenceStatus.CONVERGED
        assert calibration.max_error_v <= 0.5, f"Errors {calibration.errors_v}"
        assert calibration.iterations < 30
        assert result.convergence_status == "converged"
        assert len(diagnostics.named("forced_mode.distribution")) == calibration.iterations

        loads = calibration.distribution.loads
        assert loads.a < loads.c, "Phase measured highest must carry the least load"
        assert result.load_diversity_pct == pytest.approx(calibration.load_diversity_pct)
        assert result.to_dict()["calibration"]["status"] == "converged"

    def test_node_voltages_match_calibration(self, forced_project):
        result = SimulationCalculator().calculate_with_simulation(forced_project, Scenario.FORCED)
        computed = result.node("n2").voltages_v.as_tuple()
        assert computed == pytest.approx(result.calibration.computed_v)

    def test_without_target_keeps_project_diversity(self, forced_project):
        forced_project.load_diversity_pct = 60.0
        forced_project.forced_mode = ForcedModeConfig("n2", (231.0, 229.0, 227.0))
        result = SimulationCalculator().calculate_with_simulation(forced_project, Scenario.FORCED)
        assert result.calibration.diversity is None
        assert result.calibration.load_diversity_pct == 60.0

    def test_without_target_uses_diversity_override(self, forced_project):
        forced_project.forced_mode = ForcedModeConfig("n2", (231.0, 229.0, 227.0))
        result = SimulationCalculator().calculate_with_simulation(
            forced_project, Scenario.FORCED, load_diversity_pct=45.0,
        )
        assert result.calibration.load_diversity_pct == 45.0
        assert result.load_diversity_pct == 45.0

    def test_iteration_cap_reported(self, forced_project):
        forced_project.forced_mode = ForcedModeConfig("n2", (231.0, 229.0, 227.0), 229.0)
        settings = SimulationSettings(forced_tolerance_v=1e-9, forced_max_iterations=1)
        result = SimulationCalculator(settings=settings).calculate_with_simulation(forced_project, Scenario.FORCED)
        calibration = result.calibration
        assert calibration.status is ConvergenceStatus.NOT_CONVERGED
        assert calibration.reason == "max_iterations"
        assert calibration.iterations == 1
        assert result.convergence_status == "not_converged"
        assert result.to_dict()["calibration"]["status"] == "not_converged"

    def test_unknown_measurement_node(self, forced_project):
        forced_project.forced_mode = ForcedModeConfig("ghost", (231.0, 229.0, 227.0), 229.0)
        with pytest.raises(CalculationInputError, match="ghost"):
            SimulationCalculator().calculate_with_simulation(forced_project, Scenario.FORCED)
