"""Tests for lvflow.simulation.runner: multi-scenario runs."""

from __future__ import annotations

import pytest

from lvflow.network.network_model import Scenario
from lvflow.simulation.runner import run_all_scenarios, summarize_scenarios
from lvflow.simulation.simulation_calculator import SimulationEquipment
from lvflow.simulation.voltage_regulator import RegulatorStatus, VoltageRegulatorConfig


class TestRunAllScenarios:
    """Scenario selection, equipment isolation and progress reporting."""

    def test_default_scenarios(self, chain_builder):
        project = chain_builder(productions_kva=(0.0, 20.0))
        results = run_all_scenarios(project)
        assert list(results) == [Scenario.WITHDRAWAL, Scenario.MIXED, Scenario.PRODUCTION]
        assert results[Scenario.PRODUCTION].total_loads_kva == 0.0
        assert results[Scenario.WITHDRAWAL].total_productions_kva == 0.0
        assert results[Scenario.MIXED].total_productions_kva == pytest.approx(20.0)

    def test_forced_added_with_measurements(self, forced_project):
        results = run_all_scenarios(forced_project)
        assert Scenario.FORCED in results
        assert results[Scenario.FORCED].calibration is not None

    def test_explicit_scenarios(self, chain_project):
        results = run_all_scenarios(chain_project, scenarios=(Scenario.MIXED,))
        assert list(results) == [Scenario.MIXED]

    def test_progress_callback(self, chain_project):
        progress: list[float] = []
        run_all_scenarios(chain_project, progress_callback=progress.append)
        assert progress == pytest.approx([1 / 3, 2 / 3, 1.0])

    def test_equipment_not_modified(self, chain_project):
        """Each scenario works on its own copy of the device configs."""
        config = VoltageRegulatorConfig("r1", "n1")
        results = run_all_scenarios(chain_project, SimulationEquipment(regulators=[config]))
        assert config.result is None
        for result in results.values():
            assert result.equipment["regulators"][0]["status"] == RegulatorStatus.ACTIVE.value

    def test_summary(self, chain_project):
        results = run_all_scenarios(chain_project)
        summary = summarize_scenarios(results)
        assert set(summary) == {"PRÉLÈVEMENT", "MIXTE", "PRODUCTION"}
        assert summary["MIXTE"]["compliance"] in {"normal", "warning", "critical"}
        assert summary["PRÉLÈVEMENT"]["total_losses_kw"] > 0
