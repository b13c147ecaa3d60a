"""Run every scenario of a project.

Each scenario is an independent call of ``SimulationCalculator`` with its
own equipment result side state, so the scenarios could be dispatched in
parallel by the caller. Here they run sequentially.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Callable

from lvflow.network.network_model import Project, Scenario
from lvflow.network.results import CalculationResult
from lvflow.simulation.simulation_calculator import SimulationCalculator, SimulationEquipment

logger = logging.getLogger(__name__)

DEFAULT_SCENARIOS: tuple[Scenario, ...] = (
    Scenario.WITHDRAWAL,
    Scenario.MIXED,
    Scenario.PRODUCTION,
)


def run_all_scenarios(
    project: Project,
    equipment: SimulationEquipment | None = None,
    calculator: SimulationCalculator | None = None,
    scenarios: tuple[Scenario, ...] | None = None,
    progress_callback: Callable[[float], None] | None = None,
) -> dict[Scenario, CalculationResult]:
    """Compute each scenario; the forced scenario is added when the project has measurements.

    Equipment configs are deep-copied per scenario so that device results
    of one scenario never leak into another. The copies are discarded; the
    per-device results are available on ``result.equipment``.

    Args:
        project: network to compute
        equipment: regulators and compensators
        calculator: solver instance (a default one is created otherwise)
        scenarios: scenarios to compute (defaults to withdrawal, mixed, production)
        progress_callback: called with progress 0.0~1.0 after each scenario
    """
    calculator = calculator or SimulationCalculator()
    if scenarios is None:
        scenarios = DEFAULT_SCENARIOS
        if project.forced_mode is not None:
            scenarios = (*scenarios, Scenario.FORCED)

    results: dict[Scenario, CalculationResult] = {}
    for step, scenario in enumerate(scenarios, start=1):
        scenario_equipment = copy.deepcopy(equipment) if equipment is not None else None
        results[scenario] = calculator.calculate_with_simulation(project, scenario, scenario_equipment)
        logger.info(
            "Scenario %s computed (max drop %.2f%%, %s)",
            scenario.value, results[scenario].max_voltage_drop_pct, results[scenario].compliance.value,
            extra={"scenario": scenario.value},
        )
        if progress_callback is not None:
            progress_callback(step / len(scenarios))
    return results


def summarize_scenarios(results: dict[Scenario, CalculationResult]) -> dict[str, Any]:
    """Compact per-scenario summary for reporting collaborators."""
    return {
        scenario.value: {
            "max_voltage_drop_pct": round(r.max_voltage_drop_pct, 3),
            "max_undervoltage_pct": round(r.max_undervoltage_pct, 3),
            "max_overvoltage_pct": round(r.max_overvoltage_pct, 3),
            "compliance": r.compliance.value,
            "total_losses_kw": round(r.total_losses_kw, 4),
            "convergence_status": r.convergence_status,
        }
        for scenario, r in results.items()
    }
