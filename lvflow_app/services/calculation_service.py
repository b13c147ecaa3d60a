"""Calculation facade: validated request in, plain dict out.

Engine exceptions are converted to a status field here and nowhere else:
``invalid_topology`` means the calculation could not run on the network,
``invalid_input`` covers inconsistent values. A calculation that ran but
did not converge is ``ok`` with ``result.convergence_status`` set to
``not_converged``.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from lvflow.errors import CalculationInputError, InvalidTopologyError
from lvflow.network.network_model import Scenario
from lvflow.network.reinforcement import propose_cable_upgrades
from lvflow.simulation.runner import run_all_scenarios, summarize_scenarios
from lvflow.simulation.simulation_calculator import SimulationCalculator
from lvflow_app.config import Settings, settings
from lvflow_app.core.logging import calculation_context
from lvflow_app.schemas.calculation import (
    CalculationRequest,
    CalculationResponse,
    ScenariosRequest,
    ScenariosResponse,
)

logger = logging.getLogger(__name__)


def build_calculator(app_settings: Settings | None = None) -> SimulationCalculator:
    app_settings = app_settings or settings
    return SimulationCalculator(
        max_iterations=app_settings.sweep_max_iterations,
        tolerance_v=app_settings.sweep_tolerance_v,
        settings=app_settings.simulation_settings(),
    )


def run_calculation(
    request: CalculationRequest | dict,
    calculator: SimulationCalculator | None = None,
) -> dict[str, Any]:
    """Run one scenario with its equipment and return the response as a dict."""
    with calculation_context() as cid:
        try:
            if not isinstance(request, CalculationRequest):
                request = CalculationRequest.model_validate(request)
            project = request.project.to_model()
            equipment = request.equipment.to_model()
            scenario = Scenario(request.scenario)
        except (ValidationError, ValueError) as exc:
            logger.warning("Invalid calculation request: %s", exc)
            return CalculationResponse(status="invalid_input", calculation_id=cid, error=str(exc)).model_dump()

        calculator = calculator or build_calculator()
        try:
            result = calculator.calculate_with_simulation(
                project,
                scenario,
                equipment,
                load_diversity_pct=request.load_diversity_pct,
                production_diversity_pct=request.production_diversity_pct,
            )
        except InvalidTopologyError as exc:
            logger.warning(
                "Invalid topology (%s): %s", exc.reason, exc,
                extra={"scenario": scenario.value},
            )
            return CalculationResponse(
                status="invalid_topology",
                calculation_id=cid,
                scenario=scenario.value,
                error=str(exc),
                error_reason=exc.reason,
                element_id=exc.element_id,
            ).model_dump()
        except CalculationInputError as exc:
            logger.warning("Invalid calculation input: %s", exc, extra={"scenario": scenario.value})
            return CalculationResponse(
                status="invalid_input", calculation_id=cid, scenario=scenario.value, error=str(exc),
            ).model_dump()

        recommendations = propose_cable_upgrades(result, project) if request.include_recommendations else []
        return CalculationResponse(
            status="ok",
            calculation_id=cid,
            scenario=scenario.value,
            result=result.to_dict(),
            recommendations=recommendations,
        ).model_dump()


def run_scenarios(
    request: ScenariosRequest | dict,
    calculator: SimulationCalculator | None = None,
) -> dict[str, Any]:
    """Run several scenarios of one project and return results with a summary."""
    with calculation_context() as cid:
        try:
            if not isinstance(request, ScenariosRequest):
                request = ScenariosRequest.model_validate(request)
            project = request.project.to_model()
            equipment = request.equipment.to_model()
            scenarios = tuple(Scenario(s) for s in request.scenarios) if request.scenarios else None
        except (ValidationError, ValueError) as exc:
            logger.warning("Invalid scenarios request: %s", exc)
            return ScenariosResponse(status="invalid_input", calculation_id=cid, error=str(exc)).model_dump()

        try:
            results = run_all_scenarios(
                project, equipment, calculator or build_calculator(), scenarios,
            )
        except InvalidTopologyError as exc:
            logger.warning("Invalid topology (%s): %s", exc.reason, exc)
            return ScenariosResponse(
                status="invalid_topology", calculation_id=cid, error=str(exc), error_reason=exc.reason,
            ).model_dump()
        except CalculationInputError as exc:
            logger.warning("Invalid calculation input: %s", exc)
            return ScenariosResponse(status="invalid_input", calculation_id=cid, error=str(exc)).model_dump()

        return ScenariosResponse(
            status="ok",
            calculation_id=cid,
            results={s.value: r.to_dict() for s, r in results.items()},
            summary=summarize_scenarios(results),
        ).model_dump()
