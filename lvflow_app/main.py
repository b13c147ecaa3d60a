import logging

from lvflow.simulation.simulation_calculator import SimulationCalculator
from lvflow_app.config import Settings, settings
from lvflow_app.core.logging import setup_logging
from lvflow_app.services.calculation_service import build_calculator

logger = logging.getLogger(__name__)


def configure(app_settings: Settings | None = None) -> SimulationCalculator:
    """Application entry point: logging from the settings, then the calculator."""
    app_settings = app_settings or settings
    setup_logging(json_format=app_settings.json_logs, debug=app_settings.debug)
    logger.info(
        "%s configured (%s)",
        app_settings.app_name,
        app_settings.environment,
        extra={"event": "app.configured"},
    )
    return build_calculator(app_settings)
