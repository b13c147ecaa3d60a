from pydantic_settings import BaseSettings

from lvflow.simulation.simulation_calculator import SimulationSettings


class Settings(BaseSettings):
    model_config = {"env_prefix": "LVFLOW_", "case_sensitive": False}

    # App
    environment: str = "development"
    debug: bool = False
    app_name: str = "LVFlow"
    json_logs: bool = False

    # Power flow
    sweep_tolerance_v: float = 1e-4
    sweep_max_iterations: int = 100

    # SRG2 regulation
    regulation_tolerance_v: float = 0.5
    regulation_max_iterations: int = 10

    # Forced mode
    forced_tolerance_v: float = 0.5
    forced_max_iterations: int = 30
    diversity_min_pct: float = 0.0
    diversity_max_pct: float = 150.0
    diversity_max_evaluations: int = 40

    # EQUI8
    compensator_min_impedance_ohm: float = 0.15

    def simulation_settings(self) -> SimulationSettings:
        return SimulationSettings(
            regulation_tolerance_v=self.regulation_tolerance_v,
            regulation_max_iterations=self.regulation_max_iterations,
            forced_tolerance_v=self.forced_tolerance_v,
            forced_max_iterations=self.forced_max_iterations,
            diversity_min_pct=self.diversity_min_pct,
            diversity_max_pct=self.diversity_max_pct,
            diversity_max_evaluations=self.diversity_max_evaluations,
            compensator_min_impedance_ohm=self.compensator_min_impedance_ohm,
        )


settings = Settings()
