from typing import Any

from pydantic import BaseModel, Field

from lvflow_app.schemas.equipment import EquipmentIn
from lvflow_app.schemas.project import ProjectIn


class CalculationRequest(BaseModel):
    project: ProjectIn
    scenario: str = Field(default="PRÉLÈVEMENT", pattern="^(PRÉLÈVEMENT|MIXTE|PRODUCTION|FORCÉ)$")
    equipment: EquipmentIn = Field(default_factory=EquipmentIn)
    load_diversity_pct: float | None = Field(default=None, ge=0, le=100)
    production_diversity_pct: float | None = Field(default=None, ge=0, le=100)
    include_recommendations: bool = False


class ScenariosRequest(BaseModel):
    project: ProjectIn
    equipment: EquipmentIn = Field(default_factory=EquipmentIn)
    scenarios: list[str] | None = None


class Recommendation(BaseModel):
    level: str
    code: str
    message: str
    suggestion: str
    action: dict[str, Any] | None = None


class CalculationResponse(BaseModel):
    status: str  # "ok", "invalid_topology" or "invalid_input"
    calculation_id: str
    scenario: str | None = None
    result: dict[str, Any] | None = None
    recommendations: list[Recommendation] = []
    error: str | None = None
    error_reason: str | None = None
    element_id: str | None = None


class ScenariosResponse(BaseModel):
    status: str
    calculation_id: str
    results: dict[str, dict[str, Any]] = {}
    summary: dict[str, Any] = {}
    error: str | None = None
    error_reason: str | None = None
