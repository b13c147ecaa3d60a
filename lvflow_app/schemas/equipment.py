from pydantic import BaseModel, Field

from lvflow.simulation.neutral_compensator import NeutralCompensatorConfig
from lvflow.simulation.simulation_calculator import SimulationEquipment
from lvflow.simulation.voltage_regulator import (
    RegulatorSettings,
    RegulatorType,
    VoltageRegulatorConfig,
)


class RegulatorSettingsIn(BaseModel):
    lo2_v: float = Field(gt=0)
    lo1_v: float = Field(gt=0)
    bo1_v: float = Field(gt=0)
    bo2_v: float = Field(gt=0)
    lo2_pct: float = Field(le=0, ge=-20)
    lo1_pct: float = Field(le=0, ge=-20)
    bo1_pct: float = Field(ge=0, le=20)
    bo2_pct: float = Field(ge=0, le=20)


class RegulatorIn(BaseModel):
    id: str = Field(min_length=1)
    node_id: str
    enabled: bool = True
    regulator_type: str = Field(default="SRG2-400", pattern="^(SRG2-400|SRG2-230)$")
    name: str = ""
    nominal_v: float = Field(default=230.0, gt=0)
    settings: RegulatorSettingsIn | None = None
    hysteresis_v: float = Field(default=2.0, ge=0)
    max_injection_kva: float = Field(default=85.0, ge=0)
    max_consumption_kva: float = Field(default=100.0, ge=0)
    single_direction: bool = True

    def to_model(self) -> VoltageRegulatorConfig:
        return VoltageRegulatorConfig(
            id=self.id,
            node_id=self.node_id,
            enabled=self.enabled,
            regulator_type=RegulatorType(self.regulator_type),
            name=self.name,
            nominal_v=self.nominal_v,
            settings=RegulatorSettings(**self.settings.model_dump()) if self.settings else None,
            hysteresis_v=self.hysteresis_v,
            max_injection_kva=self.max_injection_kva,
            max_consumption_kva=self.max_consumption_kva,
            single_direction=self.single_direction,
        )


class CompensatorIn(BaseModel):
    id: str = Field(min_length=1)
    node_id: str
    enabled: bool = True
    name: str = ""
    max_power_kva: float = Field(default=50.0, gt=0)
    tolerance_a: float = Field(default=5.0, ge=0)
    zph_ohm: float = Field(default=0.5, gt=0)
    zn_ohm: float = Field(default=0.2, gt=0)
    apply_to_flow: bool = True

    def to_model(self) -> NeutralCompensatorConfig:
        return NeutralCompensatorConfig(**self.model_dump())


class EquipmentIn(BaseModel):
    regulators: list[RegulatorIn] = Field(default_factory=list)
    compensators: list[CompensatorIn] = Field(default_factory=list)

    def to_model(self) -> SimulationEquipment:
        return SimulationEquipment(
            regulators=[r.to_model() for r in self.regulators],
            compensators=[c.to_model() for c in self.compensators],
        )
