from pydantic import BaseModel, Field, model_validator

from lvflow.network.network_model import Project, build_project_from_config


class PhaseSharesIn(BaseModel):
    A: float = Field(default=100.0 / 3, ge=0, le=100)
    B: float = Field(default=100.0 / 3, ge=0, le=100)
    C: float = Field(default=100.0 / 3, ge=0, le=100)

    @model_validator(mode="after")
    def _sum_to_100(self):
        total = self.A + self.B + self.C
        if abs(total - 100.0) > 0.01:
            raise ValueError(f"phase shares must sum to 100, got {total:.3f}")
        return self


class PhaseDistributionIn(BaseModel):
    loads: PhaseSharesIn = Field(default_factory=PhaseSharesIn)
    productions: PhaseSharesIn = Field(default_factory=PhaseSharesIn)


class PowerEntryIn(BaseModel):
    id: str | None = None
    s_kva: float = Field(ge=0)
    label: str = ""


class NodeIn(BaseModel):
    id: str = Field(min_length=1)
    name: str | None = None
    lat: float = Field(default=0.0, ge=-90, le=90)
    lng: float = Field(default=0.0, ge=-180, le=180)
    is_source: bool = False
    target_voltage_v: float | None = Field(default=None, gt=0)
    loads: list[PowerEntryIn] = Field(default_factory=list)
    productions: list[PowerEntryIn] = Field(default_factory=list)
    phase_distribution: PhaseDistributionIn | None = None


class CableIn(BaseModel):
    id: str = Field(min_length=1)
    node_a_id: str
    node_b_id: str
    type_id: str
    name: str | None = None
    pose: str = Field(default="AÉRIEN", pattern="^(AÉRIEN|SOUTERRAIN)$")
    coordinates: list[tuple[float, float]] = Field(default_factory=list)
    length_m: float | None = Field(default=None, ge=0)


class CableTypeIn(BaseModel):
    id: str
    label: str | None = None
    r12_ohm_per_km: float = Field(ge=0)
    x12_ohm_per_km: float = Field(ge=0)
    r0_ohm_per_km: float | None = Field(default=None, ge=0)
    x0_ohm_per_km: float | None = Field(default=None, ge=0)
    material: str = Field(default="ALUMINIUM", pattern="^(CUIVRE|ALUMINIUM)$")
    poses: list[str] = Field(default_factory=lambda: ["AÉRIEN"])
    ampacity_a: float | None = Field(default=None, gt=0)


class TransformerIn(BaseModel):
    rating_kva: float = Field(gt=0)
    nominal_voltage_v: float | None = Field(default=None, gt=0)
    short_circuit_voltage_pct: float = Field(default=4.0, gt=0, le=100)
    cos_phi: float = Field(default=0.95, ge=0, le=1)
    x_over_r: float | None = Field(default=None, gt=0)
    name: str = ""


class HTVoltageIn(BaseModel):
    measured_ht_v: float = Field(gt=0)
    nominal_ht_v: float = Field(default=20_000.0, gt=0)
    nominal_bt_v: float | None = Field(default=None, gt=0)


class ForcedModeIn(BaseModel):
    measurement_node_id: str
    measured_voltages_v: list[float | None] = Field(min_length=1, max_length=3)
    target_voltage_v: float | None = Field(default=None, gt=0)
    tolerance_v: float | None = Field(default=None, gt=0)


class ProjectIn(BaseModel):
    name: str = Field(default="project", max_length=255)
    voltage_system: str = Field(default="TÉTRAPHASÉ_400V", pattern="^(TRIPHASÉ_230V|TÉTRAPHASÉ_400V)$")
    nodes: list[NodeIn]
    cables: list[CableIn] = Field(default_factory=list)
    cable_types: list[CableTypeIn] | None = None
    transformer: TransformerIn | None = None
    cos_phi: float = Field(default=0.95, ge=0, le=1)
    load_diversity_pct: float = Field(default=100.0, ge=0, le=100)
    production_diversity_pct: float = Field(default=100.0, ge=0, le=100)
    load_model: str = Field(default="polyphase_equilibre", pattern="^(polyphase_equilibre|monophase_reparti)$")
    unbalance_pct: float = Field(default=0.0, ge=0, le=100)
    phase_distribution: PhaseDistributionIn | None = None
    ht_voltage: HTVoltageIn | None = None
    forced_mode: ForcedModeIn | None = None

    def to_model(self) -> Project:
        config = self.model_dump(exclude_none=True)
        for node in config["nodes"]:
            node.setdefault("name", node["id"])
        for cable in config.get("cables", []):
            cable.setdefault("name", cable["id"])
        if self.forced_mode is not None:
            # None marks a missing phase and must survive the dump
            config["forced_mode"]["measured_voltages_v"] = list(self.forced_mode.measured_voltages_v)
        return build_project_from_config(config)
