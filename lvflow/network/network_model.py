"""Radial LV network data model.

Nodes, cables, phase distributions and the project aggregate consumed by
the phase flow solver, plus ``build_project_from_config`` to build a
project from plain configuration dictionaries.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum

from lvflow.network.cable_library import CABLE_TYPE_LIBRARY, CableMaterial, CablePose, CableType
from lvflow.network.transformer_model import TransformerConfig

EARTH_RADIUS_M: float = 6_371_000.0
SHARE_TOLERANCE_PCT: float = 0.01

SQRT3 = math.sqrt(3)


class VoltageSystem(str, Enum):
    TRIPHASE_230V = "TRIPHASÉ_230V"     # 3 wires, 230 V between phases
    TETRAPHASE_400V = "TÉTRAPHASÉ_400V"  # 3P+N, 230/400 V

    @property
    def line_voltage_v(self) -> float:
        match self:
            case VoltageSystem.TRIPHASE_230V:
                return 230.0
            case VoltageSystem.TETRAPHASE_400V:
                return 400.0

    @property
    def has_neutral(self) -> bool:
        return self is VoltageSystem.TETRAPHASE_400V

    @property
    def display_scale(self) -> float:
        """Factor from the internal star-equivalent phase voltage to reported voltages.

        3-wire networks are reported phase-to-phase (230 V), 4-wire networks
        phase-to-neutral (230 V).
        """
        return SQRT3 if self is VoltageSystem.TRIPHASE_230V else 1.0

    @property
    def nominal_display_v(self) -> float:
        return self.line_voltage_v / SQRT3 * self.display_scale


class LoadModel(str, Enum):
    BALANCED = "polyphase_equilibre"
    UNBALANCED = "monophase_reparti"


class Scenario(str, Enum):
    WITHDRAWAL = "PRÉLÈVEMENT"
    MIXED = "MIXTE"
    PRODUCTION = "PRODUCTION"
    FORCED = "FORCÉ"

    @property
    def includes_loads(self) -> bool:
        return self is not Scenario.PRODUCTION

    @property
    def includes_productions(self) -> bool:
        return self is not Scenario.WITHDRAWAL


@dataclass
class LoadEntry:
    id: str
    s_kva: float
    label: str = ""


@dataclass
class ProductionEntry:
    id: str
    s_kva: float
    label: str = ""


@dataclass(frozen=True)
class PhaseShares:
    """Percentages on phases A, B, C (sum 100)."""
    a: float
    b: float
    c: float

    def __post_init__(self) -> None:
        values = (self.a, self.b, self.c)
        if any(not math.isfinite(v) or v < 0 for v in values):
            raise ValueError(f"Phase shares must be finite and non-negative: {values}")
        if abs(sum(values) - 100.0) > SHARE_TOLERANCE_PCT:
            raise ValueError(f"Phase shares must sum to 100%, got {sum(values):.3f}")

    @classmethod
    def equal(cls) -> PhaseShares:
        return cls(100.0 / 3, 100.0 / 3, 100.0 / 3)

    @classmethod
    def normalized(cls, a: float, b: float, c: float) -> PhaseShares:
        """Clamp negatives to zero and rescale to 100 %."""
        vals = [max(0.0, v) for v in (a, b, c)]
        total = sum(vals)
        if total <= 0:
            return cls.equal()
        return cls(*(v * 100.0 / total for v in vals))

    def fractions(self) -> tuple[float, float, float]:
        return (self.a / 100.0, self.b / 100.0, self.c / 100.0)

    def to_dict(self) -> dict[str, float]:
        return {"A": round(self.a, 4), "B": round(self.b, 4), "C": round(self.c, 4)}


@dataclass(frozen=True)
class PhaseDistribution:
    """Manual per-phase split of loads and productions."""
    loads: PhaseShares = field(default_factory=PhaseShares.equal)
    productions: PhaseShares = field(default_factory=PhaseShares.equal)

    def to_dict(self) -> dict:
        return {"loads": self.loads.to_dict(), "productions": self.productions.to_dict()}


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in metres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = phi2 - phi1
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def route_length_m(coordinates: list[tuple[float, float]]) -> float:
    """Length of a (lat, lng) polyline in metres."""
    return sum(
        haversine_m(a[0], a[1], b[0], b[1])
        for a, b in zip(coordinates, coordinates[1:])
    )


@dataclass
class Node:
    """Network node (pole, cabinet, delivery point or the source)."""
    id: str
    name: str = ""
    lat: float = 0.0
    lng: float = 0.0
    is_source: bool = False
    target_voltage_v: float | None = None
    loads: list[LoadEntry] = field(default_factory=list)
    productions: list[ProductionEntry] = field(default_factory=list)
    phase_distribution: PhaseDistribution | None = None

    @property
    def load_kva(self) -> float:
        return sum(ld.s_kva for ld in self.loads)

    @property
    def production_kva(self) -> float:
        return sum(p.s_kva for p in self.productions)


@dataclass
class Cable:
    """Cable section between two nodes.

    ``length_m`` is derived from ``coordinates`` when not given explicitly.
    """
    id: str
    node_a_id: str
    node_b_id: str
    type_id: str
    name: str = ""
    pose: CablePose = CablePose.AERIEN
    coordinates: list[tuple[float, float]] = field(default_factory=list)
    length_m: float | None = None

    def __post_init__(self) -> None:
        if self.length_m is None:
            self.length_m = route_length_m(self.coordinates)
        if not math.isfinite(self.length_m) or self.length_m < 0:
            raise ValueError(f"Cable {self.id}: invalid length {self.length_m}")

    def reroute(self, coordinates: list[tuple[float, float]]) -> None:
        """Replace the route and recompute the length."""
        self.coordinates = list(coordinates)
        self.length_m = route_length_m(self.coordinates)

    def other_end(self, node_id: str) -> str:
        return self.node_b_id if node_id == self.node_a_id else self.node_a_id


@dataclass
class HTVoltageConfig:
    """Measured HT voltage used to derive the BT source voltage."""
    measured_ht_v: float
    nominal_ht_v: float = 20_000.0
    nominal_bt_v: float = 400.0

    def source_voltage_v(self) -> float | None:
        """U_bt = U_ht,measured × U_bt,nom / U_ht,nom, or None when any input is invalid."""
        values = (self.measured_ht_v, self.nominal_ht_v, self.nominal_bt_v)
        if any(not math.isfinite(v) or v <= 0 for v in values):
            return None
        return self.measured_ht_v * self.nominal_bt_v / self.nominal_ht_v


@dataclass
class ForcedModeConfig:
    """Field measurements driving the forced-mode calibration.

    Measured voltages are in the reported scale of the voltage system
    (phase-to-neutral on 4-wire networks). ``None`` marks a missing phase.
    """
    measurement_node_id: str
    measured_voltages_v: tuple[float | None, float | None, float | None]
    target_voltage_v: float | None = None
    tolerance_v: float | None = None


@dataclass
class Project:
    """Network aggregate passed to the solver."""
    name: str
    voltage_system: VoltageSystem
    nodes: list[Node]
    cables: list[Cable]
    cable_types: list[CableType] = field(default_factory=lambda: list(CABLE_TYPE_LIBRARY))
    transformer: TransformerConfig | None = None
    cos_phi: float = 0.95
    load_diversity_pct: float = 100.0
    production_diversity_pct: float = 100.0
    load_model: LoadModel = LoadModel.BALANCED
    unbalance_pct: float = 0.0
    phase_distribution: PhaseDistribution | None = None
    ht_voltage: HTVoltageConfig | None = None
    forced_mode: ForcedModeConfig | None = None

    def __post_init__(self) -> None:
        if not 0 <= self.cos_phi <= 1:
            raise ValueError(f"cos phi must be within [0, 1], got {self.cos_phi}")
        for name in ("load_diversity_pct", "production_diversity_pct"):
            value = getattr(self, name)
            if not 0 <= value <= 100:
                raise ValueError(f"{name} must be within [0, 100], got {value}")
        if not 0 <= self.unbalance_pct <= 100:
            raise ValueError(f"unbalance_pct must be within [0, 100], got {self.unbalance_pct}")

    def node(self, node_id: str) -> Node | None:
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None

    def cable_type_map(self) -> dict[str, CableType]:
        return {ct.id: ct for ct in self.cable_types}


def _shares_from_config(cfg: dict | None) -> PhaseShares:
    if not cfg:
        return PhaseShares.equal()
    return PhaseShares(cfg.get("A", 100.0 / 3), cfg.get("B", 100.0 / 3), cfg.get("C", 100.0 / 3))


def _distribution_from_config(cfg: dict | None) -> PhaseDistribution | None:
    if not cfg:
        return None
    return PhaseDistribution(
        loads=_shares_from_config(cfg.get("loads")),
        productions=_shares_from_config(cfg.get("productions")),
    )


def build_project_from_config(config: dict) -> Project:
    """Build a Project from a configuration dictionary.

    Args:
        config: dict with keys name, voltage_system, nodes, cables and
            optionally cable_types, transformer, cos_phi, load_diversity_pct,
            production_diversity_pct, load_model, unbalance_pct,
            phase_distribution, ht_voltage, forced_mode.
    """
    nodes = []
    for nc in config.get("nodes", []):
        nodes.append(Node(
            id=nc["id"],
            name=nc.get("name", nc["id"]),
            lat=nc.get("lat", 0.0),
            lng=nc.get("lng", 0.0),
            is_source=nc.get("is_source", False),
            target_voltage_v=nc.get("target_voltage_v"),
            loads=[
                LoadEntry(ld.get("id", f"{nc['id']}-load-{i}"), ld["s_kva"], ld.get("label", ""))
                for i, ld in enumerate(nc.get("loads", []))
            ],
            productions=[
                ProductionEntry(p.get("id", f"{nc['id']}-prod-{i}"), p["s_kva"], p.get("label", ""))
                for i, p in enumerate(nc.get("productions", []))
            ],
            phase_distribution=_distribution_from_config(nc.get("phase_distribution")),
        ))

    cables = []
    for cc in config.get("cables", []):
        cables.append(Cable(
            id=cc["id"],
            node_a_id=cc["node_a_id"],
            node_b_id=cc["node_b_id"],
            type_id=cc["type_id"],
            name=cc.get("name", cc["id"]),
            pose=CablePose(cc.get("pose", CablePose.AERIEN.value)),
            coordinates=[tuple(p) for p in cc.get("coordinates", [])],
            length_m=cc.get("length_m"),
        ))

    cable_types = list(CABLE_TYPE_LIBRARY)
    if config.get("cable_types"):
        cable_types = [
            CableType(
                id=t["id"],
                label=t.get("label", t["id"]),
                r12_ohm_per_km=t["r12_ohm_per_km"],
                x12_ohm_per_km=t["x12_ohm_per_km"],
                r0_ohm_per_km=t.get("r0_ohm_per_km", float("nan")),
                x0_ohm_per_km=t.get("x0_ohm_per_km", float("nan")),
                material=CableMaterial(t.get("material", CableMaterial.ALUMINIUM.value)),
                poses=tuple(CablePose(p) for p in t.get("poses", [CablePose.AERIEN.value])),
                ampacity_a=t.get("ampacity_a"),
            )
            for t in config["cable_types"]
        ]

    voltage_system = VoltageSystem(config.get("voltage_system", VoltageSystem.TETRAPHASE_400V.value))

    transformer = None
    tc = config.get("transformer")
    if tc:
        transformer = TransformerConfig(
            rating_kva=tc["rating_kva"],
            nominal_voltage_v=tc.get("nominal_voltage_v", voltage_system.line_voltage_v),
            short_circuit_voltage_pct=tc.get("short_circuit_voltage_pct", 4.0),
            cos_phi=tc.get("cos_phi", 0.95),
            x_over_r=tc.get("x_over_r"),
            name=tc.get("name", ""),
        )

    ht = None
    if config.get("ht_voltage"):
        hc = config["ht_voltage"]
        ht = HTVoltageConfig(
            measured_ht_v=hc["measured_ht_v"],
            nominal_ht_v=hc.get("nominal_ht_v", 20_000.0),
            nominal_bt_v=hc.get("nominal_bt_v", voltage_system.line_voltage_v),
        )

    forced = None
    if config.get("forced_mode"):
        fc = config["forced_mode"]
        measured = list(fc.get("measured_voltages_v", [None, None, None]))
        measured += [None] * (3 - len(measured))
        forced = ForcedModeConfig(
            measurement_node_id=fc["measurement_node_id"],
            measured_voltages_v=(measured[0], measured[1], measured[2]),
            target_voltage_v=fc.get("target_voltage_v"),
            tolerance_v=fc.get("tolerance_v"),
        )

    return Project(
        name=config.get("name", "project"),
        voltage_system=voltage_system,
        nodes=nodes,
        cables=cables,
        cable_types=cable_types,
        transformer=transformer,
        cos_phi=config.get("cos_phi", 0.95),
        load_diversity_pct=config.get("load_diversity_pct", 100.0),
        production_diversity_pct=config.get("production_diversity_pct", 100.0),
        load_model=LoadModel(config.get("load_model", LoadModel.BALANCED.value)),
        unbalance_pct=config.get("unbalance_pct", 0.0),
        phase_distribution=_distribution_from_config(config.get("phase_distribution")),
        ht_voltage=ht,
        forced_mode=forced,
    )
