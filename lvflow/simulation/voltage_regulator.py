"""SRG2-style automatic voltage regulator.

Per-phase discrete regulation with five switch states ordered from the
strongest boost to the strongest reduction:

  BO2  V <= BO2 threshold           ratio 1 + c_BO2
  BO1  BO2 < V <= BO1               ratio 1 + c_BO1
  BYP  BO1 < V < LO1  (dead band)   ratio 1.0
  LO1  LO1 <= V < LO2               ratio 1 + c_LO1
  LO2  V >= LO2                     ratio 1 + c_LO2

When a previous state is known, thresholds are shifted by the hysteresis
so that leaving the current state takes ``hysteresis_v`` more than
entering it.

Cross-phase rule: a device cannot boost and reduce on the same pass. If
phases disagree, the phase with the largest absolute deviation from the
set point decides the direction and opposing phases are forced to BYP.

Power limits: the net downstream power (diversified loads minus
productions) must stay below ``max_consumption_kva`` when positive and
``max_injection_kva`` when negative; otherwise the device is ``limited``
and does not regulate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from lvflow.network.network_model import VoltageSystem
from lvflow.network.results import PhaseValues

logger = logging.getLogger(__name__)


class RegulatorState(str, Enum):
    BO2 = "BO2"
    BO1 = "BO1"
    BYP = "BYP"
    LO1 = "LO1"
    LO2 = "LO2"

    @property
    def direction(self) -> int:
        """+1 for boost, -1 for reduction, 0 for bypass."""
        match self:
            case RegulatorState.BO2 | RegulatorState.BO1:
                return 1
            case RegulatorState.LO1 | RegulatorState.LO2:
                return -1
            case RegulatorState.BYP:
                return 0


class RegulatorType(str, Enum):
    SRG2_400 = "SRG2-400"  # phase-to-neutral, 4-wire networks
    SRG2_230 = "SRG2-230"  # phase-to-phase, 3-wire networks

    @classmethod
    def for_voltage_system(cls, voltage_system: VoltageSystem) -> RegulatorType:
        match voltage_system:
            case VoltageSystem.TETRAPHASE_400V:
                return cls.SRG2_400
            case VoltageSystem.TRIPHASE_230V:
                return cls.SRG2_230


class RegulatorStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    LIMITED = "limited"


@dataclass(frozen=True)
class RegulatorSettings:
    """Thresholds (V) and per-state coefficients (%)."""
    lo2_v: float
    lo1_v: float
    bo1_v: float
    bo2_v: float
    lo2_pct: float
    lo1_pct: float
    bo1_pct: float
    bo2_pct: float


DEFAULT_SETTINGS: dict[RegulatorType, RegulatorSettings] = {
    RegulatorType.SRG2_400: RegulatorSettings(246.0, 238.0, 222.0, 214.0, -7.0, -3.5, 3.5, 7.0),
    RegulatorType.SRG2_230: RegulatorSettings(244.0, 237.0, 223.0, 216.0, -6.0, -3.0, 3.0, 6.0),
}

MAX_INJECTION_KVA: float = 85.0
MAX_CONSUMPTION_KVA: float = 100.0
HYSTERESIS_V: float = 2.0
NOMINAL_V: float = 230.0


@dataclass
class RegulatorResult:
    """Outcome of one regulation pass for a device."""
    regulator_id: str
    node_id: str
    status: RegulatorStatus
    states: tuple[RegulatorState, RegulatorState, RegulatorState] = (
        RegulatorState.BYP, RegulatorState.BYP, RegulatorState.BYP,
    )
    ratios: tuple[float, float, float] = (1.0, 1.0, 1.0)
    input_voltages_v: PhaseValues | None = None
    output_voltages_v: PhaseValues | None = None
    downstream_load_kva: float = 0.0
    downstream_production_kva: float = 0.0
    path_impedance_ohm: float = 0.0
    limited: bool = False
    reason: str | None = None
    iterations: int = 0
    convergence_status: str | None = None

    @property
    def net_power_kva(self) -> float:
        return self.downstream_load_kva - self.downstream_production_kva

    def to_dict(self) -> dict[str, Any]:
        return {
            "regulator_id": self.regulator_id,
            "node_id": self.node_id,
            "status": self.status.value,
            "states": {p: s.value for p, s in zip("ABC", self.states)},
            "ratios": {p: round(r, 5) for p, r in zip("ABC", self.ratios)},
            "input_voltages_v": None if self.input_voltages_v is None else self.input_voltages_v.to_dict(3),
            "output_voltages_v": None if self.output_voltages_v is None else self.output_voltages_v.to_dict(3),
            "downstream_load_kva": round(self.downstream_load_kva, 3),
            "downstream_production_kva": round(self.downstream_production_kva, 3),
            "net_power_kva": round(self.net_power_kva, 3),
            "path_impedance_ohm": round(self.path_impedance_ohm, 5),
            "limited": self.limited,
            "reason": self.reason,
            "iterations": self.iterations,
            "convergence_status": self.convergence_status,
        }


@dataclass
class VoltageRegulatorConfig:
    """SRG2 device attached to a node.

    Thresholds and coefficients default to the values of ``regulator_type``.
    ``result`` is replaced wholesale by every calculation pass.
    """
    id: str
    node_id: str
    enabled: bool = True
    regulator_type: RegulatorType = RegulatorType.SRG2_400
    name: str = ""
    nominal_v: float = NOMINAL_V
    settings: RegulatorSettings | None = None
    hysteresis_v: float = HYSTERESIS_V
    max_injection_kva: float = MAX_INJECTION_KVA
    max_consumption_kva: float = MAX_CONSUMPTION_KVA
    single_direction: bool = True
    result: RegulatorResult | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.settings is None:
            self.settings = DEFAULT_SETTINGS[self.regulator_type]
        s = self.settings
        if not (s.lo2_v >= s.lo1_v > s.bo1_v >= s.bo2_v):
            raise ValueError(
                f"Regulator {self.id}: thresholds must satisfy LO2 >= LO1 > BO1 >= BO2, "
                f"got {s.lo2_v}/{s.lo1_v}/{s.bo1_v}/{s.bo2_v}"
            )
        if self.hysteresis_v < 0:
            raise ValueError(f"Regulator {self.id}: hysteresis must be non-negative")
        if self.max_injection_kva < 0 or self.max_consumption_kva < 0:
            raise ValueError(f"Regulator {self.id}: power limits must be non-negative")

    def coefficient_pct(self, state: RegulatorState) -> float:
        s = self.settings
        match state:
            case RegulatorState.BO2:
                return s.bo2_pct
            case RegulatorState.BO1:
                return s.bo1_pct
            case RegulatorState.BYP:
                return 0.0
            case RegulatorState.LO1:
                return s.lo1_pct
            case RegulatorState.LO2:
                return s.lo2_pct

    def ratio(self, state: RegulatorState) -> float:
        if state is RegulatorState.BYP:
            return 1.0
        return 1.0 + self.coefficient_pct(state) / 100.0


def select_state(
    voltage_v: float,
    config: VoltageRegulatorConfig,
    previous: RegulatorState | None = None,
) -> RegulatorState:
    """Switch state for one phase voltage."""
    s = config.settings
    lo2, lo1, bo1, bo2 = s.lo2_v, s.lo1_v, s.bo1_v, s.bo2_v
    if previous is not None:
        h = config.hysteresis_v
        lo2 += -h if previous is RegulatorState.LO2 else h
        lo1 += -h if previous is RegulatorState.LO1 else h
        bo1 += h if previous is RegulatorState.BO1 else -h
        bo2 += h if previous is RegulatorState.BO2 else -h

    if voltage_v >= lo2:
        return RegulatorState.LO2
    if voltage_v >= lo1:
        return RegulatorState.LO1
    if voltage_v <= bo2:
        return RegulatorState.BO2
    if voltage_v <= bo1:
        return RegulatorState.BO1
    return RegulatorState.BYP


def enforce_single_direction(
    states: tuple[RegulatorState, ...],
    voltages_v: tuple[float, ...],
    nominal_v: float,
) -> tuple[RegulatorState, ...]:
    """Force phases opposing the dominant deviation to BYP."""
    directions = {s.direction for s in states if s.direction != 0}
    if len(directions) < 2:
        return states

    active = [i for i, s in enumerate(states) if s.direction != 0]
    dominant = max(active, key=lambda i: abs(voltages_v[i] - nominal_v))
    allowed = states[dominant].direction
    return tuple(s if s.direction in (0, allowed) else RegulatorState.BYP for s in states)


def compute_states(
    config: VoltageRegulatorConfig,
    voltages_v: tuple[float, float, float],
    previous: tuple[RegulatorState, ...] | None = None,
) -> tuple[RegulatorState, RegulatorState, RegulatorState]:
    """Per-phase states after the cross-phase rule."""
    states = tuple(
        select_state(v, config, previous[i] if previous else None)
        for i, v in enumerate(voltages_v)
    )
    if config.single_direction:
        constrained = enforce_single_direction(states, voltages_v, config.nominal_v)
        if constrained != states:
            logger.debug(
                "Regulator %s: opposing phases forced to BYP %s -> %s",
                config.id, [s.value for s in states], [s.value for s in constrained],
            )
        states = constrained
    return states  # type: ignore[return-value]


def check_power_limits(
    config: VoltageRegulatorConfig,
    downstream_load_kva: float,
    downstream_production_kva: float,
) -> str | None:
    """Return the limit reason, or None when the device may regulate."""
    net = downstream_load_kva - downstream_production_kva
    if net > config.max_consumption_kva:
        return (
            f"Downstream consumption ({net:.1f} kVA) exceeds limit "
            f"({config.max_consumption_kva:.0f} kVA)"
        )
    if -net > config.max_injection_kva:
        return (
            f"Downstream injection ({-net:.1f} kVA) exceeds limit "
            f"({config.max_injection_kva:.0f} kVA)"
        )
    return None
