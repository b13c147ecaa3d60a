"""Voltage-drop compliance profiles.

A network is classified from the worst node deviation against the nominal
voltage of its system (230 V phase-to-phase on 3-wire networks, 400/√3 V
phase-to-neutral on 4-wire networks):

- ``critical`` if any node deviates more than the critical limit (±10 %)
- ``warning`` if any node deviates more than the warning limit (±8 %)
- ``normal`` otherwise

Under-voltage and over-voltage are tracked separately; the profile only
decides the classification.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Compliance(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class VoltageDropLimits:
    """Absolute deviation limits in percent of nominal."""
    warning_pct: float = 8.0
    critical_pct: float = 10.0

    def __post_init__(self) -> None:
        if not 0 < self.warning_pct <= self.critical_pct:
            raise ValueError("Voltage limits must satisfy 0 < warning <= critical")

    def classify(self, deviation_pct: float) -> Compliance:
        """Classify one signed deviation (positive = under-voltage)."""
        magnitude = abs(deviation_pct)
        if magnitude > self.critical_pct:
            return Compliance.CRITICAL
        if magnitude > self.warning_pct:
            return Compliance.WARNING
        return Compliance.NORMAL


@dataclass
class ComplianceProfile:
    """Named compliance profile."""
    name: str
    standard: str
    limits: VoltageDropLimits = field(default_factory=VoltageDropLimits)

    def classify_network(self, deviations_pct: list[float]) -> Compliance:
        worst = Compliance.NORMAL
        for d in deviations_pct:
            level = self.limits.classify(d)
            if level is Compliance.CRITICAL:
                return level
            if level is Compliance.WARNING:
                worst = level
        return worst


# ======================================================================
# Built-in profiles
# ======================================================================

NF_C_14_100 = ComplianceProfile(
    name="Distribution BT",
    standard="NF C 14-100 / EN 50160",
    limits=VoltageDropLimits(warning_pct=8.0, critical_pct=10.0),
)


def build_custom_profile(warning_pct: float, critical_pct: float, name: str = "Custom") -> ComplianceProfile:
    """Build a profile with custom thresholds."""
    return ComplianceProfile(
        name=name,
        standard="custom",
        limits=VoltageDropLimits(warning_pct=warning_pct, critical_pct=critical_pct),
    )
