"""HT/BT distribution transformer model.

Standard ratings for the MV/LV substation transformers feeding the radial
networks, and the configuration used by the solver to derive the
transformer series impedance (see ``impedance.transformer_impedance``).
"""

from __future__ import annotations

import math
from dataclasses import dataclass

DEFAULT_X_OVER_R: float = 3.0


@dataclass
class TransformerConfig:
    """Transformer nameplate data as used by the flow solver."""
    rating_kva: float
    nominal_voltage_v: float  # BT line voltage (230 or 400)
    short_circuit_voltage_pct: float
    cos_phi: float = 0.95
    x_over_r: float | None = None
    name: str = ""

    def __post_init__(self) -> None:
        if self.rating_kva <= 0:
            raise ValueError("Transformer rating must be positive")
        if self.nominal_voltage_v <= 0:
            raise ValueError("Transformer nominal voltage must be positive")
        if not 0 <= self.short_circuit_voltage_pct < 100:
            raise ValueError("Short-circuit voltage must be within [0, 100) %")
        if not 0 <= self.cos_phi <= 1:
            raise ValueError("Transformer cos phi must be within [0, 1]")

    @property
    def effective_x_over_r(self) -> float:
        if self.x_over_r is None or not math.isfinite(self.x_over_r) or self.x_over_r <= 0:
            return DEFAULT_X_OVER_R
        return self.x_over_r

    @property
    def z_base_ohm(self) -> float:
        """Z_base = U_line² / S_nominal."""
        return self.nominal_voltage_v ** 2 / (self.rating_kva * 1000.0)

    @property
    def rated_current_a(self) -> float:
        return self.rating_kva * 1000.0 / (math.sqrt(3) * self.nominal_voltage_v)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "rating_kva": self.rating_kva,
            "nominal_voltage_v": self.nominal_voltage_v,
            "short_circuit_voltage_pct": self.short_circuit_voltage_pct,
            "cos_phi": self.cos_phi,
            "x_over_r": self.effective_x_over_r,
        }


# Standard HT1/BT ratings (20 kV / 400 V, Ucc 4 %)
TRANSFORMER_LIBRARY: list[TransformerConfig] = [
    TransformerConfig(160, 400, 4.0, 0.95, 2.5, "160kVA"),
    TransformerConfig(250, 400, 4.0, 0.95, 3.0, "250kVA"),
    TransformerConfig(400, 400, 4.0, 0.95, 3.5, "400kVA"),
    TransformerConfig(630, 400, 4.0, 0.95, 4.0, "630kVA"),
]


def get_transformer_library() -> list[dict]:
    """Return transformer library as list of dicts."""
    return [t.to_dict() for t in TRANSFORMER_LIBRARY]


def find_transformer(name: str, nominal_voltage_v: float | None = None) -> TransformerConfig | None:
    """Find a transformer rating by name, optionally re-rated to another BT voltage."""
    for t in TRANSFORMER_LIBRARY:
        if t.name == name:
            if nominal_voltage_v is None or nominal_voltage_v == t.nominal_voltage_v:
                return t
            return TransformerConfig(
                t.rating_kva, nominal_voltage_v, t.short_circuit_voltage_pct,
                t.cos_phi, t.x_over_r, t.name,
            )
    return None
