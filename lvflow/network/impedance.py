"""Series impedance helpers for transformers and LV cables.

All impedances are in ohms per phase.

  Z_base = U_line² / S_nominal  (Ω)
  |Z_tr| = Ucc% / 100 × Z_base, split into R + jX by the X/R ratio
  Z_cable = (R12 + jX12) × length_km, Z0 = (R0 + jX0) × length_km
  Neutral coupling term Z_N = (Z0 − Z1) / 3
"""

from __future__ import annotations

import logging
import math

from lvflow.network.cable_library import CableType
from lvflow.network.transformer_model import TransformerConfig

logger = logging.getLogger(__name__)

# Zero-sequence fallback when a cable type carries invalid R0/X0
DEFAULT_ZERO_SEQUENCE_FACTOR: float = 3.0

_warned_types: set[str] = set()


def z_base(u_line_v: float, s_nominal_kva: float) -> float:
    """Base impedance in ohms: Z_base = U²/S."""
    return u_line_v ** 2 / (s_nominal_kva * 1000.0)


def split_r_x(z_ohm: float, x_over_r: float) -> complex:
    """Split an impedance magnitude into R + jX using an X/R ratio."""
    if z_ohm <= 0:
        return 0j
    x = z_ohm * x_over_r / math.sqrt(1 + x_over_r ** 2)
    r = x / x_over_r
    return complex(r, x)


def transformer_impedance(transformer: TransformerConfig | None) -> complex:
    """Per-phase series impedance of the transformer seen from the BT side."""
    if transformer is None:
        return 0j
    z_mag = transformer.short_circuit_voltage_pct / 100.0 * transformer.z_base_ohm
    return split_r_x(z_mag, transformer.effective_x_over_r)


def cable_impedance(cable_type: CableType, length_m: float) -> complex:
    """Positive-sequence series impedance Z1 of a cable run."""
    length_km = max(length_m, 0.0) / 1000.0
    return complex(cable_type.r12_ohm_per_km * length_km, cable_type.x12_ohm_per_km * length_km)


def zero_sequence_impedance(cable_type: CableType, length_m: float) -> complex:
    """Zero-sequence series impedance Z0, falling back to 3 × Z1 when R0/X0 are invalid."""
    length_km = max(length_m, 0.0) / 1000.0
    if cable_type.has_valid_zero_sequence:
        return complex(cable_type.r0_ohm_per_km * length_km, cable_type.x0_ohm_per_km * length_km)
    if cable_type.id not in _warned_types:
        _warned_types.add(cable_type.id)
        logger.warning(
            "Cable type %s has invalid zero-sequence parameters, using %.1f x Z1",
            cable_type.id, DEFAULT_ZERO_SEQUENCE_FACTOR,
            extra={"cable_type": cable_type.id},
        )
    return DEFAULT_ZERO_SEQUENCE_FACTOR * cable_impedance(cable_type, length_m)


def neutral_coupling_impedance(cable_type: CableType, length_m: float) -> complex:
    """Z_N = (Z0 − Z1) / 3, the voltage drop per ampere of neutral current on each phase."""
    return (zero_sequence_impedance(cable_type, length_m) - cable_impedance(cable_type, length_m)) / 3.0


def complex_power(s_kva: float, power_factor: float) -> complex:
    """S = |S|·(cosφ + j sinφ) in VA, lagging for positive |S|."""
    sin_phi = math.sqrt(max(0.0, 1.0 - power_factor ** 2))
    return complex(s_kva * 1000.0 * power_factor, s_kva * 1000.0 * sin_phi)
