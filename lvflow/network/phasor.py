"""Phasor arithmetic helpers.

Phasors are plain Python ``complex`` values (rectangular form, volts or
amperes). Three-phase quantities are numpy complex arrays of shape (3,)
ordered A, B, C with nominal angles 0°, -120° and +120°.

Addition, subtraction and multiplication use the native operators; the
helpers below cover polar construction, guarded division and the phase
rotation constants used by the solver.
"""

from __future__ import annotations

import cmath
import math

import numpy as np

from lvflow.errors import PhasorDivisionError

# Magnitude below which a divisor is treated as zero
EPSILON: float = 1e-12

# Nominal phase angles (degrees) for phases A, B, C
PHASE_ANGLES_DEG: tuple[float, float, float] = (0.0, -120.0, 120.0)

PHASE_NAMES: tuple[str, str, str] = ("A", "B", "C")


def rect(real: float, imag: float = 0.0) -> complex:
    """Phasor from rectangular components."""
    return complex(real, imag)


def polar(magnitude: float, angle_deg: float) -> complex:
    """Phasor from magnitude and angle in degrees."""
    return cmath.rect(magnitude, math.radians(angle_deg))


def magnitude(z: complex) -> float:
    return abs(z)


def angle_deg(z: complex) -> float:
    return math.degrees(cmath.phase(z))


def scale(z: complex, factor: float) -> complex:
    return z * factor


def safe_divide(numerator: complex, denominator: complex) -> complex:
    """Divide two phasors, refusing (near) zero divisors.

    Raises:
        PhasorDivisionError: if |denominator| < EPSILON or either operand is
            not finite.
    """
    if not (cmath.isfinite(numerator) and cmath.isfinite(denominator)):
        raise PhasorDivisionError(f"non-finite phasor division: {numerator} / {denominator}")
    if abs(denominator) < EPSILON:
        raise PhasorDivisionError(f"division by near-zero phasor {denominator}")
    return numerator / denominator


# Unit rotation phasors a^0, a^2 (= -120°), a (= +120°)
ROTATION: np.ndarray = np.array([polar(1.0, a) for a in PHASE_ANGLES_DEG], dtype=np.complex128)


def three_phase(magnitude_v: float, angle_offset_deg: float = 0.0) -> np.ndarray:
    """Balanced three-phase set of the given magnitude."""
    return np.array(
        [polar(magnitude_v, a + angle_offset_deg) for a in PHASE_ANGLES_DEG],
        dtype=np.complex128,
    )


def neutral_current(phase_currents: np.ndarray) -> complex:
    """Kirchhoff sum I_N = I_A + I_B + I_C."""
    return complex(np.sum(phase_currents))
