"""Low-voltage distribution cable impedance library.

Typical sequence parameters for the overhead twisted and underground
cables used on French-style LV networks (230 V 3-wire and 230/400 V
4-wire).

Each entry provides:
  - r12/x12: positive-sequence resistance/reactance (Ω/km)
  - r0/x0: zero-sequence resistance/reactance (Ω/km), used for neutral effects
  - material: CUIVRE or ALUMINIUM
  - poses: permitted installation methods (AÉRIEN, SOUTERRAIN)
  - ampacity_a: continuous rating when known
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum


class CableMaterial(str, Enum):
    CUIVRE = "CUIVRE"
    ALUMINIUM = "ALUMINIUM"


class CablePose(str, Enum):
    AERIEN = "AÉRIEN"
    SOUTERRAIN = "SOUTERRAIN"


@dataclass(frozen=True)
class CableType:
    """Cable type reference data (per-kilometre impedances)."""
    id: str
    label: str
    r12_ohm_per_km: float
    x12_ohm_per_km: float
    r0_ohm_per_km: float
    x0_ohm_per_km: float
    material: CableMaterial
    poses: tuple[CablePose, ...] = (CablePose.AERIEN,)
    ampacity_a: float | None = None

    def __post_init__(self) -> None:
        if not (math.isfinite(self.r12_ohm_per_km) and self.r12_ohm_per_km >= 0):
            raise ValueError(f"Cable type {self.id}: R12 must be a finite non-negative value")
        if not (math.isfinite(self.x12_ohm_per_km) and self.x12_ohm_per_km >= 0):
            raise ValueError(f"Cable type {self.id}: X12 must be a finite non-negative value")

    @property
    def has_valid_zero_sequence(self) -> bool:
        return (
            math.isfinite(self.r0_ohm_per_km) and self.r0_ohm_per_km >= 0
            and math.isfinite(self.x0_ohm_per_km) and self.x0_ohm_per_km >= 0
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "label": self.label,
            "r12_ohm_per_km": self.r12_ohm_per_km,
            "x12_ohm_per_km": self.x12_ohm_per_km,
            "r0_ohm_per_km": self.r0_ohm_per_km,
            "x0_ohm_per_km": self.x0_ohm_per_km,
            "material": self.material.value,
            "poses": [p.value for p in self.poses],
            "ampacity_a": self.ampacity_a,
        }


_CU = CableMaterial.CUIVRE
_AL = CableMaterial.ALUMINIUM
_AIR = (CablePose.AERIEN,)
_UG = (CablePose.SOUTERRAIN,)

CABLE_TYPE_LIBRARY: list[CableType] = [
    # Copper overhead
    CableType("cu-10", "Cuivre 10", 1.83, 0.09, 5.49, 0.27, _CU, _AIR),
    CableType("cu-16", "Cuivre 16", 1.15, 0.09, 3.45, 0.27, _CU, _AIR),
    CableType("cu-25", "Cuivre 25", 0.727, 0.08, 2.18, 0.24, _CU, _AIR),
    CableType("cu-4x35", "Cuivre 4x35", 0.524, 0.08, 1.57, 0.24, _CU, _AIR),
    CableType("cu-50", "Cuivre 50", 0.387, 0.08, 1.16, 0.24, _CU, _AIR),
    CableType("cu-70", "Cuivre 70", 0.268, 0.07, 0.80, 0.21, _CU, _AIR),
    CableType("cu-95", "Cuivre 95", 0.193, 0.07, 0.58, 0.21, _CU, _AIR),

    # Aluminium twisted overhead (BAXB)
    CableType("baxb-35", "BAXB 35", 0.868, 0.11, 3.02, 0.27, _AL, _AIR),
    CableType("baxb-50", "BAXB 50", 0.641, 0.11, 2.78, 0.26, _AL, _AIR),
    CableType("baxb-70", "BAXB 70", 0.519, 0.11, 2.515, 0.257, _AL, _AIR),
    CableType("baxb-95", "BAXB 95", 0.383, 0.104, 2.379, 0.263, _AL, _AIR),
    CableType("baxb-150", "BAXB 150", 0.244, 0.098, 1.805, 0.258, _AL, _AIR),

    # Aluminium underground
    CableType("eaxecwb-4x95", "EAXeCWB 4x95", 0.320, 0.072, 1.280, 0.290, _AL, _UG),
    CableType("eaxecwb-4x150", "EAXeCWB 4x150", 0.242, 0.069, 0.972, 0.273, _AL, _UG),
    CableType("eaxecwb-4x240", "EAXeCWB 4x240", 0.125, 0.069, 0.500, 0.270, _AL, _UG),
]


def get_cable_type_library() -> list[dict]:
    """Return the cable type library as a list of dicts."""
    return [c.to_dict() for c in CABLE_TYPE_LIBRARY]


def find_cable_type(type_id: str, library: list[CableType] | None = None) -> CableType | None:
    """Find a cable type by id."""
    for c in library if library is not None else CABLE_TYPE_LIBRARY:
        if c.id == type_id:
            return c
    return None


def filter_cable_types(
    material: CableMaterial | str | None = None,
    pose: CablePose | str | None = None,
    max_r12_ohm_per_km: float | None = None,
    library: list[CableType] | None = None,
) -> list[CableType]:
    """Filter cable types by criteria."""
    result = list(library if library is not None else CABLE_TYPE_LIBRARY)
    if material:
        result = [c for c in result if c.material == CableMaterial(material)]
    if pose:
        result = [c for c in result if CablePose(pose) in c.poses]
    if max_r12_ohm_per_km is not None:
        result = [c for c in result if c.r12_ohm_per_km < max_r12_ohm_per_km]
    return result
