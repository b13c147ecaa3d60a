"""Engine exception types.

Structural problems (topology, unknown references) are raised before any
computation starts. Non-convergence is never an exception: it is reported
on the result objects.
"""

from __future__ import annotations


class InvalidTopologyError(ValueError):
    """The node/cable set does not form a usable radial tree."""

    NO_SOURCE = "no_source"
    MULTIPLE_SOURCES = "multiple_sources"
    DUPLICATE_NODE = "duplicate_node"
    UNKNOWN_NODE = "unknown_node"
    UNKNOWN_CABLE_TYPE = "unknown_cable_type"
    CYCLE = "cycle"

    def __init__(self, reason: str, message: str, element_id: str | None = None):
        super().__init__(message)
        self.reason = reason
        self.element_id = element_id


class PhasorDivisionError(ZeroDivisionError):
    """Division by a phasor whose magnitude is (near) zero."""


class CalculationInputError(ValueError):
    """Calculation inputs are inconsistent (missing measurement node, no measured voltage...)."""
