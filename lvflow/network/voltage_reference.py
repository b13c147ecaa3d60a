"""Source and reference voltages.

The source (busbar-side) line voltage is chosen by priority:
  1. explicit target voltage on the source node
  2. voltage derived from the measured HT voltage and the transformer ratio
  3. transformer nominal BT voltage
  4. nominal line voltage of the voltage system
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from lvflow.network.network_model import Node, Project, VoltageSystem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VoltageReference:
    nominal_v: float          # line voltage of the system
    phase_to_neutral_v: float
    phase_to_phase_v: float
    display_v: float          # reference for thresholds and display


def voltage_reference(voltage_system: VoltageSystem) -> VoltageReference:
    """Reference voltages of a voltage system."""
    line = voltage_system.line_voltage_v
    return VoltageReference(
        nominal_v=line,
        phase_to_neutral_v=line / math.sqrt(3),
        phase_to_phase_v=line,
        display_v=voltage_system.nominal_display_v,
    )


def find_source(nodes: list[Node]) -> Node | None:
    for n in nodes:
        if n.is_source:
            return n
    return None


def source_voltage(project: Project) -> tuple[float, str]:
    """Return (line voltage, origin) for the source node of ``project``."""
    source = find_source(project.nodes)
    if source is not None and source.target_voltage_v:
        return float(source.target_voltage_v), "target"

    if project.ht_voltage is not None:
        derived = project.ht_voltage.source_voltage_v()
        if derived is not None:
            return derived, "ht_measurement"
        logger.warning(
            "Invalid HT voltage configuration %s, falling back to nominal BT voltage",
            project.ht_voltage,
        )

    if project.transformer is not None:
        return project.transformer.nominal_voltage_v, "transformer"

    return project.voltage_system.line_voltage_v, "system"
