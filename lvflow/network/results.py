"""Immutable result records of one phase flow pass.

Voltages are reported in the display scale of the voltage system
(phase-to-phase on 3-wire networks, phase-to-neutral on 4-wire networks);
deviation percentages are signed, positive for under-voltage.
"""

from __future__ import annotations

import cmath
import math
from dataclasses import dataclass, field
from typing import Any

from lvflow.network.grid_codes import Compliance
from lvflow.network.network_model import LoadModel, Scenario, VoltageSystem


def _r(value: float, digits: int = 4) -> float:
    return round(float(value), digits)


@dataclass(frozen=True)
class PhaseValues:
    """One scalar per phase."""
    a: float
    b: float
    c: float

    @classmethod
    def uniform(cls, value: float) -> PhaseValues:
        return cls(value, value, value)

    def as_tuple(self) -> tuple[float, float, float]:
        return (self.a, self.b, self.c)

    @property
    def max(self) -> float:
        return max(self.a, self.b, self.c)

    @property
    def min(self) -> float:
        return min(self.a, self.b, self.c)

    @property
    def mean(self) -> float:
        return (self.a + self.b + self.c) / 3.0

    def to_dict(self, digits: int = 4) -> dict[str, float]:
        return {"A": _r(self.a, digits), "B": _r(self.b, digits), "C": _r(self.c, digits)}


@dataclass(frozen=True)
class CableResult:
    """Flow through one cable, oriented from the source side."""
    cable_id: str
    upstream_node_id: str
    downstream_node_id: str
    circuit_number: int
    length_m: float
    currents_a: PhaseValues
    current_phasors: tuple[complex, complex, complex]
    neutral_current_a: float
    voltage_drops_v: PhaseValues
    losses_kw: float
    apparent_power_kva: float

    @property
    def current_a(self) -> float:
        return self.currents_a.max

    @property
    def voltage_drop_v(self) -> float:
        return self.voltage_drops_v.mean

    def voltage_drop_pct(self, nominal_v: float) -> float:
        return self.voltage_drop_v / nominal_v * 100.0

    def to_dict(self, nominal_v: float) -> dict[str, Any]:
        return {
            "cable_id": self.cable_id,
            "upstream_node_id": self.upstream_node_id,
            "downstream_node_id": self.downstream_node_id,
            "circuit_number": self.circuit_number,
            "length_m": _r(self.length_m, 2),
            "current_a": _r(self.current_a, 3),
            "currents_per_phase_a": {**self.currents_a.to_dict(3), "N": _r(self.neutral_current_a, 3)},
            "voltage_drop_v": _r(self.voltage_drop_v, 3),
            "voltage_drop_pct": _r(self.voltage_drop_pct(nominal_v), 3),
            "voltage_drop_per_phase_v": self.voltage_drops_v.to_dict(3),
            "losses_kw": _r(self.losses_kw, 5),
            "apparent_power_kva": _r(self.apparent_power_kva, 3),
        }


@dataclass(frozen=True)
class NodeVoltage:
    """Voltage metrics of one connected node.

    ``input_voltages_v`` are the voltages before any regulation applied at
    this node; they equal ``voltages_v`` on unregulated nodes.
    """
    node_id: str
    circuit_number: int | None
    voltages_v: PhaseValues
    input_voltages_v: PhaseValues
    phasors: tuple[complex, complex, complex]
    nominal_v: float

    @property
    def mean_v(self) -> float:
        return self.voltages_v.mean

    @property
    def deviations_pct(self) -> PhaseValues:
        n = self.nominal_v
        return PhaseValues(*((n - v) / n * 100.0 for v in self.voltages_v.as_tuple()))

    @property
    def undervoltage_pct(self) -> float:
        return max(0.0, self.deviations_pct.max)

    @property
    def overvoltage_pct(self) -> float:
        return max(0.0, -self.deviations_pct.min)

    @property
    def voltage_drop_pct(self) -> float:
        """Signed deviation of the worst phase (positive = under-voltage)."""
        if self.overvoltage_pct > self.undervoltage_pct:
            return -self.overvoltage_pct
        return self.undervoltage_pct

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "circuit_number": self.circuit_number,
            "voltages_v": self.voltages_v.to_dict(3),
            "input_voltages_v": self.input_voltages_v.to_dict(3),
            "mean_voltage_v": _r(self.mean_v, 3),
            "voltage_pu": _r(self.mean_v / self.nominal_v, 5),
            "voltage_drop_pct": _r(self.voltage_drop_pct, 3),
            "phasors": {
                name: {
                    "real": _r(p.real, 4),
                    "imag": _r(p.imag, 4),
                    "magnitude": _r(abs(p), 4),
                    "angle_deg": _r(math.degrees(cmath.phase(p)), 3),
                }
                for name, p in zip(("A", "B", "C"), self.phasors)
            },
        }


@dataclass(frozen=True)
class BusbarCircuit:
    """Per-circuit breakdown at the virtual busbar."""
    number: int
    cable_id: str
    subtree_s_kva: float
    subtree_q_kvar: float
    direction: str  # "injection" or "withdrawal"
    current_a: float
    delta_u_v: float
    voltage_bus_v: float
    min_node_voltage_v: float
    max_node_voltage_v: float
    node_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "cable_id": self.cable_id,
            "subtree_s_kva": _r(self.subtree_s_kva, 3),
            "subtree_q_kvar": _r(self.subtree_q_kvar, 3),
            "direction": self.direction,
            "current_a": _r(self.current_a, 3),
            "delta_u_v": _r(self.delta_u_v, 3),
            "voltage_bus_v": _r(self.voltage_bus_v, 3),
            "min_node_voltage_v": _r(self.min_node_voltage_v, 3),
            "max_node_voltage_v": _r(self.max_node_voltage_v, 3),
            "node_count": self.node_count,
        }


@dataclass(frozen=True)
class VirtualBusbar:
    """Aggregate state at the transformer BT terminal."""
    voltage_v: float
    current_a: float
    neutral_current_a: float | None
    net_s_kva: float
    delta_u_v: float
    delta_u_pct: float
    losses_kw: float
    circuits: tuple[BusbarCircuit, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "voltage_v": _r(self.voltage_v, 3),
            "current_a": _r(self.current_a, 3),
            "neutral_current_a": None if self.neutral_current_a is None else _r(self.neutral_current_a, 3),
            "net_s_kva": _r(self.net_s_kva, 3),
            "delta_u_v": _r(self.delta_u_v, 3),
            "delta_u_pct": _r(self.delta_u_pct, 3),
            "losses_kw": _r(self.losses_kw, 5),
            "circuits": [c.to_dict() for c in self.circuits],
        }


@dataclass(frozen=True)
class CalculationResult:
    """Output of one solver pass for one scenario."""
    scenario: Scenario
    voltage_system: VoltageSystem
    load_model: LoadModel
    load_diversity_pct: float
    production_diversity_pct: float
    source_voltage_v: float
    cables: tuple[CableResult, ...]
    nodes: dict[str, NodeVoltage]
    total_loads_kva: float
    total_productions_kva: float
    load_power_kw: float
    production_power_kw: float
    global_losses_kw: float
    transformer_losses_kw: float
    source_power_kw: float
    max_voltage_drop_pct: float
    max_voltage_drop_circuit: int | None
    max_undervoltage_pct: float
    max_overvoltage_pct: float
    compliance: Compliance
    virtual_busbar: VirtualBusbar
    topology: dict[str, Any]
    disconnected_node_ids: frozenset[str] = frozenset()
    sweep_converged: bool = True
    sweep_iterations: int = 0
    convergence_status: str | None = None
    calibration: Any = None
    equipment: dict[str, Any] = field(default_factory=dict)

    @property
    def nominal_v(self) -> float:
        return self.voltage_system.nominal_display_v

    def node(self, node_id: str) -> NodeVoltage:
        return self.nodes[node_id]

    def cable(self, cable_id: str) -> CableResult:
        for c in self.cables:
            if c.cable_id == cable_id:
                return c
        raise KeyError(cable_id)

    @property
    def total_losses_kw(self) -> float:
        return self.global_losses_kw + self.transformer_losses_kw

    def to_dict(self) -> dict[str, Any]:
        nominal = self.nominal_v
        return {
            "scenario": self.scenario.value,
            "voltage_system": self.voltage_system.value,
            "load_model": self.load_model.value,
            "load_diversity_pct": _r(self.load_diversity_pct, 3),
            "production_diversity_pct": _r(self.production_diversity_pct, 3),
            "source_voltage_v": _r(self.source_voltage_v, 3),
            "cables": [c.to_dict(nominal) for c in self.cables],
            "nodes": {nid: n.to_dict() for nid, n in self.nodes.items()},
            "total_loads_kva": _r(self.total_loads_kva, 3),
            "total_productions_kva": _r(self.total_productions_kva, 3),
            "global_losses_kw": _r(self.global_losses_kw, 5),
            "transformer_losses_kw": _r(self.transformer_losses_kw, 5),
            "source_power_kw": _r(self.source_power_kw, 4),
            "max_voltage_drop_pct": _r(self.max_voltage_drop_pct, 3),
            "max_voltage_drop_circuit": self.max_voltage_drop_circuit,
            "max_undervoltage_pct": _r(self.max_undervoltage_pct, 3),
            "max_overvoltage_pct": _r(self.max_overvoltage_pct, 3),
            "compliance": self.compliance.value,
            "virtual_busbar": self.virtual_busbar.to_dict(),
            "topology": self.topology,
            "disconnected_node_ids": sorted(self.disconnected_node_ids),
            "sweep_converged": self.sweep_converged,
            "sweep_iterations": self.sweep_iterations,
            "convergence_status": self.convergence_status,
            "calibration": self.calibration.to_dict() if self.calibration is not None else None,
            "equipment": self.equipment,
        }
