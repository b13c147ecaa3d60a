"""Virtual busbar aggregation at the transformer BT terminal.

The busbar voltage is the source voltage minus the transformer series drop
computed by the sweep. The per-circuit ΔU is the busbar ΔU shared in
proportion to each circuit's absolute net apparent power.
"""

from __future__ import annotations

import numpy as np

from lvflow.network.network_model import VoltageSystem
from lvflow.network.results import BusbarCircuit, NodeVoltage, VirtualBusbar
from lvflow.network.topology import NetworkTopology


def build_virtual_busbar(
    topology: NetworkTopology,
    voltage_system: VoltageSystem,
    source_phasors: np.ndarray,
    busbar_phasors: np.ndarray,
    root_currents: np.ndarray,
    transformer_z: complex,
    include_neutral: bool,
    node_net_kva: dict[str, float],
    node_net_power_va: dict[str, complex],
    head_currents_a: dict[str, float],
    node_voltages: dict[str, NodeVoltage],
) -> VirtualBusbar:
    """Aggregate the transformer-side state and the per-circuit breakdown.

    Args:
        source_phasors: internal phase phasors behind the transformer impedance
        busbar_phasors: internal phase phasors at the BT terminal
        root_currents: phase currents leaving the busbar
        node_net_kva: diversified loads minus productions per node (kVA)
        node_net_power_va: complex net power per node (VA, all phases)
        head_currents_a: max phase current of each circuit head cable
    """
    scale = voltage_system.display_scale
    nominal = voltage_system.nominal_display_v

    source_v = float(np.mean(np.abs(source_phasors))) * scale
    bus_v = float(np.mean(np.abs(busbar_phasors))) * scale
    delta_u = source_v - bus_v
    losses_kw = transformer_z.real * float(np.sum(np.abs(root_currents) ** 2)) / 1000.0
    neutral = abs(complex(np.sum(root_currents))) if include_neutral else None

    subtree_s: dict[int, float] = {}
    subtree_q: dict[int, float] = {}
    for circuit in topology.circuits:
        subtree_s[circuit.number] = sum(node_net_kva.get(n, 0.0) for n in circuit.node_ids)
        subtree_q[circuit.number] = sum(node_net_power_va.get(n, 0j).imag for n in circuit.node_ids) / 1000.0

    total_abs = sum(abs(s) for s in subtree_s.values())

    circuits = []
    for circuit in topology.circuits:
        s_kva = subtree_s[circuit.number]
        voltages = [node_voltages[n] for n in circuit.node_ids if n in node_voltages]
        share = abs(s_kva) / total_abs if total_abs > 0 else 0.0
        circuits.append(BusbarCircuit(
            number=circuit.number,
            cable_id=circuit.cable_id,
            subtree_s_kva=s_kva,
            subtree_q_kvar=subtree_q[circuit.number],
            direction="injection" if s_kva < 0 else "withdrawal",
            current_a=head_currents_a.get(circuit.cable_id, 0.0),
            delta_u_v=delta_u * share,
            voltage_bus_v=bus_v,
            min_node_voltage_v=min((v.voltages_v.min for v in voltages), default=bus_v),
            max_node_voltage_v=max((v.voltages_v.max for v in voltages), default=bus_v),
            node_count=len(circuit.node_ids),
        ))

    return VirtualBusbar(
        voltage_v=bus_v,
        current_a=float(np.max(np.abs(root_currents))) if root_currents.size else 0.0,
        neutral_current_a=neutral,
        net_s_kva=sum(node_net_kva.values()),
        delta_u_v=delta_u,
        delta_u_pct=delta_u / nominal * 100.0,
        losses_kw=losses_kw,
        circuits=tuple(circuits),
    )
