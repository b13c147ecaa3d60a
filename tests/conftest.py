"""Shared test fixtures for LVFlow engine and application tests."""

from __future__ import annotations

import pytest

from lvflow.network.cable_library import CableMaterial, CableType
from lvflow.network.network_model import (
    Cable,
    ForcedModeConfig,
    LoadEntry,
    LoadModel,
    Node,
    ProductionEntry,
    Project,
    VoltageSystem,
)
from lvflow.network.transformer_model import find_transformer


def build_chain_project(
    loads_kva: tuple[float, ...] = (30.0, 30.0),
    productions_kva: tuple[float, ...] | None = None,
    length_m: float = 200.0,
    type_id: str = "baxb-95",
    voltage_system: VoltageSystem = VoltageSystem.TETRAPHASE_400V,
    load_model: LoadModel = LoadModel.BALANCED,
    transformer: str | None = "250kVA",
    source_voltage_v: float | None = None,
    **project_kwargs,
) -> Project:
    """Source followed by a chain of nodes n1..nN, one cable per node."""
    nodes = [Node("src", "Source", is_source=True, target_voltage_v=source_voltage_v)]
    cables = []
    previous = "src"
    for i, load in enumerate(loads_kva, start=1):
        nid = f"n{i}"
        prod = productions_kva[i - 1] if productions_kva else 0.0
        nodes.append(Node(
            nid,
            f"Node {i}",
            loads=[LoadEntry(f"{nid}-load", load)] if load else [],
            productions=[ProductionEntry(f"{nid}-pv", prod)] if prod else [],
        ))
        cables.append(Cable(f"c{i}", previous, nid, type_id, length_m=length_m))
        previous = nid

    tr = find_transformer(transformer, voltage_system.line_voltage_v) if transformer else None
    return Project(
        name="chain",
        voltage_system=voltage_system,
        nodes=nodes,
        cables=cables,
        transformer=tr,
        load_model=load_model,
        **project_kwargs,
    )


# ======================================================================
# Network fixtures
# ======================================================================

@pytest.fixture
def chain_builder():
    """Factory for source → n1 → ... → nN chains."""
    return build_chain_project


@pytest.fixture
def chain_project() -> Project:
    """Balanced 4-wire chain, 30 kVA on each of two nodes."""
    return build_chain_project()


@pytest.fixture
def unbalanced_project() -> Project:
    """4-wire chain with single-phase loads concentrated on phase A."""
    return build_chain_project(
        loads_kva=(20.0, 30.0, 20.0),
        load_model=LoadModel.UNBALANCED,
        unbalance_pct=40.0,
    )


@pytest.fixture
def resistive_type() -> CableType:
    """Cable type with no reactance."""
    return CableType("r-only", "Resistive", 0.5, 0.0, 1.5, 0.0, CableMaterial.CUIVRE)


# ======================================================================
# Forced mode fixtures
# ======================================================================

@pytest.fixture
def forced_project() -> Project:
    """Three-node 400 V 4-wire network measured at its leaf (231/229/227 V)."""
    return build_chain_project(
        loads_kva=(30.0, 30.0),
        load_model=LoadModel.UNBALANCED,
        source_voltage_v=410.0,
        forced_mode=ForcedModeConfig(
            measurement_node_id="n2",
            measured_voltages_v=(231.0, 229.0, 227.0),
            target_voltage_v=229.0,
            tolerance_v=0.5,
        ),
    )
