"""Tests for lvflow.network.power_flow: backward/forward sweep, aggregates and busbar."""

from __future__ import annotations

import json
import math

import pytest

from lvflow.diagnostics import Diagnostics
from lvflow.errors import InvalidTopologyError
from lvflow.network.grid_codes import Compliance
from lvflow.network.network_model import (
    Cable,
    LoadEntry,
    LoadModel,
    Node,
    PhaseDistribution,
    PhaseShares,
    Scenario,
    VoltageSystem,
)
from lvflow.network.power_flow import ElectricalCalculator, unbalanced_shares
from lvflow.network.reinforcement import propose_cable_upgrades


def _balance(result) -> float:
    """Source power + production − load − losses (kW)."""
    return (
        result.source_power_kw
        + result.production_power_kw
        - result.load_power_kw
        - result.global_losses_kw
        - result.transformer_losses_kw
    )


# ======================================================================
# Conservation and symmetry
# ======================================================================


class TestConservation:
    """Energy balance of the sweep."""

    def test_balanced_withdrawal(self, chain_project):
        result = ElectricalCalculator().calculate_project(chain_project, Scenario.WITHDRAWAL)
        assert result.sweep_converged
        assert _balance(result) == pytest.approx(0.0, abs=1e-2), f"Imbalance {_balance(result):.6f} kW"

    def test_unbalanced_mixed_with_production(self, chain_builder):
        project = chain_builder(
            loads_kva=(20.0, 10.0, 25.0),
            productions_kva=(0.0, 36.0, 6.0),
            load_model=LoadModel.UNBALANCED,
            unbalance_pct=30.0,
        )
        result = ElectricalCalculator().calculate_project(project, Scenario.MIXED)
        assert result.total_productions_kva == pytest.approx(42.0)
        assert _balance(result) == pytest.approx(0.0, abs=1e-2), f"Imbalance {_balance(result):.6f} kW"

    def test_three_wire_unbalanced(self, chain_builder):
        project = chain_builder(
            voltage_system=VoltageSystem.TRIPHASE_230V,
            load_model=LoadModel.UNBALANCED,
            unbalance_pct=50.0,
            loads_kva=(10.0, 10.0),
        )
        result = ElectricalCalculator().calculate_project(project, Scenario.WITHDRAWAL)
        assert _balance(result) == pytest.approx(0.0, abs=1e-2)

    def test_losses_positive(self, chain_project):
        result = ElectricalCalculator().calculate_project(chain_project, Scenario.WITHDRAWAL)
        assert result.global_losses_kw > 0
        assert result.transformer_losses_kw > 0
        assert result.total_losses_kw == pytest.approx(result.global_losses_kw + result.transformer_losses_kw)


class TestBalancedSymmetry:
    """Balanced load model reports identical phases."""

    def test_phase_voltages_identical(self, chain_project):
        result = ElectricalCalculator().calculate_project(chain_project, Scenario.WITHDRAWAL)
        for nv in result.nodes.values():
            v = nv.voltages_v
            assert v.a == v.b == v.c, f"Node {nv.node_id} not symmetric: {v}"

    def test_phase_currents_identical(self, chain_project):
        result = ElectricalCalculator().calculate_project(chain_project, Scenario.WITHDRAWAL)
        for cable in result.cables:
            assert cable.currents_a.a == cable.currents_a.b == cable.currents_a.c
            assert cable.neutral_current_a == 0.0

    def test_phasors_rotated(self, chain_project):
        result = ElectricalCalculator().calculate_project(chain_project, Scenario.WITHDRAWAL)
        a, b, c = result.node("n2").phasors
        assert math.degrees(math.atan2(b.imag, b.real)) - math.degrees(math.atan2(a.imag, a.real)) == (
            pytest.approx(-120.0)
        )
        assert abs(a + b + c) < 1e-9


# ======================================================================
# Voltage drop behaviour
# ======================================================================


class TestVoltageDrop:
    """Drops along a feeder."""

    @staticmethod
    def _drops(chain_builder, resistive_type, load_kva: float) -> tuple[float, float]:
        project = chain_builder(
            loads_kva=(0.0, load_kva),
            type_id=resistive_type.id,
            transformer=None,
            cable_types=[resistive_type],
        )
        result = ElectricalCalculator().calculate_project(project, Scenario.WITHDRAWAL)
        u0 = result.node("src").mean_v
        return u0 - result.node("n1").mean_v, u0 - result.node("n2").mean_v

    def test_drop_monotonic_in_load(self, chain_builder, resistive_type):
        """Strictly increasing load strictly increases the drop at both nodes."""
        previous = (0.0, 0.0)
        for load in (5.0, 10.0, 20.0, 40.0):
            drop_a, drop_b = self._drops(chain_builder, resistive_type, load)
            assert drop_a > previous[0], f"drop at A did not increase at {load} kVA"
            assert drop_b > previous[1], f"drop at B did not increase at {load} kVA"
            assert drop_b >= drop_a
            previous = (drop_a, drop_b)

    def test_no_load_no_drop(self, chain_builder):
        project = chain_builder(loads_kva=(0.0, 0.0), transformer=None)
        result = ElectricalCalculator().calculate_project(project, Scenario.WITHDRAWAL)
        for nv in result.nodes.values():
            assert nv.mean_v == pytest.approx(400.0 / math.sqrt(3))

    def test_diversity_scales_loads(self, chain_project):
        calc = ElectricalCalculator()
        full = calc.calculate_project(chain_project, Scenario.WITHDRAWAL)
        half = calc.calculate_project(chain_project, Scenario.WITHDRAWAL, load_diversity_pct=50.0)
        assert half.total_loads_kva == pytest.approx(30.0)
        assert half.node("n2").mean_v > full.node("n2").mean_v

    def test_production_scenario_raises_voltage(self, chain_builder):
        project = chain_builder(loads_kva=(10.0, 10.0), productions_kva=(0.0, 60.0))
        result = ElectricalCalculator().calculate_project(project, Scenario.PRODUCTION)
        assert result.total_loads_kva == 0.0
        assert result.node("n2").mean_v > result.node("src").mean_v
        assert result.max_overvoltage_pct > 0
        assert result.virtual_busbar.circuits[0].direction == "injection"

    def test_three_wire_display_scale(self, chain_builder):
        project = chain_builder(voltage_system=VoltageSystem.TRIPHASE_230V, loads_kva=(0.0,), transformer=None)
        result = ElectricalCalculator().calculate_project(project, Scenario.WITHDRAWAL)
        assert result.node("n1").voltages_v.a == pytest.approx(230.0)
        assert result.nominal_v == pytest.approx(230.0)

    def test_compliance_critical_on_long_feeder(self, chain_builder):
        project = chain_builder(loads_kva=(25.0, 25.0), type_id="baxb-35", length_m=350.0)
        result = ElectricalCalculator().calculate_project(project, Scenario.WITHDRAWAL)
        assert result.compliance is Compliance.CRITICAL
        assert result.max_voltage_drop_pct == pytest.approx(result.node("n2").voltage_drop_pct)
        assert result.max_voltage_drop_circuit == 1


# ======================================================================
# Unbalanced model
# ======================================================================


class TestUnbalanced:
    """Per-phase sweep with neutral coupling."""

    def test_unbalance_split(self):
        shares = unbalanced_shares(30.0)
        assert shares.a == pytest.approx(100.0 / 3 * 1.3)
        assert shares.b == pytest.approx(shares.c)
        assert shares.a + shares.b + shares.c == pytest.approx(100.0)

    def test_loaded_phase_lowest(self, unbalanced_project):
        result = ElectricalCalculator().calculate_project(unbalanced_project, Scenario.WITHDRAWAL)
        v = result.node("n3").voltages_v
        assert v.a < v.b and v.a < v.c
        assert result.cable("c1").neutral_current_a > 0

    def test_three_wire_has_no_neutral(self, chain_builder):
        project = chain_builder(
            voltage_system=VoltageSystem.TRIPHASE_230V,
            load_model=LoadModel.UNBALANCED,
            unbalance_pct=40.0,
        )
        result = ElectricalCalculator().calculate_project(project, Scenario.WITHDRAWAL)
        assert all(c.neutral_current_a == 0.0 for c in result.cables)
        assert result.virtual_busbar.neutral_current_a is None
        # Star loads without a return path: the heavier phase only sees its own drop
        currents = result.cable("c1").currents_a
        assert currents.a > currents.b
        v = result.node("n2").voltages_v
        assert v.a < v.b and v.b == pytest.approx(v.c)

    def test_node_distribution_overrides_project(self, chain_builder):
        project = chain_builder(loads_kva=(0.0, 30.0), load_model=LoadModel.UNBALANCED)
        project.nodes[2].phase_distribution = PhaseDistribution(loads=PhaseShares(0.0, 0.0, 100.0))
        result = ElectricalCalculator().calculate_project(project, Scenario.WITHDRAWAL)
        currents = result.cable("c2").currents_a
        assert currents.a == pytest.approx(0.0, abs=1e-9)
        assert currents.c > 0

    def test_balanced_split_matches_balanced_model(self, chain_builder):
        """Equal shares in the unbalanced model reproduce the balanced result."""
        balanced = ElectricalCalculator().calculate_project(chain_builder(), Scenario.WITHDRAWAL)
        unbalanced = ElectricalCalculator().calculate_project(
            chain_builder(load_model=LoadModel.UNBALANCED), Scenario.WITHDRAWAL,
        )
        for nid in ("n1", "n2"):
            for a, b in zip(balanced.node(nid).voltages_v.as_tuple(), unbalanced.node(nid).voltages_v.as_tuple()):
                assert a == pytest.approx(b, abs=1e-6)


# ======================================================================
# Topology handling
# ======================================================================


class TestTopologyHandling:
    """Structural errors and disconnected parts."""

    def test_disconnected_nodes_excluded(self, chain_project):
        chain_project.nodes.append(Node("i1", loads=[LoadEntry("i1-load", 50.0)]))
        chain_project.nodes.append(Node("i2"))
        chain_project.cables.append(Cable("ci", "i1", "i2", "baxb-95", length_m=50.0))
        result = ElectricalCalculator().calculate_project(chain_project, Scenario.WITHDRAWAL)
        assert result.disconnected_node_ids == frozenset({"i1", "i2"})
        assert "i1" not in result.nodes
        assert result.total_loads_kva == pytest.approx(60.0)
        assert all(c.cable_id != "ci" for c in result.cables)

    def test_unknown_cable_type(self, chain_project):
        chain_project.cables[0].type_id = "mystery"
        with pytest.raises(InvalidTopologyError) as exc_info:
            ElectricalCalculator().calculate_project(chain_project, Scenario.WITHDRAWAL)
        assert exc_info.value.reason == InvalidTopologyError.UNKNOWN_CABLE_TYPE
        assert exc_info.value.element_id == "c1"

    def test_no_source(self, chain_project):
        chain_project.nodes[0].is_source = False
        with pytest.raises(InvalidTopologyError, match="no source"):
            ElectricalCalculator().calculate_project(chain_project, Scenario.WITHDRAWAL)


# ======================================================================
# Busbar, regulation table, diagnostics
# ======================================================================


class TestBusbarAndHooks:
    """Virtual busbar and solver hooks."""

    def test_virtual_busbar(self, chain_project):
        result = ElectricalCalculator().calculate_project(chain_project, Scenario.WITHDRAWAL)
        bus = result.virtual_busbar
        assert bus.voltage_v < 400.0 / math.sqrt(3)
        assert bus.losses_kw == pytest.approx(result.transformer_losses_kw)
        assert bus.net_s_kva == pytest.approx(60.0)
        assert len(bus.circuits) == 1
        assert bus.circuits[0].delta_u_v == pytest.approx(bus.delta_u_v)

    def test_ratio_table_applies_ideal_transformer(self, chain_project):
        result = ElectricalCalculator().calculate_project(
            chain_project, Scenario.WITHDRAWAL, regulation={"n1": (1.05, 1.05, 1.05)},
        )
        node = result.node("n1")
        assert node.voltages_v.a == pytest.approx(node.input_voltages_v.a * 1.05)
        assert _balance(result) == pytest.approx(0.0, abs=1e-2)

    def test_invalid_ratio_rejected(self, chain_project):
        with pytest.raises(ValueError, match="Invalid regulation ratios"):
            ElectricalCalculator().calculate_project(
                chain_project, Scenario.WITHDRAWAL, regulation={"n1": (1.0, 0.0, 1.0)},
            )

    def test_diagnostics_recorded(self, chain_project):
        diagnostics = Diagnostics(record=True)
        ElectricalCalculator(diagnostics=diagnostics).calculate_project(chain_project, Scenario.WITHDRAWAL)
        events = diagnostics.named("power_flow.sweep")
        assert len(events) == 1
        assert events[0].fields["converged"] is True

    def test_result_serializable(self, unbalanced_project):
        result = ElectricalCalculator().calculate_project(unbalanced_project, Scenario.MIXED)
        payload = json.loads(json.dumps(result.to_dict()))
        assert payload["scenario"] == "MIXTE"
        assert set(payload["nodes"]) == {"src", "n1", "n2", "n3"}


class TestReinforcement:
    """Cable upgrade proposals."""

    def test_upgrade_proposed_for_critical_drop(self, chain_builder):
        project = chain_builder(loads_kva=(25.0, 25.0), type_id="baxb-35", length_m=350.0)
        result = ElectricalCalculator().calculate_project(project, Scenario.WITHDRAWAL)
        recs = propose_cable_upgrades(result, project)
        assert recs, "Expected upgrade recommendations"
        upgrades = [r for r in recs if r["code"] == "VOLTAGE_DROP"]
        assert upgrades[0]["action"]["new_value"] == "baxb-50"
        assert {r["action"]["target_id"] for r in upgrades} == {"c1", "c2"}

    def test_no_recommendation_when_compliant(self, chain_project):
        result = ElectricalCalculator().calculate_project(chain_project, Scenario.WITHDRAWAL, load_diversity_pct=10.0)
        assert propose_cable_upgrades(result, chain_project) == []
