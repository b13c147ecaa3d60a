"""Tests for lvflow.simulation.neutral_compensator: EQUI8 closed-form model."""

from __future__ import annotations

import cmath
import math

import pytest

from lvflow.network.results import NodeVoltage, PhaseValues
from lvflow.simulation.neutral_compensator import (
    CompensatorStatus,
    NeutralCompensatorConfig,
    compensate,
    compute_equi8,
    propagate_downstream,
    shift_node_voltage,
)

VOLTAGES = (231.0, 229.0, 227.0)


def _node(node_id: str, voltages: tuple[float, float, float]) -> NodeVoltage:
    phasors = tuple(cmath.rect(v, math.radians(a)) for v, a in zip(voltages, (0.0, -120.0, 120.0)))
    return NodeVoltage(
        node_id=node_id,
        circuit_number=1,
        voltages_v=PhaseValues(*voltages),
        input_voltages_v=PhaseValues(*voltages),
        phasors=phasors,
        nominal_v=230.94,
    )


# ======================================================================
# Closed-form model
# ======================================================================


class TestComputeEqui8:
    """Reference values of the fitted formulas."""

    def test_reference_case(self):
        comp = compute_equi8(VOLTAGES, 0.2, 0.2)
        assert comp.mean_v == pytest.approx(229.0)
        assert comp.spread_init_v == pytest.approx(4.0)
        assert comp.ratios == pytest.approx((0.5, 0.0, -0.5))
        assert comp.corrected_v == pytest.approx((229.834, 229.0, 228.166), abs=1e-3)
        assert comp.current_a == pytest.approx(5.742, abs=1e-3)
        assert comp.warning is None

    def test_spread_reduced(self):
        comp = compute_equi8(VOLTAGES, 0.5, 0.2)
        assert comp.spread_equi8_v < comp.spread_init_v
        assert sum(comp.corrected_v) / 3 == pytest.approx(comp.mean_v)

    def test_low_impedance_warning(self):
        comp = compute_equi8(VOLTAGES, 0.1, 0.2)
        assert comp.warning is not None and "validity domain" in comp.warning
        assert comp.current_a > 0, "Result is still computed outside the validity domain"

    def test_balanced_voltages_no_correction(self):
        comp = compute_equi8((230.0, 230.0, 230.0), 0.2, 0.2)
        assert comp.current_a == 0.0
        assert comp.corrected_v == (230.0, 230.0, 230.0)

    def test_non_positive_impedance(self):
        with pytest.raises(ValueError, match="positive"):
            compute_equi8(VOLTAGES, 0.0, 0.2)


# ======================================================================
# Device behaviour
# ======================================================================


class TestCompensate:
    """Activation threshold, rating and neutral current reduction."""

    @staticmethod
    def _config(**kwargs) -> NeutralCompensatorConfig:
        return NeutralCompensatorConfig("e1", "n2", zph_ohm=0.2, zn_ohm=0.2, **kwargs)

    def test_active(self):
        result, computation = compensate(self._config(), VOLTAGES, 10.0)
        assert result.status is CompensatorStatus.ACTIVE
        assert computation is not None
        assert result.compensator_current_a == pytest.approx(5.742, abs=1e-3)
        assert result.neutral_current_after_a == pytest.approx(4.258, abs=1e-3)
        assert result.reduction_pct == pytest.approx(57.42, abs=1e-2)
        assert result.compensation_kva == pytest.approx(3 * 229.0 * result.compensator_current_a / 1000.0)

    def test_neutral_current_floor(self):
        """The device never reports a negative residual neutral current."""
        result, _ = compensate(self._config(), VOLTAGES, 5.5)
        assert result.neutral_current_after_a == 0.0
        assert result.reduction_pct == pytest.approx(100.0)

    def test_limited_rescales(self):
        free, _ = compensate(self._config(), VOLTAGES, 10.0)
        result, _ = compensate(self._config(max_power_kva=2.0), VOLTAGES, 10.0)
        factor = 2.0 / free.compensation_kva
        assert result.status is CompensatorStatus.LIMITED
        assert result.limited
        assert result.compensation_kva == pytest.approx(2.0)
        assert result.compensator_current_a == pytest.approx(free.compensator_current_a * factor)
        assert result.corrected_voltages_v.a == pytest.approx(231.0 + (free.corrected_voltages_v.a - 231.0) * factor)

    def test_idle_below_threshold(self):
        result, computation = compensate(self._config(), VOLTAGES, 3.0)
        assert result.status is CompensatorStatus.IDLE
        assert computation is None
        assert result.corrected_voltages_v == result.initial_voltages_v
        assert result.neutral_current_after_a == 3.0

    def test_invalid_config(self):
        with pytest.raises(ValueError, match="max power"):
            NeutralCompensatorConfig("e1", "n1", max_power_kva=0.0)

    def test_to_dict(self):
        result, _ = compensate(self._config(), VOLTAGES, 10.0)
        payload = result.to_dict()
        assert payload["status"] == "active"
        assert payload["corrected_voltages_v"]["A"] == pytest.approx(229.834, abs=1e-3)


# ======================================================================
# Propagation
# ======================================================================


class TestPropagation:
    """Single-pass correction of downstream nodes."""

    def test_shift_keeps_angles(self):
        node = _node("n1", VOLTAGES)
        shifted = shift_node_voltage(node, (1.0, 0.0, -1.0))
        assert shifted.voltages_v.as_tuple() == pytest.approx((232.0, 229.0, 226.0))
        assert abs(shifted.phasors[0]) == pytest.approx(232.0)
        assert cmath.phase(shifted.phasors[1]) == pytest.approx(cmath.phase(node.phasors[1]))

    def test_downstream_extra_drop(self):
        nodes = {"n1": _node("n1", VOLTAGES), "n2": _node("n2", (230.0, 228.0, 226.0))}
        shifts = (-1.0, 0.0, 1.0)
        updated = propagate_downstream(nodes, "n1", shifts, 5.0, {"n2": 0.1})
        assert updated["n1"].voltages_v.as_tuple() == pytest.approx((230.0, 229.0, 228.0))
        # n2 gets the device shift minus 5 A × 0.1 Ω
        assert updated["n2"].voltages_v.as_tuple() == pytest.approx((228.5, 227.5, 226.5))
        assert nodes["n2"].voltages_v.a == 230.0, "Input mapping must not be modified"
