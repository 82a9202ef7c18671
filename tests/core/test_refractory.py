import pytest

from aidloop.api.models import MealEstimate
from aidloop.core.safety.refractory import RefractoryGate


def test_default_window_with_prediction(make_context):
    window, widened = RefractoryGate().interval_window(make_context())
    assert window == pytest.approx(5.0)
    assert not widened


def test_window_widens_when_prediction_missing(make_context):
    context = make_context(glucose={"prediction_series": ()})
    window, widened = RefractoryGate().interval_window(context)
    assert widened
    assert window == pytest.approx(7.5)


def test_blind_window_has_floor(make_context):
    context = make_context(glucose={"prediction_series": (150.0,)}, preferences={"smb_interval_minutes": 2.0})
    window, widened = RefractoryGate().interval_window(context)
    assert widened
    assert window == pytest.approx(5.0)


@pytest.mark.parametrize(
    "glucose, modes, expected",
    [
        ({"delta": 16.0}, {}, 1.0),
        ({}, {"sport": True}, 10.0),
        ({"glucose": 90.0}, {}, 10.0),
        ({"glucose": 90.0}, {"low_carb": True}, 20.0),
    ],
)
def test_window_adjustments(make_context, glucose, modes, expected):
    context = make_context(glucose=glucose, modes=modes)
    window, _ = RefractoryGate().interval_window(context)
    assert window == pytest.approx(expected)


def test_recent_bolus_is_blocked_unless_explicit(make_context):
    context = make_context(now=104.0, last_bolus_at=100.0)
    gate = RefractoryGate()
    allowed, reason = gate.check(context)
    assert not allowed
    assert "refractory" in reason
    assert gate.check(context, explicit=True)[0]
    assert gate.check(context, bypass=True)[0]


def test_gate_remembers_its_own_boluses(make_context):
    gate = RefractoryGate()
    gate.record_bolus(100.0, 0.5)
    context = make_context(now=103.0, last_bolus_at=60.0)
    assert gate.minutes_since_last_bolus(context) == pytest.approx(3.0)
    assert gate.last_bolus_units(context) == pytest.approx(0.5)
    assert not gate.check(context)[0]


def test_zero_bolus_is_not_recorded():
    gate = RefractoryGate()
    gate.record_bolus(100.0, 0.0)
    assert gate.state.last_bolus_at is None


def test_state_round_trip():
    gate = RefractoryGate()
    gate.record_bolus(10.0, 1.0)
    gate.record_autodrive(10.0)
    gate.record_meal_advice(MealEstimate(carbs=40.0, estimated_at=5.0))
    gate.record_prebolus("lunch@0:p1")

    restored = RefractoryGate()
    restored.set_state(gate.get_state())
    assert restored.get_state() == gate.get_state()
    assert restored.meal_estimate_advised(MealEstimate(carbs=40.0, estimated_at=5.0))
    assert restored.prebolus_delivered("lunch@0:p1")
    assert restored.minutes_since_autodrive(55.0) == pytest.approx(45.0)

    restored.reset()
    assert restored.get_state()["last_bolus_at"] is None


def test_non_finite_bolus_is_not_recorded():
    gate = RefractoryGate()
    gate.record_bolus(100.0, float("nan"))
    assert gate.state.last_bolus_at is None
    assert gate.state.last_bolus_units == 0.0
