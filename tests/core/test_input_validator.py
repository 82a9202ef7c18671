import math

import pytest

from aidloop.api.models import GlucoseStatus
from aidloop.core.safety.input_validator import InputValidator


def test_fresh_reading_is_usable():
    validator = InputValidator()
    assert validator.assess(GlucoseStatus(glucose=120.0, age_minutes=3.0), current_time=0.0) == []
    assert validator.get_state() == {"last_valid_glucose": 120.0, "last_validation_time": 0.0}


def test_missing_data():
    validator = InputValidator()
    assert validator.assess(None, current_time=0.0)[0].startswith("DATA_MISSING")
    assert validator.assess(GlucoseStatus(glucose=math.nan), current_time=0.0)[0].startswith("DATA_MISSING")


@pytest.mark.parametrize("age", [12.5, 60.0, -6.0])
def test_stale_reading(age):
    faults = InputValidator().assess(GlucoseStatus(glucose=120.0, age_minutes=age), current_time=0.0)
    assert faults and faults[0].startswith("DATA_STALE")


def test_noisy_reading():
    faults = InputValidator().assess(GlucoseStatus(glucose=120.0, noise=3.0), current_time=0.0)
    assert faults == ["DATA_NOISY: noise level 3.0"]


@pytest.mark.parametrize("glucose", [5.0, 38.0])
def test_sensor_error_values(glucose):
    faults = InputValidator().assess(GlucoseStatus(glucose=glucose), current_time=0.0)
    assert faults[0].startswith("SENSOR_ERROR")


def test_rejects_unrealistic_glucose_jump():
    validator = InputValidator(max_glucose_delta_per_5_min=20.0)
    assert validator.assess(GlucoseStatus(glucose=100.0), current_time=0.0) == []

    faults = validator.assess(GlucoseStatus(glucose=200.0), current_time=5.0)
    assert faults[0].startswith("RATE_OF_CHANGE_ERROR")
    # A rejected reading does not become the new reference.
    assert validator.last_valid_glucose == 100.0


def test_jump_allowance_scales_with_elapsed_time():
    validator = InputValidator(max_glucose_delta_per_5_min=20.0)
    validator.assess(GlucoseStatus(glucose=100.0), current_time=0.0)
    assert validator.assess(GlucoseStatus(glucose=150.0), current_time=15.0) == []


def test_state_round_trip():
    validator = InputValidator()
    validator.assess(GlucoseStatus(glucose=110.0), current_time=10.0)
    restored = InputValidator()
    restored.set_state(validator.get_state())
    assert restored.get_state() == validator.get_state()
    restored.reset()
    assert restored.last_valid_glucose is None


@pytest.mark.parametrize("field", ["delta", "short_avg_delta", "long_avg_delta", "acceleration"])
@pytest.mark.parametrize("value", [math.nan, math.inf])
def test_non_finite_trend_is_a_fault(field, value):
    validator = InputValidator()
    faults = validator.assess(GlucoseStatus(glucose=250.0, **{field: value}), current_time=0.0)
    assert faults == [f"DATA_NOISY: non-finite trend values ({field})"]
    assert validator.last_valid_glucose is None
