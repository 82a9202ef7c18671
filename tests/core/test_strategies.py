import pytest

from aidloop.api.models import MealEstimate
from aidloop.core.algorithms import (
    Applied,
    AutodriveStrategy,
    ConfirmedMealAdvisor,
    CycleAssessment,
    DosingStrategy,
    Fallthrough,
    FinalizedDose,
    GeneralFallback,
    SafetyHaltStrategy,
    ScheduledMealModeStrategy,
    StrategyResolver,
    meal_advisor_dose,
)
from aidloop.core.modulation import ModulationFactors
from aidloop.core.safety.refractory import RefractoryGate
from aidloop.core.safety.safety_decision import SafetyDecision

NEUTRAL = SafetyDecision(stop_basal=False, bolus_factor=1.0, reason="", is_low_glucose_risk=False)

RISING = {
    "glucose": 160.0,
    "delta": 6.0,
    "short_avg_delta": 4.0,
    "predicted_bg": 200.0,
    "eventual_bg": 220.0,
}


def make_assessment(threshold=70.0, hypo_blocked=False, safety=NEUTRAL, refractory=None, faults=None, modulation=None):
    return CycleAssessment(
        threshold=threshold,
        hypo_blocked=hypo_blocked,
        safety=safety,
        modulation=modulation or ModulationFactors(),
        refractory=refractory or RefractoryGate(),
        sensor_faults=list(faults or []),
    )


def test_applied_requires_an_intent():
    with pytest.raises(ValueError):
        Applied(source="x", reason="nothing")
    with pytest.raises(ValueError):
        Applied(source="x", reason="zero", bolus_units=0.0)
    with pytest.raises(ValueError):
        Applied(source="x", reason="negative", bolus_units=-1.0, basal_rate_uph=1.0)
    assert Applied(source="x", reason="basal", basal_rate_uph=0.0).basal_rate_uph == 0.0


@pytest.mark.parametrize(
    "carbs, carb_ratio, iob, expected",
    [
        (40.0, 10.0, 2.0, 2.6),
        (40.0, 10.0, 10.0, 1.0),
        (40.0, 10.0, 0.0, 4.0),
    ],
)
def test_meal_advisor_dose(carbs, carb_ratio, iob, expected):
    assert meal_advisor_dose(carbs, carb_ratio, iob) == pytest.approx(expected)


class TestSafetyHalt:
    def test_sensor_faults_halt(self, make_context):
        result = SafetyHaltStrategy().evaluate(make_context(), make_assessment(faults=["DATA_STALE: age 20 min"]))
        assert isinstance(result, Applied)
        assert result.suspend
        assert "data stale" in result.reason

    def test_noisy_data_halts(self, make_context):
        result = SafetyHaltStrategy().evaluate(make_context(), make_assessment(faults=["DATA_NOISY"]))
        assert "sensor data unusable" in result.reason

    def test_low_forecast_halts(self, make_context):
        context = make_context(glucose={"glucose": 90.0, "predicted_bg": 68.0})
        result = SafetyHaltStrategy().evaluate(context, make_assessment())
        assert isinstance(result, Applied)
        assert result.bolus_units == 0.0
        assert result.basal_rate_uph == 0.0
        assert "BG below threshold" in result.reason

    def test_hypo_guard_hold_halts(self, make_context):
        result = SafetyHaltStrategy().evaluate(make_context(), make_assessment(hypo_blocked=True))
        assert "hypo guard" in result.reason

    def test_clear_conditions_fall_through(self, make_context):
        assert isinstance(SafetyHaltStrategy().evaluate(make_context(), make_assessment()), Fallthrough)


class TestMealAdvisor:
    def test_fresh_estimate_is_advised(self, make_context):
        context = make_context(meal_estimate={"carbs": 40.0, "estimated_at": 95.0}, insulin={"iob": 2.0})
        result = ConfirmedMealAdvisor().evaluate(context, make_assessment())
        assert isinstance(result, Applied)
        assert result.explicit
        assert result.bolus_units == pytest.approx(2.6)
        assert result.basal_rate_uph == pytest.approx(context.preferences.meal_max_basal)

    def test_old_estimate_is_ignored(self, make_context):
        context = make_context(meal_estimate={"carbs": 40.0, "estimated_at": -30.0})
        assert isinstance(ConfirmedMealAdvisor().evaluate(context, make_assessment()), Fallthrough)

    def test_recent_bolus_blocks_advice(self, make_context):
        context = make_context(meal_estimate={"carbs": 40.0, "estimated_at": 95.0}, last_bolus_at=80.0)
        result = ConfirmedMealAdvisor().evaluate(context, make_assessment())
        assert isinstance(result, Fallthrough)
        assert "bolus" in result.reason

    def test_estimate_advised_once(self, make_context):
        refractory = RefractoryGate()
        refractory.record_meal_advice(MealEstimate(carbs=40.0, estimated_at=95.0))
        context = make_context(meal_estimate={"carbs": 40.0, "estimated_at": 95.0})
        result = ConfirmedMealAdvisor().evaluate(context, make_assessment(refractory=refractory))
        assert isinstance(result, Fallthrough)


class TestAutodrive:
    def test_rising_glucose_triggers_prebolus(self, make_context):
        context = make_context(glucose=RISING)
        result = AutodriveStrategy().evaluate(context, make_assessment())
        assert isinstance(result, Applied)
        assert not result.explicit
        assert result.bolus_units == pytest.approx(context.preferences.autodrive_large_prebolus)
        assert result.basal_rate_uph == pytest.approx(context.preferences.autodrive_max_basal)

    def test_moderate_rise_gets_small_prebolus(self, make_context):
        context = make_context(glucose=dict(RISING, delta=4.0, short_avg_delta=3.0))
        result = AutodriveStrategy().evaluate(context, make_assessment())
        assert result.bolus_units == pytest.approx(context.preferences.autodrive_small_prebolus)

    @pytest.mark.parametrize("modes", [{"sleep": True}, {"sport": True}, {"low_carb": True}])
    def test_suppressed_by_modes(self, make_context, modes):
        context = make_context(glucose=RISING, modes=modes)
        assert isinstance(AutodriveStrategy().evaluate(context, make_assessment()), Fallthrough)

    def test_cooldown(self, make_context):
        refractory = RefractoryGate()
        refractory.record_autodrive(80.0)
        context = make_context(glucose=RISING)
        result = AutodriveStrategy().evaluate(context, make_assessment(refractory=refractory))
        assert isinstance(result, Fallthrough)
        assert "cooldown" in result.reason

    def test_low_forecast_does_not_trigger(self, make_context):
        context = make_context(glucose=dict(RISING, predicted_bg=130.0))
        assert isinstance(AutodriveStrategy().evaluate(context, make_assessment()), Fallthrough)

    def test_decelerating_rise_does_not_trigger(self, make_context):
        context = make_context(glucose=dict(RISING, acceleration=-0.5))
        assert isinstance(AutodriveStrategy().evaluate(context, make_assessment()), Fallthrough)


class TestMealMode:
    def test_phase_one_prebolus(self, make_context):
        context = make_context(modes={"lunch": True, "runtimes_minutes": {"lunch": 3.0}})
        result = ScheduledMealModeStrategy().evaluate(context, make_assessment())
        assert isinstance(result, Applied)
        assert result.bolus_units == pytest.approx(2.5)
        assert result.explicit and result.bypass_refractory
        assert result.prebolus_key == "lunch@97:p1"

    def test_phase_two_prebolus(self, make_context):
        context = make_context(modes={"lunch": True, "runtimes_minutes": {"lunch": 20.0}})
        result = ScheduledMealModeStrategy().evaluate(context, make_assessment())
        assert result.bolus_units == pytest.approx(2.0)
        assert result.prebolus_key.endswith(":p2")

    def test_between_phases_only_basal(self, make_context):
        context = make_context(modes={"lunch": True, "runtimes_minutes": {"lunch": 10.0}})
        result = ScheduledMealModeStrategy().evaluate(context, make_assessment())
        assert result.bolus_units is None
        assert result.basal_rate_uph == pytest.approx(context.preferences.meal_max_basal)
        assert result.prebolus_key is None

    def test_snack_has_no_second_phase(self, make_context):
        context = make_context(modes={"snack": True, "runtimes_minutes": {"snack": 20.0}})
        result = ScheduledMealModeStrategy().evaluate(context, make_assessment())
        assert result.bolus_units is None

    def test_delivered_phase_is_not_repeated(self, make_context):
        refractory = RefractoryGate()
        refractory.record_prebolus("lunch@97:p1")
        context = make_context(modes={"lunch": True, "runtimes_minutes": {"lunch": 3.0}})
        result = ScheduledMealModeStrategy().evaluate(context, make_assessment(refractory=refractory))
        assert result.bolus_units is None
        assert "already delivered" in result.reason

    def test_most_specific_mode_wins(self, make_context):
        context = make_context(
            modes={"meal": True, "high_carb": True, "runtimes_minutes": {"meal": 3.0, "high_carb": 3.0}}
        )
        result = ScheduledMealModeStrategy().evaluate(context, make_assessment())
        assert result.bolus_units == pytest.approx(4.0)

    def test_expired_mode_falls_through(self, make_context):
        context = make_context(modes={"dinner": True, "runtimes_minutes": {"dinner": 90.0}})
        assert isinstance(ScheduledMealModeStrategy().evaluate(context, make_assessment()), Fallthrough)


class TestGeneralFallback:
    def test_correction_from_lower_forecast(self, make_context):
        context = make_context(glucose={"glucose": 200.0, "predicted_bg": 200.0, "eventual_bg": 180.0})
        proposal = GeneralFallback().propose(context, make_assessment())
        # (180 - 100) / 50 * 0.5
        assert proposal.bolus_units == pytest.approx(0.8)
        assert not proposal.blind

    def test_blind_uses_current_glucose(self, make_context):
        context = make_context(glucose={"glucose": 200.0, "predicted_bg": None, "eventual_bg": None, "prediction_series": ()})
        proposal = GeneralFallback().propose(context, make_assessment())
        assert proposal.blind
        assert proposal.bolus_units == pytest.approx(1.0)

    def test_below_target_proposes_nothing(self, make_context):
        context = make_context(glucose={"glucose": 90.0, "predicted_bg": 90.0, "eventual_bg": 90.0})
        assert GeneralFallback().propose(context, make_assessment()).bolus_units == 0.0

    def test_invalid_isf(self, make_context):
        context = make_context(profile={"isf": 0.0})
        assert GeneralFallback().propose(context, make_assessment()).bolus_units == 0.0


class _Fixed(DosingStrategy):
    def __init__(self, name, result):
        self.name = name
        self.result = result
        self.calls = 0

    def evaluate(self, context, assessment):
        self.calls += 1
        return self.result


def _finalizer(bolus):
    def finalize(applied, context, assessment):
        return FinalizedDose(
            bolus_units=bolus,
            basal_rate_uph=1.0,
            basal_duration_min=30,
            baseline_rate_uph=1.0,
            basal_step=0.05,
        )
    return finalize


def test_resolver_first_applied_wins(make_context):
    first = _Fixed("first", Fallthrough("nothing to do"))
    second = _Fixed("second", Applied(source="second", reason="second acted", bolus_units=1.0))
    third = _Fixed("third", Applied(source="third", reason="third acted", bolus_units=1.0))
    outcome = StrategyResolver([first, second, third], _finalizer(1.0)).resolve(make_context(), make_assessment())
    assert outcome.applied.source == "second"
    assert outcome.trail == ["first: skipped, nothing to do", "second: applied", "second acted"]
    assert third.calls == 0


def test_resolver_demotes_applied_without_effect(make_context):
    capped = _Fixed("capped", Applied(source="capped", reason="wanted 1 U", bolus_units=1.0))
    outcome = StrategyResolver([capped], _finalizer(0.0)).resolve(make_context(), make_assessment())
    assert outcome.applied is None
    assert outcome.trail == ["capped: skipped, wanted 1 U; no net effect after capping"]
