import threading

import pytest

from aidloop.core.algorithms import DosingStrategy
from aidloop.core.orchestrator import INTERNAL_ERROR_REASON, DosingOrchestrator
from aidloop.core.review import ReviewVerdict, VerdictType
from aidloop.core.safety.config import SafetyConfig
from aidloop.core.safety.dose_capper import BLIND_MODE_REASON, effective_max_smb

HIGH_STEADY = {"glucose": 200.0, "delta": 1.0, "predicted_bg": 220.0, "eventual_bg": 230.0}


def test_low_glucose_halts_delivery(make_context):
    context = make_context(glucose={"glucose": 65.0, "predicted_bg": 65.0, "eventual_bg": 65.0})
    directive = DosingOrchestrator().run_cycle(context)
    assert directive.suspend
    assert directive.source == "safety_halt"
    assert directive.basal_rate_uph == 0.0
    assert directive.basal_duration_min == 30
    assert directive.bolus_units == 0.0
    assert any("safety halt: BG below threshold" in entry for entry in directive.reason_trail)


def test_rising_glucose_engages_autodrive(make_context):
    context = make_context(
        now=100.0,
        last_bolus_at=50.0,
        glucose={"glucose": 180.0, "delta": 6.0, "short_avg_delta": 4.0, "predicted_bg": 220.0, "eventual_bg": 240.0},
        insulin={"iob": 1.0},
        preferences={"max_iob": 6.0, "max_smb": 1.0, "max_smb_high_bg": 1.0},
    )
    orchestrator = DosingOrchestrator()
    directive = orchestrator.run_cycle(context)
    assert directive.source == "autodrive"
    assert 0.0 < directive.bolus_units <= 1.0
    assert directive.bolus_units == pytest.approx(0.85)
    assert directive.basal_rate_uph == pytest.approx(2.5)
    assert "autodrive: applied" in directive.reason_trail
    assert orchestrator.refractory.minutes_since_autodrive(100.0) == 0.0


def test_confirmed_meal_is_advised(make_context):
    context = make_context(
        meal_estimate={"carbs": 40.0, "estimated_at": 90.0},
        insulin={"iob": 2.0},
        profile={"carb_ratio": 10.0},
    )
    orchestrator = DosingOrchestrator()
    directive = orchestrator.run_cycle(context)
    assert directive.source == "meal_advisor"
    assert directive.explicit
    assert directive.bolus_units == pytest.approx(2.6)
    assert directive.basal_rate_uph == pytest.approx(3.0)

    # Same estimate on the next tick is not advised again.
    again = orchestrator.run_cycle(make_context(now=105.0, meal_estimate={"carbs": 40.0, "estimated_at": 90.0}))
    assert again.source != "meal_advisor"


def test_missing_prediction_runs_conservatively(make_context):
    context = make_context(
        glucose={"glucose": 200.0, "predicted_bg": None, "eventual_bg": None, "prediction_series": ()},
        preferences={"max_smb": 1.0, "max_smb_high_bg": 1.0},
    )
    directive = DosingOrchestrator().run_cycle(context)
    assert BLIND_MODE_REASON in directive.reason_trail
    assert 0.0 < directive.bolus_units <= 0.5


def test_iob_near_ceiling_limits_bolus(make_context):
    context = make_context(
        glucose={"glucose": 300.0, "predicted_bg": 300.0, "eventual_bg": 300.0},
        insulin={"iob": 5.9},
        preferences={"max_iob": 6.0},
    )
    directive = DosingOrchestrator().run_cycle(context)
    assert directive.bolus_units <= 0.1 + 1e-9


def test_second_tick_is_refractory(make_context):
    orchestrator = DosingOrchestrator()
    first = orchestrator.run_cycle(make_context(now=100.0, glucose=HIGH_STEADY))
    record = orchestrator.run_cycle_detailed(make_context(now=104.0, glucose=HIGH_STEADY))
    assert first.bolus_units > 0.0
    assert record.directive.bolus_units == 0.0
    assert "refractory" in record.audit.fired_gates()


def test_replay_with_restored_state_is_identical(make_context):
    orchestrator = DosingOrchestrator()
    orchestrator.run_cycle(make_context(now=90.0, glucose=HIGH_STEADY))
    snapshot = orchestrator.get_state()

    context = make_context(now=100.0, glucose=HIGH_STEADY)
    first = orchestrator.run_cycle(context)
    orchestrator.set_state(snapshot)
    second = orchestrator.run_cycle(context)
    assert first == second


def test_reset_clears_cycle_state(make_context):
    orchestrator = DosingOrchestrator()
    orchestrator.run_cycle(make_context(glucose=HIGH_STEADY))
    orchestrator.reset()
    assert orchestrator.get_state()["refractory"]["last_bolus_at"] is None


@pytest.mark.parametrize("bg", [80.0, 130.0, 190.0, 320.0])
@pytest.mark.parametrize("delta", [-4.0, 0.0, 3.0, 7.0])
@pytest.mark.parametrize("iob", [0.0, 4.0, 6.5])
def test_directive_respects_ceilings(make_context, bg, delta, iob):
    context = make_context(
        glucose={"glucose": bg, "delta": delta, "short_avg_delta": delta, "predicted_bg": bg + 6 * delta,
                 "eventual_bg": bg + 10 * delta},
        insulin={"iob": iob},
    )
    directive = DosingOrchestrator().run_cycle(context)
    profile = context.profile
    assert directive.bolus_units >= 0.0
    assert directive.basal_rate_uph >= 0.0
    assert directive.basal_rate_uph <= profile.max_safe_basal() + 1e-9
    assert directive.bolus_units <= min(effective_max_smb(context), max(0.0, context.preferences.max_iob - iob)) + 1e-9
    assert directive.reason_trail


def test_strategy_error_suspends(make_context):
    class Broken(DosingStrategy):
        name = "broken"

        def evaluate(self, context, assessment):
            raise RuntimeError("boom")

    directive = DosingOrchestrator(strategies=[Broken()]).run_cycle(make_context(glucose=HIGH_STEADY))
    assert directive.suspend
    assert directive.bolus_units == 0.0
    assert directive.basal_rate_uph == 0.0
    assert directive.reason_trail == (INTERNAL_ERROR_REASON,)


def test_stale_data_halts(make_context):
    directive = DosingOrchestrator().run_cycle(make_context(glucose={"glucose": 200.0, "age_minutes": 20.0}))
    assert directive.suspend
    assert any("data stale" in entry for entry in directive.reason_trail)


def test_failing_modulation_provider_is_neutral(make_context):
    class Failing:
        def factor(self, context):
            raise ConnectionError("unreachable")

    plain = DosingOrchestrator().run_cycle(make_context(glucose=HIGH_STEADY))
    modulated = DosingOrchestrator(modulation_providers={"physio": Failing()}).run_cycle(
        make_context(glucose=HIGH_STEADY)
    )
    assert modulated == plain


def test_out_of_range_modulation_is_clamped(make_context):
    orchestrator = DosingOrchestrator()
    orchestrator.run_cycle(make_context(glucose=HIGH_STEADY, modulation={"physio": 3.0, "hormonal": 0.1}))
    assert orchestrator.get_state()["modulation"]["last_known_good"] == {
        "physio": 1.15,
        "hormonal": 0.85,
    }


class _Reviewer:
    def __init__(self, verdict=None, error=None, delay=None):
        self.verdict = verdict
        self.error = error
        self.delay = delay
        self.calls = 0

    def review(self, directive, context):
        self.calls += 1
        if self.delay is not None:
            self.delay.wait(2.0)
        if self.error is not None:
            raise self.error
        return self.verdict


def _reviewed(make_context, reviewer, config=None):
    orchestrator = DosingOrchestrator(safety_config=config, reviewer=reviewer)
    try:
        return orchestrator.run_cycle(make_context(glucose=HIGH_STEADY))
    finally:
        orchestrator.close()


def test_reviewer_can_soften(make_context):
    baseline = DosingOrchestrator().run_cycle(make_context(glucose=HIGH_STEADY))
    directive = _reviewed(make_context, _Reviewer(ReviewVerdict(VerdictType.SOFTEN, smb_factor=0.5)))
    assert directive.bolus_units == pytest.approx(baseline.bolus_units * 0.5, abs=0.05)
    assert directive.bolus_units <= baseline.bolus_units
    assert directive.reason_trail[-1].startswith("review: soften")


def test_reviewer_cannot_increase_bolus(make_context):
    baseline = DosingOrchestrator().run_cycle(make_context(glucose=HIGH_STEADY))
    directive = _reviewed(make_context, _Reviewer(ReviewVerdict(VerdictType.SOFTEN, smb_factor=4.0)))
    assert directive.bolus_units == pytest.approx(baseline.bolus_units)


def test_reviewer_shift_to_tbr(make_context):
    verdict = ReviewVerdict(VerdictType.SHIFT_TO_TBR, smb_factor=0.0, tbr_factor=1.2)
    directive = _reviewed(make_context, _Reviewer(verdict))
    assert directive.bolus_units == 0.0
    assert directive.basal_rate_uph == pytest.approx(1.2)


def test_low_confidence_verdict_is_ignored(make_context):
    baseline = DosingOrchestrator().run_cycle(make_context(glucose=HIGH_STEADY))
    verdict = ReviewVerdict(VerdictType.SOFTEN, smb_factor=0.0, confidence=0.1)
    directive = _reviewed(make_context, _Reviewer(verdict))
    assert directive.bolus_units == pytest.approx(baseline.bolus_units)
    assert "ignored" in directive.reason_trail[-1]


def test_reviewer_failure_keeps_directive(make_context):
    baseline = DosingOrchestrator().run_cycle(make_context(glucose=HIGH_STEADY))
    directive = _reviewed(make_context, _Reviewer(error=RuntimeError("model offline")))
    assert directive.bolus_units == pytest.approx(baseline.bolus_units)
    assert directive.reason_trail[-1] == "review: failed, directive unchanged"


def test_reviewer_timeout_keeps_directive(make_context):
    release = threading.Event()
    reviewer = _Reviewer(ReviewVerdict(VerdictType.SOFTEN, smb_factor=0.0), delay=release)
    try:
        directive = _reviewed(make_context, reviewer, SafetyConfig(reviewer_timeout_seconds=0.05))
    finally:
        release.set()
    assert directive.bolus_units > 0.0
    assert directive.reason_trail[-1] == "review: timed out, directive unchanged"


def test_explicit_and_suspend_directives_are_not_reviewed(make_context):
    reviewer = _Reviewer(ReviewVerdict(VerdictType.SOFTEN, smb_factor=0.0))
    orchestrator = DosingOrchestrator(reviewer=reviewer)
    meal = orchestrator.run_cycle(make_context(meal_estimate={"carbs": 40.0, "estimated_at": 95.0}))
    low = orchestrator.run_cycle(make_context(now=110.0, glucose={"glucose": 60.0, "predicted_bg": 60.0, "eventual_bg": 60.0}))
    orchestrator.close()
    assert meal.explicit and meal.bolus_units > 0.0
    assert low.suspend
    assert reviewer.calls == 0


class _HangsOnce(_Reviewer):
    def review(self, directive, context):
        self.calls += 1
        if self.calls == 1:
            self.delay.wait(2.0)
        return self.verdict


def test_hung_reviewer_does_not_block_later_reviews(make_context):
    release = threading.Event()
    reviewer = _HangsOnce(ReviewVerdict(VerdictType.SOFTEN, smb_factor=0.5), delay=release)
    orchestrator = DosingOrchestrator(safety_config=SafetyConfig(reviewer_timeout_seconds=0.5), reviewer=reviewer)
    try:
        first = orchestrator.run_cycle(make_context(glucose=HIGH_STEADY))
        second = orchestrator.run_cycle(make_context(now=200.0, glucose=HIGH_STEADY))
    finally:
        release.set()
        orchestrator.close()
    assert first.reason_trail[-1] == "review: timed out, directive unchanged"
    assert second.reason_trail[-1].startswith("review: soften")
    assert reviewer.calls == 2


@pytest.mark.parametrize(
    "glucose",
    [
        {"glucose": 250.0, "delta": float("nan"), "predicted_bg": 260.0, "eventual_bg": 260.0},
        {"glucose": 250.0, "delta": float("nan"), "short_avg_delta": 5.0, "predicted_bg": 260.0, "eventual_bg": 260.0},
        {"glucose": 250.0, "delta": 6.0, "acceleration": float("inf"), "predicted_bg": 260.0, "eventual_bg": 260.0},
    ],
)
def test_non_finite_trend_halts_without_dosing(make_context, glucose):
    orchestrator = DosingOrchestrator()
    directive = orchestrator.run_cycle(make_context(glucose=glucose))
    assert directive.suspend
    assert directive.source == "safety_halt"
    assert directive.bolus_units == 0.0
    assert any("sensor data unusable" in entry for entry in directive.reason_trail)
    assert orchestrator.refractory.state.last_bolus_at is None


def test_sensor_fault_restarts_hypo_release_hold(make_context):
    def low(now, bg, **extra):
        return make_context(now=now, glucose=dict({"glucose": bg, "predicted_bg": bg, "eventual_bg": bg}, **extra))

    orchestrator = DosingOrchestrator()
    assert orchestrator.run_cycle(low(0.0, 60.0)).suspend
    assert orchestrator.run_cycle(low(5.0, 80.0)).suspend
    assert orchestrator.hypo_guard.state.clear_candidate_since == 5.0

    assert orchestrator.run_cycle(low(8.0, 80.0, age_minutes=20.0)).suspend
    assert orchestrator.hypo_guard.state.clear_candidate_since is None

    # Five minutes after the first clear reading, but the hold was broken.
    held = orchestrator.run_cycle(low(10.0, 80.0))
    assert held.suspend
    assert any("hypo guard holding" in entry for entry in held.reason_trail)
    assert orchestrator.hypo_guard.state.clear_candidate_since == 10.0

    orchestrator.run_cycle(low(15.0, 80.0))
    assert orchestrator.hypo_guard.state.last_blocked_at is None
