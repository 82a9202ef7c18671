import logging

from aidloop.api.models import LoopContext
from aidloop.core.algorithms.base import Applied, CycleAssessment, DecisionResult, DosingStrategy, Fallthrough

logger = logging.getLogger("aidloop.strategies")


class AutodriveStrategy(DosingStrategy):
    """
    Predictive acceleration for unannounced meals: when glucose is above a
    floor and rising with momentum, deliver a prebolus and raise the basal.
    """

    name = "autodrive"

    def evaluate(self, context: LoopContext, assessment: CycleAssessment) -> DecisionResult:
        prefs = context.preferences
        modes = context.modes
        glucose = context.glucose
        bg = glucose.glucose

        if not prefs.autodrive_enabled:
            return Fallthrough("disabled")
        if modes.sleep or modes.sport or modes.low_carb:
            return Fallthrough("sleep/sport/low-carb mode active")
        if modes.meal_mode_within(30.0):
            return Fallthrough("meal mode active in the last 30 min")
        if bg < prefs.autodrive_bg_floor:
            return Fallthrough(f"BG {bg:.0f} below floor {prefs.autodrive_bg_floor:.0f}")

        since = assessment.refractory.minutes_since_autodrive(context.now)
        if since is not None and since < prefs.autodrive_cooldown_minutes:
            return Fallthrough(f"cooldown: {since:.0f} min since last autodrive < {prefs.autodrive_cooldown_minutes:.0f}")

        combined = glucose.combined_delta
        if combined < prefs.autodrive_min_delta or glucose.delta <= 0:
            return Fallthrough(f"no momentum (delta {glucose.delta:.1f}, combined {combined:.1f})")
        if glucose.acceleration < -0.15:
            return Fallthrough(f"rise decelerating ({glucose.acceleration:.2f})")

        predicted = glucose.predicted_or_glucose()
        if predicted <= prefs.autodrive_min_predicted:
            return Fallthrough(f"predicted {predicted:.0f} <= {prefs.autodrive_min_predicted:.0f}")

        strong = (
            bg >= 100.0
            and glucose.delta >= prefs.autodrive_strong_delta
            and glucose.short_avg_delta >= prefs.autodrive_min_delta
        )
        units = prefs.autodrive_large_prebolus if strong else prefs.autodrive_small_prebolus
        label = "strong" if strong else "moderate"
        reason = (
            f"autodrive: {label} rise (BG {bg:.0f}, delta {glucose.delta:.1f}, combined {combined:.1f}) "
            f"-> {units:.2f} U + basal {prefs.autodrive_max_basal:.2f} U/h"
        )
        logger.info(reason)
        return Applied(
            source=self.name,
            reason=reason,
            bolus_units=units,
            basal_rate_uph=prefs.autodrive_max_basal,
            basal_duration_min=30,
        )
