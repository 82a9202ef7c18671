import logging

from aidloop.api.models import LoopContext
from aidloop.core.algorithms.base import Applied, CycleAssessment, DecisionResult, DosingStrategy, Fallthrough

logger = logging.getLogger("aidloop.strategies")

IOB_DISCOUNT = 0.7
MINIMUM_COVERAGE = 0.25


def meal_advisor_dose(carbs: float, carb_ratio: float, iob: float) -> float:
    """
    Insulin for a confirmed meal: carb need minus 70% of IOB, but never less
    than a quarter of the carb need.
    """
    need = carbs / carb_ratio
    return max(need - IOB_DISCOUNT * max(iob, 0.0), MINIMUM_COVERAGE * need)


class ConfirmedMealAdvisor(DosingStrategy):
    """Acts on an externally confirmed carb estimate (e.g. a meal photo)."""

    name = "meal_advisor"

    def evaluate(self, context: LoopContext, assessment: CycleAssessment) -> DecisionResult:
        estimate = context.meal_estimate
        prefs = context.preferences
        if estimate is None:
            return Fallthrough("no meal estimate")

        age = context.now - estimate.estimated_at
        if age < 0 or age > prefs.meal_advisor_window_minutes:
            return Fallthrough(f"meal estimate is {age:.0f} min old, outside {prefs.meal_advisor_window_minutes:.0f} min window")
        if estimate.carbs <= 0:
            return Fallthrough("meal estimate has no carbs")
        if assessment.refractory.meal_estimate_advised(estimate):
            return Fallthrough("meal estimate already advised")

        since = assessment.refractory.minutes_since_last_bolus(context)
        if since is not None and since < prefs.meal_advisor_refractory_minutes:
            return Fallthrough(f"bolus {since:.0f} min ago, within {prefs.meal_advisor_refractory_minutes:.0f} min")

        carb_ratio = context.profile.carb_ratio
        if carb_ratio <= 0:
            logger.warning("carb_ratio=%s is not positive, meal advisor skipped", carb_ratio)
            return Fallthrough("invalid carb ratio")

        iob = context.insulin.iob
        need = estimate.carbs / carb_ratio
        units = meal_advisor_dose(estimate.carbs, carb_ratio, iob)
        reason = (
            f"meal advisor: {estimate.carbs:.0f} g / CR {carb_ratio:g} = {need:.2f} U, "
            f"IOB {iob:.2f} U discounted {IOB_DISCOUNT * max(iob, 0.0):.2f} U, "
            f"floor {MINIMUM_COVERAGE * need:.2f} U -> {units:.2f} U + basal boost"
        )
        logger.info(reason)
        return Applied(
            source=self.name,
            reason=reason,
            bolus_units=units,
            basal_rate_uph=prefs.meal_max_basal,
            basal_duration_min=30,
            explicit=True,
        )
