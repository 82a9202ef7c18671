import logging
from typing import Optional, Tuple

from aidloop.api.models import LoopContext
from aidloop.core.algorithms.base import Applied, CycleAssessment, DecisionResult, DosingStrategy, Fallthrough

logger = logging.getLogger("aidloop.strategies")

# Most specific first; only one mode drives a cycle.
MODE_PRIORITY: Tuple[str, ...] = ("high_carb", "dinner", "lunch", "breakfast", "meal", "snack")

PHASE_ONE_WINDOW = (0.0, 7.0)
PHASE_TWO_WINDOW = (15.0, 30.0)


def prebolus_phase(mode: str, runtime: float) -> Optional[int]:
    if PHASE_ONE_WINDOW[0] <= runtime <= PHASE_ONE_WINDOW[1]:
        return 1
    if mode != "snack" and PHASE_TWO_WINDOW[0] <= runtime <= PHASE_TWO_WINDOW[1]:
        return 2
    return None


class ScheduledMealModeStrategy(DosingStrategy):
    """
    Manual meal flags: a two-phase prebolus schedule and a temp basal at the
    meal ceiling for the first half hour. These are explicit user actions and
    skip the refractory gate; each phase is delivered once per activation.
    """

    name = "meal_mode"

    def __init__(self, basal_window_minutes: float = 30.0):
        self.basal_window_minutes = basal_window_minutes

    def evaluate(self, context: LoopContext, assessment: CycleAssessment) -> DecisionResult:
        modes = context.modes
        prefs = context.preferences
        active = [mode for mode in MODE_PRIORITY if modes.is_active(mode)]
        if not active:
            return Fallthrough("no meal mode active")

        mode = active[0]
        runtime = modes.runtime(mode)
        if runtime is None or runtime < 0:
            return Fallthrough(f"{mode} mode has no runtime")

        started_at = context.now - runtime
        bolus = None
        key = None
        notes = []
        phase = prebolus_phase(mode, runtime)
        if phase is not None:
            amounts = prefs.meal_prebolus.get(mode, (0.0, 0.0))
            amount = amounts[phase - 1]
            key = f"{mode}@{started_at:.0f}:p{phase}"
            if assessment.refractory.prebolus_delivered(key):
                notes.append(f"phase {phase} already delivered")
                key = None
            elif amount > 0:
                bolus = amount
                notes.append(f"phase {phase} prebolus {amount:.2f} U")

        basal = None
        if runtime <= self.basal_window_minutes:
            basal = prefs.meal_max_basal
            notes.append(f"meal basal {basal:.2f} U/h")

        if bolus is None and basal is None:
            return Fallthrough(f"{mode} mode at {runtime:.0f} min: outside prebolus and basal windows")

        reason = f"meal mode ({mode}, {runtime:.0f} min): " + ", ".join(notes)
        logger.info(reason)
        return Applied(
            source=self.name,
            reason=reason,
            bolus_units=bolus,
            basal_rate_uph=basal,
            basal_duration_min=30 if basal is not None else None,
            explicit=True,
            bypass_refractory=True,
            prebolus_key=key if bolus is not None else None,
        )
