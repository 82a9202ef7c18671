from dataclasses import dataclass

from aidloop.api.models import LoopContext
from aidloop.core.algorithms.base import CycleAssessment
from aidloop.core.safety.dose_capper import BLIND_MODE_REASON


@dataclass(frozen=True)
class FallbackProposal:
    bolus_units: float
    reason: str
    blind: bool


class GeneralFallback:
    """
    Default path when no strategy takes the cycle. Proposes a correction from
    the lower of predicted and eventual BG; both its bolus and the basal are
    gated downstream. It may legitimately propose nothing.
    """

    name = "general_fallback"

    def propose(self, context: LoopContext, assessment: CycleAssessment) -> FallbackProposal:
        glucose = context.glucose
        profile = context.profile
        prefs = context.preferences
        blind = not glucose.prediction_available

        if blind:
            reference = glucose.glucose
            basis = f"BG {reference:.0f} ({BLIND_MODE_REASON})"
        else:
            reference = min(glucose.predicted_or_glucose(), glucose.eventual_or_glucose())
            basis = f"min(predicted, eventual) {reference:.0f}"

        if profile.isf <= 0:
            return FallbackProposal(0.0, f"fallback: invalid ISF {profile.isf}, no correction", blind)

        excess = reference - profile.target_bg
        correction = max(0.0, excess / profile.isf)
        units = correction * prefs.fallback_bolus_fraction * assessment.modulation.boost()
        reason = (
            f"fallback: {basis} vs target {profile.target_bg:.0f}, ISF {profile.isf:g} "
            f"-> correction {correction:.2f} U x{prefs.fallback_bolus_fraction:g} = {units:.2f} U proposed"
        )
        return FallbackProposal(units, reason, blind)
