from typing import Optional

from aidloop.api.models import LoopContext
from aidloop.core.algorithms.base import Applied, CycleAssessment, DecisionResult, DosingStrategy, Fallthrough
from aidloop.core.safety.config import SafetyConfig


class SafetyHaltStrategy(DosingStrategy):
    """Zero basal and no bolus when glucose is at or heading below the threshold, or data is unusable."""

    name = "safety_halt"

    def __init__(self, halt_duration_minutes: int = 30, safety_config: Optional[SafetyConfig] = None):
        if safety_config is not None:
            halt_duration_minutes = safety_config.halt_duration_minutes
        self.halt_duration_minutes = halt_duration_minutes

    def _halt(self, reason: str) -> Applied:
        return Applied(
            source=self.name,
            reason=reason,
            bolus_units=0.0,
            basal_rate_uph=0.0,
            basal_duration_min=self.halt_duration_minutes,
            suspend=True,
        )

    def evaluate(self, context: LoopContext, assessment: CycleAssessment) -> DecisionResult:
        if assessment.sensor_faults:
            stale = any(fault.startswith("DATA_STALE") for fault in assessment.sensor_faults)
            label = "data stale" if stale else "sensor data unusable"
            return self._halt(f"safety halt: {label} ({'; '.join(assessment.sensor_faults)})")

        glucose = context.glucose
        lowest = min(glucose.glucose, glucose.predicted_or_glucose(), glucose.eventual_or_glucose())
        if lowest <= assessment.threshold:
            return self._halt(
                f"safety halt: BG below threshold (min of BG/predicted/eventual {lowest:.0f} "
                f"<= {assessment.threshold:.0f} mg/dL)"
            )
        if assessment.hypo_blocked:
            return self._halt(f"safety halt: hypo guard holding until BG stays above {assessment.threshold + 5:.0f} mg/dL")
        if assessment.safety.stop_basal:
            return self._halt(f"safety halt: {assessment.safety.reason}")

        return Fallthrough(f"BG {glucose.glucose:.0f} above threshold {assessment.threshold:.0f}")
