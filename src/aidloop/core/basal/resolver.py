from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from aidloop.api.models import LoopContext
from aidloop.core.modulation import ModulationFactors
from aidloop.core.quantizer import quantize_down, round_to_step
from aidloop.core.safety.config import SafetyConfig
from aidloop.core.safety.safety_decision import SafetyDecision

logger = logging.getLogger("aidloop.basal")


@dataclass
class BasalResolution:
    rate_uph: float
    duration_min: int
    override_safety: bool
    cap_uph: float
    reasons: List[str] = field(default_factory=list)

    def __iter__(self):
        # Unpacks as (rate, duration, override_safety).
        return iter((self.rate_uph, self.duration_min, self.override_safety))


def baseline_rate(context: LoopContext) -> float:
    profile = context.profile
    return round_to_step(profile.current_basal * profile.sensitivity_ratio, profile.basal_step)


class BasalRateResolver:
    """
    Temp basal for a cycle: base rate, trend adjustment, optional strategy
    boost, meal-mode window, persistent-rise floor, exercise band, then the
    hard clamp. ``max_basal`` is never exceeded, even under an explicit bypass.
    """

    def __init__(self,
                 duration_minutes: int = 30,
                 persistent_rise_floor_fraction: float = 0.8,
                 meal_window_minutes: float = 30.0,
                 safety_config: Optional[SafetyConfig] = None):
        if safety_config is not None:
            duration_minutes = safety_config.basal_duration_minutes
            persistent_rise_floor_fraction = safety_config.persistent_rise_floor_fraction
            meal_window_minutes = safety_config.meal_basal_window_minutes

        self.duration_minutes = duration_minutes
        self.persistent_rise_floor_fraction = persistent_rise_floor_fraction
        self.meal_window_minutes = meal_window_minutes

    def resolve(
        self,
        context: LoopContext,
        safety: SafetyDecision,
        modulation: Optional[ModulationFactors] = None,
        boost_rate: Optional[float] = None,
        explicit: bool = False,
    ) -> BasalResolution:
        profile = context.profile
        glucose = context.glucose
        modulation = modulation or ModulationFactors()
        profile_basal = max(profile.current_basal, 0.0)
        reasons: List[str] = []
        override_safety = explicit

        base = round_to_step(profile_basal * profile.sensitivity_ratio * modulation.combined(), profile.basal_step)
        reasons.append(f"base {base:.2f} U/h")

        rate = self._trend_adjust(base, profile_basal, context, safety, reasons)

        if boost_rate is not None and boost_rate > rate:
            reasons.append(f"strategy boost {rate:.2f} -> {boost_rate:.2f} U/h")
            rate = boost_rate

        meal_rate = self._meal_window_rate(context)
        if meal_rate is not None and not self._predicted_low(context):
            reasons.append(f"meal-mode basal {meal_rate:.2f} U/h")
            rate = max(rate, meal_rate)
            override_safety = True

        if glucose.short_avg_delta > 0 and glucose.glucose > profile.target_bg:
            floor = self.persistent_rise_floor_fraction * profile_basal
            if rate < floor:
                reasons.append(f"persistent rise floor {floor:.2f} U/h")
                rate = floor

        if context.modes.sport:
            rate = self._activity_band(rate, profile_basal, context, reasons)

        if safety.stop_basal:
            reasons.append("safety stop")
            rate = 0.0

        if override_safety:
            cap = max(profile.max_basal, 0.0)
        else:
            cap = profile.max_safe_basal()
        if rate > cap:
            reasons.append(f"capped {rate:.2f} -> {cap:.2f} U/h")
        # quantizing can round up past an inexact float cap
        rate = min(quantize_down(min(max(rate, 0.0), cap), profile.basal_step), cap)

        logger.debug("Basal %.2f U/h (cap %.2f, override=%s): %s", rate, cap, override_safety, "; ".join(reasons))
        return BasalResolution(
            rate_uph=rate,
            duration_min=self.duration_minutes,
            override_safety=override_safety,
            cap_uph=cap,
            reasons=reasons,
        )

    @staticmethod
    def _predicted_low(context: LoopContext) -> bool:
        return context.glucose.predicted_or_glucose() < 80.0

    def _trend_adjust(
        self,
        base: float,
        profile_basal: float,
        context: LoopContext,
        safety: SafetyDecision,
        reasons: List[str],
    ) -> float:
        glucose = context.glucose
        predicted = glucose.predicted_or_glucose()
        lgs = context.profile.lgs_threshold

        if safety.basal_ls:
            reasons.append("zero basal too long, profile basal")
            return profile_basal
        if predicted < 65.0:
            reasons.append(f"predicted {predicted:.0f} < 65, zero basal")
            return 0.0
        if predicted < 80.0:
            reasons.append(f"predicted {predicted:.0f} < 80, 25% basal")
            return profile_basal * 0.25
        if context.insulin.iob > context.preferences.max_iob:
            if glucose.delta < -2.0:
                reasons.append("IOB above max and dropping, zero basal")
                return 0.0
            reasons.append("IOB above max, 50% basal")
            return profile_basal * 0.5
        if lgs is not None and glucose.glucose < lgs:
            reasons.append(f"BG below LGS {lgs:.0f}")
            return 0.0

        strongest = max(glucose.delta, glucose.short_avg_delta, glucose.long_avg_delta, glucose.combined_delta)
        if strongest >= 4.0 and glucose.glucose > 120.0 and not context.modes.sport:
            if strongest >= 8.0:
                multiplier = 1.8
            elif strongest >= 6.0:
                multiplier = 1.6
            else:
                multiplier = 1.3
            boosted = min(base * multiplier, profile_basal * 2.0)
            reasons.append(f"strong rise {strongest:.1f} x{multiplier:.1f}")
            return boosted
        return base

    def _meal_window_rate(self, context: LoopContext) -> Optional[float]:
        modes = context.modes
        for mode in modes.active_meal_modes():
            runtime = modes.runtime(mode)
            if runtime is not None and 0.0 <= runtime <= self.meal_window_minutes:
                return context.preferences.meal_max_basal
        return None

    def _activity_band(self, rate: float, profile_basal: float, context: LoopContext, reasons: List[str]) -> float:
        glucose = context.glucose
        if glucose.glucose > 169.0 and glucose.delta > 4.0:
            ceiling = profile_basal * 1.3
        else:
            ceiling = profile_basal * 0.5
        if rate > ceiling:
            reasons.append(f"exercise ceiling {ceiling:.2f} U/h")
            rate = ceiling
        if glucose.glucose > context.profile.target_bg:
            floor = profile_basal * 0.2
            if rate < floor:
                reasons.append(f"exercise floor {floor:.2f} U/h")
                rate = floor
        return rate
