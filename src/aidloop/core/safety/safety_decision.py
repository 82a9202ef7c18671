from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from aidloop.api.models import LoopContext

logger = logging.getLogger("aidloop.safety")

MAX_ALLOWED_DROP_PER_HOUR = 65.0
LOW_BG_FOR_DROP_RISK = 110.0


@dataclass(frozen=True)
class SafetyDecision:
    stop_basal: bool
    bolus_factor: float
    reason: str
    is_low_glucose_risk: bool
    basal_ls: bool = False


def dynamic_bolus_multiplier(combined_delta: float) -> float:
    """Smooth multiplier for rising glucose: ~0.5 when flat, approaching 1.2 on steep rises."""
    return 0.5 + 0.7 / (1.0 + math.exp(-(combined_delta - 5.0) / 10.0))


def compute_safety_decision(context: LoopContext, max_zero_basal_minutes: float = 60.0) -> SafetyDecision:
    """
    Computes the per-cycle safety verdict shared by the basal and bolus paths.

    The bolus factor is the mean of the reduction factors that apply; it is 1.0
    when none does and is always clamped to [0, 1].
    """
    glucose = context.glucose
    insulin = context.insulin
    bg = glucose.glucose
    delta = glucose.delta
    combined = glucose.combined_delta
    predicted = glucose.predicted_or_glucose()
    target = context.profile.target_bg
    max_iob = context.preferences.max_iob

    reasons: List[str] = []
    factors: List[float] = []
    stop_basal = False
    basal_ls = False
    is_hypo_risk = False

    drop_per_hour = max(0.0, -glucose.short_avg_delta * 12.0)
    if drop_per_hour >= MAX_ALLOWED_DROP_PER_HOUR and delta < 0 and bg < LOW_BG_FOR_DROP_RISK:
        is_hypo_risk = True
        reasons.append(f"fast drop {drop_per_hour:.0f} mg/dL/h")
        if predicted <= target:
            stop_basal = True
            reasons.append("drop heading below target, basal stop")

    if delta >= 20.0 and combined >= 15.0:
        reasons.append(f"rapid rise (delta {delta:.1f}), no reductions")
    else:
        if combined < 1.0:
            factors.append(0.6)
            reasons.append(f"combined delta weak ({combined:.1f}) x0.6")
        elif combined < 2.0:
            factors.append(0.8)
            reasons.append(f"combined delta moderate ({combined:.1f}) x0.8")
        else:
            multiplier = dynamic_bolus_multiplier(combined)
            factors.append(multiplier)
            reasons.append(f"combined delta {combined:.1f} x{multiplier:.2f}")

        if bg > 160.0 and combined < 1.0:
            factors.append(0.8)
            reasons.append("high plateau x0.8")

        if max_iob > 0 and insulin.iob >= max_iob * 0.85:
            factors.append(0.85)
            reasons.append(f"IOB high ({insulin.iob:.2f} U) x0.85")

        if insulin.tdd_24h is not None and insulin.tdd_last_hour is not None:
            if insulin.tdd_last_hour > insulin.tdd_24h / 24.0:
                factors.append(0.8)
                reasons.append(f"TDD/h high ({insulin.tdd_last_hour:.2f} U/h) x0.8")

        if insulin.time_below_range_pct >= 8.0:
            factors.append(0.5)
            reasons.append(f"time below range {insulin.time_below_range_pct:.1f}% x0.5")

        if predicted < target + 10.0:
            factors.append(0.5)
            reasons.append(f"predicted {predicted:.0f} near target {target:.0f} x0.5")

    bolus_factor = float(np.mean(factors)) if factors else 1.0

    if insulin.zero_basal_minutes >= max_zero_basal_minutes:
        stop_basal = False
        basal_ls = True
        bolus_factor = 1.0
        reasons.append(f"zero basal for {insulin.zero_basal_minutes:.0f} min, forcing profile basal")

    bolus_factor = float(np.clip(np.nan_to_num(bolus_factor, nan=0.0), 0.0, 1.0))
    decision = SafetyDecision(
        stop_basal=stop_basal,
        bolus_factor=bolus_factor,
        reason="; ".join(reasons),
        is_low_glucose_risk=is_hypo_risk,
        basal_ls=basal_ls,
    )
    logger.debug("Safety decision: factor=%.2f stop=%s (%s)", bolus_factor, stop_basal, decision.reason)
    return decision


def critical_conditions(
    context: LoopContext,
    hypo_blocked: bool,
    absolute_floor: float = 60.0,
    explicit: bool = False,
) -> List[str]:
    """
    Hard conditions that zero any bolus. Explicit user actions skip the soft
    ones but never the hypo guard or the absolute glucose floor.
    """
    glucose = context.glucose
    bg = glucose.glucose
    delta = glucose.delta
    target = context.profile.target_bg
    predicted: Optional[float] = glucose.predicted_bg
    eventual = glucose.eventual_or_glucose()
    modes = context.modes

    conditions: List[str] = []
    if hypo_blocked:
        conditions.append("hypoGuard")
    if bg < absolute_floor:
        conditions.append(f"BG below {absolute_floor:.0f}")
    if explicit:
        return conditions

    meal_mode = bool(modes.active_meal_modes())
    if delta <= -1.0 and not meal_mode and eventual < 120.0:
        conditions.append("negDelta")
    if modes.fasting:
        conditions.append("fasting")
    if modes.calibration_recent:
        conditions.append("calibration")
    if bg < target and delta < 0:
        conditions.append("belowTargetAndDropping")
    if bg < target and delta <= 0 and context.cob <= 0:
        conditions.append("belowTargetAndStableButNoCOB")
    if delta < -2.0:
        conditions.append("droppingFast")
    if bg > 180.0 and delta < -1.5:
        conditions.append("droppingFastAtHigh")
    if predicted is not None and math.isfinite(predicted) and predicted < bg and delta < 0:
        conditions.append("prediction below BG while falling")
    if bg < 90.0:
        conditions.append("BG below 90")
    if delta < 0 and glucose.acceleration < 0 and glucose.short_avg_delta < 0:
        conditions.append("acceleratingDown")
    return conditions
