from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from aidloop.api.models import LoopContext, MealEstimate
from aidloop.core.safety.config import SafetyConfig

logger = logging.getLogger("aidloop.safety")


@dataclass
class RefractoryState:
    last_bolus_at: Optional[float] = None
    last_bolus_units: float = 0.0
    last_autodrive_at: Optional[float] = None
    advised_meal_estimates: List[float] = field(default_factory=list)
    delivered_prebolus_phases: List[str] = field(default_factory=list)


class RefractoryGate:
    """
    Minimum spacing between boluses plus the cooldown clocks used by the
    meal strategies. The only timestamps kept across cycles live here.
    """

    def __init__(self,
                 blind_multiplier: float = 1.5,
                 blind_floor_minutes: float = 5.0,
                 safety_config: Optional[SafetyConfig] = None):
        if safety_config is not None:
            blind_multiplier = safety_config.blind_refractory_multiplier
            blind_floor_minutes = safety_config.blind_refractory_floor_minutes

        self.blind_multiplier = blind_multiplier
        self.blind_floor_minutes = blind_floor_minutes
        self.state = RefractoryState()

    def reset(self):
        self.state = RefractoryState()

    def get_state(self) -> dict:
        return {
            "last_bolus_at": self.state.last_bolus_at,
            "last_bolus_units": self.state.last_bolus_units,
            "last_autodrive_at": self.state.last_autodrive_at,
            "advised_meal_estimates": list(self.state.advised_meal_estimates),
            "delivered_prebolus_phases": list(self.state.delivered_prebolus_phases),
        }

    def set_state(self, state: dict) -> None:
        self.state = RefractoryState(
            last_bolus_at=state.get("last_bolus_at"),
            last_bolus_units=float(state.get("last_bolus_units", 0.0) or 0.0),
            last_autodrive_at=state.get("last_autodrive_at"),
            advised_meal_estimates=list(state.get("advised_meal_estimates", [])),
            delivered_prebolus_phases=list(state.get("delivered_prebolus_phases", [])),
        )

    # Clocks

    def last_bolus_at(self, context: LoopContext) -> Optional[float]:
        """Most recent bolus known either from pump history or from this gate."""
        candidates = [t for t in (context.last_bolus_at, self.state.last_bolus_at) if t is not None]
        return max(candidates) if candidates else None

    def minutes_since_last_bolus(self, context: LoopContext) -> Optional[float]:
        last = self.last_bolus_at(context)
        if last is None:
            return None
        return context.now - last

    def last_bolus_units(self, context: LoopContext) -> float:
        if self.state.last_bolus_at is not None and (
            context.last_bolus_at is None or self.state.last_bolus_at >= context.last_bolus_at
        ):
            return self.state.last_bolus_units
        return context.last_bolus_units

    def minutes_since_autodrive(self, now: float) -> Optional[float]:
        if self.state.last_autodrive_at is None:
            return None
        return now - self.state.last_autodrive_at

    def meal_estimate_advised(self, estimate: MealEstimate) -> bool:
        return estimate.estimated_at in self.state.advised_meal_estimates

    def prebolus_delivered(self, key: str) -> bool:
        return key in self.state.delivered_prebolus_phases

    # Window

    def interval_window(self, context: LoopContext) -> Tuple[float, bool]:
        """
        Minutes that must separate automated boluses, and whether the window
        was widened because the prediction series is missing or short.
        """
        glucose = context.glucose
        modes = context.modes
        interval = min(max(context.preferences.smb_interval_minutes, 1.0), 10.0)
        if glucose.delta > 15.0:
            interval = 1.0
        if modes.sport or modes.low_carb:
            interval = max(interval, 10.0)
        if glucose.glucose < context.profile.target_bg:
            interval = min(interval * 2.0, 20.0)

        widened = not glucose.prediction_available
        if widened:
            interval = max(interval * self.blind_multiplier, self.blind_floor_minutes)
        return interval, widened

    def check(self, context: LoopContext, explicit: bool = False, bypass: bool = False) -> Tuple[bool, str]:
        """Returns (allowed, reason)."""
        if explicit or bypass:
            return True, "refractory bypassed (explicit action)"
        window, widened = self.interval_window(context)
        since = self.minutes_since_last_bolus(context)
        suffix = " (widened, prediction missing)" if widened else ""
        if since is not None and since < window:
            return False, f"refractory: {since:.1f} min since last bolus < {window:.1f} min window{suffix}"
        return True, f"refractory clear: window {window:.1f} min{suffix}"

    # Commit

    def record_bolus(self, now: float, units: float) -> None:
        if not math.isfinite(units) or units <= 0:
            return
        self.state.last_bolus_at = now
        self.state.last_bolus_units = units
        logger.debug("Recorded bolus %.2f U at t=%.1f", units, now)

    def record_autodrive(self, now: float) -> None:
        self.state.last_autodrive_at = now

    def record_meal_advice(self, estimate: MealEstimate) -> None:
        if estimate.estimated_at not in self.state.advised_meal_estimates:
            self.state.advised_meal_estimates.append(estimate.estimated_at)
            # Only recent estimates matter for the advisor window.
            self.state.advised_meal_estimates = self.state.advised_meal_estimates[-20:]

    def record_prebolus(self, key: str) -> None:
        if key not in self.state.delivered_prebolus_phases:
            self.state.delivered_prebolus_phases.append(key)
            self.state.delivered_prebolus_phases = self.state.delivered_prebolus_phases[-20:]
