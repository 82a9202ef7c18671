from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional

from aidloop.core.safety.config import SafetyConfig

logger = logging.getLogger("aidloop.safety")


def compute_hypo_threshold(min_bg: float, lgs_threshold: Optional[float] = None) -> float:
    """
    Effective hypoglycemia threshold: halfway between the profile min BG and 40,
    raised to the low-glucose-suspend value when that is higher.
    """
    threshold = min_bg - 0.5 * (min_bg - 40.0)
    if lgs_threshold is not None and math.isfinite(lgs_threshold) and lgs_threshold > threshold:
        threshold = lgs_threshold
    return threshold


def _finite_or_inf(value: Optional[float]) -> float:
    if value is None or not math.isfinite(value):
        return math.inf
    return float(value)


@dataclass
class HysteresisState:
    last_blocked_at: Optional[float] = None
    clear_candidate_since: Optional[float] = None


class HypoGuard:
    """
    Hysteresis around the hypo threshold.

    ``is_below_threshold`` is the memoryless check; ``is_blocked`` layers the
    release hold on top of it so dosing does not chatter at the boundary.
    """

    def __init__(self,
                 tolerance: float = 5.0,
                 release_margin: float = 5.0,
                 release_hold_minutes: float = 5.0,
                 fast_rise_bypass_enabled: bool = True,
                 fast_rise_delta: float = 4.0,
                 rise_exemption_delta: float = 2.0,
                 fast_fall_delta: float = -2.0,
                 safety_config: Optional[SafetyConfig] = None):
        if safety_config is not None:
            tolerance = safety_config.hypo_tolerance
            release_margin = safety_config.hypo_release_margin
            release_hold_minutes = safety_config.hypo_release_hold_minutes
            fast_rise_bypass_enabled = safety_config.fast_rise_bypass_enabled
            fast_rise_delta = safety_config.fast_rise_delta
            rise_exemption_delta = safety_config.rise_exemption_delta
            fast_fall_delta = safety_config.fast_fall_delta

        self.tolerance = tolerance
        self.release_margin = release_margin
        self.release_hold_minutes = release_hold_minutes
        self.fast_rise_bypass_enabled = fast_rise_bypass_enabled
        self.fast_rise_delta = fast_rise_delta
        self.rise_exemption_delta = rise_exemption_delta
        self.fast_fall_delta = fast_fall_delta
        self.state = HysteresisState()

    def reset(self):
        self.state = HysteresisState()

    def get_state(self) -> dict:
        return {
            "last_blocked_at": self.state.last_blocked_at,
            "clear_candidate_since": self.state.clear_candidate_since,
        }

    def set_state(self, state: dict) -> None:
        self.state = HysteresisState(
            last_blocked_at=state.get("last_blocked_at"),
            clear_candidate_since=state.get("clear_candidate_since"),
        )

    def is_below_threshold(
        self,
        bg: float,
        predicted_bg: Optional[float],
        eventual_bg: Optional[float],
        threshold: float,
        delta: float,
    ) -> bool:
        bg = _finite_or_inf(bg)
        predicted = _finite_or_inf(predicted_bg)
        eventual = _finite_or_inf(eventual_bg)
        delta = delta if math.isfinite(delta) else 0.0
        floor = threshold - self.tolerance

        if bg <= floor:
            return True

        # A confirmed fast rise outranks forecasts that lag behind it.
        if self.fast_rise_bypass_enabled and delta >= self.fast_rise_delta:
            return False

        if predicted <= floor and eventual <= floor:
            if not (delta >= self.rise_exemption_delta and bg > threshold):
                return True

        if delta <= self.fast_fall_delta and predicted <= threshold:
            return True

        return False

    def is_blocked(
        self,
        bg: float,
        predicted_bg: Optional[float],
        eventual_bg: Optional[float],
        threshold: float,
        delta: float,
        now: float,
    ) -> bool:
        state = self.state
        if self.is_below_threshold(bg, predicted_bg, eventual_bg, threshold, delta):
            state.last_blocked_at = now
            state.clear_candidate_since = None
            return True

        if state.last_blocked_at is None:
            return False

        lowest = min(_finite_or_inf(bg), _finite_or_inf(predicted_bg), _finite_or_inf(eventual_bg))
        if lowest > threshold + self.release_margin:
            if state.clear_candidate_since is None:
                state.clear_candidate_since = now
            held = now - state.clear_candidate_since
            if held >= self.release_hold_minutes:
                logger.info("Hypo guard released after %.1f min above %.1f mg/dL", held, threshold + self.release_margin)
                state.last_blocked_at = None
                state.clear_candidate_since = None
                return False
            return True

        state.clear_candidate_since = None
        return True

    def interrupt_release(self) -> None:
        """Restart the release hold; used when a cycle has no valid reading."""
        if self.state.clear_candidate_since is not None:
            logger.info("Hypo guard release hold interrupted by a sensor fault")
            self.state.clear_candidate_since = None
