from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

MEAL_MODES: Tuple[str, ...] = ("meal", "breakfast", "lunch", "dinner", "high_carb", "snack")


@dataclass(frozen=True)
class GlucoseStatus:
    """Glucose reading and trend for one cycle. Deltas are mg/dL per 5 minutes."""
    glucose: float
    delta: float = 0.0
    short_avg_delta: float = 0.0
    long_avg_delta: float = 0.0
    acceleration: float = 0.0
    noise: float = 0.0
    age_minutes: float = 0.0
    predicted_bg: Optional[float] = None
    eventual_bg: Optional[float] = None
    prediction_series: Tuple[float, ...] = ()

    @property
    def combined_delta(self) -> float:
        return (self.delta + self.short_avg_delta) / 2.0

    @property
    def prediction_available(self) -> bool:
        return len(self.prediction_series) >= 2

    def predicted_or_glucose(self) -> float:
        if self.predicted_bg is None or not math.isfinite(self.predicted_bg):
            return self.glucose
        return self.predicted_bg

    def eventual_or_glucose(self) -> float:
        if self.eventual_bg is None or not math.isfinite(self.eventual_bg):
            return self.glucose
        return self.eventual_bg


@dataclass(frozen=True)
class InsulinState:
    iob: float = 0.0
    activity_now: float = 0.0            # U/h currently acting
    activity_in_30: float = 0.0
    minutes_to_peak: Optional[float] = None
    tdd_24h: Optional[float] = None
    tdd_last_hour: Optional[float] = None
    time_below_range_pct: float = 0.0
    zero_basal_minutes: float = 0.0


@dataclass(frozen=True)
class ProfileLimits:
    """Pump profile and hard limits in force for the current cycle."""
    target_bg: float = 100.0
    min_bg: float = 90.0
    max_bg: float = 180.0
    max_basal: float = 3.0
    max_daily_basal: float = 1.0
    current_basal: float = 1.0
    carb_ratio: float = 10.0
    isf: float = 50.0
    sensitivity_ratio: float = 1.0
    dia_hours: float = 5.0
    peak_minutes: float = 75.0
    lgs_threshold: Optional[float] = None
    max_daily_safety_multiplier: float = 3.0
    current_basal_safety_multiplier: float = 4.0
    bolus_step: float = 0.05
    basal_step: float = 0.05

    def max_safe_basal(self) -> float:
        return max(
            0.0,
            min(
                self.max_basal,
                self.max_daily_safety_multiplier * self.max_daily_basal,
                self.current_basal_safety_multiplier * self.current_basal,
            ),
        )


@dataclass(frozen=True)
class ModeFlags:
    """Operating modes. ``runtimes_minutes`` holds elapsed minutes per active mode."""
    meal: bool = False
    breakfast: bool = False
    lunch: bool = False
    dinner: bool = False
    high_carb: bool = False
    snack: bool = False
    sport: bool = False
    sleep: bool = False
    low_carb: bool = False
    fasting: bool = False
    calibration_recent: bool = False
    runtimes_minutes: Mapping[str, float] = field(default_factory=dict)

    def is_active(self, mode: str) -> bool:
        return bool(getattr(self, mode, False))

    def runtime(self, mode: str) -> Optional[float]:
        value = self.runtimes_minutes.get(mode)
        if value is None or not math.isfinite(value):
            return None
        return float(value)

    def active_meal_modes(self) -> Tuple[str, ...]:
        return tuple(mode for mode in MEAL_MODES if self.is_active(mode))

    def meal_mode_within(self, minutes: float) -> bool:
        for mode in self.active_meal_modes():
            runtime = self.runtime(mode)
            if runtime is not None and 0.0 <= runtime <= minutes:
                return True
        return False


@dataclass(frozen=True)
class CurrentTemp:
    rate: float = 0.0
    duration: float = 0.0


@dataclass(frozen=True)
class MealEstimate:
    """Carb estimate confirmed by the user (e.g. from a meal photo)."""
    carbs: float
    estimated_at: float


@dataclass(frozen=True)
class Modulation:
    """Raw scalars supplied by optional collaborators; clamped before use."""
    physio: Optional[float] = None
    hormonal: Optional[float] = None
    trajectory: Optional[float] = None


def _default_meal_prebolus() -> Dict[str, Tuple[float, float]]:
    return {
        "meal": (2.0, 1.5),
        "breakfast": (2.0, 1.5),
        "lunch": (2.5, 2.0),
        "dinner": (2.5, 2.0),
        "high_carb": (4.0, 2.5),
        "snack": (1.0, 0.0),
    }


@dataclass(frozen=True)
class Preferences:
    """User-tunable dosing preferences."""
    max_smb: float = 1.0
    max_smb_high_bg: float = 2.0
    high_bg_smb_threshold: float = 160.0
    max_iob: float = 6.0
    smb_interval_minutes: float = 5.0
    meal_prebolus: Mapping[str, Tuple[float, float]] = field(default_factory=_default_meal_prebolus)
    meal_max_basal: float = 3.0
    autodrive_enabled: bool = True
    autodrive_bg_floor: float = 90.0
    autodrive_cooldown_minutes: float = 45.0
    autodrive_min_delta: float = 3.0
    autodrive_strong_delta: float = 5.0
    autodrive_min_predicted: float = 140.0
    autodrive_small_prebolus: float = 0.5
    autodrive_large_prebolus: float = 1.0
    autodrive_max_basal: float = 2.5
    meal_advisor_window_minutes: float = 120.0
    meal_advisor_refractory_minutes: float = 45.0
    fallback_bolus_fraction: float = 0.5


@dataclass(frozen=True)
class LoopContext:
    """Immutable per-cycle input snapshot. ``now`` and all timestamps are in minutes."""
    now: float
    glucose: GlucoseStatus
    insulin: InsulinState = field(default_factory=InsulinState)
    cob: float = 0.0
    profile: ProfileLimits = field(default_factory=ProfileLimits)
    modes: ModeFlags = field(default_factory=ModeFlags)
    preferences: Preferences = field(default_factory=Preferences)
    current_temp: CurrentTemp = field(default_factory=CurrentTemp)
    last_bolus_at: Optional[float] = None
    last_bolus_units: float = 0.0
    meal_estimate: Optional[MealEstimate] = None
    modulation: Modulation = field(default_factory=Modulation)

    def minutes_since_last_bolus(self) -> Optional[float]:
        if self.last_bolus_at is None:
            return None
        return self.now - self.last_bolus_at


@dataclass(frozen=True)
class DosingDirective:
    """Output of one cycle."""
    basal_rate_uph: float
    basal_duration_min: int
    bolus_units: float
    reason_trail: Tuple[str, ...] = ()
    source: str = "general_fallback"
    suspend: bool = False
    explicit: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "basal_rate_uph": self.basal_rate_uph,
            "basal_duration_min": self.basal_duration_min,
            "bolus_units": self.bolus_units,
            "reason_trail": list(self.reason_trail),
            "source": self.source,
            "suspend": self.suspend,
            "explicit": self.explicit,
        }
