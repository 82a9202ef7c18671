from __future__ import annotations

from dataclasses import dataclass


@dataclass
class SafetyConfig:
    """
    Central safety configuration for the hypo guard, dose capper, basal resolver
    and orchestrator.
    """
    # Hypo guard
    hypo_tolerance: float = 5.0              # mg/dL below threshold for strong blocks
    hypo_release_margin: float = 5.0         # mg/dL above threshold to start release
    hypo_release_hold_minutes: float = 5.0
    fast_rise_bypass_enabled: bool = True
    fast_rise_delta: float = 4.0             # mg/dL per 5 min
    rise_exemption_delta: float = 2.0
    fast_fall_delta: float = -2.0

    # Sensor faults
    max_data_age_minutes: float = 12.0
    max_future_age_minutes: float = 5.0
    max_noise: float = 3.0
    min_plausible_glucose: float = 10.0
    sensor_error_glucose: float = 38.0

    # Safety halt
    halt_duration_minutes: int = 30
    absolute_glucose_floor: float = 60.0

    # Dose capper
    absolute_bolus_hard_cap: float = 30.0    # Units, explicit actions only
    absorption_window_minutes: float = 20.0
    absorption_activity_fraction: float = 0.15
    absorption_damp: float = 0.5
    absorption_damp_rising: float = 0.75
    absorption_high_bg: float = 180.0
    blind_refractory_multiplier: float = 1.5
    blind_refractory_floor_minutes: float = 5.0
    blind_bolus_fraction: float = 0.5
    exercise_bolus_damper: float = 0.5

    # Basal resolver
    basal_duration_minutes: int = 30
    persistent_rise_floor_fraction: float = 0.8
    max_zero_basal_minutes: float = 60.0
    meal_basal_window_minutes: float = 30.0

    # Modulation
    modulation_min: float = 0.85
    modulation_max: float = 1.15

    # Reviewer
    reviewer_timeout_seconds: float = 2.0
    reviewer_min_confidence: float = 0.5
