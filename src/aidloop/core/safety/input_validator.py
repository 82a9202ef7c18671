import math
from typing import List, Optional

from aidloop.api.models import GlucoseStatus
from aidloop.core.safety.config import SafetyConfig


class InputValidator:
    """
    Classifies the CGM snapshot of a cycle as usable or faulty.

    Unlike a hard validator this never raises for bad sensor data: every
    problem is reported as a fault string and the safety halt strategy acts
    on it. Faults are prefixed so the reason trail stays greppable.
    """
    def __init__(self,
                 max_data_age_minutes: float = 12.0,
                 max_future_age_minutes: float = 5.0,
                 max_noise: float = 3.0,
                 min_plausible_glucose: float = 10.0,
                 sensor_error_glucose: float = 38.0,
                 max_glucose_delta_per_5_min: float = 35.0,
                 safety_config: Optional[SafetyConfig] = None):
        """
        Args:
            max_data_age_minutes (float): Readings older than this are stale.
            max_future_age_minutes (float): Readings dated further ahead than this are rejected.
            max_noise (float): Noise level at or above which the reading is unusable.
            min_plausible_glucose (float): Values at or below this are sensor errors (mg/dL).
            sensor_error_glucose (float): Sentinel value some CGMs report on error.
            max_glucose_delta_per_5_min (float): Largest plausible change between
                                                 accepted readings (mg/dL per 5 min).
        """
        if safety_config is not None:
            max_data_age_minutes = safety_config.max_data_age_minutes
            max_future_age_minutes = safety_config.max_future_age_minutes
            max_noise = safety_config.max_noise
            min_plausible_glucose = safety_config.min_plausible_glucose
            sensor_error_glucose = safety_config.sensor_error_glucose

        self.max_data_age_minutes = max_data_age_minutes
        self.max_future_age_minutes = max_future_age_minutes
        self.max_noise = max_noise
        self.min_plausible_glucose = min_plausible_glucose
        self.sensor_error_glucose = sensor_error_glucose
        self.max_glucose_delta_per_5_min = max_glucose_delta_per_5_min
        self.last_valid_glucose: Optional[float] = None
        self.last_validation_time: Optional[float] = None

    def reset(self):
        self.last_valid_glucose = None
        self.last_validation_time = None

    def get_state(self) -> dict:
        return {
            "last_valid_glucose": self.last_valid_glucose,
            "last_validation_time": self.last_validation_time,
        }

    def set_state(self, state: dict) -> None:
        self.last_valid_glucose = state.get("last_valid_glucose")
        self.last_validation_time = state.get("last_validation_time")

    def assess(self, status: Optional[GlucoseStatus], current_time: float) -> List[str]:
        """
        Returns the list of sensor faults for this cycle; empty when usable.
        Accepted readings update the rate-of-change reference.
        """
        if status is None:
            return ["DATA_MISSING: no glucose status"]

        glucose = status.glucose
        if glucose is None or not math.isfinite(glucose):
            return ["DATA_MISSING: glucose is not a number"]

        faults: List[str] = []
        age = status.age_minutes
        if not math.isfinite(age) or age > self.max_data_age_minutes:
            faults.append(f"DATA_STALE: reading is {age:.1f} min old")
        elif age < -self.max_future_age_minutes:
            faults.append(f"DATA_STALE: reading is dated {-age:.1f} min in the future")

        if not math.isfinite(status.noise) or status.noise >= self.max_noise:
            faults.append(f"DATA_NOISY: noise level {status.noise}")

        trend = {
            "delta": status.delta,
            "short_avg_delta": status.short_avg_delta,
            "long_avg_delta": status.long_avg_delta,
            "acceleration": status.acceleration,
        }
        bad_trend = [name for name, value in trend.items() if value is None or not math.isfinite(value)]
        if bad_trend:
            faults.append(f"DATA_NOISY: non-finite trend values ({', '.join(bad_trend)})")

        if glucose <= self.min_plausible_glucose or glucose == self.sensor_error_glucose:
            faults.append(f"SENSOR_ERROR: implausible glucose {glucose:.0f} mg/dL")

        if not faults and self.last_valid_glucose is not None and self.last_validation_time is not None:
            time_delta = current_time - self.last_validation_time
            if time_delta > 0:
                allowed_delta = self.max_glucose_delta_per_5_min * max(time_delta / 5.0, 1.0)
                glucose_delta = abs(glucose - self.last_valid_glucose)
                if glucose_delta > allowed_delta:
                    faults.append(
                        f"RATE_OF_CHANGE_ERROR: jump of {glucose_delta:.1f} mg/dL over "
                        f"{time_delta:.1f} min (max allowed {allowed_delta:.1f})"
                    )

        if not faults:
            self.last_valid_glucose = glucose
            self.last_validation_time = current_time
        return faults
