from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from aidloop.api.models import MEAL_MODES

LATEST_SCHEMA_VERSION = "1.0"


class GlucoseStatusModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    glucose: float
    delta: float = 0.0
    short_avg_delta: float = 0.0
    long_avg_delta: float = 0.0
    acceleration: float = 0.0
    noise: float = Field(default=0.0, ge=0.0)
    age_minutes: float = 0.0
    predicted_bg: Optional[float] = None
    eventual_bg: Optional[float] = None
    prediction_series: List[float] = Field(default_factory=list)


class InsulinStateModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    iob: float = 0.0
    activity_now: float = Field(default=0.0, ge=0.0)
    activity_in_30: float = Field(default=0.0, ge=0.0)
    minutes_to_peak: Optional[float] = None
    tdd_24h: Optional[float] = Field(default=None, ge=0.0)
    tdd_last_hour: Optional[float] = Field(default=None, ge=0.0)
    time_below_range_pct: float = Field(default=0.0, ge=0.0, le=100.0)
    zero_basal_minutes: float = Field(default=0.0, ge=0.0)


class ProfileLimitsModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    target_bg: float = Field(default=100.0, ge=70.0, le=200.0)
    min_bg: float = Field(default=90.0, ge=60.0, le=200.0)
    max_bg: float = Field(default=180.0, ge=80.0, le=300.0)
    max_basal: float = Field(default=3.0, ge=0.0, le=30.0)
    max_daily_basal: float = Field(default=1.0, ge=0.0, le=10.0)
    current_basal: float = Field(default=1.0, ge=0.0, le=10.0)
    carb_ratio: float = Field(default=10.0, gt=0.0, le=150.0)
    isf: float = Field(default=50.0, gt=0.0, le=500.0)
    sensitivity_ratio: float = Field(default=1.0, gt=0.0, le=3.0)
    dia_hours: float = Field(default=5.0, ge=2.0, le=10.0)
    peak_minutes: float = Field(default=75.0, ge=30.0, le=180.0)
    lgs_threshold: Optional[float] = Field(default=None, ge=40.0, le=120.0)
    max_daily_safety_multiplier: float = Field(default=3.0, gt=0.0, le=10.0)
    current_basal_safety_multiplier: float = Field(default=4.0, gt=0.0, le=10.0)
    bolus_step: float = Field(default=0.05, gt=0.0, le=1.0)
    basal_step: float = Field(default=0.05, gt=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_bg_order(self) -> "ProfileLimitsModel":
        if self.min_bg > self.max_bg:
            raise ValueError("min_bg must not exceed max_bg")
        return self


class ModeFlagsModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

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
    runtimes_minutes: Dict[str, float] = Field(default_factory=dict)

    @field_validator("runtimes_minutes")
    @classmethod
    def _known_modes(cls, value: Dict[str, float]) -> Dict[str, float]:
        known = set(MEAL_MODES) | {"sport", "sleep", "low_carb", "fasting"}
        unknown = sorted(set(value) - known)
        if unknown:
            raise ValueError(f"unknown modes in runtimes_minutes: {unknown}")
        return value


class PreferencesModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_smb: float = Field(default=1.0, ge=0.0, le=15.0)
    max_smb_high_bg: float = Field(default=2.0, ge=0.0, le=15.0)
    high_bg_smb_threshold: float = Field(default=160.0, ge=120.0, le=300.0)
    max_iob: float = Field(default=6.0, ge=0.0, le=50.0)
    smb_interval_minutes: float = Field(default=5.0, ge=1.0, le=10.0)
    meal_prebolus: Optional[Dict[str, Tuple[float, float]]] = None
    meal_max_basal: float = Field(default=3.0, ge=0.0, le=30.0)
    autodrive_enabled: bool = True
    autodrive_bg_floor: float = Field(default=90.0, ge=70.0, le=250.0)
    autodrive_cooldown_minutes: float = Field(default=45.0, ge=0.0)
    autodrive_min_delta: float = Field(default=3.0, ge=0.0)
    autodrive_strong_delta: float = Field(default=5.0, ge=0.0)
    autodrive_min_predicted: float = Field(default=140.0, ge=0.0)
    autodrive_small_prebolus: float = Field(default=0.5, ge=0.0, le=10.0)
    autodrive_large_prebolus: float = Field(default=1.0, ge=0.0, le=10.0)
    autodrive_max_basal: float = Field(default=2.5, ge=0.0, le=30.0)
    meal_advisor_window_minutes: float = Field(default=120.0, ge=0.0)
    meal_advisor_refractory_minutes: float = Field(default=45.0, ge=0.0)
    fallback_bolus_fraction: float = Field(default=0.5, ge=0.0, le=1.0)

    @field_validator("meal_prebolus")
    @classmethod
    def _check_prebolus(cls, value: Optional[Dict[str, Tuple[float, float]]]) -> Optional[Dict[str, Tuple[float, float]]]:
        if value is None:
            return value
        unknown = sorted(set(value) - set(MEAL_MODES))
        if unknown:
            raise ValueError(f"unknown meal modes in meal_prebolus: {unknown}")
        for mode, amounts in value.items():
            if any(amount < 0 for amount in amounts):
                raise ValueError(f"meal_prebolus[{mode}] amounts must be >= 0")
        return value


class MealEstimateModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    carbs: float = Field(ge=0.0, le=300.0)
    estimated_at: float


class ModulationModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    physio: Optional[float] = None
    hormonal: Optional[float] = None
    trajectory: Optional[float] = None


class CurrentTempModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    rate: float = Field(default=0.0, ge=0.0)
    duration: float = Field(default=0.0, ge=0.0)


class SafetyConfigModel(BaseModel):
    """Subset of SafetyConfig that deployments are expected to tune."""
    model_config = ConfigDict(extra="forbid")

    fast_rise_bypass_enabled: Optional[bool] = None
    absolute_bolus_hard_cap: Optional[float] = Field(default=None, ge=0.0, le=50.0)
    max_data_age_minutes: Optional[float] = Field(default=None, gt=0.0, le=30.0)
    halt_duration_minutes: Optional[int] = Field(default=None, ge=5, le=120)
    modulation_min: Optional[float] = Field(default=None, gt=0.0, le=1.0)
    modulation_max: Optional[float] = Field(default=None, ge=1.0, le=2.0)
    reviewer_timeout_seconds: Optional[float] = Field(default=None, gt=0.0, le=60.0)


class LoopContextModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    schema_version: str = Field(default=LATEST_SCHEMA_VERSION, min_length=1)
    now: float
    glucose: GlucoseStatusModel
    insulin: InsulinStateModel = Field(default_factory=InsulinStateModel)
    cob: float = Field(default=0.0, ge=0.0)
    profile: ProfileLimitsModel = Field(default_factory=ProfileLimitsModel)
    modes: ModeFlagsModel = Field(default_factory=ModeFlagsModel)
    preferences: PreferencesModel = Field(default_factory=PreferencesModel)
    current_temp: CurrentTempModel = Field(default_factory=CurrentTempModel)
    last_bolus_at: Optional[float] = None
    last_bolus_units: float = Field(default=0.0, ge=0.0)
    meal_estimate: Optional[MealEstimateModel] = None
    modulation: ModulationModel = Field(default_factory=ModulationModel)
    safety: SafetyConfigModel = Field(default_factory=SafetyConfigModel)

    @field_validator("schema_version", mode="before")
    @classmethod
    def _normalize_schema_version(cls, value: Any) -> str:
        if isinstance(value, (int, float)):
            return str(value)
        if value is None:
            return LATEST_SCHEMA_VERSION
        return str(value)

    @model_validator(mode="after")
    def _check_last_bolus(self) -> "LoopContextModel":
        if self.last_bolus_at is not None and self.last_bolus_at > self.now:
            raise ValueError("last_bolus_at cannot be in the future")
        return self


class ReplayConfigModel(BaseModel):
    """Static settings for replaying a series of ticks."""
    model_config = ConfigDict(extra="forbid")

    profile: ProfileLimitsModel = Field(default_factory=ProfileLimitsModel)
    preferences: PreferencesModel = Field(default_factory=PreferencesModel)
    safety: SafetyConfigModel = Field(default_factory=SafetyConfigModel)
