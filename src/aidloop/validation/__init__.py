from __future__ import annotations

import json
from dataclasses import fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import ValidationError

from aidloop.api.models import (
    CurrentTemp,
    GlucoseStatus,
    InsulinState,
    LoopContext,
    MealEstimate,
    ModeFlags,
    Modulation,
    Preferences,
    ProfileLimits,
)
from aidloop.core.safety.config import SafetyConfig
from aidloop.validation.schemas import (
    LoopContextModel,
    PreferencesModel,
    ReplayConfigModel,
    SafetyConfigModel,
)


def _read_mapping(path: Union[str, Path]) -> Dict[str, Any]:
    config_path = Path(path)
    text = config_path.read_text()
    if config_path.suffix.lower() == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)
    if not isinstance(data, dict):
        raise ValueError(f"{config_path} must contain a mapping at the top level")
    return data


def build_preferences(model: PreferencesModel) -> Preferences:
    payload = model.model_dump()
    meal_prebolus = payload.pop("meal_prebolus")
    if meal_prebolus is None:
        return Preferences(**payload)
    defaults = dict(Preferences().meal_prebolus)
    defaults.update({mode: tuple(amounts) for mode, amounts in meal_prebolus.items()})
    return Preferences(meal_prebolus=defaults, **payload)


def build_safety_config(model: SafetyConfigModel, base: Optional[SafetyConfig] = None) -> SafetyConfig:
    overrides = {key: value for key, value in model.model_dump().items() if value is not None}
    config = base or SafetyConfig()
    known = {f.name for f in fields(SafetyConfig)}
    return replace(config, **{key: value for key, value in overrides.items() if key in known})


def build_loop_context(model: LoopContextModel) -> LoopContext:
    glucose = model.glucose.model_dump()
    glucose["prediction_series"] = tuple(glucose["prediction_series"])
    return LoopContext(
        now=model.now,
        glucose=GlucoseStatus(**glucose),
        insulin=InsulinState(**model.insulin.model_dump()),
        cob=model.cob,
        profile=ProfileLimits(**model.profile.model_dump()),
        modes=ModeFlags(**model.modes.model_dump()),
        preferences=build_preferences(model.preferences),
        current_temp=CurrentTemp(**model.current_temp.model_dump()),
        last_bolus_at=model.last_bolus_at,
        last_bolus_units=model.last_bolus_units,
        meal_estimate=MealEstimate(**model.meal_estimate.model_dump()) if model.meal_estimate else None,
        modulation=Modulation(**model.modulation.model_dump()),
    )


def validate_context_dict(data: Dict[str, Any]) -> LoopContextModel:
    return LoopContextModel.model_validate(data)


def load_context(path: Union[str, Path]) -> LoopContextModel:
    return validate_context_dict(_read_mapping(path))


def load_replay_config(path: Union[str, Path]) -> ReplayConfigModel:
    return ReplayConfigModel.model_validate(_read_mapping(path))


def context_warnings(model: LoopContextModel) -> List[str]:
    warnings: List[str] = []
    prefs = model.preferences
    profile = model.profile
    if prefs.max_iob == 0:
        warnings.append("preferences.max_iob is 0: automated boluses are disabled")
    if prefs.max_smb_high_bg < prefs.max_smb:
        warnings.append("preferences.max_smb_high_bg is below max_smb and will be raised to it")
    if profile.max_basal > profile.max_daily_safety_multiplier * profile.max_daily_basal:
        warnings.append("profile.max_basal exceeds the daily safety multiplier limit; the lower value applies")
    if model.glucose.age_minutes > 12:
        warnings.append(f"glucose reading is {model.glucose.age_minutes:.0f} min old")
    return warnings


def format_validation_error(error: ValidationError) -> List[str]:
    messages: List[str] = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        messages.append(f"{location}: {item.get('msg')}")
    return messages


__all__ = [
    "build_loop_context",
    "build_preferences",
    "build_safety_config",
    "context_warnings",
    "format_validation_error",
    "load_context",
    "load_replay_config",
    "validate_context_dict",
]
