from pathlib import Path
import sys

import pytest

project_root = Path(__file__).resolve().parents[1]
src_path = project_root / "src"
if src_path.exists():
    sys.path.insert(0, str(src_path))

from aidloop.api.models import (  # noqa: E402
    GlucoseStatus,
    InsulinState,
    LoopContext,
    MealEstimate,
    ModeFlags,
    Modulation,
    Preferences,
    ProfileLimits,
)


def build_context(
    now=100.0,
    glucose=None,
    insulin=None,
    profile=None,
    modes=None,
    preferences=None,
    meal_estimate=None,
    modulation=None,
    **kwargs,
):
    """Context with a steady 150 mg/dL reading and a flat forecast unless overridden."""
    glucose_kwargs = {
        "glucose": 150.0,
        "predicted_bg": 150.0,
        "eventual_bg": 150.0,
        "prediction_series": (150.0, 150.0, 150.0),
    }
    glucose_kwargs.update(glucose or {})
    profile_kwargs = {"min_bg": 100.0, "target_bg": 100.0}
    profile_kwargs.update(profile or {})
    return LoopContext(
        now=now,
        glucose=GlucoseStatus(**glucose_kwargs),
        insulin=InsulinState(**(insulin or {})),
        profile=ProfileLimits(**profile_kwargs),
        modes=ModeFlags(**(modes or {})),
        preferences=Preferences(**(preferences or {})),
        meal_estimate=MealEstimate(**meal_estimate) if meal_estimate else None,
        modulation=Modulation(**(modulation or {})),
        **kwargs,
    )


@pytest.fixture
def make_context():
    return build_context
