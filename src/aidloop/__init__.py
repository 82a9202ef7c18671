# src/aidloop/__init__.py

__version__ = "0.1.0"

from .api.models import (
    MEAL_MODES,
    CurrentTemp,
    DosingDirective,
    GlucoseStatus,
    InsulinState,
    LoopContext,
    MealEstimate,
    ModeFlags,
    Modulation,
    Preferences,
    ProfileLimits,
)
from .core.safety import (
    HypoGuard,
    InputValidator,
    RefractoryGate,
    SafetyConfig,
    SafetyDecision,
    compute_hypo_threshold,
    compute_safety_decision,
)
from .core.safety.dose_capper import DoseCapper, DoseGateAudit
from .core.basal import BasalRateResolver
from .core.algorithms import Applied, Fallthrough, StrategyResolver
from .core.modulation import ModulationGateway, ModulationProvider
from .core.review import DirectiveReviewer, ReviewVerdict, VerdictType
from .core.orchestrator import CycleRecord, DosingOrchestrator

__all__ = [
    "MEAL_MODES",
    "Applied",
    "BasalRateResolver",
    "CurrentTemp",
    "CycleRecord",
    "DirectiveReviewer",
    "DoseCapper",
    "DoseGateAudit",
    "DosingDirective",
    "DosingOrchestrator",
    "Fallthrough",
    "GlucoseStatus",
    "HypoGuard",
    "InputValidator",
    "InsulinState",
    "LoopContext",
    "MealEstimate",
    "ModeFlags",
    "Modulation",
    "ModulationGateway",
    "ModulationProvider",
    "Preferences",
    "ProfileLimits",
    "RefractoryGate",
    "ReviewVerdict",
    "SafetyConfig",
    "SafetyDecision",
    "StrategyResolver",
    "VerdictType",
    "compute_hypo_threshold",
    "compute_safety_decision",
]
