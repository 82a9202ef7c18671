from .base import Applied, CycleAssessment, DecisionResult, DosingStrategy, Fallthrough
from .safety_halt import SafetyHaltStrategy
from .meal_advisor import ConfirmedMealAdvisor, meal_advisor_dose
from .autodrive import AutodriveStrategy
from .meal_mode import ScheduledMealModeStrategy
from .general_fallback import FallbackProposal, GeneralFallback
from .resolver import FinalizedDose, ResolverOutcome, StrategyResolver

__all__ = [
    "Applied",
    "AutodriveStrategy",
    "ConfirmedMealAdvisor",
    "CycleAssessment",
    "DecisionResult",
    "DosingStrategy",
    "Fallthrough",
    "FallbackProposal",
    "FinalizedDose",
    "GeneralFallback",
    "ResolverOutcome",
    "SafetyHaltStrategy",
    "ScheduledMealModeStrategy",
    "StrategyResolver",
    "meal_advisor_dose",
]
