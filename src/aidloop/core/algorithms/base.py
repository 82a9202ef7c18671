from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Union

from aidloop.api.models import LoopContext
from aidloop.core.modulation import ModulationFactors
from aidloop.core.safety.refractory import RefractoryGate
from aidloop.core.safety.safety_decision import SafetyDecision


@dataclass(frozen=True)
class Applied:
    """A strategy took control of the cycle. Must carry at least one intent."""
    source: str
    reason: str
    bolus_units: Optional[float] = None
    basal_rate_uph: Optional[float] = None
    basal_duration_min: Optional[int] = None
    explicit: bool = False
    bypass_refractory: bool = False
    suspend: bool = False
    prebolus_key: Optional[str] = None

    def __post_init__(self):
        has_bolus = self.bolus_units is not None and self.bolus_units > 0
        if not (self.suspend or has_bolus or self.basal_rate_uph is not None):
            raise ValueError(f"Applied result from '{self.source}' carries no dosing intent")
        if self.bolus_units is not None and self.bolus_units < 0:
            raise ValueError("bolus_units cannot be negative")
        if self.basal_rate_uph is not None and self.basal_rate_uph < 0:
            raise ValueError("basal_rate_uph cannot be negative")


@dataclass(frozen=True)
class Fallthrough:
    reason: str


DecisionResult = Union[Applied, Fallthrough]


@dataclass
class CycleAssessment:
    """Facts derived once per cycle and shared by every strategy."""
    threshold: float
    hypo_blocked: bool
    safety: SafetyDecision
    modulation: ModulationFactors
    refractory: RefractoryGate
    sensor_faults: List[str] = field(default_factory=list)


class DosingStrategy(ABC):
    """One link of the strategy chain. Strategies read state, they never commit it."""

    name: str = "strategy"

    @abstractmethod
    def evaluate(self, context: LoopContext, assessment: CycleAssessment) -> DecisionResult:
        raise NotImplementedError
