from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from aidloop.api.models import LoopContext
from aidloop.core.algorithms.base import Applied, CycleAssessment, DosingStrategy, Fallthrough
from aidloop.core.safety.dose_capper import DoseGateAudit

logger = logging.getLogger("aidloop.strategies")


@dataclass
class FinalizedDose:
    """Bolus and basal after the dose capper and the basal clamp."""
    bolus_units: float
    basal_rate_uph: float
    basal_duration_min: int
    baseline_rate_uph: float
    basal_step: float
    suspend: bool = False
    audit: Optional[DoseGateAudit] = None
    basal_reasons: List[str] = field(default_factory=list)

    def has_effect(self) -> bool:
        if self.suspend or self.bolus_units > 0:
            return True
        tolerance = self.basal_step if self.basal_step > 0 else 1e-6
        return abs(self.basal_rate_uph - self.baseline_rate_uph) >= tolerance - 1e-9


@dataclass
class ResolverOutcome:
    applied: Optional[Applied]
    dose: Optional[FinalizedDose]
    trail: List[str] = field(default_factory=list)


Finalizer = Callable[[Applied, LoopContext, CycleAssessment], FinalizedDose]


class StrategyResolver:
    """
    Runs strategies in priority order; the first Applied with a real effect
    after capping wins. An Applied that caps down to nothing is demoted to
    Fallthrough so no strategy claims a cycle it did not act on.
    """

    def __init__(self, strategies: Sequence[DosingStrategy], finalizer: Finalizer):
        self.strategies = list(strategies)
        self.finalizer = finalizer

    def resolve(self, context: LoopContext, assessment: CycleAssessment) -> ResolverOutcome:
        trail: List[str] = []
        for strategy in self.strategies:
            result = strategy.evaluate(context, assessment)
            if isinstance(result, Fallthrough):
                trail.append(f"{strategy.name}: skipped, {result.reason}")
                continue

            dose = self.finalizer(result, context, assessment)
            if not dose.has_effect():
                demoted = Fallthrough(f"{result.reason}; no net effect after capping")
                logger.info("Demoting %s: %s", strategy.name, demoted.reason)
                trail.append(f"{strategy.name}: skipped, {demoted.reason}")
                continue

            trail.append(f"{strategy.name}: applied")
            trail.append(result.reason)
            return ResolverOutcome(applied=result, dose=dose, trail=trail)

        return ResolverOutcome(applied=None, dose=None, trail=trail)
