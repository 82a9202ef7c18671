from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence

from aidloop.api.models import DosingDirective, LoopContext
from aidloop.core.algorithms.autodrive import AutodriveStrategy
from aidloop.core.algorithms.base import Applied, CycleAssessment, DosingStrategy
from aidloop.core.algorithms.general_fallback import GeneralFallback
from aidloop.core.algorithms.meal_advisor import ConfirmedMealAdvisor
from aidloop.core.algorithms.meal_mode import ScheduledMealModeStrategy
from aidloop.core.algorithms.resolver import FinalizedDose, StrategyResolver
from aidloop.core.algorithms.safety_halt import SafetyHaltStrategy
from aidloop.core.basal.resolver import BasalRateResolver, baseline_rate
from aidloop.core.modulation import ModulationGateway, ModulationProvider
from aidloop.core.review import DirectiveReviewer, apply_verdict
from aidloop.core.safety.config import SafetyConfig
from aidloop.core.safety.dose_capper import BLIND_MODE_REASON, DoseCapper, DoseGateAudit
from aidloop.core.safety.hypo_guard import HypoGuard, compute_hypo_threshold
from aidloop.core.safety.input_validator import InputValidator
from aidloop.core.safety.refractory import RefractoryGate
from aidloop.core.safety.safety_decision import compute_safety_decision

logger = logging.getLogger("aidloop.orchestrator")

INTERNAL_ERROR_REASON = "internal error — suspending"


@dataclass
class CycleRecord:
    """Everything a cycle decided, for callers that want more than the directive."""
    directive: DosingDirective
    threshold: Optional[float] = None
    hypo_blocked: bool = False
    sensor_faults: List[str] = field(default_factory=list)
    audit: Optional[DoseGateAudit] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "directive": self.directive.to_dict(),
            "threshold": self.threshold,
            "hypo_blocked": self.hypo_blocked,
            "sensor_faults": list(self.sensor_faults),
            "audit": self.audit.to_dict() if self.audit is not None else None,
        }


class DosingOrchestrator:
    """
    Runs one decision pass per control-loop tick.

    Cycles are serialised through a lock; hysteresis, refractory clocks,
    sensor reference and last-good modulation are the only state carried
    between them, and all of it round-trips through ``get_state``/``set_state``.
    """

    def __init__(self,
                 safety_config: Optional[SafetyConfig] = None,
                 modulation_providers: Optional[Dict[str, ModulationProvider]] = None,
                 reviewer: Optional[DirectiveReviewer] = None,
                 strategies: Optional[Sequence[DosingStrategy]] = None):
        self.safety_config = safety_config or SafetyConfig()
        config = self.safety_config
        self.input_validator = InputValidator(safety_config=config)
        self.hypo_guard = HypoGuard(safety_config=config)
        self.refractory = RefractoryGate(safety_config=config)
        self.dose_capper = DoseCapper(safety_config=config)
        self.basal_resolver = BasalRateResolver(safety_config=config)
        self.modulation = ModulationGateway(modulation_providers, safety_config=config)
        self.fallback = GeneralFallback()
        if strategies is None:
            strategies = [
                SafetyHaltStrategy(safety_config=config),
                ConfirmedMealAdvisor(),
                AutodriveStrategy(),
                ScheduledMealModeStrategy(basal_window_minutes=config.meal_basal_window_minutes),
            ]
        self.resolver = StrategyResolver(strategies, self._finalize)
        self.reviewer = reviewer
        self._lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None

    # State

    def reset(self):
        with self._lock:
            self.input_validator.reset()
            self.hypo_guard.reset()
            self.refractory.reset()
            self.modulation.reset()

    def get_state(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "input_validator": self.input_validator.get_state(),
                "hypo_guard": self.hypo_guard.get_state(),
                "refractory": self.refractory.get_state(),
                "modulation": self.modulation.get_state(),
            }

    def set_state(self, state: Dict[str, Any]) -> None:
        with self._lock:
            self.input_validator.set_state(state.get("input_validator", {}))
            self.hypo_guard.set_state(state.get("hypo_guard", {}))
            self.refractory.set_state(state.get("refractory", {}))
            self.modulation.set_state(state.get("modulation", {}))

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    # Cycle

    def run_cycle(self, context: LoopContext) -> DosingDirective:
        return self.run_cycle_detailed(context).directive

    def run_cycle_detailed(self, context: LoopContext) -> CycleRecord:
        with self._lock:
            try:
                record, applied = self._decide(context)
            except Exception:
                logger.exception("Dosing cycle failed at t=%.1f, suspending", context.now)
                record = CycleRecord(directive=self._suspend_directive([INTERNAL_ERROR_REASON]))
                applied = None

            record.directive = self._review(record.directive, context)
            self._commit(context, record.directive, applied)
            logger.info(
                "t=%.1f %s: basal %.2f U/h x %d min, bolus %.2f U",
                context.now,
                record.directive.source,
                record.directive.basal_rate_uph,
                record.directive.basal_duration_min,
                record.directive.bolus_units,
            )
            return record

    def _decide(self, context: LoopContext):
        config = self.safety_config
        trail: List[str] = []
        faults = self.input_validator.assess(context.glucose, context.now)
        threshold = compute_hypo_threshold(context.profile.min_bg, context.profile.lgs_threshold)
        trail.append(f"hypo threshold {threshold:.0f} mg/dL")
        if not context.glucose.prediction_available:
            trail.append(BLIND_MODE_REASON)

        hypo_blocked = False
        if faults:
            for fault in faults:
                logger.warning("Sensor fault: %s", fault)
            # the release hold must be continuous valid readings
            self.hypo_guard.interrupt_release()
        else:
            glucose = context.glucose
            hypo_blocked = self.hypo_guard.is_blocked(
                glucose.glucose,
                glucose.predicted_bg,
                glucose.eventual_bg,
                threshold,
                glucose.delta,
                context.now,
            )

        safety = compute_safety_decision(context, max_zero_basal_minutes=config.max_zero_basal_minutes)
        if safety.reason:
            trail.append(f"safety: factor {safety.bolus_factor:.2f} ({safety.reason})")
        modulation = self.modulation.collect(context)
        assessment = CycleAssessment(
            threshold=threshold,
            hypo_blocked=hypo_blocked,
            safety=safety,
            modulation=modulation,
            refractory=self.refractory,
            sensor_faults=list(faults),
        )

        outcome = self.resolver.resolve(context, assessment)
        trail.extend(outcome.trail)
        if outcome.applied is not None and outcome.dose is not None:
            applied, dose = outcome.applied, outcome.dose
            if dose.audit is not None:
                trail.append(dose.audit.summary())
            trail.extend(f"basal: {reason}" for reason in dose.basal_reasons)
            directive = DosingDirective(
                basal_rate_uph=dose.basal_rate_uph,
                basal_duration_min=dose.basal_duration_min,
                bolus_units=dose.bolus_units,
                reason_trail=tuple(trail),
                source=applied.source,
                suspend=dose.suspend,
                explicit=applied.explicit,
            )
            record = CycleRecord(directive, threshold, hypo_blocked, list(faults), dose.audit)
            return record, applied

        proposal = self.fallback.propose(context, assessment)
        trail.append(proposal.reason)
        bolus, audit = self.dose_capper.gate(
            proposal.bolus_units,
            context,
            self.refractory,
            safety,
            hypo_blocked=hypo_blocked,
            modulation=modulation,
        )
        trail.append(audit.summary())
        basal = self.basal_resolver.resolve(context, safety, modulation)
        trail.extend(f"basal: {reason}" for reason in basal.reasons)
        directive = DosingDirective(
            basal_rate_uph=basal.rate_uph,
            basal_duration_min=basal.duration_min,
            bolus_units=bolus,
            reason_trail=tuple(trail),
            source=self.fallback.name,
        )
        return CycleRecord(directive, threshold, hypo_blocked, list(faults), audit), None

    def _finalize(self, applied: Applied, context: LoopContext, assessment: CycleAssessment) -> FinalizedDose:
        profile = context.profile
        if applied.suspend:
            return FinalizedDose(
                bolus_units=0.0,
                basal_rate_uph=0.0,
                basal_duration_min=applied.basal_duration_min or self.safety_config.halt_duration_minutes,
                baseline_rate_uph=baseline_rate(context),
                basal_step=profile.basal_step,
                suspend=True,
            )

        bolus = 0.0
        audit = None
        if applied.bolus_units:
            bolus, audit = self.dose_capper.gate(
                applied.bolus_units,
                context,
                self.refractory,
                assessment.safety,
                hypo_blocked=assessment.hypo_blocked,
                modulation=assessment.modulation,
                explicit=applied.explicit,
                bypass_refractory=applied.bypass_refractory,
            )

        basal = self.basal_resolver.resolve(
            context,
            assessment.safety,
            assessment.modulation,
            boost_rate=applied.basal_rate_uph,
            explicit=applied.explicit,
        )
        return FinalizedDose(
            bolus_units=bolus,
            basal_rate_uph=basal.rate_uph,
            basal_duration_min=applied.basal_duration_min or basal.duration_min,
            baseline_rate_uph=baseline_rate(context),
            basal_step=profile.basal_step,
            audit=audit,
            basal_reasons=basal.reasons,
        )

    def _suspend_directive(self, trail: List[str]) -> DosingDirective:
        return DosingDirective(
            basal_rate_uph=0.0,
            basal_duration_min=self.safety_config.halt_duration_minutes,
            bolus_units=0.0,
            reason_trail=tuple(trail),
            source="safety_halt",
            suspend=True,
        )

    # Review and commit

    def _review(self, directive: DosingDirective, context: LoopContext) -> DosingDirective:
        # Explicit meal actions and suspends are never second-guessed.
        if self.reviewer is None or directive.suspend or directive.explicit:
            return directive

        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="aidloop-review")
        timeout = self.safety_config.reviewer_timeout_seconds
        future = self._executor.submit(self.reviewer.review, directive, context)
        try:
            verdict = future.result(timeout=timeout)
        except FutureTimeoutError:
            # A running call cannot be cancelled; abandon the busy worker so
            # the next cycle's review is not queued behind it.
            future.cancel()
            self._executor.shutdown(wait=False)
            self._executor = None
            logger.warning("Reviewer timed out after %.1fs, keeping directive", timeout)
            return _append_trail(directive, "review: timed out, directive unchanged")
        except Exception:
            logger.warning("Reviewer failed, keeping directive", exc_info=True)
            return _append_trail(directive, "review: failed, directive unchanged")

        reviewed, note = apply_verdict(
            directive,
            verdict,
            context,
            rate_cap=context.profile.max_safe_basal(),
            min_confidence=self.safety_config.reviewer_min_confidence,
        )
        return _append_trail(reviewed, note)

    def _commit(self, context: LoopContext, directive: DosingDirective, applied: Optional[Applied]) -> None:
        self.refractory.record_bolus(context.now, directive.bolus_units)
        if applied is None:
            return
        if applied.source == "autodrive":
            self.refractory.record_autodrive(context.now)
        elif applied.source == "meal_advisor" and context.meal_estimate is not None:
            self.refractory.record_meal_advice(context.meal_estimate)
        if applied.prebolus_key and directive.bolus_units > 0:
            self.refractory.record_prebolus(applied.prebolus_key)


def _append_trail(directive: DosingDirective, note: str) -> DosingDirective:
    return replace(directive, reason_trail=directive.reason_trail + (note,))
