from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from aidloop.api.models import LoopContext
from aidloop.core.modulation import ModulationFactors
from aidloop.core.quantizer import quantize_down
from aidloop.core.safety.config import SafetyConfig
from aidloop.core.safety.refractory import RefractoryGate
from aidloop.core.safety.safety_decision import SafetyDecision, critical_conditions

logger = logging.getLogger("aidloop.safety")

BLIND_MODE_REASON = "prediction missing — conservative mode"


@dataclass
class GateEntry:
    stage: str
    before: float
    after: float
    fired: bool
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "before": self.before,
            "after": self.after,
            "fired": self.fired,
            "detail": self.detail,
        }


@dataclass
class DoseGateAudit:
    """Write-only record of every capping stage for one proposed bolus."""
    proposed: float = 0.0
    gated: float = 0.0
    capped: float = 0.0
    final: float = 0.0
    explicit: bool = False
    entries: List[GateEntry] = field(default_factory=list)

    def record(self, stage: str, before: float, after: float, detail: str = "") -> float:
        self.entries.append(GateEntry(stage=stage, before=before, after=after, fired=after < before, detail=detail))
        return after

    def fired_gates(self) -> List[str]:
        return [entry.stage for entry in self.entries if entry.fired]

    def summary(self) -> str:
        fired = ", ".join(self.fired_gates()) or "none"
        return (
            f"dose gate: proposed {self.proposed:.2f} U -> gated {self.gated:.2f} -> "
            f"capped {self.capped:.2f} -> final {self.final:.2f} U (fired: {fired})"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposed": self.proposed,
            "gated": self.gated,
            "capped": self.capped,
            "final": self.final,
            "explicit": self.explicit,
            "entries": [entry.to_dict() for entry in self.entries],
        }


def effective_max_smb(context: LoopContext) -> float:
    """
    maxSMB tiered by glucose: the high-BG limit above the threshold, a linear
    blend between 120 mg/dL and the threshold, and half the normal limit below
    120 unless glucose is clearly rising.
    """
    prefs = context.preferences
    glucose = context.glucose
    bg = glucose.glucose
    low = max(prefs.max_smb, 0.0)
    high = max(prefs.max_smb_high_bg, low)
    upper = prefs.high_bg_smb_threshold

    if bg >= upper:
        return high
    if bg < 120.0:
        if glucose.delta > 6.0 or glucose.short_avg_delta > 6.0:
            return low
        return low * 0.5
    if glucose.eventual_or_glucose() < 120.0 or upper <= 120.0:
        return low
    fraction = (bg - 120.0) / (upper - 120.0)
    return low + (high - low) * fraction


class DoseCapper:
    """
    Staged clamping of a proposed bolus. Output never increases from one stage
    to the next; every stage leaves an audit entry whether it fired or not.
    """

    def __init__(self,
                 absolute_floor: float = 60.0,
                 absolute_hard_cap: float = 30.0,
                 absorption_window_minutes: float = 20.0,
                 absorption_activity_fraction: float = 0.15,
                 absorption_damp: float = 0.5,
                 absorption_damp_rising: float = 0.75,
                 absorption_high_bg: float = 180.0,
                 blind_bolus_fraction: float = 0.5,
                 exercise_damper: float = 0.5,
                 safety_config: Optional[SafetyConfig] = None):
        if safety_config is not None:
            absolute_floor = safety_config.absolute_glucose_floor
            absolute_hard_cap = safety_config.absolute_bolus_hard_cap
            absorption_window_minutes = safety_config.absorption_window_minutes
            absorption_activity_fraction = safety_config.absorption_activity_fraction
            absorption_damp = safety_config.absorption_damp
            absorption_damp_rising = safety_config.absorption_damp_rising
            absorption_high_bg = safety_config.absorption_high_bg
            blind_bolus_fraction = safety_config.blind_bolus_fraction
            exercise_damper = safety_config.exercise_bolus_damper

        self.absolute_floor = absolute_floor
        self.absolute_hard_cap = max(absolute_hard_cap, 0.0)
        self.absorption_window_minutes = absorption_window_minutes
        self.absorption_activity_fraction = absorption_activity_fraction
        self.absorption_damp = absorption_damp
        self.absorption_damp_rising = absorption_damp_rising
        self.absorption_high_bg = absorption_high_bg
        self.blind_bolus_fraction = blind_bolus_fraction
        self.exercise_damper = exercise_damper

    def gate(
        self,
        proposed_units: float,
        context: LoopContext,
        refractory: RefractoryGate,
        safety: SafetyDecision,
        hypo_blocked: bool = False,
        modulation: Optional[ModulationFactors] = None,
        explicit: bool = False,
        bypass_refractory: bool = False,
    ) -> Tuple[float, DoseGateAudit]:
        proposed = proposed_units if math.isfinite(proposed_units) else 0.0
        proposed = max(proposed, 0.0)
        audit = DoseGateAudit(proposed=proposed, explicit=explicit)
        modulation = modulation or ModulationFactors()
        units = proposed

        # a. critical safety
        conditions = critical_conditions(context, hypo_blocked, self.absolute_floor, explicit=explicit)
        if conditions:
            units = audit.record("critical_safety", units, 0.0, "zeroed: " + ", ".join(conditions))
        else:
            audit.record("critical_safety", units, units, "no critical condition")

        # b. dampers, each capped at 1 so this stage can only reduce
        dampers: List[Tuple[str, float]] = []
        if context.modes.sport:
            dampers.append(("exercise", self.exercise_damper))
        dampers.append(("hormonal", modulation.hormonal))
        dampers.append(("physio", modulation.physio))
        dampers.append(("trajectory", modulation.trajectory))
        if not explicit:
            dampers.append(("safety_factor", safety.bolus_factor))
        for name, factor in dampers:
            # an unreadable factor blocks the dose
            factor = min(max(factor, 0.0), 1.0) if math.isfinite(factor) else 0.0
            units = audit.record(f"damper_{name}", units, units * factor, f"x{factor:.2f}")

        # c. refractory
        allowed, detail = refractory.check(context, explicit=explicit, bypass=bypass_refractory)
        units = audit.record("refractory", units, units if allowed else 0.0, detail)

        # d. absorption guard
        units = self._absorption_guard(units, context, refractory, explicit, audit)
        audit.gated = units

        # e. ceilings
        units = self._ceilings(units, context, explicit, audit)
        audit.capped = units

        # f. pump step
        step = context.profile.bolus_step
        units = audit.record("quantize", units, min(units, quantize_down(units, step)), f"step {step:.3f} U")
        audit.final = units

        logger.debug(audit.summary())
        return units, audit

    def _absorption_guard(
        self,
        units: float,
        context: LoopContext,
        refractory: RefractoryGate,
        explicit: bool,
        audit: DoseGateAudit,
    ) -> float:
        since = refractory.minutes_since_last_bolus(context)
        if explicit or units <= 0 or since is None or since >= self.absorption_window_minutes:
            return audit.record("absorption_guard", units, units, "not applicable")

        insulin = context.insulin
        if insulin.tdd_24h is not None and insulin.tdd_24h > 0:
            threshold = self.absorption_activity_fraction * (insulin.tdd_24h / 24.0)
        else:
            # No TDD history: treat any measurable activity as significant.
            threshold = 0.0
        if insulin.activity_now <= threshold:
            return audit.record("absorption_guard", units, units, f"activity {insulin.activity_now:.2f} below {threshold:.2f}")

        glucose = context.glucose
        factor = self.absorption_damp
        if glucose.glucose >= self.absorption_high_bg and glucose.delta > 2.0:
            factor = self.absorption_damp_rising
        return audit.record(
            "absorption_guard",
            units,
            units * factor,
            f"bolus {since:.0f} min ago still absorbing (activity {insulin.activity_now:.2f} U/h) x{factor:.2f}",
        )

    def _ceilings(self, units: float, context: LoopContext, explicit: bool, audit: DoseGateAudit) -> float:
        if explicit:
            capped = min(units, self.absolute_hard_cap)
            iob_room = self._iob_room(context)
            detail = f"explicit action, hard cap {self.absolute_hard_cap:.2f} U"
            if capped > iob_room:
                detail += f"; IOB ceiling {iob_room:.2f} U bypassed"
                logger.warning(
                    "Explicit bolus %.2f U exceeds IOB room %.2f U (hard cap %.2f U)",
                    capped, iob_room, self.absolute_hard_cap,
                )
            return audit.record("hard_cap", units, capped, detail)

        max_smb = effective_max_smb(context)
        units = audit.record("max_smb", units, min(units, max_smb), f"maxSMB {max_smb:.2f} U")

        if not context.glucose.prediction_available:
            blind_cap = max_smb * self.blind_bolus_fraction
            units = audit.record("blind_cap", units, min(units, blind_cap), f"{BLIND_MODE_REASON}: cap {blind_cap:.2f} U")

        iob_room = self._iob_room(context)
        return audit.record("max_iob", units, min(units, iob_room), f"IOB room {iob_room:.2f} U")

    @staticmethod
    def _iob_room(context: LoopContext) -> float:
        max_iob = context.preferences.max_iob
        if not math.isfinite(max_iob) or max_iob <= 0:
            logger.warning("max_iob=%s is not positive, clamping IOB room to 0", max_iob)
            return 0.0
        iob = context.insulin.iob if math.isfinite(context.insulin.iob) else max_iob
        return max(0.0, max_iob - iob)
