from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Tuple

from typing_extensions import Protocol

from aidloop.api.models import DosingDirective, LoopContext
from aidloop.core.quantizer import quantize_down

logger = logging.getLogger("aidloop.orchestrator")


class VerdictType(Enum):
    CONFIRM = "confirm"
    SOFTEN = "soften"
    SHIFT_TO_TBR = "shift_to_tbr"


@dataclass(frozen=True)
class ReviewVerdict:
    verdict: VerdictType
    smb_factor: float = 1.0
    tbr_factor: float = 1.0
    confidence: float = 1.0
    reason: str = ""


class DirectiveReviewer(Protocol):
    """Post-hoc reviewer of a computed, not yet delivered directive."""

    def review(self, directive: DosingDirective, context: LoopContext) -> ReviewVerdict:
        ...


def _clamp(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)


def apply_verdict(
    directive: DosingDirective,
    verdict: ReviewVerdict,
    context: LoopContext,
    rate_cap: float,
    min_confidence: float = 0.5,
) -> Tuple[DosingDirective, str]:
    """
    Applies a review verdict. A verdict can only shrink the bolus; a rate
    change stays within ``rate_cap`` and the rate the resolver already allowed.
    """
    if verdict.confidence < min_confidence:
        return directive, f"review: {verdict.verdict.value} ignored (confidence {verdict.confidence:.2f})"

    if verdict.verdict == VerdictType.CONFIRM:
        return directive, "review: confirmed"

    step = context.profile.bolus_step
    if verdict.verdict == VerdictType.SOFTEN:
        factor = _clamp(verdict.smb_factor, 0.0, 1.0)
        bolus = min(directive.bolus_units, quantize_down(directive.bolus_units * factor, step))
        note = f"review: soften, bolus {directive.bolus_units:.2f} -> {bolus:.2f} U"
        return replace(directive, bolus_units=bolus), _with_reason(note, verdict)

    factor = _clamp(verdict.smb_factor, 0.0, 0.3)
    bolus = min(directive.bolus_units, quantize_down(directive.bolus_units * factor, step))
    tbr_factor = _clamp(verdict.tbr_factor, 0.8, 1.2)
    ceiling = max(min(rate_cap, context.profile.max_basal), 0.0)
    rate = directive.basal_rate_uph * tbr_factor
    rate = min(rate, max(ceiling, directive.basal_rate_uph))
    rate = quantize_down(rate, context.profile.basal_step)
    note = (
        f"review: shift to TBR, bolus {directive.bolus_units:.2f} -> {bolus:.2f} U, "
        f"basal {directive.basal_rate_uph:.2f} -> {rate:.2f} U/h"
    )
    return replace(directive, bolus_units=bolus, basal_rate_uph=rate), _with_reason(note, verdict)


def _with_reason(note: str, verdict: ReviewVerdict) -> str:
    return f"{note} ({verdict.reason})" if verdict.reason else note
