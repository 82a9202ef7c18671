from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, Optional

from typing_extensions import Protocol

from aidloop.api.models import LoopContext
from aidloop.core.safety.config import SafetyConfig

logger = logging.getLogger("aidloop.modulation")

MODULATION_KINDS = ("physio", "hormonal", "trajectory")


class ModulationProvider(Protocol):
    """Optional collaborator returning a multiplicative scalar for a cycle."""

    def factor(self, context: LoopContext) -> float:
        ...


@dataclass(frozen=True)
class ModulationFactors:
    physio: float = 1.0
    hormonal: float = 1.0
    trajectory: float = 1.0

    def combined(self) -> float:
        return self.physio * self.hormonal * self.trajectory

    def boost(self) -> float:
        """Product of the factors above 1; reductions are applied later by the dose capper."""
        return max(self.physio, 1.0) * max(self.hormonal, 1.0) * max(self.trajectory, 1.0)

    def as_dict(self) -> Dict[str, float]:
        return {"physio": self.physio, "hormonal": self.hormonal, "trajectory": self.trajectory}


class ModulationGateway:
    """
    Collects modulation scalars from the context and from registered providers,
    clamping each to the safe range. A provider that fails or returns garbage
    falls back to its last good value, or to a neutral 1.0.
    """

    def __init__(self,
                 providers: Optional[Dict[str, ModulationProvider]] = None,
                 minimum: float = 0.85,
                 maximum: float = 1.15,
                 safety_config: Optional[SafetyConfig] = None):
        if safety_config is not None:
            minimum = safety_config.modulation_min
            maximum = safety_config.modulation_max
        unknown = set(providers or {}) - set(MODULATION_KINDS)
        if unknown:
            raise ValueError(f"Unknown modulation kinds: {sorted(unknown)}")
        self.providers: Dict[str, ModulationProvider] = dict(providers or {})
        self.minimum = minimum
        self.maximum = maximum
        self.last_known_good: Dict[str, float] = {}

    def reset(self):
        self.last_known_good = {}

    def get_state(self) -> dict:
        return {"last_known_good": dict(self.last_known_good)}

    def set_state(self, state: dict) -> None:
        self.last_known_good = dict(state.get("last_known_good", {}))

    def clamp(self, value: float) -> float:
        return min(max(value, self.minimum), self.maximum)

    def _fallback(self, kind: str) -> float:
        return self.last_known_good.get(kind, 1.0)

    def _resolve(self, kind: str, context: LoopContext) -> float:
        provider = self.providers.get(kind)
        if provider is not None:
            try:
                raw = float(provider.factor(context))
            except Exception:
                logger.warning("Modulation provider '%s' failed, using %.2f", kind, self._fallback(kind), exc_info=True)
                return self._fallback(kind)
        else:
            raw_value = getattr(context.modulation, kind)
            if raw_value is None:
                return 1.0
            raw = float(raw_value)

        if not math.isfinite(raw):
            logger.warning("Modulation '%s' returned %r, using %.2f", kind, raw, self._fallback(kind))
            return self._fallback(kind)

        clamped = self.clamp(raw)
        if clamped != raw:
            logger.info("Modulation '%s' clamped %.3f -> %.3f", kind, raw, clamped)
        self.last_known_good[kind] = clamped
        return clamped

    def collect(self, context: LoopContext) -> ModulationFactors:
        return ModulationFactors(**{kind: self._resolve(kind, context) for kind in MODULATION_KINDS})
