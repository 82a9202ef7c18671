from .config import SafetyConfig
from .input_validator import InputValidator
from .hypo_guard import HypoGuard, HysteresisState, compute_hypo_threshold
from .safety_decision import SafetyDecision, compute_safety_decision, critical_conditions
from .refractory import RefractoryGate, RefractoryState

__all__ = [
    "DoseCapper",
    "DoseGateAudit",
    "GateEntry",
    "HypoGuard",
    "HysteresisState",
    "InputValidator",
    "RefractoryGate",
    "RefractoryState",
    "SafetyConfig",
    "SafetyDecision",
    "compute_hypo_threshold",
    "compute_safety_decision",
    "critical_conditions",
    "effective_max_smb",
]

_DOSE_CAPPER_NAMES = {"DoseCapper", "DoseGateAudit", "GateEntry", "effective_max_smb"}


def __getattr__(name: str):
    if name in _DOSE_CAPPER_NAMES:
        from . import dose_capper

        return getattr(dose_capper, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
