from .resolver import BasalRateResolver, BasalResolution, baseline_rate

__all__ = ["BasalRateResolver", "BasalResolution", "baseline_rate"]
