import math


def quantize_down(value: float, step: float) -> float:
    """Floor ``value`` to a multiple of the pump step. Never rounds up past a cap."""
    if value <= 0 or not math.isfinite(value):
        return 0.0
    if step <= 0:
        return round(value, 4)
    return round(math.floor(value / step + 1e-6) * step, 4)


def round_to_step(value: float, step: float) -> float:
    """Nearest multiple of the pump step (used for base rates, not ceilings)."""
    if value <= 0 or not math.isfinite(value):
        return 0.0
    if step <= 0:
        return round(value, 4)
    return round(round(value / step) * step, 4)
