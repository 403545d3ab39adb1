from __future__ import annotations

import math
from typing import Optional


def _plural(n: int, unit: str) -> str:
    return f"{n} {unit}" if n == 1 else f"{n} {unit}s"


def format_distance(distance_m: Optional[float]) -> str:
    """650 -> "650m", 4000 -> "4.0km"."""
    if distance_m is None:
        return "N/A"
    if distance_m < 1000:
        return f"{round(distance_m)}m"
    return f"{distance_m / 1000:.1f}km"


def format_time_left(seconds_left: float) -> str:
    if seconds_left <= 0:
        return "Expired"
    hours = math.floor(seconds_left / 3600)
    days = hours // 24
    if days > 0:
        return _plural(days, "day")
    if hours > 0:
        return _plural(hours, "hour")
    return _plural(math.floor(seconds_left / 60), "minute")


def format_expiry(seconds_left: float) -> str:
    days = math.floor(seconds_left / 86400)
    if days == 0:
        return "today"
    if days == 1:
        return "tomorrow"
    if days > 1:
        return f"in {days} days"
    return "expired"
