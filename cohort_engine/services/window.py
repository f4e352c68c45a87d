"""Window selector: is a candidate timestamp valid relative to an anchor?"""

from datetime import datetime

from cohort_engine.domain.models import Window


def window_bounds(anchor: datetime, window: Window) -> tuple[datetime, datetime]:
    """Inclusive ``(lower, upper)`` bounds of a window around an anchor."""
    lower = anchor - window.before.as_relativedelta()
    upper = anchor if window.after is None else anchor + window.after.as_relativedelta()
    return lower, upper


def in_window(anchor: datetime, candidate: datetime, window: Window) -> bool:
    """Both bounds are inclusive; without ``after`` nothing later than the anchor qualifies."""
    lower, upper = window_bounds(anchor, window)
    return lower <= candidate <= upper
