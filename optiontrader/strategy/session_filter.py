"""Session filter — pure functions over market-local wall-clock times."""

from datetime import datetime, time


def parse_hhmm(value: str) -> time:
    """``"09:15"`` → ``time(9, 15)``."""
    try:
        hour, minute = value.split(":")
        return time(int(hour), int(minute))
    except (AttributeError, ValueError):
        raise ValueError(f"Expected HH:MM, got {value!r}") from None


def is_in_session(
    local_now: datetime,
    session_open: str = "09:15",
    session_close: str = "15:30",
) -> bool:
    """Return True if *local_now* falls within the trading window.

    Inclusive open, exclusive close.

    Args:
        local_now: Current time in the market's timezone.
        session_open: Window start, ``HH:MM``.
        session_close: Window end, ``HH:MM``.
    """
    current = local_now.time().replace(tzinfo=None)
    return parse_hhmm(session_open) <= current < parse_hhmm(session_close)


def is_at_or_after(local_now: datetime, cutoff: str) -> bool:
    """True once *local_now* has reached the ``HH:MM`` *cutoff*."""
    return local_now.time().replace(tzinfo=None) >= parse_hhmm(cutoff)
