from datetime import datetime
from zoneinfo import ZoneInfo

from seatflow import config
from seatflow.schemas import LiveDecision


def local_zone():
    return ZoneInfo(config.TIMEZONE)


def to_local(value: datetime) -> datetime:
    """Naive values are already local wall time."""
    zone = local_zone()
    if value.tzinfo is None:
        return value.replace(tzinfo=zone)
    return value.astimezone(zone)


def _minutes_of_day(value):
    return value.hour * 60 + value.minute


def _clock(value):
    return value.strftime("%I:%M %p")


def is_live(session, now: datetime) -> LiveDecision:
    start = to_local(session.start_at)
    end = to_local(session.end_at)
    now = to_local(now)

    # Overall span of the run, which may cover several days
    within_dates = start <= now <= end

    # The daily meeting time is taken from the start/end instants
    now_minutes = _minutes_of_day(now)
    within_time = _minutes_of_day(start) <= now_minutes <= _minutes_of_day(end)

    if within_dates and within_time:
        return LiveDecision(is_live=True)

    if now < start:
        description = f"{start.month}/{start.day}/{start.year} {_clock(start)}"
    elif within_dates:
        description = f"Tomorrow {_clock(start)}"
    else:
        description = None

    return LiveDecision(is_live=False, next_window_description=description)