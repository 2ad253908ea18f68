# dentalcrm/services/scheduling.py
"""Appointment rules: status workflow, double-booking checks, free slots and calendar ranges."""
import logging
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from .. import models
from ..errors import InvalidTransitionError

logger = logging.getLogger(__name__)

Status = models.AppointmentStatus

# Appointments in these states occupy the dentist's chair
BLOCKING_STATUSES = frozenset({Status.pending, Status.scheduled, Status.confirmed, Status.in_progress})
TERMINAL_STATUSES = frozenset({Status.completed, Status.cancelled, Status.no_show})

APPOINTMENT_TRANSITIONS: Dict[Status, frozenset] = {
    Status.pending: frozenset({Status.scheduled, Status.confirmed, Status.cancelled}),
    Status.scheduled: frozenset({Status.confirmed, Status.cancelled, Status.no_show, Status.in_progress}),
    Status.confirmed: frozenset({Status.in_progress, Status.cancelled, Status.no_show, Status.completed}),
    Status.in_progress: frozenset({Status.completed}),
    Status.completed: frozenset(),
    Status.cancelled: frozenset(),
    Status.no_show: frozenset(),
}

CALENDAR_VIEWS = ("day", "week", "month")
MONTH_GRID_DAYS = 35


def can_transition(current: Status, requested: Status) -> bool:
    current, requested = Status(current), Status(requested)
    return current == requested or requested in APPOINTMENT_TRANSITIONS[current]


def ensure_transition(current: Status, requested: Status) -> None:
    if not can_transition(current, requested):
        raise InvalidTransitionError("appointment", current, requested)


def times_overlap(a_start: time, a_end: time, b_start: time, b_end: time) -> bool:
    """Half-open intervals: back-to-back appointments do not overlap."""
    return a_start < b_end and a_end > b_start


def duration_minutes(start: time, end: time) -> int:
    delta = datetime.combine(date.min, end) - datetime.combine(date.min, start)
    return int(delta.total_seconds() // 60)


def shift_times(start: time, end: time, new_start: time) -> Tuple[time, time]:
    """Move an interval to ``new_start`` keeping its length on the same day."""
    minutes = duration_minutes(start, end)
    new_end_dt = datetime.combine(date.min, new_start) + timedelta(minutes=minutes)
    if new_end_dt.date() != date.min:
        raise ValueError("Appointment would run past midnight")
    return new_start, new_end_dt.time()


def find_conflicts(
    db: Session,
    dentist_id: int,
    appointment_date: date,
    start_time: time,
    end_time: time,
    exclude_id: Optional[int] = None,
) -> List[models.Appointment]:
    """Blocking appointments of ``dentist_id`` that overlap the given interval."""
    query = db.query(models.Appointment).filter(
        models.Appointment.dentist_id == dentist_id,
        models.Appointment.appointment_date == appointment_date,
        models.Appointment.status.in_(list(BLOCKING_STATUSES)),
        models.Appointment.start_time < end_time,
        models.Appointment.end_time > start_time,
    )
    if exclude_id is not None:
        query = query.filter(models.Appointment.id != exclude_id)
    return query.order_by(models.Appointment.start_time).all()


def available_slots(
    db: Session,
    dentist_id: int,
    day: date,
    duration: int,
    day_start_hour: int = 8,
    day_end_hour: int = 20,
    interval: int = 30,
) -> List[Dict[str, time]]:
    """Free start times for a ``duration``-minute appointment within clinic hours."""
    if duration <= 0 or interval <= 0:
        raise ValueError("duration and interval must be positive")

    booked = [
        (a.start_time, a.end_time)
        for a in db.query(models.Appointment).filter(
            models.Appointment.dentist_id == dentist_id,
            models.Appointment.appointment_date == day,
            models.Appointment.status.in_(list(BLOCKING_STATUSES)),
        )
    ]

    current = datetime.combine(day, time(day_start_hour))
    if day_end_hour >= 24:
        close = datetime.combine(day + timedelta(days=1), time(0))
    else:
        close = datetime.combine(day, time(day_end_hour))

    slots = []
    while current + timedelta(minutes=duration) <= close:
        slot_end = current + timedelta(minutes=duration)
        # A slot ending exactly at midnight is stored as 23:59:59 for comparisons
        end_t = slot_end.time() if slot_end.date() == day else time(23, 59, 59)
        start_t = current.time()
        if not any(times_overlap(start_t, end_t, b_start, b_end) for b_start, b_end in booked):
            slots.append({"start_time": start_t, "end_time": end_t})
        current += timedelta(minutes=interval)

    logger.debug("Dentist %s has %d free slots on %s", dentist_id, len(slots), day)
    return slots


# ---- Calendar ranges ----

def week_start(d: date) -> date:
    """Weeks start on Monday."""
    return d - timedelta(days=d.weekday())


def day_hours(start_hour: int = 8, end_hour: int = 20) -> List[int]:
    return list(range(start_hour, end_hour))


def month_grid(year: int, month: int) -> List[date]:
    first = date(year, month, 1)
    start = week_start(first)
    return [start + timedelta(days=i) for i in range(MONTH_GRID_DAYS)]


def calendar_range(view: str, anchor: date) -> Tuple[date, date]:
    """Inclusive first and last date shown by a calendar view."""
    if view == "day":
        return anchor, anchor
    if view == "week":
        start = week_start(anchor)
        return start, start + timedelta(days=6)
    if view == "month":
        grid = month_grid(anchor.year, anchor.month)
        return grid[0], grid[-1]
    raise ValueError(f"Unknown calendar view '{view}'. Expected one of {', '.join(CALENDAR_VIEWS)}")

