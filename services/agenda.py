"""
Interview agenda derivation and overlap detection.

Day membership is decided on the calendar date of `scheduledDate` in the
configured local timezone (naive timestamps are wall-clock times there), not on whether the interview window intersects the
day. Overlap uses half-open windows [start, start + duration).
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Iterable, Optional
from zoneinfo import ZoneInfo

from utils import parse_datetime_maybe


INTERVIEW_TYPES = ["Technical", "HR", "Managerial", "Final"]
INTERVIEW_STATUSES = ["Scheduled", "Completed", "Cancelled", "Rescheduled"]
# Statuses that occupy the interviewer's calendar.
ACTIVE_STATUSES = {"Scheduled", "Rescheduled"}
MIN_DURATION_MINUTES = 15


@dataclass(frozen=True)
class TimeSlot:
    start: datetime
    end: datetime

    def overlaps(self, other: "TimeSlot") -> bool:
        return self.start < other.end and other.start < self.end


def _field(item: Any, name: str) -> Any:
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)


def interview_slot(interview: Any, tz_name: str = "UTC") -> Optional[TimeSlot]:
    start = parse_datetime_maybe(_field(interview, "scheduledDate"), tz_name)
    if start is None:
        return None
    try:
        minutes = int(_field(interview, "duration") or 0)
    except (TypeError, ValueError):
        minutes = 0
    return TimeSlot(start=start, end=start + timedelta(minutes=max(0, minutes)))


def local_date(value: Any, tz_name: str) -> Optional[date]:
    dt = parse_datetime_maybe(value, tz_name)
    if dt is None:
        return None
    return dt.astimezone(ZoneInfo(tz_name or "UTC")).date()


def interviews_on_day(interviews: Iterable[Any], day: date, tz_name: str) -> list[Any]:
    """Interviews whose start falls on `day` in `tz_name`, ordered by start time."""

    picked = []
    for it in interviews or []:
        d = local_date(_field(it, "scheduledDate"), tz_name)
        if d == day:
            picked.append(it)
    picked.sort(key=lambda it: parse_datetime_maybe(_field(it, "scheduledDate"), tz_name))
    return picked


def find_overlaps(interviews: Iterable[Any], tz_name: str = "UTC") -> list[tuple[Any, Any]]:
    """Pairs of active interviews for the same interviewer whose windows intersect."""

    by_interviewer: dict[str, list[tuple[TimeSlot, Any]]] = {}
    for it in interviews or []:
        if str(_field(it, "status") or "") not in ACTIVE_STATUSES:
            continue
        slot = interview_slot(it, tz_name)
        if slot is None:
            continue
        by_interviewer.setdefault(str(_field(it, "interviewerId") or ""), []).append((slot, it))

    pairs: list[tuple[Any, Any]] = []
    for items in by_interviewer.values():
        items.sort(key=lambda x: x[0].start)
        for i, (slot_a, a) in enumerate(items):
            for slot_b, b in items[i + 1 :]:
                if slot_b.start >= slot_a.end:
                    break
                if slot_a.overlaps(slot_b):
                    pairs.append((a, b))
    return pairs


def conflicts_with(candidate_slot: TimeSlot, interviews: Iterable[Any], *, exclude_id: str = "", tz_name: str = "UTC") -> list[Any]:
    """Active interviews in `interviews` that intersect `candidate_slot`."""

    out = []
    for it in interviews or []:
        if exclude_id and str(_field(it, "interviewId") or "") == exclude_id:
            continue
        if str(_field(it, "status") or "") not in ACTIVE_STATUSES:
            continue
        slot = interview_slot(it, tz_name)
        if slot is not None and slot.overlaps(candidate_slot):
            out.append(it)
    return out
