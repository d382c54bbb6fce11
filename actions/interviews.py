from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import select

from actions.helpers import actor_id, append_activity, append_audit, clamp_int, get_int, get_str, load_candidate, require_auth, require_str, user_names
from actions.ratings import parse_score
from models import Candidate, Interview, InterviewFeedback, User
from services.agenda import (
    ACTIVE_STATUSES,
    INTERVIEW_STATUSES,
    INTERVIEW_TYPES,
    MIN_DURATION_MINUTES,
    TimeSlot,
    conflicts_with,
    find_overlaps,
    interviews_on_day,
)
from utils import (
    AuthContext,
    InvalidStateError,
    NotFoundError,
    PermissionDenied,
    ValidationError,
    iso_utc_now,
    is_privileged,
    new_uuid,
    normalize_role,
    parse_datetime_maybe,
    safe_json_load,
    safe_json_string,
    to_iso_utc,
)


MAX_DURATION_MINUTES = 480
RECOMMENDATIONS = ["Strong Hire", "Hire", "Maybe", "No Hire"]

_TYPE_BY_LOWER = {t.lower(): t for t in INTERVIEW_TYPES}
_STATUS_BY_LOWER = {s.lower(): s for s in INTERVIEW_STATUSES}


def _parse_type(raw: str) -> str:
    t = _TYPE_BY_LOWER.get(str(raw or "").strip().lower())
    if not t:
        raise ValidationError(f"Invalid interview type. Allowed: {', '.join(INTERVIEW_TYPES)}")
    return t


def _parse_status(raw: str) -> str:
    s = _STATUS_BY_LOWER.get(str(raw or "").strip().lower())
    if not s:
        raise ValidationError(f"Invalid interview status. Allowed: {', '.join(INTERVIEW_STATUSES)}")
    return s


def _parse_scheduled(raw: str, cfg) -> str:
    dt = parse_datetime_maybe(raw, cfg.APP_TIMEZONE)
    if dt is None:
        raise ValidationError("Invalid scheduledDate")
    return to_iso_utc(dt)


def _parse_duration(data, default: int) -> int:
    minutes = get_int(data, "duration", default)
    if minutes < MIN_DURATION_MINUTES:
        raise ValidationError(f"Duration must be at least {MIN_DURATION_MINUTES} minutes")
    if minutes > MAX_DURATION_MINUTES:
        raise ValidationError(f"Duration must be at most {MAX_DURATION_MINUTES} minutes")
    return minutes


def _parse_round(data, default: int) -> int:
    rnd = get_int(data, "round", default)
    if rnd < 1:
        raise ValidationError("Round must be at least 1")
    return rnd


def _parse_day(raw: str) -> date:
    try:
        return date.fromisoformat(str(raw or "").strip())
    except ValueError:
        raise ValidationError("date must be YYYY-MM-DD")


def _require_interviewer(db, interviewer_id: str) -> User:
    usr = db.execute(select(User).where(User.userId == interviewer_id)).scalar_one_or_none()
    if not usr:
        raise NotFoundError("Interviewer not found")
    if str(usr.status or "").upper() != "ACTIVE":
        raise ValidationError("Interviewer account is not active")
    return usr


def _load_interview(db, interview_id: str, *, for_update: bool = False) -> Interview:
    q = select(Interview).where(Interview.interviewId == interview_id)
    if for_update:
        q = q.with_for_update(of=Interview)
    row = db.execute(q).scalar_one_or_none()
    if not row:
        raise NotFoundError("Interview not found")
    return row


def _assert_no_conflict(db, cfg, *, interviewer_id: str, scheduled: str, duration: int, status: str, exclude_id: str = "") -> None:
    if not cfg.INTERVIEW_CONFLICT_CHECK or status not in ACTIVE_STATUSES:
        return

    start = parse_datetime_maybe(scheduled, cfg.APP_TIMEZONE)
    slot = TimeSlot(start=start, end=start + timedelta(minutes=duration))
    # Stored timestamps share one ISO format, so string bounds order correctly.
    lower = to_iso_utc(slot.start - timedelta(minutes=MAX_DURATION_MINUTES))
    upper = to_iso_utc(slot.end)
    rows = (
        db.execute(
            select(Interview)
            .where(Interview.interviewerId == interviewer_id)
            .where(Interview.status.in_(sorted(ACTIVE_STATUSES)))
            .where(Interview.scheduledDate >= lower)
            .where(Interview.scheduledDate < upper)
        )
        .scalars()
        .all()
    )
    clashes = conflicts_with(slot, rows, exclude_id=exclude_id, tz_name=cfg.APP_TIMEZONE)
    if clashes:
        raise ValidationError(f"Interviewer has a scheduling conflict with interview {clashes[0].interviewId}")


def _names(db, rows: list[Interview]) -> tuple[dict[str, str], dict[str, str]]:
    cand_ids = sorted({str(r.candidateId or "") for r in rows if r.candidateId})
    cand_names: dict[str, str] = {}
    if cand_ids:
        for cid, name in db.execute(select(Candidate.candidateId, Candidate.name).where(Candidate.candidateId.in_(cand_ids))).all():
            cand_names[str(cid)] = str(name or "")
    return cand_names, user_names(db, [r.interviewerId for r in rows])


def serialize_interview(row: Interview, cand_names: dict[str, str] | None = None, interviewer_names: dict[str, str] | None = None) -> dict:
    return {
        "interviewId": str(row.interviewId or ""),
        "candidateId": str(row.candidateId or ""),
        "candidateName": (cand_names or {}).get(str(row.candidateId or ""), ""),
        "interviewerId": str(row.interviewerId or ""),
        "interviewerName": (interviewer_names or {}).get(str(row.interviewerId or ""), ""),
        "scheduledDate": str(row.scheduledDate or ""),
        "duration": int(row.duration or 0),
        "type": str(row.type or ""),
        "status": str(row.status or ""),
        "location": str(row.location or ""),
        "meetingLink": str(row.meetingLink or ""),
        "round": int(row.round or 1),
        "notes": str(row.notes or ""),
        "createdAt": str(row.createdAt or ""),
        "updatedAt": str(row.updatedAt or ""),
    }


def _serialize_many(db, rows: list[Interview]) -> list[dict]:
    cand_names, interviewer_names = _names(db, rows)
    return [serialize_interview(r, cand_names, interviewer_names) for r in rows]


def interviews_for_candidate(db, candidate_id: str) -> list[dict]:
    rows = (
        db.execute(select(Interview).where(Interview.candidateId == candidate_id).order_by(Interview.scheduledDate.asc()))
        .scalars()
        .all()
    )
    return _serialize_many(db, rows)


def _audit(db, row: Interview, *, action: str, from_status: str, to_status: str, auth: AuthContext, now: str, meta: dict | None = None) -> None:
    append_audit(
        db,
        entityType="INTERVIEW",
        entityId=str(row.interviewId or ""),
        action=action,
        fromState=from_status,
        toState=to_status,
        stageTag="INTERVIEW",
        actor=auth,
        at=now,
        meta={"candidateId": str(row.candidateId or ""), "interviewerId": str(row.interviewerId or ""), **(meta or {})},
    )
    append_activity(
        db,
        candidate_id=str(row.candidateId or ""),
        type="INTERVIEW",
        payload={"interviewId": str(row.interviewId or ""), "action": action, "status": to_status, "scheduledDate": str(row.scheduledDate or "")},
        actor=auth,
        at=now,
    )


def interview_schedule(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    candidate_id = require_str(data, "candidateId")
    interviewer_id = require_str(data, "interviewerId")
    scheduled = _parse_scheduled(require_str(data, "scheduledDate"), cfg)
    duration = _parse_duration(data, 60)
    interview_type = _parse_type(require_str(data, "type"))
    status = _parse_status(get_str(data, "status") or "Scheduled")
    rnd = _parse_round(data, 1)

    load_candidate(db, candidate_id)
    _require_interviewer(db, interviewer_id)
    _assert_no_conflict(db, cfg, interviewer_id=interviewer_id, scheduled=scheduled, duration=duration, status=status)

    now = iso_utc_now()
    row = Interview(
        interviewId=f"INT-{new_uuid()}",
        candidateId=candidate_id,
        interviewerId=interviewer_id,
        scheduledDate=scheduled,
        duration=duration,
        type=interview_type,
        status=status,
        location=get_str(data, "location", max_len=500),
        meetingLink=get_str(data, "meetingLink", max_len=1000),
        round=rnd,
        notes=get_str(data, "notes", max_len=5000),
        createdAt=now,
        createdBy=actor_id(auth),
        updatedAt=now,
        updatedBy=actor_id(auth),
    )
    db.add(row)
    _audit(db, row, action="INTERVIEW_SCHEDULE", from_status="", to_status=status, auth=auth, now=now)
    return _serialize_many(db, [row])[0]


def interview_update(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    interview_id = require_str(data, "interviewId")
    row = _load_interview(db, interview_id, for_update=True)
    payload = data or {}

    interviewer_id = str(row.interviewerId or "")
    if "interviewerId" in payload:
        interviewer_id = require_str(data, "interviewerId")
        _require_interviewer(db, interviewer_id)
    scheduled = _parse_scheduled(require_str(data, "scheduledDate"), cfg) if "scheduledDate" in payload else str(row.scheduledDate or "")
    duration = _parse_duration(data, int(row.duration or 60)) if "duration" in payload else int(row.duration or 60)
    status = _parse_status(require_str(data, "status")) if "status" in payload else str(row.status or "")

    _assert_no_conflict(db, cfg, interviewer_id=interviewer_id, scheduled=scheduled, duration=duration, status=status, exclude_id=interview_id)

    before = str(row.status or "")
    row.interviewerId = interviewer_id
    row.scheduledDate = scheduled
    row.duration = duration
    row.status = status
    if "type" in payload:
        row.type = _parse_type(require_str(data, "type"))
    if "round" in payload:
        row.round = _parse_round(data, int(row.round or 1))
    if "location" in payload:
        row.location = get_str(data, "location", max_len=500)
    if "meetingLink" in payload:
        row.meetingLink = get_str(data, "meetingLink", max_len=1000)
    if "notes" in payload:
        row.notes = get_str(data, "notes", max_len=5000)

    now = iso_utc_now()
    row.updatedAt = now
    row.updatedBy = actor_id(auth)
    _audit(db, row, action="INTERVIEW_UPDATE", from_status=before, to_status=status, auth=auth, now=now)
    return _serialize_many(db, [row])[0]


def interview_status_set(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    interview_id = require_str(data, "interviewId")
    target = _parse_status(require_str(data, "status"))
    row = _load_interview(db, interview_id, for_update=True)

    if str(row.interviewerId or "") != str(auth.userId or "") and not is_privileged(auth.role):
        raise PermissionDenied("You can only update your own interviews")

    before = str(row.status or "")
    if before not in ACTIVE_STATUSES and target in ACTIVE_STATUSES:
        _assert_no_conflict(
            db,
            cfg,
            interviewer_id=str(row.interviewerId or ""),
            scheduled=str(row.scheduledDate or ""),
            duration=int(row.duration or 0),
            status=target,
            exclude_id=interview_id,
        )

    now = iso_utc_now()
    row.status = target
    row.updatedAt = now
    row.updatedBy = actor_id(auth)
    _audit(db, row, action="INTERVIEW_STATUS_SET", from_status=before, to_status=target, auth=auth, now=now)
    return _serialize_many(db, [row])[0]


def interview_delete(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    interview_id = require_str(data, "interviewId")
    row = _load_interview(db, interview_id, for_update=True)
    fb = db.execute(select(InterviewFeedback).where(InterviewFeedback.interviewId == interview_id)).scalar_one_or_none()
    if fb:
        db.delete(fb)
    db.delete(row)

    _audit(db, row, action="INTERVIEW_DELETE", from_status=str(row.status or ""), to_status="", auth=auth, now=iso_utc_now())
    return {"interviewId": interview_id, "deleted": True}


def _serialize_feedback(fb: InterviewFeedback) -> dict:
    return {
        "feedbackId": str(fb.feedbackId or ""),
        "interviewId": str(fb.interviewId or ""),
        "interviewerId": str(fb.interviewerId or ""),
        "overallRating": float(fb.overallRating),
        "recommendation": str(fb.recommendation or ""),
        "comments": str(fb.comments or ""),
        "strengths": safe_json_load(fb.strengthsJson, []) or [],
        "weaknesses": safe_json_load(fb.weaknessesJson, []) or [],
        "createdAt": str(fb.createdAt or ""),
    }


def interview_get(data, auth: AuthContext | None, db, cfg):
    require_auth(auth)

    interview_id = require_str(data, "interviewId")
    row = _load_interview(db, interview_id)
    out = _serialize_many(db, [row])[0]
    fb = db.execute(select(InterviewFeedback).where(InterviewFeedback.interviewId == interview_id)).scalar_one_or_none()
    out["feedback"] = _serialize_feedback(fb) if fb else None
    return out


def interview_feedback_submit(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    interview_id = require_str(data, "interviewId")
    row = _load_interview(db, interview_id, for_update=True)
    if row.status != "Completed":
        raise InvalidStateError("Interview must be completed before submitting feedback")
    if str(row.interviewerId or "") != str(auth.userId or "") and normalize_role(auth.role) != "ADMIN":
        raise PermissionDenied("Only the interviewer can submit feedback")

    existing = db.execute(select(InterviewFeedback.feedbackId).where(InterviewFeedback.interviewId == interview_id)).first()
    if existing:
        raise ValidationError("Feedback already submitted for this interview")

    overall = parse_score((data or {}).get("overallRating"))
    recommendation = get_str(data, "recommendation")
    if recommendation and recommendation not in RECOMMENDATIONS:
        raise ValidationError(f"Invalid recommendation. Allowed: {', '.join(RECOMMENDATIONS)}")

    strengths = (data or {}).get("strengths") or []
    weaknesses = (data or {}).get("weaknesses") or []
    if not isinstance(strengths, list) or not isinstance(weaknesses, list):
        raise ValidationError("strengths and weaknesses must be lists")

    now = iso_utc_now()
    fb = InterviewFeedback(
        feedbackId=f"FB-{new_uuid()}",
        interviewId=interview_id,
        interviewerId=str(auth.userId or ""),
        overallRating=overall,
        recommendation=recommendation,
        comments=get_str(data, "comments", max_len=5000),
        strengthsJson=safe_json_string([str(s) for s in strengths], "[]"),
        weaknessesJson=safe_json_string([str(w) for w in weaknesses], "[]"),
        createdAt=now,
    )
    db.add(fb)
    _audit(db, row, action="INTERVIEW_FEEDBACK_SUBMIT", from_status="Completed", to_status="Completed", auth=auth, now=now, meta={"overallRating": overall})
    return _serialize_feedback(fb)


def interviews_list(data, auth: AuthContext | None, db, cfg):
    require_auth(auth)

    candidate_id = get_str(data, "candidateId")
    interviewer_id = get_str(data, "interviewerId")
    status = get_str(data, "status")
    limit = clamp_int((data or {}).get("limit"), default=100, min_v=1, max_v=500)
    offset = clamp_int((data or {}).get("offset"), default=0, min_v=0, max_v=100_000)

    q = select(Interview)
    if candidate_id:
        q = q.where(Interview.candidateId == candidate_id)
    if interviewer_id:
        q = q.where(Interview.interviewerId == interviewer_id)
    if status:
        q = q.where(Interview.status == _parse_status(status))
    rows = db.execute(q.order_by(Interview.scheduledDate.desc()).offset(offset).limit(limit)).scalars().all()
    return {"items": _serialize_many(db, rows), "limit": limit, "offset": offset}


def _day_rows(db, cfg, day: date, interviewer_id: str) -> list[Interview]:
    tz = ZoneInfo(cfg.APP_TIMEZONE)
    start_local = datetime.combine(day, time.min, tzinfo=tz)
    end_local = start_local + timedelta(days=1)

    q = (
        select(Interview)
        .where(Interview.scheduledDate >= to_iso_utc(start_local))
        .where(Interview.scheduledDate < to_iso_utc(end_local))
    )
    if interviewer_id:
        q = q.where(Interview.interviewerId == interviewer_id)
    rows = db.execute(q).scalars().all()
    return interviews_on_day(rows, day, cfg.APP_TIMEZONE)


def _agenda(db, cfg, day: date, interviewer_id: str) -> dict:
    rows = _day_rows(db, cfg, day, interviewer_id)
    overlaps = find_overlaps(rows, cfg.APP_TIMEZONE)
    return {
        "date": day.isoformat(),
        "timezone": cfg.APP_TIMEZONE,
        "items": _serialize_many(db, rows),
        "total": len(rows),
        "overlaps": [{"first": a.interviewId, "second": b.interviewId, "interviewerId": a.interviewerId} for a, b in overlaps],
    }


def interviews_for_day(data, auth: AuthContext | None, db, cfg):
    require_auth(auth)
    day = _parse_day(require_str(data, "date"))
    return _agenda(db, cfg, day, get_str(data, "interviewerId"))


def interviews_today(data, auth: AuthContext | None, db, cfg):
    require_auth(auth)
    today = datetime.now(ZoneInfo(cfg.APP_TIMEZONE)).date()
    return _agenda(db, cfg, today, get_str(data, "interviewerId"))


def interview_conflicts(data, auth: AuthContext | None, db, cfg):
    require_auth(auth)
    day = _parse_day(require_str(data, "date"))
    agenda = _agenda(db, cfg, day, get_str(data, "interviewerId"))
    return {"date": agenda["date"], "timezone": agenda["timezone"], "conflicts": agenda["overlaps"]}


def interviews_upcoming(data, auth: AuthContext | None, db, cfg):
    require_auth(auth)

    limit = clamp_int((data or {}).get("limit"), default=10, min_v=1, max_v=100)
    interviewer_id = get_str(data, "interviewerId")
    q = (
        select(Interview)
        .where(Interview.status == "Scheduled")
        .where(Interview.scheduledDate > to_iso_utc(datetime.now(timezone.utc)))
    )
    if interviewer_id:
        q = q.where(Interview.interviewerId == interviewer_id)
    rows = db.execute(q.order_by(Interview.scheduledDate.asc()).limit(limit)).scalars().all()
    return {"items": _serialize_many(db, rows)}
