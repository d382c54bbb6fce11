from __future__ import annotations

import math
import re

from sqlalchemy import func, or_, select

from actions.assignments import assignments_for_candidate
from actions.helpers import actor_id, append_activity, append_audit, clamp_int, get_str, load_candidate, require_auth, require_str, user_names
from actions.interviews import interviews_for_candidate
from actions.notes import serialize_note, visible_notes_for_candidate
from actions.ratings import ratings_for_candidate, serialize_rating, summarize
from models import Candidate, CandidateActivity, CandidateRating, JobPosting
from services.rating_aggregator import candidate_score, to_ten_point_scale
from services.stage_machine import DEFAULT_STAGE, require_stage
from storage import get_file, read_upload, remove_file, serialize_file, store_file
from utils import AuthContext, NotFoundError, ValidationError, iso_utc_now, new_uuid, parse_datetime_maybe, safe_json_load, safe_json_string, to_iso_utc


_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_PROFILE_FIELDS = {
    "name": 200,
    "phone": 50,
    "position": 200,
    "source": 100,
    "assignmentLocation": 500,
}


def _parse_email(raw: str) -> str:
    email = str(raw or "").strip().lower()
    if not _EMAIL_RE.match(email):
        raise ValidationError("Invalid email")
    return email


def _parse_experience(raw):
    if raw is None or str(raw).strip() == "":
        return None
    if isinstance(raw, bool):
        raise ValidationError("experienceYears must be a number")
    try:
        years = float(raw)
    except (TypeError, ValueError):
        raise ValidationError("experienceYears must be a number")
    if math.isnan(years) or years < 0 or years > 80:
        raise ValidationError("experienceYears must be between 0 and 80")
    return years


def _require_job(db, job_id: str) -> JobPosting:
    job = db.execute(select(JobPosting).where(JobPosting.jobId == job_id)).scalar_one_or_none()
    if not job:
        raise NotFoundError("Job not found")
    return job


def _assert_unique_application(db, email: str, job_id: str, *, exclude_id: str = "") -> None:
    q = select(Candidate.candidateId).where(func.lower(Candidate.email) == email).where(Candidate.jobId == job_id)
    if exclude_id:
        q = q.where(Candidate.candidateId != exclude_id)
    if db.execute(q).first():
        raise ValidationError("Candidate with this email already applied for this job")


def serialize_candidate(cand: Candidate, *, score=None, job_title: str = "") -> dict:
    return {
        "candidateId": str(cand.candidateId or ""),
        "jobId": str(cand.jobId or ""),
        "jobTitle": job_title,
        "name": str(cand.name or ""),
        "email": str(cand.email or ""),
        "phone": str(cand.phone or ""),
        "position": str(cand.position or ""),
        "source": str(cand.source or ""),
        "experienceYears": cand.experienceYears,
        "stage": str(cand.stage or ""),
        "stageUpdatedAt": str(cand.stageUpdatedAt or ""),
        "resumeFileId": str(cand.resumeFileId or ""),
        "assignmentLocation": str(cand.assignmentLocation or ""),
        "assignmentDetails": safe_json_load(cand.assignmentDetailsJson, {}) or {},
        "inHouseAssignmentStatus": str(cand.inHouseAssignmentStatus or ""),
        "appliedDate": str(cand.appliedDate or ""),
        "score": score,
        "scoreOutOfTen": to_ten_point_scale(score),
        "createdAt": str(cand.createdAt or ""),
        "updatedAt": str(cand.updatedAt or ""),
    }


def candidate_create(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    name = require_str(data, "name", max_len=_PROFILE_FIELDS["name"])
    email = _parse_email(require_str(data, "email"))
    position = require_str(data, "position", max_len=_PROFILE_FIELDS["position"])
    stage = require_stage(get_str(data, "stage") or DEFAULT_STAGE)

    job_id = get_str(data, "jobId")
    job_title = ""
    if job_id:
        job_title = str(_require_job(db, job_id).title or "")
    _assert_unique_application(db, email, job_id)

    applied_raw = get_str(data, "appliedDate")
    now = iso_utc_now()
    applied = now
    if applied_raw:
        dt = parse_datetime_maybe(applied_raw, cfg.APP_TIMEZONE)
        if dt is None:
            raise ValidationError("Invalid appliedDate")
        applied = to_iso_utc(dt)

    cand = Candidate(
        candidateId=f"CAN-{new_uuid()}",
        jobId=job_id,
        name=name,
        email=email,
        phone=get_str(data, "phone", max_len=_PROFILE_FIELDS["phone"]),
        position=position,
        source=get_str(data, "source", max_len=_PROFILE_FIELDS["source"]),
        experienceYears=_parse_experience((data or {}).get("experienceYears")),
        stage=stage,
        stageUpdatedAt=now,
        assignmentLocation=get_str(data, "assignmentLocation", max_len=_PROFILE_FIELDS["assignmentLocation"]),
        appliedDate=applied,
        createdAt=now,
        createdBy=actor_id(auth),
        updatedAt=now,
        updatedBy=actor_id(auth),
    )
    db.add(cand)

    append_audit(
        db,
        entityType="CANDIDATE",
        entityId=cand.candidateId,
        action="CANDIDATE_CREATE",
        toState=stage,
        stageTag="STAGE",
        actor=auth,
        at=now,
        meta={"jobId": job_id},
    )
    append_activity(db, candidate_id=cand.candidateId, type="SYSTEM", payload={"action": "CREATED", "stage": stage}, actor=auth, at=now)
    return serialize_candidate(cand, job_title=job_title)


def candidate_update(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    candidate_id = require_str(data, "candidateId")
    payload = data or {}
    if "stage" in payload:
        raise ValidationError("Use CANDIDATE_STAGE_SET to change the stage")

    cand = load_candidate(db, candidate_id, for_update=True)
    changed = []
    for key, max_len in _PROFILE_FIELDS.items():
        if key in payload:
            val = get_str(data, key, max_len=max_len)
            if key in {"name", "position"} and not val:
                raise ValidationError(f"Missing {key}")
            setattr(cand, key, val)
            changed.append(key)
    if "experienceYears" in payload:
        cand.experienceYears = _parse_experience(payload.get("experienceYears"))
        changed.append("experienceYears")
    if "assignmentDetails" in payload:
        details = payload.get("assignmentDetails") or {}
        if not isinstance(details, dict):
            raise ValidationError("assignmentDetails must be an object")
        cand.assignmentDetailsJson = safe_json_string(details, "{}")
        changed.append("assignmentDetails")

    email = str(cand.email or "")
    job_id = str(cand.jobId or "")
    if "email" in payload:
        email = _parse_email(require_str(data, "email"))
        changed.append("email")
    if "jobId" in payload:
        job_id = get_str(data, "jobId")
        if job_id:
            _require_job(db, job_id)
        changed.append("jobId")
    if "email" in payload or "jobId" in payload:
        _assert_unique_application(db, email, job_id, exclude_id=candidate_id)
        cand.email = email
        cand.jobId = job_id

    now = iso_utc_now()
    cand.updatedAt = now
    cand.updatedBy = actor_id(auth)
    append_audit(db, entityType="CANDIDATE", entityId=candidate_id, action="CANDIDATE_UPDATE", actor=auth, at=now, meta={"fields": changed})
    score = candidate_score(ratings_for_candidate(db, candidate_id))
    return serialize_candidate(cand, score=score)


def candidate_get(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    candidate_id = require_str(data, "candidateId")
    cand = load_candidate(db, candidate_id)

    notes = visible_notes_for_candidate(db, candidate_id, auth)
    ratings = ratings_for_candidate(db, candidate_id)
    names = user_names(db, [n.userId for n in notes] + [r.userId for r in ratings])
    summary = summarize(ratings)

    job_title = ""
    if cand.jobId:
        job = db.execute(select(JobPosting.title).where(JobPosting.jobId == cand.jobId)).first()
        job_title = str(job[0] or "") if job else ""

    resume = get_file(db, cand.resumeFileId) if cand.resumeFileId else None

    out = serialize_candidate(cand, score=summary["score"], job_title=job_title)
    out["notes"] = [serialize_note(n, names) for n in notes]
    out["ratings"] = [serialize_rating(r, names) for r in ratings]
    out["ratingSummary"] = summary
    out["interviews"] = interviews_for_candidate(db, candidate_id)
    out["assignments"] = assignments_for_candidate(db, candidate_id)
    out["resume"] = serialize_file(resume) if resume else None
    return out


def _scores_for(db, candidate_ids: list[str]) -> dict[str, float | None]:
    if not candidate_ids:
        return {}
    by_cand: dict[str, list] = {cid: [] for cid in candidate_ids}
    rows = db.execute(select(CandidateRating).where(CandidateRating.candidateId.in_(candidate_ids))).scalars().all()
    for r in rows:
        by_cand.setdefault(str(r.candidateId), []).append(r)
    return {cid: candidate_score(items) for cid, items in by_cand.items()}


def candidates_list(data, auth: AuthContext | None, db, cfg):
    require_auth(auth)

    stage = get_str(data, "stage")
    job_id = get_str(data, "jobId")
    source = get_str(data, "source")
    q = get_str(data, "q")
    limit = clamp_int((data or {}).get("limit"), default=50, min_v=1, max_v=200)
    offset = clamp_int((data or {}).get("offset"), default=0, min_v=0, max_v=100_000)

    base = select(Candidate, JobPosting.title).join(JobPosting, JobPosting.jobId == Candidate.jobId, isouter=True)
    if stage:
        base = base.where(Candidate.stage == require_stage(stage))
    if job_id:
        base = base.where(Candidate.jobId == job_id)
    if source:
        base = base.where(Candidate.source == source)
    if q:
        like = f"%{q}%"
        base = base.where(
            or_(
                Candidate.name.ilike(like),
                Candidate.email.ilike(like),
                Candidate.position.ilike(like),
                Candidate.phone.ilike(like),
            )
        )

    total = int(db.execute(select(func.count()).select_from(base.subquery())).scalar_one() or 0)
    rows = db.execute(base.order_by(Candidate.appliedDate.desc(), Candidate.candidateId.desc()).offset(offset).limit(limit)).all()

    scores = _scores_for(db, [str(c.candidateId) for c, _title in rows])
    items = [serialize_candidate(c, score=scores.get(str(c.candidateId)), job_title=str(title or "")) for c, title in rows]
    return {"items": items, "total": total, "limit": limit, "offset": offset}


def candidate_resume_upload(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    candidate_id = require_str(data, "candidateId")
    upload = read_upload(cfg, data)
    cand = load_candidate(db, candidate_id, for_update=True)

    previous = get_file(db, cand.resumeFileId) if cand.resumeFileId else None
    row = store_file(
        db,
        cfg,
        blob=upload["blob"],
        file_name=upload["fileName"],
        mime_type=upload["mimeType"],
        kind="RESUME",
        candidate_id=candidate_id,
        uploaded_by=actor_id(auth),
    )
    if previous:
        remove_file(db, cfg, previous)

    now = iso_utc_now()
    cand.resumeFileId = row.fileId
    cand.updatedAt = now
    cand.updatedBy = actor_id(auth)
    append_audit(db, entityType="CANDIDATE", entityId=candidate_id, action="CANDIDATE_RESUME_UPLOAD", actor=auth, at=now, meta={"fileId": row.fileId})
    append_activity(db, candidate_id=candidate_id, type="SYSTEM", payload={"action": "RESUME_UPLOADED", "fileId": row.fileId}, actor=auth, at=now)
    return {"candidateId": candidate_id, "resume": serialize_file(row)}


def candidate_activity_list(data, auth: AuthContext | None, db, cfg):
    require_auth(auth)

    candidate_id = require_str(data, "candidateId")
    load_candidate(db, candidate_id)
    limit = clamp_int((data or {}).get("limit"), default=50, min_v=1, max_v=200)
    offset = clamp_int((data or {}).get("offset"), default=0, min_v=0, max_v=100_000)

    total = int(db.execute(select(func.count()).select_from(CandidateActivity).where(CandidateActivity.candidateId == candidate_id)).scalar_one() or 0)
    rows = (
        db.execute(
            select(CandidateActivity)
            .where(CandidateActivity.candidateId == candidate_id)
            .order_by(CandidateActivity.at.desc())
            .offset(offset)
            .limit(limit)
        )
        .scalars()
        .all()
    )
    items = [
        {
            "activityId": str(r.activityId or ""),
            "candidateId": str(r.candidateId or ""),
            "type": str(r.type or ""),
            "payload": safe_json_load(r.payloadJson, {}) or {},
            "at": str(r.at or ""),
            "actorUserId": str(r.actorUserId or ""),
            "actorRole": str(r.actorRole or ""),
        }
        for r in rows
    ]
    return {"items": items, "total": total}
