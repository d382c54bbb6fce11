from __future__ import annotations

from sqlalchemy import func, select

from actions.helpers import actor_id, append_audit, clamp_int, get_str, require_auth, require_str
from models import Candidate, JobPortal, JobPosting
from utils import AuthContext, NotFoundError, ValidationError, iso_utc_now, new_uuid, parse_datetime_maybe, safe_json_load, safe_json_string, to_iso_utc


JOB_STATUSES = ["Active", "Paused", "Closed"]
JOB_TYPES = ["Full-time", "Part-time", "Contract", "Internship"]
PORTAL_STATUSES = ["Posted", "Draft", "Expired"]

_PROFILE_FIELDS = {
    "title": 300,
    "department": 200,
    "location": 200,
    "description": 20000,
    "salaryRange": 200,
}


def _pick(allowed: list[str], raw: str, label: str) -> str:
    by_lower = {a.lower(): a for a in allowed}
    val = by_lower.get(str(raw or "").strip().lower())
    if not val:
        raise ValidationError(f"Invalid {label}. Allowed: {', '.join(allowed)}")
    return val


def _parse_requirements(raw) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = raw.splitlines()
    if not isinstance(raw, list):
        raise ValidationError("requirements must be a list")
    return [str(r).strip() for r in raw if str(r or "").strip()]


def _parse_deadline(raw: str, cfg) -> str:
    if not raw:
        return ""
    dt = parse_datetime_maybe(raw, cfg.APP_TIMEZONE)
    if dt is None:
        raise ValidationError("Invalid deadline")
    return to_iso_utc(dt)


def _parse_portals(raw) -> list[dict]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError("portals must be a list")
    out: dict[str, dict] = {}
    for p in raw:
        if not isinstance(p, dict):
            raise ValidationError("Each portal must be an object")
        name = str(p.get("name") or "").strip()
        if not name:
            raise ValidationError("Portal name is required")
        out[name] = {
            "name": name,
            "url": str(p.get("url") or "").strip(),
            "status": _pick(PORTAL_STATUSES, p.get("status") or "Draft", "portal status"),
        }
    return list(out.values())


def _upsert_portals(db, job_id: str, portals: list[dict], now: str) -> None:
    existing = {p.name: p for p in db.execute(select(JobPortal).where(JobPortal.jobId == job_id)).scalars().all()}
    wanted = {p["name"] for p in portals}
    for name, row in existing.items():
        if name not in wanted:
            db.delete(row)
    for p in portals:
        row = existing.get(p["name"])
        if row:
            row.url = p["url"]
            row.status = p["status"]
            row.updatedAt = now
        else:
            db.add(JobPortal(jobId=job_id, name=p["name"], url=p["url"], status=p["status"], createdAt=now, updatedAt=now))


def _load_job(db, job_id: str, *, for_update: bool = False) -> JobPosting:
    q = select(JobPosting).where(JobPosting.jobId == job_id)
    if for_update:
        q = q.with_for_update(of=JobPosting)
    job = db.execute(q).scalar_one_or_none()
    if not job:
        raise NotFoundError("Job not found")
    return job


def _applicant_counts(db, job_ids: list[str]) -> dict[str, int]:
    if not job_ids:
        return {}
    rows = db.execute(
        select(Candidate.jobId, func.count()).where(Candidate.jobId.in_(job_ids)).group_by(Candidate.jobId)
    ).all()
    return {str(jid): int(n or 0) for jid, n in rows}


def _portal_counts(db, job_id: str) -> dict[str, int]:
    rows = db.execute(
        select(Candidate.source, func.count()).where(Candidate.jobId == job_id).group_by(Candidate.source)
    ).all()
    return {str(src or ""): int(n or 0) for src, n in rows}


def serialize_job(db, job: JobPosting, *, applicant_count: int | None = None, with_portals: bool = True) -> dict:
    if applicant_count is None:
        applicant_count = _applicant_counts(db, [job.jobId]).get(job.jobId, 0)
    out = {
        "jobId": str(job.jobId or ""),
        "title": str(job.title or ""),
        "department": str(job.department or ""),
        "location": str(job.location or ""),
        "jobType": str(job.jobType or ""),
        "description": str(job.description or ""),
        "requirements": safe_json_load(job.requirementsJson, []) or [],
        "salaryRange": str(job.salaryRange or ""),
        "deadline": str(job.deadline or ""),
        "status": str(job.status or ""),
        "postedDate": str(job.postedDate or ""),
        "applicantCount": int(applicant_count),
        "createdAt": str(job.createdAt or ""),
        "updatedAt": str(job.updatedAt or ""),
    }
    if with_portals:
        by_source = _portal_counts(db, job.jobId)
        portals = db.execute(select(JobPortal).where(JobPortal.jobId == job.jobId).order_by(JobPortal.id.asc())).scalars().all()
        out["portals"] = [
            {"name": p.name, "url": p.url, "status": p.status, "applicantCount": by_source.get(p.name, 0)} for p in portals
        ]
    return out


def job_create(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    title = require_str(data, "title", max_len=_PROFILE_FIELDS["title"])
    job_type = _pick(JOB_TYPES, get_str(data, "jobType") or "Full-time", "jobType")
    status = _pick(JOB_STATUSES, get_str(data, "status") or "Active", "status")
    requirements = _parse_requirements((data or {}).get("requirements"))
    portals = _parse_portals((data or {}).get("portals"))

    now = iso_utc_now()
    job = JobPosting(
        jobId=f"JOB-{new_uuid()}",
        title=title,
        department=get_str(data, "department", max_len=_PROFILE_FIELDS["department"]),
        location=get_str(data, "location", max_len=_PROFILE_FIELDS["location"]),
        jobType=job_type,
        description=get_str(data, "description", max_len=_PROFILE_FIELDS["description"]),
        requirementsJson=safe_json_string(requirements, "[]"),
        salaryRange=get_str(data, "salaryRange", max_len=_PROFILE_FIELDS["salaryRange"]),
        deadline=_parse_deadline(get_str(data, "deadline"), cfg),
        status=status,
        postedDate=now,
        createdAt=now,
        createdBy=actor_id(auth),
        updatedAt=now,
        updatedBy=actor_id(auth),
    )
    db.add(job)
    db.flush()
    _upsert_portals(db, job.jobId, portals, now)
    db.flush()

    append_audit(db, entityType="JOB", entityId=job.jobId, action="JOB_CREATE", toState=status, stageTag="JOB", actor=auth, at=now)
    return serialize_job(db, job, applicant_count=0)


def job_update(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    job_id = require_str(data, "jobId")
    job = _load_job(db, job_id, for_update=True)
    payload = data or {}
    if "status" in payload:
        raise ValidationError("Use JOB_STATUS_SET to change job status")

    for key, max_len in _PROFILE_FIELDS.items():
        if key in payload:
            val = get_str(data, key, max_len=max_len)
            if key == "title" and not val:
                raise ValidationError("Missing title")
            setattr(job, key, val)
    if "jobType" in payload:
        job.jobType = _pick(JOB_TYPES, get_str(data, "jobType"), "jobType")
    if "requirements" in payload:
        job.requirementsJson = safe_json_string(_parse_requirements(payload.get("requirements")), "[]")
    if "deadline" in payload:
        job.deadline = _parse_deadline(get_str(data, "deadline"), cfg)

    now = iso_utc_now()
    if "portals" in payload:
        _upsert_portals(db, job_id, _parse_portals(payload.get("portals")), now)
    job.updatedAt = now
    job.updatedBy = actor_id(auth)
    db.flush()

    append_audit(db, entityType="JOB", entityId=job_id, action="JOB_UPDATE", stageTag="JOB", actor=auth, at=now)
    return serialize_job(db, job)


def job_status_set(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    job_id = require_str(data, "jobId")
    target = _pick(JOB_STATUSES, require_str(data, "status"), "status")
    job = _load_job(db, job_id, for_update=True)

    before = str(job.status or "")
    now = iso_utc_now()
    if before != target:
        job.status = target
        job.updatedAt = now
        job.updatedBy = actor_id(auth)
        append_audit(db, entityType="JOB", entityId=job_id, action="JOB_STATUS_SET", fromState=before, toState=target, stageTag="JOB", actor=auth, at=now)
    return {"jobId": job_id, "fromStatus": before, "status": target, "changed": before != target}


def job_get(data, auth: AuthContext | None, db, cfg):
    require_auth(auth)
    job = _load_job(db, require_str(data, "jobId"))
    return serialize_job(db, job)


def jobs_list(data, auth: AuthContext | None, db, cfg):
    require_auth(auth)

    status = get_str(data, "status")
    department = get_str(data, "department")
    q = get_str(data, "q")
    limit = clamp_int((data or {}).get("limit"), default=50, min_v=1, max_v=200)
    offset = clamp_int((data or {}).get("offset"), default=0, min_v=0, max_v=100_000)

    base = select(JobPosting)
    if status:
        base = base.where(JobPosting.status == _pick(JOB_STATUSES, status, "status"))
    if department:
        base = base.where(JobPosting.department == department)
    if q:
        like = f"%{q}%"
        base = base.where(JobPosting.title.ilike(like) | JobPosting.department.ilike(like) | JobPosting.location.ilike(like))

    total = int(db.execute(select(func.count()).select_from(base.subquery())).scalar_one() or 0)
    rows = db.execute(base.order_by(JobPosting.postedDate.desc(), JobPosting.jobId.desc()).offset(offset).limit(limit)).scalars().all()
    counts = _applicant_counts(db, [j.jobId for j in rows])
    items = [serialize_job(db, j, applicant_count=counts.get(j.jobId, 0), with_portals=False) for j in rows]
    return {"items": items, "total": total, "limit": limit, "offset": offset}
