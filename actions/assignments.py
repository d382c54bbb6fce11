from __future__ import annotations

import logging
from functools import partial

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from actions.helpers import actor_id, append_activity, append_audit, clamp_int, get_str, load_candidate, require_auth, require_str
from db import SessionLocal, after_commit
from models import Assignment, Candidate, Communication, JobPosting, StoredFile
from services.notifications import dispatch_assignment_sent
from storage import read_upload, remove_file, serialize_file, store_file
from utils import AuthContext, InvalidStateError, NotFoundError, ValidationError, iso_utc_now, new_uuid, parse_datetime_maybe, to_iso_utc


_log = logging.getLogger("actions.assignments")

ASSIGNMENT_STATUSES = ["Draft", "Assigned", "In Progress", "Submitted", "Approved", "Rejected", "Cancelled"]
TERMINAL_STATUSES = {"Approved", "Rejected", "Cancelled"}

# Moves allowed through ASSIGNMENT_STATUS_SET. Draft -> Assigned only happens via send.
STATUS_TRANSITIONS: dict[str, set[str]] = {
    "Draft": {"Cancelled"},
    "Assigned": {"In Progress", "Cancelled"},
    "In Progress": {"Submitted", "Cancelled"},
    "Submitted": {"Approved", "Rejected"},
    "Approved": set(),
    "Rejected": set(),
    "Cancelled": set(),
}

# Draft uploads are attachments sent to the candidate; later ones are the candidate's work.
UPLOAD_KIND_BY_STATUS = {"Draft": "ATTACHMENT", "Assigned": "SUBMISSION", "In Progress": "SUBMISSION"}

_STATUS_BY_LOWER = {s.lower(): s for s in ASSIGNMENT_STATUSES}


def _parse_status(raw: str) -> str:
    status = _STATUS_BY_LOWER.get(str(raw or "").strip().lower())
    if not status:
        raise ValidationError(f"Invalid status. Allowed: {', '.join(ASSIGNMENT_STATUSES)}")
    return status


def _parse_due_date(raw: str, cfg) -> str:
    if not raw:
        return ""
    dt = parse_datetime_maybe(raw, cfg.APP_TIMEZONE)
    if dt is None:
        raise ValidationError("Invalid dueDate")
    return to_iso_utc(dt)


def _load_assignment(db, assignment_id: str, *, for_update: bool = False) -> Assignment:
    q = select(Assignment).where(Assignment.assignmentId == assignment_id)
    if for_update:
        q = q.with_for_update(of=Assignment)
    row = db.execute(q).scalar_one_or_none()
    if not row:
        raise NotFoundError("Assignment not found")
    return row


def _require_job(db, job_id: str) -> JobPosting | None:
    if not job_id:
        return None
    job = db.execute(select(JobPosting).where(JobPosting.jobId == job_id)).scalar_one_or_none()
    if not job:
        raise NotFoundError("Job not found")
    return job


def _files_for(db, assignment_ids: list[str]) -> dict[str, list[StoredFile]]:
    if not assignment_ids:
        return {}
    rows = (
        db.execute(select(StoredFile).where(StoredFile.assignmentId.in_(assignment_ids)).order_by(StoredFile.uploadedAt.asc()))
        .scalars()
        .all()
    )
    out: dict[str, list[StoredFile]] = {}
    for r in rows:
        out.setdefault(str(r.assignmentId), []).append(r)
    return out


def serialize_assignment(row: Assignment, files: list[StoredFile] | None = None) -> dict:
    files = files or []
    return {
        "assignmentId": str(row.assignmentId or ""),
        "candidateId": str(row.candidateId or ""),
        "jobId": str(row.jobId or ""),
        "assignedBy": str(row.assignedBy or ""),
        "title": str(row.title or ""),
        "descriptionHtml": str(row.descriptionHtml or ""),
        "dueDate": str(row.dueDate or ""),
        "status": str(row.status or ""),
        "sentAt": str(row.sentAt or ""),
        "attachments": [serialize_file(f) for f in files if f.kind == "ATTACHMENT"],
        "submissions": [serialize_file(f) for f in files if f.kind == "SUBMISSION"],
        "createdAt": str(row.createdAt or ""),
        "updatedAt": str(row.updatedAt or ""),
    }


def assignments_for_candidate(db, candidate_id: str) -> list[dict]:
    rows = (
        db.execute(select(Assignment).where(Assignment.candidateId == candidate_id).order_by(Assignment.createdAt.desc()))
        .scalars()
        .all()
    )
    files = _files_for(db, [r.assignmentId for r in rows])
    return [serialize_assignment(r, files.get(r.assignmentId)) for r in rows]


def _sync_candidate_status(db, row: Assignment, status: str, auth: AuthContext, now: str) -> None:
    cand = db.execute(select(Candidate).where(Candidate.candidateId == row.candidateId)).scalar_one_or_none()
    if not cand:
        return
    cand.inHouseAssignmentStatus = status
    cand.updatedAt = now
    cand.updatedBy = actor_id(auth)


def _audit_status(db, row: Assignment, *, action: str, from_status: str, to_status: str, auth: AuthContext, now: str, meta: dict | None = None) -> None:
    append_audit(
        db,
        entityType="ASSIGNMENT",
        entityId=str(row.assignmentId or ""),
        action=action,
        fromState=from_status,
        toState=to_status,
        stageTag="ASSIGNMENT",
        actor=auth,
        at=now,
        meta={"candidateId": str(row.candidateId or ""), **(meta or {})},
    )
    append_activity(
        db,
        candidate_id=str(row.candidateId or ""),
        type="ASSIGNMENT",
        payload={"assignmentId": str(row.assignmentId or ""), "from": from_status, "to": to_status},
        actor=auth,
        at=now,
    )


def assignment_create(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    candidate_id = require_str(data, "candidateId")
    title = require_str(data, "title", max_len=255)
    description = get_str(data, "descriptionHtml", max_len=50_000)
    job_id = get_str(data, "jobId")
    due_date = _parse_due_date(get_str(data, "dueDate"), cfg)

    cand = load_candidate(db, candidate_id)
    _require_job(db, job_id)

    now = iso_utc_now()
    row = Assignment(
        assignmentId=f"ASG-{new_uuid()}",
        candidateId=candidate_id,
        jobId=job_id or str(cand.jobId or ""),
        assignedBy=actor_id(auth),
        title=title,
        descriptionHtml=description,
        dueDate=due_date,
        status="Draft",
        sentAt="",
        createdAt=now,
        createdBy=actor_id(auth),
        updatedAt=now,
        updatedBy=actor_id(auth),
    )
    db.add(row)
    _audit_status(db, row, action="ASSIGNMENT_CREATE", from_status="", to_status="Draft", auth=auth, now=now)
    return serialize_assignment(row)


def assignment_update(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    assignment_id = require_str(data, "assignmentId")
    row = _load_assignment(db, assignment_id, for_update=True)
    if row.status != "Draft":
        raise InvalidStateError(f"Only Draft assignments can be edited (current: {row.status})")
    if "status" in (data or {}):
        raise ValidationError("Use ASSIGNMENT_SEND or ASSIGNMENT_STATUS_SET to change status")

    payload = data or {}
    if "title" in payload:
        row.title = require_str(data, "title", max_len=255)
    if "descriptionHtml" in payload:
        row.descriptionHtml = get_str(data, "descriptionHtml", max_len=50_000)
    if "dueDate" in payload:
        row.dueDate = _parse_due_date(get_str(data, "dueDate"), cfg)
    if "jobId" in payload:
        job_id = get_str(data, "jobId")
        _require_job(db, job_id)
        row.jobId = job_id

    now = iso_utc_now()
    row.updatedAt = now
    row.updatedBy = actor_id(auth)
    append_audit(
        db,
        entityType="ASSIGNMENT",
        entityId=assignment_id,
        action="ASSIGNMENT_UPDATE",
        stageTag="ASSIGNMENT",
        actor=auth,
        at=now,
        meta={"fields": sorted(k for k in payload if k in {"title", "descriptionHtml", "dueDate", "jobId"})},
    )
    return serialize_assignment(row, _files_for(db, [assignment_id]).get(assignment_id))


def assignment_delete(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    assignment_id = require_str(data, "assignmentId")
    row = _load_assignment(db, assignment_id, for_update=True)
    if row.status != "Draft":
        raise InvalidStateError(f"Only Draft assignments can be deleted (current: {row.status})")

    for f in _files_for(db, [assignment_id]).get(assignment_id, []):
        remove_file(db, cfg, f)
    db.delete(row)

    append_audit(
        db,
        entityType="ASSIGNMENT",
        entityId=assignment_id,
        action="ASSIGNMENT_DELETE",
        fromState="Draft",
        stageTag="ASSIGNMENT",
        actor=auth,
        meta={"candidateId": str(row.candidateId or "")},
    )
    return {"assignmentId": assignment_id, "deleted": True}


def _notify_candidate(payload: dict, communication_id: str, out: dict) -> None:
    queued = dispatch_assignment_sent(payload)
    out["notificationQueued"] = queued
    if not queued:
        _log.warning("assignment sent without notification assignmentId=%s", payload.get("assignmentId"))
        return

    with SessionLocal() as db:
        try:
            db.execute(update(Communication).where(Communication.communicationId == communication_id).values(status="Sent"))
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            _log.exception("could not mark communication sent communicationId=%s", communication_id)


def assignment_send(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    assignment_id = require_str(data, "assignmentId")
    row = _load_assignment(db, assignment_id, for_update=True)
    if row.status != "Draft":
        raise InvalidStateError(f"Only Draft assignments can be sent (current: {row.status})")

    cand = load_candidate(db, str(row.candidateId or ""))
    if not str(cand.email or "").strip():
        raise ValidationError("Candidate email is required to send assignment")

    attachments = [f for f in _files_for(db, [assignment_id]).get(assignment_id, []) if f.kind == "ATTACHMENT"]
    if not str(row.descriptionHtml or "").strip() and not attachments:
        raise ValidationError("Assignment must have a description or attachments to send")

    now = iso_utc_now()
    row.status = "Assigned"
    row.sentAt = now
    row.updatedAt = now
    row.updatedBy = actor_id(auth)
    _sync_candidate_status(db, row, "Assigned", auth, now)
    _audit_status(db, row, action="ASSIGNMENT_SEND", from_status="Draft", to_status="Assigned", auth=auth, now=now)

    job = db.execute(select(JobPosting).where(JobPosting.jobId == row.jobId)).scalar_one_or_none() if row.jobId else None
    payload = {
        "assignmentId": assignment_id,
        "candidateId": str(cand.candidateId or ""),
        "candidateEmail": str(cand.email or ""),
        "candidateName": str(cand.name or ""),
        "title": str(row.title or ""),
        "descriptionHtml": str(row.descriptionHtml or ""),
        "dueDate": str(row.dueDate or ""),
        "jobTitle": str(job.title or "") if job else "",
        "attachments": [{"fileId": f.fileId, "originalName": f.originalName} for f in attachments],
    }

    communication_id = f"COM-{new_uuid()}"
    db.add(
        Communication(
            communicationId=communication_id,
            candidateId=str(cand.candidateId or ""),
            assignmentId=assignment_id,
            type="Email",
            subject=f"Assignment: {row.title}",
            content="Assignment sent",
            status="Pending",
            createdAt=now,
            createdBy=actor_id(auth),
        )
    )

    out = serialize_assignment(row, attachments)
    out["notificationQueued"] = False
    # The candidate hears about the assignment only once it is actually Assigned.
    after_commit(db, partial(_notify_candidate, payload, communication_id, out))
    return out


def assignment_status_set(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    assignment_id = require_str(data, "assignmentId")
    target = _parse_status(require_str(data, "status"))
    row = _load_assignment(db, assignment_id, for_update=True)
    current = str(row.status or "")

    if target == current:
        return {**serialize_assignment(row, _files_for(db, [assignment_id]).get(assignment_id)), "changed": False}
    if target == "Assigned" and current == "Draft":
        raise InvalidStateError("Draft assignments become Assigned only by sending them")
    if target not in STATUS_TRANSITIONS.get(current, set()):
        raise InvalidStateError(f"Cannot move assignment from {current} to {target}")

    now = iso_utc_now()
    row.status = target
    row.updatedAt = now
    row.updatedBy = actor_id(auth)
    _sync_candidate_status(db, row, target, auth, now)
    _audit_status(db, row, action="ASSIGNMENT_STATUS_SET", from_status=current, to_status=target, auth=auth, now=now)

    return {**serialize_assignment(row, _files_for(db, [assignment_id]).get(assignment_id)), "changed": True}


def assignment_upload_files(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    assignment_id = require_str(data, "assignmentId")
    files = (data or {}).get("files") or []
    if not isinstance(files, list) or not files:
        raise ValidationError("No files uploaded")
    if len(files) > int(cfg.MAX_FILES_PER_UPLOAD):
        raise ValidationError(f"At most {cfg.MAX_FILES_PER_UPLOAD} files per upload")

    row = _load_assignment(db, assignment_id, for_update=True)
    kind = UPLOAD_KIND_BY_STATUS.get(str(row.status or ""))
    if not kind:
        raise InvalidStateError(f"Files cannot be added to a {row.status} assignment")

    # Every file is checked before the first one is written.
    uploads = [read_upload(cfg, f) for f in files]
    stored = []
    for f in uploads:
        stored.append(
            store_file(
                db,
                cfg,
                blob=f["blob"],
                file_name=f["fileName"],
                mime_type=f["mimeType"],
                kind=kind,
                candidate_id=str(row.candidateId or ""),
                assignment_id=assignment_id,
                uploaded_by=actor_id(auth),
            )
        )

    now = iso_utc_now()
    row.updatedAt = now
    row.updatedBy = actor_id(auth)
    append_audit(
        db,
        entityType="ASSIGNMENT",
        entityId=assignment_id,
        action="ASSIGNMENT_UPLOAD_FILES",
        stageTag="ASSIGNMENT",
        actor=auth,
        at=now,
        meta={"kind": kind, "fileIds": [s.fileId for s in stored]},
    )
    return {"assignmentId": assignment_id, "kind": kind, "files": [serialize_file(s) for s in stored]}


def assignment_file_remove(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    assignment_id = require_str(data, "assignmentId")
    file_id = require_str(data, "fileId").lower()
    row = _load_assignment(db, assignment_id, for_update=True)
    if row.status != "Draft":
        raise InvalidStateError("Attachments can only be removed while the assignment is a Draft")

    f = db.execute(
        select(StoredFile).where(StoredFile.fileId == file_id).where(StoredFile.assignmentId == assignment_id)
    ).scalar_one_or_none()
    if not f:
        raise NotFoundError("File not found for this assignment")
    remove_file(db, cfg, f)

    append_audit(
        db,
        entityType="ASSIGNMENT",
        entityId=assignment_id,
        action="ASSIGNMENT_FILE_REMOVE",
        stageTag="ASSIGNMENT",
        actor=auth,
        meta={"fileId": file_id},
    )
    return {"assignmentId": assignment_id, "fileId": file_id, "deleted": True}


def assignment_get(data, auth: AuthContext | None, db, cfg):
    require_auth(auth)

    assignment_id = require_str(data, "assignmentId")
    row = _load_assignment(db, assignment_id)
    out = serialize_assignment(row, _files_for(db, [assignment_id]).get(assignment_id))

    comms = (
        db.execute(select(Communication).where(Communication.assignmentId == assignment_id).order_by(Communication.createdAt.desc()))
        .scalars()
        .all()
    )
    out["communications"] = [
        {
            "communicationId": str(c.communicationId or ""),
            "type": str(c.type or ""),
            "subject": str(c.subject or ""),
            "content": str(c.content or ""),
            "status": str(c.status or ""),
            "createdAt": str(c.createdAt or ""),
        }
        for c in comms
    ]
    return out


def assignment_list(data, auth: AuthContext | None, db, cfg):
    require_auth(auth)

    status = get_str(data, "status")
    candidate_id = get_str(data, "candidateId")
    job_id = get_str(data, "jobId")
    limit = clamp_int((data or {}).get("limit"), default=50, min_v=1, max_v=200)
    offset = clamp_int((data or {}).get("offset"), default=0, min_v=0, max_v=100_000)

    q = select(Assignment)
    if status:
        q = q.where(Assignment.status == _parse_status(status))
    if candidate_id:
        q = q.where(Assignment.candidateId == candidate_id)
    if job_id:
        q = q.where(Assignment.jobId == job_id)
    rows = db.execute(q.order_by(Assignment.createdAt.desc()).offset(offset).limit(limit)).scalars().all()

    files = _files_for(db, [r.assignmentId for r in rows])
    return {"items": [serialize_assignment(r, files.get(r.assignmentId)) for r in rows], "limit": limit, "offset": offset}


def candidate_assignments(data, auth: AuthContext | None, db, cfg):
    require_auth(auth)

    candidate_id = require_str(data, "candidateId")
    load_candidate(db, candidate_id)
    items = assignments_for_candidate(db, candidate_id)
    return {"candidateId": candidate_id, "items": items, "total": len(items)}
