from __future__ import annotations

from sqlalchemy import or_, select

from actions.helpers import (
    append_activity,
    append_audit,
    clamp_int,
    get_bool,
    get_str,
    load_candidate,
    require_auth,
    require_str,
    user_names,
)
from models import CandidateNote
from services.note_visibility import MAX_NOTE_LENGTH, NOTE_TYPES, can_modify_note, can_view_note, filter_visible_notes
from utils import AuthContext, NotFoundError, PermissionDenied, ValidationError, iso_utc_now, is_privileged, new_uuid, normalize_role


_NOTE_TYPE_BY_LOWER = {t.lower(): t for t in NOTE_TYPES}


def _parse_note_type(raw: str) -> str:
    note_type = _NOTE_TYPE_BY_LOWER.get(str(raw or "").strip().lower())
    if not note_type:
        raise ValidationError(f"Invalid noteType. Allowed: {', '.join(NOTE_TYPES)}")
    return note_type


def _parse_content(data) -> str:
    content = get_str(data, "content")
    if not content:
        raise ValidationError("Note content is required")
    if len(content) > MAX_NOTE_LENGTH:
        raise ValidationError(f"Note must be at most {MAX_NOTE_LENGTH} characters")
    return content


def serialize_note(row: CandidateNote, names: dict[str, str] | None = None) -> dict:
    uid = str(row.userId or "")
    return {
        "noteId": str(row.noteId or ""),
        "candidateId": str(row.candidateId or ""),
        "userId": uid,
        "userName": (names or {}).get(uid, ""),
        "userRole": str(row.userRole or ""),
        "noteType": str(row.noteType or ""),
        "content": str(row.content or ""),
        "isPrivate": bool(row.isPrivate),
        "createdAt": str(row.createdAt or ""),
        "updatedAt": str(row.updatedAt or ""),
    }


def visible_notes_for_candidate(db, candidate_id: str, auth: AuthContext, *, note_type: str = "", user_role: str = "") -> list[CandidateNote]:
    q = select(CandidateNote).where(CandidateNote.candidateId == candidate_id)
    if note_type:
        q = q.where(CandidateNote.noteType == note_type)
    if user_role:
        q = q.where(CandidateNote.userRole == user_role)
    rows = db.execute(q.order_by(CandidateNote.createdAt.desc())).scalars().all()
    return filter_visible_notes(rows, auth.userId, auth.role)


def _load_note_for_write(db, note_id: str, auth: AuthContext) -> CandidateNote:
    note = db.execute(select(CandidateNote).where(CandidateNote.noteId == note_id).with_for_update(of=CandidateNote)).scalar_one_or_none()
    # A private note the caller cannot see is reported as missing.
    if not note or not can_view_note(note, auth.userId, auth.role):
        raise NotFoundError("Note not found")
    if not can_modify_note(note, auth.userId, auth.role):
        raise PermissionDenied("Only the author, Admin or HR Manager can change this note")
    return note


def candidate_note_add(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    candidate_id = require_str(data, "candidateId")
    note_type = _parse_note_type(require_str(data, "noteType"))
    content = _parse_content(data)
    is_private = get_bool(data, "isPrivate", False)

    load_candidate(db, candidate_id)

    now = iso_utc_now()
    note = CandidateNote(
        noteId=f"NOTE-{new_uuid()}",
        candidateId=candidate_id,
        userId=str(auth.userId or ""),
        userRole=str(normalize_role(auth.role) or ""),
        noteType=note_type,
        content=content,
        isPrivate=is_private,
        createdAt=now,
        updatedAt=now,
    )
    db.add(note)

    # Private note bodies stay out of the audit trail.
    append_audit(
        db,
        entityType="CANDIDATE",
        entityId=candidate_id,
        action="CANDIDATE_NOTE_ADD",
        stageTag="NOTE",
        actor=auth,
        at=now,
        meta={"noteId": note.noteId, "noteType": note_type, "isPrivate": is_private},
    )
    append_activity(db, candidate_id=candidate_id, type="NOTE", payload={"noteId": note.noteId, "noteType": note_type}, actor=auth, at=now)

    return serialize_note(note, user_names(db, [note.userId]))


def candidate_note_update(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    note_id = require_str(data, "noteId")
    note = _load_note_for_write(db, note_id, auth)

    changed = []
    if "content" in (data or {}):
        note.content = _parse_content(data)
        changed.append("content")
    if "noteType" in (data or {}):
        note.noteType = _parse_note_type(get_str(data, "noteType"))
        changed.append("noteType")
    if "isPrivate" in (data or {}):
        note.isPrivate = get_bool(data, "isPrivate", bool(note.isPrivate))
        changed.append("isPrivate")
    if not changed:
        raise ValidationError("Nothing to update")

    now = iso_utc_now()
    note.updatedAt = now

    append_audit(
        db,
        entityType="CANDIDATE",
        entityId=str(note.candidateId or ""),
        action="CANDIDATE_NOTE_UPDATE",
        stageTag="NOTE",
        actor=auth,
        at=now,
        meta={"noteId": note_id, "fields": changed},
    )
    return serialize_note(note, user_names(db, [note.userId]))


def candidate_note_delete(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    note_id = require_str(data, "noteId")
    if not get_bool(data, "confirm", False):
        raise ValidationError("Deleting a note must be confirmed")

    note = _load_note_for_write(db, note_id, auth)
    candidate_id = str(note.candidateId or "")
    db.delete(note)

    append_audit(
        db,
        entityType="CANDIDATE",
        entityId=candidate_id,
        action="CANDIDATE_NOTE_DELETE",
        stageTag="NOTE",
        actor=auth,
        meta={"noteId": note_id},
    )
    return {"noteId": note_id, "deleted": True}


def candidate_note_get(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    note_id = require_str(data, "noteId")
    note = db.execute(select(CandidateNote).where(CandidateNote.noteId == note_id)).scalar_one_or_none()
    if not note or not can_view_note(note, auth.userId, auth.role):
        raise NotFoundError("Note not found")
    return serialize_note(note, user_names(db, [note.userId]))


def candidate_notes_list(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    candidate_id = require_str(data, "candidateId")
    note_type = get_str(data, "noteType")
    if note_type:
        note_type = _parse_note_type(note_type)
    user_role = normalize_role(get_str(data, "userRole")) or ""

    load_candidate(db, candidate_id)
    rows = visible_notes_for_candidate(db, candidate_id, auth, note_type=note_type, user_role=user_role)
    names = user_names(db, [r.userId for r in rows])
    return {"items": [serialize_note(r, names) for r in rows], "total": len(rows)}


def candidate_notes_search(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    q_text = require_str(data, "q", max_len=200)
    candidate_id = get_str(data, "candidateId")
    limit = clamp_int((data or {}).get("limit"), default=50, min_v=1, max_v=200)

    q = select(CandidateNote)
    if candidate_id:
        q = q.where(CandidateNote.candidateId == candidate_id)
    if not is_privileged(auth.role):
        q = q.where(or_(CandidateNote.isPrivate == False, CandidateNote.userId == str(auth.userId or "")))  # noqa: E712
    rows = db.execute(q.order_by(CandidateNote.createdAt.desc())).scalars().all()

    needle = q_text.lower()
    hits = [r for r in filter_visible_notes(rows, auth.userId, auth.role) if needle in str(r.content or "").lower()]
    hits = hits[:limit]
    names = user_names(db, [r.userId for r in hits])
    return {"items": [serialize_note(r, names) for r in hits], "total": len(hits), "q": q_text}
