from __future__ import annotations

import json
import os
from typing import Any

from flask import g, has_request_context
from sqlalchemy import select

from models import AuditLog, Candidate, CandidateActivity, User
from utils import ApiError, AuthContext, NotFoundError, ValidationError, iso_utc_now, new_uuid, normalize_role, safe_json_string


def require_auth(auth: AuthContext | None) -> AuthContext:
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Login required")
    return auth


def get_str(data: Any, key: str, *, max_len: int | None = None) -> str:
    val = str((data or {}).get(key) or "").strip()
    if max_len is not None and len(val) > max_len:
        raise ValidationError(f"{key} is too long (max {max_len} characters)")
    return val


def require_str(data: Any, key: str, *, max_len: int | None = None) -> str:
    val = get_str(data, key, max_len=max_len)
    if not val:
        raise ValidationError(f"Missing {key}")
    return val


def get_bool(data: Any, key: str, default: bool = False) -> bool:
    raw = (data or {}).get(key)
    if raw is None:
        return default
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in {"1", "true", "yes", "y", "on"}


def get_int(data: Any, key: str, default: int) -> int:
    raw = (data or {}).get(key)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer")


def load_candidate(db, candidate_id: str, *, for_update: bool = False) -> Candidate:
    q = select(Candidate).where(Candidate.candidateId == candidate_id)
    if for_update:
        q = q.with_for_update(of=Candidate)
    cand = db.execute(q).scalar_one_or_none()
    if not cand:
        raise NotFoundError("Candidate not found")
    return cand


def user_names(db, user_ids) -> dict[str, str]:
    ids = sorted({str(u or "").strip() for u in (user_ids or []) if str(u or "").strip()})
    if not ids:
        return {}
    rows = db.execute(select(User.userId, User.fullName).where(User.userId.in_(ids))).all()
    return {str(uid): str(name or "") for (uid, name) in rows}


def clamp_int(value: Any, *, default: int, min_v: int, max_v: int) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        n = int(default)
    return max(int(min_v), min(int(max_v), n))


def actor_id(auth: AuthContext | None) -> str:
    if not auth:
        return "SYSTEM"
    return str(auth.userId or auth.email or "SYSTEM")


def append_audit(
    db,
    *,
    entityType: str,
    entityId: str,
    action: str,
    fromState: str = "",
    toState: str = "",
    stageTag: str = "",
    remark: str = "",
    actor: AuthContext | None = None,
    at: str | None = None,
    meta: dict[str, Any] | None = None,
) -> None:
    correlation = str(getattr(g, "request_id", "") or "") if has_request_context() else ""
    db.add(
        AuditLog(
            logId=f"LOG-{os.urandom(16).hex()}",
            entityType=str(entityType or ""),
            entityId=str(entityId or ""),
            action=str(action or "").upper(),
            fromState=str(fromState or ""),
            toState=str(toState or ""),
            stageTag=str(stageTag or ""),
            remark=str(remark or ""),
            actorUserId=str(actor.userId) if actor else "SYSTEM",
            actorRole=str(normalize_role(actor.role) or "") if actor else "SYSTEM",
            actorEmail=str(actor.email or "") if actor else "",
            at=at or iso_utc_now(),
            correlationId=correlation,
            metaJson=json.dumps(meta or {}, default=str),
        )
    )


def append_activity(db, *, candidate_id: str, type: str, payload: dict[str, Any], actor: AuthContext | None, at: str | None = None) -> None:
    db.add(
        CandidateActivity(
            activityId=f"ACT-{new_uuid()}",
            candidateId=str(candidate_id or ""),
            type=str(type or "SYSTEM").upper(),
            payloadJson=safe_json_string(payload, "{}"),
            at=at or iso_utc_now(),
            actorUserId=str(actor.userId or "") if actor else "SYSTEM",
            actorRole=str(actor.role or "") if actor else "SYSTEM",
        )
    )
