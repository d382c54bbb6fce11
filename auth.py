from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import select

from cache_layer import cache_get, cache_invalidate_prefix, cache_set
from models import Permission, Role, Session as DbSession, User
from utils import ApiError, AuthContext, iso_utc_now, new_uuid, normalize_role, parse_datetime_maybe, parse_roles_csv, sha256_hex


DEFAULT_ROLES = ["ADMIN", "HR_MANAGER", "RECRUITER", "INTERVIEWER"]

PUBLIC_ACTIONS = {"LOGIN"}

_ALL = ["ADMIN", "HR_MANAGER", "RECRUITER", "INTERVIEWER"]
_STAFF = ["ADMIN", "HR_MANAGER", "RECRUITER"]
_MANAGERS = ["ADMIN", "HR_MANAGER"]


STATIC_RBAC_PERMISSIONS: dict[str, list[str]] = {
    "LOGIN": ["PUBLIC"],
    "LOGOUT": _ALL,
    "SESSION_VALIDATE": _ALL,
    "GET_ME": _ALL,
    "USERS_LIST": _STAFF,
    "USER_CREATE": ["ADMIN"],
    # Candidates
    "CANDIDATE_CREATE": _STAFF,
    "CANDIDATE_UPDATE": _STAFF,
    "CANDIDATE_GET": _ALL,
    "CANDIDATES_LIST": _ALL,
    "CANDIDATE_RESUME_UPLOAD": _STAFF,
    "CANDIDATE_ACTIVITY_LIST": _ALL,
    # Stage transitions
    "CANDIDATE_STAGE_SET": _STAFF,
    "CANDIDATE_STAGE_REOPEN": _MANAGERS,
    "CANDIDATE_STAGE_HISTORY": _ALL,
    "PIPELINE_COUNTS": _STAFF,
    # Notes (visibility enforced per note)
    "CANDIDATE_NOTE_ADD": _ALL,
    "CANDIDATE_NOTE_UPDATE": _ALL,
    "CANDIDATE_NOTE_DELETE": _ALL,
    "CANDIDATE_NOTE_GET": _ALL,
    "CANDIDATE_NOTES_LIST": _ALL,
    "CANDIDATE_NOTES_SEARCH": _ALL,
    # Ratings
    "CANDIDATE_RATING_ADD": _ALL,
    "CANDIDATE_RATING_UPDATE": _ALL,
    "CANDIDATE_RATING_DELETE": _ALL,
    "CANDIDATE_RATING_GET": _ALL,
    "CANDIDATE_RATINGS_LIST": _ALL,
    "CANDIDATE_RATINGS_AGGREGATE": _ALL,
    # Assignments
    "ASSIGNMENT_CREATE": _STAFF,
    "ASSIGNMENT_UPDATE": _STAFF,
    "ASSIGNMENT_DELETE": _STAFF,
    "ASSIGNMENT_SEND": _STAFF,
    "ASSIGNMENT_STATUS_SET": _STAFF,
    "ASSIGNMENT_UPLOAD_FILES": _STAFF,
    "ASSIGNMENT_FILE_REMOVE": _STAFF,
    "ASSIGNMENT_GET": _ALL,
    "ASSIGNMENT_LIST": _ALL,
    "CANDIDATE_ASSIGNMENTS": _ALL,
    # Interviews
    "INTERVIEW_SCHEDULE": _STAFF,
    "INTERVIEW_UPDATE": _STAFF,
    "INTERVIEW_STATUS_SET": _ALL,
    "INTERVIEW_DELETE": _STAFF,
    "INTERVIEW_GET": _ALL,
    "INTERVIEWS_LIST": _ALL,
    "INTERVIEWS_FOR_DAY": _ALL,
    "INTERVIEWS_TODAY": _ALL,
    "INTERVIEW_CONFLICTS": _STAFF,
    "INTERVIEWS_UPCOMING": _ALL,
    "INTERVIEW_FEEDBACK_SUBMIT": _ALL,
    # Jobs
    "JOB_CREATE": _STAFF,
    "JOB_UPDATE": _STAFF,
    "JOB_STATUS_SET": _MANAGERS,
    "JOB_GET": _ALL,
    "JOBS_LIST": _ALL,
    # Files
    "FILE_DOWNLOAD": _ALL,
}


_RBAC_CACHE_PREFIX = "RBAC:"
_RBAC_ROLES_INDEX_KEY = f"{_RBAC_CACHE_PREFIX}ROLES_INDEX"
_RBAC_RULE_PREFIX = f"{_RBAC_CACHE_PREFIX}RULE:"

_INVALID = AuthContext(valid=False, userId="", email="", role="", expiresAt="")


def is_public_action(action: str) -> bool:
    return str(action or "").upper() in PUBLIC_ACTIONS


def invalidate_rbac_cache() -> int:
    return cache_invalidate_prefix(_RBAC_CACHE_PREFIX)


def issue_session_token(db, *, user_id: str, email: str, role: str, session_ttl_minutes: int) -> dict[str, str]:
    token = "ST-" + new_uuid().replace("-", "") + new_uuid().replace("-", "")
    now = datetime.now(timezone.utc)
    issued_at = iso_utc_now()
    expires_at = (now + timedelta(minutes=session_ttl_minutes)).isoformat(timespec="milliseconds").replace("+00:00", "Z")

    db.add(
        DbSession(
            sessionId="SES-" + new_uuid(),
            tokenHash=sha256_hex(token),
            tokenPrefix=token[:12],
            userId=str(user_id or ""),
            email=str(email or ""),
            role=str(normalize_role(role) or ""),
            issuedAt=issued_at,
            expiresAt=expires_at,
            lastSeenAt=issued_at,
            revokedAt="",
            revokedBy="",
        )
    )
    return {"sessionToken": token, "expiresAt": expires_at}


def revoke_session_token(db, token: Any, *, revoked_by: str) -> bool:
    if not token or not isinstance(token, str):
        return False
    ses = db.execute(select(DbSession).where(DbSession.tokenHash == sha256_hex(token))).scalar_one_or_none()
    if not ses or ses.revokedAt:
        return False
    ses.revokedAt = iso_utc_now()
    ses.revokedBy = str(revoked_by or "")
    return True


def validate_session_token(db, token: Any, *, action: str | None = None) -> AuthContext:
    if not token or not isinstance(token, str):
        return _INVALID

    ses = db.execute(select(DbSession).where(DbSession.tokenHash == sha256_hex(token))).scalar_one_or_none()
    if not ses or ses.revokedAt:
        return _INVALID

    exp_dt = parse_datetime_maybe(ses.expiresAt)
    if exp_dt and exp_dt < datetime.now(timezone.utc):
        return _INVALID

    user_id = str(ses.userId or "").strip()
    usr = db.execute(select(User).where(User.userId == user_id)).scalar_one_or_none()
    if not usr:
        return _INVALID
    if str(usr.status or "").upper().strip() != "ACTIVE":
        raise ApiError("FORBIDDEN", "User is disabled", http_status=403)

    # Avoid writing on every request: update lastSeenAt at most once per interval.
    try:
        interval_s = int(str(os.getenv("SESSION_LAST_SEEN_UPDATE_SECONDS", "300") or "300"))
    except ValueError:
        interval_s = 300
    last_dt = parse_datetime_maybe(ses.lastSeenAt)
    if interval_s <= 0 or not last_dt or (datetime.now(timezone.utc) - last_dt).total_seconds() >= interval_s:
        ses.lastSeenAt = iso_utc_now()

    return AuthContext(
        valid=True,
        userId=user_id,
        email=str(ses.email or ""),
        role=str(normalize_role(usr.role) or ""),
        expiresAt=str(ses.expiresAt or ""),
    )


def get_permission_rule(db, perm_type: str, perm_key: str) -> Optional[dict[str, Any]]:
    perm_type_u = str(perm_type or "").upper().strip()
    perm_key_u = str(perm_key or "").upper().strip()
    if not perm_type_u or not perm_key_u:
        return None

    cache_key = f"{_RBAC_RULE_PREFIX}{perm_type_u}:{perm_key_u}"
    cached = cache_get(cache_key)
    if cached is False:
        return None
    if isinstance(cached, dict):
        return cached

    row = (
        db.execute(select(Permission).where(Permission.permType == perm_type_u).where(Permission.permKey == perm_key_u))
        .scalars()
        .first()
    )
    if not row:
        cache_set(cache_key, False)
        return None
    out = {"enabled": bool(row.enabled), "roles": parse_roles_csv(row.rolesCsv or "")}
    cache_set(cache_key, out)
    return out


def _roles_index(db) -> dict[str, str]:
    cached = cache_get(_RBAC_ROLES_INDEX_KEY)
    if isinstance(cached, dict):
        return cached

    rows = db.execute(select(Role)).scalars().all()
    if not rows:
        out = {rc: "ACTIVE" for rc in DEFAULT_ROLES}
    else:
        out = {}
        for r in rows:
            code = normalize_role(r.roleCode)
            if code:
                out[code] = str(r.status or "ACTIVE").upper()
    cache_set(_RBAC_ROLES_INDEX_KEY, out)
    return out


def is_role_active(db, role: str) -> bool:
    r = normalize_role(role)
    if not r:
        return False
    return _roles_index(db).get(r) == "ACTIVE"


def assert_permission(db, role: str, action: str) -> None:
    role_u = normalize_role(role) or ""
    action_u = str(action or "").upper().strip()

    if is_public_action(action_u):
        return

    allowed_static = STATIC_RBAC_PERMISSIONS.get(action_u)
    rule = get_permission_rule(db, "ACTION", action_u)
    has_dyn = bool(rule and rule.get("enabled") is True)

    if not allowed_static and not has_dyn:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action_u}")

    if not role_u or role_u == "PUBLIC":
        raise ApiError("AUTH_INVALID", "Login required")
    if not is_role_active(db, role_u):
        raise ApiError("FORBIDDEN", f"Inactive or unknown role: {role_u}")

    if action_u in {"SESSION_VALIDATE", "GET_ME", "LOGOUT"}:
        return

    if has_dyn:
        roles = rule.get("roles") or []
        allowed = "PUBLIC" in roles or role_u in roles
    else:
        allowed = role_u in (allowed_static or [])

    if not allowed:
        raise ApiError("FORBIDDEN", f"Not allowed for role: {role_u}")


def role_or_public(auth: Optional[AuthContext]) -> str:
    if not auth or not auth.valid:
        return "PUBLIC"
    return normalize_role(auth.role) or "PUBLIC"
