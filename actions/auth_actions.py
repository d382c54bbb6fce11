from __future__ import annotations

from sqlalchemy import func, select

from actions.helpers import actor_id, append_audit, clamp_int, get_str, require_auth, require_str
from auth import DEFAULT_ROLES, issue_session_token, revoke_session_token
from models import User
from passwords import hash_password, verify_password
from utils import ApiError, AuthContext, ValidationError, iso_utc_now, new_uuid, normalize_role


def _find_user_by_email(db, email: str):
    email_lc = str(email or "").strip().lower()
    if not email_lc:
        return None
    return db.execute(select(User).where(func.lower(User.email) == email_lc)).scalars().first()


def _serialize_user(user: User) -> dict:
    return {
        "userId": str(user.userId or ""),
        "email": str(user.email or ""),
        "fullName": str(user.fullName or ""),
        "role": normalize_role(user.role) or "",
        "status": str(user.status or ""),
        "lastLoginAt": str(user.lastLoginAt or ""),
    }


def login(data, auth: AuthContext | None, db, cfg):
    email = str((data or {}).get("email") or "").strip().lower()
    password = str((data or {}).get("password") or "")
    if not email:
        raise ApiError("BAD_REQUEST", "Missing email")
    if not password:
        raise ApiError("BAD_REQUEST", "Missing password")
    if len(password) > 256:
        raise ApiError("BAD_REQUEST", "Password is too long")

    user = _find_user_by_email(db, email)
    # Same message for unknown user and bad password.
    if not user or not verify_password(password, str(user.passwordHash or "")):
        raise ApiError("AUTH_INVALID", "Invalid credentials")
    if str(user.status or "").upper() != "ACTIVE":
        raise ApiError("FORBIDDEN", "User is disabled", http_status=403)

    ses = issue_session_token(
        db,
        user_id=user.userId,
        email=user.email,
        role=user.role,
        session_ttl_minutes=cfg.SESSION_TTL_MINUTES,
    )
    user.lastLoginAt = iso_utc_now()

    append_audit(
        db,
        entityType="AUTH",
        entityId=str(user.userId),
        action="LOGIN",
        stageTag="AUTH_LOGIN",
        actor=AuthContext(valid=True, userId=user.userId, email=user.email, role=normalize_role(user.role) or "", expiresAt=ses["expiresAt"]),
    )

    return {
        "sessionToken": ses["sessionToken"],
        "expiresAt": ses["expiresAt"],
        "me": _serialize_user(user),
    }


def logout(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    revoked = revoke_session_token(db, (data or {}).get("token"), revoked_by=actor_id(auth))
    if revoked:
        append_audit(db, entityType="AUTH", entityId=str(auth.userId), action="LOGOUT", stageTag="AUTH_LOGOUT", actor=auth)
    return {"loggedOut": True}


def session_validate(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Invalid or expired session")
    return {
        "valid": True,
        "expiresAt": auth.expiresAt,
        "me": {"userId": auth.userId, "email": auth.email, "role": normalize_role(auth.role)},
    }


def get_me(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Invalid or expired session")

    user = db.execute(select(User).where(User.userId == auth.userId)).scalar_one_or_none()
    if not user:
        raise ApiError("AUTH_INVALID", "User missing")
    return {"me": _serialize_user(user)}


def users_list(data, auth: AuthContext | None, db, cfg):
    require_auth(auth)

    role = normalize_role(get_str(data, "role")) or ""
    status = get_str(data, "status").upper()
    limit = clamp_int((data or {}).get("limit"), default=100, min_v=1, max_v=500)

    q = select(User)
    if role:
        q = q.where(User.role == role)
    if status:
        q = q.where(User.status == status)
    rows = db.execute(q.order_by(User.fullName.asc(), User.userId.asc()).limit(limit)).scalars().all()
    return {"items": [_serialize_user(u) for u in rows]}


def user_create(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    email = require_str(data, "email", max_len=254).lower()
    if "@" not in email:
        raise ValidationError("Invalid email")
    full_name = require_str(data, "fullName", max_len=200)
    role = normalize_role(require_str(data, "role")) or ""
    if role not in DEFAULT_ROLES:
        raise ValidationError(f"Invalid role. Allowed: {', '.join(DEFAULT_ROLES)}")
    password_hash = hash_password(str((data or {}).get("password") or ""))

    if _find_user_by_email(db, email):
        raise ValidationError("A user with this email already exists")

    now = iso_utc_now()
    user = User(
        userId=f"USR-{new_uuid()}",
        email=email,
        fullName=full_name,
        role=role,
        status="ACTIVE",
        passwordHash=password_hash,
        createdAt=now,
        createdBy=actor_id(auth),
        updatedAt=now,
        updatedBy=actor_id(auth),
    )
    db.add(user)
    append_audit(db, entityType="USER", entityId=user.userId, action="USER_CREATE", toState=role, actor=auth, at=now)
    return _serialize_user(user)
