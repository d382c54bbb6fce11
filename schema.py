from __future__ import annotations

import logging

from sqlalchemy import func, inspect, select, text

from models import Permission, Role, User
from passwords import hash_password
from utils import ValidationError, iso_utc_now, new_uuid


_log = logging.getLogger("schema")

_ROLE_NAMES = {
    "ADMIN": "Admin",
    "HR_MANAGER": "HR Manager",
    "RECRUITER": "Recruiter",
    "INTERVIEWER": "Interviewer",
}


def _quoted(name: str) -> str:
    return '"' + str(name).replace('"', '""') + '"'


def _ensure_column(engine, *, table: str, column: str, ddl_type: str, default_sql: str = "''") -> None:
    insp = inspect(engine)
    cols = {c.get("name") for c in insp.get_columns(table)}
    if column in cols:
        return
    ddl = f"ALTER TABLE {_quoted(table)} ADD COLUMN {_quoted(column)} {ddl_type} DEFAULT {default_sql}"
    with engine.begin() as conn:
        conn.execute(text(ddl))
    _log.info("added column %s.%s", table, column)


def _ensure_index(engine, *, name: str, table: str, column: str) -> None:
    ddl = f"CREATE INDEX IF NOT EXISTS {_quoted(name)} ON {_quoted(table)}({_quoted(column)})"
    with engine.begin() as conn:
        conn.execute(text(ddl))


def ensure_schema(engine) -> None:
    """
    Lightweight, idempotent schema evolution (no Alembic).

    Columns added after the first release are back-filled with empty defaults
    so older databases keep working with the current models.
    """
    _ensure_column(engine, table="candidates", column="inHouseAssignmentStatus", ddl_type="TEXT")
    _ensure_column(engine, table="candidates", column="assignmentDetailsJson", ddl_type="TEXT", default_sql="'{}'")
    _ensure_column(engine, table="candidates", column="resumeFileId", ddl_type="TEXT")
    _ensure_column(engine, table="interviews", column="round", ddl_type="INTEGER", default_sql="1")
    _ensure_column(engine, table="assignments", column="sentAt", ddl_type="TEXT")

    # Pipeline list performance (filters + ordering).
    _ensure_index(engine, name="ix_candidates_updatedAt", table="candidates", column="updatedAt")
    _ensure_index(engine, name="ix_assignments_updatedAt", table="assignments", column="updatedAt")
    _ensure_index(engine, name="ix_interviews_updatedAt", table="interviews", column="updatedAt")


def _seed_roles_and_permissions(db, *, now: str, actor: str) -> None:
    from auth import STATIC_RBAC_PERMISSIONS, invalidate_rbac_cache

    existing_roles = {str(r.roleCode or "").upper() for r in db.execute(select(Role)).scalars().all()}
    for rc, name in _ROLE_NAMES.items():
        if rc in existing_roles:
            continue
        db.add(Role(roleCode=rc, roleName=name, status="ACTIVE", createdAt=now, createdBy=actor, updatedAt=now, updatedBy=actor))

    # Only inserts missing keys so custom RBAC rows survive restarts.
    existing_perm = {
        (str(p.permType or "").upper().strip(), str(p.permKey or "").upper().strip())
        for p in db.execute(select(Permission)).scalars().all()
    }
    for action, roles in STATIC_RBAC_PERMISSIONS.items():
        if ("ACTION", action.upper()) in existing_perm:
            continue
        db.add(
            Permission(
                permType="ACTION",
                permKey=action.upper(),
                rolesCsv=",".join(roles),
                enabled=True,
                updatedAt=now,
                updatedBy=actor,
            )
        )
    # Drop rules cached before these rows existed.
    invalidate_rbac_cache()


def _seed_bootstrap_admin(db, cfg, *, now: str, actor: str) -> None:
    email = str(cfg.BOOTSTRAP_ADMIN_EMAIL or "").strip().lower()
    password = str(cfg.BOOTSTRAP_ADMIN_PASSWORD or "")
    if not email or not password:
        return

    found = db.execute(select(User.userId).where(func.lower(User.email) == email)).first()
    if found:
        return

    try:
        password_hash = hash_password(password)
    except ValidationError as e:
        raise RuntimeError(f"BOOTSTRAP_ADMIN_PASSWORD rejected: {e.message}") from e

    db.add(
        User(
            userId=f"USR-{new_uuid()}",
            email=email,
            fullName="Administrator",
            role="ADMIN",
            status="ACTIVE",
            passwordHash=password_hash,
            createdAt=now,
            createdBy=actor,
            updatedAt=now,
            updatedBy=actor,
        )
    )
    _log.info("bootstrap admin created email=%s", email)


def seed_defaults(db, cfg) -> None:
    """Idempotent startup seed: roles, ACTION permissions and an optional bootstrap admin."""
    now = iso_utc_now()
    actor = "SYSTEM_INIT"
    _seed_roles_and_permissions(db, now=now, actor=actor)
    _seed_bootstrap_admin(db, cfg, now=now, actor=actor)
