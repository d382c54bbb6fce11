from __future__ import annotations

from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker


Base = declarative_base()

# Bound in init_engine(); module-level so callers can import it before the app starts.
SessionLocal = sessionmaker(autoflush=False, expire_on_commit=False)

_engine: Engine | None = None


def after_commit(db, fn) -> None:
    """Run `fn` once the current transaction of `db` commits; dropped on rollback."""
    db.info.setdefault("after_commit", []).append(fn)


def after_rollback(db, fn) -> None:
    """Run `fn` if the current transaction of `db` rolls back; dropped on commit."""
    db.info.setdefault("after_rollback", []).append(fn)


@event.listens_for(SessionLocal, "after_commit")
def _run_after_commit(session) -> None:
    session.info.pop("after_rollback", None)
    for fn in session.info.pop("after_commit", []):
        fn()


@event.listens_for(SessionLocal, "after_rollback")
def _run_after_rollback(session) -> None:
    session.info.pop("after_commit", None)
    for fn in session.info.pop("after_rollback", []):
        fn()


def init_engine(database_url: str) -> Engine:
    global _engine

    url = str(database_url or "").strip()
    if not url:
        raise RuntimeError("DATABASE_URL is required")

    kwargs: dict[str, Any] = {"pool_pre_ping": True, "future": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs["pool_size"] = 10
        kwargs["max_overflow"] = 20
        kwargs["pool_recycle"] = 1800

    if _engine is not None:
        _engine.dispose()

    _engine = create_engine(url, **kwargs)
    SessionLocal.configure(bind=_engine)
    return _engine


def get_pool_stats() -> dict[str, Any]:
    if _engine is None:
        return {"initialized": False}
    pool = _engine.pool
    out: dict[str, Any] = {"initialized": True, "class": type(pool).__name__}
    for name in ("size", "checkedin", "checkedout", "overflow"):
        fn = getattr(pool, name, None)
        if callable(fn):
            try:
                out[name] = int(fn())
            except (TypeError, ValueError):
                continue
    return out
