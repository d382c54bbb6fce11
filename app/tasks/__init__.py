"""
Celery configuration and task registration.

Usage:
    celery -A app.tasks.celery_app worker --loglevel=INFO
"""
from __future__ import annotations

import os

from celery import Celery


def _env_bool(name: str) -> bool:
    return str(os.getenv(name, "") or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def make_celery() -> Celery:
    """
    Create the Celery app with a Redis broker.

    Environment variables:
        REDIS_URL: Redis connection URL (default: redis://localhost:6379/0)
        CELERY_RESULT_BACKEND: Optional separate result backend
        CELERY_TASK_ALWAYS_EAGER: Run tasks inline (tests, local development)
    """
    eager = _env_bool("CELERY_TASK_ALWAYS_EAGER")
    if eager:
        broker_url = "memory://"
        result_backend = "cache+memory://"
    else:
        broker_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
        result_backend = os.getenv("CELERY_RESULT_BACKEND", broker_url)

    app = Celery(
        "hiring",
        broker=broker_url,
        backend=result_backend,
        include=["app.tasks.notifications"],
    )

    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone=os.getenv("APP_TIMEZONE", "UTC"),
        enable_utc=True,
        result_expires=86400,
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        worker_concurrency=int(os.getenv("CELERY_CONCURRENCY", "4")),
        task_always_eager=eager,
        task_eager_propagates=False,
        task_store_eager_result=eager,
        task_default_retry_delay=60,
    )

    return app


celery_app = make_celery()
