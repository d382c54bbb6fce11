from __future__ import annotations

import logging
from typing import Any


_log = logging.getLogger("notifications")


def dispatch_assignment_sent(payload: dict[str, Any]) -> bool:
    """
    Queue the candidate-facing notification for a sent assignment.

    Returns False when the task could not be queued; the caller records the
    communication as pending and the assignment stays Assigned either way.
    """

    from app.tasks.notifications import send_assignment_notification

    try:
        result = send_assignment_notification.apply_async(kwargs={"payload": payload})
    except Exception:
        _log.exception("assignment notification enqueue failed assignmentId=%s", payload.get("assignmentId"))
        return False

    # Eager mode runs inline; surface a failed run the same way as a failed enqueue.
    if getattr(result, "failed", None) and result.ready() and result.failed():
        _log.warning("assignment notification failed assignmentId=%s", payload.get("assignmentId"))
        return False
    return True
