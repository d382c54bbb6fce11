"""
Candidate notifications sent outside the request cycle.

Email transport is an external collaborator; the task builds the message and
hands it to the log so a mail relay (or a later worker) can pick it up.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone

from app.tasks import celery_app


_log = logging.getLogger("notifications")


def build_assignment_message(payload: dict) -> dict:
    title = str(payload.get("title") or "").strip()
    lines = [f"Assignment: {title}"]
    if payload.get("jobTitle"):
        lines.append(f"Job: {payload['jobTitle']}")
    if payload.get("dueDate"):
        lines.append(f"Due date: {payload['dueDate']}")
    lines.append("")
    lines.append(str(payload.get("descriptionHtml") or ""))
    lines.append("Please complete this assignment and submit your response.")
    return {
        "to": str(payload.get("candidateEmail") or ""),
        "subject": f"Assignment: {title}",
        "body": "\n".join(lines),
        "attachments": list(payload.get("attachments") or []),
    }


@celery_app.task(bind=True, max_retries=3, default_retry_delay=30)
def send_assignment_notification(self, payload: dict):
    message = build_assignment_message(payload or {})
    if not message["to"]:
        raise ValueError("Candidate email is required")

    _log.info(
        "assignment notification task_id=%s assignmentId=%s to=%s attachments=%s",
        self.request.id,
        payload.get("assignmentId"),
        message["to"],
        len(message["attachments"]),
    )
    return {
        "task_id": self.request.id,
        "assignmentId": payload.get("assignmentId"),
        "subject": message["subject"],
        "sent_at": datetime.now(timezone.utc).isoformat(),
        "status": "sent",
    }
