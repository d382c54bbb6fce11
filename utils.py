from __future__ import annotations

import base64
import binascii
import hashlib
import json
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo

from dateutil import parser as date_parser


_DEFAULT_HTTP_STATUS = {
    "BAD_REQUEST": 400,
    "VALIDATION_ERROR": 400,
    "AUTH_INVALID": 401,
    "FORBIDDEN": 403,
    "NOT_FOUND": 404,
    "INVALID_STATE": 409,
    "RATE_LIMITED": 429,
    "INTERNAL": 500,
}


class ApiError(Exception):
    def __init__(self, code: str, message: str, http_status: int | None = None):
        super().__init__(message)
        self.code = str(code or "INTERNAL")
        self.message = str(message or "")
        self.http_status = int(http_status or _DEFAULT_HTTP_STATUS.get(self.code, 400))


class ValidationError(ApiError):
    def __init__(self, message: str):
        super().__init__("VALIDATION_ERROR", message, http_status=400)


class PermissionDenied(ApiError):
    def __init__(self, message: str = "Not allowed"):
        super().__init__("FORBIDDEN", message, http_status=403)


class InvalidStateError(ApiError):
    def __init__(self, message: str):
        super().__init__("INVALID_STATE", message, http_status=409)


class NotFoundError(ApiError):
    def __init__(self, message: str = "Not found"):
        super().__init__("NOT_FOUND", message, http_status=404)


@dataclass
class AuthContext:
    valid: bool
    userId: str
    email: str
    role: str
    expiresAt: str


def ok(data: Any = None, message: str | None = None) -> tuple[dict[str, Any], int]:
    out: dict[str, Any] = {"success": True}
    if data is not None:
        out["data"] = data
    if message:
        out["message"] = message
    return out, 200


def err(code: str, message: str, http_status: int = 400) -> tuple[dict[str, Any], int]:
    return {"success": False, "message": message, "error": {"code": code, "message": message}}, int(http_status)


def iso_utc_now() -> str:
    return to_iso_utc(datetime.now(timezone.utc))


def to_iso_utc(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.replace(microsecond=(dt.microsecond // 1000) * 1000).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_datetime_maybe(value: Any, app_timezone: str = "UTC") -> Optional[datetime]:
    """
    Parse an ISO-ish timestamp into an aware UTC datetime.

    Naive values are interpreted in `app_timezone` (wall-clock input from the UI).
    Returns None for empty or unparseable input.
    """

    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value or "").strip()
        if not s:
            return None
        try:
            dt = date_parser.isoparse(s)
        except (ValueError, OverflowError):
            try:
                dt = date_parser.parse(s)
            except (ValueError, OverflowError):
                return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=ZoneInfo(app_timezone or "UTC"))
    return dt.astimezone(timezone.utc)


def new_uuid() -> str:
    return str(uuid.uuid4())


def sha256_hex(value: str) -> str:
    return hashlib.sha256(str(value or "").encode("utf-8")).hexdigest()


def decode_base64_to_bytes(value: Any) -> bytes:
    """Decode a base64 payload from a JSON body; a `data:...;base64,` prefix is allowed."""
    s = str(value or "").strip()
    if s.startswith("data:") and "," in s:
        s = s.split(",", 1)[1]
    if not s:
        raise ValidationError("Empty file")
    try:
        return base64.b64decode(s, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("File content must be base64 encoded")


_ROLE_ALIASES = {
    "ADMIN": "ADMIN",
    "HR_MANAGER": "HR_MANAGER",
    "HR MANAGER": "HR_MANAGER",
    "HR-MANAGER": "HR_MANAGER",
    "RECRUITER": "RECRUITER",
    "INTERVIEWER": "INTERVIEWER",
}


def normalize_role(role: Any) -> str | None:
    s = str(role or "").strip().upper()
    if not s:
        return None
    return _ROLE_ALIASES.get(s, s.replace(" ", "_"))


def parse_roles_csv(value: str) -> list[str]:
    out: list[str] = []
    for part in str(value or "").split(","):
        r = normalize_role(part)
        if r and r not in out:
            out.append(r)
    return out


def parse_json_body(raw: str) -> dict[str, Any]:
    if not raw:
        raise ApiError("BAD_REQUEST", "Empty body")
    try:
        body = json.loads(raw)
    except json.JSONDecodeError:
        raise ApiError("BAD_REQUEST", "Invalid JSON body")
    if not isinstance(body, dict):
        raise ApiError("BAD_REQUEST", "JSON body must be an object")
    return body


def safe_json_string(value: Any, fallback: str = "") -> str:
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return fallback


def safe_json_load(raw: Any, fallback: Any = None) -> Any:
    s = str(raw or "").strip()
    if not s:
        return fallback
    try:
        return json.loads(s)
    except json.JSONDecodeError:
        return fallback


_REDACT_KEYS = {"password", "newpassword", "token", "sessiontoken", "authorization"}


def redact_for_audit(value: Any, depth: int = 0) -> Any:
    if depth > 4:
        return "..."
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if str(k).lower() in _REDACT_KEYS:
                out[k] = "***"
            else:
                out[k] = redact_for_audit(v, depth + 1)
        return out
    if isinstance(value, list):
        return [redact_for_audit(v, depth + 1) for v in value[:50]]
    if isinstance(value, (bytes, bytearray)):
        return f"<{len(value)} bytes>"
    if isinstance(value, str) and len(value) > 500:
        return value[:500] + "..."
    return value


def now_monotonic() -> float:
    return time.monotonic()


class SimpleRateLimiter:
    """Fixed one-minute window per key; in-process only."""

    def __init__(self):
        self._lock = threading.Lock()
        self._hits: dict[str, tuple[int, int]] = {}

    def check(self, key: str, limit_per_minute: int) -> None:
        if limit_per_minute <= 0:
            return
        window = int(time.time() // 60)
        with self._lock:
            w, n = self._hits.get(key, (window, 0))
            if w != window:
                w, n = window, 0
            n += 1
            self._hits[key] = (w, n)
            if len(self._hits) > 10_000:
                self._hits = {k: v for k, v in self._hits.items() if v[0] == window}
        if n > limit_per_minute:
            raise ApiError("RATE_LIMITED", "Too many requests, slow down", http_status=429)


# Roles that see every private note and may edit or delete anyone's notes and ratings.
PRIVILEGED_ROLES = frozenset({"ADMIN", "HR_MANAGER"})


def is_privileged(role: Any) -> bool:
    return (normalize_role(role) or "") in PRIVILEGED_ROLES
