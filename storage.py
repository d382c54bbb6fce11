from __future__ import annotations

import glob
import logging
import mimetypes
import os
import re
from functools import partial
from typing import Any, Optional

from sqlalchemy import select
from werkzeug.security import safe_join
from werkzeug.utils import secure_filename

from db import after_commit, after_rollback
from models import StoredFile
from utils import ValidationError, decode_base64_to_bytes, iso_utc_now, new_uuid


_log = logging.getLogger("storage")
_FILE_ID_RE = re.compile(r"[0-9a-f]{32}")

ALLOWED_EXTENSIONS = {".pdf", ".doc", ".docx", ".txt", ".rtf", ".odt", ".png", ".jpg", ".jpeg", ".zip", ".xlsx", ".csv", ".pptx"}


def is_valid_file_id(file_id: str) -> bool:
    return bool(_FILE_ID_RE.fullmatch(str(file_id or "").strip().lower()))


def _check_upload(cfg, *, file_name: str, blob: bytes) -> str:
    name = secure_filename(str(file_name or "").strip()) or "file"
    _base, ext = os.path.splitext(name)
    if ext.lower() not in ALLOWED_EXTENSIONS:
        raise ValidationError(f"File type not allowed: {ext or name}")
    if not blob:
        raise ValidationError(f"Empty file: {name}")
    if len(blob) > int(cfg.MAX_UPLOAD_MB) * 1024 * 1024:
        raise ValidationError(f"Max upload size is {cfg.MAX_UPLOAD_MB}MB")
    return name


def read_upload(cfg, item: Any) -> dict[str, Any]:
    """
    Validate one uploaded file entry before anything touches the disk.

    Multipart routes hand over raw bytes; JSON callers send `blob` as base64.
    Returns `{fileName, mimeType, blob}` with `blob` as bytes.
    """

    if not isinstance(item, dict):
        raise ValidationError("Each file must be an object with fileName and blob")
    file_name = str(item.get("fileName") or "").strip()
    if not file_name:
        raise ValidationError("Missing fileName")

    blob = item.get("blob")
    if isinstance(blob, str):
        blob = decode_base64_to_bytes(blob)
    elif not isinstance(blob, (bytes, bytearray)):
        raise ValidationError(f"Missing file content: {file_name}")

    _check_upload(cfg, file_name=file_name, blob=blob)
    return {"fileName": file_name, "mimeType": str(item.get("mimeType") or ""), "blob": bytes(blob)}


def _unlink(path: str, file_id: str) -> None:
    if not os.path.exists(path):
        return
    try:
        os.remove(path)
    except OSError:
        _log.warning("could not remove file from disk file_id=%s", file_id)


def store_file(
    db,
    cfg,
    *,
    blob: bytes,
    file_name: str,
    mime_type: str = "",
    kind: str,
    candidate_id: str = "",
    assignment_id: str = "",
    uploaded_by: str = "",
) -> StoredFile:
    name = _check_upload(cfg, file_name=file_name, blob=blob)
    file_id = new_uuid().replace("-", "")

    os.makedirs(cfg.UPLOAD_DIR, exist_ok=True)
    path = os.path.join(cfg.UPLOAD_DIR, f"{file_id}_{name}")
    with open(path, "wb") as fh:
        fh.write(blob)
    # Bytes on disk follow the row: a rolled back request leaves no orphan file.
    after_rollback(db, partial(_unlink, path, file_id))

    row = StoredFile(
        fileId=file_id,
        originalName=str(file_name or name),
        mimeType=str(mime_type or "").strip() or mimetypes.guess_type(name)[0] or "application/octet-stream",
        size=len(blob),
        kind=str(kind or "").upper(),
        candidateId=str(candidate_id or ""),
        assignmentId=str(assignment_id or ""),
        uploadedBy=str(uploaded_by or ""),
        uploadedAt=iso_utc_now(),
    )
    db.add(row)
    return row


def resolve_path(cfg, file_id: str) -> Optional[str]:
    fid = str(file_id or "").strip().lower()
    if not is_valid_file_id(fid):
        return None
    matches = sorted(glob.glob(os.path.join(cfg.UPLOAD_DIR, f"{fid}_*")))
    if not matches:
        return None
    return safe_join(cfg.UPLOAD_DIR, os.path.basename(matches[0]))


def remove_file(db, cfg, row: StoredFile) -> None:
    """Delete the row now; the bytes go only once the transaction commits."""
    path = resolve_path(cfg, row.fileId)
    db.delete(row)
    if path:
        after_commit(db, partial(_unlink, path, str(row.fileId or "")))


def get_file(db, file_id: str) -> Optional[StoredFile]:
    return db.execute(select(StoredFile).where(StoredFile.fileId == str(file_id or "").strip().lower())).scalar_one_or_none()


def serialize_file(row: StoredFile) -> dict[str, Any]:
    return {
        "fileId": str(row.fileId or ""),
        "originalName": str(row.originalName or ""),
        "mimeType": str(row.mimeType or ""),
        "size": int(row.size or 0),
        "kind": str(row.kind or ""),
        "uploadedBy": str(row.uploadedBy or ""),
        "uploadedAt": str(row.uploadedAt or ""),
        "downloadUrl": f"/api/files/{row.fileId}",
    }
