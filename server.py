from __future__ import annotations

import json
import logging
import os
import re
from typing import Any

from dotenv import load_dotenv
from flask import Blueprint, Flask, current_app, g, request, send_file
from flask_cors import CORS
from sqlalchemy.exc import DBAPIError

from actions import dispatch
from auth import assert_permission, is_public_action, role_or_public, validate_session_token
from config import Config
from db import SessionLocal, init_engine
from models import AuditLog
from storage import get_file, is_valid_file_id, resolve_path
from utils import ApiError, SimpleRateLimiter, err, iso_utc_now, now_monotonic, ok, parse_json_body, redact_for_audit


rest_api = Blueprint("rest_api", __name__)

_log = logging.getLogger("api")


def _header_token() -> str:
    authz = str(request.headers.get("Authorization") or "").strip()
    if authz.lower().startswith("bearer "):
        return authz.split(" ", 1)[1].strip()
    return str(request.headers.get("X-Session-Token") or "").strip()


def _rest_token() -> str:
    return (
        _header_token()
        or str(request.args.get("token") or "").strip()
        or str((request.get_json(silent=True) or {}).get("token") or "").strip()
    )


def _audit_api_call(db, *, action: str, auth_ctx, data: Any, stage_tag: str) -> None:
    db.add(
        AuditLog(
            logId=f"LOG-{os.urandom(16).hex()}",
            entityType="API",
            entityId=str(auth_ctx.userId or auth_ctx.email or "") if auth_ctx else "PUBLIC",
            action=action,
            stageTag=stage_tag,
            actorUserId=str(auth_ctx.userId) if auth_ctx else "PUBLIC",
            actorRole=str(auth_ctx.role) if auth_ctx else "PUBLIC",
            actorEmail=str(getattr(auth_ctx, "email", "") or "") if auth_ctx else "",
            at=iso_utc_now(),
            correlationId=str(getattr(g, "request_id", "") or ""),
            metaJson=json.dumps({"data": redact_for_audit(data or {})}),
        )
    )


def _write_error_audit(action: str, auth_ctx, data: Any, err_obj: ApiError) -> None:
    db2 = SessionLocal()
    try:
        db2.add(
            AuditLog(
                logId=f"LOG-{os.urandom(16).hex()}",
                entityType="API",
                entityId=str(auth_ctx.userId or auth_ctx.email or "") if auth_ctx else "PUBLIC",
                action=str(action or "").upper() or "UNKNOWN",
                stageTag="API_ERROR",
                remark=f"{err_obj.code}: {err_obj.message}",
                actorUserId=str(auth_ctx.userId) if auth_ctx else "PUBLIC",
                actorRole=str(auth_ctx.role) if auth_ctx else "PUBLIC",
                actorEmail=str(getattr(auth_ctx, "email", "") or "") if auth_ctx else "",
                at=iso_utc_now(),
                correlationId=str(getattr(g, "request_id", "") or ""),
                metaJson=json.dumps(
                    {
                        "data": redact_for_audit(data or {}),
                        "error": {"code": err_obj.code, "message": err_obj.message},
                    }
                ),
            )
        )
        db2.commit()
    except DBAPIError:
        db2.rollback()
        _log.exception("error audit write failed action=%s", action)
    finally:
        db2.close()


def _internal_error(cfg: Config, e: Exception) -> ApiError:
    request_id = str(getattr(g, "request_id", "") or "").strip()
    if isinstance(e, DBAPIError):
        label = "Database error"
        orig = getattr(e, "orig", None)
        detail = re.sub(r"\s+", " ", str(orig) if orig else "").strip()
    else:
        label = "Unexpected error"
        detail = type(e).__name__
    if len(detail) > 300:
        detail = detail[:300] + "..."

    msg = label if cfg.IS_PRODUCTION or not detail else f"{label}: {detail}"
    if request_id:
        msg = f"{msg} (requestId: {request_id})"
    return ApiError("INTERNAL", msg, http_status=500)


def _rest_handle(action: str, data: dict):
    cfg: Config = current_app.config["CFG"]
    token = _rest_token()
    action_u = str(action or "").upper().strip()

    db = None
    auth_ctx = None
    try:
        db = SessionLocal()

        auth_ctx = validate_session_token(db, token, action=action_u)
        if not auth_ctx or not auth_ctx.valid:
            raise ApiError("AUTH_INVALID", "Invalid or expired session")

        role = role_or_public(auth_ctx)
        assert_permission(db, role, action_u)

        out = dispatch(action_u, data or {}, auth_ctx, db, cfg)
        _audit_api_call(db, action=action_u, auth_ctx=auth_ctx, data=data, stage_tag="API_CALL_REST")

        db.commit()
        return ok(out)[0]
    except ApiError as e:
        if db is not None:
            db.rollback()
        _write_error_audit(action_u, auth_ctx, data, e)
        return err(e.code, e.message, http_status=e.http_status)[0], e.http_status
    except Exception as e:
        if db is not None:
            db.rollback()
        api_err = _internal_error(cfg, e)
        _write_error_audit(action_u, auth_ctx, data, api_err)
        _log.exception("rest action=%s", action_u)
        return err(api_err.code, api_err.message, http_status=500)[0], 500
    finally:
        if db is not None:
            db.close()


def _uploaded_files(field: str) -> list[dict]:
    return [
        {"fileName": f.filename or "", "mimeType": f.mimetype or "", "blob": f.read()}
        for f in request.files.getlist(field)
        if f and f.filename
    ]


@rest_api.patch("/api/candidates/<candidate_id>/stage")
def rest_candidate_stage(candidate_id: str):
    body = request.get_json(silent=True) or {}
    data = {"candidateId": candidate_id, "stage": body.get("stage"), "notes": body.get("notes") or ""}
    return _rest_handle("CANDIDATE_STAGE_SET", data)


@rest_api.post("/api/candidates/<candidate_id>/resume")
def rest_candidate_resume(candidate_id: str):
    files = _uploaded_files("resume") or _uploaded_files("file")
    if not files:
        return err("VALIDATION_ERROR", "No file uploaded", http_status=400)
    data = {"candidateId": candidate_id, **files[0]}
    return _rest_handle("CANDIDATE_RESUME_UPLOAD", data)


@rest_api.post("/api/assignments/<assignment_id>/send")
def rest_assignment_send(assignment_id: str):
    return _rest_handle("ASSIGNMENT_SEND", {"assignmentId": assignment_id})


@rest_api.patch("/api/assignments/<assignment_id>/status")
def rest_assignment_status(assignment_id: str):
    body = request.get_json(silent=True) or {}
    return _rest_handle("ASSIGNMENT_STATUS_SET", {"assignmentId": assignment_id, "status": body.get("status")})


@rest_api.delete("/api/assignments/<assignment_id>")
def rest_assignment_delete(assignment_id: str):
    return _rest_handle("ASSIGNMENT_DELETE", {"assignmentId": assignment_id})


@rest_api.post("/api/assignments/<assignment_id>/files")
def rest_assignment_files(assignment_id: str):
    return _rest_handle("ASSIGNMENT_UPLOAD_FILES", {"assignmentId": assignment_id, "files": _uploaded_files("files")})


@rest_api.delete("/api/assignments/<assignment_id>/files/<file_id>")
def rest_assignment_file_remove(assignment_id: str, file_id: str):
    return _rest_handle("ASSIGNMENT_FILE_REMOVE", {"assignmentId": assignment_id, "fileId": file_id})


@rest_api.get("/api/files/<file_id>")
def rest_file_download(file_id: str):
    cfg: Config = current_app.config["CFG"]
    fid = str(file_id or "").strip().lower()
    if not is_valid_file_id(fid):
        return err("BAD_REQUEST", "Invalid file id", http_status=400)

    db = SessionLocal()
    try:
        try:
            auth_ctx = validate_session_token(db, _rest_token(), action="FILE_DOWNLOAD")
            if not auth_ctx.valid:
                raise ApiError("AUTH_INVALID", "Invalid or expired session")
            assert_permission(db, role_or_public(auth_ctx), "FILE_DOWNLOAD")
        except ApiError as e:
            return err(e.code, e.message, http_status=e.http_status)

        row = get_file(db, fid)
        path = resolve_path(cfg, fid)
        if not row or not path or not os.path.exists(path):
            return err("NOT_FOUND", "File not found", http_status=404)

        resp = send_file(
            path,
            mimetype=row.mimeType or "application/octet-stream",
            as_attachment=True,
            download_name=row.originalName or os.path.basename(path),
        )
        resp.headers["X-Content-Type-Options"] = "nosniff"
        return resp
    finally:
        db.close()


def _configure_logging(level: str):
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def create_app() -> Flask:
    load_dotenv()
    cfg = Config()
    cfg.validate()
    _configure_logging(cfg.LOG_LEVEL)

    engine = init_engine(cfg.DATABASE_URL)

    from models import Base  # imported after engine init

    Base.metadata.create_all(bind=engine)

    from schema import ensure_schema, seed_defaults

    ensure_schema(engine)

    app = Flask(__name__)
    app.config["CFG"] = cfg
    app.config["MAX_CONTENT_LENGTH"] = (cfg.MAX_UPLOAD_MB * cfg.MAX_FILES_PER_UPLOAD + 1) * 1024 * 1024

    CORS(app, origins=cfg.ALLOWED_ORIGINS, supports_credentials=False)
    app.register_blueprint(rest_api)

    limiter = SimpleRateLimiter()

    # Seed roles/permissions at startup (idempotent).
    db0 = SessionLocal()
    try:
        seed_defaults(db0, cfg)
        db0.commit()
    finally:
        db0.close()

    @app.before_request
    def _before():
        g.request_id = os.urandom(8).hex()
        g.start_ts = now_monotonic()

    @app.after_request
    def _after(resp):
        resp.headers["X-Request-ID"] = str(getattr(g, "request_id", "") or "")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        resp.headers.setdefault("Cache-Control", "no-store")
        return resp

    @app.get("/health")
    def health():
        from cache_layer import cache_stats
        from db import get_pool_stats

        return ok(
            {
                "status": "ok",
                "version": cfg.APP_VERSION,
                "db_pool": get_pool_stats(),
                "cache": cache_stats(),
            }
        )[0]

    @app.get("/")
    def index():
        return ok(
            {
                "status": "ok",
                "message": "Hiring pipeline backend is running. Use /health for a quick check and POST /api for actions.",
                "endpoints": {"health": "/health", "api": "/api"},
            }
        )[0]

    @app.errorhandler(404)
    def not_found(_e):
        return err("NOT_FOUND", f"Unknown endpoint: {request.path}", http_status=404)

    @app.errorhandler(405)
    def method_not_allowed(_e):
        return err("BAD_REQUEST", "Method not allowed. Use POST /api for actions.", http_status=405)

    @app.errorhandler(413)
    def too_large(_e):
        return err("VALIDATION_ERROR", f"Max upload size is {cfg.MAX_UPLOAD_MB}MB", http_status=413)

    @app.post("/api")
    def api_route():
        cfg2: Config = app.config["CFG"]
        raw = request.get_data(as_text=True)
        db = None
        auth_ctx = None
        action_u = ""
        data: Any = {}

        try:
            body = parse_json_body(raw)
            action_u = str(body.get("action") or "").upper().strip()
            token = body.get("token") or _header_token()
            data = body.get("data") or {}
            if not isinstance(data, dict):
                raise ApiError("BAD_REQUEST", "data must be an object")

            if not action_u:
                raise ApiError("BAD_REQUEST", "Missing action")

            ip = request.headers.get("X-Forwarded-For", request.remote_addr or "")
            if action_u == "LOGIN":
                limiter.check(f"{ip}:LOGIN", cfg2.RATE_LIMIT_LOGIN)
            else:
                limiter.check(f"{ip}:API:{action_u}", cfg2.RATE_LIMIT_DEFAULT)

            db = SessionLocal()

            if not is_public_action(action_u):
                auth_ctx = validate_session_token(db, token, action=action_u)
                if not auth_ctx.valid:
                    raise ApiError("AUTH_INVALID", "Invalid or expired session")

            role = role_or_public(auth_ctx)
            assert_permission(db, role, action_u)

            if action_u == "LOGOUT":
                data = {**data, "token": token}

            out = dispatch(action_u, data, auth_ctx, db, cfg2)
            _audit_api_call(db, action=action_u, auth_ctx=auth_ctx, data=data, stage_tag="API_CALL")

            db.commit()

            latency_ms = int((now_monotonic() - g.start_ts) * 1000)
            _log.info(
                "request_id=%s action=%s user=%s role=%s latency_ms=%s",
                g.request_id,
                action_u,
                (auth_ctx.userId if auth_ctx else "PUBLIC"),
                (auth_ctx.role if auth_ctx else "PUBLIC"),
                latency_ms,
            )

            return ok(out)[0]
        except ApiError as e:
            if db is not None:
                db.rollback()
            _write_error_audit(action_u, auth_ctx, data, e)
            return err(e.code, e.message, http_status=e.http_status)[0], e.http_status
        except Exception as e:
            if db is not None:
                db.rollback()
            api_err = _internal_error(cfg2, e)
            _write_error_audit(action_u, auth_ctx, data, api_err)
            _log.exception("request_id=%s action=%s", getattr(g, "request_id", ""), action_u)
            return err(api_err.code, api_err.message, http_status=api_err.http_status)[0], api_err.http_status
        finally:
            if db is not None:
                db.close()

    return app


if __name__ == "__main__":
    app = create_app()
    cfg = app.config["CFG"]

    os.makedirs(cfg.UPLOAD_DIR, exist_ok=True)
    app.run(host=cfg.HOST, port=cfg.PORT)
