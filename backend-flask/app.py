from __future__ import annotations

import logging
import os
import re
import time
from typing import Any

import stripe
from dotenv import load_dotenv
from flask import Flask, g, request, send_file
from flask_cors import CORS
from sqlalchemy.exc import SQLAlchemyError

from actions import dispatch
from actions.billing import handle_webhook_event
from actions.files import WRITTEN_FILES_KEY, can_access_file, discard_written_files
from actions.helpers import append_audit, stripe_gateway
from auth import (
    ALWAYS_ALLOWED,
    STATIC_RBAC_PERMISSIONS,
    assert_permission,
    is_public_action,
    role_or_public,
    validate_session_token,
)
from config import Config
from db import Base, SessionLocal, init_engine, ping
from models import Permission, UploadedFile
from services.billing import BillingConfigError
from services.usage import increment_usage_metric
from utils import ApiError, SimpleRateLimiter, err, iso_utc_now, now_monotonic, ok, parse_json_body

logger = logging.getLogger("api")

LOGIN_ACTIONS = {"LOGIN", "REGISTER", "INVITATION_ACCEPT"}


def _configure_logging(level: str):
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _seed_permissions(db):
    # Only seeded when empty so edits made through the table survive restarts.
    if db.query(Permission).count():
        return

    now = iso_utc_now()
    for action, roles in STATIC_RBAC_PERMISSIONS.items():
        key = action.upper()
        if key in ALWAYS_ALLOWED:
            continue
        db.add(
            Permission(
                permKey=key,
                rolesCsv=",".join(roles),
                enabled=True,
                updatedAt=now,
                updatedBy="SYSTEM_INIT",
            )
        )


def _bearer_token(default: Any = None) -> Any:
    header = str(request.headers.get("Authorization") or "").strip()
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return default


def create_app(cfg: Config | None = None) -> Flask:
    load_dotenv()
    cfg = cfg or Config()
    _configure_logging(cfg.LOG_LEVEL)

    engine = init_engine(cfg.DATABASE_URL)
    Base.metadata.create_all(bind=engine)

    app = Flask(__name__)
    app.config["CFG"] = cfg
    app.config["STARTED_AT"] = time.time()

    CORS(app, origins=cfg.ALLOWED_ORIGINS, supports_credentials=False)

    limiter = SimpleRateLimiter()
    app.config["RATE_LIMITER"] = limiter

    db0 = SessionLocal()
    try:
        _seed_permissions(db0)
        db0.commit()
    finally:
        db0.close()

    @app.before_request
    def _before():
        g.request_id = os.urandom(8).hex()
        g.start_ts = now_monotonic()

    @app.after_request
    def _security_headers(resp):
        resp.headers.setdefault("X-Frame-Options", "DENY")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        resp.headers.setdefault("X-XSS-Protection", "1; mode=block")
        if cfg.is_production:
            resp.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
        return resp

    @app.get("/health")
    def health():
        checks = {}

        db = SessionLocal()
        t0 = now_monotonic()
        try:
            ping(db)
            checks["database"] = {"status": "healthy", "responseTimeMs": int((now_monotonic() - t0) * 1000)}
        except SQLAlchemyError as e:
            logger.error("health database check failed: %s", e)
            checks["database"] = {"status": "unhealthy", "error": str(e)}
        finally:
            db.close()

        if cfg.GEMINI_API_KEY:
            checks["ai"] = {"status": "healthy", "model": cfg.GEMINI_MODEL}
        else:
            checks["ai"] = {"status": "unhealthy", "error": "GEMINI_API_KEY not configured"}

        try:
            os.makedirs(cfg.UPLOAD_DIR, exist_ok=True)
            writable = os.access(cfg.UPLOAD_DIR, os.W_OK)
            checks["storage"] = {"status": "healthy" if writable else "unhealthy", "path": cfg.UPLOAD_DIR}
            if not writable:
                checks["storage"]["error"] = "Upload directory is not writable"
        except OSError as e:
            checks["storage"] = {"status": "unhealthy", "error": str(e)}

        healthy = all(c["status"] == "healthy" for c in checks.values())
        body = {
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": iso_utc_now(),
            "uptimeSeconds": int(time.time() - app.config["STARTED_AT"]),
            "version": cfg.APP_VERSION,
            "environment": cfg.APP_ENV,
            "checks": checks,
        }
        return body, 200 if healthy else 503

    @app.get("/")
    def index():
        return ok(
            {
                "status": "ok",
                "message": "DevMeet backend is running. Use /health for a quick check and POST /api for actions.",
                "endpoints": {"health": "/health", "api": "/api", "files": "/files/<id>", "billingWebhook": "/billing/webhook"},
            }
        )[0]

    @app.get("/files/<file_id>")
    def files_get(file_id: str):
        fid = str(file_id or "").strip()
        if not re.fullmatch(r"[0-9a-fA-F]{32}", fid):
            return err("BAD_REQUEST", "Invalid file id")

        token = _bearer_token(str(request.args.get("token") or "").strip())
        if not token:
            return err("AUTH_INVALID", "Missing token")

        db = SessionLocal()
        try:
            auth_ctx = validate_session_token(db, token)
            if role_or_public(auth_ctx) == "PUBLIC":
                return err("AUTH_INVALID", "Invalid or expired session")

            row = db.get(UploadedFile, fid)
            if row is None:
                return err("NOT_FOUND", "File not found")
            if not can_access_file(db, auth_ctx, row):
                return err("FORBIDDEN", "File not accessible")

            path = os.path.abspath(row.filePath)
            if not os.path.isfile(path):
                logger.warning("file row without content id=%s path=%s", row.id, path)
                return err("NOT_FOUND", "File not found")

            resp = send_file(
                path,
                mimetype=row.mimeType or "application/octet-stream",
                as_attachment=False,
                download_name=row.originalName,
                etag=f"{row.id}-{row.fileSize}",
                max_age=3600,
            )
            resp.headers["Cache-Control"] = "private, max-age=3600"
            resp.headers["X-Content-Type-Options"] = "nosniff"
            return resp
        finally:
            db.close()

    @app.post("/billing/webhook")
    def billing_webhook():
        signature = str(request.headers.get("Stripe-Signature") or "").strip()
        if not signature:
            return err("BAD_REQUEST", "Missing Stripe-Signature header")

        payload = request.get_data()
        try:
            event = stripe_gateway(cfg).construct_event(payload, signature)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning("webhook signature verification failed: %s", e)
            return err("BAD_REQUEST", "Invalid webhook signature")
        except BillingConfigError as e:
            return err("BAD_REQUEST", str(e))

        db = SessionLocal()
        try:
            handled = handle_webhook_event(db, event, cfg)
            db.commit()
            return ok({"received": True, "handled": handled})[0]
        except Exception:
            db.rollback()
            logging.getLogger("billing").exception("request_id=%s webhook processing failed", g.request_id)
            return err("INTERNAL", "Webhook processing failed")
        finally:
            db.close()

    @app.errorhandler(404)
    def not_found(_e):
        return err("NOT_FOUND", f"Unknown endpoint: {request.path}. Use GET /health, or POST /api for actions.")

    @app.errorhandler(405)
    def method_not_allowed(_e):
        return err("BAD_REQUEST", "Method not allowed. Use POST /api for actions.", http_status=405)

    @app.post("/api")
    def api_route():
        raw = request.get_data(as_text=True)
        db = None
        auth_ctx = None
        action_u = ""
        data: Any = {}

        try:
            body = parse_json_body(raw)
            action_u = str(body.get("action") or "").upper().strip()
            token = body.get("token") or _bearer_token()
            data = body.get("data") or {}

            if not action_u:
                raise ApiError("BAD_REQUEST", "Missing action")
            if not isinstance(data, dict):
                raise ApiError("BAD_REQUEST", "data must be an object")

            ip = request.headers.get("X-Forwarded-For", request.remote_addr or "")
            if action_u in LOGIN_ACTIONS:
                limiter.check(f"{ip}:LOGIN", cfg.RATE_LIMIT_LOGIN)
            else:
                limiter.check(f"{ip}:GLOBAL", cfg.RATE_LIMIT_GLOBAL)
                limiter.check(f"{ip}:API:{action_u}", cfg.RATE_LIMIT_DEFAULT)

            db = SessionLocal()

            if not is_public_action(action_u):
                auth_ctx = validate_session_token(db, token)
                if not auth_ctx.valid:
                    raise ApiError("AUTH_INVALID", "Invalid or expired session")
            elif token:
                maybe = validate_session_token(db, token)
                auth_ctx = maybe if maybe.valid else None

            role = role_or_public(auth_ctx)
            assert_permission(db, role, action_u)

            out = dispatch(action_u, data, auth_ctx, db, cfg)
            if auth_ctx is not None:
                increment_usage_metric(db, auth_ctx.organizationId, "api_calls")

            append_audit(
                db,
                entityType="API",
                entityId=str(auth_ctx.userId or auth_ctx.email or "") if auth_ctx else "PUBLIC",
                action=action_u,
                stageTag="API_CALL",
                actor=auth_ctx,
                meta={"data": data},
            )
            db.commit()
            db.info.pop(WRITTEN_FILES_KEY, None)

            latency_ms = int((now_monotonic() - g.start_ts) * 1000)
            logger.info(
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
                discard_written_files(db)
            _write_error_audit(action_u, auth_ctx, data, e)
            logger.info("request_id=%s action=%s error=%s", g.request_id, action_u, e.code)
            return err(e.code, e.message, http_status=e.http_status)
        except Exception:
            if db is not None:
                db.rollback()
                discard_written_files(db)
            api_err = ApiError("INTERNAL", "Unexpected error")
            _write_error_audit(action_u, auth_ctx, data, api_err)
            logger.exception("request_id=%s action=%s", g.request_id, action_u)
            return err(api_err.code, api_err.message)
        finally:
            if db is not None:
                db.close()

    @app.cli.command("seed-demo")
    def seed_demo_command():
        """Create the demo organization and users."""
        from seed import DEMO_PASSWORD, seed_demo

        db = SessionLocal()
        try:
            result = seed_demo(db)
            db.commit()
        finally:
            db.close()
        for item in result["created"] or ["nothing to create"]:
            print(item)
        print(f"demo password: {DEMO_PASSWORD}")

    return app


def _write_error_audit(action: str, auth_ctx, data: Any, err_obj: ApiError):
    db2 = SessionLocal()
    try:
        append_audit(
            db2,
            entityType="API",
            entityId=str(auth_ctx.userId or auth_ctx.email or "") if auth_ctx else "PUBLIC",
            action=str(action or "").upper() or "UNKNOWN",
            stageTag="API_ERROR",
            remark=f"{err_obj.code}: {err_obj.message}",
            actor=auth_ctx,
            meta={"data": data or {}, "error": {"code": err_obj.code, "message": err_obj.message}},
        )
        db2.commit()
    except Exception:
        db2.rollback()
        logger.exception("could not write error audit action=%s", action)
    finally:
        db2.close()


if __name__ == "__main__":
    app = create_app()
    cfg = app.config["CFG"]

    os.makedirs(cfg.UPLOAD_DIR, exist_ok=True)
    app.run(host=cfg.HOST, port=cfg.PORT)
