# authgate/main.py
#
# -----------------------------------------------------------------------------
# Architectural notes (high level)
# -----------------------------------------------------------------------------
# This file is "thin" orchestration glue:
#   - It wires HTTP endpoints to the domain services implemented elsewhere.
#   - It MUST NOT implement crypto itself (WebAuthn lives behind
#     passkeys.PasskeyVerifier, cookie MACs and SSO tokens in tokens.py).
#   - Every authentication decision is written to the audit log.
#
# Key modules / responsibilities:
#   - config.py      : environment-driven settings
#   - storage.py     : in-memory store + the key-value contract
#   - sql_storage.py : SQLAlchemy-backed store (sqlite / postgres)
#   - codes.py       : one-time email verification codes
#   - passkeys.py    : WebAuthn challenge lifecycle + counter replay defense
#   - identity.py    : member directory lookup -> email, name, labels
#   - sessions.py    : server-side sessions behind a signed cookie
#   - policy.py      : label allow-list
#   - proxy.py       : streaming reverse proxy + HTML session-sync injection
#   - audit.py       : append-only hash-chained audit log
#
# Request lanes:
#   - /signin, /api/auth/*, /api/passkey/*, /auth/callback : sign-in surface
#   - everything else : session + policy gate, then proxied to UPSTREAM_URL
#
# WARNING (DEPLOYMENT):
# - With DATABASE_URL empty, codes / challenges / sessions live in process
#   memory and are NOT shared across Uvicorn workers or nodes. Run a single
#   worker or configure a database.
# -----------------------------------------------------------------------------

import asyncio
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import httpx
import jwt
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from loguru import logger

from .audit import AuditLog
from .codes import VerificationCodeService
from .config import Settings, check_rp_binding
from .errors import (
    GatewayError,
    InternalError,
    PolicyDeniedError,
    UnauthenticatedError,
    ValidationError,
)
from .identity import FileMemberDirectory, GhostMemberDirectory, Identity, IdentityResolver, MemberDirectory
from .logging import setup_logging
from .mailer import BrevoMailer, LogMailer, Mailer
from .models import (
    LoginFinishRequest,
    LoginStartRequest,
    RegisterFinishRequest,
    RegisterStartRequest,
    SendVerificationRequest,
    VerifyCodeRequest,
    normalize_email,
)
from .passkeys import PasskeyOrchestrator, PasskeyVerifier, WebAuthnVerifier
from .policy import AccessPolicy
from .proxy import UpstreamProxy, build_sync_script
from .sessions import SessionManager
from .sql_storage import open_store
from .storage import SessionRecord, now_epoch
from .tokens import CookieSigner, IssuerMismatch, decode_sso_token

BASE_DIR = Path(__file__).resolve().parent

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _client_fields(request: Request) -> dict:
    return {
        "request_ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def _wants_html(request: Request) -> bool:
    return request.method in ("GET", "HEAD") and "text/html" in request.headers.get("accept", "")


def _user_view(identity: Identity) -> dict:
    return {"email": identity.email, "name": identity.name, "labels": list(identity.labels)}


async def _sweep_forever(store, interval_seconds: int, challenge_ttl_seconds: int) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            purged = await store.purge_expired(now_epoch(), challenge_ttl_seconds)
        except Exception:
            # next tick retries; expired rows are also rejected on read
            logger.exception("expired-row sweep failed")
            continue
        if purged:
            logger.debug(f"sweep purged {purged} expired rows")


async def _close_quietly(component) -> None:
    close = getattr(component, "close", None)
    if close is not None:
        await close()


# -----------------------------------------------------------------------------
# Application factory
# -----------------------------------------------------------------------------
def create_app(
    settings: Optional[Settings] = None,
    *,
    store=None,
    directory: Optional[MemberDirectory] = None,
    mailer: Optional[Mailer] = None,
    verifier: Optional[PasskeyVerifier] = None,
    upstream_client: Optional[httpx.AsyncClient] = None,
    audit: Optional[AuditLog] = None,
) -> FastAPI:
    """
    Build the gateway.

    Every collaborator can be injected; anything not supplied is built from
    `settings` (environment / .env when settings is None).
    """
    settings = settings or Settings()
    check_rp_binding(settings)

    store = store or open_store(settings.DATABASE_URL)

    if directory is None:
        if settings.GHOST_ADMIN_API_KEY:
            directory = GhostMemberDirectory(settings.GHOST_ADMIN_URL, settings.GHOST_ADMIN_API_KEY)
        else:
            logger.warning(f"GHOST_ADMIN_API_KEY not set: members are read from {settings.MEMBERS_FILE}")
            directory = FileMemberDirectory(settings.MEMBERS_FILE)

    if mailer is None:
        if settings.BREVO_API_KEY:
            mailer = BrevoMailer(
                api_key=settings.BREVO_API_KEY,
                from_email=settings.MAIL_FROM_EMAIL,
                from_name=settings.MAIL_FROM_NAME,
                app_name=settings.RP_NAME,
                ttl_minutes=max(1, settings.CODE_TTL_SECONDS // 60),
            )
        else:
            logger.warning("BREVO_API_KEY not set: verification codes are only logged")
            mailer = LogMailer()

    verifier = verifier or WebAuthnVerifier(settings.RP_ID, settings.RP_NAME, settings.ORIGIN)
    audit = audit or AuditLog(settings.AUDIT_DIR, enabled=settings.AUDIT_ENABLED)

    codes = VerificationCodeService(store, ttl_seconds=settings.CODE_TTL_SECONDS, length=settings.CODE_LENGTH)
    passkeys = PasskeyOrchestrator(store, verifier, challenge_ttl_seconds=settings.CHALLENGE_TTL_SECONDS)
    resolver = IdentityResolver(directory, settings.MEMBERSHIP_URL)
    policy = AccessPolicy(settings.allowed_labels, settings.MEMBERSHIP_URL)
    sessions = SessionManager(
        store,
        CookieSigner(settings.SESSION_SECRET),
        cookie_name=settings.SESSION_COOKIE_NAME,
        ttl_seconds=settings.SESSION_TTL_SECONDS,
        secure=settings.is_production,
    )
    proxy = UpstreamProxy(
        settings.UPSTREAM_URL,
        build_sync_script(settings.SSO_PROVIDER_URL),
        timeout_seconds=settings.UPSTREAM_TIMEOUT_SECONDS,
        max_rewrite_bytes=settings.MAX_REWRITE_BYTES,
        client=upstream_client,
    )

    if settings.SSO_LOGIN_REDIRECT:
        callback = quote(f"{settings.ORIGIN}/auth/callback", safe="")
        login_url = f"{settings.SSO_PROVIDER_URL}/auth?redirect={callback}"
    else:
        login_url = "/signin"

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.LOG_LEVEL)
        await store.init()

        sweeper = None
        if settings.SWEEP_INTERVAL_SECONDS > 0:
            sweeper = asyncio.create_task(
                _sweep_forever(store, settings.SWEEP_INTERVAL_SECONDS, settings.CHALLENGE_TTL_SECONDS)
            )

        logger.info(f"authgate up: origin={settings.ORIGIN} rp_id={settings.RP_ID} upstream={settings.UPSTREAM_URL}")
        yield

        if sweeper is not None:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper
        await proxy.close()
        await _close_quietly(directory)
        await _close_quietly(mailer)
        await store.close()

    app = FastAPI(title="authgate", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.audit = audit

    # cross-domain session sync: the SSO provider reads /api/auth/status and calls logout
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
    )

    templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))

    # -------------------------------------------------------------------------
    # Error rendering
    # -------------------------------------------------------------------------
    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        line = f"{request.method} {request.url.path} -> {exc}"
        if exc.message_debug:
            line += f" ({exc.message_debug})"
        if exc.status_code >= 500:
            logger.error(line)
        else:
            logger.info(line)
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse({"error": "Invalid request"}, status_code=400)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.opt(exception=exc).error(f"unhandled error on {request.method} {request.url.path}")
        return JSONResponse(InternalError().to_dict(), status_code=500)

    # -------------------------------------------------------------------------
    # Shared steps
    # -------------------------------------------------------------------------
    async def _require_session(request: Request) -> SessionRecord:
        rec = await sessions.get_session(request)
        if rec is None or not rec.authenticated:
            raise UnauthenticatedError()
        return rec

    async def _sign_in(request: Request, identity: Identity, channel: str) -> JSONResponse:
        """Policy check, then session + cookie on the response that is returned."""
        try:
            policy.require(identity.labels)
        except PolicyDeniedError:
            await audit.record(
                "denied", "policy_denied", channel=channel, email=identity.email,
                labels=identity.labels, **_client_fields(request),
            )
            raise

        response = JSONResponse(
            {"success": True, "message": "Authentication successful", "user": _user_view(identity)}
        )
        await sessions.create_session(request, response, identity)
        await audit.record(
            "approved", "session_created", channel=channel, email=identity.email,
            labels=identity.labels, **_client_fields(request),
        )
        return response

    # -------------------------------------------------------------------------
    # Sign-in page + static client
    # -------------------------------------------------------------------------
    app.mount("/static", StaticFiles(directory=str(BASE_DIR / "static")), name="static")

    @app.get("/signin", response_class=HTMLResponse)
    async def signin(request: Request):
        rec = await sessions.get_session(request)
        if rec is not None and rec.authenticated:
            return RedirectResponse("/", status_code=302)

        return templates.TemplateResponse(
            request,
            "signin.html",
            {
                "rp_name": settings.RP_NAME,
                "membership_url": settings.MEMBERSHIP_URL,
                "code_length": settings.CODE_LENGTH,
            },
        )

    @app.get("/healthz")
    async def healthz():
        return {"ok": True}

    # -------------------------------------------------------------------------
    # Email verification codes
    # -------------------------------------------------------------------------
    @app.post("/api/auth/send-verification")
    async def send_verification(request: Request, body: SendVerificationRequest):
        email = normalize_email(body.email)
        if not email:
            raise ValidationError("Email is required")

        identity = await resolver.resolve(email)
        code = await codes.issue(email)

        name = (body.name or "").strip() or identity.name or email
        await mailer.send_verification(email, name, code)

        await audit.record("issued", "code_sent", channel="code", email=email, **_client_fields(request))
        return {"success": True, "message": "Verification code sent"}

    @app.post("/api/auth/verify-code")
    async def verify_code(request: Request, body: VerifyCodeRequest):
        email = normalize_email(body.email)
        code = (body.code or "").strip()
        if not email or not code:
            raise ValidationError("Email and code are required")

        if not await codes.verify(email, code):
            await audit.record("denied", "code_invalid", channel="code", email=email, **_client_fields(request))
            raise ValidationError("Invalid or expired code")

        identity = await resolver.resolve(email)
        return await _sign_in(request, identity, channel="code")

    # -------------------------------------------------------------------------
    # Session
    # -------------------------------------------------------------------------
    @app.get("/api/auth/status")
    async def auth_status(request: Request):
        rec = await sessions.get_session(request)
        if rec is None or not rec.authenticated:
            return {"authenticated": False}
        return {"authenticated": True, "user": rec.public_user()}

    @app.post("/api/auth/logout")
    async def logout(request: Request):
        rec = await sessions.get_session(request)

        response = JSONResponse({"success": True, "message": "Logged out successfully"})
        await sessions.destroy_session(request, response)

        if rec is not None:
            await audit.record("approved", "session_destroyed", email=rec.email, **_client_fields(request))
        return response

    # -------------------------------------------------------------------------
    # Passkeys
    # -------------------------------------------------------------------------
    def _registration_email(rec: SessionRecord, requested: Optional[str]) -> str:
        email = normalize_email(requested) or rec.email
        if email != rec.email:
            raise ValidationError("Email does not match the signed-in account")
        return email

    @app.post("/api/passkey/register-start")
    async def passkey_register_start(request: Request, body: Optional[RegisterStartRequest] = None):
        rec = await _require_session(request)
        body = body or RegisterStartRequest()

        email = _registration_email(rec, body.email)
        display_name = (body.userName or "").strip() or rec.display_name or email
        return await passkeys.begin_registration(email, display_name)

    @app.post("/api/passkey/register-finish")
    async def passkey_register_finish(request: Request, body: RegisterFinishRequest):
        rec = await _require_session(request)
        if not body.credential:
            raise ValidationError("Credential is required")

        email = _registration_email(rec, body.email)
        ok = await passkeys.finish_registration(email, body.credential, device_name=body.deviceName)
        if not ok:
            await audit.record("denied", "passkey_registration_failed", channel="passkey", email=email, **_client_fields(request))
            raise ValidationError("Failed to verify passkey registration")

        await audit.record("approved", "passkey_registered", channel="passkey", email=email, **_client_fields(request))
        return {"success": True, "message": "Passkey registered successfully"}

    @app.post("/api/passkey/login-start")
    async def passkey_login_start(body: Optional[LoginStartRequest] = None):
        email = normalize_email(body.email if body else None)
        return await passkeys.begin_authentication(email or None)

    @app.post("/api/passkey/login-finish")
    async def passkey_login_finish(request: Request, body: LoginFinishRequest):
        if not body.credential:
            raise ValidationError("Credential is required")

        email = normalize_email(body.email)
        outcome = await passkeys.finish_authentication(email or None, body.credential, ceremony_id=body.ceremonyId)
        if not outcome.verified:
            await audit.record(
                "denied", outcome.reason, channel="passkey", email=email or None,
                credential_id=outcome.credential_id, **_client_fields(request),
            )
            raise ValidationError("Failed to verify passkey")

        identity = await resolver.resolve(outcome.email)
        return await _sign_in(request, identity, channel="passkey")

    # -------------------------------------------------------------------------
    # SSO bootstrap
    # -------------------------------------------------------------------------
    @app.get("/auth/callback")
    async def sso_callback(request: Request, token: Optional[str] = None):
        if not token:
            raise ValidationError("Missing authentication token")

        try:
            claims = decode_sso_token(token, settings.sso_token_secret, settings.SSO_TOKEN_ISSUER)
        except IssuerMismatch as e:
            await audit.record("denied", "sso_issuer_mismatch", channel="sso", **_client_fields(request))
            raise UnauthenticatedError("Invalid token issuer", message_debug=f"iss={e}")
        except jwt.InvalidTokenError as e:
            await audit.record("denied", "sso_invalid_token", channel="sso", **_client_fields(request))
            raise InternalError("Authentication failed", message_debug=str(e)[:200], cause=e)

        identity = Identity(email=normalize_email(claims.email), name=claims.name, labels=claims.labels)
        response = RedirectResponse("/", status_code=302)
        await sessions.create_session(request, response, identity)

        await audit.record(
            "approved", "session_created", channel="sso", email=identity.email,
            labels=identity.labels, **_client_fields(request),
        )
        return response

    # -------------------------------------------------------------------------
    # Everything else: gate, then proxy
    # -------------------------------------------------------------------------
    @app.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
    async def gated_proxy(request: Request, path: str):
        rec = await sessions.get_session(request)
        if rec is None or not rec.authenticated:
            if _wants_html(request):
                return RedirectResponse(login_url, status_code=302)
            raise UnauthenticatedError()

        if not policy.evaluate(rec):
            await audit.record(
                "denied", "policy_denied", channel="proxy", email=rec.email,
                labels=rec.labels, **_client_fields(request),
            )
            raise PolicyDeniedError(labels=rec.labels, redirect_url=policy.redirect_url)

        return await proxy.forward(request)

    return app


def main() -> None:
    settings = Settings()
    setup_logging(settings.LOG_LEVEL)
    uvicorn.run(
        "authgate.main:create_app",
        factory=True,
        host=settings.HOST,
        port=settings.PORT,
        log_config=None,
    )


if __name__ == "__main__":
    main()
