"""FastAPI routes for the Tessera web UI and ceremony API."""

import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from tessera import __version__
from tessera.api.models import (
    CeremonyResultResponse,
    ErrorDetail,
    ErrorResponse,
    SessionInfo,
)
from tessera.auth.session import generate_secret, new_session_id, sign_session_id, unsign_session_id
from tessera.auth.verifier import WebAuthnVerifier
from tessera.config.loader import ConfigError, Settings
from tessera.core.ceremony import CeremonyOrchestrator, parse_ceremony_response
from tessera.core.errors import BadRequest, CeremonyError
from tessera.storage.credentials import CredentialStore
from tessera.storage.kv import KeyValueStore
from tessera.storage.sessions import CeremonyKind, SessionStore

logger = logging.getLogger(__name__)

_TEMPLATES_DIR = Path(__file__).parent / "templates"

HANDLE_FIELD = "user-handle"

_STATUS_WORDS = {
    CeremonyKind.REGISTRATION: "registered",
    CeremonyKind.LOGIN: "authenticated",
}


class SessionCookieMiddleware(BaseHTTPMiddleware):
    """Attach a session id to every request, minting and signing one when needed."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        settings: Settings = request.app.state.settings
        cookie = request.cookies.get(settings.cookie_name, "")
        session_id = unsign_session_id(cookie, settings.session_secret)
        fresh = session_id is None
        if fresh:
            session_id = new_session_id()
        request.state.session_id = session_id

        response = await call_next(request)
        if fresh:
            response.set_cookie(
                settings.cookie_name,
                sign_session_id(session_id, settings.session_secret),
                httponly=True,
                samesite="lax",
                secure=settings.secure_cookies,
            )
        return response


def _wants_json(request: Request) -> bool:
    accept = request.headers.get("accept", "")
    return "text/html" not in accept


def _load_settings(config_path: Optional[str]) -> Settings:
    from tessera.config.loader import load_config, settings_from_config, validate_config
    from tessera.config.writer import seed_session_secret

    _config_path = Path(config_path) if config_path else Path.home() / ".config/tessera/config.yaml"
    if not _config_path.exists():
        # No config yet: defaults plus an in-memory secret. Sessions do not
        # survive a restart in this mode.
        logger.warning("Config not found at %s, running with defaults", _config_path)
        return Settings(session_secret=generate_secret())

    seed_session_secret(_config_path)
    raw = load_config(_config_path) or {}
    errors = validate_config(raw)
    if errors:
        raise ConfigError("; ".join(errors))
    return settings_from_config(raw)


def build_orchestrator(settings: Settings) -> CeremonyOrchestrator:
    """Construct the stores, verifier and orchestrator for ``settings``."""
    credentials = CredentialStore(KeyValueStore(settings.storage_path / "users"))
    sessions = SessionStore(
        KeyValueStore(settings.storage_path / "sessions"),
        settings.session_ttl,
        settings.session_login_ttl,
    )
    verifier = WebAuthnVerifier(
        rp_id=settings.rp_id,
        rp_name=settings.rp_name,
        user_verification=settings.user_verification,
        timeout_ms=settings.session_ttl * 1000,
    )
    return CeremonyOrchestrator(credentials, sessions, verifier, settings)


def create_app(
    config_path: Optional[str] = None,
    settings: Optional[Settings] = None,
    orchestrator: Optional[CeremonyOrchestrator] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        config_path: Path to tessera config.yaml. If None, uses the default location.
        settings: Pre-resolved settings; skips reading ``config_path``.
        orchestrator: Pre-built orchestrator (tests inject one with a fake verifier).

    Returns:
        FastAPI application instance

    Raises:
        ConfigError: If the config file fails validation.
    """
    if settings is None:
        settings = _load_settings(config_path)
    if orchestrator is None:
        orchestrator = build_orchestrator(settings)

    app = FastAPI(
        title="Tessera",
        version=__version__,
        description="Passkey relying party",
    )

    # ── App state ─────────────────────────────────────────────────────────────
    app.state.settings = settings
    app.state.orchestrator = orchestrator

    app.add_middleware(SessionCookieMiddleware)
    templates = Jinja2Templates(directory=str(_TEMPLATES_DIR))

    # ── Errors ────────────────────────────────────────────────────────────────

    @app.exception_handler(CeremonyError)
    async def ceremony_error(request: Request, exc: CeremonyError) -> Response:
        status = exc.status_code
        if _wants_json(request):
            body = ErrorResponse(error=ErrorDetail(status=status, message=exc.message))
            return JSONResponse(body.model_dump(), status_code=status)
        return templates.TemplateResponse(
            request,
            "error.html",
            {"status": status, "message": exc.message},
            status_code=status,
        )

    # ── Helpers ────────────────────────────────────────────────────────────────

    async def _form_handle(request: Request) -> str:
        form = await request.form()
        value = form.get(HANDLE_FIELD)
        if not isinstance(value, str):
            raise BadRequest("User handle is required")
        return value

    # ── Pages ─────────────────────────────────────────────────────────────────

    @app.get("/", response_class=HTMLResponse)
    async def index(request: Request) -> HTMLResponse:
        state = await run_in_threadpool(orchestrator.current, request.state.session_id)
        return templates.TemplateResponse(
            request,
            "index.html",
            {
                "logged_in": state.logged_in,
                "handle": state.authenticated_handle,
                "rp_name": settings.rp_name,
            },
        )

    @app.get("/favicon.ico")
    async def favicon() -> Response:
        return Response(status_code=204)

    # ── Ceremonies ────────────────────────────────────────────────────────────

    @app.post("/register")
    async def post_register(request: Request) -> JSONResponse:
        handle = await _form_handle(request)
        options = await run_in_threadpool(
            orchestrator.begin_registration, request.state.session_id, handle
        )
        return JSONResponse(options)

    @app.post("/login")
    async def post_login(request: Request) -> JSONResponse:
        handle = await _form_handle(request)
        options = await run_in_threadpool(
            orchestrator.begin_login, request.state.session_id, handle
        )
        return JSONResponse(options)

    @app.post("/response", response_model=CeremonyResultResponse)
    async def post_response(request: Request) -> CeremonyResultResponse:
        raw = await request.body()
        try:
            body: Any = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise BadRequest("Body must be JSON") from exc
        response = parse_ceremony_response(body)
        result = await run_in_threadpool(
            orchestrator.complete, request.state.session_id, response
        )
        return CeremonyResultResponse(status=_STATUS_WORDS[result.kind], handle=result.handle)

    @app.post("/logout")
    async def post_logout(request: Request) -> Response:
        await run_in_threadpool(orchestrator.logout, request.state.session_id)
        if _wants_json(request):
            return JSONResponse({"status": "logged_out"})
        return RedirectResponse("/", status_code=303)

    @app.get("/session", response_model=SessionInfo)
    async def get_session(request: Request) -> SessionInfo:
        state = await run_in_threadpool(orchestrator.current, request.state.session_id)
        return SessionInfo(
            logged_in=state.logged_in,
            handle=state.authenticated_handle,
            pending_ceremony=state.pending_ceremony.value if state.pending_ceremony else None,
        )

    return app
