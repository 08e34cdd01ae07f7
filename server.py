#!/usr/bin/env python3
"""
Atrium — account and authorization endpoints.

Thin starlette surface over the authorization handshake core
(atrium_oauth) and the single-use credential verifier
(atrium_credentials). Clients are loaded from clients.yaml; all other
state lives in-memory.

Routes:
  GET  /oauth/authorize                        — consent page
  POST /oauth/authorize                        — accept/reject → 303 redirect
  POST /xrpc/com.atproto.server.resetPassword  — redeem password-reset code
  POST /xrpc/com.atproto.server.updateEmail    — redeem email-update code
  POST /account/revoke                         — revoke one session token
"""

import argparse
import asyncio
import html as html_mod
import json
import logging
import os
import secrets
import time
from pathlib import Path
from typing import Any, Awaitable, Callable
from urllib.parse import urlencode

from argon2 import PasswordHasher
from pydantic import AnyHttpUrl, BaseModel, Field, ValidationError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from starlette.routing import Route

from atrium_credentials import (
    EMAIL_UPDATE,
    PASSWORD_RESET,
    CredentialError,
    SingleUseCredentialVerifier,
    reset_password,
    revoke_session,
    update_email,
)
from atrium_oauth import (
    AuthorizationStateMachine,
    AuthorizeFlowError,
    AuthorizeView,
    Decision,
    Subject,
)
from atrium_store import InMemoryAccountStore, InMemoryAuthorizationRequestStore, load_clients

logger = logging.getLogger("atrium")
audit_logger = logging.getLogger("atrium-audit")

# ---------------------------------------------------------------------------
# Configuration — env vars
# ---------------------------------------------------------------------------
_ISSUER_URL = os.environ.get("ATRIUM_ISSUER_URL", "https://localhost:2583")
_CLIENTS_FILE = Path(os.environ.get("ATRIUM_CLIENTS_FILE", Path(__file__).parent / "clients.yaml"))
_DEV_MODE = os.environ.get("ATRIUM_DEV_MODE", "") in ("1", "true", "yes")
_AUDIT_LOG = Path(os.environ.get("ATRIUM_AUDIT_LOG", Path.home() / ".atrium" / "audit.log"))

SIGNIN_PATH = "/account/signin"
ACCOUNT_PATH = "/account"
SESSION_COOKIE = "atrium-session"
CSRF_TTL = 300  # seconds

SubjectResolver = Callable[[Request], Awaitable[Subject | None]]


def _audit(event: str, **kwargs: Any) -> None:
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1)
    password: str = Field(min_length=1)


class UpdateEmailRequest(BaseModel):
    email: str = Field(min_length=1)
    token: str = Field(min_length=1)
    emailAuthFactor: bool = False


def _input_error(message: str | None = None) -> JSONResponse:
    body = {"error": "InvalidRequest"}
    if message:
        body["message"] = message
    return JSONResponse(body, status_code=400)


async def _flow_error(request: Request, exc: AuthorizeFlowError | CredentialError) -> Response:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse({"error": exc.error, "message": exc.message},
                        status_code=exc.status_code)


def session_subject_resolver(accounts: InMemoryAccountStore) -> SubjectResolver:
    """Resolve the subject from a session token.

    API clients send ``Authorization: Bearer <token>``; browsers (the consent
    form POST included) send the same token in the ``atrium-session`` cookie.
    """

    async def _resolve(request: Request) -> Subject | None:
        auth = request.headers.get("authorization", "")
        if auth.startswith("Bearer "):
            token = auth[7:]
        else:
            token = request.cookies.get(SESSION_COOKIE, "")
        if not token:
            return None
        account = await accounts.lookup_token(token)
        if account is None:
            return None
        return Subject(did=account.did, handle=account.handle)

    return _resolve


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

def create_app(
    machine: AuthorizationStateMachine,
    accounts: InMemoryAccountStore,
    resolve_subject: SubjectResolver | None = None,
    hash_password: Callable[[str], str] = PasswordHasher().hash,
    dev_mode: bool = False,
) -> Starlette:
    resolve_subject = resolve_subject or session_subject_resolver(accounts)
    csrf_tokens: dict[str, float] = {}  # token -> created_at
    password_resets = SingleUseCredentialVerifier(accounts, PASSWORD_RESET)
    email_updates = SingleUseCredentialVerifier(accounts, EMAIL_UPDATE)

    async def authorize_get(request: Request) -> Response:
        request_uri = request.query_params.get("request_uri", "")
        if not request_uri:
            if dev_mode:
                return HTMLResponse(_authorize_page(AuthorizeView(
                    scopes=frozenset({"atproto", "transition:generic"}),
                    app_name="DEV MODE AUTHORIZATION PAGE",
                    request_uri="",
                    handle="dev.atrium.local",
                )))
            return _input_error("no request uri")

        subject = await resolve_subject(request)
        if subject is None:
            return RedirectResponse(
                f"{SIGNIN_PATH}?{urlencode(list(request.query_params.multi_items()))}",
                status_code=303,
            )

        # client_id is optional on the query; when present it must match.
        view = await machine.prepare_view(
            request_uri, subject, request.query_params.get("client_id"),
        )

        now = time.time()
        for stale in [t for t, ts in csrf_tokens.items() if now - ts > CSRF_TTL]:
            del csrf_tokens[stale]
        csrf = secrets.token_urlsafe(32)
        csrf_tokens[csrf] = now
        return HTMLResponse(_authorize_page(view, csrf))

    async def authorize_post(request: Request) -> Response:
        subject = await resolve_subject(request)
        if subject is None:
            return RedirectResponse(SIGNIN_PATH, status_code=303)

        form = await request.form()
        created_at = csrf_tokens.pop(str(form.get("csrf_token", "")), None)
        if created_at is None or time.time() - created_at > CSRF_TTL:
            _audit("csrf_rejected", sub=subject.did)
            return JSONResponse({"error": "invalid_csrf_token"}, status_code=403)

        request_uri = str(form.get("request_uri", ""))
        decision = Decision.from_form(str(form.get("accept_or_reject", "")))

        target = await machine.resolve(request_uri, subject, decision)
        return RedirectResponse(target, status_code=303)

    async def reset_password_route(request: Request) -> Response:
        subject = await resolve_subject(request)
        if subject is None:
            return JSONResponse({"error": "AuthRequired"}, status_code=401)
        try:
            body = ResetPasswordRequest.model_validate(await request.json())
        except (ValidationError, ValueError):
            return _input_error()

        # Hash only once the token is known to be good; redeem re-checks atomically.
        await password_resets.check(subject.did, body.token)
        password_hash = await asyncio.to_thread(hash_password, body.password)
        await reset_password(password_resets, subject.did, body.token, password_hash)
        return Response(status_code=200)

    async def update_email_route(request: Request) -> Response:
        subject = await resolve_subject(request)
        if subject is None:
            return JSONResponse({"error": "AuthRequired"}, status_code=401)
        try:
            body = UpdateEmailRequest.model_validate(await request.json())
        except (ValidationError, ValueError):
            return _input_error()

        await update_email(email_updates, subject.did, body.token, body.email)
        return Response(status_code=200)

    async def revoke_route(request: Request) -> Response:
        subject = await resolve_subject(request)
        if subject is None:
            return RedirectResponse(SIGNIN_PATH, status_code=303)

        form = await request.form()
        await revoke_session(accounts, subject.did, str(form.get("token", "")))
        return RedirectResponse(ACCOUNT_PATH, status_code=303)

    app = Starlette(
        routes=[
            Route("/oauth/authorize", authorize_get, methods=["GET"]),
            Route("/oauth/authorize", authorize_post, methods=["POST"]),
            Route("/xrpc/com.atproto.server.resetPassword", reset_password_route, methods=["POST"]),
            Route("/xrpc/com.atproto.server.updateEmail", update_email_route, methods=["POST"]),
            Route("/account/revoke", revoke_route, methods=["POST"]),
        ],
        exception_handlers={
            AuthorizeFlowError: _flow_error,
            CredentialError: _flow_error,
        },
    )
    app.state.password_resets = password_resets
    app.state.email_updates = email_updates
    return app


# ---------------------------------------------------------------------------
# HTML templates
# ---------------------------------------------------------------------------

def _authorize_page(view: AuthorizeView, csrf_token: str = "") -> str:
    safe_name = html_mod.escape(view.app_name)
    safe_handle = html_mod.escape(view.handle)
    safe_uri = html_mod.escape(view.request_uri, quote=True)
    safe_csrf = html_mod.escape(csrf_token, quote=True)
    scopes = "\n".join(
        f"                <li>{html_mod.escape(s)}</li>" for s in sorted(view.scopes)
    )
    return f"""<!DOCTYPE html>
<html>
<head>
    <title>Atrium — Authorize</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
            background: #0a0a1a; color: #e0e0e0;
            display: flex; justify-content: center; align-items: center;
            min-height: 100vh; margin: 0; }}
        .card {{ background: #1a1a2e; border: 1px solid #2a2a4a; border-radius: 12px;
            padding: 2rem; max-width: 400px; width: 90%;
            box-shadow: 0 4px 24px rgba(0, 0, 0, 0.5); }}
        h1 {{ font-size: 1.3rem; margin: 0 0 0.5rem 0; color: #00d4ff; }}
        .client {{ color: #ff6b9d; font-weight: 600; }}
        .perms {{ background: #12122a; border: 1px solid #2a2a4a; border-radius: 8px;
            padding: 1rem; margin: 1rem 0; font-size: 0.9rem; }}
        .perms li {{ margin: 0.3rem 0; font-family: monospace; }}
        .buttons {{ display: flex; gap: 1rem; margin-top: 1.5rem; }}
        button {{ flex: 1; padding: 0.75rem; border: none; border-radius: 8px;
            font-size: 1rem; cursor: pointer; font-weight: 600; }}
        .accept {{ background: #00d4ff; color: #0a0a1a; }}
        .reject {{ background: #2a2a4a; color: #e0e0e0; }}
    </style>
</head>
<body>
    <div class="card">
        <h1>Atrium</h1>
        <p><span class="client">{safe_name}</span> wants to access your account.</p>
        <p>Signed in as <strong>@{safe_handle}</strong></p>
        <div class="perms">
            <strong>Requested scopes:</strong>
            <ul>
{scopes}
            </ul>
        </div>
        <form method="POST" action="/oauth/authorize">
            <input type="hidden" name="request_uri" value="{safe_uri}">
            <input type="hidden" name="csrf_token" value="{safe_csrf}">
            <div class="buttons">
                <button type="submit" name="accept_or_reject" value="reject" class="reject">Reject</button>
                <button type="submit" name="accept_or_reject" value="accept" class="accept">Accept</button>
            </div>
        </form>
    </div>
</body>
</html>"""


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    # Audit logger — JSON-lines to ~/.atrium/audit.log
    _AUDIT_LOG.parent.mkdir(parents=True, exist_ok=True)
    _audit_handler = logging.FileHandler(_AUDIT_LOG)
    _audit_handler.setFormatter(logging.Formatter("%(message)s"))
    _audit_logger = logging.getLogger("atrium-audit")
    _audit_logger.addHandler(_audit_handler)
    _audit_logger.setLevel(logging.INFO)
    _audit_logger.propagate = False

    parser = argparse.ArgumentParser(description="Atrium authorization server")
    parser.add_argument("--port", type=int, default=2583)
    parser.add_argument("--host", default="127.0.0.1")
    args = parser.parse_args()

    import uvicorn

    accounts = InMemoryAccountStore()
    machine = AuthorizationStateMachine(
        store=InMemoryAuthorizationRequestStore(),
        clients=load_clients(_CLIENTS_FILE),
        issuer=str(AnyHttpUrl(_ISSUER_URL)),
    )
    app = create_app(machine, accounts, dev_mode=_DEV_MODE)

    logger.info(f"atrium: starting HTTP server on {args.host}:{args.port}")
    uvicorn.run(app, host=args.host, port=args.port, log_level="info",
                proxy_headers=True, forwarded_allow_ips="*")
