"""Tests for the HTTP surface in server.py."""
import re
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from atrium_oauth import (
    PRIVATE_KEY_JWT,
    AuthorizationParameters,
    AuthorizationRequest,
    AuthorizationStateMachine,
    ClientMetadata,
    encode_request_uri,
)
from atrium_store import (
    Account,
    InMemoryAccountStore,
    InMemoryAuthorizationRequestStore,
    StaticClientDirectory,
)
from server import create_app

ISSUER = "https://id.example"
CLIENT_ID = "https://app.example/client-metadata.json"
REQUEST_ID = "0123456789abcdef0123456789abcdef"
REQUEST_URI = encode_request_uri(REQUEST_ID)
DID = "did:plc:alice"
AUTH = {"Authorization": "Bearer session-tok"}


def _make_request(expires_in=300):
    return AuthorizationRequest(
        request_id=REQUEST_ID,
        client_id=CLIENT_ID,
        parameters=AuthorizationParameters(
            scope="atproto transition:generic",
            state="xyz123",
            redirect_uri="https://app.example/callback",
        ),
        client_auth_method=PRIVATE_KEY_JWT,
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    )


class _Env:
    def __init__(self, dev_mode=False):
        self.requests = InMemoryAuthorizationRequestStore()
        self.accounts = InMemoryAccountStore([Account(
            did=DID, handle="alice.test", email="alice@old.example",
            password_hash="old-hash",
        )])
        clients = StaticClientDirectory({
            CLIENT_ID: ClientMetadata(
                client_id=CLIENT_ID, client_name="Example <App>",
                client_uri="https://app.example",
            ),
        })
        self.machine = AuthorizationStateMachine(self.requests, clients, ISSUER)
        self.hashed: list[str] = []
        self.app = create_app(
            self.machine, self.accounts,
            hash_password=self._hash,
            dev_mode=dev_mode,
        )

    def _hash(self, password):
        self.hashed.append(password)
        return f"hashed:{password}"

    def client(self, cookies=None):
        return httpx.AsyncClient(
            transport=httpx.ASGITransport(app=self.app),
            base_url="http://testserver",
            cookies=cookies,
        )

    async def seed(self, expires_in=300):
        await self.requests.put(_make_request(expires_in))
        await self.accounts.add_token(DID, "session-tok")


@pytest.fixture
def env():
    return _Env()


# ---------------------------------------------------------------------------
# GET /oauth/authorize
# ---------------------------------------------------------------------------

class TestAuthorizeGet:
    @pytest.mark.asyncio
    async def test_renders_consent_page(self, env):
        await env.seed()
        async with env.client() as client:
            resp = await client.get("/oauth/authorize", headers=AUTH, params={
                "request_uri": REQUEST_URI, "client_id": CLIENT_ID,
            })
        assert resp.status_code == 200
        assert "Example &lt;App&gt;" in resp.text
        assert "alice.test" in resp.text
        assert "transition:generic" in resp.text
        assert f'value="{REQUEST_URI}"' in resp.text

    @pytest.mark.asyncio
    async def test_unauthenticated_redirects_to_signin(self, env):
        await env.seed()
        async with env.client() as client:
            resp = await client.get("/oauth/authorize", params={"request_uri": REQUEST_URI})
        assert resp.status_code == 303
        location = urlparse(resp.headers["location"])
        assert location.path == "/account/signin"
        assert parse_qs(location.query)["request_uri"] == [REQUEST_URI]

    @pytest.mark.asyncio
    async def test_missing_request_uri(self, env):
        async with env.client() as client:
            resp = await client.get("/oauth/authorize", headers=AUTH)
        assert resp.status_code == 400
        assert resp.json()["message"] == "no request uri"

    @pytest.mark.asyncio
    async def test_dev_mode_page(self):
        env = _Env(dev_mode=True)
        async with env.client() as client:
            resp = await client.get("/oauth/authorize")
        assert resp.status_code == 200
        assert "DEV MODE AUTHORIZATION PAGE" in resp.text

    @pytest.mark.asyncio
    async def test_client_mismatch(self, env):
        await env.seed()
        async with env.client() as client:
            resp = await client.get("/oauth/authorize", headers=AUTH, params={
                "request_uri": REQUEST_URI, "client_id": "https://evil.example",
            })
        assert resp.status_code == 400
        assert resp.json()["error"] == "ClientMismatch"

    @pytest.mark.asyncio
    async def test_malformed_request_uri(self, env):
        await env.seed()
        async with env.client() as client:
            resp = await client.get("/oauth/authorize", headers=AUTH,
                                    params={"request_uri": "garbage"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "InvalidRequestReference"


# ---------------------------------------------------------------------------
# POST /oauth/authorize
# ---------------------------------------------------------------------------

_CSRF_RE = re.compile(r'name="csrf_token" value="([^"]+)"')


async def _csrf(client, headers=AUTH):
    resp = await client.get("/oauth/authorize", headers=headers,
                            params={"request_uri": REQUEST_URI})
    assert resp.status_code == 200
    return _CSRF_RE.search(resp.text).group(1)


class TestAuthorizePost:
    @pytest.mark.asyncio
    async def test_accept_redirects_with_code(self, env):
        await env.seed()
        async with env.client() as client:
            resp = await client.post("/oauth/authorize", headers=AUTH, data={
                "request_uri": REQUEST_URI, "accept_or_reject": "accept",
                "csrf_token": await _csrf(client),
            })
        assert resp.status_code == 303
        location = resp.headers["location"]
        assert location.startswith(
            "https://app.example/callback?state=xyz123&iss=https://id.example&code=cod-"
        )
        assert (await env.requests.get(REQUEST_ID)).subject == DID

    @pytest.mark.asyncio
    async def test_reject_redirects_to_client_uri(self, env):
        await env.seed()
        async with env.client() as client:
            resp = await client.post("/oauth/authorize", headers=AUTH, data={
                "request_uri": REQUEST_URI, "accept_or_reject": "reject",
                "csrf_token": await _csrf(client),
            })
        assert resp.status_code == 303
        assert resp.headers["location"] == "https://app.example"

    @pytest.mark.asyncio
    async def test_replay_is_rejected(self, env):
        await env.seed()
        form = {"request_uri": REQUEST_URI, "accept_or_reject": "accept"}
        async with env.client() as client:
            first = await client.post("/oauth/authorize", headers=AUTH,
                                      data={**form, "csrf_token": await _csrf(client)})
            second = await client.post("/oauth/authorize", headers=AUTH,
                                       data={**form, "csrf_token": await _csrf(client)})
        assert first.status_code == 303
        assert second.status_code == 400
        assert second.json()["error"] == "AlreadyResolved"

    @pytest.mark.asyncio
    async def test_expired(self, env):
        await env.seed(expires_in=-1)
        async with env.client() as client:
            resp = await client.post("/oauth/authorize", headers=AUTH, data={
                "request_uri": REQUEST_URI, "accept_or_reject": "accept",
                "csrf_token": await _csrf(client),
            })
        assert resp.status_code == 400
        assert resp.json()["error"] == "RequestExpired"

    @pytest.mark.asyncio
    async def test_unauthenticated(self, env):
        async with env.client() as client:
            resp = await client.post("/oauth/authorize", data={"request_uri": REQUEST_URI})
        assert resp.status_code == 303
        assert resp.headers["location"] == "/account/signin"

    @pytest.mark.asyncio
    async def test_missing_csrf_token(self, env):
        await env.seed()
        async with env.client() as client:
            resp = await client.post("/oauth/authorize", headers=AUTH, data={
                "request_uri": REQUEST_URI, "accept_or_reject": "accept",
            })
        assert resp.status_code == 403
        assert resp.json()["error"] == "invalid_csrf_token"
        assert (await env.requests.get(REQUEST_ID)).accepted is False

    @pytest.mark.asyncio
    async def test_csrf_token_single_use(self, env):
        await env.seed()
        async with env.client() as client:
            csrf = await _csrf(client)
            first = await client.post("/oauth/authorize", headers=AUTH, data={
                "request_uri": REQUEST_URI, "accept_or_reject": "reject", "csrf_token": csrf,
            })
            second = await client.post("/oauth/authorize", headers=AUTH, data={
                "request_uri": REQUEST_URI, "accept_or_reject": "accept", "csrf_token": csrf,
            })
        assert first.status_code == 303
        assert second.status_code == 403
        assert (await env.requests.get(REQUEST_ID)).accepted is False

    @pytest.mark.asyncio
    async def test_browser_form_with_session_cookie(self, env):
        await env.seed()
        async with env.client(cookies={"atrium-session": "session-tok"}) as client:
            csrf = await _csrf(client, headers={})
            resp = await client.post("/oauth/authorize", data={
                "request_uri": REQUEST_URI, "accept_or_reject": "accept", "csrf_token": csrf,
            })
        assert resp.status_code == 303
        assert "code=cod-" in resp.headers["location"]
        assert (await env.requests.get(REQUEST_ID)).subject == DID


# ---------------------------------------------------------------------------
# Credential endpoints
# ---------------------------------------------------------------------------

class TestResetPassword:
    @pytest.mark.asyncio
    async def test_reset(self, env):
        await env.seed()
        code = await env.app.state.password_resets.issue(DID)
        async with env.client() as client:
            resp = await client.post("/xrpc/com.atproto.server.resetPassword", headers=AUTH,
                                     json={"token": code, "password": "hunter2"})
            again = await client.post("/xrpc/com.atproto.server.resetPassword", headers=AUTH,
                                      json={"token": code, "password": "hunter3"})
        assert resp.status_code == 200
        assert (await env.accounts.get(DID)).password_hash == "hashed:hunter2"
        assert again.status_code == 400
        assert again.json()["error"] == "InvalidToken"
        assert env.hashed == ["hunter2"]

    @pytest.mark.asyncio
    async def test_bad_token_without_pending_credential_skips_hashing(self, env):
        await env.seed()
        async with env.client() as client:
            for _ in range(5):
                resp = await client.post("/xrpc/com.atproto.server.resetPassword", headers=AUTH,
                                         json={"token": "WRONG", "password": "hunter2"})
                assert resp.status_code == 400
                assert resp.json()["error"] == "InvalidToken"
        assert env.hashed == []

    @pytest.mark.asyncio
    async def test_wrong_token_skips_hashing(self, env):
        await env.seed()
        code = await env.app.state.password_resets.issue(DID)
        async with env.client() as client:
            resp = await client.post("/xrpc/com.atproto.server.resetPassword", headers=AUTH,
                                     json={"token": "WRONG-TOKEN", "password": "hunter2"})
        assert resp.status_code == 400
        assert env.hashed == []
        account = await env.accounts.get(DID)
        assert account.password_hash == "old-hash"
        assert account.password_reset_code == code

    @pytest.mark.asyncio
    async def test_missing_fields(self, env):
        await env.seed()
        async with env.client() as client:
            resp = await client.post("/xrpc/com.atproto.server.resetPassword", headers=AUTH,
                                     json={"token": "ABCDE-FGHJK"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "InvalidRequest"

    @pytest.mark.asyncio
    async def test_requires_auth(self, env):
        async with env.client() as client:
            resp = await client.post("/xrpc/com.atproto.server.resetPassword",
                                     json={"token": "x", "password": "y"})
        assert resp.status_code == 401


class TestUpdateEmail:
    @pytest.mark.asyncio
    async def test_update(self, env):
        await env.seed()
        code = await env.app.state.email_updates.issue(DID)
        async with env.client() as client:
            resp = await client.post("/xrpc/com.atproto.server.updateEmail", headers=AUTH,
                                     json={"token": code, "email": "alice@new.example"})
        assert resp.status_code == 200
        assert (await env.accounts.get(DID)).email == "alice@new.example"

    @pytest.mark.asyncio
    async def test_expired_token(self, env):
        await env.seed()
        code = await env.app.state.email_updates.issue(DID, ttl=-1)
        async with env.client() as client:
            resp = await client.post("/xrpc/com.atproto.server.updateEmail", headers=AUTH,
                                     json={"token": code, "email": "alice@new.example"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "ExpiredToken"


class TestRevoke:
    @pytest.mark.asyncio
    async def test_revoke_other_session(self, env):
        await env.seed()
        await env.accounts.add_token(DID, "laptop-tok")
        async with env.client() as client:
            resp = await client.post("/account/revoke", headers=AUTH, data={"token": "laptop-tok"})
        assert resp.status_code == 303
        assert resp.headers["location"] == "/account"
        assert await env.accounts.tokens_for(DID) == ["session-tok"]

    @pytest.mark.asyncio
    async def test_unknown_session(self, env):
        await env.seed()
        async with env.client() as client:
            resp = await client.post("/account/revoke", headers=AUTH, data={"token": "nope"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "NotFound"
