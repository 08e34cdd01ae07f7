"""
atrium_oauth.py — authorization-code handshake for Atrium.

Turns a pending authorization request (created upstream by the pushed
authorization request endpoint) into either a rejection redirect or a
single-use authorization code bound to one subject and one client.

Security layers:
  - request_uri tokens are decoded strictly; malformed input never
    reaches the store.
  - The client id echoed by the browser must match the stored one.
  - Accept is a single conditional store update guarded on accepted=False,
    so a double-submitted approval can never mint two codes.
  - Codes carry 256 bits of entropy and are consumed exactly once.
  - private_key_jwt clients get query-string delivery, everyone else
    gets fragment delivery.
"""

import enum
import hmac
import json
import logging
import re
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Protocol
from urllib.parse import urlencode

logger = logging.getLogger("atrium-oauth")
audit_logger = logging.getLogger("atrium-audit")

REQUEST_URI_PREFIX = "urn:ietf:params:oauth:request_uri:req-"
CODE_PREFIX = "cod-"
PRIVATE_KEY_JWT = "private_key_jwt"

_REQUEST_ID_RE = re.compile(r"[0-9a-f]{32}")


def _audit(event: str, **kwargs: Any) -> None:
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class AuthorizeFlowError(Exception):
    """Base class for handshake failures.

    ``error`` is the machine-readable kind, ``status_code`` the HTTP status
    the caller should answer with.
    """

    error = "InvalidRequest"
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.error)
        self.message = message or self.error


class MalformedToken(AuthorizeFlowError):
    error = "MalformedToken"


class InvalidRequestReference(AuthorizeFlowError):
    error = "InvalidRequestReference"


class NotFound(AuthorizeFlowError):
    error = "NotFound"


class ClientMismatch(AuthorizeFlowError):
    error = "ClientMismatch"


class UpstreamResolutionError(AuthorizeFlowError):
    error = "UpstreamResolutionError"
    status_code = 500


class RequestExpired(AuthorizeFlowError):
    error = "RequestExpired"


class AlreadyResolved(AuthorizeFlowError):
    error = "AlreadyResolved"


class PersistenceError(AuthorizeFlowError):
    error = "InternalServerError"
    status_code = 500


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

class Decision(enum.Enum):
    ACCEPT = "accept"
    REJECT = "reject"

    @classmethod
    def from_form(cls, value: str) -> "Decision":
        # Only an explicit reject declines.
        if value == cls.REJECT.value:
            return cls.REJECT
        return cls.ACCEPT


@dataclass
class AuthorizationParameters:
    scope: str
    state: str
    redirect_uri: str
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    response_mode: str | None = None


@dataclass
class AuthorizationRequest:
    request_id: str
    client_id: str
    parameters: AuthorizationParameters
    client_auth_method: str
    expires_at: datetime
    subject: str | None = None
    code: str | None = None
    accepted: bool = False
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class ClientMetadata:
    client_id: str
    client_name: str
    client_uri: str
    redirect_uris: list[str] = field(default_factory=list)
    token_endpoint_auth_method: str = "none"


@dataclass(frozen=True)
class Subject:
    did: str
    handle: str


@dataclass(frozen=True)
class AuthorizeView:
    scopes: frozenset[str]
    app_name: str
    request_uri: str
    handle: str


class AuthorizationRequestStore(Protocol):
    async def get(self, request_id: str) -> AuthorizationRequest | None: ...

    async def accept(self, request_id: str, subject: str, code: str) -> bool:
        """Set subject/code/accepted iff the record is still unaccepted."""
        ...

    async def consume_code(self, code: str) -> AuthorizationRequest | None: ...


class ClientDirectory(Protocol):
    async def get_client(self, client_id: str) -> ClientMetadata | None: ...


# ---------------------------------------------------------------------------
# request_uri codec
# ---------------------------------------------------------------------------

def new_request_id() -> str:
    return secrets.token_hex(16)


def encode_request_uri(request_id: str) -> str:
    if not _REQUEST_ID_RE.fullmatch(request_id):
        raise ValueError(f"not a valid request id: {request_id!r}")
    return REQUEST_URI_PREFIX + request_id


def decode_request_uri(request_uri: str) -> str:
    if not request_uri.startswith(REQUEST_URI_PREFIX):
        raise MalformedToken("request_uri has an unexpected format")
    request_id = request_uri[len(REQUEST_URI_PREFIX):]
    if not _REQUEST_ID_RE.fullmatch(request_id):
        raise MalformedToken("request_uri has an unexpected format")
    return request_id


# ---------------------------------------------------------------------------
# Code issuer + redirect encoder
# ---------------------------------------------------------------------------

def generate_code() -> str:
    return CODE_PREFIX + secrets.token_hex(32)


def build_redirect(
    redirect_uri: str,
    *,
    state: str,
    issuer: str,
    code: str,
    client_auth_method: str,
) -> str:
    query = urlencode([("state", state), ("iss", issuer), ("code", code)], safe=":/")
    separator = "?" if client_auth_method == PRIVATE_KEY_JWT else "#"
    return redirect_uri + separator + query


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class AuthorizationStateMachine:
    """Drives a pending request from Presented to Accepted or Rejected.

    The store and client directory are injected; the authenticated subject
    is passed explicitly to every operation.
    """

    def __init__(
        self,
        store: AuthorizationRequestStore,
        clients: ClientDirectory,
        issuer: str,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.clients = clients
        self.issuer = issuer.rstrip("/")
        self.clock = clock

    async def _load(self, request_uri: str) -> AuthorizationRequest:
        try:
            request_id = decode_request_uri(request_uri)
        except MalformedToken as e:
            raise InvalidRequestReference(e.message) from e

        auth_req = await self.store.get(request_id)
        if auth_req is None:
            raise NotFound("no authorization request for the supplied request_uri")
        return auth_req

    async def _resolve_client(self, client_id: str) -> ClientMetadata:
        try:
            client = await self.clients.get_client(client_id)
        except Exception as e:
            logger.error("client lookup failed: client=%s error=%s", client_id, e)
            raise UpstreamResolutionError(f"could not resolve client {client_id}") from e
        if client is None:
            raise UpstreamResolutionError(f"could not resolve client {client_id}")
        return client

    async def prepare_view(
        self,
        request_uri: str,
        subject: Subject,
        client_id: str | None = None,
    ) -> AuthorizeView:
        auth_req = await self._load(request_uri)

        if client_id is not None and client_id != auth_req.client_id:
            _audit("authorize_client_mismatch", request_id=auth_req.request_id,
                   stored_client_id=auth_req.client_id, supplied_client_id=client_id,
                   sub=subject.did)
            logger.warning("client id mismatch for request %s", auth_req.request_id)
            raise ClientMismatch(
                "client id does not match the client id for the supplied request"
            )

        client = await self._resolve_client(auth_req.client_id)

        return AuthorizeView(
            scopes=frozenset(auth_req.parameters.scope.split()),
            app_name=client.client_name,
            request_uri=request_uri,
            handle=subject.handle,
        )

    async def resolve(
        self,
        request_uri: str,
        subject: Subject,
        decision: Decision,
    ) -> str:
        auth_req = await self._load(request_uri)
        client = await self._resolve_client(auth_req.client_id)

        if decision is Decision.REJECT:
            _audit("authorize_rejected", client_id=auth_req.client_id,
                   request_id=auth_req.request_id, sub=subject.did)
            return client.client_uri

        if self.clock() > auth_req.expires_at:
            raise RequestExpired("the request has expired")

        if auth_req.subject is not None or auth_req.code is not None:
            raise AlreadyResolved("this request was already authorized")

        code = generate_code()
        try:
            updated = await self.store.accept(auth_req.request_id, subject.did, code)
        except Exception as e:
            logger.error("error updating authorization request %s: %s",
                         auth_req.request_id, e)
            raise PersistenceError() from e
        if not updated:
            raise AlreadyResolved("this request was already authorized")

        _audit("authorize_approved", client_id=auth_req.client_id,
               request_id=auth_req.request_id, sub=subject.did)

        return build_redirect(
            auth_req.parameters.redirect_uri,
            state=auth_req.parameters.state,
            issuer=self.issuer,
            code=code,
            client_auth_method=auth_req.client_auth_method,
        )

    async def consume_code(self, code: str, client_id: str) -> AuthorizationRequest:
        """Redeem an issued code for the token endpoint. Works at most once."""
        if not code.startswith(CODE_PREFIX):
            raise NotFound("unknown or already used code")

        auth_req = await self.store.consume_code(code)
        if auth_req is None:
            raise NotFound("unknown or already used code")

        if not hmac.compare_digest(auth_req.client_id.encode(), client_id.encode()):
            _audit("code_client_mismatch", request_id=auth_req.request_id,
                   supplied_client_id=client_id)
            raise ClientMismatch("code was not issued to this client")

        if self.clock() > auth_req.expires_at:
            raise RequestExpired("the code has expired")

        _audit("code_consumed", client_id=client_id, request_id=auth_req.request_id)
        return auth_req
