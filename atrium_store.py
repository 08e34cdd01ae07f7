"""
atrium_store.py — in-memory persistence for Atrium.

All state (authorization requests, accounts, session tokens) is in-memory
and ephemeral. Each store owns one asyncio.Lock; every conditional update
runs its check and its write inside that lock without awaiting in between,
so concurrent callers on the same record are serialized and a cancelled
caller leaves nothing half-written.

Records are copied on the way in and on the way out.
"""

import asyncio
import copy
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

import yaml

from atrium_oauth import (
    AuthorizationParameters,
    AuthorizationRequest,
    ClientMetadata,
    encode_request_uri,
    new_request_id,
)

logger = logging.getLogger("atrium-store")

DEFAULT_REQUEST_TTL = 300  # seconds


# ---------------------------------------------------------------------------
# Authorization requests
# ---------------------------------------------------------------------------

class InMemoryAuthorizationRequestStore:
    def __init__(self) -> None:
        self._requests: dict[str, AuthorizationRequest] = {}
        self._codes: dict[str, str] = {}  # code -> request_id
        self._lock = asyncio.Lock()

    async def create(
        self,
        client_id: str,
        parameters: AuthorizationParameters,
        client_auth_method: str,
        ttl: int = DEFAULT_REQUEST_TTL,
    ) -> str:
        """Persist a fresh pending request and return its request_uri."""
        now = datetime.now(timezone.utc)
        request_id = new_request_id()
        async with self._lock:
            self._requests[request_id] = AuthorizationRequest(
                request_id=request_id,
                client_id=client_id,
                parameters=copy.deepcopy(parameters),
                client_auth_method=client_auth_method,
                expires_at=now + timedelta(seconds=ttl),
                created_at=now,
            )
        logger.info("authorization request created: client=%s id=%s", client_id, request_id)
        return encode_request_uri(request_id)

    async def put(self, auth_req: AuthorizationRequest) -> None:
        async with self._lock:
            self._requests[auth_req.request_id] = copy.deepcopy(auth_req)
            if auth_req.accepted and auth_req.code:
                self._codes[auth_req.code] = auth_req.request_id

    async def get(self, request_id: str) -> AuthorizationRequest | None:
        async with self._lock:
            auth_req = self._requests.get(request_id)
            return copy.deepcopy(auth_req) if auth_req else None

    async def accept(self, request_id: str, subject: str, code: str) -> bool:
        async with self._lock:
            auth_req = self._requests.get(request_id)
            if auth_req is None or auth_req.accepted:
                return False
            auth_req.subject = subject
            auth_req.code = code
            auth_req.accepted = True
            self._codes[code] = request_id
            return True

    async def consume_code(self, code: str) -> AuthorizationRequest | None:
        async with self._lock:
            request_id = self._codes.pop(code, None)
            if request_id is None:
                return None
            return self._requests.pop(request_id, None)

    def __len__(self) -> int:
        return len(self._requests)


# ---------------------------------------------------------------------------
# Client registry (clients.yaml)
# ---------------------------------------------------------------------------

class StaticClientDirectory:
    def __init__(self, clients: dict[str, ClientMetadata] | None = None):
        self.clients = clients or {}

    async def get_client(self, client_id: str) -> ClientMetadata | None:
        return self.clients.get(client_id)


def load_clients(config_path: Path) -> StaticClientDirectory:
    """Load the client registry from a YAML file.

    Expected shape::

        clients:
          https://app.example/client-metadata.json:
            client_name: Example App
            client_uri: https://app.example
            redirect_uris: [https://app.example/callback]
            token_endpoint_auth_method: private_key_jwt
    """
    if not config_path.exists():
        raise SystemExit(f"Client config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "clients" not in raw:
        raise SystemExit(f"Invalid client config: expected top-level 'clients' key in {config_path}")

    clients: dict[str, ClientMetadata] = {}
    for client_id, cfg in (raw["clients"] or {}).items():
        if not isinstance(cfg, dict) or "client_uri" not in cfg:
            raise SystemExit(f"Invalid client '{client_id}' in {config_path}: 'client_uri' is required")
        clients[client_id] = ClientMetadata(
            client_id=client_id,
            client_name=cfg.get("client_name", client_id),
            client_uri=cfg["client_uri"],
            redirect_uris=list(cfg.get("redirect_uris", [])),
            token_endpoint_auth_method=cfg.get("token_endpoint_auth_method", "none"),
        )

    logger.info("loaded %d clients from %s", len(clients), config_path)
    return StaticClientDirectory(clients)


# ---------------------------------------------------------------------------
# Accounts + session tokens
# ---------------------------------------------------------------------------

@dataclass
class Account:
    did: str
    handle: str
    email: str
    password_hash: str = ""
    email_confirmed_at: datetime | None = None
    password_reset_code: str | None = None
    password_reset_code_expires_at: datetime | None = None
    email_update_code: str | None = None
    email_update_code_expires_at: datetime | None = None


class InMemoryAccountStore:
    def __init__(self, accounts: list[Account] | None = None) -> None:
        self._accounts = {a.did: copy.deepcopy(a) for a in accounts or []}
        self._tokens: set[tuple[str, str]] = set()
        self._lock = asyncio.Lock()

    async def add(self, account: Account) -> None:
        async with self._lock:
            self._accounts[account.did] = copy.deepcopy(account)

    async def get(self, did: str) -> Account | None:
        async with self._lock:
            account = self._accounts.get(did)
            return copy.deepcopy(account) if account else None

    async def update(self, did: str, mutate: Callable[[Account], None]) -> Account:
        """Apply ``mutate`` to the stored account as one atomic step.

        ``mutate`` works on a scratch copy; if it raises, the stored record
        is left exactly as it was.
        """
        async with self._lock:
            account = self._accounts.get(did)
            if account is None:
                raise KeyError(did)
            scratch = copy.deepcopy(account)
            mutate(scratch)
            self._accounts[did] = scratch
            return copy.deepcopy(scratch)

    async def add_token(self, did: str, token: str) -> None:
        async with self._lock:
            self._tokens.add((did, token))

    async def lookup_token(self, token: str) -> Account | None:
        async with self._lock:
            for did, stored in self._tokens:
                if stored == token:
                    account = self._accounts.get(did)
                    return copy.deepcopy(account) if account else None
        return None

    async def delete_token(self, did: str, token: str) -> bool:
        async with self._lock:
            if (did, token) not in self._tokens:
                return False
            self._tokens.discard((did, token))
            return True

    async def tokens_for(self, did: str) -> list[str]:
        async with self._lock:
            return sorted(t for d, t in self._tokens if d == did)
