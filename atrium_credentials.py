"""
atrium_credentials.py — single-use, time-bound account credentials.

Password-reset codes, email-update codes and session revocation all follow
the same shape: an already-authenticated account presents a secret, the
secret is checked against what is stored, and on success the secret is
cleared in the same atomic update that applies the payload.
"""

import hmac
import json
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from atrium_store import Account, InMemoryAccountStore

logger = logging.getLogger("atrium-credentials")
audit_logger = logging.getLogger("atrium-audit")

DEFAULT_CODE_TTL = 10 * 60  # 10 minutes

# Crockford-ish base32, no lookalikes.
_CODE_ALPHABET = "ABCDEFGHJKMNPQRSTVWXYZ23456789"


def _audit(event: str, **kwargs: Any) -> None:
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class CredentialError(Exception):
    error = "InvalidToken"
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.error)
        self.message = message or self.error


class NoPendingCredential(CredentialError):
    pass


class TokenMismatch(CredentialError):
    pass


class TokenExpired(CredentialError):
    error = "ExpiredToken"


class SessionNotFound(CredentialError):
    error = "NotFound"


class UnknownAccount(CredentialError):
    error = "AccountNotFound"


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

def generate_credential_code() -> str:
    chars = [secrets.choice(_CODE_ALPHABET) for _ in range(10)]
    return "".join(chars[:5]) + "-" + "".join(chars[5:])


def verify_credential(
    stored_code: str | None,
    stored_expiry: datetime | None,
    supplied_token: str,
    now: datetime | None = None,
) -> None:
    """Raise unless ``supplied_token`` redeems the stored pending credential."""
    if stored_code is None or stored_expiry is None:
        raise NoPendingCredential("no pending credential")
    if not hmac.compare_digest(stored_code.encode(), supplied_token.encode()):
        raise TokenMismatch("token does not match")
    if (now or datetime.now(timezone.utc)) > stored_expiry:
        raise TokenExpired("token has expired")


@dataclass(frozen=True)
class CredentialFields:
    """Names of the Account attributes holding one kind of pending credential."""

    code: str
    expires_at: str


PASSWORD_RESET = CredentialFields("password_reset_code", "password_reset_code_expires_at")
EMAIL_UPDATE = CredentialFields("email_update_code", "email_update_code_expires_at")


class SingleUseCredentialVerifier:
    def __init__(
        self,
        accounts: InMemoryAccountStore,
        fields: CredentialFields,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.accounts = accounts
        self.fields = fields
        self.clock = clock

    async def issue(self, did: str, ttl: int = DEFAULT_CODE_TTL) -> str:
        code = generate_credential_code()
        expires_at = self.clock() + timedelta(seconds=ttl)

        def _set(account: Account) -> None:
            setattr(account, self.fields.code, code)
            setattr(account, self.fields.expires_at, expires_at)

        try:
            await self.accounts.update(did, _set)
        except KeyError as e:
            raise UnknownAccount(f"no account for {did}") from e
        _audit("credential_issued", kind=self.fields.code, sub=did)
        return code

    async def check(self, did: str, supplied_token: str) -> None:
        """Read-only verification, for callers with expensive work before redeem."""
        account = await self.accounts.get(did)
        if account is None:
            raise NoPendingCredential("no pending credential")
        verify_credential(
            getattr(account, self.fields.code),
            getattr(account, self.fields.expires_at),
            supplied_token,
            self.clock(),
        )

    async def redeem(
        self,
        did: str,
        supplied_token: str,
        apply: Callable[[Account], None],
    ) -> Account:
        """Verify ``supplied_token``, clear the credential and apply the payload.

        Verification runs against the stored record inside the same atomic
        update that clears it, so a token can be redeemed at most once.
        """
        now = self.clock()

        def _redeem(account: Account) -> None:
            verify_credential(
                getattr(account, self.fields.code),
                getattr(account, self.fields.expires_at),
                supplied_token,
                now,
            )
            setattr(account, self.fields.code, None)
            setattr(account, self.fields.expires_at, None)
            apply(account)

        try:
            account = await self.accounts.update(did, _redeem)
        except KeyError as e:
            raise NoPendingCredential("no pending credential") from e
        except CredentialError as e:
            _audit("credential_rejected", kind=self.fields.code, sub=did, reason=e.error)
            raise

        _audit("credential_redeemed", kind=self.fields.code, sub=did)
        return account


# ---------------------------------------------------------------------------
# Instantiations
# ---------------------------------------------------------------------------

async def reset_password(
    verifier: SingleUseCredentialVerifier,
    did: str,
    token: str,
    password_hash: str,
) -> Account:
    def _apply(account: Account) -> None:
        account.password_hash = password_hash

    return await verifier.redeem(did, token, _apply)


async def update_email(
    verifier: SingleUseCredentialVerifier,
    did: str,
    token: str,
    email: str,
) -> Account:
    def _apply(account: Account) -> None:
        account.email = email
        account.email_confirmed_at = None

    return await verifier.redeem(did, token, _apply)


async def revoke_session(accounts: InMemoryAccountStore, did: str, token: str) -> None:
    if not await accounts.delete_token(did, token):
        logger.info("revoke: no session for did=%s", did)
        raise SessionNotFound("no matching session")
    _audit("session_revoked", sub=did)
