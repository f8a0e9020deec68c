"""Single-purpose, time-limited bearer tokens for emailed links.

A token is a Fernet envelope (AES-CBC + HMAC-SHA256 with an embedded issue
timestamp) around ``{"sub", "contact", "purpose", "nonce"}``, rendered as
url-safe base64 without padding so it can travel as a path segment. Replay,
flooding and brute-force state lives in the shared marker cache:

- ``<prefix>:issued:<purpose>:<subject>`` nonce of the one outstanding token
- ``<prefix>:used:<digest>`` consumed tokens
- ``<prefix>:attempts:<digest>`` failed redemption attempts

A token is only redeemable while the issued marker still holds its nonce, so
releasing the marker revokes the token and a newer issuance supersedes it.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import math
import re
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from cryptography.fernet import Fernet, InvalidToken

from idportal.logging import get_logger
from idportal.service.errors import (
    TokenAlreadyIssued,
    TokenAlreadyUsed,
    TokenExpired,
    TokenMalformed,
    TokenTooManyAttempts,
    TokenWrongPurpose,
)
from idportal.service.secret_store import SecretStore
from idportal.storage.marker_cache import MarkerCache

logger = get_logger(__name__)

_TOKEN_ALPHABET = re.compile(r"[A-Za-z0-9_-]+")
# Tokens carry a short JSON payload; anything longer is not one of ours
MAX_TOKEN_LENGTH = 1024
# Issue timestamps further in the future than this cannot come from us
_MAX_CLOCK_SKEW = 60


class TokenPurpose(str, Enum):
    PASSWORD_RESET = "password-reset"
    ACCOUNT_VERIFY = "account-verify"


@dataclass(frozen=True)
class ActionToken:
    subject: str
    contact: str
    purpose: TokenPurpose
    issued_at: int
    max_age: int
    attempts: int = 0
    nonce: str = ""

    @property
    def expires_at(self) -> int:
        return self.issued_at + self.max_age


class ActionTokenService:
    """Issue, verify and consume action tokens.

    Every cache failure propagates as ``CacheUnavailable``: the anti-replay
    checks fail closed.
    """

    def __init__(
        self,
        cache: MarkerCache,
        secrets: SecretStore,
        *,
        max_age: int = 3600,
        max_attempts: int = 10,
        prefix: str = "token",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.max_age = max_age
        self.max_attempts = max_attempts
        self.prefix = prefix
        self._fernet = Fernet(secrets.token_key)
        self._clock = clock

    def _issued_key(self, purpose: TokenPurpose, subject: str) -> str:
        return f"{self.prefix}:issued:{purpose.value}:{subject}"

    def _used_key(self, digest: str) -> str:
        return f"{self.prefix}:used:{digest}"

    def _attempts_key(self, digest: str) -> str:
        return f"{self.prefix}:attempts:{digest}"

    @staticmethod
    def _digest(bearer: str) -> str:
        return hashlib.sha256(bearer.encode("ascii")).hexdigest()

    def _remaining_ttl(self, token: ActionToken) -> int:
        # +1 so markers never lapse before the token itself does
        return max(1, math.ceil(token.expires_at - self._clock()) + 1)

    async def issue(self, subject: str, contact: str, purpose: TokenPurpose) -> str:
        """Mint a token for ``(subject, purpose)``.

        Raises ``TokenAlreadyIssued`` while a previous token for the same pair
        is outstanding.
        """
        purpose = TokenPurpose(purpose)
        if not subject:
            raise ValueError("subject is required")
        nonce = secrets.token_urlsafe(16)
        issued = await self.cache.set_nx(
            self._issued_key(purpose, subject), nonce, self.max_age + 1
        )
        if not issued:
            logger.warning("token_already_issued", subject=subject, purpose=purpose.value)
            raise TokenAlreadyIssued()

        payload = json.dumps(
            {"sub": subject, "contact": contact, "purpose": purpose.value, "nonce": nonce},
            separators=(",", ":"),
        ).encode("utf-8")
        sealed = self._fernet.encrypt_at_time(payload, int(self._clock()))
        bearer = sealed.decode("ascii").rstrip("=")
        logger.info("token_issued", subject=subject, purpose=purpose.value)
        return bearer

    def _decode(self, bearer: str) -> ActionToken:
        """Strictly decode and authenticate a bearer string.

        The re-encode comparison rejects strings that differ from the
        canonical encoding only in ignored trailing bits.
        """
        if (
            not isinstance(bearer, str)
            or not bearer
            or len(bearer) > MAX_TOKEN_LENGTH
            or not _TOKEN_ALPHABET.fullmatch(bearer)
        ):
            raise TokenMalformed()
        padded = bearer + "=" * (-len(bearer) % 4)
        try:
            raw = base64.b64decode(padded, altchars=b"-_", validate=True)
        except (binascii.Error, ValueError) as exc:
            raise TokenMalformed() from exc
        if base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=") != bearer:
            raise TokenMalformed()

        try:
            payload = self._fernet.decrypt(padded)
            issued_at = self._fernet.extract_timestamp(padded)
        except InvalidToken as exc:
            raise TokenMalformed() from exc

        try:
            claims = json.loads(payload)
            subject = claims["sub"]
            contact = claims["contact"]
            purpose = TokenPurpose(claims["purpose"])
            nonce = claims["nonce"]
        except (ValueError, KeyError, TypeError) as exc:
            raise TokenMalformed() from exc
        if not isinstance(subject, str) or not subject or not isinstance(contact, str):
            raise TokenMalformed()
        if not isinstance(nonce, str) or not nonce:
            raise TokenMalformed()
        if issued_at - self._clock() > _MAX_CLOCK_SKEW:
            raise TokenMalformed()

        return ActionToken(
            subject=subject,
            contact=contact,
            purpose=purpose,
            issued_at=issued_at,
            max_age=self.max_age,
            nonce=nonce,
        )

    async def _is_current(self, token: ActionToken) -> bool:
        current = await self.cache.get(self._issued_key(token.purpose, token.subject))
        return current is not None and hmac.compare_digest(current, token.nonce)

    async def verify(self, bearer: str, purpose: TokenPurpose) -> ActionToken:
        """Check a token for ``purpose``.

        Failure order: malformed, already used, expired, wrong purpose,
        revoked or superseded, too many attempts.
        """
        purpose = TokenPurpose(purpose)
        token = self._decode(bearer)
        digest = self._digest(bearer)

        if await self.cache.get(self._used_key(digest)) is not None:
            logger.warning(
                "token_reuse_attempt", subject=token.subject, purpose=token.purpose.value
            )
            raise TokenAlreadyUsed()

        if self._clock() - token.issued_at > self.max_age:
            raise TokenExpired()

        if token.purpose is not purpose:
            logger.warning(
                "token_wrong_purpose",
                subject=token.subject,
                purpose=token.purpose.value,
                expected=purpose.value,
            )
            raise TokenWrongPurpose()

        if not await self._is_current(token):
            logger.warning(
                "token_superseded", subject=token.subject, purpose=token.purpose.value
            )
            raise TokenAlreadyUsed()

        raw_attempts = await self.cache.get(self._attempts_key(digest))
        try:
            attempts = int(raw_attempts) if raw_attempts is not None else 0
        except ValueError:
            attempts = self.max_attempts
        if attempts >= self.max_attempts:
            logger.warning(
                "token_attempts_exceeded", subject=token.subject, attempts=attempts
            )
            raise TokenTooManyAttempts()

        return ActionToken(
            subject=token.subject,
            contact=token.contact,
            purpose=token.purpose,
            issued_at=token.issued_at,
            max_age=token.max_age,
            attempts=attempts,
            nonce=token.nonce,
        )

    async def consume(self, bearer: str) -> ActionToken:
        """Mark a token as used; call only after the protected action committed.

        The used marker is written with SETNX, so of two concurrent consumers
        exactly one succeeds. The issued marker is released afterwards, but
        only while it still names this token, so a fresh token may be
        requested without disturbing a newer one.
        """
        token = self._decode(bearer)
        digest = self._digest(bearer)
        marked = await self.cache.set_nx(
            self._used_key(digest), "1", self._remaining_ttl(token)
        )
        if not marked:
            logger.warning(
                "token_double_consume", subject=token.subject, purpose=token.purpose.value
            )
            raise TokenAlreadyUsed()
        released = await self.cache.delete_if_equal(
            self._issued_key(token.purpose, token.subject), token.nonce
        )
        if not released:
            logger.warning(
                "token_consumed_after_supersede",
                subject=token.subject,
                purpose=token.purpose.value,
            )
        await self.cache.delete(self._attempts_key(digest))
        logger.info("token_consumed", subject=token.subject, purpose=token.purpose.value)
        return token

    async def record_failed_attempt(self, bearer: str) -> int:
        """Count a failed redemption; ``verify`` enforces the ceiling."""
        token = self._decode(bearer)
        key = self._attempts_key(self._digest(bearer))
        attempts = await self.cache.incr(key)
        if attempts == 1:
            await self.cache.expire(key, self._remaining_ttl(token))
        logger.info(
            "token_failed_attempt",
            subject=token.subject,
            purpose=token.purpose.value,
            attempts=attempts,
        )
        return attempts

    async def release(self, subject: str, purpose: TokenPurpose) -> None:
        """Revoke the outstanding token for ``(subject, purpose)``.

        Used when the email carrying a token bounced. Dropping the issued
        marker invalidates every token minted under it and lets a fresh one
        be requested.
        """
        purpose = TokenPurpose(purpose)
        await self.cache.delete(self._issued_key(purpose, subject))
        logger.info("token_released", subject=subject, purpose=purpose.value)
