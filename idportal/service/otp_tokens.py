from __future__ import annotations

import re
from typing import List

from idportal.logging import get_logger
from idportal.service.backend import (
    BackendError,
    BackendErrorKind,
    IdentityBackend,
    OTPToken,
    ProvisionedToken,
)
from idportal.service.errors import (
    BackendUnreachable,
    LoginRequired,
    NotFoundError,
    ValidationError,
)
from idportal.service.session import SessionRecord

logger = get_logger(__name__)

MAX_DESCRIPTION_LENGTH = 64
_TOKEN_ID_RE = re.compile(r"^[A-Za-z0-9_.:-]{1,128}$")


class OTPTokenService:
    """Self-service management of a user's TOTP tokens.

    Every call runs under the user's own backend session, so the directory
    enforces ownership; a rejected session ends the portal session too.
    """

    def __init__(self, backend: IdentityBackend) -> None:
        self.backend = backend

    def _translate(self, exc: BackendError, operation: str, uid: str) -> Exception:
        if exc.kind is BackendErrorKind.INVALID_CREDENTIAL and not exc.unreachable:
            return LoginRequired("session expired")
        if exc.kind is BackendErrorKind.NOT_FOUND:
            return NotFoundError("OTP token not found")
        if exc.kind is BackendErrorKind.POLICY_VIOLATION:
            logger.info("otp_token_rejected", operation=operation, subject=uid, reason=exc.message)
            return ValidationError(exc.message)
        logger.error(
            "backend_call_failed",
            operation=operation,
            subject=uid,
            kind=exc.kind.value,
            unreachable=exc.unreachable,
            error=exc.message,
        )
        return BackendUnreachable()

    @staticmethod
    def _token_id(token_id: str) -> str:
        token_id = (token_id or "").strip()
        if not _TOKEN_ID_RE.match(token_id):
            raise ValidationError("Please choose an OTP token")
        return token_id

    async def list_tokens(self, record: SessionRecord) -> List[OTPToken]:
        try:
            return await self.backend.list_otp_tokens(
                record.backend_session_handle, record.subject
            )
        except BackendError as exc:
            raise self._translate(exc, "list_otp_tokens", record.subject) from exc

    async def add_token(self, record: SessionRecord, description: str = "") -> ProvisionedToken:
        description = (description or "").strip()
        if len(description) > MAX_DESCRIPTION_LENGTH:
            raise ValidationError(
                f"Description must be at most {MAX_DESCRIPTION_LENGTH} characters"
            )
        try:
            provisioned = await self.backend.add_otp_token(
                record.backend_session_handle, record.subject, description
            )
        except BackendError as exc:
            raise self._translate(exc, "add_otp_token", record.subject) from exc
        logger.info(
            "otp_token_added", subject=record.subject, token_id=provisioned.token.token_id
        )
        return provisioned

    async def _set_enabled(self, record: SessionRecord, token_id: str, enabled: bool) -> None:
        token_id = self._token_id(token_id)
        try:
            await self.backend.set_otp_token_enabled(
                record.backend_session_handle, token_id, enabled
            )
        except BackendError as exc:
            raise self._translate(exc, "set_otp_token_enabled", record.subject) from exc
        logger.info(
            "otp_token_enabled" if enabled else "otp_token_disabled",
            subject=record.subject,
            token_id=token_id,
        )

    async def enable_token(self, record: SessionRecord, token_id: str) -> None:
        await self._set_enabled(record, token_id, True)

    async def disable_token(self, record: SessionRecord, token_id: str) -> None:
        await self._set_enabled(record, token_id, False)

    async def remove_token(self, record: SessionRecord, token_id: str) -> None:
        token_id = self._token_id(token_id)
        try:
            await self.backend.remove_otp_token(record.backend_session_handle, token_id)
        except BackendError as exc:
            raise self._translate(exc, "remove_otp_token", record.subject) from exc
        logger.info("otp_token_removed", subject=record.subject, token_id=token_id)
