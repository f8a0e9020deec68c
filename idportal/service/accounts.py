"""Self-service account flows driven by emailed action tokens."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from idportal.logging import get_logger
from idportal.service.backend import (
    BackendError,
    BackendErrorKind,
    IdentityBackend,
    UserRecord,
)
from idportal.service.email import Mailer
from idportal.service.errors import (
    BackendUnreachable,
    ChallengeFailed,
    PasswordPolicyError,
    TokenAlreadyIssued,
    TokenError,
    ValidationError,
)
from idportal.service.password import validate_password
from idportal.service.tokens import ActionToken, ActionTokenService, TokenPurpose

logger = get_logger(__name__)


@dataclass(frozen=True)
class ResetContext:
    uid: str
    otp_required: bool


class AccountService:
    """Forgot-password, reset and account-verification flows.

    Requests naming an account never reveal whether the account exists:
    every outcome short of an infrastructure failure looks like success.
    Token failures all surface as the same ``TokenError`` (404).
    """

    def __init__(
        self,
        tokens: ActionTokenService,
        backend: IdentityBackend,
        mailer: Mailer,
        *,
        link_base: str,
        block_users: Iterable[str] = (),
        min_password_length: int = 8,
        min_password_classes: int = 2,
    ) -> None:
        self.tokens = tokens
        self.backend = backend
        self.mailer = mailer
        self.link_base = link_base.rstrip("/")
        self.block_users = frozenset(block_users)
        self.min_password_length = min_password_length
        self.min_password_classes = min_password_classes

    def _link(self, path: str) -> str:
        return f"{self.link_base}{path}"

    def _mail_vars(self, user: UserRecord, link: str) -> dict:
        return {
            "name": user.display_name,
            "uid": user.uid,
            "link": link,
            "expires_minutes": max(1, self.tokens.max_age // 60),
        }

    async def _lookup_for_request(self, uid: str, flow: str) -> UserRecord | None:
        if uid in self.block_users:
            logger.warning(f"{flow}_ignored", subject=uid, reason="blocked")
            return None
        try:
            return await self.backend.lookup_user(uid)
        except BackendError as exc:
            if exc.kind is BackendErrorKind.NOT_FOUND:
                logger.info(f"{flow}_ignored", subject=uid, reason="unknown_user")
                return None
            logger.error(
                "backend_call_failed", operation="lookup_user", subject=uid, error=exc.message
            )
            raise BackendUnreachable() from exc

    async def _token_user(self, token: ActionToken) -> UserRecord:
        try:
            return await self.backend.lookup_user(token.subject)
        except BackendError as exc:
            if exc.kind is BackendErrorKind.NOT_FOUND:
                logger.warning("token_subject_missing", subject=token.subject)
                raise TokenError() from exc
            logger.error(
                "backend_call_failed",
                operation="lookup_user",
                subject=token.subject,
                error=exc.message,
            )
            raise BackendUnreachable() from exc

    async def _issue_and_mail(
        self, user: UserRecord, purpose: TokenPurpose, subject: str, template: str, path: str
    ) -> bool:
        try:
            bearer = await self.tokens.issue(user.uid, user.email, purpose)
        except TokenAlreadyIssued:
            logger.info("token_request_ignored", subject=user.uid, reason="already_issued")
            return False
        link = self._link(f"{path}/{bearer}")
        sent = await self.mailer.send(user.email, subject, template, self._mail_vars(user, link))
        if not sent:
            # Let the user ask again instead of waiting out a token nobody received
            await self.tokens.release(user.uid, purpose)
            logger.error("token_email_failed", subject=user.uid, purpose=purpose.value)
            return False
        return True

    async def forgot_password(self, uid: str) -> None:
        uid = (uid or "").strip()
        if not uid:
            raise ValidationError("Please provide a username")
        user = await self._lookup_for_request(uid, "forgot_password")
        if user is None:
            return
        if user.locked:
            logger.info("forgot_password_ignored", subject=uid, reason="locked")
            return
        if not user.email:
            logger.warning("forgot_password_ignored", subject=uid, reason="no_email")
            return
        if await self._issue_and_mail(
            user, TokenPurpose.PASSWORD_RESET, "Password reset", "reset-password", "/auth/resetpw"
        ):
            logger.info("password_reset_requested", subject=uid)

    async def begin_reset(self, bearer: str) -> ResetContext:
        token = await self.tokens.verify(bearer, TokenPurpose.PASSWORD_RESET)
        user = await self._token_user(token)
        if user.locked:
            logger.warning("password_reset_locked_account", subject=user.uid)
            raise TokenError()
        return ResetContext(uid=user.uid, otp_required=user.otp_only)

    async def complete_reset(
        self, bearer: str, password: str, confirm: str, otp: str = ""
    ) -> None:
        """Reset the password, then consume the token.

        Any failure after the token verified counts against its attempt
        budget.
        """
        context = await self.begin_reset(bearer)
        otp = (otp or "").strip()
        try:
            validate_password(
                password,
                confirm,
                min_length=self.min_password_length,
                min_classes=self.min_password_classes,
            )
            if context.otp_required and not otp:
                raise ValidationError("Please enter your OTP code")
            await self.backend.reset_password(context.uid, password, otp)
        except ValidationError:
            await self.tokens.record_failed_attempt(bearer)
            raise
        except BackendError as exc:
            await self.tokens.record_failed_attempt(bearer)
            if exc.kind is BackendErrorKind.POLICY_VIOLATION:
                raise PasswordPolicyError(exc.message) from exc
            if exc.kind is BackendErrorKind.INVALID_CREDENTIAL:
                logger.warning("password_reset_otp_failed", subject=context.uid)
                raise ChallengeFailed("Invalid OTP code. Please try again.") from exc
            if exc.kind is BackendErrorKind.NOT_FOUND:
                raise TokenError() from exc
            logger.error(
                "backend_call_failed",
                operation="reset_password",
                subject=context.uid,
                error=exc.message,
            )
            raise BackendUnreachable() from exc

        await self.tokens.consume(bearer)
        logger.info("password_reset_completed", subject=context.uid)

    async def resend_verification(self, uid: str) -> None:
        uid = (uid or "").strip()
        if not uid:
            raise ValidationError("Please provide a username")
        user = await self._lookup_for_request(uid, "verify_resend")
        if user is None:
            return
        if not user.locked:
            logger.info("verify_resend_ignored", subject=uid, reason="already_active")
            return
        if not user.email:
            logger.warning("verify_resend_ignored", subject=uid, reason="no_email")
            return
        if await self._issue_and_mail(
            user, TokenPurpose.ACCOUNT_VERIFY, "Verify your account", "verify-account", "/auth/verify"
        ):
            logger.info("account_verification_requested", subject=uid)

    async def begin_verify(self, bearer: str) -> UserRecord:
        token = await self.tokens.verify(bearer, TokenPurpose.ACCOUNT_VERIFY)
        return await self._token_user(token)

    async def complete_verify(self, bearer: str) -> UserRecord:
        user = await self.begin_verify(bearer)
        if user.locked:
            try:
                await self.backend.enable_user(user.uid)
            except BackendError as exc:
                await self.tokens.record_failed_attempt(bearer)
                if exc.kind is BackendErrorKind.NOT_FOUND:
                    raise TokenError() from exc
                logger.error(
                    "backend_call_failed",
                    operation="enable_user",
                    subject=user.uid,
                    error=exc.message,
                )
                raise BackendUnreachable() from exc

        await self.tokens.consume(bearer)
        logger.info("account_verified", subject=user.uid, was_locked=user.locked)

        if user.email:
            welcomed = await self.mailer.send(
                user.email,
                "Welcome",
                "welcome",
                {"name": user.display_name, "uid": user.uid, "link": self._link("/auth/login")},
            )
            if not welcomed:
                logger.warning("welcome_email_failed", subject=user.uid)
        return user
