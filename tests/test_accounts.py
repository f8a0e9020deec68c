"""Unit tests for the emailed-token account flows."""

from unittest.mock import AsyncMock

import pytest

from idportal.service.accounts import AccountService
from idportal.service.backend import BackendError, BackendErrorKind
from idportal.service.errors import (
    BackendUnreachable,
    PasswordPolicyError,
    TokenError,
    TokenTooManyAttempts,
    ValidationError,
)
from idportal.service.secret_store import SecretStore
from idportal.service.tokens import ActionTokenService, TokenPurpose
from idportal.storage.marker_cache import MemoryMarkerCache
from idportal.storage.memory import MemoryDirectory


@pytest.fixture
def directory():
    directory = MemoryDirectory()
    directory.add_user("bob", "Daffodil42", email="bob@example.com")
    directory.add_user("erin", "Primrose31", email="erin@example.com", locked=True)
    directory.add_user("admin", "Lavender9", email="root@example.com")
    return directory


@pytest.fixture
def tokens(clock):
    return ActionTokenService(
        MemoryMarkerCache(clock=clock),
        SecretStore.from_secrets("t" * 40, "s" * 40),
        max_age=3600,
        max_attempts=3,
        clock=clock,
    )


@pytest.fixture
def mailer():
    return AsyncMock(**{"send.return_value": True})


@pytest.fixture
def accounts(tokens, directory, mailer):
    return AccountService(
        tokens, directory, mailer, link_base="https://portal.test/", block_users=["admin"]
    )


def mailed_bearer(mailer) -> str:
    return mailer.send.call_args.args[3]["link"].rsplit("/", 1)[1]


class TestForgotPassword:
    async def test_sends_reset_link(self, accounts, mailer):
        await accounts.forgot_password(" bob ")
        address, subject, template, variables = mailer.send.call_args.args
        assert address == "bob@example.com"
        assert template == "reset-password"
        assert variables["link"].startswith("https://portal.test/auth/resetpw/")

    @pytest.mark.parametrize("uid", ["nobody", "erin", "admin"])
    async def test_silently_ignored(self, accounts, mailer, uid):
        await accounts.forgot_password(uid)
        mailer.send.assert_not_awaited()

    async def test_bounced_link_is_revoked(self, accounts, mailer):
        mailer.send.return_value = False
        await accounts.forgot_password("bob")
        bounced = mailed_bearer(mailer)
        with pytest.raises(TokenError):
            await accounts.begin_reset(bounced)

        mailer.send.return_value = True
        await accounts.forgot_password("bob")
        assert (await accounts.begin_reset(mailed_bearer(mailer))).uid == "bob"
        with pytest.raises(TokenError):
            await accounts.begin_reset(bounced)

    async def test_blank_uid(self, accounts):
        with pytest.raises(ValidationError):
            await accounts.forgot_password("  ")

    async def test_backend_outage_surfaces(self, tokens, mailer):
        backend = AsyncMock()
        backend.lookup_user.side_effect = BackendError(
            BackendErrorKind.OTHER, "down", unreachable=True
        )
        accounts = AccountService(tokens, backend, mailer, link_base="https://portal.test")
        with pytest.raises(BackendUnreachable):
            await accounts.forgot_password("bob")


class TestCompleteReset:
    async def test_reset_consumes_token(self, accounts, mailer, directory):
        await accounts.forgot_password("bob")
        bearer = mailed_bearer(mailer)
        assert (await accounts.begin_reset(bearer)).uid == "bob"

        await accounts.complete_reset(bearer, "Marigold77", "Marigold77")
        await directory.verify_credentials("bob", "Marigold77")
        with pytest.raises(TokenError):
            await accounts.begin_reset(bearer)
        # A fresh request is possible once the old token is spent
        await accounts.forgot_password("bob")
        assert mailer.send.await_count == 2

    async def test_failures_spend_attempts(self, accounts, mailer):
        await accounts.forgot_password("bob")
        bearer = mailed_bearer(mailer)
        for _ in range(3):
            with pytest.raises(PasswordPolicyError):
                await accounts.complete_reset(bearer, "Marigold77", "Mismatch77")
        with pytest.raises(TokenTooManyAttempts):
            await accounts.complete_reset(bearer, "Marigold77", "Marigold77")

    async def test_backend_policy_violation_counts(self, tokens, mailer, directory):
        bearer = await tokens.issue("bob", "bob@example.com", TokenPurpose.PASSWORD_RESET)
        backend = AsyncMock()
        backend.lookup_user.return_value = await directory.lookup_user("bob")
        backend.reset_password.side_effect = BackendError(
            BackendErrorKind.POLICY_VIOLATION, "Password is in history"
        )
        accounts = AccountService(tokens, backend, mailer, link_base="https://portal.test")
        with pytest.raises(PasswordPolicyError, match="history"):
            await accounts.complete_reset(bearer, "Marigold77", "Marigold77")
        assert (await tokens.verify(bearer, TokenPurpose.PASSWORD_RESET)).attempts == 1

    async def test_locked_account_cannot_reset(self, accounts, tokens):
        bearer = await tokens.issue("erin", "erin@example.com", TokenPurpose.PASSWORD_RESET)
        with pytest.raises(TokenError):
            await accounts.begin_reset(bearer)

    async def test_expired_token(self, accounts, mailer, clock):
        await accounts.forgot_password("bob")
        bearer = mailed_bearer(mailer)
        clock.advance(3601)
        with pytest.raises(TokenError):
            await accounts.complete_reset(bearer, "Marigold77", "Marigold77")


class TestVerification:
    async def test_verify_unlocks_account(self, accounts, mailer, directory):
        await accounts.resend_verification("erin")
        bearer = mailed_bearer(mailer)
        user = await accounts.complete_verify(bearer)
        assert user.locked is True
        assert directory.accounts["erin"].locked is False
        assert mailer.send.call_args.args[2] == "welcome"
        with pytest.raises(TokenError):
            await accounts.begin_verify(bearer)

    async def test_failed_welcome_mail_is_not_fatal(self, accounts, mailer, directory):
        await accounts.resend_verification("erin")
        bearer = mailed_bearer(mailer)
        mailer.send.return_value = False
        await accounts.complete_verify(bearer)
        assert directory.accounts["erin"].locked is False

    async def test_enable_failure_keeps_token(self, tokens, mailer, directory):
        bearer = await tokens.issue("erin", "erin@example.com", TokenPurpose.ACCOUNT_VERIFY)
        backend = AsyncMock()
        backend.lookup_user.return_value = await directory.lookup_user("erin")
        backend.enable_user.side_effect = BackendError(BackendErrorKind.OTHER, "down")
        accounts = AccountService(tokens, backend, mailer, link_base="https://portal.test")
        with pytest.raises(BackendUnreachable):
            await accounts.complete_verify(bearer)
        token = await tokens.verify(bearer, TokenPurpose.ACCOUNT_VERIFY)
        assert token.attempts == 1
