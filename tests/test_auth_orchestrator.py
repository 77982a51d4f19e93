"""Login flows and account use cases composed by AuthOrchestrator."""

from datetime import timedelta

import pytest

from autohealer.service.audit import AuditAction
from autohealer.service.auth import LoginSuccess, MfaRequired, RequestContext
from autohealer.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    IncorrectCurrentPasswordError,
    InvalidCredentialsError,
    InvalidMfaTokenError,
    InvalidSessionError,
    MfaAlreadyDisabledError,
)
from autohealer.storage.models import TokenKind, utcnow

PASSWORD = "Sup3r$ecretPass"
EMAIL = "operator@example.com"


class TestLogin:
    async def test_success_issues_session(self, orchestrator, memory_store, make_user):
        user = make_user()
        ctx = RequestContext(ip_address="10.0.0.1", user_agent="pytest", device_fingerprint="fp")

        result = await orchestrator.login(EMAIL, PASSWORD, context=ctx)

        assert isinstance(result, LoginSuccess)
        assert result.mfa_used is False
        auth = await orchestrator.authenticate(result.access_token)
        assert auth.user.id == user.id
        assert auth.session.ip_address == "10.0.0.1"
        assert memory_store.get_user(user.id).last_login_at is not None
        event = memory_store.latest_audit_event(AuditAction.LOGIN_SUCCESSFUL, user.id)
        assert event.details["session_id"] == result.session_id

    async def test_unknown_email_and_wrong_password_are_indistinguishable(
        self, orchestrator, make_user
    ):
        make_user()
        with pytest.raises(InvalidCredentialsError) as unknown:
            await orchestrator.login("ghost@example.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            await orchestrator.login(EMAIL, "Wrong!Password1")
        assert unknown.value.message == wrong.value.message
        assert unknown.value.error_code == wrong.value.error_code

    async def test_fifth_failure_locks_and_correct_password_is_then_refused(
        self, orchestrator, email_outbox, make_user
    ):
        make_user()
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await orchestrator.login(EMAIL, "Wrong!Password1")

        with pytest.raises(AccountLockedError) as excinfo:
            await orchestrator.login(EMAIL, PASSWORD)
        assert excinfo.value.lockout_until is not None
        assert email_outbox.subjects_for(EMAIL) == ["Account locked"]

    async def test_success_resets_failure_counter(self, orchestrator, memory_store, make_user):
        user = make_user()
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await orchestrator.login(EMAIL, "Wrong!Password1")
        await orchestrator.login(EMAIL, PASSWORD)
        assert memory_store.get_user(user.id).failed_login_attempts == 0

        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await orchestrator.login(EMAIL, "Wrong!Password1")
        assert isinstance(await orchestrator.login(EMAIL, PASSWORD), LoginSuccess)

    async def test_expired_lock_allows_login(self, orchestrator, memory_store, make_user):
        user = make_user()
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await orchestrator.login(EMAIL, "Wrong!Password1")
        memory_store.users[user.id].lockout_until = utcnow() - timedelta(seconds=1)
        assert isinstance(await orchestrator.login(EMAIL, PASSWORD), LoginSuccess)

    async def test_inactive_account(self, orchestrator, memory_store, make_user):
        make_user(is_active=False)
        with pytest.raises(AccountInactiveError):
            await orchestrator.login(EMAIL, PASSWORD)
        assert memory_store.sessions == {}


class TestLoginWithMfa:
    async def test_missing_token_returns_mfa_required_without_session(
        self, orchestrator, memory_store, make_user, enable_mfa
    ):
        user = make_user()
        enable_mfa(user)

        result = await orchestrator.login(EMAIL, PASSWORD)

        assert isinstance(result, MfaRequired)
        assert result.user.id == user.id
        assert memory_store.sessions == {}

    async def test_totp_completes_login(self, orchestrator, mfa, make_user, enable_mfa):
        user = make_user()
        setup = enable_mfa(user)
        result = await orchestrator.login(EMAIL, PASSWORD, mfa.generate_totp(setup.secret))
        assert isinstance(result, LoginSuccess)
        assert result.mfa_used is True

    async def test_backup_code_is_single_use(self, orchestrator, make_user, enable_mfa):
        user = make_user()
        setup = enable_mfa(user)
        code = setup.backup_codes[0]

        assert isinstance(await orchestrator.login(EMAIL, PASSWORD, code), LoginSuccess)
        with pytest.raises(InvalidMfaTokenError):
            await orchestrator.login(EMAIL, PASSWORD, code)

    async def test_low_backup_codes_trigger_warning_mail(
        self, orchestrator, email_outbox, make_user, enable_mfa
    ):
        user = make_user()
        setup = enable_mfa(user)
        for code in setup.backup_codes[:8]:
            await orchestrator.login(EMAIL, PASSWORD, code)
        assert email_outbox.subjects_for(EMAIL).count("Backup codes running low") == 1

    async def test_wrong_token_does_not_count_toward_lockout(
        self, orchestrator, memory_store, make_user, enable_mfa
    ):
        user = make_user()
        enable_mfa(user)
        with pytest.raises(InvalidMfaTokenError):
            await orchestrator.login(EMAIL, PASSWORD, "000000")
        assert memory_store.get_user(user.id).failed_login_attempts == 0
        assert memory_store.sessions == {}

    async def test_non_ascii_digits_are_an_invalid_token(
        self, orchestrator, memory_store, make_user, enable_mfa
    ):
        user = make_user()
        enable_mfa(user)
        with pytest.raises(InvalidMfaTokenError):
            await orchestrator.login(EMAIL, PASSWORD, "١" * 6)
        event = memory_store.latest_audit_event(AuditAction.LOGIN_FAILED, user.id)
        assert event.details["reason"] == "invalid_mfa_token"
        assert memory_store.sessions == {}


class TestAccountUseCases:
    async def _login(self, orchestrator):
        result = await orchestrator.login(EMAIL, PASSWORD)
        return await orchestrator.authenticate(result.access_token), result

    async def test_logout_revokes_only_current_session(self, orchestrator, make_user):
        make_user()
        auth, first = await self._login(orchestrator)
        _, second = await self._login(orchestrator)

        assert await orchestrator.logout(auth) is True
        with pytest.raises(InvalidSessionError):
            await orchestrator.authenticate(first.access_token)
        await orchestrator.authenticate(second.access_token)

    async def test_logout_all_keeps_current_session(self, orchestrator, make_user):
        make_user()
        auth, current = await self._login(orchestrator)
        _, other = await self._login(orchestrator)

        assert await orchestrator.logout_all(auth) == 1
        await orchestrator.authenticate(current.access_token)
        with pytest.raises(InvalidSessionError):
            await orchestrator.authenticate(other.access_token)

    async def test_change_password_notifies(self, orchestrator, email_outbox, make_user):
        make_user()
        auth, _ = await self._login(orchestrator)
        new = "An0ther$trongOne"
        await orchestrator.change_password(auth, PASSWORD, new, new)
        assert "Password changed" in email_outbox.subjects_for(EMAIL)
        assert isinstance(await orchestrator.login(EMAIL, new), LoginSuccess)

    async def test_reset_request_for_unknown_email_sends_nothing(
        self, orchestrator, email_outbox
    ):
        await orchestrator.request_password_reset("ghost@example.com")
        assert email_outbox.sent == []

    async def test_reset_round_trip(self, orchestrator, email_outbox, memory_store, make_user):
        make_user()
        await orchestrator.request_password_reset(EMAIL)
        assert len(email_outbox.sent) == 1
        assert len(memory_store.tokens[TokenKind.PASSWORD_RESET]) == 1

    async def test_disable_mfa_needs_password_and_token(
        self, orchestrator, mfa, make_user, enable_mfa
    ):
        user = make_user()
        setup = enable_mfa(user)
        result = await orchestrator.login(EMAIL, PASSWORD, mfa.generate_totp(setup.secret))
        auth = await orchestrator.authenticate(result.access_token)

        with pytest.raises(IncorrectCurrentPasswordError):
            await orchestrator.disable_mfa(auth, "Wrong!Password1", mfa.generate_totp(setup.secret))
        with pytest.raises(InvalidMfaTokenError):
            await orchestrator.disable_mfa(auth, PASSWORD, "000000")

        disabled = await orchestrator.disable_mfa(auth, PASSWORD, setup.backup_codes[0])
        assert disabled.mfa_enabled is False
        with pytest.raises(MfaAlreadyDisabledError):
            await orchestrator.disable_mfa(auth, PASSWORD, "000000")

    async def test_lockout_stats_include_sessions(self, orchestrator, make_user):
        make_user()
        await self._login(orchestrator)
        stats = await orchestrator.lockout_stats()
        assert stats["locked_accounts"] == 0
        assert stats["sessions_active"] == 1

    async def test_mail_failure_does_not_fail_the_operation(
        self, orchestrator, email_outbox, make_user, monkeypatch
    ):
        make_user()

        def _explode(*args, **kwargs):
            raise OSError("smtp down")

        monkeypatch.setattr(email_outbox, "send_password_reset", _explode)
        await orchestrator.request_password_reset(EMAIL)
