"""Tests for TOTP, backup codes and the MFA setup state machine."""

import time

import pytest

from autohealer.service.audit import AuditAction
from autohealer.service.errors import (
    InvalidMfaTokenError,
    MfaAlreadyDisabledError,
    MfaAlreadyEnabledError,
    MfaSetupNotInitiatedError,
    UserNotFoundError,
)
from autohealer.service.mfa import BACKUP_CODE_LENGTH

# RFC 6238 appendix B seed, base32 encoded
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


class TestTotp:
    @pytest.mark.parametrize(
        "timestamp,expected",
        [(59, "287082"), (1111111109, "081804"), (1234567890, "005924")],
    )
    def test_rfc_vectors(self, mfa, timestamp, expected):
        assert mfa.generate_totp(RFC_SECRET, timestamp) == expected

    def test_accepts_one_step_of_drift(self, mfa):
        now = 1_700_000_000
        previous = mfa.generate_totp(RFC_SECRET, now - 30)
        following = mfa.generate_totp(RFC_SECRET, now + 30)
        assert mfa.verify_totp(RFC_SECRET, previous, timestamp=now)
        assert mfa.verify_totp(RFC_SECRET, following, timestamp=now)

    def test_rejects_two_steps_of_drift(self, mfa):
        now = 1_700_000_000
        stale = mfa.generate_totp(RFC_SECRET, now - 60)
        assert not mfa.verify_totp(RFC_SECRET, stale, timestamp=now)

    @pytest.mark.parametrize(
        "token", ["", "12345", "1234567", "abcdef", None, "١" * 6, "１" * 6]
    )
    def test_malformed_tokens(self, mfa, token):
        assert mfa.verify_totp(RFC_SECRET, token) is False

    def test_invalid_secret_never_verifies(self, mfa):
        assert mfa.generate_totp("not base32!", time.time()) == ""
        assert mfa.verify_totp("not base32!", "000000") is False

    def test_generated_secret_is_32_base32_chars(self, mfa):
        secret = mfa.generate_secret()
        assert len(secret) == 32
        assert mfa.generate_totp(secret).isdigit()

    def test_provisioning_uri(self, mfa):
        uri = mfa.provisioning_uri("ops@example.com", RFC_SECRET)
        assert uri.startswith("otpauth://totp/WP-AutoHealer%3Aops%40example.com?")
        assert f"secret={RFC_SECRET}" in uri
        assert "issuer=WP-AutoHealer" in uri
        assert "digits=6" in uri and "period=30" in uri


class TestBackupCodes:
    def test_generated_codes_are_unique_and_well_formed(self, mfa):
        codes = mfa.generate_backup_codes(10)
        assert len(set(codes)) == 10
        for code in codes:
            assert len(code) == BACKUP_CODE_LENGTH
            assert code == code.upper() and code.isalnum()

    def test_code_is_single_use(self, mfa, make_user, enable_mfa):
        user = make_user()
        setup = enable_mfa(user)
        code = setup.backup_codes[0]

        first = mfa.consume_backup_code(user.id, code)
        assert first is not None
        assert first.remaining == 9
        assert mfa.consume_backup_code(user.id, code) is None

    def test_lowercase_and_padding_are_normalized(self, mfa, make_user, enable_mfa):
        user = make_user()
        setup = enable_mfa(user)
        assert mfa.consume_backup_code(user.id, f"  {setup.backup_codes[1].lower()} ")

    def test_unknown_code(self, mfa, make_user, enable_mfa):
        user = make_user()
        enable_mfa(user)
        assert mfa.consume_backup_code(user.id, "ZZZZZZZZ") is None
        assert mfa.consume_backup_code(user.id, "short") is None

    def test_low_watermark(self, mfa, make_user, enable_mfa):
        user = make_user()
        setup = enable_mfa(user)
        results = [mfa.consume_backup_code(user.id, code) for code in setup.backup_codes[:8]]
        assert results[6].remaining == 3
        assert not results[6].low_on_codes
        assert results[7].remaining == 2
        assert results[7].low_on_codes

    def test_use_is_audited(self, mfa, memory_store, make_user, enable_mfa):
        user = make_user()
        setup = enable_mfa(user)
        mfa.consume_backup_code(user.id, setup.backup_codes[0])
        event = memory_store.latest_audit_event(AuditAction.BACKUP_CODE_USED, user.id)
        assert event.details == {"remaining_codes": 9}

    def test_codes_are_stored_encrypted(self, mfa, memory_store, make_user, enable_mfa):
        user = make_user()
        setup = enable_mfa(user)
        stored = memory_store.get_user(user.id)
        assert stored.mfa_secret != setup.secret
        assert not set(stored.mfa_backup_codes) & set(setup.backup_codes)

    def test_regenerate_replaces_old_codes(self, mfa, make_user, enable_mfa):
        user = make_user()
        setup = enable_mfa(user)
        fresh = mfa.regenerate_backup_codes(user.id)
        assert len(fresh) == 10
        assert mfa.consume_backup_code(user.id, setup.backup_codes[0]) is None
        assert mfa.consume_backup_code(user.id, fresh[0]) is not None

    def test_regenerate_requires_enabled_mfa(self, mfa, make_user):
        user = make_user()
        with pytest.raises(MfaAlreadyDisabledError):
            mfa.regenerate_backup_codes(user.id)


class TestSetupStateMachine:
    def test_begin_leaves_mfa_disabled(self, mfa, memory_store, make_user):
        user = make_user()
        setup = mfa.begin_setup(user.id)
        stored = memory_store.get_user(user.id)
        assert stored.mfa_enabled is False
        assert stored.mfa_secret is not None
        assert len(setup.backup_codes) == 10
        assert setup.qr_payload.startswith("otpauth://totp/")

    def test_begin_again_replaces_pending_secret(self, mfa, make_user):
        user = make_user()
        first = mfa.begin_setup(user.id)
        second = mfa.begin_setup(user.id)
        assert first.secret != second.secret
        with pytest.raises(InvalidMfaTokenError):
            mfa.confirm_setup(user.id, mfa.generate_totp(first.secret))
        mfa.confirm_setup(user.id, mfa.generate_totp(second.secret))

    def test_confirm_without_begin(self, mfa, make_user):
        user = make_user()
        with pytest.raises(MfaSetupNotInitiatedError):
            mfa.confirm_setup(user.id, "123456")

    def test_confirm_with_wrong_token_stays_pending(self, mfa, memory_store, make_user):
        user = make_user()
        setup = mfa.begin_setup(user.id)
        wrong = mfa.generate_totp(setup.secret, time.time() + 600)
        with pytest.raises(InvalidMfaTokenError):
            mfa.confirm_setup(user.id, wrong)
        assert memory_store.get_user(user.id).mfa_enabled is False

    def test_enabled_user_cannot_begin_or_confirm(self, mfa, make_user, enable_mfa):
        user = make_user()
        setup = enable_mfa(user)
        with pytest.raises(MfaAlreadyEnabledError):
            mfa.begin_setup(user.id)
        with pytest.raises(MfaAlreadyEnabledError):
            mfa.confirm_setup(user.id, mfa.generate_totp(setup.secret))

    def test_disable_clears_secret_and_codes(self, mfa, memory_store, make_user, enable_mfa):
        user = make_user()
        enable_mfa(user)
        mfa.disable(user.id)
        stored = memory_store.get_user(user.id)
        assert stored.mfa_enabled is False
        assert stored.mfa_secret is None
        assert stored.mfa_backup_codes == []
        with pytest.raises(MfaAlreadyDisabledError):
            mfa.disable(user.id)

    def test_unknown_user(self, mfa):
        with pytest.raises(UserNotFoundError):
            mfa.begin_setup("missing")
        with pytest.raises(UserNotFoundError):
            mfa.disable("missing")


class TestVerifyUserToken:
    def test_totp_then_backup_code(self, mfa, memory_store, make_user, enable_mfa):
        user = make_user()
        setup = enable_mfa(user)
        stored = memory_store.get_user(user.id)

        by_totp = mfa.verify_user_token(stored, mfa.generate_totp(setup.secret))
        assert by_totp.method == "totp"
        assert by_totp.backup is None

        by_code = mfa.verify_user_token(stored, setup.backup_codes[0])
        assert by_code.method == "backup_code"
        assert by_code.backup.remaining == 9

    def test_user_without_secret(self, mfa, make_user):
        user = make_user()
        assert mfa.verify_user_token(user, "123456") is None
