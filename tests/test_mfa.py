import base64

import pyotp
import pytest

from account_shield.errors import (
    ConfigurationError,
    DeliveryError,
    NotProvisionedError,
    RateLimitedError,
    VerificationFailedError,
)
from account_shield.mfa import MFAService, TOTP_PENDING_FIELD
from account_shield.models import MFAMethod

USER = "user-123"


class FailingTransport:
    def send(self, channel, destination, code):
        raise ConnectionError("gateway down")


@pytest.fixture
def mfa(core):
    return core.mfa


def enable_totp(mfa, clock, user_id=USER):
    setup = mfa.setup_totp(user_id)
    result = mfa.verify_setup(user_id, pyotp.TOTP(setup.secret).at(clock()))
    assert result.success
    return setup.secret, result.backup_codes


def wrong_totp(secret, now):
    totp = pyotp.TOTP(secret)
    valid = {totp.at(now + offset) for offset in (-60, -30, 0, 30, 60)}
    return next(c for c in (str(n).zfill(6) for n in range(1000)) if c not in valid)


def wrong_code(code):
    return str((int(code) + 1) % 10 ** len(code)).zfill(len(code))


def last_sent_code(transport):
    return transport.sent[-1][2]


# ==================== TOTP ====================

def test_setup_returns_secret_and_uri(mfa):
    setup = mfa.setup_totp(USER, account_name="user@x.com")

    assert len(setup.secret) >= 16
    assert setup.provisioning_uri.startswith("otpauth://totp/")
    assert f"secret={setup.secret}" in setup.provisioning_uri
    assert setup.qr_code is None


def test_setup_can_render_qr_code(mfa):
    setup = mfa.setup_totp(USER, include_qr=True)
    assert base64.b64decode(setup.qr_code).startswith(b"\x89PNG")


def test_verify_setup_promotes_pending_secret(mfa, clock, core):
    setup = mfa.setup_totp(USER)

    result = mfa.verify_setup(USER, pyotp.TOTP(setup.secret).at(clock()))

    assert result.success is True
    assert len(result.backup_codes) == 10
    assert all(len(code) == 8 and code.isdigit() for code in result.backup_codes)
    assert mfa.is_provisioned(USER) is True
    assert core.store.get(mfa._key(USER, TOTP_PENDING_FIELD)) is None


def test_verify_setup_with_wrong_code_leaves_no_credential(mfa, clock):
    setup = mfa.setup_totp(USER)

    result = mfa.verify_setup(USER, wrong_totp(setup.secret, clock()))

    assert result.success is False
    assert mfa.is_provisioned(USER) is False


def test_verify_setup_without_pending_setup(mfa):
    with pytest.raises(NotProvisionedError):
        mfa.verify_setup(USER, "123456")


def test_pending_setup_expires(mfa, clock):
    setup = mfa.setup_totp(USER)
    clock.advance(10 * 60 + 1)

    with pytest.raises(NotProvisionedError):
        mfa.verify_setup(USER, pyotp.TOTP(setup.secret).at(clock()))


# One step of drift either side, counted in whole 30 s steps: a code issued at
# the start of its step stays valid until the end of the following step.
@pytest.mark.parametrize("offset", [-30, 0, 30, 59])
def test_totp_accepted_within_window(mfa, clock, offset):
    secret, _ = enable_totp(mfa, clock)
    issued_at = clock()
    code = pyotp.TOTP(secret).at(issued_at)

    clock.now = issued_at + offset
    assert mfa.verify(USER, code, MFAMethod.TOTP).success is True


@pytest.mark.parametrize("offset", [-61, -31, 60, 90])
def test_totp_rejected_outside_window(mfa, clock, offset):
    secret, _ = enable_totp(mfa, clock)
    issued_at = clock()
    code = pyotp.TOTP(secret).at(issued_at)

    clock.now = issued_at + offset
    assert mfa.verify(USER, code, MFAMethod.TOTP).success is False


def test_totp_without_credential_is_not_provisioned(core, mfa):
    with pytest.raises(NotProvisionedError):
        mfa.verify(USER, "123456", "totp")

    assert core.mfa_guard.attempts(MFAService.GUARD_PREFIX + USER) == 1


# ==================== BACKUP CODES ====================

def test_backup_code_is_single_use(mfa):
    codes = mfa.generate_backup_codes(USER)

    first = mfa.verify(USER, codes[0], "backup")
    second = mfa.verify(USER, codes[0], "backup")

    assert first.success is True
    assert first.remaining_codes == 9
    assert second.success is False


def test_regenerating_invalidates_previous_codes(mfa):
    old_codes = mfa.generate_backup_codes(USER)
    new_codes = mfa.generate_backup_codes(USER)

    assert mfa.verify(USER, old_codes[1], "backup").success is False
    assert mfa.verify(USER, new_codes[0], "backup").success is True


def test_backup_codes_are_stored_hashed(core, mfa):
    codes = mfa.generate_backup_codes(USER)
    stored = core.store.get(mfa._key(USER, "backup_codes"))
    hashes = [c["code_hash"] for c in stored["codes"]]

    assert not set(codes) & set(hashes)
    assert all(h.startswith("$argon2") for h in hashes)


def test_backup_code_accepts_hyphenated_input(mfa):
    code = mfa.generate_backup_codes(USER)[0]
    assert mfa.verify(USER, f"{code[:4]}-{code[4:]}", "backup").success is True


# ==================== OUT-OF-BAND ====================

def test_send_sms_masks_destination(mfa, transport):
    sent = mfa.send_out_of_band(USER, "sms", "+1 555 123 4567")

    assert sent["destination"] == "***-***-4567"
    assert sent["expires_in"] == 600
    channel, destination, code = transport.sent[-1]
    assert (channel, destination) == ("sms", "+1 555 123 4567")
    assert len(code) == 6 and code.isdigit()


def test_send_email_masks_destination(mfa):
    sent = mfa.send_out_of_band(USER, MFAMethod.EMAIL, "alice@example.com")
    assert sent["destination"] == "al***@example.com"


def test_out_of_band_code_is_single_use(mfa, transport):
    mfa.send_out_of_band(USER, "sms", "+15551234567")
    code = last_sent_code(transport)

    assert mfa.verify(USER, code, "sms").success is True
    repeat = mfa.verify(USER, code, "sms")
    assert repeat.success is False
    assert "expired or not found" in repeat.message


def test_out_of_band_attempts_exhaust_code(mfa, transport):
    mfa.send_out_of_band(USER, "email", "alice@example.com")
    code = last_sent_code(transport)

    remaining = [mfa.verify(USER, wrong_code(code), "email").attempts_remaining for _ in range(3)]
    assert remaining == [2, 1, 0]

    with pytest.raises(VerificationFailedError) as exc:
        mfa.verify(USER, code, "email")
    assert exc.value.attempts_remaining == 0


def test_failed_attempt_keeps_original_expiry(core, mfa, transport, clock):
    mfa.send_out_of_band(USER, "sms", "+15551234567")
    key = mfa._key(USER, "sms")
    expires_at = core.store.get_record(key).expires_at

    clock.advance(120)
    mfa.verify(USER, wrong_code(last_sent_code(transport)), "sms")

    assert core.store.get_record(key).expires_at == expires_at


def test_out_of_band_code_expires(mfa, transport, clock):
    mfa.send_out_of_band(USER, "sms", "+15551234567")
    clock.advance(10 * 60 + 1)

    assert mfa.verify(USER, last_sent_code(transport), "sms").success is False


def test_delivery_failure_withdraws_code(mfa):
    mfa.transport = FailingTransport()

    with pytest.raises(DeliveryError):
        mfa.send_out_of_band(USER, "sms", "+15551234567")

    assert mfa.is_provisioned(USER, "sms") is False


def test_unsupported_channel_is_rejected(mfa):
    with pytest.raises(ValueError):
        mfa.send_out_of_band(USER, "totp", "+15551234567")


# ==================== AUTO-DETECTION ====================

def test_detects_backup_code_by_length(mfa):
    codes = mfa.generate_backup_codes(USER)

    result = mfa.verify(USER, codes[0])

    assert result.method == MFAMethod.BACKUP
    assert result.success is True


def test_detects_totp_when_provisioned(mfa, clock):
    secret, _ = enable_totp(mfa, clock)

    result = mfa.verify(USER, pyotp.TOTP(secret).at(clock()))

    assert result.method == MFAMethod.TOTP
    assert result.success is True


def test_detects_live_out_of_band_channel(mfa, transport):
    mfa.send_out_of_band(USER, "email", "alice@example.com")

    result = mfa.verify(USER, last_sent_code(transport))

    assert result.method == MFAMethod.EMAIL
    assert result.success is True


def test_totp_preferred_over_out_of_band_of_same_length(mfa, clock):
    enable_totp(mfa, clock)
    mfa.send_out_of_band(USER, "sms", "+15551234567")

    assert mfa.detect_method(USER, "123456") == MFAMethod.TOTP


def test_fallback_is_backup_when_nothing_provisioned(mfa):
    assert mfa.detect_method(USER, "12") == MFAMethod.BACKUP


# ==================== LOCKOUT LAYER ====================

def test_repeated_failures_rate_limit_verification(mfa, clock):
    secret, _ = enable_totp(mfa, clock)
    bad = wrong_totp(secret, clock())

    for _ in range(4):
        assert mfa.verify(USER, bad, "totp").success is False
    with pytest.raises(RateLimitedError):
        mfa.verify(USER, bad, "totp")

    with pytest.raises(RateLimitedError) as exc:
        mfa.verify(USER, pyotp.TOTP(secret).at(clock()), "totp")
    assert exc.value.minutes_remaining == 15


def test_audit_write_failure_still_counts_attempts(core, mfa, clock, backend, monkeypatch):
    secret, _ = enable_totp(mfa, clock)
    bad = wrong_totp(secret, clock())
    store_value = backend.set

    def set_unless_audit_trail(raw_key, value):
        if raw_key.endswith("events"):
            raise OSError("disk full")
        store_value(raw_key, value)

    monkeypatch.setattr(backend, "set", set_unless_audit_trail)

    for _ in range(4):
        assert mfa.verify(USER, bad, "totp").success is False
    assert core.mfa_guard.attempts(MFAService.GUARD_PREFIX + USER) == 4

    with pytest.raises(RateLimitedError):
        mfa.verify(USER, bad, "totp")


def test_success_clears_failure_count(core, mfa, clock):
    secret, _ = enable_totp(mfa, clock)
    mfa.verify(USER, wrong_totp(secret, clock()), "totp")

    mfa.verify(USER, pyotp.TOTP(secret).at(clock()), "totp")

    assert core.mfa_guard.attempts(MFAService.GUARD_PREFIX + USER) == 0


# ==================== LIFECYCLE ====================

def test_disable_requires_successful_verification(mfa, clock):
    secret, _ = enable_totp(mfa, clock)

    with pytest.raises(ConfigurationError):
        mfa.disable_all(USER, wrong_totp(secret, clock()), "totp")

    assert mfa.is_provisioned(USER) is True


def test_disable_removes_every_method(mfa, clock, transport):
    secret, _ = enable_totp(mfa, clock)
    mfa.send_out_of_band(USER, "sms", "+15551234567")

    mfa.disable_all(USER, pyotp.TOTP(secret).at(clock()), "totp")

    assert mfa.is_provisioned(USER, "totp") is False
    assert mfa.is_provisioned(USER, "backup") is False
    assert mfa.is_provisioned(USER, "sms") is False
    assert mfa.get_status(USER)["enabled"] is False


def test_status_reports_methods_and_last_verification(mfa, clock):
    _, backup_codes = enable_totp(mfa, clock)
    mfa.verify(USER, backup_codes[0], "backup")

    status = mfa.get_status(USER)

    assert status["enabled"] is True
    assert status["methods"] == ["totp", "backup"]
    assert status["backup_codes_remaining"] == 9
    assert status["totp_enabled_at"] == clock()
    assert status["last_verification"]["method"] == "backup"


def test_audit_trail_records_events(mfa, clock):
    enable_totp(mfa, clock)

    events = [e["event"] for e in mfa.get_events(USER)]

    assert events[0] == "totp_setup_started"
    assert "backup_codes_generated" in events
    assert "totp_enabled" in events
    assert events[-1] == "verify_success"


def test_audit_trail_is_capped(mfa, config):
    for _ in range(config.MFA_EVENT_HISTORY + 5):
        mfa.setup_totp(USER)
    assert len(mfa.get_events(USER)) == config.MFA_EVENT_HISTORY
