"""
Multi-Factor Authentication (MFA) Module

One-time code engine:
- TOTP with a two-phase setup (pending secret -> verified credential)
- Single-use backup codes, stored as Argon2id hashes
- Out-of-band codes (SMS / email) with per-code attempt limits
- A second lockout layer over every verification, keyed "mfa_verify:<user>"
"""

import base64
import hmac
import io
import logging
import time
from typing import Callable, Optional

import pyotp
import qrcode

from .config import SecurityConfig, seconds
from .crypto import BackupCodeHasher
from .errors import (
    ConfigurationError,
    DeliveryError,
    NotProvisionedError,
    StorageUnavailableError,
    VerificationFailedError,
)
from .events import AUTH_EVENT, EventBus
from .models import (
    OUT_OF_BAND_METHODS,
    BackupCode,
    BackupCodeSet,
    MFAMethod,
    OutOfBandCode,
    PendingTOTPSetup,
    RecordKey,
    TOTPCredential,
    TOTPSetup,
    VerificationResult,
)
from .rate_limiter import LockoutGuard
from .store import KeyedExpiringStore
from .utils import CodeGenerator, Sanitizer

logger = logging.getLogger(__name__)

# Record fields under the per-user "mfa" entity
TOTP_FIELD = 'totp'
TOTP_PENDING_FIELD = 'totp_pending'
BACKUP_CODES_FIELD = 'backup_codes'
EVENTS_FIELD = 'events'
LAST_VERIFICATION_FIELD = 'last_verification'


class MFAService:
    """
    Issues and verifies second-factor codes.

    Compatible with: Google Authenticator, Authy, Microsoft Authenticator, etc.
    Uses RFC 6238 TOTP via pyotp.
    """

    ENTITY_TYPE = 'mfa'
    GUARD_PREFIX = 'mfa_verify:'

    def __init__(
        self,
        store: KeyedExpiringStore,
        guard: LockoutGuard,
        hasher: BackupCodeHasher,
        config: SecurityConfig,
        clock: Callable[[], float] = time.time,
        transport=None,
        events: Optional[EventBus] = None,
    ):
        self.store = store
        self.guard = guard
        self.hasher = hasher
        self.clock = clock
        self.transport = transport
        self.events = events

        self.issuer = config.TOTP_ISSUER
        self.interval = config.TOTP_INTERVAL
        self.digits = config.TOTP_DIGITS
        self.valid_window = config.TOTP_VALID_WINDOW
        self.setup_expires = seconds(config.TOTP_SETUP_EXPIRES)
        self.backup_code_count = config.MFA_BACKUP_CODE_COUNT
        self.backup_code_length = config.MFA_BACKUP_CODE_LENGTH
        self.code_lengths = {
            MFAMethod.SMS: config.SMS_CODE_LENGTH,
            MFAMethod.EMAIL: config.EMAIL_CODE_LENGTH,
        }
        self.oob_expires = seconds(config.OOB_CODE_EXPIRES)
        self.oob_max_attempts = config.OOB_MAX_ATTEMPTS
        self.event_history = config.MFA_EVENT_HISTORY

    def _key(self, user_id: str, field: str) -> RecordKey:
        return RecordKey(self.store.security_namespace, self.ENTITY_TYPE, user_id, field)

    # ==================== TOTP ====================

    def generate_secret(self) -> str:
        """
        Generate a new TOTP secret.

        Returns:
            Base32-encoded secret string

        Security Notes:
        - pyotp.random_base32() uses the secrets module internally
        - Stored encoded in the store, never logged
        """
        return pyotp.random_base32()

    def get_provisioning_uri(self, secret: str, account_name: str) -> str:
        """
        Generate provisioning URI for authenticator apps.

        Format: otpauth://totp/Issuer:account?secret=SECRET&issuer=Issuer
        """
        totp = pyotp.TOTP(secret, interval=self.interval, digits=self.digits, issuer=self.issuer)
        return totp.provisioning_uri(name=account_name, issuer_name=self.issuer)

    def generate_qr_code(self, provisioning_uri: str) -> str:
        """
        Render the provisioning URI as a QR code.

        Returns:
            Base64-encoded PNG image

        Usage:
            Display in <img> tag: <img src="data:image/png;base64,{qr_code}">
        """
        qr = qrcode.QRCode(
            version=1,
            error_correction=qrcode.constants.ERROR_CORRECT_L,
            box_size=10,
            border=4,
        )
        qr.add_data(provisioning_uri)
        qr.make(fit=True)

        img = qr.make_image(fill_color="black", back_color="white")

        buffer = io.BytesIO()
        img.save(buffer, format='PNG')
        return base64.b64encode(buffer.getvalue()).decode()

    def setup_totp(self, user_id: str, account_name: Optional[str] = None, include_qr: bool = False) -> TOTPSetup:
        """
        Phase one of TOTP setup.

        The secret is kept under a short-lived pending record. It becomes a
        credential only after verify_setup succeeds; otherwise it expires.
        """
        secret = self.generate_secret()
        uri = self.get_provisioning_uri(secret, account_name or user_id)
        pending = PendingTOTPSetup(user_id=user_id, secret=secret, provisioning_uri=uri, created_at=self.clock())
        self.store.set(self._key(user_id, TOTP_PENDING_FIELD), pending.to_dict(), expires_in=self.setup_expires)

        self._record_event(user_id, 'totp_setup_started')
        logger.info(f"TOTP setup started for user {Sanitizer.mask_user_id(user_id)}")

        qr_code = self.generate_qr_code(uri) if include_qr else None
        return TOTPSetup(secret=secret, provisioning_uri=uri, qr_code=qr_code)

    def verify_setup(self, user_id: str, code: str) -> VerificationResult:
        """
        Phase two of TOTP setup.

        On success the pending secret is promoted to a verified credential,
        the pending record is deleted and a fresh set of backup codes is
        returned. A wrong code leaves no permanent credential behind.

        Raises:
            NotProvisionedError: no live pending setup
            RateLimitedError: MFA verification lockout
        """
        code = Sanitizer.normalize_code(code)

        def check() -> VerificationResult:
            data = self.store.get(self._key(user_id, TOTP_PENDING_FIELD))
            if not data:
                raise NotProvisionedError("No pending TOTP setup. Start setup again.")
            pending = PendingTOTPSetup.from_dict(data)

            if not self._check_totp(pending.secret, code):
                return VerificationResult(success=False, method=MFAMethod.TOTP, message="Invalid verification code")

            credential = TOTPCredential(user_id=user_id, secret=pending.secret, enabled_at=self.clock(), verified=True)
            self.store.set(self._key(user_id, TOTP_FIELD), credential.to_dict())
            self.store.remove(self._key(user_id, TOTP_PENDING_FIELD))
            backup_codes = self.generate_backup_codes(user_id)

            self._record_event(user_id, 'totp_enabled')
            logger.info(f"TOTP enabled for user {Sanitizer.mask_user_id(user_id)}")
            return VerificationResult(
                success=True,
                method=MFAMethod.TOTP,
                message="Two-factor authentication enabled",
                remaining_codes=len(backup_codes),
                backup_codes=backup_codes,
            )

        return self._guarded(user_id, MFAMethod.TOTP, check)

    def _load_credential(self, user_id: str) -> Optional[TOTPCredential]:
        data = self.store.get(self._key(user_id, TOTP_FIELD))
        if not data:
            return None
        return TOTPCredential.from_dict(data)

    def _check_totp(self, secret: str, code: str) -> bool:
        if not code or len(code) != self.digits or not code.isdigit():
            return False
        totp = pyotp.TOTP(secret, interval=self.interval, digits=self.digits)
        # valid_window=1 checks current, previous and next time steps
        return totp.verify(code, for_time=int(self.clock()), valid_window=self.valid_window)

    def _verify_totp(self, user_id: str, code: str) -> VerificationResult:
        credential = self._load_credential(user_id)
        if credential is None or not credential.verified:
            raise NotProvisionedError("TOTP is not set up for this account")
        if self._check_totp(credential.secret, code):
            return VerificationResult(success=True, method=MFAMethod.TOTP, message="Code verified")
        return VerificationResult(success=False, method=MFAMethod.TOTP, message="Invalid verification code")

    # ==================== BACKUP CODES ====================

    def generate_backup_codes(self, user_id: str) -> list[str]:
        """
        Issue a fresh set of backup codes, replacing any previous set.

        Returns the plaintext codes. They are shown to the user once and
        only their hashes are stored.
        """
        codes = CodeGenerator.unique_numeric_codes(self.backup_code_count, self.backup_code_length)
        code_set = BackupCodeSet(
            user_id=user_id,
            codes=[BackupCode(code_hash=self.hasher.hash(code)) for code in codes],
            generated_at=self.clock(),
        )
        self.store.set(self._key(user_id, BACKUP_CODES_FIELD), code_set.to_dict())
        self._record_event(user_id, 'backup_codes_generated', count=len(codes))
        return codes

    def _load_backup_codes(self, user_id: str) -> Optional[BackupCodeSet]:
        data = self.store.get(self._key(user_id, BACKUP_CODES_FIELD))
        if not data:
            return None
        return BackupCodeSet.from_dict(data)

    def _verify_backup(self, user_id: str, code: str) -> VerificationResult:
        code_set = self._load_backup_codes(user_id)
        if code_set is None:
            raise NotProvisionedError("No backup codes generated for this account")

        for backup_code in code_set.codes:
            if backup_code.used:
                continue
            if self.hasher.verify(backup_code.code_hash, code):
                backup_code.used = True
                backup_code.used_at = self.clock()
                self.store.set(self._key(user_id, BACKUP_CODES_FIELD), code_set.to_dict())
                logger.info(
                    f"Backup code used for user {Sanitizer.mask_user_id(user_id)}, "
                    f"{code_set.remaining} remaining"
                )
                return VerificationResult(
                    success=True,
                    method=MFAMethod.BACKUP,
                    message="Backup code accepted",
                    remaining_codes=code_set.remaining,
                )

        return VerificationResult(success=False, method=MFAMethod.BACKUP, message="Invalid backup code")

    # ==================== OUT-OF-BAND CODES ====================

    def send_out_of_band(self, user_id: str, channel, destination: str) -> dict:
        """
        Generate, store and hand an SMS or email code to the transport.

        Returns:
            dict with the channel, masked destination and expiry in seconds

        Raises:
            ConfigurationError: no transport configured
            DeliveryError: transport failed; the stored code is withdrawn
        """
        channel = MFAMethod(channel)
        if channel not in OUT_OF_BAND_METHODS:
            raise ValueError(f"Unsupported delivery channel: {channel.value}")
        if self.transport is None:
            raise ConfigurationError("No delivery transport configured")

        masked = Sanitizer.mask_phone(destination) if channel == MFAMethod.SMS else Sanitizer.mask_email(destination)
        code = CodeGenerator.numeric_code(self.code_lengths[channel])
        record = OutOfBandCode(
            user_id=user_id,
            code=code,
            channel=channel.value,
            destination=masked,
            sent_at=self.clock(),
        )
        key = self._key(user_id, channel.value)
        self.store.set(key, record.to_dict(), expires_in=self.oob_expires)

        try:
            self.transport.send(channel.value, destination, code)
        except Exception as e:
            logger.error(f"Failed to deliver {channel.value} code to {masked}: {e}")
            self.store.remove(key)
            raise DeliveryError(f"Could not send verification code via {channel.value}") from e

        self._record_event(user_id, 'code_sent', channel=channel.value, destination=masked)
        logger.info(f"{channel.value.upper()} code sent to {masked}")
        return {
            "success": True,
            "channel": channel.value,
            "destination": masked,
            "expires_in": int(self.oob_expires),
        }

    def _live_out_of_band(self, user_id: str, channel: MFAMethod) -> Optional[OutOfBandCode]:
        data = self.store.get(self._key(user_id, channel.value))
        if not data:
            return None
        return OutOfBandCode.from_dict(data)

    def _verify_out_of_band(self, user_id: str, code: str, channel: MFAMethod) -> VerificationResult:
        key = self._key(user_id, channel.value)
        record = self.store.get_record(key)
        if record is None:
            return VerificationResult(
                success=False,
                method=channel,
                message="Verification code expired or not found",
            )

        stored = OutOfBandCode.from_dict(record.value)
        if stored.attempts >= self.oob_max_attempts:
            raise VerificationFailedError("Too many failed attempts. Request a new code.", attempts_remaining=0)

        if hmac.compare_digest(stored.code, code):
            self.store.remove(key)
            return VerificationResult(success=True, method=channel, message="Code verified")

        stored.attempts += 1
        # Keep the original expiry
        self.store.set(key, stored.to_dict(), expires_at=record.expires_at)
        remaining = self.oob_max_attempts - stored.attempts
        return VerificationResult(
            success=False,
            method=channel,
            message=f"Invalid code. {remaining} attempts remaining.",
            attempts_remaining=remaining,
        )

    # ==================== VERIFICATION ====================

    def is_provisioned(self, user_id: str, method=MFAMethod.TOTP) -> bool:
        method = MFAMethod(method)
        if method == MFAMethod.TOTP:
            credential = self._load_credential(user_id)
            return credential is not None and credential.verified
        if method == MFAMethod.BACKUP:
            code_set = self._load_backup_codes(user_id)
            return code_set is not None and code_set.remaining > 0
        return self._live_out_of_band(user_id, method) is not None

    def detect_method(self, user_id: str, code: str) -> MFAMethod:
        """
        Infer the method from the code's shape and what is provisioned.

        An 8-digit code that matches no live out-of-band code length is a
        backup code. A code of TOTP length goes to TOTP when it is set up.
        Otherwise a live out-of-band channel with a matching code length
        wins. Fallback: TOTP if provisioned, else backup.
        """
        live_lengths = {}
        for channel in OUT_OF_BAND_METHODS:
            pending = self._live_out_of_band(user_id, channel)
            if pending is not None:
                live_lengths[channel] = len(pending.code)

        if (
            code.isdigit()
            and len(code) == self.backup_code_length
            and len(code) not in live_lengths.values()
        ):
            return MFAMethod.BACKUP

        totp_ready = self.is_provisioned(user_id, MFAMethod.TOTP)
        if totp_ready and len(code) == self.digits:
            return MFAMethod.TOTP

        for channel, length in live_lengths.items():
            if length == len(code):
                return channel

        return MFAMethod.TOTP if totp_ready else MFAMethod.BACKUP

    def verify(self, user_id: str, code: str, method=None) -> VerificationResult:
        """
        Verify a second-factor code.

        Args:
            user_id: Account being verified
            code: Code entered by the user (whitespace and hyphens ignored)
            method: totp / backup / sms / email, auto-detected when omitted

        Returns:
            VerificationResult; a wrong code is a failed result, not an error

        Raises:
            RateLimitedError: MFA verification lockout
            NotProvisionedError: the method was never set up
            VerificationFailedError: out-of-band attempts exhausted
        """
        code = Sanitizer.normalize_code(code)
        method = MFAMethod(method) if method else self.detect_method(user_id, code)

        def check() -> VerificationResult:
            if method == MFAMethod.TOTP:
                return self._verify_totp(user_id, code)
            if method == MFAMethod.BACKUP:
                return self._verify_backup(user_id, code)
            return self._verify_out_of_band(user_id, code, method)

        result = self._guarded(user_id, method, check)
        if result.success:
            self.store.set(
                self._key(user_id, LAST_VERIFICATION_FIELD),
                {"method": method.value, "timestamp": self.clock()},
                sensitive=False,
            )
        return result

    def _guarded(self, user_id: str, method: MFAMethod, check: Callable[[], VerificationResult]) -> VerificationResult:
        guard_key = self.GUARD_PREFIX + user_id
        self.guard.ensure_not_locked(guard_key)

        try:
            result = check()
        except (NotProvisionedError, VerificationFailedError):
            self._on_failure(user_id, method, guard_key)
            raise

        if result.success:
            self.guard.clear_on_success(guard_key)
            self._record_event(user_id, 'verify_success', method=method.value)
        else:
            self._on_failure(user_id, method, guard_key)
        return result

    def _on_failure(self, user_id: str, method: MFAMethod, guard_key: str) -> None:
        logger.warning(f"MFA verification failed for user {Sanitizer.mask_user_id(user_id)} ({method.value})")
        try:
            # Raises RateLimitedError once the MFA layer locks
            self.guard.record_failed_attempt(guard_key)
        finally:
            self._record_event(user_id, 'verify_failed', method=method.value)

    # ==================== LIFECYCLE ====================

    def disable_all(self, user_id: str, verification_code: str, method=None) -> None:
        """
        Remove every MFA record of the user after a successful verification.

        Deletion is sequential. A failure midway leaves the already removed
        records removed.

        Raises:
            ConfigurationError: the verification did not succeed
        """
        try:
            result = self.verify(user_id, verification_code, method)
        except (NotProvisionedError, VerificationFailedError) as e:
            raise ConfigurationError(f"Valid verification required to disable MFA: {e}") from e
        if not result.success:
            raise ConfigurationError("Valid verification required to disable MFA")

        for field in (TOTP_FIELD, TOTP_PENDING_FIELD, BACKUP_CODES_FIELD, MFAMethod.SMS.value, MFAMethod.EMAIL.value):
            self.store.remove(self._key(user_id, field))

        self._record_event(user_id, 'mfa_disabled')
        logger.warning(f"MFA disabled for user {Sanitizer.mask_user_id(user_id)}")

    def get_status(self, user_id: str) -> dict:
        credential = self._load_credential(user_id)
        code_set = self._load_backup_codes(user_id)
        totp_enabled = credential is not None and credential.verified

        methods = []
        if totp_enabled:
            methods.append(MFAMethod.TOTP.value)
        if code_set is not None and code_set.remaining > 0:
            methods.append(MFAMethod.BACKUP.value)

        return {
            "enabled": bool(methods),
            "methods": methods,
            "totp_enabled_at": credential.enabled_at if totp_enabled else None,
            "backup_codes_remaining": code_set.remaining if code_set else 0,
            "pending_codes": [c.value for c in OUT_OF_BAND_METHODS if self._live_out_of_band(user_id, c)],
            "last_verification": self.store.get(self._key(user_id, LAST_VERIFICATION_FIELD)),
        }

    # ==================== AUDIT TRAIL ====================

    def get_events(self, user_id: str) -> list[dict]:
        return self.store.get(self._key(user_id, EVENTS_FIELD), [])

    def _record_event(self, user_id: str, event: str, **details) -> None:
        entry = {"event": event, "timestamp": self.clock(), "details": details}
        try:
            trail = self.get_events(user_id)
            trail.append(entry)
            self.store.set(self._key(user_id, EVENTS_FIELD), trail[-self.event_history:])
        except StorageUnavailableError:
            logger.exception(f"Could not write MFA audit event '{event}'")

        if self.events is not None:
            self.events.emit(AUTH_EVENT, event=f"mfa_{event}", user_id=user_id, metadata=details)
