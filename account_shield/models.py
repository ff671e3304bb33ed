import enum
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from sqlalchemy import Column, DateTime, String, Text
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


class Severity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class MFAMethod(str, enum.Enum):
    TOTP = "totp"
    BACKUP = "backup"
    SMS = "sms"
    EMAIL = "email"


OUT_OF_BAND_METHODS = (MFAMethod.SMS, MFAMethod.EMAIL)


class AlertType(str, enum.Enum):
    DEVICE_INTEGRITY = "device_integrity"
    RAPID_REQUESTS = "rapid_requests"
    EXCESSIVE_FAILURES = "excessive_failures"
    SLOW_RESPONSE = "slow_response"
    STORAGE_ERRORS = "storage_errors"
    STORAGE_CORRUPTION = "storage_corruption"
    MULTIPLE_LOGIN_FAILURES = "multiple_login_failures"
    RAPID_ACCOUNT_CREATION = "rapid_account_creation"
    UNUSUAL_ACCESS_TIME = "unusual_access_time"


# ==================== PERSISTENCE ====================

class KeyValueEntry(Base):
    """Raw row behind the SQLAlchemy key-value backend."""
    __tablename__ = 'secure_kv'

    raw_key = Column(String(512), primary_key=True)
    payload = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())


@dataclass(frozen=True)
class RecordKey:
    """Typed storage key. The store owns how it is formatted."""
    namespace: str
    entity_type: str
    entity_id: str = ""
    field: str = "value"


@dataclass
class Record:
    key: RecordKey
    value: Any
    encoded: bool
    created_at: float
    expires_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now > self.expires_at


@dataclass
class IntegrityReport:
    total: int = 0
    corrupted: int = 0
    expired: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


# ==================== LOCKOUT ====================

@dataclass
class LockoutCounter:
    identifier: str
    attempts: int = 0
    locked_until: Optional[float] = None
    first_attempt_at: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "LockoutCounter":
        return cls(**data)


@dataclass
class LockStatus:
    locked: bool
    minutes_remaining: int = 0

    def __bool__(self) -> bool:
        return self.locked


@dataclass
class AttemptResult:
    attempts: int
    attempts_remaining: int
    message: str


# ==================== SESSION ====================

@dataclass
class SessionRecord:
    user_id: str
    started_at: float
    last_activity_at: float

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "SessionRecord":
        return cls(**data)


# ==================== MFA ====================

@dataclass
class TOTPCredential:
    user_id: str
    secret: str
    enabled_at: float
    verified: bool = False

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TOTPCredential":
        return cls(**data)


@dataclass
class PendingTOTPSetup:
    user_id: str
    secret: str
    provisioning_uri: str
    created_at: float

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "PendingTOTPSetup":
        return cls(**data)


@dataclass
class BackupCode:
    code_hash: str
    used: bool = False
    used_at: Optional[float] = None


@dataclass
class BackupCodeSet:
    user_id: str
    codes: list = field(default_factory=list)
    generated_at: float = 0.0

    @property
    def remaining(self) -> int:
        return sum(1 for c in self.codes if not c.used)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "BackupCodeSet":
        codes = [BackupCode(**c) for c in data.get("codes", [])]
        return cls(user_id=data["user_id"], codes=codes, generated_at=data.get("generated_at", 0.0))


@dataclass
class OutOfBandCode:
    user_id: str
    code: str
    channel: str
    destination: str  # masked
    sent_at: float
    attempts: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "OutOfBandCode":
        return cls(**data)


@dataclass
class VerificationResult:
    success: bool
    method: MFAMethod
    message: str = ""
    attempts_remaining: Optional[int] = None
    remaining_codes: Optional[int] = None
    backup_codes: Optional[list] = None

    def to_dict(self) -> dict:
        data = {"success": self.success, "method": self.method.value, "message": self.message}
        if self.attempts_remaining is not None:
            data["attempts_remaining"] = self.attempts_remaining
        if self.remaining_codes is not None:
            data["remaining_codes"] = self.remaining_codes
        if self.backup_codes is not None:
            data["backup_codes"] = list(self.backup_codes)
        return data


@dataclass
class TOTPSetup:
    secret: str
    provisioning_uri: str
    qr_code: Optional[str] = None


# ==================== MONITORING ====================

@dataclass
class DeviceFingerprint:
    platform: str
    os_version: str
    screen_width: int
    screen_height: int
    captured_at: float

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "DeviceFingerprint":
        return cls(**data)


@dataclass
class SecurityAlert:
    type: str
    severity: Severity
    details: dict
    timestamp: float
    device_fingerprint: Optional[dict] = None

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "severity": self.severity.value,
            "details": self.details,
            "timestamp": self.timestamp,
            "device_fingerprint": self.device_fingerprint,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SecurityAlert":
        return cls(
            type=data["type"],
            severity=Severity(data["severity"]),
            details=data.get("details", {}),
            timestamp=data["timestamp"],
            device_fingerprint=data.get("device_fingerprint"),
        )


@dataclass
class AuthEvent:
    event: str
    user_id: Optional[str]
    metadata: dict
    timestamp: float
    # keyed digest of the full user id, used for per-user grouping
    subject: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "AuthEvent":
        return cls(**data)


@dataclass
class ApiCall:
    url: str
    method: str
    status: int
    duration: float
    timestamp: float


@dataclass
class StorageFailure:
    operation: str
    key: str
    error: str
    timestamp: float
