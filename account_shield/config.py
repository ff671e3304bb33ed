"""
Configuration Module for the Account Shield security core

This module manages all security configuration parameters.
CRITICAL: Load all secrets from environment variables in production.
"""

import os
from datetime import timedelta

from dotenv import load_dotenv

load_dotenv()


class SecurityConfig:
    """
    Central configuration class for lockout, session, MFA and monitoring.
    All security-critical parameters are defined here with secure defaults.
    """

    # ==================== CRYPTOGRAPHIC SETTINGS ====================

    # CRITICAL: Load from environment variables - NEVER hardcode in production
    DATA_ENCRYPTION_SECRET = os.getenv('DATA_ENCRYPTION_SECRET', 'CHANGE_IN_PRODUCTION_USE_ENV_VAR')
    CODEC_KEY_SALT = b'account-shield-record-codec-v1'
    CODEC_KEY_INFO = b'record-codec'

    # AES-256-GCM encryption settings
    AES_KEY_SIZE = 32  # 256 bits
    AES_NONCE_SIZE = 12  # 96 bits (recommended for GCM)

    # Argon2id parameters for backup code hashes
    ARGON2_TIME_COST = 2
    ARGON2_MEMORY_COST = 19456  # 19 MB
    ARGON2_PARALLELISM = 1
    ARGON2_HASH_LENGTH = 32
    ARGON2_SALT_LENGTH = 16

    # ==================== STORAGE ====================

    STORAGE_URL = os.getenv('STORAGE_URL', 'sqlite:///account_shield.db')
    STORAGE_PREFIX = '_secure'
    SECURITY_NAMESPACE = 'security'

    # ==================== BRUTE FORCE PROTECTION ====================

    # Credential-stage lockout
    MAX_LOGIN_ATTEMPTS = 5
    LOGIN_ATTEMPT_WINDOW = timedelta(minutes=15)
    ACCOUNT_LOCKOUT_DURATION = timedelta(minutes=15)

    # Password reset cooldown
    PASSWORD_RESET_COOLDOWN = timedelta(minutes=5)

    # Suspicious activity escalation
    SUSPICIOUS_ACTIVITY_THRESHOLD = 3
    SUSPICIOUS_ACTIVITY_WINDOW = timedelta(hours=1)
    SUSPICIOUS_DETECTIONS_BEFORE_LOGOUT = 3

    # ==================== SESSION MANAGEMENT ====================

    SESSION_ABSOLUTE_TIMEOUT = timedelta(hours=24)
    SESSION_IDLE_TIMEOUT = timedelta(minutes=30)
    SESSION_CHECK_INTERVAL = timedelta(seconds=60)

    # ==================== MFA SETTINGS ====================

    # TOTP settings (RFC 6238)
    TOTP_INTERVAL = 30  # Time step in seconds
    TOTP_DIGITS = 6  # Number of digits in OTP
    TOTP_VALID_WINDOW = 1  # +/- one time step for clock drift
    TOTP_ISSUER = os.getenv('TOTP_ISSUER', 'AccountShield')
    TOTP_SETUP_EXPIRES = timedelta(minutes=10)

    # Backup codes
    MFA_BACKUP_CODE_COUNT = 10
    MFA_BACKUP_CODE_LENGTH = 8

    # Out-of-band (SMS / email) codes
    SMS_CODE_LENGTH = 6
    EMAIL_CODE_LENGTH = 6
    OOB_CODE_EXPIRES = timedelta(minutes=10)
    OOB_MAX_ATTEMPTS = 3

    # Second lockout layer on MFA verification
    MFA_MAX_VERIFY_ATTEMPTS = 5
    MFA_VERIFY_LOCKOUT_DURATION = timedelta(minutes=15)

    # Audit trail
    MFA_EVENT_HISTORY = 100

    # ==================== SECURITY MONITORING ====================

    ALERT_COOLDOWN = timedelta(minutes=10)
    ALERT_RETENTION = timedelta(days=7)
    MAX_STORED_ALERTS = 500
    PERIODIC_CHECK_INTERVAL = timedelta(minutes=5)

    # Request pattern monitor
    RAPID_REQUEST_WINDOW = timedelta(minutes=1)
    MAX_RAPID_REQUESTS = 20
    MAX_FAILED_REQUESTS = 10
    FAILED_REQUEST_STATUS = 400
    SLOW_RESPONSE_THRESHOLD = timedelta(seconds=30)

    # Storage error monitor
    STORAGE_ERROR_WINDOW = timedelta(hours=1)
    MAX_STORAGE_ERRORS = 5

    # Auth pattern monitor
    AUTH_EVENT_RETENTION = timedelta(hours=24)
    AUTH_PATTERN_WINDOW = timedelta(minutes=5)
    MAX_LOGIN_FAILURES_IN_WINDOW = 5
    RAPID_ACCOUNT_CREATION_THRESHOLD = 3
    UNUSUAL_LOGIN_HOURS = (2, 6)  # inclusive local hours
    UNUSUAL_LOGIN_THRESHOLD = 2

    # Device fingerprint
    DEVICE_CHANGE_THRESHOLD = 3
    DEVICE_HIGH_SEVERITY_SCORE = 3
    DEVICE_WEIGHT_PLATFORM = 3
    DEVICE_WEIGHT_SCREEN = 2
    DEVICE_WEIGHT_OS_VERSION = 1
    DEVICE_SCREEN_WIDTH = int(os.getenv('DEVICE_SCREEN_WIDTH', '0'))
    DEVICE_SCREEN_HEIGHT = int(os.getenv('DEVICE_SCREEN_HEIGHT', '0'))

    # Medium severity tightens thresholds
    SENSITIVITY_STEP = 0.8
    SENSITIVITY_FLOOR = 0.5

    # ==================== LOGGING ====================

    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
    LOG_REDACT = True

    # ==================== EMAIL SETTINGS ====================

    # SMTP configuration (load from environment)
    SMTP_HOST = os.getenv('SMTP_HOST', 'localhost')
    SMTP_PORT = int(os.getenv('SMTP_PORT', '587'))
    SMTP_USERNAME = os.getenv('SMTP_USERNAME', '')
    SMTP_PASSWORD = os.getenv('SMTP_PASSWORD', '')
    SMTP_USE_TLS = True
    EMAIL_FROM = os.getenv('EMAIL_FROM', 'noreply@accountshield.local')


class DevelopmentConfig(SecurityConfig):
    """Development configuration - verbose logging, codes echoed to console"""
    LOG_LEVEL = 'DEBUG'
    LOG_REDACT = False


class TestingConfig(SecurityConfig):
    """Test configuration - cheap hashing, in-memory storage"""
    DATA_ENCRYPTION_SECRET = 'test-secret-not-for-production'
    STORAGE_URL = 'sqlite://'
    ARGON2_TIME_COST = 1
    ARGON2_MEMORY_COST = 1024
    LOG_REDACT = False


class ProductionConfig(SecurityConfig):
    """Production configuration - maximum security"""
    LOG_REDACT = True
    SESSION_IDLE_TIMEOUT = timedelta(minutes=20)


def get_config() -> SecurityConfig:
    """
    Returns appropriate configuration based on environment.
    Default to production for safety.
    """
    env = os.getenv('ACCOUNT_SHIELD_ENV', 'production')
    if env == 'development':
        return DevelopmentConfig()
    if env == 'testing':
        return TestingConfig()
    return ProductionConfig()


def seconds(value) -> float:
    """Normalise a timedelta or a number of seconds to float seconds."""
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)
