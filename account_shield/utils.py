import re
import secrets
from urllib.parse import urlsplit

SENSITIVE_METADATA_FIELDS = ('password', 'token', 'apiKey', 'api_key', 'email', 'secret', 'code')


class CodeGenerator:
    @staticmethod
    def numeric_code(length: int) -> str:
        """Uniformly random fixed-width numeric code (leading zeros kept)"""
        return str(secrets.randbelow(10 ** length)).zfill(length)

    @staticmethod
    def unique_numeric_codes(count: int, length: int) -> list[str]:
        codes: list[str] = []
        while len(codes) < count:
            code = CodeGenerator.numeric_code(length)
            if code not in codes:
                codes.append(code)
        return codes


class Sanitizer:
    """Masks identifiers before they reach logs, alerts or API responses."""

    @staticmethod
    def normalize_identifier(identifier: str) -> str:
        return identifier.lower().strip()

    @staticmethod
    def normalize_code(code) -> str:
        return re.sub(r"[\s-]", "", str(code or ""))

    @staticmethod
    def mask_identifier(identifier: str) -> str:
        return (identifier or "")[:3] + "***"

    @staticmethod
    def mask_user_id(user_id) -> str:
        if not user_id:
            return "anonymous"
        return str(user_id)[:8] + "***"

    @staticmethod
    def mask_phone(phone: str) -> str:
        digits = re.sub(r"\D", "", phone or "")
        if len(digits) < 4:
            return "***"
        return f"***-***-{digits[-4:]}"

    @staticmethod
    def mask_email(email: str) -> str:
        return re.sub(r"^(.{1,2}).*(@.*)$", r"\1***\2", email or "")

    @staticmethod
    def sanitize_url(url: str) -> str:
        """Keep scheme, host and path; drop credentials, query and fragment"""
        try:
            parts = urlsplit(url)
        except (TypeError, ValueError):
            return "invalid_url"
        if not parts.scheme or not parts.hostname:
            return "invalid_url"
        return f"{parts.scheme}://{parts.hostname}{parts.path}"

    @staticmethod
    def sanitize_key(key: str) -> str:
        key = key or ""
        return key[:20] + ("***" if len(key) > 20 else "")

    @staticmethod
    def sanitize_metadata(metadata: dict) -> dict:
        return {k: v for k, v in (metadata or {}).items() if k not in SENSITIVE_METADATA_FIELDS}
