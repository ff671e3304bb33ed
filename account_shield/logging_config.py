import logging
import re

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_REDACTIONS = [
    (re.compile(r"(user_?id)[:=\s]*[^\s,}]+", re.IGNORECASE), r"\1: [REDACTED]"),
    (re.compile(r"(email)[:=\s]*[^\s,}]+", re.IGNORECASE), r"\1: [REDACTED]"),
    (re.compile(r"(token)[:=\s]*[^\s,}]+", re.IGNORECASE), r"\1: [REDACTED]"),
    (re.compile(r"(password)[:=\s]*[^\s,}]+", re.IGNORECASE), r"\1: [REDACTED]"),
    (re.compile(r"(key)[:=\s]*[^\s,}]+", re.IGNORECASE), r"\1: [REDACTED]"),
]


class RedactingFilter(logging.Filter):
    """Scrubs identifiers, tokens and keys from production log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        for pattern, replacement in _REDACTIONS:
            message = pattern.sub(replacement, message)
        record.msg = message
        record.args = None
        return True


def configure_logging(level: str = "INFO", redact: bool = True) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
    if redact:
        for handler in logging.getLogger().handlers:
            if not any(isinstance(f, RedactingFilter) for f in handler.filters):
                handler.addFilter(RedactingFilter())
