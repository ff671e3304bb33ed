"""
Delivery transports for out-of-band verification codes
"""

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .config import SecurityConfig
from .errors import DeliveryError
from .utils import Sanitizer

logger = logging.getLogger(__name__)


class SmtpEmailTransport:
    """Sends email codes over SMTP (STARTTLS when configured)"""

    def __init__(self, config: SecurityConfig):
        self.host = config.SMTP_HOST
        self.port = config.SMTP_PORT
        self.username = config.SMTP_USERNAME
        self.password = config.SMTP_PASSWORD
        self.use_tls = config.SMTP_USE_TLS
        self.sender = config.EMAIL_FROM

    def build_message(self, to_email: str, code: str) -> MIMEMultipart:
        msg = MIMEMultipart('alternative')
        msg['Subject'] = "Your verification code"
        msg['From'] = self.sender
        msg['To'] = to_email

        body = f"""
        <h2>Verification code</h2>
        <p>Your verification code is <strong>{code}</strong>.</p>
        <p>This code expires in 10 minutes.</p>
        <p>If you didn't request this, please ignore this email.</p>
        """
        msg.attach(MIMEText(body, 'html'))
        return msg

    def send(self, channel: str, destination: str, code: str) -> None:
        if channel != 'email':
            raise DeliveryError(f"SMTP transport cannot deliver via {channel}")
        try:
            with smtplib.SMTP(self.host, self.port) as server:
                if self.use_tls:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.send_message(self.build_message(destination, code))
        except (smtplib.SMTPException, OSError) as e:
            # Non-descriptive error toward the caller
            raise DeliveryError("Email delivery failed") from e


class ConsoleTransport:
    """Development transport: logs instead of delivering."""

    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []

    def send(self, channel: str, destination: str, code: str) -> None:
        self.sent.append((channel, destination, code))
        masked = Sanitizer.mask_phone(destination) if channel == 'sms' else Sanitizer.mask_email(destination)
        logger.debug(f"[{channel}] code for {masked}: {code}")


class ChannelRouter:
    """Dispatches each channel to its own transport."""

    def __init__(self, routes: dict):
        self.routes = dict(routes)

    def send(self, channel: str, destination: str, code: str) -> None:
        transport = self.routes.get(channel)
        if transport is None:
            raise DeliveryError(f"No transport configured for {channel}")
        transport.send(channel, destination, code)
