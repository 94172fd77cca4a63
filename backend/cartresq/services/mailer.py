# /cartresq/services/mailer.py

import asyncio
import logging
import smtplib
import socket
from email.message import EmailMessage
from email.utils import formataddr, formatdate, make_msgid
from typing import Dict, Optional
import tenacity

from cartresq.services.email_renderer import html_to_text
from cartresq.utils.errors import (
    DeliveryError, FatalDeliveryError, ProviderBlockedError, RateLimitedError
)
from cartresq.utils.logging import mask_email

logger = logging.getLogger(__name__)

# SMTP replies that mean "slow down / try later"
TRANSIENT_SMTP_CODES = {421, 450, 451, 452}

_CONNECTION_ERRORS = (smtplib.SMTPServerDisconnected, smtplib.SMTPConnectError, ConnectionError, socket.timeout)


def classify_smtp_error(code: int, message) -> DeliveryError:
    """Maps an SMTP reply to the delivery error taxonomy."""
    if isinstance(message, bytes):
        message = message.decode(errors="replace")
    text = f"SMTP {code}: {message}"
    if code == 550 and "unusual sending activity" in str(message).lower():
        return ProviderBlockedError(text, code=code)
    if code in TRANSIENT_SMTP_CODES:
        return RateLimitedError(text, code=code)
    return FatalDeliveryError(text)


class SmtpMailer:
    def __init__(
        self,
        host: str,
        port: int,
        username: Optional[str],
        password: Optional[str],
        from_email: Optional[str],
        from_name: str = "",
        use_tls: bool = True,
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_email = from_email
        self.from_name = from_name
        self.use_tls = use_tls
        self.timeout = timeout

    def build_message(
        self, to: str, subject: str, html: str,
        headers: Optional[Dict[str, str]] = None, text: Optional[str] = None,
    ) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = formataddr((self.from_name, self.from_email or ""))
        msg["To"] = to
        msg["Subject"] = subject
        msg["Date"] = formatdate(localtime=False)
        domain = (self.from_email or "localhost").rsplit("@", 1)[-1]
        msg["Message-ID"] = make_msgid(domain=domain)
        for name, value in (headers or {}).items():
            msg[name] = value
        msg.set_content(text if text is not None else html_to_text(html))
        msg.add_alternative(html, subtype="html")
        return msg

    def _deliver(self, msg: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.use_tls:
                smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password)
            smtp.send_message(msg)

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type(_CONNECTION_ERRORS),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True
    )
    async def send(
        self, to: str, subject: str, html: str,
        headers: Optional[Dict[str, str]] = None, text: Optional[str] = None,
    ) -> str:
        """
        Sends one email and returns its Message-ID.
        Raises RateLimitedError / ProviderBlockedError for provider throttling and
        FatalDeliveryError for permanent rejections. Dropped connections are retried here.
        """
        msg = self.build_message(to, subject, html, headers=headers, text=text)
        try:
            await asyncio.to_thread(self._deliver, msg)
        except _CONNECTION_ERRORS:
            raise
        except smtplib.SMTPRecipientsRefused as e:
            code, reply = next(iter(e.recipients.values()))
            raise classify_smtp_error(code, reply) from e
        except smtplib.SMTPResponseException as e:
            raise classify_smtp_error(e.smtp_code, e.smtp_error) from e

        logger.info(f"Email sent to {mask_email(to)} ({msg['Message-ID']})")
        return msg["Message-ID"]
