from abc import ABC, abstractmethod
from dataclasses import dataclass
from fastapi_mail import FastMail, MessageSchema, ConnectionConfig, MessageType
from typing import List, Optional
import httpx
import logging

from core.config import Settings
from utils.helpers import mask_email

logger = logging.getLogger(__name__)


class EmailDeliveryError(Exception):
    """Raised by a sender when the provider did not accept the message."""


@dataclass
class EmailMessage:
    to: str
    subject: str
    html_body: str
    text_body: str


def build_otp_email(to: str, otp_code: str, expires_in_minutes: int, app_name: str = "OTP Auth") -> EmailMessage:
    """Render the sign-in code email."""
    html_content = f"""
    <html>
        <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
            <div style="background-color: #f8f9fa; padding: 20px; border-radius: 10px;">
                <h2 style="color: #333; text-align: center;">{app_name} - Sign-in Code</h2>
                <div style="background-color: white; padding: 30px; border-radius: 8px; margin: 20px 0;">
                    <p>Hello,</p>
                    <p>Your sign-in code is:</p>
                    <div style="text-align: center; margin: 30px 0;">
                        <span style="font-size: 32px; font-weight: bold; color: #007bff;
                                   background-color: #f8f9fa; padding: 15px 25px;
                                   border-radius: 8px; letter-spacing: 5px;">{otp_code}</span>
                    </div>
                    <p>This code will expire in {expires_in_minutes} minutes.</p>
                    <p>If you didn't request this code, please ignore this email.</p>
                </div>
            </div>
        </body>
    </html>
    """

    text_content = (
        f"Your {app_name} sign-in code is: {otp_code}\n\n"
        f"This code will expire in {expires_in_minutes} minutes.\n"
        "If you didn't request this code, please ignore this email.\n"
    )

    return EmailMessage(
        to=to,
        subject=f"{app_name} - Your Sign-in Code",
        html_body=html_content,
        text_body=text_content,
    )


class EmailSender(ABC):
    """Delivers a message out-of-band. Raises EmailDeliveryError on failure."""

    @abstractmethod
    async def send(self, message: EmailMessage) -> None:
        pass


class ConsoleEmailSender(EmailSender):
    """Development sender: logs the message and keeps it in ``outbox``."""

    def __init__(self):
        self.outbox: List[EmailMessage] = []

    async def send(self, message: EmailMessage) -> None:
        self.outbox.append(message)
        logger.info(f"[Email][Console] To: {mask_email(message.to)}")
        logger.info(f"[Email][Console] Subject: {message.subject}")
        logger.debug(f"[Email][Console] Body:\n{message.text_body}")

    def last_message_to(self, email: str) -> Optional[EmailMessage]:
        for message in reversed(self.outbox):
            if message.to == email:
                return message
        return None


class SmtpEmailSender(EmailSender):
    """SMTP delivery through fastapi-mail."""

    def __init__(self, settings: Settings):
        self.conf = ConnectionConfig(
            MAIL_USERNAME=settings.MAIL_USERNAME,
            MAIL_PASSWORD=settings.MAIL_PASSWORD,
            MAIL_FROM=settings.EMAIL_FROM,
            MAIL_PORT=settings.MAIL_PORT,
            MAIL_SERVER=settings.MAIL_SERVER,
            MAIL_FROM_NAME=settings.MAIL_FROM_NAME,
            MAIL_STARTTLS=settings.MAIL_STARTTLS,
            MAIL_SSL_TLS=settings.MAIL_SSL_TLS,
            USE_CREDENTIALS=settings.USE_CREDENTIALS,
            VALIDATE_CERTS=settings.VALIDATE_CERTS,
        )
        self.fm = FastMail(self.conf)

    async def send(self, message: EmailMessage) -> None:
        schema = MessageSchema(
            subject=message.subject,
            recipients=[message.to],
            body=message.html_body,
            subtype=MessageType.html,
        )
        try:
            await self.fm.send_message(schema)
        except Exception as e:
            raise EmailDeliveryError(f"SMTP delivery failed: {e}") from e
        logger.info(f"[Email][SMTP] Sent to {mask_email(message.to)}")


class SendGridEmailSender(EmailSender):
    """SendGrid v3 REST API over httpx."""

    SENDGRID_API_URL = "https://api.sendgrid.com/v3/mail/send"

    def __init__(self, api_key: str, from_email: str, from_name: Optional[str] = None, timeout: float = 30.0):
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self.timeout = timeout

    async def send(self, message: EmailMessage) -> None:
        sender = {"email": self.from_email}
        if self.from_name:
            sender["name"] = self.from_name

        payload = {
            "personalizations": [{"to": [{"email": message.to}]}],
            "from": sender,
            "subject": message.subject,
            "content": [
                {"type": "text/plain", "value": message.text_body},
                {"type": "text/html", "value": message.html_body},
            ],
        }

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    self.SENDGRID_API_URL,
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    timeout=self.timeout,
                )
        except httpx.HTTPError as e:
            raise EmailDeliveryError(f"SendGrid request failed: {e}") from e

        if response.status_code not in (200, 201, 202):
            raise EmailDeliveryError(f"SendGrid rejected message: {response.status_code} - {response.text}")
        logger.info(f"[Email][SendGrid] Sent to {mask_email(message.to)}")


def get_email_sender(settings: Settings) -> EmailSender:
    """Build the sender selected by EMAIL_PROVIDER."""
    provider = settings.EMAIL_PROVIDER.lower()

    if provider in ("console", "mock"):
        return ConsoleEmailSender()

    if provider == "smtp":
        if not settings.MAIL_SERVER:
            raise ValueError("EMAIL_PROVIDER=smtp requires MAIL_SERVER")
        return SmtpEmailSender(settings)

    if provider == "sendgrid":
        if not settings.SENDGRID_API_KEY:
            raise ValueError("EMAIL_PROVIDER=sendgrid requires SENDGRID_API_KEY")
        return SendGridEmailSender(settings.SENDGRID_API_KEY, settings.EMAIL_FROM, settings.MAIL_FROM_NAME)

    logger.warning(f"Unknown EMAIL_PROVIDER '{settings.EMAIL_PROVIDER}', falling back to console sender")
    return ConsoleEmailSender()
