import asyncio
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from doubt_solver import config
from doubt_solver.errors import UpstreamError

logger = logging.getLogger(__name__)

APP_NAME = "DoubtNix"


class EmailSender:
    """Sends transactional mail over SMTP with STARTTLS.

    When no SMTP host is configured the message is logged instead, so login
    and password-reset codes stay usable in local development. Production
    refuses to send without SMTP.
    """

    def __init__(
        self,
        host: Optional[str] = config.SMTP_HOST,
        port: int = config.SMTP_PORT,
        username: Optional[str] = config.SMTP_USER,
        password: Optional[str] = config.SMTP_PASSWORD,
        sender: str = config.EMAIL_FROM,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender

    @property
    def configured(self) -> bool:
        return bool(self.host)

    def _send(self, to: str, subject: str, text: str, html: Optional[str] = None) -> None:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to
        msg.attach(MIMEText(text, "plain", "utf-8"))
        if html:
            msg.attach(MIMEText(html, "html", "utf-8"))

        with smtplib.SMTP(self.host, self.port, timeout=30) as server:
            server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.sendmail(self.sender, [to], msg.as_string())

    async def send(self, to: str, subject: str, text: str, html: Optional[str] = None) -> None:
        if not self.configured:
            if config.is_production():
                logger.error("SMTP is not configured; cannot send \"%s\" to %s", subject, to)
                raise UpstreamError("Email service is not configured")
            logger.warning("SMTP is not configured; email to %s not sent. Subject: %s\n%s", to, subject, text)
            return
        await asyncio.to_thread(self._send, to, subject, text, html)
        logger.info("Email sent to %s: %s", to, subject)

    async def send_login_otp(self, to: str, first_name: str, otp: str) -> None:
        text = (
            f"Hi {first_name or 'there'},\n\n"
            f"Your {APP_NAME} login verification code is: {otp}\n\n"
            "The code expires in 10 minutes. If you did not try to sign in, change your password."
        )
        await self.send(to, f"Login Verification Code - {APP_NAME}", text)

    async def send_password_reset_otp(self, to: str, first_name: str, otp: str) -> None:
        text = (
            f"Hi {first_name or 'there'},\n\n"
            f"Your {APP_NAME} password reset code is: {otp}\n\n"
            "The code expires in 10 minutes. If you did not ask for a reset, ignore this email."
        )
        await self.send(to, f"Password Reset Verification Code - {APP_NAME}", text)

    async def send_verification(self, to: str, first_name: str, token: str) -> None:
        link = f"{config.FRONTEND_URL}/verify-email?token={token}"
        text = (
            f"Hi {first_name or 'there'},\n\n"
            f"Please confirm your {APP_NAME} email address by opening this link:\n{link}\n\n"
            "The link expires in 24 hours."
        )
        await self.send(to, f"Verify your email - {APP_NAME}", text)

    async def send_welcome(self, to: str, first_name: str) -> None:
        text = (
            f"Hi {first_name or 'there'},\n\n"
            f"Welcome to {APP_NAME}! Upload a PDF, Word document or image and start asking questions about it."
        )
        await self.send(to, f"Welcome to {APP_NAME}", text)

    async def send_two_factor_enabled(self, to: str, first_name: str) -> None:
        text = (
            f"Hi {first_name or 'there'},\n\n"
            "Two-factor authentication is now enabled on your account. "
            "Keep your backup codes somewhere safe."
        )
        await self.send(to, f"Two-Factor Authentication Enabled - {APP_NAME}", text)
