"""
Email Service

Sends verification codes over SMTP. When email is disabled the message is
only logged, which is what development and the test suite rely on.
"""

import logging
import smtplib
from collections import deque
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Deque, Optional

from .config import Settings

logger = logging.getLogger(__name__)

PURPOSE_SUBJECTS = {
    "email_change": "Verify your new email address",
    "password_reset": "Your password reset code",
    "account_deletion": "Confirm your account deletion",
}


@dataclass
class SentEmail:
    to_email: str
    subject: str
    text_content: str
    sent: bool


class EmailService:
    """Service for sending emails"""

    def __init__(self, settings: Settings):
        self.smtp_server = settings.smtp_server
        self.smtp_port = settings.smtp_port
        self.smtp_username = settings.smtp_username
        self.smtp_password = settings.smtp_password
        self.from_email = settings.from_email
        self.from_name = settings.from_name
        self.enabled = settings.email_enabled
        # Recent messages, handy when email is disabled in development
        self.outbox: Deque[SentEmail] = deque(maxlen=100)

    def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: Optional[str] = None,
    ) -> bool:
        """
        Send an email.

        Returns True if sent successfully, False otherwise.
        """
        if not self.enabled:
            logger.info("Email disabled, would send to %s: %s", to_email, subject)
            self.outbox.append(SentEmail(to_email, subject, text_content or html_content, False))
            return False

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email

            if text_content:
                msg.attach(MIMEText(text_content, "plain"))
            msg.attach(MIMEText(html_content, "html"))

            with smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=10) as server:
                server.starttls()
                if self.smtp_username and self.smtp_password:
                    server.login(self.smtp_username, self.smtp_password)
                server.send_message(msg)

            self.outbox.append(SentEmail(to_email, subject, text_content or html_content, True))
            return True

        except Exception as e:
            logger.error("Error sending email to %s: %s", to_email, e)
            return False

    def send_verification_code(self, to_email: str, code: str, purpose: str) -> bool:
        subject = PURPOSE_SUBJECTS.get(purpose, "Your verification code")
        text_content = (
            f"Your FitTrack verification code is {code}.\n\n"
            "It expires in one hour. If you did not request it, you can ignore this email."
        )
        html_content = (
            f"<p>Your FitTrack verification code is <strong>{code}</strong>.</p>"
            "<p>It expires in one hour. If you did not request it, you can ignore this email.</p>"
        )
        return self.send_email(to_email, subject, html_content, text_content)
