from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Mapping, Optional

from learnquest.config import SmtpSecurity
from learnquest.logging import get_logger, mask_email

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30

LAYOUT_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>{{TITLE}}</title>
    <style>
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .content { margin: 30px 0; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
    </style>
</head>
<body>
    <div class="container">
        <h1>{{TITLE}}</h1>
        <p>Hi {{FULL_NAME}},</p>
        <p>{{MESSAGE}}</p>
        <div class="content">{{CONTENT}}</div>
        <div class="footer">
            <p>{{FOOTER_MESSAGE}}</p>
            <p>LearnQuest</p>
        </div>
    </div>
</body>
</html>
"""

TEXT_TEMPLATE = """{{TITLE}}

Hi {{FULL_NAME}},

{{MESSAGE}}

{{CONTENT}}

---
{{FOOTER_MESSAGE}}
LearnQuest
"""


def render_template(template: str, values: Mapping[str, object]) -> str:
    """Replace every ``{{KEY}}`` placeholder with ``values[KEY]``.

    Substitution is literal: values are not escaped, and placeholders without
    a value are left in place.
    """
    rendered = template
    for key, value in values.items():
        rendered = rendered.replace("{{" + key + "}}", "" if value is None else str(value))
    return rendered


class EmailService:
    """SMTP transport for transactional email.

    Supports:
    - STARTTLS, implicit SSL, or plain SMTP
    - A bounded connect/send timeout
    - Fallback to logging when not configured (dev mode)
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        security: SmtpSecurity = SmtpSecurity.STARTTLS,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        from_email: Optional[str] = None,
        from_name: str = "LearnQuest",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.security = SmtpSecurity(security)
        self.timeout = timeout
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _build_message(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str]
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def _open(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.security is SmtpSecurity.SSL:
            return smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
            )
        server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout)
        if self.security is SmtpSecurity.STARTTLS:
            server.starttls(context=context)
        return server

    def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=mask_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        try:
            msg = self._build_message(to_email, subject, html_body, text_body)
            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                security=self.security.value,
                to=mask_email(to_email),
            )
            with self._open() as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=mask_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                error=str(e),
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPConnectError as e:
            logger.error(
                "email_connect_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=mask_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=mask_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=mask_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except TimeoutError as e:
            logger.error(
                "email_timeout",
                to=mask_email(to_email),
                host=self.smtp_host,
                timeout=self.timeout,
                error=str(e),
            )
            return False
        except OSError as e:
            logger.error(
                "email_send_failed",
                to=mask_email(to_email),
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
