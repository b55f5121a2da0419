"""
Outbound email - SendGrid-based, built once by the app factory and injected
into handlers and jobs (no module-level client).

Every send is best-effort from the caller's point of view: failures come
back as a result dict, they are never raised.
"""
import asyncio
import logging
from html import escape
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class Mailer(Protocol):
    async def send(self, to_email: str, subject: str, html_content: str, text_content: str) -> dict:
        ...


class SendGridMailer:
    """Mailer backed by the SendGrid SDK (sync client offloaded to a thread)."""

    def __init__(self, api_key: str, from_email: str, from_name: str):
        self._api_key = api_key
        self._from_email = from_email
        self._from_name = from_name

    async def send(self, to_email: str, subject: str, html_content: str, text_content: str) -> dict:
        """Returns {"message_id": str|None, "status": str, "error": str|None}."""
        try:
            from sendgrid import SendGridAPIClient
            from sendgrid.helpers.mail import Mail, Email, To, Content

            message = Mail(
                from_email=Email(self._from_email, self._from_name),
                to_emails=To(to_email),
                subject=subject,
            )
            message.content = [
                Content("text/plain", text_content),
                Content("text/html", html_content),
            ]

            sg = SendGridAPIClient(api_key=self._api_key)
            loop = asyncio.get_running_loop()
            response = await loop.run_in_executor(None, lambda: sg.send(message))
            message_id = response.headers.get("X-Message-Id", "")

            logger.info("Email sent: to=%s subject=%s", to_email[:20] + "***", subject[:40])
            return {"message_id": message_id, "status": "sent", "error": None}
        except Exception as e:
            logger.error("Email failed: to=%s error=%s", to_email[:20] + "***", str(e))
            return {"message_id": None, "status": "error", "error": str(e)}


class NullMailer:
    """Used when SendGrid is not configured. Logs and reports not_configured."""

    async def send(self, to_email: str, subject: str, html_content: str, text_content: str) -> dict:
        logger.warning("Email not sent (SendGrid not configured): subject=%s", subject[:40])
        return {"message_id": None, "status": "not_configured", "error": "SendGrid not configured"}


def build_mailer(settings) -> Mailer:
    if settings.sendgrid_api_key:
        return SendGridMailer(settings.sendgrid_api_key, settings.from_email, settings.from_name)
    return NullMailer()


async def send_quote_approved(
    mailer: Mailer,
    customer_name: str,
    customer_email: str,
    token: str,
    base_url: str,
    total_amount: Optional[float] = None,
) -> dict:
    """Tell the customer their accepted quote is in review, with the confirmation link."""
    link = f"{base_url.rstrip('/')}/quote/{token}"
    amount = f" for R{total_amount:,.2f}" if total_amount else ""
    text = (
        f"Hi {customer_name},\n\n"
        f"Thanks for accepting our quote{amount}. "
        f"Please confirm your details and delivery option here: {link}\n"
    )
    html = (
        f"<p>Hi {escape(customer_name)},</p>"
        f"<p>Thanks for accepting our quote{amount}.</p>"
        f'<p><a href="{escape(link)}">Confirm your details and delivery option</a></p>'
    )
    return await mailer.send(customer_email, "Your quote has been approved", html, text)


async def send_gear_received(mailer: Mailer, customer_name: str, customer_email: str) -> dict:
    """Tell the customer their gear arrived and inspection has started."""
    text = (
        f"Hi {customer_name},\n\n"
        "We've received your gear and our team has started the inspection. "
        "We'll be in touch once it's done.\n"
    )
    html = (
        f"<p>Hi {escape(customer_name)},</p>"
        "<p>We've received your gear and our team has started the inspection. "
        "We'll be in touch once it's done.</p>"
    )
    return await mailer.send(customer_email, "We've received your gear", html, text)
