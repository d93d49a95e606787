"""Outbound email delivery and rendering collaborators."""

import html as html_lib
import re
from typing import Callable, Optional, Protocol

import aiohttp

from loam.emails.scheduled_email import EmailMessage, Recipient, ScheduledEmail
from loam.main.aiohttp_client import aiohttp_client
from loam.main.config import Settings, get_settings
from loam.main.exceptions import ConfigurationError, UpstreamError
from loam.main.logging import get_logger

logger = get_logger(__name__)

_STYLE_OR_SCRIPT = re.compile(r"<(style|script)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_TAG = re.compile(r"<[^>]+>")
_WHITESPACE = re.compile(r"\s+")


def strip_html(html: str) -> str:
    """Plain-text fallback for clients that do not render HTML."""
    text = _STYLE_OR_SCRIPT.sub("", html)
    text = _TAG.sub("", text)
    return _WHITESPACE.sub(" ", text).strip()


class EmailSender(Protocol):
    async def send(self, message: EmailMessage) -> str:
        """Deliver one message and return the provider message id."""
        ...


class EmailRenderer(Protocol):
    def render(
        self, email: ScheduledEmail, recipient: Recipient, unsubscribe_url: str
    ) -> str: ...


class AnnouncementRenderer:
    """Wraps the admin-authored HTML with a greeting and an unsubscribe footer."""

    def render(self, email: ScheduledEmail, recipient: Recipient, unsubscribe_url: str) -> str:
        greeting = f"Hi {html_lib.escape(recipient.first_name)}," if recipient.first_name else "Hi there,"
        return (
            "<html><body>"
            f"<p>{greeting}</p>"
            f"{email.message_html}"
            f'<p style="font-size:12px"><a href="{html_lib.escape(unsubscribe_url)}">Unsubscribe</a></p>'
            "</body></html>"
        )


class ResendEmailSender:
    """Sends through the Resend HTTP API on the shared aiohttp session."""

    def __init__(
        self,
        session: Callable[[], aiohttp.ClientSession] = aiohttp_client,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        from_address: Optional[str] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self._session = session
        self._api_key = api_key or settings.resend_api_key
        self._api_url = api_url or settings.resend_api_url
        self._from_address = from_address or settings.email_from_address

    async def send(self, message: EmailMessage) -> str:
        if not self._api_key:
            raise ConfigurationError("RESEND_API_KEY is not set")

        payload = {
            "from": self._from_address,
            "to": message.to,
            "subject": message.subject,
            "html": message.html,
            "text": message.text or strip_html(message.html),
        }
        headers = {"Authorization": f"Bearer {self._api_key}"}

        async with self._session().post(self._api_url, json=payload, headers=headers) as response:
            if response.status >= 400:
                detail = await response.text()
                raise UpstreamError("resend", status=response.status, detail=detail[:200])
            data = await response.json()

        message_id = (data or {}).get("id", "")
        logger.debug("Email sent", extra={"provider_message_id": message_id})
        return message_id
