"""Notifications through the local notification service.

The service accepts a JSON POST with a title, body and either an HTML body or
a link. Delivery is best effort: callers go through notify_safely, which logs
failures instead of raising.
"""

import html
from typing import Any, Protocol

import httpx
import structlog

from .config import Settings

logger = structlog.get_logger(__name__)


class Notifier(Protocol):
    def send(self, title: str, body: str, html_body: str | None = None, url: str | None = None) -> Any:
        ...


def build_payload(title: str, body: str, html_body: str | None = None, url: str | None = None) -> dict:
    if not title or not isinstance(title, str):
        raise ValueError("Notification title is required.")
    if not body or not isinstance(body, str):
        raise ValueError("Notification body is required.")
    if html_body and url:
        raise ValueError("Provide either html or url, not both.")

    payload: dict[str, Any] = {"title": title, "body": body, "sendNow": True}
    if html_body:
        payload["html"] = html_body
    if url:
        payload["url"] = url
    return payload


class LocalNotifier:
    """POSTs notifications to the local notify endpoint."""

    def __init__(self, endpoint: str, timeout: float = 5.0, transport: httpx.BaseTransport | None = None):
        self.endpoint = endpoint
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "LocalNotifier":
        return cls(settings.notify_endpoint, timeout=settings.notify_timeout_ms / 1000)

    def send(self, title: str, body: str, html_body: str | None = None, url: str | None = None) -> int:
        payload = build_payload(title, body, html_body, url)
        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            response = client.post(self.endpoint, json=payload)
            response.raise_for_status()
            return response.status_code


class NullNotifier:
    """Used when notifications are disabled."""

    def send(self, title: str, body: str, html_body: str | None = None, url: str | None = None) -> None:
        logger.debug("notification_suppressed", title=title)


def error_html(error_type: str, description: str, log_file: str | None = None) -> str:
    parts = [
        "<div>",
        "<h3>⚠️ Octopus Service Issue</h3>",
        f"<p><strong>Type:</strong> {html.escape(error_type)}</p>",
        f"<p><strong>Description:</strong> {html.escape(description)}</p>",
    ]
    if log_file:
        parts.append(f"<p><strong>Log:</strong> {html.escape(log_file)}</p>")
    parts.append("</div>")
    return "".join(parts)


def notify_safely(
    notifier: Notifier, error_type: str, description: str, log_file: str | None = None
) -> bool:
    """Send an error notification; returns False (and logs) if delivery failed."""
    try:
        notifier.send(
            title=error_type,
            body=f"{error_type}: {description}",
            html_body=error_html(error_type, description, log_file),
        )
        return True
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("notification_failed", title=error_type, error=str(e))
        return False
