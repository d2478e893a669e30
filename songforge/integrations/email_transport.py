"""Email delivery of order notifications through the Resend HTTP API."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from songforge.config import NotifierConfig
from songforge.logging import get_logger
from songforge.orchestrator.models import (
    NotificationKind,
    NotificationMessage,
    TransportResult,
)

logger = get_logger(__name__)

READY_SUBJECT = "Your personalized songs are ready!"
FAILED_SUBJECT = "There was a problem generating your songs"


@dataclass(slots=True)
class RenderedEmail:
    subject: str
    text: str


def render_message(
    message: NotificationMessage, *, frontend_url: str, backend_url: str
) -> RenderedEmail:
    """Render the plain-text body for ``message``."""

    order_link = f"{frontend_url}/orders/{message.order_id}"
    if message.kind is NotificationKind.READY:
        lines = [f"Your songs for order #{message.order_id} are ready.", ""]
        for job in message.completed:
            lines.append(f"- {job.title}")
            lines.append(f"  Listen: {job.audio_url}")
            lines.append(f"  Details: {backend_url}/jobs/{job.id}")
        if message.failed:
            lines.append("")
            lines.append(
                f"{len(message.failed)} song(s) could not be generated; our team has been informed."
            )
        lines.extend(["", f"View your order: {order_link}", f"All songs: {frontend_url}/songs"])
        return RenderedEmail(subject=READY_SUBJECT, text="\n".join(lines))

    lines = [
        f"We could not generate the songs for order #{message.order_id}.",
        "",
    ]
    for job in message.failed:
        lines.append(f"- {job.title}")
    lines.extend(
        [
            "",
            "Our team will contact you to regenerate them or refund the order.",
            f"Order details: {order_link}",
        ]
    )
    return RenderedEmail(subject=FAILED_SUBJECT, text="\n".join(lines))


@dataclass(slots=True)
class ResendEmailTransport:
    """Notification transport posting plain-text emails to Resend."""

    api_key: str | None
    email_from: str
    frontend_url: str
    backend_url: str
    base_url: str = "https://api.resend.com"
    transport: httpx.AsyncBaseTransport | None = None
    timeout_ms: int = 10_000

    @classmethod
    def from_config(
        cls,
        config: NotifierConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> ResendEmailTransport:
        return cls(
            api_key=config.resend_api_key,
            email_from=config.email_from,
            frontend_url=config.frontend_url,
            backend_url=config.backend_url,
            base_url=config.resend_base_url,
            transport=transport,
        )

    async def send(self, message: NotificationMessage) -> TransportResult:
        if not self.api_key:
            return TransportResult(success=False, error="email service not configured")
        if not message.recipient:
            return TransportResult(success=False, error="order has no recipient email")

        rendered = render_message(
            message, frontend_url=self.frontend_url, backend_url=self.backend_url
        )
        payload: dict[str, Any] = {
            "from": self.email_from,
            "to": [message.recipient],
            "subject": rendered.subject,
            "text": rendered.text,
        }
        timeout = max(self.timeout_ms, 100) / 1000
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url.rstrip("/"),
                timeout=timeout,
                headers={"Authorization": f"Bearer {self.api_key}"},
                transport=self.transport,
            ) as client:
                response = await client.post("/emails", json=payload)
        except httpx.HTTPError as exc:
            return TransportResult(success=False, error=f"email request failed: {exc}")

        if response.status_code >= 400:
            return TransportResult(
                success=False,
                error=f"email provider returned {response.status_code}: {response.text[:200]}",
            )
        try:
            body = response.json()
        except ValueError:
            body = {}
        message_id = body.get("id") if isinstance(body, dict) else None
        return TransportResult(success=True, message_id=str(message_id) if message_id else None)


__all__ = ["RenderedEmail", "ResendEmailTransport", "render_message"]
