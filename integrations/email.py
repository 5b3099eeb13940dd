"""
Notification sender — emails the form owner's recipients through Resend.

The message carries a table of the submitted fields (labelled with the
form's field labels) and, when the Drive destination ran first, links to
whichever uploaded files made it into Drive.
"""

from __future__ import annotations

import html
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from config.settings import config
from core.exceptions import NoConnection, ProviderRejected, ProviderTransient
from integrations.retry import retry_transient
from integrations.sheets import format_cell
from utils.schemas import (
    DeliveryContext,
    DeliveryOutcome,
    DeliveryResult,
    DestinationKind,
)

logger = logging.getLogger(__name__)

RESEND_API = "https://api.resend.com/emails"


def render_notification(
    form_title: str,
    payload: Dict[str, Any],
    labels: Optional[Dict[str, str]] = None,
    file_links: Optional[List[Dict[str, str]]] = None,
) -> Tuple[str, str, str]:
    """Return ``(subject, html, text)`` for one submission."""
    labels = labels or {}
    file_links = file_links or []

    rows = "".join(
        "<tr>"
        f'<td style="padding:8px;border-bottom:1px solid #e9ecef;font-weight:bold;width:30%">'
        f"{html.escape(labels.get(key) or key)}</td>"
        f'<td style="padding:8px;border-bottom:1px solid #e9ecef">{html.escape(format_cell(value))}</td>'
        "</tr>"
        for key, value in payload.items()
    )
    files_html = ""
    if file_links:
        items = "".join(
            f'<li><a href="{html.escape(link["url"], quote=True)}">{html.escape(link.get("file_name") or link["url"])}</a></li>'
            for link in file_links
        )
        files_html = f"<h3>Uploaded files</h3><ul>{items}</ul>"

    title = html.escape(form_title)
    body = (
        '<div style="font-family:Arial,sans-serif;max-width:600px;margin:0 auto">'
        "<h2>New form submission</h2>"
        f"<p>You have received a new submission from <strong>{title}</strong>.</p>"
        f'<table style="width:100%;border-collapse:collapse">{rows}</table>'
        f"{files_html}"
        "</div>"
    )

    lines = [f"New submission from {form_title}", ""]
    lines += [f"{labels.get(key) or key}: {format_cell(value)}" for key, value in payload.items()]
    if file_links:
        lines += ["", "Uploaded files:"]
        lines += [f"- {link.get('file_name') or ''} {link['url']}".strip() for link in file_links]

    return f"New submission from {form_title}", body, "\n".join(lines)


class NotificationSender:
    """
    Sends submission notifications.

    Parameters
    ----------
    api_key      : Resend API key; without one, notifications are skipped
    from_email   : sender address
    transport    : optional httpx transport (tests)
    retry_policy : ``max_attempts`` / ``backoff_base`` / ``backoff_max``
    """

    destination = DestinationKind.EMAIL

    def __init__(
        self,
        api_key: Optional[str] = None,
        from_email: Optional[str] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_policy: Optional[Dict[str, Any]] = None,
        request_timeout: float = 15.0,
    ):
        self._api_key = api_key if api_key is not None else config.resend_api_key
        self._from = from_email or config.notification_from_email
        self._transport = transport
        self._retry_policy = retry_policy or config.get_retry_policy()
        self._timeout = httpx.Timeout(request_timeout)

    def is_configured(self) -> bool:
        return bool(self._api_key)

    async def send(
        self,
        form_title: str,
        payload: Dict[str, Any],
        *,
        recipients: List[str],
        submission_id: str,
        labels: Optional[Dict[str, str]] = None,
        file_links: Optional[List[Dict[str, str]]] = None,
    ) -> DeliveryOutcome:
        if not recipients:
            raise NoConnection("Form has no notification recipients")
        if not self.is_configured():
            raise NoConnection("Email service not configured")

        subject, body, text = render_notification(form_title, payload, labels, file_links)
        message = {"from": self._from, "to": recipients, "subject": subject, "html": body, "text": text}
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            # Resend drops a repeated send with the same key.
            "Idempotency-Key": f"submission-{submission_id}",
        }

        async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:

            async def attempt(_number: int) -> Dict[str, Any]:
                try:
                    resp = await client.post(RESEND_API, json=message, headers=headers)
                except httpx.TransportError as exc:
                    raise ProviderTransient(f"Email request failed: {exc!r}") from exc
                if resp.status_code == 429 or resp.status_code >= 500:
                    raise ProviderTransient(f"HTTP {resp.status_code} from email API", status_code=resp.status_code)
                if not resp.is_success:
                    raise ProviderRejected(
                        f"HTTP {resp.status_code}: {_resend_error(resp)}", status_code=resp.status_code
                    )
                return resp.json() if resp.content else {}

            result = await retry_transient(attempt, label="notification email", **self._retry_policy)

        logger.info("Sent notification for submission %s to %d recipient(s)", submission_id, len(recipients))
        return DeliveryOutcome(
            submission_id=submission_id,
            destination=self.destination,
            result=DeliveryResult.DELIVERED,
            detail=f"Notified {len(recipients)} recipient(s)",
            attempts=result.attempts,
            external_ref=result.value.get("id"),
        )

    async def deliver(self, ctx: DeliveryContext) -> DeliveryOutcome:
        drive = ctx.upstream.get(DestinationKind.DRIVE.value)
        # A partly failed Drive upload still carries the links of the files that landed.
        links = drive.links if drive is not None else []
        return await self.send(
            ctx.form.title,
            ctx.submission.payload,
            recipients=ctx.form.notification_emails,
            submission_id=ctx.submission.id,
            labels=ctx.form.field_labels,
            file_links=links,
        )


def _resend_error(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.reason_phrase or "error"
    if isinstance(body, dict):
        return str(body.get("message") or body.get("name") or body)
    return str(body)
