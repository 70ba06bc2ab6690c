# ticketgate/mailer.py
"""
Outbound ticket mail.

A `Mailer` is built once at startup from validated settings and handed to
whoever needs it; nothing in here creates clients lazily. Delivery goes
through a Resend-compatible HTTP API, the ticket QR code travels as an
inline PNG attachment.
"""
from __future__ import annotations
import base64
import html
import io
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
import qrcode
import qrcode.constants

from .config import MailSettings

logger = logging.getLogger(__name__)


@dataclass
class TicketMail:
    recipient_email: str
    ticket_id: str
    event_name: str
    student_name: str = "Student"
    reminder: bool = False


def render_qr_png(ticket_id: str) -> bytes:
    # the ticket id alone is the payload scanners read
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=6,
        border=1,
    )
    qr.add_data(ticket_id)
    qr.make(fit=True)
    buf = io.BytesIO()
    qr.make_image().save(buf)
    return buf.getvalue()


def compose(mail: TicketMail, from_name: str) -> Dict[str, str]:
    name = mail.student_name or "Student"
    if mail.reminder:
        subject = f"Reminder: your ticket for {mail.event_name}"
        opener = f"This is a reminder that your ticket for {mail.event_name}"
        opener += " is waiting for you."
    else:
        subject = f"Your ticket for {mail.event_name}"
        opener = f"Your ticket for {mail.event_name} is confirmed!"

    text_body = "\n".join([
        f"Hi {name},",
        "",
        opener,
        "",
        f"Ticket ID: {mail.ticket_id}",
        "",
        "Please print the QR code and bring it to check-in.",
        "",
        "Thanks,",
        from_name,
    ])
    esc = html.escape
    html_body = "".join([
        f"<p>Hi {esc(name)},</p>",
        f"<p>{esc(opener)}</p>",
        f"<p><strong>Ticket ID:</strong> {esc(mail.ticket_id)}</p>",
        "<p><strong>Please print this QR code</strong> and bring it to "
        "check-in:</p>",
        f'<p><img src="cid:{qr_content_id(mail.ticket_id)}" '
        'alt="Ticket QR Code" style="max-width:300px;height:auto;" /></p>',
        f"<p>Thanks,<br/>{esc(from_name)}</p>",
    ])
    return {"subject": subject, "text": text_body, "html": html_body}


def qr_content_id(ticket_id: str) -> str:
    return f"ticket-{ticket_id}"


class Mailer:
    def __init__(self, settings: MailSettings,
                 http: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = settings
        self.http = http or httpx.AsyncClient(timeout=settings.timeout)

    async def send_ticket(self, mail: TicketMail) -> None:
        parts = compose(mail, self.settings.from_name)
        qr_png = render_qr_png(mail.ticket_id)
        attachments: List[Dict[str, Any]] = [{
            "filename": f"ticket-{mail.ticket_id}.png",
            "content": base64.b64encode(qr_png).decode(),
            "content_type": "image/png",
            "content_id": qr_content_id(mail.ticket_id),
        }]
        body = {
            "from": f"{self.settings.from_name} <{self.settings.from_email}>",
            "to": [mail.recipient_email],
            "subject": parts["subject"],
            "text": parts["text"],
            "html": parts["html"],
            "attachments": attachments,
        }
        r = await self.http.post(
            self.settings.api_url,
            json=body,
            headers={"authorization": f"Bearer {self.settings.api_key}"},
        )
        r.raise_for_status()
        logger.info("ticket mail sent ticket=%s", mail.ticket_id)

    async def aclose(self) -> None:
        await self.http.aclose()


class NullMailer:
    """Installed when mail is not configured; delivery is only logged."""

    async def send_ticket(self, mail: TicketMail) -> None:
        logger.warning(
            "mail not configured, not sending ticket=%s to %s",
            mail.ticket_id, mail.recipient_email,
        )

    async def aclose(self) -> None:
        return None


def new_mailer(settings: Optional[MailSettings]):
    if settings is None:
        return NullMailer()
    return Mailer(settings)


async def deliver(mailer, mail: TicketMail) -> bool:
    """Best-effort send; failures are logged and never raised."""
    try:
        await mailer.send_ticket(mail)
    except Exception:
        logger.exception(
            "ticket mail failed ticket=%s to=%s",
            mail.ticket_id, mail.recipient_email,
        )
        return False
    return True
