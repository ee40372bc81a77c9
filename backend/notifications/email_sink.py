"""
Email digest sink via SendGrid.

One email per recipient per sweep, listing every notification in the batch.
The recipient's address is looked up in staff_profiles; a recipient without
an address cannot be delivered to and the batch stays pending.
"""

import asyncio
from collections.abc import Callable
from html import escape

import sendgrid
import structlog
from sendgrid.helpers.mail import Mail

from db.models import StaffProfile
from notifications.base import NotificationMessage, NotificationSink
from store.record_store import RecordStore

logger = structlog.get_logger()

LEVEL_COLORS = {"ERROR": "#dc2626", "WARNING": "#f59e0b", "INFO": "#4f46e5"}


def render_digest(recipient_name: str, batch: list[NotificationMessage]) -> tuple[str, str]:
    subject = f"PrintRun: {len(batch)} new notification{'s' if len(batch) != 1 else ''}"
    items = "".join(
        f"""
        <div style="border-left: 4px solid {LEVEL_COLORS.get(message.level, '#64748b')};
                    padding: 12px 16px; margin-bottom: 12px; background: #f8fafc;">
          <p style="margin: 0; font-weight: 600; color: #1e293b;">{escape(message.title)}</p>
          <p style="margin: 4px 0 0; color: #334155;">{escape(message.body)}</p>
        </div>"""
        for message in batch
    )
    html_content = f"""
    <div style="font-family: Inter, sans-serif; max-width: 600px; margin: 0 auto;">
      <h1 style="font-size: 18px; color: #1e293b;">Hi {escape(recipient_name)},</h1>
      {items}
    </div>
    """
    return subject, html_content


class EmailDigestSink(NotificationSink):
    name = "email"

    def __init__(
        self,
        store: RecordStore,
        api_key: str,
        from_email: str,
        client_factory: Callable | None = None,
    ):
        self.store = store
        self.api_key = api_key
        self.from_email = from_email
        self._client_factory = client_factory or sendgrid.SendGridAPIClient

    async def deliver(self, recipient_id, batch):
        if not batch:
            return True
        profile = await self.store.get(StaffProfile, recipient_id)
        if profile is None or not profile.email:
            logger.warning("notifications.email_missing", recipient_id=str(recipient_id))
            return False

        subject, html_content = render_digest(profile.full_name, batch)
        client = self._client_factory(api_key=self.api_key)
        email = Mail(
            from_email=self.from_email,
            to_emails=profile.email,
            subject=subject,
            html_content=html_content,
        )
        # SendGrid's client is blocking.
        response = await asyncio.to_thread(client.send, email)
        accepted = response.status_code in (200, 201, 202)
        logger.info(
            "notifications.emailed",
            recipient_id=str(recipient_id),
            count=len(batch),
            status_code=response.status_code,
            accepted=accepted,
        )
        return accepted
