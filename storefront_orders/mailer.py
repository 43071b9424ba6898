"""
AWS SES helper: send one rendered notification email. boto3 is blocking, so
the call runs in a thread.
"""
import asyncio
from typing import Any

import boto3

from storefront_orders.config import Settings
from storefront_orders.notifications import NotificationIntent, render_email


def _format_address(name: str, email: str) -> str:
    return f"{name} <{email}>" if name else email


class Mailer:
    """SES sender bound to one region and From address."""

    def __init__(self, sender: str, region: str, client: Any = None):
        self.sender = sender
        self.region = region
        self._client = client

    @classmethod
    def from_settings(cls, s: Settings) -> "Mailer":
        return cls(sender=s.mail_from, region=s.aws_region)

    def _get_client(self):
        if self._client is None:
            self._client = boto3.client("ses", region_name=self.region)
        return self._client

    def send_email(self, to: str, subject: str, html: str, text: str) -> str:
        """Sync send. Returns the SES MessageId."""
        resp = self._get_client().send_email(
            Source=self.sender,
            Destination={"ToAddresses": [to]},
            Message={
                "Subject": {"Data": subject, "Charset": "UTF-8"},
                "Body": {
                    "Html": {"Data": html, "Charset": "UTF-8"},
                    "Text": {"Data": text, "Charset": "UTF-8"},
                },
            },
        )
        return resp.get("MessageId", "")

    async def send_notification(self, intent: NotificationIntent) -> str:
        subject, html, text = render_email(intent)
        to = _format_address(intent.recipient.name, intent.recipient.email)
        return await asyncio.to_thread(self.send_email, to, subject, html, text)
