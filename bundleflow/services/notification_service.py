"""
Bundleflow - Notification Service

Outbound email via SendGrid dynamic templates. The dispatcher picks the
template and parameters; this module only delivers. Template rendering is
done by SendGrid.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Email, Mail, To

from bundleflow.core.config import Settings

logger = logging.getLogger(__name__)

_ACCEPTED_STATUS = (200, 201, 202)


class SendGridNotificationSender:
    """
    NotificationSender backed by SendGrid.

    When SENDGRID_API_KEY or SENDGRID_FROM_EMAIL is missing the sender stays
    usable but every send is logged and reported as not delivered.
    """

    def __init__(self, settings: Settings, client: SendGridAPIClient | None = None):
        self.from_email = settings.SENDGRID_FROM_EMAIL
        self._api_key = settings.SENDGRID_API_KEY
        self._client = client

    def _get_client(self) -> SendGridAPIClient | None:
        if self._client is None:
            if not self._api_key:
                logger.warning("SENDGRID_API_KEY not configured - email disabled")
                return None
            self._client = SendGridAPIClient(api_key=self._api_key)
        return self._client

    def send(self, recipient: str, template: str, parameters: Mapping[str, Any]) -> bool:
        """
        Send one templated email.

        Args:
            recipient: Destination address.
            template: SendGrid dynamic template id.
            parameters: dynamic_template_data for the template.

        Returns:
            True when SendGrid accepted the message.
        """
        client = self._get_client()
        if client is None:
            logger.warning("Notification not sent (SendGrid disabled): template=%s", template)
            return False
        if not self.from_email:
            logger.error("SENDGRID_FROM_EMAIL not configured")
            return False

        try:
            message = Mail(from_email=Email(self.from_email), to_emails=To(recipient))
            message.template_id = template
            message.dynamic_template_data = dict(parameters)
            response = client.send(message)
        except Exception as e:
            logger.exception("Failed to send %s notification to %s: %s", template, recipient, e)
            return False

        logger.info(
            "Notification sent: to=%s, template=%s, status=%s",
            recipient,
            template,
            response.status_code,
        )
        return response.status_code in _ACCEPTED_STATUS


def create_notification_sender(settings: Settings) -> SendGridNotificationSender:
    if not settings.notifications_enabled:
        logger.warning("SendGrid credentials incomplete; notifications will be logged only")
    return SendGridNotificationSender(settings)
