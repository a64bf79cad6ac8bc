"""
Notification system for certificate renewal events.

Status messages are posted to a Slack-compatible incoming webhook. Delivery
is best effort: failures are logged and never reach the renewal workflow.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from .config_loader import RenewalConfig
from .logger import get_logger


STATUS_EMOJI = {
    "success": "\u2705",        # Checkmark
    "warning": "\u26a0\ufe0f",  # Warning sign
    "error": "\u274C",          # Red X
}
DEFAULT_EMOJI = "\u2139\ufe0f"  # Information

WEBHOOK_TIMEOUT = 30


@dataclass
class NotificationContext:
    """Context data for a notification."""
    service_name: str
    server_identity: str
    status: str  # "success", "warning", "error" or "info"
    message: str
    expiry_date: Optional[datetime] = None
    failure_reason: Optional[str] = None

    def render_text(self) -> str:
        """One-line human readable status message."""
        emoji = STATUS_EMOJI.get(self.status, DEFAULT_EMOJI)
        text = f"{emoji} [{self.service_name}] ({self.server_identity}) {self.message}"
        if self.expiry_date:
            text += f" - expires {self.expiry_date.strftime('%Y-%m-%d %H:%M UTC')}"
        if self.failure_reason:
            text += f" - {self.failure_reason}"
        return text


class NotificationSender(ABC):
    """Abstract base class for notification senders."""

    @abstractmethod
    def send(self, context: NotificationContext) -> bool:
        """
        Send a notification.

        Args:
            context: Notification context

        Returns:
            True if notification was sent successfully, False otherwise
        """
        pass


class WebhookNotifier(NotificationSender):
    """Post notifications to a Slack-style incoming webhook."""

    def __init__(self, webhook_url: str, timeout: int = WEBHOOK_TIMEOUT):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.logger = get_logger()

    def render_payload(self, context: NotificationContext) -> Dict[str, Any]:
        return {
            "text": context.render_text(),
            "username": "cert-manager",
            "icon_emoji": ":lock:",
        }

    def send(self, context: NotificationContext) -> bool:
        """Send notification via the webhook."""
        payload = self.render_payload(context)

        try:
            response = requests.post(
                self.webhook_url,
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            self.logger.warning(f"Failed to send webhook notification: {e}")
            return False

        if 200 <= response.status_code < 300:
            self.logger.debug("Webhook notification sent successfully")
            return True

        self.logger.warning(
            f"Webhook notification failed: {response.status_code} - {response.text}"
        )
        return False


class NotificationManager:
    """
    Manages all notification channels.

    Absence of a configured endpoint is not an error; notify() becomes a
    no-op.
    """

    def __init__(
        self,
        config: RenewalConfig,
        senders: Optional[List[NotificationSender]] = None,
    ):
        self.config = config
        self.logger = get_logger()

        if senders is not None:
            self.senders = list(senders)
        elif config.notification_url:
            self.senders = [WebhookNotifier(config.notification_url)]
        else:
            self.senders = []

        if not self.senders:
            self.logger.debug("No notification channels enabled")

    def notify(
        self,
        status: str,
        message: str,
        expiry_date: Optional[datetime] = None,
        failure_reason: Optional[str] = None,
    ) -> None:
        """
        Send a status message through all enabled channels.

        This method never raises; all errors are logged.
        """
        if not self.senders:
            self.logger.debug("No notification endpoint configured, skipping notification")
            return

        context = NotificationContext(
            service_name=self.config.service_name,
            server_identity=self.config.server_identity,
            status=status,
            message=message,
            expiry_date=expiry_date,
            failure_reason=failure_reason,
        )

        for sender in self.senders:
            try:
                sender.send(context)
            except Exception as e:
                sender_name = type(sender).__name__
                self.logger.error(f"Notification failed ({sender_name}): {e}")

    def is_enabled(self) -> bool:
        """Check if any notification channel is enabled."""
        return len(self.senders) > 0
