"""
Client Notification Module

Outbound notifications sent while a client moves through onboarding: welcome,
step reminders, milestones, completion and delay notices. Delivery is
fire-and-forget; a failed send is logged and never raised to the caller.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional
from enum import Enum
from abc import ABC, abstractmethod
import logging
import uuid

import requests

from .config import get_config


logger = logging.getLogger("onboarding.notifications")


class NotificationKind(Enum):
    WELCOME = "welcome"
    STEP_REMINDER = "step_reminder"
    MILESTONE = "milestone"
    COMPLETION = "completion"
    DELAY = "delay"


def build_message(kind: NotificationKind, client_id: str, **details: Any) -> Dict[str, Any]:
    """Notification body shared by every port implementation"""
    subjects = {
        NotificationKind.WELCOME: "Welcome to your onboarding",
        NotificationKind.STEP_REMINDER: f"Reminder: {details.get('step_name', '')}",
        NotificationKind.MILESTONE: f"Milestone reached: {details.get('milestone_name', '')}",
        NotificationKind.COMPLETION: "Your onboarding is complete",
        NotificationKind.DELAY: "Update on your onboarding timeline",
    }
    return {
        'notification_id': str(uuid.uuid4()),
        'type': kind.value,
        'client_id': client_id,
        'subject': subjects[kind],
        'details': details,
        'timestamp': datetime.now(timezone.utc).isoformat()
    }


class NotificationPort(ABC):
    """Abstract interface for client notification delivery"""

    def send_welcome(self, client_id: str, workflow_id: str) -> bool:
        return self.deliver(build_message(NotificationKind.WELCOME, client_id, workflow_id=workflow_id))

    def send_step_reminder(self, client_id: str, step_name: str) -> bool:
        return self.deliver(build_message(NotificationKind.STEP_REMINDER, client_id, step_name=step_name))

    def send_milestone(self, client_id: str, milestone_name: str) -> bool:
        return self.deliver(build_message(NotificationKind.MILESTONE, client_id, milestone_name=milestone_name))

    def send_completion(self, client_id: str, workflow_id: str) -> bool:
        return self.deliver(build_message(NotificationKind.COMPLETION, client_id, workflow_id=workflow_id))

    def send_delay(self, client_id: str, reason: str, new_estimate: datetime) -> bool:
        return self.deliver(build_message(
            NotificationKind.DELAY, client_id, reason=reason, new_estimate=new_estimate.isoformat()
        ))

    @abstractmethod
    def deliver(self, message: Dict[str, Any]) -> bool:
        """Send one message. Returns True if successful."""
        pass


class LogNotificationPort(NotificationPort):
    """Logs notifications instead of sending them; the default"""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.logger = log or logger

    def deliver(self, message: Dict[str, Any]) -> bool:
        self.logger.info(
            f"Notification {message['type']} to client {message['client_id']}: {message['subject']}",
            extra={'client_id': message['client_id'], 'action': message['type']}
        )
        return True


class WebhookNotificationPort(NotificationPort):
    """POSTs notifications as JSON to a webhook endpoint"""

    def __init__(self, url: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def deliver(self, message: Dict[str, Any]) -> bool:
        try:
            response = self.session.post(
                self.url,
                json=message,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )
        except requests.RequestException as e:
            logger.error(f"Webhook delivery of {message['type']} to {self.url} failed: {e}")
            return False

        if response.status_code >= 300:
            logger.error(
                f"Webhook delivery of {message['type']} to {self.url} "
                f"returned HTTP {response.status_code}"
            )
            return False
        return True


def create_notification_port(url: Optional[str] = None, timeout: Optional[float] = None) -> NotificationPort:
    """Webhook port when a URL is configured, otherwise log-only"""
    config = get_config()
    url = config.notification_webhook_url if url is None else url
    if not url:
        return LogNotificationPort()
    return WebhookNotificationPort(url, timeout=config.notification_timeout if timeout is None else timeout)
