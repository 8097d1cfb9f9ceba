"""
Payment-request notifications.

Delivery itself belongs to a collaborator service; this module only posts
the notification to it. Every call is best-effort: failures are logged and
reported as False, never raised.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Optional, Protocol

import httpx

logger = logging.getLogger(__name__)


DEFAULT_APP_BASE_URL = "https://splithub.app"


@dataclass
class Notification:
    recipient_wallet: str
    title: str
    message: str
    url: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "recipientWallet": self.recipient_wallet,
            "title": self.title,
            "message": self.message,
            "url": self.url,
        }


def payment_request_notification(
    payer: str,
    request_id: str,
    amount: str,
    memo: Optional[str] = None,
    requester_twitter: Optional[str] = None,
    base_url: str = DEFAULT_APP_BASE_URL,
    reminder: bool = False,
) -> Notification:
    title = f"Payment Request from @{requester_twitter or 'someone'}"
    if reminder:
        title = f"Reminder: {title}"
    return Notification(
        recipient_wallet=payer.lower(),
        title=title,
        message=f"{amount} USDC" + (f" - {memo}" if memo else ""),
        url=f"{base_url.rstrip('/')}/settle/{request_id}",
    )


class Notifier(Protocol):
    def send(self, notification: Notification) -> bool: ...


class NullNotifier:
    """Records notifications instead of sending them."""

    def __init__(self):
        self.sent: list[Notification] = []

    def send(self, notification: Notification) -> bool:
        self.sent.append(notification)
        logger.debug("notification (not sent): %s", asdict(notification))
        return True


class WebhookNotifier:
    """POSTs notifications as JSON to a push service endpoint."""

    def __init__(self, url: str, timeout_seconds: float = 10.0, client: Optional[httpx.Client] = None):
        self.url = url
        self._http = client or httpx.Client(timeout=timeout_seconds)

    def send(self, notification: Notification) -> bool:
        try:
            response = self._http.post(self.url, json=notification.to_dict())
        except httpx.HTTPError as e:
            logger.warning("notification to %s failed: %s", notification.recipient_wallet, e)
            return False
        if response.status_code >= 400:
            logger.warning(
                "notification to %s rejected (%d): %s",
                notification.recipient_wallet,
                response.status_code,
                response.text[:200],
            )
            return False
        logger.info("notification sent to %s", notification.recipient_wallet)
        return True

    def close(self) -> None:
        self._http.close()
