"""
User notifications.

Notifications are fire-and-forget: a failed delivery is logged and never
propagates to the caller.
"""

import logging
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)


class LogNotifier:
    """Record status events in the log only."""

    def __call__(self, user_id: str, event: Dict[str, Any]) -> None:
        logger.info(f"[Notify] user={user_id} {event.get('type')} video={event.get('videoId')} status={event.get('status')}")


class HttpNotifier:
    """POST status events to the dashboard's event sink."""

    def __init__(self, events_url: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.events_url = events_url
        self.timeout = timeout
        self.session = session or requests.Session()

    def __call__(self, user_id: str, event: Dict[str, Any]) -> None:
        try:
            response = self.session.post(
                self.events_url,
                json={"userId": user_id, "event": event},
                timeout=self.timeout,
            )
            if response.status_code >= 400:
                logger.warning(f"[Notify] Event sink returned {response.status_code} for video {event.get('videoId')}")
        except requests.RequestException as e:
            logger.warning(f"[Notify] Failed to deliver event for video {event.get('videoId')}: {e}")


def build_notifier(events_url: Optional[str]):
    return HttpNotifier(events_url) if events_url else LogNotifier()
