"""
Job dispatcher.

Queues videos for the edit and upload workers by moving them into the
matching ``*_QUEUED`` state and publishing a delivery through QStash. Retry
and delay scheduling belong to QStash; the dispatcher only configures them.
"""

import logging
import time
from typing import Any, Dict, Optional

from qstash import QStash

from subiteya.models import JobType, VideoStatus
from subiteya.state import VideoStore

logger = logging.getLogger(__name__)

DELIVERY_RETRIES = 3

EDIT_DELAYS = {"high": 0, "normal": 5, "low": 30}
UPLOAD_DELAYS = {"high": 0, "normal": 10, "low": 60}


def _delay_for(delays: Dict[str, int], priority: str) -> int:
    return delays.get(priority, delays["normal"])


class JobDispatcher:
    def __init__(
        self,
        store: VideoStore,
        publisher: Optional[QStash],
        edit_worker_url: Optional[str] = None,
        upload_worker_url: Optional[str] = None,
    ):
        self.store = store
        self.publisher = publisher
        self.edit_worker_url = edit_worker_url.rstrip("/") if edit_worker_url else None
        self.upload_worker_url = upload_worker_url.rstrip("/") if upload_worker_url else None

    @classmethod
    def from_settings(cls, store: VideoStore, settings) -> "JobDispatcher":
        publisher = QStash(settings.qstash_token) if settings.qstash_token else None
        if publisher is None:
            logger.warning("[Qstash] QSTASH_TOKEN not set: jobs will be queued but not delivered")
        return cls(store, publisher, settings.edit_worker_url, settings.upload_worker_url)

    @property
    def enabled(self) -> bool:
        return self.publisher is not None

    def queue_edit(self, video_id: str, priority: str = "normal", edit_spec: Optional[Dict[str, Any]] = None) -> bool:
        """
        Queue a video for editing.

        Args:
            video_id: Video to queue
            priority: ``high``, ``normal`` or ``low`` (delivery delay 0/5/30 s)
            edit_spec: Design spec to freeze on the video when none is frozen yet

        Returns:
            True if the delivery was published
        """
        if edit_spec is not None:
            self.store.freeze_spec(video_id, edit_spec)
        if not self.store.transition(video_id, VideoStatus.EDITING_QUEUED, progress=0, clear_error=True):
            logger.warning(f"[Qstash] Video {video_id} cannot be queued for editing from its current state")
            return False
        self.store.record_job_queued(video_id, JobType.EDIT)
        return self._publish(self.edit_worker_url, video_id, priority, _delay_for(EDIT_DELAYS, priority))

    def queue_upload(self, video_id: str, priority: str = "normal", account_id: Optional[str] = None) -> bool:
        """Queue an edited video for publishing (delivery delay 0/10/60 s)."""
        fields = {"account_id": account_id} if account_id else {}
        if not self.store.transition(video_id, VideoStatus.UPLOAD_QUEUED, progress=0, clear_error=True, **fields):
            logger.warning(f"[Qstash] Video {video_id} cannot be queued for upload from its current state")
            return False
        self.store.record_job_queued(video_id, JobType.UPLOAD)
        return self._publish(self.upload_worker_url, video_id, priority, _delay_for(UPLOAD_DELAYS, priority))

    def schedule(self, endpoint: str, video_id: str, delay: int) -> bool:
        """Publish a delayed delivery to an arbitrary worker endpoint."""
        return self._publish(endpoint.rstrip("/"), video_id, "normal", delay, path="")

    def health(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "editWorkerUrl": self.edit_worker_url,
            "uploadWorkerUrl": self.upload_worker_url,
        }

    def _publish(self, base_url: Optional[str], video_id: str, priority: str, delay: int, path: str = "/process") -> bool:
        if self.publisher is None or not base_url:
            logger.warning(f"[Qstash] Delivery for {video_id} not published: dispatcher is not configured")
            return False

        url = f"{base_url}{path}"
        body = {"videoId": video_id, "priority": priority, "timestamp": int(time.time() * 1000)}
        kwargs: Dict[str, Any] = {"url": url, "body": body, "retries": DELIVERY_RETRIES}
        if delay > 0:
            kwargs["delay"] = f"{delay}s"

        try:
            response = self.publisher.message.publish_json(**kwargs)
        except Exception as e:
            logger.error(f"[Qstash] Failed to publish delivery for {video_id} to {url}: {e}")
            return False

        message_id = getattr(response, "message_id", None)
        logger.info(f"[Qstash] Queued {video_id} -> {url} (delay {delay}s, message {message_id})")
        return True
