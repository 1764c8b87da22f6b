"""
Webhook gatekeeping for worker deliveries.

Gate order for one ``POST /process`` delivery:

    payload -> in-progress check -> video lookup -> role/terminal check
            -> try_acquire (backoff, account ceiling) -> worker.process -> mark_end

Every response is a ``(status_code, body, headers)`` tuple so the HTTP
framework only has to serialize it.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Protocol, Tuple

from subiteya.errors import VideoNotFoundError
from subiteya.guard import COMPLETED, FAILED, ExecutionGuard
from subiteya.state import VideoStore, delivery_skip_reason

logger = logging.getLogger(__name__)

Response = Tuple[int, Dict[str, Any], Dict[str, str]]


class Worker(Protocol):
    role: str

    def process(self, video_id: str) -> Dict[str, Any]:
        ...


def parse_payload(raw_body: bytes) -> Optional[Dict[str, Any]]:
    """Decode a delivery body; None when it is not a JSON object with a videoId."""
    try:
        payload = json.loads(raw_body or b"{}")
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    video_id = payload.get("videoId")
    if not isinstance(video_id, str) or not video_id.strip():
        return None
    payload["videoId"] = video_id.strip()
    return payload


def _skipped(video_id: str, reason: str, status: Optional[str] = None) -> Response:
    body: Dict[str, Any] = {"success": True, "skipped": True, "reason": reason, "videoId": video_id}
    if status:
        body["status"] = status
    return 200, body, {}


def _rejected(reason: str, retry_after: int) -> Response:
    return (
        429,
        {"error": "Too many requests", "reason": reason, "retryAfter": retry_after},
        {"Retry-After": str(retry_after)},
    )


class WebhookProcessor:
    def __init__(self, role: str, worker: Worker, store: VideoStore, guard: ExecutionGuard):
        self.role = role
        self.worker = worker
        self.store = store
        self.guard = guard
        self.tag = f"[{role.capitalize()} Worker]"

    async def handle(self, raw_body: bytes) -> Response:
        payload = parse_payload(raw_body)
        if payload is None:
            return 400, {"error": "videoId is required"}, {}
        video_id = payload["videoId"]
        trace = f" trace={payload['traceId']}" if payload.get("traceId") else ""

        if self.guard.is_in_progress(video_id):
            logger.info(f"{self.tag} Video {video_id} already running, skipping duplicate delivery{trace}")
            return _skipped(video_id, "already_running")

        video = self.store.get(video_id)
        if video is None:
            return 404, {"error": f"Video {video_id} not found"}, {}

        reason = delivery_skip_reason(self.role, video.status)
        if reason is not None:
            logger.info(f"{self.tag} Video {video_id} is {video.status.value}, skipping ({reason}){trace}")
            return _skipped(video_id, reason, video.status.value)

        account_id = video.account_id if self.role == "upload" else None
        decision = self.guard.try_acquire(video_id, account_id)
        if not decision.allowed:
            if decision.reason == "already_running":
                return _skipped(video_id, "already_running")
            logger.warning(
                f"{self.tag} Rejecting {video_id}: {decision.reason}, retry after {decision.retry_after}s{trace}"
            )
            return _rejected(decision.reason, decision.retry_after)

        logger.info(f"{self.tag} Processing video {video_id}{trace}")
        try:
            result = await asyncio.to_thread(self.worker.process, video_id)
        except VideoNotFoundError as e:
            self.guard.mark_end(video_id, FAILED, decision.token)
            return 404, {"error": str(e)}, {}
        except Exception as e:
            self.guard.mark_end(video_id, FAILED, decision.token)
            logger.error(f"{self.tag} Video {video_id} failed: {e}")
            return 500, {"error": str(e) or type(e).__name__}, {}

        self.guard.mark_end(video_id, COMPLETED, decision.token)
        body = {"success": True}
        body.update(result)
        return 200, body, {}
