"""
Upload worker: edited media -> TikTok post.

    UPLOAD_QUEUED -> UPLOADING -> POSTED
                              \\-> FAILED_UPLOAD

Protocol per job: creator info, init, single-chunk PUT, processing delay,
status fetch, finalize (skipped when the post is already live). A 401 from
any API step triggers one token refresh and a retry of that step only.
"""

import logging
import os
import tempfile
import time
from typing import Any, Callable, Dict, Optional, TypeVar

from media_tools.ffmpeg_utils import safe_remove
from subiteya.accounts import AccountTokens
from subiteya.design_spec import DesignSpec, parse_design_spec, render_post_title
from subiteya.errors import PreconditionError, TikTokAuthError, TikTokPublishError, VideoNotFoundError, WorkerError
from subiteya.guard import ExecutionGuard
from subiteya.models import ExternalAccount, JobType, VideoStatus
from subiteya.state import VideoStore
from subiteya.storage import StorageClient, extract_s3_key
from subiteya.tiktok import PostSettings, TikTokClient

logger = logging.getLogger(__name__)

T = TypeVar("T")

PROGRESS_STARTED = 10
PROGRESS_TOKEN = 20
PROGRESS_CREATOR = 30
PROGRESS_DOWNLOADED = 50
PROGRESS_INITIALIZED = 70
PROGRESS_UPLOADED = 85


def build_post_url(display_name: Optional[str], platform_id: str) -> str:
    handle = (display_name or "").strip().lstrip("@").replace(" ", "") or "user"
    return f"https://www.tiktok.com/@{handle}/video/{platform_id}"


class _AuthorizedCalls:
    """Runs API steps with the account token, refreshing it at most once per job."""

    def __init__(self, accounts: AccountTokens, account: ExternalAccount):
        self._accounts = accounts
        self._account = account
        self._token = accounts.access_token(account)
        self._refreshed = False

    def __call__(self, step: Callable[[str], T]) -> T:
        try:
            return step(self._token)
        except TikTokAuthError:
            if self._refreshed:
                raise
            logger.warning(f"[Upload Worker] Token rejected for account {self._account.id}, refreshing once")
            self._token = self._accounts.access_token(self._account, force_refresh=True)
            self._refreshed = True
            return step(self._token)


class UploadWorker:
    role = "upload"

    def __init__(
        self,
        store: VideoStore,
        storage: StorageClient,
        accounts: AccountTokens,
        tiktok: TikTokClient,
        guard: ExecutionGuard,
        privacy_level: str = "SELF_ONLY",
        processing_delay: float = 3.0,
        sleep: Callable[[float], None] = time.sleep,
        work_dir: Optional[str] = None,
    ):
        self.store = store
        self.storage = storage
        self.accounts = accounts
        self.tiktok = tiktok
        self.guard = guard
        self.privacy_level = privacy_level
        self.processing_delay = processing_delay
        self._sleep = sleep
        self.work_dir = work_dir

    def process(self, video_id: str) -> Dict[str, Any]:
        """Run one upload job. Blocking; the webhook layer calls it from a worker thread."""
        start_time = time.time()
        video = self.store.get(video_id)
        if video is None:
            raise VideoNotFoundError(video_id)

        job_id = self.store.start_job(video_id, JobType.UPLOAD)
        work_dir = self.work_dir or tempfile.gettempdir()
        local_path = os.path.join(work_dir, f"upload-{video_id}-{int(start_time * 1000)}.mp4")

        try:
            if not self.store.transition(video_id, VideoStatus.UPLOADING, progress=PROGRESS_STARTED, clear_error=True):
                raise WorkerError(f"Video {video_id} is no longer queued for upload")
            if not video.edited_url:
                raise PreconditionError("Video has no edited media to upload")

            account = self.accounts.get_account(video.account_id)
            call = _AuthorizedCalls(self.accounts, account)
            self.store.set_progress(video_id, PROGRESS_TOKEN)

            logger.info(f"[Upload Worker] Fetching creator info for account {account.id}")
            call(self.tiktok.query_creator_info)
            self.store.set_progress(video_id, PROGRESS_CREATOR)

            key = extract_s3_key(video.edited_url)
            self.storage.download_file(key, local_path)
            video_size = os.path.getsize(local_path)
            self.store.set_progress(video_id, PROGRESS_DOWNLOADED)
            logger.info(f"[Upload Worker] Video size: {video_size / 1024 / 1024:.2f} MB")

            post = PostSettings(
                title=render_post_title(self._frozen_spec(video.edit_spec_json), video.title),
                privacy_level=self.privacy_level,
            )
            init = call(lambda token: self.tiktok.init_upload(token, video_size, post))
            self.store.set_progress(video_id, PROGRESS_INITIALIZED)

            self.tiktok.upload_video(init.upload_url, local_path)
            self.store.set_progress(video_id, PROGRESS_UPLOADED)

            if self.processing_delay > 0:
                self._sleep(self.processing_delay)

            status = call(lambda token: self.tiktok.fetch_status(token, init.publish_id))
            if status.is_failed:
                raise TikTokPublishError(f"TikTok processing failed: {status.fail_reason or status.status}")

            share_url = None
            platform_id = status.post_id
            if status.is_complete:
                logger.info(f"[Upload Worker] Publish {init.publish_id} already complete, skipping finalize")
            else:
                finalized = call(lambda token: self.tiktok.finalize(token, init.publish_id))
                share_url = finalized.get("share_url")
                platform_id = finalized.get("video_id") or platform_id

            post_url = share_url or build_post_url(account.display_name, platform_id or init.publish_id)

            self.guard.record_account_success(account.id)
            if not self.store.transition(video_id, VideoStatus.POSTED, progress=100, post_url=post_url):
                raise WorkerError(f"Video {video_id} left UPLOADING before the post was recorded")

            duration_ms = int((time.time() - start_time) * 1000)
            self.store.finish_job(job_id, succeeded=True, log=f"publish_id={init.publish_id}")
            logger.info(f"[Upload Worker] Posted video {video_id} in {duration_ms}ms")

            return {
                "videoId": video_id,
                "duration": duration_ms,
                "publishId": init.publish_id,
                "postUrl": post_url,
            }
        except Exception as e:
            self._record_failure(video_id, video.account_id, job_id, e)
            raise
        finally:
            safe_remove(local_path, "[Upload Worker]")

    @staticmethod
    def _frozen_spec(data: Optional[Dict[str, Any]]) -> Optional[DesignSpec]:
        if not data:
            return None
        try:
            return parse_design_spec(data)
        except ValueError as e:
            logger.warning(f"[Upload Worker] Ignoring invalid frozen design spec: {e}")
            return None

    def _record_failure(self, video_id: str, account_id: Optional[str], job_id: str, error: Exception) -> None:
        message = str(error) or type(error).__name__
        logger.error(f"[Upload Worker] Video {video_id} failed: {message}")
        if account_id:
            self.guard.record_account_failure(account_id)
        try:
            self.store.mark_failed(video_id, VideoStatus.FAILED_UPLOAD, message)
            self.store.finish_job(job_id, succeeded=False, error=message)
        except Exception as bookkeeping_error:
            logger.error(f"[Upload Worker] Could not record failure for {video_id}: {bookkeeping_error}")
