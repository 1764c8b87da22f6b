"""
Edit worker: source media -> branded media.

    EDITING_QUEUED -> EDITING -> EDITED
                            \\-> FAILED_EDIT
"""

import logging
import os
import tempfile
import time
from typing import Any, Dict, Optional

from media_tools.brand.processor import BrandServices, apply_brand_pattern
from media_tools.ffmpeg_utils import safe_remove
from subiteya.design_spec import brand_pattern_from_spec
from subiteya.errors import PreconditionError, VideoNotFoundError, WorkerError
from subiteya.models import JobType, VideoStatus
from subiteya.state import VideoStore
from subiteya.storage import StorageClient, extract_s3_key

logger = logging.getLogger(__name__)

PROGRESS_STARTED = 10
PROGRESS_DOWNLOADED = 30
PROGRESS_TRANSFORMED = 70


class EditWorker:
    role = "edit"

    def __init__(
        self,
        store: VideoStore,
        storage: StorageClient,
        services: Optional[BrandServices] = None,
        work_dir: Optional[str] = None,
    ):
        self.store = store
        self.storage = storage
        self.services = services or BrandServices()
        self.work_dir = work_dir

    def process(self, video_id: str) -> Dict[str, Any]:
        """Run one edit job. Blocking; the webhook layer calls it from a worker thread."""
        start_time = time.time()
        video = self.store.get(video_id)
        if video is None:
            raise VideoNotFoundError(video_id)

        job_id = self.store.start_job(video_id, JobType.EDIT)
        work_dir = self.work_dir or tempfile.gettempdir()
        source_path = os.path.join(work_dir, f"video-{video_id}-{int(start_time * 1000)}.mp4")
        output_path: Optional[str] = None

        try:
            if not self.store.transition(video_id, VideoStatus.EDITING, progress=PROGRESS_STARTED, clear_error=True):
                raise WorkerError(f"Video {video_id} is no longer queued for editing")

            if not video.edit_spec_json:
                raise PreconditionError("No design spec available")
            try:
                pattern = brand_pattern_from_spec(video.edit_spec_json)
            except ValueError as e:
                raise PreconditionError(str(e)) from e

            key = extract_s3_key(video.src_url)
            logger.info(f"[Edit Worker] Downloading {key} for video {video_id}")
            self.storage.download_file(key, source_path)
            self.store.set_progress(video_id, PROGRESS_DOWNLOADED)

            last_reported = [PROGRESS_DOWNLOADED]

            def on_progress(progress: float, message: str) -> None:
                value = PROGRESS_DOWNLOADED + int(progress * (PROGRESS_TRANSFORMED - PROGRESS_DOWNLOADED))
                if value - last_reported[0] >= 5:
                    last_reported[0] = value
                    self.store.set_progress(video_id, value)

            logger.info(f"[Edit Worker] Applying branding to {source_path}")
            result = apply_brand_pattern(
                source_path,
                pattern,
                services=self.services,
                work_dir=work_dir,
                progress_callback=on_progress,
            )
            output_path = result.output_path
            self.store.set_progress(video_id, PROGRESS_TRANSFORMED)

            upload = self.storage.upload_file(
                output_path,
                filename=f"edited-{video_id}.mp4",
                folder="videos",
                content_type="video/mp4",
                metadata={"videoId": video_id},
            )

            if not self.store.transition(video_id, VideoStatus.EDITED, progress=100, edited_url=upload["url"]):
                raise WorkerError(f"Video {video_id} left EDITING before the edit finished")

            duration_ms = int((time.time() - start_time) * 1000)
            summary = ", ".join(result.stages) or "no changes"
            self.store.finish_job(job_id, succeeded=True, log=f"stages: {summary}; warnings: {len(result.warnings)}")
            logger.info(f"[Edit Worker] Completed video {video_id} in {duration_ms}ms ({summary})")

            return {
                "videoId": video_id,
                "duration": duration_ms,
                "editedUrl": upload["url"],
                "stages": result.stages,
                "warnings": result.warnings,
            }
        except Exception as e:
            self._record_failure(video_id, job_id, e)
            raise
        finally:
            safe_remove(source_path, "[Edit Worker]")
            if output_path and output_path != source_path:
                safe_remove(output_path, "[Edit Worker]")

    def _record_failure(self, video_id: str, job_id: str, error: Exception) -> None:
        message = str(error) or type(error).__name__
        logger.error(f"[Edit Worker] Video {video_id} failed: {message}")
        try:
            self.store.mark_failed(video_id, VideoStatus.FAILED_EDIT, message)
            self.store.finish_job(job_id, succeeded=False, error=message)
        except Exception as bookkeeping_error:
            logger.error(f"[Edit Worker] Could not record failure for {video_id}: {bookkeeping_error}")
