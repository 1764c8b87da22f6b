"""
Video state machine.

Every status change is one conditional UPDATE:

    UPDATE videos SET status = :target ... WHERE id = :id AND status IN (:sources)

The row count tells the caller whether its transition won. Failure states
are only reachable from the in-flight states of their stage, so a late
failure can never overwrite a terminal state written by a concurrent
delivery.
"""

import logging
from typing import Any, Callable, Dict, FrozenSet, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from subiteya.models import Job, JobStatus, JobType, Video, VideoStatus, utcnow

logger = logging.getLogger(__name__)

Notifier = Callable[[str, Dict[str, Any]], None]

# target -> legal source states
TRANSITIONS: Dict[VideoStatus, FrozenSet[VideoStatus]] = {
    VideoStatus.EDITING_QUEUED: frozenset({VideoStatus.DRAFT, VideoStatus.FAILED_EDIT}),
    VideoStatus.EDITING: frozenset({VideoStatus.EDITING_QUEUED, VideoStatus.EDITING}),
    VideoStatus.EDITED: frozenset({VideoStatus.EDITING}),
    VideoStatus.FAILED_EDIT: frozenset({VideoStatus.EDITING_QUEUED, VideoStatus.EDITING}),
    VideoStatus.UPLOAD_QUEUED: frozenset({VideoStatus.EDITED, VideoStatus.FAILED_UPLOAD}),
    VideoStatus.UPLOADING: frozenset({VideoStatus.UPLOAD_QUEUED, VideoStatus.UPLOADING}),
    VideoStatus.POSTED: frozenset({VideoStatus.UPLOADING}),
    VideoStatus.FAILED_UPLOAD: frozenset({VideoStatus.UPLOAD_QUEUED, VideoStatus.UPLOADING}),
}

TERMINAL_STATES = frozenset({VideoStatus.POSTED, VideoStatus.FAILED_EDIT, VideoStatus.FAILED_UPLOAD})
FAILED_STATES = frozenset({VideoStatus.FAILED_EDIT, VideoStatus.FAILED_UPLOAD})

# Statuses each worker role accepts deliveries for
ROLE_ACTIVE_STATES = {
    "edit": frozenset({VideoStatus.EDITING_QUEUED, VideoStatus.EDITING}),
    "upload": frozenset({VideoStatus.UPLOAD_QUEUED, VideoStatus.UPLOADING}),
}

# Statuses that mean the role's work is already done (or abandoned)
ROLE_DONE_STATES = {
    "edit": frozenset({
        VideoStatus.EDITED,
        VideoStatus.UPLOAD_QUEUED,
        VideoStatus.UPLOADING,
        VideoStatus.POSTED,
        VideoStatus.FAILED_EDIT,
        VideoStatus.FAILED_UPLOAD,
    }),
    "upload": frozenset({VideoStatus.POSTED, VideoStatus.FAILED_UPLOAD, VideoStatus.FAILED_EDIT}),
}


def is_terminal(status: VideoStatus) -> bool:
    return status in TERMINAL_STATES


def delivery_skip_reason(role: str, status: VideoStatus) -> Optional[str]:
    """Why a delivery for ``role`` should be acknowledged without work, or None to process it."""
    if status in ROLE_ACTIVE_STATES[role]:
        return None
    if status in ROLE_DONE_STATES[role]:
        return "already_processed"
    return "not_queued"


class VideoStore:
    """All reads and writes of video rows and their job audit records."""

    def __init__(self, session_factory: sessionmaker, notifier: Optional[Notifier] = None):
        self._session_factory = session_factory
        self._notifier = notifier

    @property
    def session_factory(self) -> sessionmaker:
        return self._session_factory

    # ==================== Videos ====================

    def get(self, video_id: str) -> Optional[Video]:
        with self._session_factory() as session:
            return session.get(Video, video_id)

    def create(
        self,
        user_id: str,
        src_url: str,
        title: Optional[str] = None,
        account_id: Optional[str] = None,
        edit_spec: Optional[Dict[str, Any]] = None,
        status: VideoStatus = VideoStatus.DRAFT,
    ) -> Video:
        with self._session_factory() as session:
            video = Video(
                user_id=user_id,
                src_url=src_url,
                title=title,
                account_id=account_id,
                edit_spec_json=edit_spec,
                status=status,
            )
            session.add(video)
            session.commit()
            return video

    def transition(
        self,
        video_id: str,
        target: VideoStatus,
        progress: Optional[int] = None,
        error: Optional[str] = None,
        clear_error: bool = False,
        **fields: Any,
    ) -> bool:
        """
        Move a video to ``target`` if its current status is a legal source.

        Extra keyword fields (``edited_url``, ``post_url``, ``account_id``)
        are written in the same statement.

        Returns:
            True if this call performed the transition
        """
        sources = TRANSITIONS[target]
        values: Dict[str, Any] = {"status": target, "updated_at": utcnow()}
        if progress is not None:
            values["progress"] = max(0, min(100, int(progress)))
        if error is not None:
            values["error"] = error
        elif clear_error:
            values["error"] = None
        values.update(fields)

        with self._session_factory() as session:
            result = session.execute(
                update(Video)
                .where(Video.id == video_id, Video.status.in_(sources))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            if result.rowcount != 1:
                current = session.execute(select(Video.status).where(Video.id == video_id)).scalar_one_or_none()
                logger.info(
                    f"[State] Transition of {video_id} to {target.value} skipped "
                    f"(current: {current.value if current else 'missing'})"
                )
                return False
            user_id = session.execute(select(Video.user_id).where(Video.id == video_id)).scalar_one()

        extra = {}
        if error is not None:
            extra["error"] = error
        for key in ("edited_url", "post_url"):
            if fields.get(key):
                extra["editedUrl" if key == "edited_url" else "postUrl"] = fields[key]
        self._emit(user_id, video_id, target, extra)
        return True

    def mark_failed(self, video_id: str, target: VideoStatus, error: str) -> bool:
        """Conditionally record a failure. Never overwrites a terminal state."""
        if target not in FAILED_STATES:
            raise ValueError(f"{target} is not a failure state")
        return self.transition(video_id, target, error=error[:2000])

    def set_progress(self, video_id: str, progress: int) -> None:
        with self._session_factory() as session:
            session.execute(
                update(Video)
                .where(Video.id == video_id, Video.status.notin_(TERMINAL_STATES))
                .values(progress=max(0, min(100, int(progress))), updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            session.commit()

    def freeze_spec(self, video_id: str, spec: Dict[str, Any]) -> bool:
        """Capture the design spec on the video unless one is already frozen."""
        with self._session_factory() as session:
            video = session.get(Video, video_id)
            if video is None or video.edit_spec_json is not None:
                return False
            video.edit_spec_json = spec
            session.commit()
            return True

    def delete_video(self, video_id: str, user_id: str) -> bool:
        """Delete a terminal video owned by ``user_id``."""
        with self._session_factory() as session:
            video = session.get(Video, video_id)
            if video is None or video.user_id != user_id:
                return False
            if not is_terminal(video.status):
                logger.info(f"[State] Refusing to delete {video_id} in {video.status.value}")
                return False
            session.delete(video)
            session.commit()
            return True

    # ==================== Jobs ====================

    def record_job_queued(self, video_id: str, job_type: JobType) -> str:
        with self._session_factory() as session:
            job = Job(video_id=video_id, type=job_type, status=JobStatus.QUEUED)
            session.add(job)
            session.commit()
            return job.id

    def start_job(self, video_id: str, job_type: JobType) -> str:
        """Mark the latest job of this type running, creating one when none exists."""
        with self._session_factory() as session:
            job = session.execute(
                select(Job)
                .where(Job.video_id == video_id, Job.type == job_type)
                .order_by(Job.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            if job is None or job.status in (JobStatus.SUCCEEDED, JobStatus.FAILED):
                job = Job(video_id=video_id, type=job_type)
                session.add(job)
            job.status = JobStatus.RUNNING
            job.attempts = (job.attempts or 0) + 1
            job.started_at = utcnow()
            job.finished_at = None
            session.commit()
            return job.id

    def finish_job(self, job_id: str, succeeded: bool, log: Optional[str] = None, error: Optional[str] = None) -> None:
        with self._session_factory() as session:
            job = session.get(Job, job_id)
            if job is None:
                return
            job.status = JobStatus.SUCCEEDED if succeeded else JobStatus.FAILED
            job.finished_at = utcnow()
            if log:
                job.log = log
            if error:
                job.error = error[:2000]
            session.commit()

    # ==================== Notifications ====================

    def _emit(self, user_id: str, video_id: str, status: VideoStatus, extra: Dict[str, Any]) -> None:
        if self._notifier is None:
            return
        event = {"type": "video_status_changed", "videoId": video_id, "status": status.value}
        event.update(extra)
        try:
            self._notifier(user_id, event)
        except Exception as e:
            logger.warning(f"[State] Notification for {video_id} failed: {e}")
