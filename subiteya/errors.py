"""
Job error taxonomy.

Precondition errors abort a job with no retry benefit. Transfer and platform
errors surface as job failures so the delivery service retries later.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional


class WorkerError(Exception):
    """Base class for job failures raised by the workers."""


class PreconditionError(WorkerError):
    """Missing audio, design spec, account or media. Retrying will not help."""


class VideoNotFoundError(WorkerError):
    def __init__(self, video_id: str):
        super().__init__(f"Video {video_id} not found")
        self.video_id = video_id


# ==================== Object storage ====================

class TransferErrorCode:
    SIZE_MISMATCH = "SIZE_MISMATCH"
    UPLOAD_FAILED = "UPLOAD_FAILED"
    DOWNLOAD_FAILED = "DOWNLOAD_FAILED"
    NOT_FOUND = "NOT_FOUND"
    INVALID_URL = "INVALID_URL"
    NETWORK_ERROR = "NETWORK_ERROR"


class TransferError(WorkerError):
    """Structured transfer error with retry guidance"""

    def __init__(self, code: str, message: str, retryable: bool = True, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.retryable = retryable
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc).isoformat()


# ==================== Social platform ====================

class TikTokError(WorkerError):
    def __init__(self, message: str, status_code: Optional[int] = None, error_code: Optional[str] = None,
                 log_id: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.log_id = log_id


class TikTokAuthError(TikTokError):
    """Access token rejected (401 / invalid or expired token)."""


class TikTokRateLimitError(TikTokError):
    """Platform rate limit hit."""


class TikTokUploadError(TikTokError):
    """Init or binary upload failed."""


class TikTokPublishError(TikTokError):
    """Processing or finalize failed."""
