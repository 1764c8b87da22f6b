"""
Object storage for source and edited media.

Usage:
    from subiteya.storage import StorageClient

    storage = StorageClient.from_settings(settings)
    result = storage.upload_file("out.mp4", "out.mp4", folder="videos")
    # result = {"key": "videos/1700000000000-ab12...-out.mp4", "url": "s3://bucket/videos/...", ...}
    storage.download_file(extract_s3_key(result["url"]), "/tmp/in.mp4")
"""

import logging
import os
import random
import re
import secrets
import time
from typing import Any, Callable, Dict, Optional, TypeVar
from urllib.parse import unquote, urlparse

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from subiteya.errors import TransferError, TransferErrorCode

logger = logging.getLogger(__name__)

T = TypeVar("T")

PRESIGN_DOWNLOAD_EXPIRES = 60 * 60  # 1 hour

RETRY_POLICIES = {
    TransferErrorCode.SIZE_MISMATCH: {
        "backoff_base": 1.0,
        "backoff_multiplier": 2.0,
    },
    TransferErrorCode.UPLOAD_FAILED: {
        "backoff_base": 2.0,
        "backoff_multiplier": 2.0,
    },
    TransferErrorCode.DOWNLOAD_FAILED: {
        "backoff_base": 2.0,
        "backoff_multiplier": 2.0,
    },
}

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


# ==================== Keys ====================

def build_object_key(filename: str, folder: str = "videos", now_ms: Optional[int] = None) -> str:
    """Key layout: {folder}/{timestamp-ms}-{16 hex}-{basename}{ext}"""
    base, ext = os.path.splitext(os.path.basename(filename))
    base = _UNSAFE_NAME_CHARS.sub("-", base).strip("-") or "file"
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{folder}/{timestamp}-{secrets.token_hex(8)}-{base}{ext.lower()}"


def extract_s3_key(url: str) -> str:
    """
    Reduce a storage locator to its bare key.

    Accepts "s3://bucket/key", virtual-hosted and path-style
    "https://...amazonaws.com/..." URLs, or a bare key.
    """
    if not url:
        raise TransferError(TransferErrorCode.INVALID_URL, "Empty storage URL", retryable=False)

    if url.startswith("s3://"):
        parts = url[len("s3://"):].split("/", 1)
        if len(parts) < 2 or not parts[1]:
            raise TransferError(TransferErrorCode.INVALID_URL, f"No key in storage URL: {url}", retryable=False)
        return parts[1]

    if url.startswith("http://") or url.startswith("https://"):
        parsed = urlparse(url)
        host = parsed.netloc.lower()
        path = unquote(parsed.path.lstrip("/"))
        if not path:
            raise TransferError(TransferErrorCode.INVALID_URL, f"No key in storage URL: {url}", retryable=False)
        # Path-style: s3.<region>.amazonaws.com/<bucket>/<key>
        if host.startswith("s3.") or host.startswith("s3-") or host == "s3.amazonaws.com":
            parts = path.split("/", 1)
            if len(parts) < 2:
                raise TransferError(TransferErrorCode.INVALID_URL, f"No key in storage URL: {url}", retryable=False)
            return parts[1]
        return path

    return url.lstrip("/")


# ==================== Retry ====================

def calculate_backoff_delay(attempt: int, policy: dict, max_delay: float = 30.0) -> float:
    """
    Exponential backoff with ±25% jitter.

    delay = min(base × multiplier^(attempt-1) × jitter, max_delay)
    """
    base = policy.get("backoff_base", 1.0)
    multiplier = policy.get("backoff_multiplier", 2.0)

    exponential_delay = base * (multiplier ** (attempt - 1))
    jitter = 0.75 + random.random() * 0.5  # [0.75, 1.25]

    return min(exponential_delay * jitter, max_delay)


def retry_with_backoff(
    operation: Callable[[], T],
    max_attempts: int = 3,
    error_code: Optional[str] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Execute operation with automatic retry and exponential backoff.

    Non-retryable TransferErrors stop immediately; anything else is wrapped
    in a retryable TransferError.
    """
    policy = RETRY_POLICIES.get(error_code, {"backoff_base": 1.0, "backoff_multiplier": 2.0})
    last_error: Optional[TransferError] = None

    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except TransferError as e:
            last_error = e
            if not e.retryable or attempt >= max_attempts:
                logger.error(f"[S3] Operation failed (not retryable or exhausted): {e.code} - {e}")
                raise
        except (ClientError, BotoCoreError, OSError) as e:
            last_error = TransferError(
                error_code or TransferErrorCode.NETWORK_ERROR,
                str(e),
                retryable=True,
                context={"original_error": type(e).__name__},
            )
            if attempt >= max_attempts:
                raise last_error from e

        delay = calculate_backoff_delay(attempt, policy)
        logger.warning(f"[S3] Attempt {attempt}/{max_attempts} failed: {last_error}. Retrying in {delay:.1f}s...")
        sleep(delay)

    raise last_error


def _is_not_found(error: ClientError) -> bool:
    code = (error.response.get("Error") or {}).get("Code")
    return code in ("404", "NoSuchKey", "NotFound")


# ==================== Client ====================

class StorageClient:
    """S3 (or S3-compatible) bucket access."""

    def __init__(self, s3_client: Any, bucket: str, max_attempts: int = 3,
                 sleep: Callable[[float], None] = time.sleep):
        self._s3 = s3_client
        self.bucket = bucket
        self.max_attempts = max_attempts
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings) -> "StorageClient":
        config = Config(
            signature_version="s3v4",
            s3={"addressing_style": "path" if settings.s3_force_path_style else "auto"},
            retries={"max_attempts": 2, "mode": "standard"},
        )
        s3 = boto3.client(
            "s3",
            region_name=settings.aws_region,
            endpoint_url=settings.s3_endpoint,
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            config=config,
        )
        return cls(s3, settings.s3_bucket)

    def upload_file(
        self,
        path: str,
        filename: Optional[str] = None,
        folder: str = "videos",
        content_type: str = "video/mp4",
        metadata: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        if not os.path.exists(path):
            raise TransferError(TransferErrorCode.UPLOAD_FAILED, f"File not found: {path}", retryable=False)
        size = os.path.getsize(path)
        if size == 0:
            raise TransferError(TransferErrorCode.UPLOAD_FAILED, f"File is empty: {path}", retryable=False)

        key = build_object_key(filename or os.path.basename(path), folder)

        def _upload() -> Dict[str, Any]:
            start = time.time()
            extra_args: Dict[str, Any] = {"ContentType": content_type}
            if metadata:
                extra_args["Metadata"] = {k: str(v) for k, v in metadata.items()}
            self._s3.upload_file(path, self.bucket, key, ExtraArgs=extra_args)

            head = self._s3.head_object(Bucket=self.bucket, Key=key)
            remote_size = int(head.get("ContentLength") or 0)
            if remote_size != size:
                raise TransferError(
                    TransferErrorCode.SIZE_MISMATCH,
                    f"Size mismatch after upload: expected {size}, got {remote_size}",
                    context={"expected": size, "actual": remote_size},
                )

            elapsed = max(time.time() - start, 1e-6)
            logger.info(f"[S3] Uploaded {key} ({size / 1024 / 1024:.2f}MB in {elapsed:.1f}s)")
            return {"key": key, "url": f"s3://{self.bucket}/{key}", "bucket": self.bucket, "size": size}

        return retry_with_backoff(_upload, self.max_attempts, TransferErrorCode.UPLOAD_FAILED, self._sleep)

    def download_file(self, key: str, dest_path: str) -> Dict[str, Any]:
        def _download() -> Dict[str, Any]:
            try:
                head = self._s3.head_object(Bucket=self.bucket, Key=key)
            except ClientError as e:
                if _is_not_found(e):
                    raise TransferError(TransferErrorCode.NOT_FOUND, f"Object not found: {key}", retryable=False) from e
                raise
            expected = int(head.get("ContentLength") or 0)

            self._s3.download_file(self.bucket, key, dest_path)
            actual = os.path.getsize(dest_path)
            if expected and actual != expected:
                try:
                    os.remove(dest_path)
                except OSError:
                    pass
                raise TransferError(
                    TransferErrorCode.SIZE_MISMATCH,
                    f"Size mismatch: expected {expected}, got {actual}",
                    context={"expected": expected, "actual": actual},
                )

            logger.info(f"[S3] Downloaded {key} ({actual / 1024 / 1024:.2f}MB)")
            return {"key": key, "path": dest_path, "size": actual}

        return retry_with_backoff(_download, self.max_attempts, TransferErrorCode.DOWNLOAD_FAILED, self._sleep)

    def delete(self, key: str) -> None:
        self._s3.delete_object(Bucket=self.bucket, Key=key)

    def exists(self, key: str) -> bool:
        try:
            self._s3.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if _is_not_found(e):
                return False
            raise

    def presigned_download_url(self, key: str, expires_in: int = PRESIGN_DOWNLOAD_EXPIRES) -> str:
        return self._s3.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in,
        )
