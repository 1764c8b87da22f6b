"""
TikTok Content Posting API client.

Covers the calls the upload worker needs: creator info, upload init, the
single-chunk binary PUT, publish status, finalize and OAuth token refresh.
Tokens and upload URLs are never logged.
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

import requests

from subiteya.errors import (
    TikTokAuthError,
    TikTokError,
    TikTokPublishError,
    TikTokRateLimitError,
    TikTokUploadError,
)

logger = logging.getLogger(__name__)

CREATOR_INFO_PATH = "/v2/post/publish/creator_info/query/"
INIT_PATH = "/v2/post/publish/video/init/"
STATUS_PATH = "/v2/post/publish/status/fetch/"
FINALIZE_PATH = "/v2/post/publish/video/publish/"
TOKEN_PATH = "/v2/oauth/token/"

AUTH_ERROR_CODES = {"access_token_invalid", "access_token_expired", "token_expired", "invalid_token"}
RATE_LIMIT_CODES = {"rate_limit_exceeded", "spam_risk_too_many_posts"}

STATUS_COMPLETE = "PUBLISH_COMPLETE"
STATUS_FAILED = {"FAILED", "PUBLISH_FAILED"}


@dataclass
class PostSettings:
    title: str
    privacy_level: str = "SELF_ONLY"
    disable_duet: bool = False
    disable_comment: bool = False
    disable_stitch: bool = False
    video_cover_timestamp_ms: int = 1000


@dataclass
class InitResult:
    publish_id: str
    upload_url: str


@dataclass
class PublishStatus:
    status: str
    fail_reason: Optional[str] = None
    post_id: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return self.status == STATUS_COMPLETE

    @property
    def is_failed(self) -> bool:
        return self.status in STATUS_FAILED


@dataclass
class RefreshedTokens:
    access_token: str
    refresh_token: Optional[str]
    expires_in: int
    open_id: Optional[str] = None


def redact_url(url: str) -> str:
    """Drop the query string (signatures) from a URL before logging it."""
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}{parts.path}"


class TikTokClient:
    def __init__(
        self,
        api_base: str = "https://open.tiktokapis.com",
        client_key: Optional[str] = None,
        client_secret: Optional[str] = None,
        timeout: float = 30,
        upload_timeout: float = 600,
        session: Optional[requests.Session] = None,
    ):
        self.api_base = api_base.rstrip("/")
        self.client_key = client_key
        self.client_secret = client_secret
        self.timeout = timeout
        self.upload_timeout = upload_timeout
        self.session = session or requests.Session()

    # ==================== Response handling ====================

    @staticmethod
    def _check(response: requests.Response, step: str, error_cls=TikTokError) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        error = payload.get("error") or {}
        if not isinstance(error, dict):
            error = {"code": str(error)}
        code = error.get("code")
        message = error.get("message") or response.reason or "Unknown error"
        log_id = error.get("log_id")

        if response.status_code == 401 or code in AUTH_ERROR_CODES:
            raise TikTokAuthError(f"TikTok {step} unauthorized: {message}", response.status_code, code, log_id)
        if response.status_code == 429 or code in RATE_LIMIT_CODES:
            raise TikTokRateLimitError(f"TikTok {step} rate limited: {message}", response.status_code, code, log_id)
        if response.status_code >= 400 or (code and code != "ok"):
            raise error_cls(f"TikTok {step} error: {message}", response.status_code, code, log_id)

        return payload.get("data") or {}

    def _post_json(self, path: str, access_token: str, body: Dict[str, Any]) -> requests.Response:
        return self.session.post(
            f"{self.api_base}{path}",
            json=body,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json; charset=UTF-8",
            },
            timeout=self.timeout,
        )

    # ==================== Publish protocol ====================

    def query_creator_info(self, access_token: str) -> Dict[str, Any]:
        data = self._check(self._post_json(CREATOR_INFO_PATH, access_token, {}), "creator info")
        logger.info(f"[TikTok] Creator info ok ({data.get('creator_username') or 'unknown creator'})")
        return data

    def init_upload(self, access_token: str, video_size: int, post: PostSettings) -> InitResult:
        body = {
            "post_info": {
                "title": post.title,
                "privacy_level": post.privacy_level,
                "disable_duet": post.disable_duet,
                "disable_comment": post.disable_comment,
                "disable_stitch": post.disable_stitch,
                "video_cover_timestamp_ms": post.video_cover_timestamp_ms,
            },
            "source_info": {
                "source": "FILE_UPLOAD",
                "video_size": video_size,
                "chunk_size": video_size,
                "total_chunk_count": 1,
            },
        }
        data = self._check(self._post_json(INIT_PATH, access_token, body), "init", TikTokUploadError)
        publish_id = data.get("publish_id")
        upload_url = data.get("upload_url")
        if not publish_id or not upload_url:
            raise TikTokUploadError("TikTok init response missing publish_id or upload_url")
        logger.info(f"[TikTok] Upload initialized: publish_id={publish_id}")
        return InitResult(publish_id=publish_id, upload_url=upload_url)

    def upload_video(self, upload_url: str, video_path: str) -> None:
        """Upload the whole file in one PUT."""
        size = os.path.getsize(video_path)
        if size <= 0:
            raise TikTokUploadError(f"Refusing to upload empty file: {video_path}")

        with open(video_path, "rb") as f:
            response = self.session.put(
                upload_url,
                data=f,
                headers={
                    "Content-Type": "video/mp4",
                    "Content-Length": str(size),
                    "Content-Range": f"bytes 0-{size - 1}/{size}",
                },
                timeout=self.upload_timeout,
            )

        if response.status_code == 401:
            raise TikTokAuthError("TikTok upload unauthorized", response.status_code)
        if response.status_code >= 400:
            raise TikTokUploadError(
                f"TikTok upload failed: {response.status_code} {response.text[:200]}", response.status_code
            )
        logger.info(f"[TikTok] Uploaded {size / 1024 / 1024:.2f}MB to {redact_url(upload_url)}")

    def fetch_status(self, access_token: str, publish_id: str) -> PublishStatus:
        data = self._check(
            self._post_json(STATUS_PATH, access_token, {"publish_id": publish_id}), "status", TikTokPublishError
        )
        post_ids = data.get("publicaly_available_post_id") or data.get("publicly_available_post_id") or []
        return PublishStatus(
            status=str(data.get("status") or "UNKNOWN"),
            fail_reason=data.get("fail_reason"),
            post_id=str(post_ids[0]) if post_ids else None,
        )

    def finalize(self, access_token: str, publish_id: str) -> Dict[str, Any]:
        data = self._check(
            self._post_json(FINALIZE_PATH, access_token, {"publish_id": publish_id}), "finalize", TikTokPublishError
        )
        return {"share_url": data.get("share_url"), "video_id": data.get("video_id")}

    # ==================== OAuth ====================

    def refresh_access_token(self, refresh_token: str) -> RefreshedTokens:
        if not self.client_key or not self.client_secret:
            raise TikTokAuthError("TikTok client credentials are not configured; cannot refresh token")

        response = self.session.post(
            f"{self.api_base}{TOKEN_PATH}",
            data={
                "client_key": self.client_key,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=self.timeout,
        )
        try:
            payload = response.json()
        except ValueError:
            payload = {}

        # The token endpoint reports errors at the top level
        if response.status_code >= 400 or payload.get("error") or not payload.get("access_token"):
            message = payload.get("error_description") or payload.get("error") or response.reason
            raise TikTokAuthError(f"TikTok token refresh failed: {message}", response.status_code)

        return RefreshedTokens(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_in=int(payload.get("expires_in") or 86400),
            open_id=payload.get("open_id"),
        )
