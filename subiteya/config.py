"""
Worker configuration.

All settings come from the environment and are read once, at startup, by
``Settings.from_env()``. ``handler.py`` loads a ``.env`` file before calling it.
"""

import logging
import os
import tempfile
from dataclasses import dataclass
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_PORTS = {"edit": 3001, "upload": 3002}


def _env_str(env: Mapping[str, str], key: str, default: Optional[str] = None) -> Optional[str]:
    value = env.get(key)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    value = _env_str(env, key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"[Config] {key}={value!r} is not an integer, using {default}")
        return default


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    value = _env_str(env, key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"[Config] {key}={value!r} is not a number, using {default}")
        return default


def _env_bool(env: Mapping[str, str], key: str, default: bool = False) -> bool:
    value = _env_str(env, key)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    worker_role: str = "edit"
    host: str = "0.0.0.0"
    port: int = 3001
    log_level: str = "INFO"

    database_url: str = "sqlite:///subiteya.db"

    s3_bucket: str = "subiteya-videos"
    aws_region: str = "us-east-1"
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    s3_endpoint: Optional[str] = None
    s3_force_path_style: bool = False

    qstash_token: Optional[str] = None
    qstash_current_signing_key: Optional[str] = None
    qstash_next_signing_key: Optional[str] = None
    edit_worker_url: Optional[str] = None
    upload_worker_url: Optional[str] = None

    encryption_key: Optional[str] = None
    tiktok_client_key: Optional[str] = None
    tiktok_client_secret: Optional[str] = None
    tiktok_api_base: str = "https://open.tiktokapis.com"
    tiktok_privacy_level: str = "SELF_ONLY"
    tiktok_processing_delay: float = 3.0

    openai_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None
    narration_model: str = "gpt-4o-mini"
    whisper_model: str = "whisper-1"
    elevenlabs_api_key: Optional[str] = None
    elevenlabs_model: str = "eleven_multilingual_v2"

    events_url: Optional[str] = None
    work_dir: str = tempfile.gettempdir()

    idempotency_grace_seconds: float = 300.0
    max_concurrent_per_account: int = 3
    max_account_backoff_seconds: float = 300.0

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        role = (_env_str(env, "WORKER_ROLE", "edit") or "edit").lower()
        if role not in DEFAULT_PORTS:
            raise ValueError(f"WORKER_ROLE must be 'edit' or 'upload', got {role!r}")

        return cls(
            worker_role=role,
            host=_env_str(env, "HOST", "0.0.0.0"),
            port=_env_int(env, "PORT", DEFAULT_PORTS[role]),
            log_level=(_env_str(env, "LOG_LEVEL", "INFO") or "INFO").upper(),
            database_url=_env_str(env, "DATABASE_URL", "sqlite:///subiteya.db"),
            s3_bucket=_env_str(env, "S3_BUCKET_NAME", "subiteya-videos"),
            aws_region=_env_str(env, "AWS_REGION", "us-east-1"),
            aws_access_key_id=_env_str(env, "AWS_ACCESS_KEY_ID"),
            aws_secret_access_key=_env_str(env, "AWS_SECRET_ACCESS_KEY"),
            s3_endpoint=_env_str(env, "S3_ENDPOINT"),
            s3_force_path_style=_env_bool(env, "S3_FORCE_PATH_STYLE"),
            qstash_token=_env_str(env, "QSTASH_TOKEN"),
            qstash_current_signing_key=_env_str(env, "QSTASH_CURRENT_SIGNING_KEY"),
            qstash_next_signing_key=_env_str(env, "QSTASH_NEXT_SIGNING_KEY"),
            edit_worker_url=_env_str(env, "EDIT_WORKER_URL"),
            upload_worker_url=_env_str(env, "UPLOAD_WORKER_URL"),
            encryption_key=_env_str(env, "ENCRYPTION_KEY"),
            tiktok_client_key=_env_str(env, "TIKTOK_CLIENT_KEY"),
            tiktok_client_secret=_env_str(env, "TIKTOK_CLIENT_SECRET"),
            tiktok_api_base=(_env_str(env, "TIKTOK_API_BASE", "https://open.tiktokapis.com") or "").rstrip("/"),
            tiktok_privacy_level=_env_str(env, "TIKTOK_PRIVACY_LEVEL", "SELF_ONLY"),
            tiktok_processing_delay=max(0.0, _env_float(env, "TIKTOK_PROCESSING_DELAY", 3.0)),
            openai_api_key=_env_str(env, "OPENAI_API_KEY"),
            openai_base_url=_env_str(env, "OPENAI_BASE_URL"),
            narration_model=_env_str(env, "NARRATION_MODEL", "gpt-4o-mini"),
            whisper_model=_env_str(env, "WHISPER_MODEL", "whisper-1"),
            elevenlabs_api_key=_env_str(env, "ELEVENLABS_API_KEY"),
            elevenlabs_model=_env_str(env, "ELEVENLABS_MODEL", "eleven_multilingual_v2"),
            events_url=_env_str(env, "EVENTS_URL"),
            work_dir=_env_str(env, "WORK_DIR", tempfile.gettempdir()),
            idempotency_grace_seconds=_env_float(env, "IDEMPOTENCY_GRACE_SECONDS", 300.0),
            max_concurrent_per_account=max(1, _env_int(env, "MAX_CONCURRENT_PER_ACCOUNT", 3)),
            max_account_backoff_seconds=_env_float(env, "MAX_ACCOUNT_BACKOFF_SECONDS", 300.0),
        )

    @property
    def signature_verification_enabled(self) -> bool:
        return bool(self.qstash_current_signing_key)

    @property
    def dispatch_enabled(self) -> bool:
        return bool(self.qstash_token)

    @property
    def service_name(self) -> str:
        return f"{self.worker_role}-worker"

    def validate_for_role(self) -> None:
        """Fail fast on settings the role cannot run without; warn on optional ones."""
        if self.worker_role == "upload" and not self.encryption_key:
            raise ValueError("ENCRYPTION_KEY is required for the upload worker")

        if not self.signature_verification_enabled:
            logger.warning("[Config] QSTASH_CURRENT_SIGNING_KEY not set: webhook signatures will NOT be verified")
        if self.worker_role == "edit" and not self.openai_api_key:
            logger.warning("[Config] OPENAI_API_KEY not set: subtitles and narration are disabled")
        if self.worker_role == "edit" and not self.elevenlabs_api_key:
            logger.warning("[Config] ELEVENLABS_API_KEY not set: narration is disabled")
        if self.worker_role == "upload" and self.tiktok_privacy_level != "SELF_ONLY":
            logger.warning(
                f"[Config] TIKTOK_PRIVACY_LEVEL={self.tiktok_privacy_level}: unaudited TikTok apps may only post "
                f"as SELF_ONLY, expect publish requests to be rejected"
            )
        if not self.events_url:
            logger.info("[Config] EVENTS_URL not set: status notifications are logged only")
