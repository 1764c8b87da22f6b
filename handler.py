"""
HTTP handler for the SubiteYa workers.

One process runs one worker role, selected by WORKER_ROLE:
- edit: downloads the source video, applies the frozen brand pattern
  (effects, logo, narration, subtitles) and stores the edited video
- upload: publishes the edited video to the account's TikTok profile

Endpoints:
    POST /process   push delivery {videoId, priority?, traceId?}
    GET  /health    liveness and guard state
    GET  /          service banner

Usage:
    WORKER_ROLE=edit python handler.py
    WORKER_ROLE=upload PORT=3002 python handler.py
"""

import logging
import time
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from media_tools.brand.processor import BrandServices
from media_tools.narration.processor import NarrationServices
from media_tools.speech import ElevenLabsSynthesizer, NarrationScriptWriter, WhisperTranscriber
from subiteya.accounts import AccountTokens
from subiteya.config import Settings
from subiteya.crypto import TokenCipher
from subiteya.db import create_session_factory
from subiteya.edit_worker import EditWorker
from subiteya.guard import ExecutionGuard
from subiteya.notify import build_notifier
from subiteya.signature import SIGNATURE_HEADER, SignatureVerifier
from subiteya.state import VideoStore
from subiteya.storage import StorageClient
from subiteya.tiktok import TikTokClient
from subiteya.upload_worker import UploadWorker
from subiteya.webhooks import WebhookProcessor

logger = logging.getLogger("handler")


# ==================== Service wiring ====================

def build_brand_services(settings: Settings) -> BrandServices:
    """Speech services for the edit worker; features without credentials stay off."""
    if not settings.openai_api_key:
        return BrandServices()

    transcriber = WhisperTranscriber(
        settings.openai_api_key, base_url=settings.openai_base_url, model=settings.whisper_model
    )
    narration = None
    if settings.elevenlabs_api_key:
        narration = NarrationServices(
            transcriber=transcriber,
            writer=NarrationScriptWriter(
                settings.openai_api_key, base_url=settings.openai_base_url, model=settings.narration_model
            ),
            synthesizer=ElevenLabsSynthesizer(settings.elevenlabs_api_key, model=settings.elevenlabs_model),
        )
    return BrandServices(narration=narration, transcriber=transcriber)


def build_processor(settings: Settings, store: Optional[VideoStore] = None) -> WebhookProcessor:
    """Construct the worker for the configured role and its webhook gatekeeper."""
    if store is None:
        store = VideoStore(create_session_factory(settings.database_url), build_notifier(settings.events_url))
    guard = ExecutionGuard(
        grace_seconds=settings.idempotency_grace_seconds,
        max_concurrent_per_account=settings.max_concurrent_per_account,
        max_backoff_seconds=settings.max_account_backoff_seconds,
    )
    storage = StorageClient.from_settings(settings)

    if settings.worker_role == "upload":
        tiktok = TikTokClient(
            api_base=settings.tiktok_api_base,
            client_key=settings.tiktok_client_key,
            client_secret=settings.tiktok_client_secret,
        )
        accounts = AccountTokens(store.session_factory, TokenCipher(settings.encryption_key), tiktok)
        worker = UploadWorker(
            store,
            storage,
            accounts,
            tiktok,
            guard,
            privacy_level=settings.tiktok_privacy_level,
            processing_delay=settings.tiktok_processing_delay,
            work_dir=settings.work_dir,
        )
    else:
        worker = EditWorker(store, storage, services=build_brand_services(settings), work_dir=settings.work_dir)

    return WebhookProcessor(settings.worker_role, worker, store, guard)


# ==================== Application ====================

def build_app(
    settings: Settings,
    processor: Optional[WebhookProcessor] = None,
    verifier: Optional[SignatureVerifier] = None,
) -> FastAPI:
    if processor is None:
        settings.validate_for_role()
        processor = build_processor(settings)
    if verifier is None:
        verifier = SignatureVerifier(settings.qstash_current_signing_key, settings.qstash_next_signing_key)

    app = FastAPI(title=f"SubiteYa {settings.service_name}")
    started_at = time.time()

    @app.post("/process")
    async def process(request: Request):
        raw_body = await request.body()
        if not verifier.verify(raw_body, request.headers.get(SIGNATURE_HEADER)):
            return JSONResponse({"error": "Invalid signature"}, status_code=401)

        status_code, body, headers = await processor.handle(raw_body)
        return JSONResponse(body, status_code=status_code, headers=headers)

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "service": settings.service_name,
            "uptime": round(time.time() - started_at, 3),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "qstash": {
                "enabled": settings.dispatch_enabled,
                "signatureVerification": verifier.enabled,
            },
            "executions": {"running": processor.guard.running_count()},
        }

    @app.get("/")
    async def index():
        return {
            "service": settings.service_name,
            "role": settings.worker_role,
            "endpoints": {"process": "POST /process", "health": "GET /health"},
        }

    return app


def main() -> None:
    load_dotenv()
    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    logger.info(f"[Handler] Starting {settings.service_name} on {settings.host}:{settings.port}")
    uvicorn.run(build_app(settings), host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
