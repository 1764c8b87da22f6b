import asyncio
import json
import threading

import pytest
from fastapi.testclient import TestClient

from handler import build_app
from subiteya.config import Settings
from subiteya.guard import ExecutionGuard
from subiteya.models import VideoStatus
from subiteya.signature import SignatureVerifier
from subiteya.webhooks import WebhookProcessor, parse_payload


class FakeWorker:
    def __init__(self, store, role="upload", error=None, release=None):
        self.store = store
        self.role = role
        self.error = error
        self.release = release
        self.processed = []

    def process(self, video_id):
        if self.release is not None:
            self.release.wait(5)
        self.processed.append(video_id)
        if self.error:
            raise self.error
        return {"videoId": video_id, "duration": 12}


class RejectingVerifier:
    enabled = True

    def verify(self, body, signature, url=None):
        return signature == "valid"


def _body(video_id):
    return json.dumps({"videoId": video_id}).encode()


@pytest.fixture
def guard(clock):
    return ExecutionGuard(max_concurrent_per_account=3, clock=clock)


@pytest.fixture
def worker(store):
    return FakeWorker(store)


@pytest.fixture
def client(store, guard, worker):
    processor = WebhookProcessor("upload", worker, store, guard)
    app = build_app(Settings(worker_role="upload"), processor=processor, verifier=SignatureVerifier(None))
    return TestClient(app)


def test_invalid_signature_is_rejected(store, guard, worker):
    processor = WebhookProcessor("upload", worker, store, guard)
    client = TestClient(build_app(Settings(worker_role="upload"), processor=processor, verifier=RejectingVerifier()))

    response = client.post("/process", content=_body("v1"), headers={"upstash-signature": "forged"})

    assert response.status_code == 401
    assert worker.processed == []


@pytest.mark.parametrize("body", [b"", b"not json", b"[]", b'{"videoId": ""}', b'{"priority": "high"}'])
def test_missing_video_id_is_bad_request(client, body):
    response = client.post("/process", content=body)

    assert response.status_code == 400
    assert response.json() == {"error": "videoId is required"}


def test_unknown_video_is_not_found(client):
    assert client.post("/process", content=_body("missing")).status_code == 404


def test_successful_delivery(client, store, worker, guard):
    video = store.create("user-1", "s3://b/src.mp4", account_id="acct", status=VideoStatus.UPLOAD_QUEUED)

    response = client.post("/process", content=_body(video.id))

    assert response.status_code == 200
    assert response.json() == {"success": True, "videoId": video.id, "duration": 12}
    assert worker.processed == [video.id]
    assert not guard.is_in_progress(video.id)


def test_duplicate_delivery_for_posted_video_is_skipped(client, store, worker, session_factory):
    video = store.create("user-1", "s3://b/src.mp4", status=VideoStatus.UPLOADING)
    store.transition(video.id, VideoStatus.POSTED, post_url="https://www.tiktok.com/@brand/video/1")

    response = client.post("/process", content=_body(video.id))

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["skipped"] is True
    assert body["reason"] == "already_processed"
    assert worker.processed == []
    assert store.get(video.id).post_url == "https://www.tiktok.com/@brand/video/1"


def test_video_not_yet_queued_is_skipped(client, store):
    video = store.create("user-1", "s3://b/src.mp4", status=VideoStatus.EDITED)

    body = client.post("/process", content=_body(video.id)).json()

    assert body["skipped"] is True
    assert body["reason"] == "not_queued"


def test_running_video_is_skipped(client, store, guard, worker):
    video = store.create("user-1", "s3://b/src.mp4", status=VideoStatus.UPLOADING)
    guard.mark_start(video.id)

    body = client.post("/process", content=_body(video.id)).json()

    assert body == {"success": True, "skipped": True, "reason": "already_running", "videoId": video.id}
    assert worker.processed == []


def test_account_backoff_returns_retry_after(client, store, guard):
    video = store.create("user-1", "s3://b/src.mp4", account_id="acct", status=VideoStatus.UPLOAD_QUEUED)
    guard.record_account_failure("acct")
    guard.record_account_failure("acct")

    response = client.post("/process", content=_body(video.id))

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "4"
    assert response.json()["retryAfter"] == 4
    assert response.json()["reason"] == "account_backoff"


def test_worker_failure_returns_500_and_releases_guard(store, guard):
    worker = FakeWorker(store, error=RuntimeError("TikTok init error: spam_risk"))
    processor = WebhookProcessor("upload", worker, store, guard)
    client = TestClient(build_app(Settings(worker_role="upload"), processor=processor, verifier=SignatureVerifier(None)))
    video = store.create("user-1", "s3://b/src.mp4", status=VideoStatus.UPLOAD_QUEUED)

    response = client.post("/process", content=_body(video.id))

    assert response.status_code == 500
    assert response.json() == {"error": "TikTok init error: spam_risk"}
    assert not guard.is_in_progress(video.id)


def test_account_ceiling_under_concurrent_deliveries(store, guard):
    release = threading.Event()
    worker = FakeWorker(store, release=release)
    processor = WebhookProcessor("upload", worker, store, guard)
    videos = [
        store.create("user-1", f"s3://b/{i}.mp4", account_id="acct", status=VideoStatus.UPLOAD_QUEUED)
        for i in range(4)
    ]

    async def deliver_all():
        tasks = [asyncio.create_task(processor.handle(_body(v.id))) for v in videos]
        rejected = await tasks[3]
        release.set()
        accepted = await asyncio.gather(*tasks[:3])
        return accepted, rejected

    accepted, rejected = asyncio.run(deliver_all())

    assert [status for status, _, _ in accepted] == [200, 200, 200]
    status, body, headers = rejected
    assert status == 429
    assert body["reason"] == "account_busy"
    assert headers == {"Retry-After": "30"}


def test_concurrent_duplicate_runs_once(store, guard):
    release = threading.Event()
    worker = FakeWorker(store, release=release)
    processor = WebhookProcessor("upload", worker, store, guard)
    video = store.create("user-1", "s3://b/src.mp4", status=VideoStatus.UPLOAD_QUEUED)

    async def deliver_twice():
        first = asyncio.create_task(processor.handle(_body(video.id)))
        second = asyncio.create_task(processor.handle(_body(video.id)))
        duplicate = await second
        release.set()
        return await first, duplicate

    first, duplicate = asyncio.run(deliver_twice())

    assert first[0] == 200
    assert duplicate[1]["skipped"] is True
    assert worker.processed == [video.id]


def test_edit_role_ignores_account_ceiling(store, guard):
    release = threading.Event()
    release.set()
    worker = FakeWorker(store, role="edit", release=release)
    processor = WebhookProcessor("edit", worker, store, guard)
    for i in range(4):
        guard.mark_start(f"other-{i}", "acct")
    video = store.create("user-1", "s3://b/src.mp4", account_id="acct", status=VideoStatus.EDITING_QUEUED)

    status, body, _ = asyncio.run(processor.handle(_body(video.id)))

    assert status == 200


def test_health(client, guard):
    guard.mark_start("video-1")

    body = client.get("/health").json()

    assert body["status"] == "healthy"
    assert body["service"] == "upload-worker"
    assert body["qstash"] == {"enabled": False, "signatureVerification": False}
    assert body["executions"] == {"running": 1}
    assert body["uptime"] >= 0
    assert "timestamp" in body


def test_index(client):
    assert client.get("/").json()["endpoints"]["process"] == "POST /process"


def test_parse_payload_strips_video_id():
    assert parse_payload(b'{"videoId": " abc ", "traceId": "t"}') == {"videoId": "abc", "traceId": "t"}


def test_signature_verifier_requires_header_when_enabled():
    verifier = SignatureVerifier("sig_current_key", "sig_next_key")

    assert verifier.enabled
    assert verifier.verify(b"{}", None) is False
    assert SignatureVerifier(None).verify(b"{}", None) is True
