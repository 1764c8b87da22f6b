import os
import shutil

import pytest

from subiteya.db import create_session_factory
from subiteya.state import VideoStore

TEST_ENCRYPTION_KEY = "0123456789abcdef0123456789abcdef"


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def __call__(self, user_id, event):
        self.events.append((user_id, event))


class FakeStorage:
    """In-memory stand-in for StorageClient keyed by object key."""

    def __init__(self, objects=None):
        self.objects = dict(objects or {})
        self.uploads = []

    def download_file(self, key, dest_path):
        if key not in self.objects:
            raise FileNotFoundError(key)
        with open(dest_path, "wb") as f:
            f.write(self.objects[key])
        return {"key": key, "path": dest_path, "size": len(self.objects[key])}

    def upload_file(self, path, filename=None, folder="videos", content_type="video/mp4", metadata=None):
        key = f"{folder}/{filename or os.path.basename(path)}"
        with open(path, "rb") as f:
            self.objects[key] = f.read()
        self.uploads.append({"key": key, "metadata": metadata})
        return {"key": key, "url": f"s3://test-bucket/{key}", "bucket": "test-bucket", "size": len(self.objects[key])}


requires_ffmpeg = pytest.mark.skipif(
    shutil.which("ffmpeg") is None or shutil.which("ffprobe") is None,
    reason="ffmpeg/ffprobe not installed",
)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def session_factory():
    return create_session_factory("sqlite://")


@pytest.fixture
def store(session_factory, notifier):
    return VideoStore(session_factory, notifier)
