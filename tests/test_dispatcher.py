from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from subiteya.config import Settings
from subiteya.dispatcher import JobDispatcher
from subiteya.models import Job, JobStatus, JobType, VideoStatus


@pytest.fixture
def publisher():
    publisher = MagicMock()
    publisher.message.publish_json.return_value = SimpleNamespace(message_id="msg-1")
    return publisher


@pytest.fixture
def dispatcher(store, publisher):
    return JobDispatcher(store, publisher, "https://edit.example.com/", "https://upload.example.com")


def test_queue_edit_freezes_spec_and_publishes(dispatcher, store, publisher, session_factory):
    video = store.create("user-1", "s3://b/src.mp4")

    assert dispatcher.queue_edit(video.id, "normal", {"aspectRatio": "1:1"}) is True

    stored = store.get(video.id)
    assert stored.status == VideoStatus.EDITING_QUEUED
    assert stored.progress == 0
    assert stored.edit_spec_json == {"aspectRatio": "1:1"}

    kwargs = publisher.message.publish_json.call_args.kwargs
    assert kwargs["url"] == "https://edit.example.com/process"
    assert kwargs["retries"] == 3
    assert kwargs["delay"] == "5s"
    assert kwargs["body"]["videoId"] == video.id
    assert kwargs["body"]["priority"] == "normal"
    assert isinstance(kwargs["body"]["timestamp"], int)

    with session_factory() as session:
        job = session.query(Job).filter_by(video_id=video.id).one()
        assert job.type == JobType.EDIT
        assert job.status == JobStatus.QUEUED


def test_high_priority_has_no_delay(dispatcher, store, publisher):
    video = store.create("user-1", "s3://b/src.mp4")

    dispatcher.queue_edit(video.id, "high")

    assert "delay" not in publisher.message.publish_json.call_args.kwargs


def test_existing_frozen_spec_is_kept(dispatcher, store):
    video = store.create("user-1", "s3://b/src.mp4", edit_spec={"aspectRatio": "9:16"})

    dispatcher.queue_edit(video.id, "normal", {"aspectRatio": "16:9"})

    assert store.get(video.id).edit_spec_json == {"aspectRatio": "9:16"}


def test_requeue_after_failure_clears_error(dispatcher, store):
    video = store.create("user-1", "s3://b/src.mp4", status=VideoStatus.EDITING_QUEUED)
    store.mark_failed(video.id, VideoStatus.FAILED_EDIT, "FFmpeg failed")

    assert dispatcher.queue_edit(video.id) is True
    assert store.get(video.id).error is None


def test_queue_upload_assigns_account(dispatcher, store, publisher):
    video = store.create("user-1", "s3://b/src.mp4", status=VideoStatus.EDITED)

    assert dispatcher.queue_upload(video.id, "low", account_id="acct-1") is True

    stored = store.get(video.id)
    assert stored.status == VideoStatus.UPLOAD_QUEUED
    assert stored.account_id == "acct-1"
    kwargs = publisher.message.publish_json.call_args.kwargs
    assert kwargs["url"] == "https://upload.example.com/process"
    assert kwargs["delay"] == "60s"


def test_illegal_state_is_not_queued(dispatcher, store, publisher):
    video = store.create("user-1", "s3://b/src.mp4", status=VideoStatus.DRAFT)

    assert dispatcher.queue_upload(video.id) is False

    assert store.get(video.id).status == VideoStatus.DRAFT
    publisher.message.publish_json.assert_not_called()


def test_publish_failure_keeps_transition(dispatcher, store, publisher):
    publisher.message.publish_json.side_effect = RuntimeError("qstash unavailable")
    video = store.create("user-1", "s3://b/src.mp4")

    assert dispatcher.queue_edit(video.id) is False
    assert store.get(video.id).status == VideoStatus.EDITING_QUEUED


def test_unconfigured_dispatcher(store):
    dispatcher = JobDispatcher.from_settings(store, Settings())
    video = store.create("user-1", "s3://b/src.mp4")

    assert dispatcher.enabled is False
    assert dispatcher.queue_edit(video.id) is False
    assert dispatcher.health() == {"enabled": False, "editWorkerUrl": None, "uploadWorkerUrl": None}


def test_schedule_posts_to_endpoint(dispatcher, publisher):
    assert dispatcher.schedule("https://edit.example.com/process/", "video-1", 120) is True

    kwargs = publisher.message.publish_json.call_args.kwargs
    assert kwargs["url"] == "https://edit.example.com/process"
    assert kwargs["delay"] == "120s"
