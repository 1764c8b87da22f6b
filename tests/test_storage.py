import re
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from subiteya.errors import TransferError, TransferErrorCode
from subiteya.storage import StorageClient, build_object_key, calculate_backoff_delay, extract_s3_key, retry_with_backoff


@pytest.mark.parametrize(
    "url,key",
    [
        ("s3://bucket/videos/a.mp4", "videos/a.mp4"),
        ("https://bucket.s3.us-east-1.amazonaws.com/videos/a%20b.mp4", "videos/a b.mp4"),
        ("https://s3.us-east-1.amazonaws.com/bucket/videos/a.mp4", "videos/a.mp4"),
        ("https://cdn.example.com/videos/a.mp4", "videos/a.mp4"),
        ("videos/a.mp4", "videos/a.mp4"),
        ("/videos/a.mp4", "videos/a.mp4"),
    ],
)
def test_extract_s3_key(url, key):
    assert extract_s3_key(url) == key


@pytest.mark.parametrize("url", ["", "s3://bucket", "s3://bucket/", "https://cdn.example.com/"])
def test_extract_s3_key_rejects_urls_without_key(url):
    with pytest.raises(TransferError) as exc:
        extract_s3_key(url)
    assert exc.value.code == TransferErrorCode.INVALID_URL
    assert not exc.value.retryable


def test_object_key_layout():
    key = build_object_key("My Clip (final).MP4", folder="videos", now_ms=1700000000000)

    assert re.fullmatch(r"videos/1700000000000-[0-9a-f]{16}-My-Clip-final\.mp4", key)


def test_backoff_delay_is_jittered_and_capped():
    policy = {"backoff_base": 2.0, "backoff_multiplier": 2.0}

    assert 1.5 <= calculate_backoff_delay(1, policy) <= 2.5
    assert calculate_backoff_delay(10, policy) == 30.0


def test_retry_recovers_from_transient_errors():
    sleeps = []
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise OSError("connection reset")
        return "ok"

    assert retry_with_backoff(flaky, max_attempts=3, sleep=sleeps.append) == "ok"
    assert len(sleeps) == 2


def test_retry_wraps_exhausted_errors():
    def broken():
        raise OSError("connection reset")

    with pytest.raises(TransferError) as exc:
        retry_with_backoff(broken, max_attempts=2, error_code=TransferErrorCode.DOWNLOAD_FAILED, sleep=lambda s: None)

    assert exc.value.code == TransferErrorCode.DOWNLOAD_FAILED
    assert exc.value.context == {"original_error": "OSError"}


def test_retry_stops_on_non_retryable_error():
    sleeps = []

    def missing():
        raise TransferError(TransferErrorCode.NOT_FOUND, "gone", retryable=False)

    with pytest.raises(TransferError):
        retry_with_backoff(missing, max_attempts=3, sleep=sleeps.append)
    assert sleeps == []


def _client(s3):
    sleeps = []
    return StorageClient(s3, "test-bucket", sleep=sleeps.append), sleeps


def test_download_retries_size_mismatch(tmp_path):
    s3 = MagicMock()
    s3.head_object.return_value = {"ContentLength": 5}
    payloads = [b"abc", b"abcde"]

    def fake_download(bucket, key, dest):
        with open(dest, "wb") as f:
            f.write(payloads.pop(0))

    s3.download_file.side_effect = fake_download
    client, sleeps = _client(s3)
    dest = tmp_path / "in.mp4"

    result = client.download_file("videos/a.mp4", str(dest))

    assert result == {"key": "videos/a.mp4", "path": str(dest), "size": 5}
    assert dest.read_bytes() == b"abcde"
    assert len(sleeps) == 1


def test_download_missing_object_is_not_retried(tmp_path):
    s3 = MagicMock()
    s3.head_object.side_effect = ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject")
    client, sleeps = _client(s3)

    with pytest.raises(TransferError) as exc:
        client.download_file("videos/missing.mp4", str(tmp_path / "x.mp4"))

    assert exc.value.code == TransferErrorCode.NOT_FOUND
    assert sleeps == []
    s3.download_file.assert_not_called()


def test_upload_verifies_remote_size(tmp_path):
    path = tmp_path / "out.mp4"
    path.write_bytes(b"edited")
    s3 = MagicMock()
    s3.head_object.return_value = {"ContentLength": 6}
    client, _ = _client(s3)

    result = client.upload_file(str(path), "edited-1.mp4", metadata={"videoId": "1"})

    assert result["url"] == f"s3://test-bucket/{result['key']}"
    assert result["key"].startswith("videos/") and result["key"].endswith("-edited-1.mp4")
    args, kwargs = s3.upload_file.call_args
    assert args == (str(path), "test-bucket", result["key"])
    assert kwargs["ExtraArgs"] == {"ContentType": "video/mp4", "Metadata": {"videoId": "1"}}


def test_upload_rejects_empty_file(tmp_path):
    path = tmp_path / "empty.mp4"
    path.write_bytes(b"")
    client, _ = _client(MagicMock())

    with pytest.raises(TransferError) as exc:
        client.upload_file(str(path))
    assert not exc.value.retryable


def test_exists():
    s3 = MagicMock()
    s3.head_object.side_effect = [
        {"ContentLength": 1},
        ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "HeadObject"),
    ]
    client, _ = _client(s3)

    assert client.exists("a") is True
    assert client.exists("b") is False


def test_delete_and_presign():
    s3 = MagicMock()
    s3.generate_presigned_url.return_value = "https://test-bucket.s3.amazonaws.com/videos/a.mp4?X-Amz-Signature=1"
    client, _ = _client(s3)

    client.delete("videos/a.mp4")
    url = client.presigned_download_url("videos/a.mp4", expires_in=600)

    s3.delete_object.assert_called_once_with(Bucket="test-bucket", Key="videos/a.mp4")
    assert url.startswith("https://test-bucket.s3.amazonaws.com/videos/a.mp4")
    s3.generate_presigned_url.assert_called_once_with(
        "get_object", Params={"Bucket": "test-bucket", "Key": "videos/a.mp4"}, ExpiresIn=600
    )
