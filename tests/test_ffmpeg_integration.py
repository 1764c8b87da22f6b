import json
import subprocess

import pytest
from PIL import Image

from media_tools.brand.processor import BrandServices
from media_tools.captioner.processor import SubtitleStyle, burn_subtitles, parse_srt, segments_to_srt
from media_tools.effects.processor import EffectOptions, apply_effects
from media_tools.ffmpeg_utils import FFMPEG_BIN, FFPROBE_BIN, has_audio_stream, measure_audio_peak, probe_media
from media_tools.logo.processor import LogoOptions, apply_logo_overlay
from media_tools.narration.processor import NarrationOptions, NarrationServices, apply_voice_narration
from media_tools.speech import TranscriptSegment
from subiteya.edit_worker import EditWorker
from subiteya.models import VideoStatus

from tests.conftest import FakeStorage, requires_ffmpeg


def _ffmpeg_lists(flag, name):
    try:
        result = subprocess.run([FFMPEG_BIN, "-hide_banner", flag], capture_output=True, text=True, timeout=30)
    except OSError:
        return False
    return any(name in line.split() for line in result.stdout.splitlines())


pytestmark = [
    requires_ffmpeg,
    pytest.mark.skipif(not _ffmpeg_lists("-encoders", "libx264"), reason="ffmpeg built without libx264"),
]

requires_libass = pytest.mark.skipif(
    not _ffmpeg_lists("-filters", "subtitles"), reason="ffmpeg built without the subtitles filter"
)
requires_mp3 = pytest.mark.skipif(
    not _ffmpeg_lists("-encoders", "libmp3lame"), reason="ffmpeg built without libmp3lame"
)

SEGMENTS = [
    TranscriptSegment(0.0, 0.3, "Hola a todos"),
    TranscriptSegment(0.3, 0.6, "bienvenidos"),
    TranscriptSegment(0.6, 0.95, "hasta luego"),
]


class FixedTranscriber:
    def __init__(self, segments=SEGMENTS):
        self.segments = list(segments)
        self.calls = []

    def transcribe(self, audio_path, language=None):
        self.calls.append((audio_path, language))
        return list(self.segments)


class FixedWriter:
    def write(self, transcript, language="es", style="documentary", target_seconds=None):
        return "Un guion narrado."


class LavfiSynthesizer:
    """Writes a generated tone as the synthesized voice."""

    def synthesize(self, text, voice_id, output_path):
        subprocess.run(
            [
                FFMPEG_BIN, "-y", "-v", "error",
                "-f", "lavfi", "-i", "sine=frequency=220:duration=1",
                "-c:a", "libmp3lame", output_path,
            ],
            check=True,
            capture_output=True,
        )
        return output_path


def _video_codec(path):
    result = subprocess.run(
        [FFPROBE_BIN, "-v", "error", "-select_streams", "v:0", "-show_entries", "stream=codec_name", "-of", "json", path],
        check=True,
        capture_output=True,
        text=True,
    )
    return json.loads(result.stdout)["streams"][0]["codec_name"]


@pytest.fixture(scope="module")
def sample_clip(tmp_path_factory):
    path = tmp_path_factory.mktemp("media") / "sample.mp4"
    subprocess.run(
        [
            FFMPEG_BIN, "-y", "-v", "error",
            "-f", "lavfi", "-i", "testsrc=size=320x240:rate=25:duration=1",
            "-f", "lavfi", "-i", "sine=frequency=440:duration=1",
            "-c:v", "libx264", "-pix_fmt", "yuv420p",
            "-c:a", "aac", "-shortest",
            str(path),
        ],
        check=True,
        capture_output=True,
    )
    return str(path)


def test_probe_sample(sample_clip):
    info = probe_media(sample_clip)

    assert (info["width"], info["height"]) == (320, 240)
    assert info["has_audio"]
    assert has_audio_stream(sample_clip)
    assert info["duration"] == pytest.approx(1.0, abs=0.2)


def test_crop_and_volume(sample_clip, tmp_path):
    output = str(tmp_path / "square.mp4")
    options = EffectOptions.from_config({"autoCrop": True, "targetAspectRatio": "1:1", "audioVolume": 50})
    progress = []

    result = apply_effects(sample_clip, output, options, progress_callback=lambda p, m: progress.append(p))

    assert result["applied"]
    info = probe_media(output)
    assert (info["width"], info["height"]) == (240, 240)
    assert measure_audio_peak(output) < measure_audio_peak(sample_clip)
    assert progress[-1] == 1.0


def test_neutral_options_write_nothing(sample_clip, tmp_path):
    output = tmp_path / "untouched.mp4"

    result = apply_effects(sample_clip, str(output), EffectOptions.from_config({"contrast": 100}))

    assert result == {"applied": False, "stages": []}
    assert not output.exists()


def test_logo_overlay_keeps_dimensions(sample_clip, tmp_path):
    logo = tmp_path / "logo.png"
    Image.new("RGBA", (64, 64), (255, 0, 0, 200)).save(logo)
    output = str(tmp_path / "logo.mp4")

    apply_logo_overlay(sample_clip, output, LogoOptions(str(logo), position="top-left", size=20, opacity=80))

    info = probe_media(output)
    assert (info["width"], info["height"]) == (320, 240)
    assert info["has_audio"]
    assert logo.exists()


@requires_libass
def test_burn_subtitles_produces_playable_video(sample_clip, tmp_path):
    output = str(tmp_path / "subtitled.mp4")

    burn_subtitles(sample_clip, output, SEGMENTS, SubtitleStyle(background_color="rgba(0,0,0,0.7)"))

    info = probe_media(output)
    assert info["has_video"] and info["has_audio"]
    assert (info["width"], info["height"]) == (320, 240)
    assert [(s.start, s.end, s.text) for s in parse_srt(segments_to_srt(SEGMENTS))] == [
        (s.start, s.end, s.text) for s in SEGMENTS
    ]
    assert sorted(p.name for p in tmp_path.iterdir()) == ["subtitled.mp4"]


@requires_mp3
def test_narration_mix_keeps_video_stream(sample_clip, tmp_path):
    output = str(tmp_path / "narrated.mp4")
    transcriber = FixedTranscriber()
    services = NarrationServices(transcriber, FixedWriter(), LavfiSynthesizer())
    options = NarrationOptions(enabled=True, voice_id="voice-1", language="es")

    result = apply_voice_narration(sample_clip, output, options, services, work_dir=str(tmp_path))

    info = probe_media(output)
    assert info["has_video"] and info["has_audio"]
    assert _video_codec(output) == _video_codec(sample_clip)
    assert result.script == "Un guion narrado."
    assert len(result.segments) == 3
    assert len(transcriber.calls) == 2
    assert sorted(p.name for p in tmp_path.iterdir()) == ["narrated.mp4"]


@requires_libass
def test_edit_worker_brands_real_media(sample_clip, store, tmp_path):
    with open(sample_clip, "rb") as f:
        source_bytes = f.read()
    storage = FakeStorage({"videos/src.mp4": source_bytes})
    transcriber = FixedTranscriber()
    video = store.create(
        "user-1",
        "s3://test-bucket/videos/src.mp4",
        edit_spec={"captions": {"enabled": True, "style": "classic"}, "effects": {"contrast": 115}},
        status=VideoStatus.EDITING_QUEUED,
    )
    work_dir = tmp_path / "work"
    work_dir.mkdir()
    worker = EditWorker(store, storage, services=BrandServices(transcriber=transcriber), work_dir=str(work_dir))

    result = worker.process(video.id)

    stored = store.get(video.id)
    assert stored.status == VideoStatus.EDITED
    assert stored.edited_url == f"s3://test-bucket/videos/edited-{video.id}.mp4"
    assert result["stages"] == ["effects", "subtitles"]
    assert len(transcriber.calls) == 1
    edited = storage.objects[f"videos/edited-{video.id}.mp4"]
    assert len(edited) != len(source_bytes)
    assert list(work_dir.iterdir()) == []
