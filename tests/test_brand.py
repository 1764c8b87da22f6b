import os

import pytest

from media_tools.brand import processor as brand
from media_tools.brand.processor import BrandPattern, BrandServices, apply_brand_pattern
from media_tools.ffmpeg_utils import FFmpegError
from media_tools.narration.processor import NarrationError, NarrationResult
from media_tools.speech import NoSpeechError, TranscriptSegment


def _write(path, data=b"rendered"):
    with open(path, "wb") as f:
        f.write(data)


@pytest.fixture
def source(tmp_path):
    path = tmp_path / "source.mp4"
    path.write_bytes(b"original video bytes")
    return str(path)


@pytest.fixture
def calls(monkeypatch):
    """Replace every render step with a fake that writes its output file."""
    recorded = []

    def fake_effects(input_path, output_path, options, progress_callback=None):
        recorded.append(("effects", input_path))
        _write(output_path)
        return {"applied": True, "stages": ["color_grade"]}

    def fake_logo(input_path, output_path, options, progress_callback=None):
        recorded.append(("logo", input_path))
        _write(output_path)
        return output_path

    def fake_burn(input_path, output_path, segments, style=None, progress_callback=None):
        recorded.append(("subtitles", input_path, list(segments)))
        _write(output_path)
        return output_path

    def fake_transcribe(input_path, transcriber, language=None, work_dir=None):
        recorded.append(("transcribe", input_path))
        return [TranscriptSegment(0.0, 1.0, "hola")]

    monkeypatch.setattr(brand, "apply_effects", fake_effects)
    monkeypatch.setattr(brand, "apply_logo_overlay", fake_logo)
    monkeypatch.setattr(brand, "burn_subtitles", fake_burn)
    monkeypatch.setattr(brand, "transcribe_media", fake_transcribe)
    return recorded


def _work_files(tmp_path):
    return sorted(name for name in os.listdir(tmp_path) if name != "source.mp4")


def test_neutral_pattern_returns_original_unchanged(source, tmp_path, calls):
    pattern = BrandPattern.from_config({
        "effects": {"brightness": 100, "contrast": 100, "saturation": 100, "filterType": "none", "enableEffects": False},
    })

    result = apply_brand_pattern(source, pattern, work_dir=str(tmp_path))

    assert result.output_path == source
    assert not result.changed
    assert calls == []
    assert _work_files(tmp_path) == []


def test_stages_chain_and_intermediates_are_removed(source, tmp_path, calls):
    pattern = BrandPattern.from_config({
        "logoUrl": "https://cdn.example.com/logo.png",
        "effects": {"contrast": 120},
        "enableSubtitles": True,
    })
    services = BrandServices(transcriber=object())

    result = apply_brand_pattern(source, pattern, services=services, work_dir=str(tmp_path))

    assert result.stages == ["effects", "logo", "subtitles"]
    assert calls[0] == ("effects", source)
    assert calls[1][1].endswith(".mp4") and "_effects_" in calls[1][1]
    assert os.path.exists(result.output_path)
    assert _work_files(tmp_path) == [os.path.basename(result.output_path)]
    assert os.path.exists(source)


def test_narration_failure_degrades(source, tmp_path, calls, monkeypatch):
    def failing_narration(input_path, output_path, options, services, progress_callback=None, work_dir=None):
        _write(output_path, b"partial")
        raise NarrationError("Video has no audio stream")

    monkeypatch.setattr(brand, "apply_voice_narration", failing_narration)
    pattern = BrandPattern.from_config({
        "narration": {"enabled": True, "voiceId": "voice-1"},
        "effects": {"filterType": "warm"},
    })
    services = BrandServices(narration=object())

    result = apply_brand_pattern(source, pattern, services=services, work_dir=str(tmp_path))

    assert result.stages == ["effects"]
    assert result.warnings == ["narration: Video has no audio stream"]
    assert _work_files(tmp_path) == [os.path.basename(result.output_path)]


def test_narration_segments_are_reused_for_captions(source, tmp_path, calls, monkeypatch):
    narration_segments = [TranscriptSegment(0.0, 0.5, "voz")]

    def fake_narration(input_path, output_path, options, services, progress_callback=None, work_dir=None):
        _write(output_path)
        return NarrationResult(output_path, "guion", narration_segments)

    monkeypatch.setattr(brand, "apply_voice_narration", fake_narration)
    pattern = BrandPattern.from_config({
        "narration": {"enabled": True, "voiceId": "voice-1"},
        "enableSubtitles": True,
    })
    services = BrandServices(narration=object(), transcriber=object())

    result = apply_brand_pattern(source, pattern, services=services, work_dir=str(tmp_path))

    assert result.stages == ["narration", "subtitles"]
    assert result.narration_script == "guion"
    assert not any(call[0] == "transcribe" for call in calls)
    assert calls[-1][2] == narration_segments


def test_missing_services_skip_optional_stages(source, tmp_path, calls):
    pattern = BrandPattern.from_config({
        "narration": {"enabled": True, "voiceId": "voice-1"},
        "enableSubtitles": True,
    })

    result = apply_brand_pattern(source, pattern, work_dir=str(tmp_path))

    assert result.output_path == source
    assert len(result.warnings) == 2


def test_transcription_failure_degrades_subtitles(source, tmp_path, calls, monkeypatch):
    def no_speech(input_path, transcriber, language=None, work_dir=None):
        raise NoSpeechError("No speech detected in audio")

    monkeypatch.setattr(brand, "transcribe_media", no_speech)
    pattern = BrandPattern.from_config({"effects": {"grain": 10}, "enableSubtitles": True})

    result = apply_brand_pattern(source, pattern, services=BrandServices(transcriber=object()), work_dir=str(tmp_path))

    assert result.stages == ["effects"]
    assert result.warnings[0].startswith("subtitles: transcription failed")


def test_logo_failure_is_fatal_and_cleans_up(source, tmp_path, calls, monkeypatch):
    def broken_logo(input_path, output_path, options, progress_callback=None):
        _write(output_path, b"partial")
        raise FFmpegError("FFmpeg failed (exit 1)", 1, "overlay error")

    monkeypatch.setattr(brand, "apply_logo_overlay", broken_logo)
    pattern = BrandPattern.from_config({"logoUrl": "https://cdn.example.com/logo.png", "effects": {"blur": 20}})

    with pytest.raises(FFmpegError):
        apply_brand_pattern(source, pattern, work_dir=str(tmp_path))

    assert _work_files(tmp_path) == []
    assert os.path.exists(source)


def test_missing_input_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        apply_brand_pattern(str(tmp_path / "missing.mp4"), BrandPattern())


def test_pattern_from_flat_config():
    pattern = BrandPattern.from_config({
        "logoUrl": "/logos/brand.png",
        "logoPosition": "tl",
        "logoSize": 20,
        "logoOpacity": 50,
        "enableSubtitles": "true",
    })

    assert pattern.logo.position == "top-left"
    assert pattern.logo.size == 20
    assert pattern.logo.opacity == 50
    assert pattern.subtitles_enabled is True
    assert pattern.narration.is_active is False
