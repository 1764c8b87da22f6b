"""
Brand Processor - Apply a full brand pattern to one video

Stages run in a fixed order over a moving "current file":
    narration -> effects -> logo -> subtitles

Each stage writes a new file; the file it replaces is deleted unless it is
the original input. Narration and subtitles are best-effort: a failure is
logged and the pipeline continues without them. Effects and logo failures
abort the run.

Config structure (flat, as stored on brand patterns):
{
    "logoUrl": str | null, "logoPosition": str, "logoSize": 5-40, "logoOpacity": 0-100,
    "effects": {... see media_tools.effects.processor ...},
    "enableSubtitles": bool, "subtitles": {... see media_tools.captioner.processor ...},
    "narration": {... see media_tools.narration.processor ...}
}
"""

import logging
import os
import tempfile
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests

from media_tools.captioner.processor import SubtitleStyle, burn_subtitles, transcribe_media
from media_tools.effects.processor import EffectOptions, apply_effects, should_apply_effects
from media_tools.ffmpeg_utils import FFmpegError, safe_remove
from media_tools.logo.processor import LogoOptions, apply_logo_overlay
from media_tools.narration.processor import (
    NarrationError,
    NarrationOptions,
    NarrationServices,
    apply_voice_narration,
)
from media_tools.options import as_bool, cfg
from media_tools.speech import SpeechServiceError, TranscriptSegment, WhisperTranscriber

logger = logging.getLogger(__name__)


@dataclass
class BrandPattern:
    logo: Optional[LogoOptions] = None
    effects: EffectOptions = field(default_factory=EffectOptions)
    subtitles_enabled: bool = False
    subtitle_style: SubtitleStyle = field(default_factory=SubtitleStyle)
    narration: NarrationOptions = field(default_factory=NarrationOptions)

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]]) -> "BrandPattern":
        config = config or {}
        logo_url = cfg(config, "logoUrl", "logo_url")
        logo = None
        if logo_url:
            logo = LogoOptions.from_config({
                "logoUrl": logo_url,
                "position": cfg(config, "logoPosition", "logo_position"),
                "size": cfg(config, "logoSize", "logo_size"),
                "opacity": cfg(config, "logoOpacity", "logo_opacity"),
            })
        return cls(
            logo=logo,
            effects=EffectOptions.from_config(cfg(config, "effects", default={})),
            subtitles_enabled=as_bool(cfg(config, "enableSubtitles", "enable_subtitles")),
            subtitle_style=SubtitleStyle.from_config(cfg(config, "subtitles", default={})),
            narration=NarrationOptions.from_config(cfg(config, "narration", default={})),
        )


@dataclass
class BrandServices:
    """External clients the optional stages need. Missing clients skip their stage."""

    narration: Optional[NarrationServices] = None
    transcriber: Optional[WhisperTranscriber] = None


@dataclass
class BrandResult:
    input_path: str
    output_path: str
    stages: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    narration_script: Optional[str] = None

    @property
    def changed(self) -> bool:
        return self.output_path != self.input_path


def apply_brand_pattern(
    input_path: str,
    pattern: BrandPattern,
    services: Optional[BrandServices] = None,
    work_dir: Optional[str] = None,
    progress_callback: Optional[Callable[[float, str], None]] = None,
) -> BrandResult:
    """
    Run every configured stage over ``input_path``.

    Args:
        input_path: Original video; never deleted
        pattern: Brand pattern to apply
        services: Speech clients for narration and subtitle transcription
        work_dir: Directory for stage outputs (defaults to the system temp dir)
        progress_callback: Optional callback(progress: 0-1, message: str)

    Returns:
        BrandResult whose output_path is the final file, or input_path when
        no stage produced output.
    """

    def report(progress: float, message: str) -> None:
        if progress_callback:
            progress_callback(progress, message)

    if not os.path.exists(input_path):
        raise FileNotFoundError(f"Input file not found: {input_path}")

    services = services or BrandServices()
    work_dir = work_dir or tempfile.gettempdir()
    stem = os.path.splitext(os.path.basename(input_path))[0]
    run_id = int(time.time() * 1000)

    result = BrandResult(input_path=input_path, output_path=input_path)
    current = input_path
    caption_segments: Optional[List[TranscriptSegment]] = None

    def stage_path(name: str) -> str:
        return os.path.join(work_dir, f"{stem}_{name}_{run_id}.mp4")

    def advance(new_path: str, stage: str) -> None:
        nonlocal current
        if current != input_path:
            safe_remove(current, "[Brand]")
        current = new_path
        result.stages.append(stage)

    def degrade(stage: str, reason: str, partial: Optional[str] = None) -> None:
        logger.warning(f"[Brand] {stage} skipped: {reason}")
        result.warnings.append(f"{stage}: {reason}")
        if partial and partial != current:
            safe_remove(partial, "[Brand]")

    try:
        # 1. Narration
        if pattern.narration.is_active:
            report(0.05, "Applying voice narration...")
            target = stage_path("narrated")
            if services.narration is None:
                degrade("narration", "speech services are not configured")
            else:
                try:
                    narration = apply_voice_narration(
                        current, target, pattern.narration, services.narration, work_dir=work_dir
                    )
                    advance(narration.output_path, "narration")
                    result.narration_script = narration.script
                    caption_segments = narration.segments or None
                except (NarrationError, FFmpegError, requests.RequestException, OSError, ValueError) as e:
                    degrade("narration", str(e), target)
        elif pattern.narration.enabled:
            degrade("narration", "no voice id configured")

        # 2. Effects
        if should_apply_effects(pattern.effects):
            report(0.35, "Applying effects...")
            target = stage_path("effects")
            try:
                effects = apply_effects(current, target, pattern.effects)
            except Exception:
                safe_remove(target, "[Brand]")
                raise
            if effects["applied"]:
                advance(target, "effects")
            else:
                logger.info("[Brand] Effects requested but every value is neutral")

        # 3. Logo
        if pattern.logo and pattern.logo.logo_url:
            report(0.6, "Applying logo...")
            target = stage_path("logo")
            try:
                apply_logo_overlay(current, target, pattern.logo)
            except Exception:
                safe_remove(target, "[Brand]")
                raise
            advance(target, "logo")

        # 4. Subtitles
        if pattern.subtitles_enabled:
            report(0.8, "Generating subtitles...")
            segments = caption_segments
            if segments is None:
                if services.transcriber is None:
                    degrade("subtitles", "transcription service is not configured")
                else:
                    try:
                        segments = transcribe_media(
                            current, services.transcriber,
                            language=pattern.subtitle_style.language, work_dir=work_dir,
                        )
                    except (SpeechServiceError, FFmpegError, requests.RequestException, OSError) as e:
                        degrade("subtitles", f"transcription failed: {e}")
                        segments = None

            if segments is not None and not segments:
                logger.info("[Brand] No subtitle segments produced, skipping burn-in")
            elif segments:
                target = stage_path("subtitled")
                try:
                    burn_subtitles(current, target, segments, pattern.subtitle_style)
                    advance(target, "subtitles")
                except (FFmpegError, OSError, ValueError) as e:
                    degrade("subtitles", f"burn-in failed: {e}", target)
    except Exception:
        if current != input_path:
            safe_remove(current, "[Brand]")
        raise

    result.output_path = current
    if current == input_path:
        logger.warning(f"[Brand] WARNING: No stage modified {os.path.basename(input_path)}; returning the original file unchanged")
    else:
        logger.info(f"[Brand] Applied stages: {', '.join(result.stages)}")

    report(1.0, "Brand pattern applied")
    return result
