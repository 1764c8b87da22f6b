"""
Narration Processor - AI voice-over for videos

Pipeline:
1. Check the source has an audio stream
2. Extract a boosted mono track
3. Transcribe it
4. Rewrite the transcript as a narration script
5. Synthesize the script
6. Re-transcribe the synthesized voice for caption timing
7. Mix narration with the (attenuated) original audio, copying the video stream

Config structure:
{
    "enabled": bool,
    "voiceId": "ElevenLabs voice id",
    "language": "es",
    "style": "documentary",
    "narrationVolume": 0-200 (default 80),
    "originalAudioVolume": 0-200 (default 30),
    "speed": 0.5-2.0 (default 1.0),
    "keepOriginalAudio": bool (default true)
}
"""

import logging
import os
import tempfile
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from media_tools.captioner.processor import scale_segments
from media_tools.constants import NARRATION_SPEED_MAX, NARRATION_SPEED_MIN, SILENT_PEAK_THRESHOLD
from media_tools.ffmpeg_utils import (
    FFMPEG_BIN,
    extract_speech_audio,
    has_audio_stream,
    measure_audio_peak,
    probe_media,
    run_ffmpeg,
    safe_remove,
)
from media_tools.options import as_bool, cfg, clamp_number
from media_tools.speech import (
    ElevenLabsSynthesizer,
    NarrationScriptWriter,
    SpeechServiceError,
    TranscriptSegment,
    WhisperTranscriber,
)

logger = logging.getLogger(__name__)

# Gain applied to the extracted track before transcription
TRANSCRIPTION_GAIN = 2.0


class NarrationError(RuntimeError):
    """Narration could not be produced for this video."""


@dataclass
class NarrationOptions:
    enabled: bool = False
    voice_id: Optional[str] = None
    language: str = "es"
    style: str = "documentary"
    narration_volume: float = 80.0
    original_audio_volume: float = 30.0
    speed: float = 1.0
    keep_original_audio: bool = True

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]]) -> "NarrationOptions":
        config = config or {}
        return cls(
            enabled=as_bool(cfg(config, "enabled", "enableVoiceNarration", "enable_voice_narration")),
            voice_id=cfg(config, "voiceId", "voice_id", "narrationVoiceId"),
            language=str(cfg(config, "language", "narrationLanguage", default="es")),
            style=str(cfg(config, "style", "narrationStyle", default="documentary")),
            narration_volume=clamp_number(cfg(config, "narrationVolume", "narration_volume"), 0, 200, 80.0),
            original_audio_volume=clamp_number(
                cfg(config, "originalAudioVolume", "original_audio_volume"), 0, 200, 30.0
            ),
            speed=clamp_number(
                cfg(config, "speed", "narrationSpeed"), NARRATION_SPEED_MIN, NARRATION_SPEED_MAX, 1.0
            ),
            keep_original_audio=as_bool(cfg(config, "keepOriginalAudio", "keep_original_audio"), default=True),
        )

    @property
    def is_active(self) -> bool:
        return self.enabled and bool(self.voice_id)


@dataclass
class NarrationServices:
    transcriber: WhisperTranscriber
    writer: NarrationScriptWriter
    synthesizer: ElevenLabsSynthesizer


@dataclass
class NarrationResult:
    output_path: str
    script: str
    segments: List[TranscriptSegment] = field(default_factory=list)


def build_narration_mix_filter(options: NarrationOptions) -> str:
    """Filter graph producing [aout] from input 0 (video) and input 1 (narration)."""
    speed = clamp_number(options.speed, NARRATION_SPEED_MIN, NARRATION_SPEED_MAX, 1.0)
    narration_chain = []
    if abs(speed - 1.0) > 1e-6:
        narration_chain.append(f"atempo={speed:g}")
    narration_chain.append(f"volume={options.narration_volume / 100:g}")

    if not options.keep_original_audio:
        return f"[1:a]{','.join(narration_chain)}[aout]"

    return (
        f"[1:a]{','.join(narration_chain)}[narration];"
        f"[0:a]volume={options.original_audio_volume / 100:g}[original];"
        "[narration][original]amix=inputs=2:duration=longest:dropout_transition=0[aout]"
    )


def apply_voice_narration(
    input_path: str,
    output_path: str,
    options: NarrationOptions,
    services: NarrationServices,
    progress_callback: Optional[Callable[[float, str], None]] = None,
    work_dir: Optional[str] = None,
) -> NarrationResult:
    """
    Replace or blend the audio of a video with an AI narration.

    Returns:
        NarrationResult with caption segments timed to the narration as heard
        in the output (already divided by the speed factor).

    Raises:
        NarrationError: Missing or silent audio, missing voice, or a failed stage
    """

    def report(progress: float, message: str) -> None:
        if progress_callback:
            progress_callback(progress, message)

    if not os.path.exists(input_path):
        raise FileNotFoundError(f"Input file not found: {input_path}")
    if not options.voice_id:
        raise NarrationError("Narration is enabled but no voice id is configured")
    if not has_audio_stream(input_path):
        raise NarrationError("Video has no audio stream; narration needs speech to rewrite")

    work_dir = work_dir or tempfile.gettempdir()
    stem = os.path.splitext(os.path.basename(output_path))[0]
    audio_path = os.path.join(work_dir, f"{stem}_source.wav")
    voice_path = os.path.join(work_dir, f"{stem}_voice.mp3")

    try:
        report(0.1, "Extracting audio...")
        extract_speech_audio(input_path, audio_path, gain=TRANSCRIPTION_GAIN)
        peak = measure_audio_peak(audio_path)
        if peak is None or peak < SILENT_PEAK_THRESHOLD:
            raise NarrationError("Audio track is silent; narration needs speech to rewrite")

        report(0.2, "Transcribing original audio...")
        try:
            source_segments = services.transcriber.transcribe(audio_path, language=None)
        except SpeechServiceError as e:
            raise NarrationError(f"Transcription failed: {e}") from e
        transcript = " ".join(segment.text for segment in source_segments)

        report(0.4, "Writing narration script...")
        duration = probe_media(input_path).get("duration", 0)
        try:
            script = services.writer.write(
                transcript,
                language=options.language,
                style=options.style,
                target_seconds=duration * options.speed if duration else None,
            )
        except SpeechServiceError as e:
            raise NarrationError(f"Script generation failed: {e}") from e

        report(0.6, "Synthesizing voice...")
        try:
            services.synthesizer.synthesize(script, options.voice_id, voice_path)
        except SpeechServiceError as e:
            raise NarrationError(f"Speech synthesis failed: {e}") from e

        report(0.75, "Timing narration captions...")
        try:
            voice_segments = services.transcriber.transcribe(voice_path, language=options.language)
        except SpeechServiceError as e:
            logger.warning(f"[Narration] Could not time captions for the narration: {e}")
            voice_segments = []

        report(0.85, "Mixing audio...")
        cmd = [
            FFMPEG_BIN, "-y",
            "-i", input_path,
            "-i", voice_path,
            "-filter_complex", build_narration_mix_filter(options),
            "-map", "0:v",
            "-map", "[aout]",
            "-c:v", "copy",
            "-c:a", "aac",
            "-b:a", "192k",
            output_path,
        ]
        run_ffmpeg(cmd, duration=duration)
    finally:
        safe_remove(audio_path, "[Narration]")
        safe_remove(voice_path, "[Narration]")

    report(1.0, "Narration applied")
    logger.info(f"[Narration] Applied narration ({len(script)} chars, {len(voice_segments)} caption segments)")

    return NarrationResult(
        output_path=output_path,
        script=script,
        segments=scale_segments(voice_segments, options.speed),
    )
