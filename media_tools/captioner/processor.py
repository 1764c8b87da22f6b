"""
Captioner Processor - Burn timed subtitles into videos

Subtitles are written as SRT and rendered by FFmpeg's libass `subtitles`
filter with an ASS force_style built from the caption settings.

Config structure:
{
    "style": "classic" | "karaoke",
    "position": "bottom" | "center" | "top",
    "fontFamily": "Inter",
    "fontSize": 24,
    "color": "#FFFFFF",
    "strokeColor": "#000000",
    "strokeWidth": 2,
    "backgroundColor": "rgba(0,0,0,0.7)" | "#000000" | null,
    "marginBottom": 220,
    "language": "auto" | "es" | "en"
}
"""

import logging
import os
import re
import tempfile
import textwrap
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from media_tools.constants import SILENT_PEAK_THRESHOLD
from media_tools.ffmpeg_utils import (
    FFMPEG_BIN,
    escape_filter_path,
    extract_speech_audio,
    measure_audio_peak,
    probe_media,
    run_ffmpeg,
    safe_remove,
)
from media_tools.options import cfg, clamp_number, normalize_hex_color
from media_tools.speech import NoSpeechError, TranscriptSegment, WhisperTranscriber

logger = logging.getLogger(__name__)

_SRT_TIME_PATTERN = re.compile(r"(\d{1,2}):(\d{2}):(\d{2})[,.](\d{3})")
_RGBA_PATTERN = re.compile(r"rgba?\(\s*(\d+)\s*,\s*(\d+)\s*,\s*(\d+)\s*(?:,\s*([\d.]+)\s*)?\)")

# libass numpad alignment
_ALIGNMENTS = {"bottom": 2, "center": 5, "top": 8}

KARAOKE_WORDS_PER_CHUNK = 3
CLASSIC_LINE_WIDTH = 42


# ==================== SRT ====================

def format_srt_timestamp(seconds: float) -> str:
    total_ms = int(round(max(0.0, seconds) * 1000))
    hours = total_ms // 3_600_000
    minutes = (total_ms % 3_600_000) // 60_000
    secs = (total_ms % 60_000) // 1000
    millis = total_ms % 1000
    return f"{hours:02}:{minutes:02}:{secs:02},{millis:03}"


def parse_srt_timestamp(value: str) -> float:
    match = _SRT_TIME_PATTERN.search(value.strip())
    if not match:
        raise ValueError(f"Invalid SRT timestamp: {value!r}")
    hours, minutes, seconds, millis = map(int, match.groups())
    return hours * 3600 + minutes * 60 + seconds + millis / 1000.0


def segments_to_srt(segments: List[TranscriptSegment]) -> str:
    blocks = []
    for index, segment in enumerate(segments, start=1):
        blocks.append(
            f"{index}\n"
            f"{format_srt_timestamp(segment.start)} --> {format_srt_timestamp(segment.end)}\n"
            f"{segment.text.strip()}\n"
        )
    return "\n".join(blocks)


def parse_srt(text: str) -> List[TranscriptSegment]:
    """Parse SRT text back into segments. Malformed blocks are skipped."""
    segments: List[TranscriptSegment] = []
    for block in re.split(r"\n\s*\n", text.strip().replace("\r\n", "\n")):
        lines = [line.strip() for line in block.strip().splitlines() if line.strip()]
        if len(lines) < 2:
            continue
        time_index = 1 if "-->" not in lines[0] else 0
        if "-->" not in lines[time_index]:
            continue
        start_text, end_text = lines[time_index].split("-->", 1)
        try:
            start = parse_srt_timestamp(start_text)
            end = parse_srt_timestamp(end_text)
        except ValueError:
            continue
        segments.append(TranscriptSegment(start, end, "\n".join(lines[time_index + 1:])))
    return segments


def chunk_segments(segments: List[TranscriptSegment], words_per_chunk: int) -> List[TranscriptSegment]:
    """Split segments into short word groups, timing each group by its share of words."""
    chunks: List[TranscriptSegment] = []
    for segment in segments:
        words = segment.text.split()
        if len(words) <= words_per_chunk:
            chunks.append(segment)
            continue
        duration = max(segment.end - segment.start, 0.0)
        per_word = duration / len(words)
        for offset in range(0, len(words), words_per_chunk):
            group = words[offset:offset + words_per_chunk]
            start = segment.start + offset * per_word
            end = min(segment.end, start + len(group) * per_word)
            chunks.append(TranscriptSegment(start, end, " ".join(group)))
    return chunks


def scale_segments(segments: List[TranscriptSegment], factor: float) -> List[TranscriptSegment]:
    """Divide every timestamp by ``factor`` (e.g. a playback speed)."""
    if not factor or factor == 1.0:
        return list(segments)
    return [TranscriptSegment(s.start / factor, s.end / factor, s.text) for s in segments]


# ==================== STYLE ====================

def ass_color(value: Any, default: str = "&H00FFFFFF") -> str:
    """
    Convert "#RRGGBB" or "rgba(r,g,b,a)" into ASS "&HAABBGGRR".

    ASS alpha is inverted: 00 is opaque, FF is transparent.
    """
    if value is None:
        return default
    text = str(value).strip()

    match = _RGBA_PATTERN.match(text)
    if match:
        r, g, b = (min(255, int(c)) for c in match.groups()[:3])
        alpha = float(match.group(4)) if match.group(4) is not None else 1.0
        ass_alpha = int(round((1.0 - min(max(alpha, 0.0), 1.0)) * 255))
        return f"&H{ass_alpha:02X}{b:02X}{g:02X}{r:02X}"

    if not text.startswith("#") and not re.fullmatch(r"[0-9a-fA-F]{3}|[0-9a-fA-F]{6}", text):
        return default
    hex_value = normalize_hex_color(text, default="")
    if not hex_value:
        return default
    r, g, b = hex_value[1:3], hex_value[3:5], hex_value[5:7]
    return f"&H00{b}{g}{r}".upper()


@dataclass
class SubtitleStyle:
    style: str = "classic"
    position: str = "bottom"
    font_family: str = "Inter"
    font_size: int = 24
    primary_color: str = "#FFFFFF"
    outline_color: str = "#000000"
    outline_width: float = 2.0
    background_color: Optional[str] = None
    margin_v: int = 40
    language: Optional[str] = None

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]]) -> "SubtitleStyle":
        config = config or {}
        style = str(cfg(config, "style", "subtitleStyle", default="classic")).lower()
        position = str(cfg(config, "position", "subtitlePosition", default="bottom")).lower()
        return cls(
            style=style if style in ("classic", "karaoke") else "classic",
            position=position if position in _ALIGNMENTS else "bottom",
            font_family=str(cfg(config, "fontFamily", "font_family", default="Inter")),
            font_size=int(clamp_number(cfg(config, "fontSize", "subtitleFontSize"), 8, 200, 24)),
            primary_color=str(cfg(config, "color", "subtitleColor", "colorPrimary", default="#FFFFFF")),
            outline_color=str(cfg(config, "strokeColor", "outlineColor", default="#000000")),
            outline_width=clamp_number(cfg(config, "strokeWidth", "outlineWidth"), 0, 20, 2.0),
            background_color=cfg(config, "backgroundColor", "subtitleBgColor"),
            margin_v=int(clamp_number(cfg(config, "marginBottom", "marginV"), 0, 2000, 40)),
            language=cfg(config, "language", "aiLanguage"),
        )


def build_force_style(style: SubtitleStyle) -> str:
    parts = [
        f"Fontname={style.font_family}",
        f"Fontsize={style.font_size}",
        f"PrimaryColour={ass_color(style.primary_color)}",
        f"OutlineColour={ass_color(style.outline_color, default='&H00000000')}",
        f"Outline={style.outline_width:g}",
        f"Alignment={_ALIGNMENTS.get(style.position, 2)}",
        f"MarginV={style.margin_v}",
    ]
    if style.background_color:
        # Opaque box behind the text
        parts.append("BorderStyle=4")
        parts.append(f"BackColour={ass_color(style.background_color, default='&H80000000')}")
    if style.style == "karaoke":
        parts.append("Bold=-1")
    return ",".join(parts)


def prepare_segments(segments: List[TranscriptSegment], style: SubtitleStyle) -> List[TranscriptSegment]:
    if style.style == "karaoke":
        return chunk_segments(segments, KARAOKE_WORDS_PER_CHUNK)
    return [
        TranscriptSegment(s.start, s.end, textwrap.fill(s.text, CLASSIC_LINE_WIDTH))
        for s in segments
    ]


# ==================== RENDER ====================

def transcribe_media(
    input_path: str,
    transcriber: WhisperTranscriber,
    language: Optional[str] = None,
    work_dir: Optional[str] = None,
) -> List[TranscriptSegment]:
    """
    Extract the audio track of a video and transcribe it.

    Raises:
        NoSpeechError: The extracted track is silent or undecodable
    """
    fd, audio_path = tempfile.mkstemp(prefix="captions_", suffix=".wav", dir=work_dir)
    os.close(fd)
    try:
        extract_speech_audio(input_path, audio_path)
        peak = measure_audio_peak(audio_path)
        if peak is None or peak < SILENT_PEAK_THRESHOLD:
            raise NoSpeechError("Audio track is silent")
        return transcriber.transcribe(audio_path, language=language)
    finally:
        safe_remove(audio_path, "[Captioner]")


def burn_subtitles(
    input_path: str,
    output_path: str,
    segments: List[TranscriptSegment],
    style: Optional[SubtitleStyle] = None,
    progress_callback: Optional[Callable[[float, str], None]] = None,
) -> str:
    """
    Burn segments into the video. Audio is copied.

    Raises:
        ValueError: No segments to burn
    """
    if not segments:
        raise ValueError("No subtitle segments to burn")
    if not os.path.exists(input_path):
        raise FileNotFoundError(f"Input file not found: {input_path}")

    style = style or SubtitleStyle()
    srt_text = segments_to_srt(prepare_segments(segments, style))

    work_dir = os.path.dirname(os.path.abspath(output_path))
    fd, srt_path = tempfile.mkstemp(prefix="subs_", suffix=".srt", dir=work_dir)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(srt_text)

    try:
        video_filter = f"subtitles='{escape_filter_path(srt_path)}':force_style='{build_force_style(style)}'"
        cmd = [
            FFMPEG_BIN, "-y",
            "-i", input_path,
            "-vf", video_filter,
            "-c:v", "libx264",
            "-preset", "fast",
            "-crf", "23",
            "-pix_fmt", "yuv420p",
            "-c:a", "copy",
            "-movflags", "+faststart",
            output_path,
        ]
        logger.info(f"[Captioner] Burning {len(segments)} subtitle segments ({style.style})")
        run_ffmpeg(cmd, progress_callback=progress_callback, duration=probe_media(input_path).get("duration", 0))
    finally:
        safe_remove(srt_path, "[Captioner]")

    return output_path
