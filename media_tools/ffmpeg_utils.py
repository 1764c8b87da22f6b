"""
FFmpeg Utilities Module

Shared transcoder helpers for every media processor:
- run_ffmpeg: blocking FFmpeg call with optional progress callback
- probe_media / has_audio_stream: ffprobe metadata
- measure_audio_peak: numpy-based silent track detection
- build_atempo_filters: chained atempo stages for any playback rate

Usage:
    from media_tools.ffmpeg_utils import run_ffmpeg, probe_media

    info = probe_media("in.mp4")
    run_ffmpeg(["ffmpeg", "-y", "-i", "in.mp4", "out.mp4"],
               progress_callback=my_callback, duration=info["duration"])
"""

import json
import logging
import os
import re
import subprocess
import tempfile
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)

FFMPEG_BIN = os.environ.get("FFMPEG_BIN", "ffmpeg")
FFPROBE_BIN = os.environ.get("FFPROBE_BIN", "ffprobe")

# Number of stderr lines kept for error reporting
STDERR_TAIL_LINES = 15

_TIME_PATTERN = re.compile(r"time=(\d+):(\d+):(\d+\.?\d*)")


class FFmpegError(RuntimeError):
    """Raised when the transcoder exits with a non-zero status."""

    def __init__(self, message: str, returncode: int = -1, stderr_tail: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr_tail = stderr_tail


def _filter_script_command(command: List[str]) -> Tuple[List[str], Optional[str]]:
    """Move very long -filter_complex values into a script file."""
    if "-filter_complex" not in command:
        return command, None

    fc_idx = command.index("-filter_complex")
    if fc_idx + 1 >= len(command):
        return command, None

    filter_complex_value = command[fc_idx + 1]
    command_length = sum(len(part) + 1 for part in command)
    if len(filter_complex_value) <= 7000 and command_length <= 26000:
        return command, None

    fd, script_path = tempfile.mkstemp(prefix="brand_fc_", suffix=".ffscript", text=True)
    with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as handle:
        handle.write(filter_complex_value)

    rewritten = command[:fc_idx] + ["-filter_complex_script", script_path] + command[fc_idx + 2:]
    return rewritten, script_path


def run_ffmpeg(
    command: List[str],
    progress_callback: Optional[Callable[[float, str], None]] = None,
    duration: float = 0,
    timeout: Optional[float] = None,
) -> None:
    """
    Run an FFmpeg command to completion.

    Args:
        command: Full argv, starting with the ffmpeg binary
        progress_callback: Optional callback(progress: 0-1, message: str)
        duration: Media duration in seconds, used to scale progress
        timeout: Max execution time in seconds (None = no limit)

    Raises:
        FFmpegError with the last stderr lines when the process fails
    """
    command_to_run, script_path = _filter_script_command(list(command))
    stderr_lines: List[str] = []

    try:
        process = subprocess.Popen(
            command_to_run,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            universal_newlines=True,
        )

        for line in process.stderr:
            stderr_lines.append(line.rstrip())
            if len(stderr_lines) > 50:
                stderr_lines.pop(0)

            if progress_callback and duration > 0 and "time=" in line:
                match = _TIME_PATTERN.search(line)
                if match:
                    h, m, s = match.groups()
                    current = int(h) * 3600 + int(m) * 60 + float(s)
                    progress_callback(min(current / duration, 1.0), f"Encoding {int(current)}s / {int(duration)}s")

        try:
            returncode = process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            process.kill()
            raise FFmpegError("FFmpeg process timed out", -1, "\n".join(stderr_lines[-STDERR_TAIL_LINES:]))
    finally:
        if script_path:
            try:
                os.remove(script_path)
            except OSError:
                pass

    if returncode != 0:
        tail = "\n".join(stderr_lines[-STDERR_TAIL_LINES:]) or "No stderr output"
        raise FFmpegError(f"FFmpeg failed (exit {returncode}):\n{tail}", returncode, tail)

    if progress_callback:
        progress_callback(1.0, "Encoding complete")


def probe_media(path: str) -> Dict[str, Any]:
    """Get media metadata using ffprobe."""
    cmd = [
        FFPROBE_BIN, "-v", "quiet",
        "-print_format", "json",
        "-show_streams", "-show_format",
        path,
    ]

    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=30)
        info = json.loads(result.stdout or "{}")
    except (subprocess.SubprocessError, json.JSONDecodeError, OSError) as e:
        logger.debug(f"[FFprobe] Could not probe {path}: {e}")
        info = {}

    streams = info.get("streams", [])
    video_stream = next((s for s in streams if s.get("codec_type") == "video"), {})
    audio_stream = next((s for s in streams if s.get("codec_type") == "audio"), None)

    fps_str = video_stream.get("r_frame_rate", "30/1")
    try:
        if "/" in fps_str:
            num, den = fps_str.split("/")
            fps = int(num) / int(den) if int(den) != 0 else 30.0
        else:
            fps = float(fps_str)
    except (ValueError, ZeroDivisionError):
        fps = 30.0

    try:
        duration = float(info.get("format", {}).get("duration") or video_stream.get("duration") or 0)
    except (TypeError, ValueError):
        duration = 0.0

    return {
        "width": int(video_stream.get("width", 0) or 0),
        "height": int(video_stream.get("height", 0) or 0),
        "fps": fps,
        "duration": duration,
        "has_video": bool(video_stream),
        "has_audio": audio_stream is not None,
    }


def has_audio_stream(input_path: str) -> bool:
    probe_command = [
        FFPROBE_BIN,
        "-v",
        "error",
        "-select_streams",
        "a:0",
        "-show_entries",
        "stream=codec_type",
        "-of",
        "csv=p=0",
        input_path,
    ]
    result = subprocess.run(probe_command, capture_output=True, text=True)
    if result.returncode != 0:
        return False
    return bool((result.stdout or "").strip())


def measure_audio_peak(input_path: str, sample_rate: int = 16000) -> Optional[float]:
    """
    Decode the first audio stream to mono float32 and return its peak amplitude.

    Returns None when the file has no decodable audio.
    """
    command = [
        FFMPEG_BIN,
        "-v",
        "error",
        "-i",
        input_path,
        "-vn",
        "-ac",
        "1",
        "-ar",
        str(sample_rate),
        "-f",
        "f32le",
        "-",
    ]
    result = subprocess.run(command, capture_output=True)
    if result.returncode != 0 or not result.stdout:
        return None

    audio = np.frombuffer(result.stdout, dtype=np.float32)
    if audio.size == 0:
        return None

    audio = np.nan_to_num(audio, nan=0.0, posinf=0.0, neginf=0.0)
    return float(np.max(np.abs(audio)))


def build_atempo_filters(rate: float) -> List[str]:
    # FFmpeg atempo supports [0.5, 2.0] per filter instance.
    filters: List[str] = []
    remaining = max(0.25, min(4.0, rate))

    while remaining > 2.0:
        filters.append("atempo=2.0")
        remaining /= 2.0

    while remaining < 0.5:
        filters.append("atempo=0.5")
        remaining *= 2.0

    filters.append(f"atempo={remaining:.5f}")
    return filters


def escape_filter_path(path: str) -> str:
    """Escape a file path for use inside an FFmpeg filter argument."""
    return path.replace("\\", "/").replace(":", "\\:").replace("'", "\\'")


def safe_remove(path: Optional[str], tag: str = "[Cleanup]") -> bool:
    """Delete a file, logging (not raising) on failure."""
    if not path:
        return False
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.warning(f"{tag} Failed to delete {path}: {e}")
        return False


def extract_speech_audio(input_path: str, output_path: str, gain: float = 1.0) -> str:
    """
    Extract the first audio stream as 16 kHz mono WAV for transcription.

    A gain above 1.0 boosts quiet voices; a limiter keeps the peaks clean.
    """
    audio_filters = []
    if gain and abs(gain - 1.0) > 1e-6:
        audio_filters += [f"volume={gain:g}", "alimiter=limit=0.95"]

    cmd = [FFMPEG_BIN, "-y", "-i", input_path, "-vn", "-ac", "1", "-ar", "16000"]
    if audio_filters:
        cmd += ["-af", ",".join(audio_filters)]
    cmd += ["-c:a", "pcm_s16le", "-f", "wav", output_path]

    run_ffmpeg(cmd)
    return output_path
