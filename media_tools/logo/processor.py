"""
Logo Processor - Watermark overlay for videos

Config structure:
{
    "logoUrl": "data:image/png;base64,..." | "https://..." | "/path/logo.png",
    "position": "top-left" | "top-right" | "bottom-left" | "bottom-right" | "center"
                (short codes "tl" | "tr" | "bl" | "br" accepted),
    "size": 5-40 (percent of video width, default 15),
    "opacity": 0-100 (default 100)
}
"""

import base64
import binascii
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from io import BytesIO
from typing import Any, Callable, Dict, Optional, Tuple

import requests
from PIL import Image

from media_tools.constants import LOGO_PADDING_PX, LOGO_POSITION_ALIASES
from media_tools.ffmpeg_utils import FFMPEG_BIN, probe_media, run_ffmpeg, safe_remove
from media_tools.options import cfg, clamp_number

logger = logging.getLogger(__name__)

_DATA_URL_PATTERN = re.compile(r"^data:([^;,]+)?(;base64)?,(.*)$", re.DOTALL)

LOGO_POSITIONS = {"top-left", "top-right", "bottom-left", "bottom-right", "center"}


@dataclass
class LogoOptions:
    logo_url: str
    position: str = "bottom-right"
    size: float = 15.0
    opacity: float = 100.0

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "LogoOptions":
        position = str(cfg(config, "position", "logoPosition", default="bottom-right")).lower()
        position = LOGO_POSITION_ALIASES.get(position, position)
        if position not in LOGO_POSITIONS:
            position = "bottom-right"
        return cls(
            logo_url=str(cfg(config, "logoUrl", "logo_url", "url", default="")),
            position=position,
            size=clamp_number(cfg(config, "size", "logoSize"), 1.0, 100.0, 15.0),
            opacity=clamp_number(cfg(config, "opacity", "logoOpacity"), 0.0, 100.0, 100.0),
        )


def materialize_logo(logo_url: str) -> Tuple[str, bool]:
    """
    Turn a logo reference into a local image file.

    Returns:
        (path, is_temp). Temp files must be removed by the caller.
    """
    if not logo_url:
        raise ValueError("Logo URL is empty")

    if logo_url.startswith("data:"):
        match = _DATA_URL_PATTERN.match(logo_url)
        if not match or not match.group(2):
            raise ValueError("Logo data URL must be base64 encoded")
        try:
            raw = base64.b64decode(match.group(3), validate=False)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Invalid logo data URL: {e}") from e
        return _save_as_png(raw), True

    if logo_url.startswith("http://") or logo_url.startswith("https://"):
        response = requests.get(logo_url, timeout=30)
        response.raise_for_status()
        return _save_as_png(response.content), True

    if os.path.exists(logo_url):
        return logo_url, False

    raise FileNotFoundError(f"Logo not found: {logo_url}")


def _save_as_png(raw: bytes) -> str:
    """Decode any Pillow-readable image and store it as an RGBA PNG."""
    try:
        with Image.open(BytesIO(raw)) as image:
            rgba = image.convert("RGBA")
    except (OSError, Image.DecompressionBombError) as e:
        raise ValueError(f"Logo is not a readable image: {e}") from e

    fd, path = tempfile.mkstemp(prefix="logo_", suffix=".png")
    os.close(fd)
    rgba.save(path, "PNG")
    return path


def calculate_logo_placement(position: str, padding: int = LOGO_PADDING_PX) -> Tuple[str, str]:
    """Return overlay x/y expressions for a named position."""
    placements = {
        "top-left": (f"{padding}", f"{padding}"),
        "top-right": (f"main_w-overlay_w-{padding}", f"{padding}"),
        "bottom-left": (f"{padding}", f"main_h-overlay_h-{padding}"),
        "bottom-right": (f"main_w-overlay_w-{padding}", f"main_h-overlay_h-{padding}"),
        "center": ("(main_w-overlay_w)/2", "(main_h-overlay_h)/2"),
    }
    return placements.get(position, placements["bottom-right"])


def build_logo_filter(options: LogoOptions, video_width: int) -> str:
    x, y = calculate_logo_placement(options.position)
    logo_w = max(2, int(video_width * options.size / 100)) if video_width > 0 else 0
    scale = f"{logo_w}:-1" if logo_w else f"iw*{options.size / 100:g}:-1"
    alpha = f"{options.opacity / 100:g}"
    return (
        f"[1:v]scale={scale},format=rgba,colorchannelmixer=aa={alpha}[logo];"
        f"[0:v][logo]overlay={x}:{y}:format=auto[vout]"
    )


def apply_logo_overlay(
    input_path: str,
    output_path: str,
    options: LogoOptions,
    progress_callback: Optional[Callable[[float, str], None]] = None,
) -> str:
    """
    Overlay a logo on a video. Audio is copied.

    The materialized logo file is deleted whether or not the render succeeds.
    """
    if not os.path.exists(input_path):
        raise FileNotFoundError(f"Input file not found: {input_path}")

    info = probe_media(input_path)
    logo_path, is_temp = materialize_logo(options.logo_url)

    try:
        cmd = [
            FFMPEG_BIN, "-y",
            "-i", input_path,
            "-i", logo_path,
            "-filter_complex", build_logo_filter(options, info.get("width", 0)),
            "-map", "[vout]",
            "-map", "0:a?",
            "-c:v", "libx264",
            "-preset", "fast",
            "-crf", "23",
            "-c:a", "copy",
            "-movflags", "+faststart",
            "-pix_fmt", "yuv420p",
            output_path,
        ]
        logger.info(f"[Logo] Overlaying logo at {options.position} ({options.size:g}% width, {options.opacity:g}% opacity)")
        run_ffmpeg(cmd, progress_callback=progress_callback, duration=info.get("duration", 0))
    finally:
        if is_temp:
            safe_remove(logo_path, "[Logo]")

    return output_path
