"""
Effects Processor - Colour grading, preset looks and clip adjustments

Builds one FFmpeg filter graph from a brand pattern's effect settings and
renders it in a single pass.

Config structure (every key optional, absent means "not provided"):
{
    "enableEffects": bool,
    "enableColorGrading": bool,
    "brightness": 0-200 (100 = neutral),
    "contrast": 0-200,
    "saturation": 0-200,
    "temperature": 0-200,
    "tint": 0-200,
    "hue": -180..180 (0 = neutral),
    "exposure": 50-150 (100 = neutral),
    "highlights": 0-200,
    "shadows": 0-200,
    "filterType": "none" | "vintage" | "vibrant" | "cinematic" | "warm" |
                  "cool" | "bw" | "sepia" | "dramatic",
    "vignette": 0-100,
    "sharpen": 0-100,
    "blur": 0-100,
    "grain": 0-100,
    "speed": 0.25-4.0,
    "smoothSlowMotion": bool,
    "stabilization": bool,
    "denoise": bool,
    "denoiseStrength": 0-100 (default 50),
    "autoCrop": bool,
    "targetAspectRatio": "9:16" | "16:9" | "1:1" | "4:5",
    "cropPosition": "center" | "top" | "bottom",
    "audioVolume": 0-200 (100 = unchanged),
    "normalizeAudio": bool,
    "quality": "low" | "medium" | "high" | "ultra",
    "bitrate": "4M" | "auto" | null,
    "fps": number | null
}

Stage order is fixed:
speed -> stabilize -> denoise -> crop -> colour grade -> preset look ->
vignette -> sharpen -> blur -> grain
"""

import logging
import math
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from media_tools.constants import (
    CROP_ASPECT_RATIOS,
    NEUTRAL_LEVEL,
    PRESET_LOOKS,
    QUALITY_PRESETS,
)
from media_tools.ffmpeg_utils import (
    FFMPEG_BIN,
    build_atempo_filters,
    has_audio_stream,
    probe_media,
    run_ffmpeg,
)
from media_tools.options import as_bool, cfg, clamp_number

logger = logging.getLogger(__name__)

# Sliders whose neutral value is 100
_LEVEL_FIELDS = (
    "brightness",
    "contrast",
    "saturation",
    "temperature",
    "tint",
    "exposure",
    "highlights",
    "shadows",
)


def _num(value: float) -> str:
    """Compact decimal for filter arguments (no exponent, no trailing zeros)."""
    text = f"{round(value, 4):.4f}".rstrip("0").rstrip(".")
    return "0" if text in ("-0", "") else text


@dataclass
class EffectOptions:
    """Effect settings. ``None`` means the value was not provided."""

    enable_effects: bool = False
    enable_color_grading: bool = False

    brightness: Optional[float] = None
    contrast: Optional[float] = None
    saturation: Optional[float] = None
    temperature: Optional[float] = None
    tint: Optional[float] = None
    hue: Optional[float] = None
    exposure: Optional[float] = None
    highlights: Optional[float] = None
    shadows: Optional[float] = None

    filter_type: Optional[str] = None
    vignette: Optional[float] = None
    sharpen: Optional[float] = None
    blur: Optional[float] = None
    grain: Optional[float] = None

    speed: Optional[float] = None
    smooth_slow_motion: bool = False
    stabilization: bool = False
    denoise: bool = False
    denoise_strength: Optional[float] = None
    auto_crop: bool = False
    target_aspect_ratio: Optional[str] = None
    crop_position: str = "center"

    audio_volume: Optional[float] = None
    normalize_audio: bool = False

    quality: str = "high"
    bitrate: Optional[str] = None
    fps: Optional[float] = None

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]]) -> "EffectOptions":
        """Parse a camelCase (or snake_case) config dict, clamping every slider."""
        config = config or {}

        def level(*keys: str, low: float = 0.0, high: float = 200.0) -> Optional[float]:
            return clamp_number(cfg(config, *keys), low, high, None)

        filter_type = cfg(config, "filterType", "filter_type")
        crop_position = str(cfg(config, "cropPosition", "crop_position", default="center")).lower()
        quality = str(cfg(config, "quality", "outputQuality", "output_quality", default="high")).lower()
        bitrate = cfg(config, "bitrate", "outputBitrate", "output_bitrate")

        return cls(
            enable_effects=as_bool(cfg(config, "enableEffects", "enable_effects")),
            enable_color_grading=as_bool(cfg(config, "enableColorGrading", "enable_color_grading")),
            brightness=level("brightness"),
            contrast=level("contrast"),
            saturation=level("saturation"),
            temperature=level("temperature"),
            tint=level("tint"),
            hue=level("hue", low=-180.0, high=180.0),
            exposure=level("exposure", low=50.0, high=150.0),
            highlights=level("highlights"),
            shadows=level("shadows"),
            filter_type=str(filter_type).lower() if filter_type else None,
            vignette=level("vignette", high=100.0),
            sharpen=level("sharpen", high=100.0),
            blur=level("blur", high=100.0),
            grain=level("grain", high=100.0),
            speed=level("speed", "speedMultiplier", "speed_multiplier", low=0.25, high=4.0),
            smooth_slow_motion=as_bool(cfg(config, "smoothSlowMotion", "enableSmoothSlow", "smooth_slow_motion")),
            stabilization=as_bool(cfg(config, "stabilization", "enableStabilization")),
            denoise=as_bool(cfg(config, "denoise", "enableDenoise")),
            denoise_strength=level("denoiseStrength", "denoise_strength", high=100.0),
            auto_crop=as_bool(cfg(config, "autoCrop", "enableAutoCrop", "auto_crop")),
            target_aspect_ratio=cfg(config, "targetAspectRatio", "target_aspect_ratio", "aspectRatio"),
            crop_position=crop_position if crop_position in ("center", "top", "bottom") else "center",
            audio_volume=level("audioVolume", "audio_volume"),
            normalize_audio=as_bool(cfg(config, "normalizeAudio", "audioNormalize", "normalize_audio")),
            quality=quality if quality in QUALITY_PRESETS else "high",
            bitrate=str(bitrate) if bitrate and str(bitrate) != "auto" else None,
            fps=clamp_number(cfg(config, "fps", "outputFps", "output_fps"), 1.0, 120.0, None),
        )


@dataclass
class FilterStage:
    """One link of the video filter chain."""

    name: str
    expression: str


@dataclass
class EffectsPlan:
    video_stages: List[FilterStage] = field(default_factory=list)
    audio_filters: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.video_stages and not self.audio_filters


# ==================== FILTER BUILDERS ====================

def _deviates(value: Optional[float], neutral: float = NEUTRAL_LEVEL) -> bool:
    return value is not None and abs(value - neutral) > 1e-9


def _has_speed_change(options: EffectOptions) -> bool:
    return _deviates(options.speed, 1.0)


def _has_grading_change(options: EffectOptions) -> bool:
    if any(_deviates(getattr(options, name)) for name in _LEVEL_FIELDS):
        return True
    return _deviates(options.hue, 0.0)


def build_color_grading_filter(options: EffectOptions) -> Optional[str]:
    """
    Build the colour grading chain from the provided sliders.

    Only values that were provided and differ from neutral produce filters.
    """
    parts: List[str] = []

    eq_args: List[str] = []
    if _deviates(options.brightness):
        eq_args.append(f"brightness={_num((options.brightness - 100) / 100)}")
    if _deviates(options.contrast):
        eq_args.append(f"contrast={_num(options.contrast / 100)}")
    if _deviates(options.saturation):
        eq_args.append(f"saturation={_num(options.saturation / 100)}")
    if _deviates(options.exposure):
        eq_args.append(f"gamma={_num(1 + (options.exposure - 100) / 50)}")
    if eq_args:
        parts.append("eq=" + ":".join(eq_args))

    if _deviates(options.hue, 0.0):
        parts.append(f"hue=h={_num(options.hue)}")

    if _deviates(options.temperature):
        shift = (options.temperature - 100) / 100
        parts.append(f"colorbalance=rs={_num(shift)}:gs=0:bs={_num(-shift)}")

    if _deviates(options.tint):
        shift = (options.tint - 100) / 100
        parts.append(f"colorbalance=rm=0:gm={_num(shift)}:bm=0")

    if _deviates(options.highlights) or _deviates(options.shadows):
        highlight_shift = ((options.highlights if options.highlights is not None else 100) - 100) / 100
        shadow_shift = ((options.shadows if options.shadows is not None else 100) - 100) / 100
        low = min(max(shadow_shift * 0.2, 0.0), 1.0)
        high = min(max(1 + highlight_shift * 0.2, 0.0), 1.0)
        parts.append(f"curves=all='0/{_num(low)} 1/{_num(high)}'")

    return ",".join(parts) if parts else None


def build_preset_filter(filter_type: Optional[str]) -> Optional[str]:
    if not filter_type or filter_type == "none":
        return None
    preset = PRESET_LOOKS.get(filter_type)
    if preset is None:
        logger.warning(f"[Effects] Unknown preset look '{filter_type}', ignoring")
    return preset


def build_crop_filter(aspect_ratio: Optional[str], position: str = "center") -> Optional[str]:
    aspect = CROP_ASPECT_RATIOS.get(aspect_ratio or "")
    if not aspect:
        return None

    x = "(iw-ow)/2"
    y = "(ih-oh)/2"
    if position == "top":
        y = "0"
    elif position == "bottom":
        y = "ih-oh"

    return f"crop='min(iw,ih*{aspect})':'min(ih,iw/{aspect})':{x}:{y}"


def build_video_filter_stages(options: EffectOptions) -> List[FilterStage]:
    """Map effect options to the ordered video filter stages."""
    stages: List[FilterStage] = []

    # 1. Speed
    if _has_speed_change(options):
        speed = options.speed
        setpts = f"setpts={_num(1 / speed)}*PTS"
        if options.smooth_slow_motion and speed < 1.0:
            stages.append(FilterStage(
                "speed",
                "minterpolate='fps=60:mi_mode=mci:mc_mode=aobmc:me_mode=bidir:vsbmc=1'," + setpts,
            ))
        else:
            stages.append(FilterStage("speed", setpts))

    # 2. Stabilization
    if options.stabilization:
        stages.append(FilterStage("stabilize", "deshake=rx=64:ry=64"))

    # 3. Denoise
    if options.denoise:
        strength = (options.denoise_strength if options.denoise_strength is not None else 50) / 100
        stages.append(FilterStage(
            "denoise",
            f"hqdn3d={_num(strength * 4)}:{_num(strength * 3)}:{_num(strength * 6)}:{_num(strength * 4.5)}",
        ))

    # 4. Crop
    if options.auto_crop:
        crop = build_crop_filter(options.target_aspect_ratio, options.crop_position)
        if crop:
            stages.append(FilterStage("crop", crop))

    # 5. Colour grading
    grading = build_color_grading_filter(options)
    if grading:
        stages.append(FilterStage("color_grade", grading))

    # 6. Preset look
    preset = build_preset_filter(options.filter_type)
    if preset:
        stages.append(FilterStage("preset", preset))

    # 7. Vignette
    if options.vignette and options.vignette > 0:
        amount = options.vignette / 100
        stages.append(FilterStage("vignette", f"vignette='PI/{_num(4 - amount * 2)}'"))

    # 8. Sharpen
    if options.sharpen and options.sharpen > 0:
        amount = options.sharpen / 100 * 1.5
        stages.append(FilterStage("sharpen", f"unsharp=luma_msize_x=5:luma_msize_y=5:luma_amount={_num(amount)}"))

    # 9. Blur
    if options.blur and options.blur > 0:
        amount = _num(options.blur / 100 * 10)
        stages.append(FilterStage("blur", f"boxblur={amount}:{amount}"))

    # 10. Film grain
    if options.grain and options.grain > 0:
        stages.append(FilterStage("grain", f"noise=alls={_num(options.grain / 100 * 50)}:allf=t"))

    return stages


def build_audio_filters(options: EffectOptions) -> List[str]:
    filters: List[str] = []

    if options.audio_volume is not None and _deviates(options.audio_volume):
        if options.audio_volume <= 0:
            filters.append("volume=0")
        else:
            filters.append(f"volume={_num(20 * math.log10(options.audio_volume / 100))}dB")

    if options.normalize_audio:
        filters.append("loudnorm=I=-16:TP=-1.5:LRA=11")

    if _has_speed_change(options):
        filters.extend(build_atempo_filters(options.speed))

    return filters


def build_filter_complex(stages: List[FilterStage], input_label: str = "[0:v]") -> str:
    """Chain stages with intermediate labels; the last one is always [vout]."""
    if not stages:
        return ""
    links: List[str] = []
    current = input_label
    for index, stage in enumerate(stages, start=1):
        out_label = "[vout]" if index == len(stages) else f"[v{index}]"
        links.append(f"{current}{stage.expression}{out_label}")
        current = out_label
    return ";".join(links)


def build_effects_plan(options: EffectOptions) -> EffectsPlan:
    return EffectsPlan(
        video_stages=build_video_filter_stages(options),
        audio_filters=build_audio_filters(options),
    )


def get_quality_options(options: EffectOptions) -> List[str]:
    preset, crf = QUALITY_PRESETS.get(options.quality, QUALITY_PRESETS["high"])
    opts = ["-c:v", "libx264", "-preset", preset, "-crf", str(crf)]

    if options.bitrate:
        opts += ["-b:v", options.bitrate]
    if options.fps:
        opts += ["-r", _num(options.fps)]

    opts += [
        "-c:a", "aac",
        "-b:a", "192k",
        "-movflags", "+faststart",
        "-pix_fmt", "yuv420p",
    ]
    return opts


def should_apply_effects(options: EffectOptions) -> bool:
    """
    Decide whether the effects pass runs at all.

    The enable flags alone are enough to opt in, and any provided value that
    differs from neutral opts in as well even when the flags are off. An
    explicit neutral value (brightness=100, filterType="none", ...) never
    counts as a change.
    """
    if options.enable_effects or options.enable_color_grading:
        return True
    if _has_grading_change(options):
        return True
    if options.filter_type and options.filter_type != "none":
        return True
    if any((getattr(options, name) or 0) > 0 for name in ("vignette", "sharpen", "blur", "grain")):
        return True
    if _has_speed_change(options) or options.stabilization or options.denoise:
        return True
    if options.auto_crop and options.target_aspect_ratio:
        return True
    if _deviates(options.audio_volume) or options.normalize_audio:
        return True
    return False


# ==================== RENDER ====================

def apply_effects(
    input_path: str,
    output_path: str,
    options: EffectOptions,
    progress_callback: Optional[Callable[[float, str], None]] = None,
) -> Dict[str, Any]:
    """
    Render the effects pass.

    Args:
        input_path: Source video
        output_path: Destination MP4
        options: Parsed effect options
        progress_callback: Optional callback(progress: 0-1, message: str)

    Returns:
        Dict with "applied" (False when the plan had nothing to do, in which
        case no output is written) and the stage names used.
    """
    if not os.path.exists(input_path):
        raise FileNotFoundError(f"Input file not found: {input_path}")

    plan = build_effects_plan(options)
    if plan.is_empty:
        logger.info("[Effects] No effect stages to apply")
        return {"applied": False, "stages": []}

    has_audio = has_audio_stream(input_path)
    info = probe_media(input_path)
    duration = info.get("duration", 0)
    if _has_speed_change(options) and duration:
        duration = duration / options.speed

    cmd = [FFMPEG_BIN, "-y", "-i", input_path]
    if plan.video_stages:
        cmd += ["-filter_complex", build_filter_complex(plan.video_stages), "-map", "[vout]"]
    else:
        cmd += ["-map", "0:v:0"]
    cmd += ["-map", "0:a?"]
    if has_audio and plan.audio_filters:
        cmd += ["-af", ",".join(plan.audio_filters)]
    cmd += get_quality_options(options)
    cmd.append(output_path)

    stage_names = [stage.name for stage in plan.video_stages]
    if plan.audio_filters and has_audio:
        stage_names.append("audio")
    logger.info(f"[Effects] Applying stages: {', '.join(stage_names) or 'none'}")

    run_ffmpeg(cmd, progress_callback=progress_callback, duration=duration)

    return {"applied": True, "stages": stage_names}
