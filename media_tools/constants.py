"""
Media Tools Constants

Constant tables shared by the media processors:
- File extensions
- Preset looks for the effects pass
- Crop aspect ratios
- Output quality tiers
- Logo placement aliases
"""

# Supported video file extensions
VIDEO_EXTENSIONS = {".mp4", ".mov", ".avi", ".webm", ".mkv", ".m4v"}

# Supported audio file extensions
AUDIO_EXTENSIONS = {".mp3", ".wav", ".ogg", ".m4a", ".aac", ".flac"}

# Neutral value for the 0-200 grading sliders (brightness, contrast, ...)
NEUTRAL_LEVEL = 100.0

# Preset looks (CapCut-style). Each value is a fixed FFmpeg filter bundle.
PRESET_LOOKS = {
    "vintage": "curves=vintage,vignette=PI/4,eq=saturation=0.8",
    "vibrant": "eq=saturation=1.5:contrast=1.1,vibrance=intensity=0.3",
    "cinematic": "colorbalance=rs=0.1:gs=-0.05:bs=-0.15,curves=all='0/0 0.5/0.45 1/1',vignette=PI/3",
    "warm": "colorbalance=rs=0.15:gs=0.05:bs=-0.1,eq=contrast=1.05",
    "cool": "colorbalance=rs=-0.1:gs=0:bs=0.15,eq=contrast=1.05",
    "bw": "hue=s=0,curves=all='0/0 0.5/0.5 1/1'",
    "sepia": "colorchannelmixer=.393:.769:.189:0:.349:.686:.168:0:.272:.534:.131",
    "dramatic": "eq=contrast=1.3:saturation=1.2:brightness=-0.05,curves=all='0/0 0.5/0.4 1/1',vignette=PI/3.5",
}

# Crop targets as FFmpeg expressions (width / height)
CROP_ASPECT_RATIOS = {
    "9:16": "(9/16)",   # TikTok vertical
    "16:9": "(16/9)",   # YouTube horizontal
    "1:1": "1",         # Square
    "4:5": "(4/5)",     # Portrait feed
}

CROP_POSITIONS = {"center", "top", "bottom"}

# Output quality tiers: (x264 preset, CRF)
QUALITY_PRESETS = {
    "ultra": ("slow", 18),
    "high": ("medium", 20),
    "medium": ("fast", 23),
    "low": ("faster", 26),
}

# Logo placement: design-spec short codes -> overlay positions
LOGO_POSITION_ALIASES = {
    "tl": "top-left",
    "tr": "top-right",
    "bl": "bottom-left",
    "br": "bottom-right",
}

LOGO_PADDING_PX = 30

# ASR rejects audio files smaller than this as "no speech"
MIN_SPEECH_AUDIO_BYTES = 1024

# Float PCM peak below which an extracted track counts as silent (about -60 dBFS)
SILENT_PEAK_THRESHOLD = 0.001

# Narration playback speed bounds (single atempo stage)
NARRATION_SPEED_MIN = 0.5
NARRATION_SPEED_MAX = 2.0
