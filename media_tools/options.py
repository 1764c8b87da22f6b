"""Config parsing helpers shared by the media processors."""

import math
from typing import Any, Dict, Optional


def cfg(config: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """Return the first key present with a non-empty value."""
    for key in keys:
        if key in config and config[key] not in (None, ""):
            return config[key]
    return default


def clamp_number(
    value: Any,
    minimum: float,
    maximum: float,
    default: Optional[float],
) -> Optional[float]:
    if value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number):
        return default
    if number < minimum:
        return minimum
    if number > maximum:
        return maximum
    return number


def as_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "y", "on"}:
            return True
        if normalized in {"0", "false", "no", "n", "off", ""}:
            return False
    return default


def normalize_hex_color(value: Any, default: str = "#000000") -> str:
    if value is None:
        return default

    color = str(value).strip()
    if not color:
        return default

    if not color.startswith("#"):
        color = f"#{color}"

    if len(color) == 4:
        color = "#" + "".join(ch * 2 for ch in color[1:])

    if len(color) != 7:
        return default

    try:
        int(color[1:], 16)
    except ValueError:
        return default

    return color.lower()
