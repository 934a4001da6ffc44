import hashlib
import re
from typing import Any, Dict, Optional, Tuple

RGBA = Tuple[int, int, int, int]

_RGBA_PATTERN = re.compile(
    r"^rgba?\(\s*(?P<r>\d{1,3})\s*,\s*(?P<g>\d{1,3})\s*,\s*(?P<b>\d{1,3})\s*(?:,\s*(?P<a>[\d.]+)\s*)?\)$",
    re.IGNORECASE,
)

NAMED_COLORS: Dict[str, RGBA] = {
    "white": (255, 255, 255, 255),
    "black": (0, 0, 0, 255),
    "red": (255, 0, 0, 255),
    "transparent": (0, 0, 0, 0),
}


def _clamp(value: float) -> int:
    return max(0, min(255, int(round(value))))


def parse_color(value: Any, default: RGBA = (0, 0, 0, 255)) -> RGBA:
    """Parse ``#rgb``, ``#rrggbb``, ``#rrggbbaa``, ``rgb()``/``rgba()`` or a few names."""
    if value is None:
        return default
    if isinstance(value, (tuple, list)):
        parts = [int(v) for v in value]
        if len(parts) == 3:
            parts.append(255)
        return tuple(_clamp(v) for v in parts[:4])  # type: ignore[return-value]

    text = str(value).strip()
    named = NAMED_COLORS.get(text.lower())
    if named:
        return named

    if text.startswith("#"):
        digits = text[1:]
        if len(digits) in (3, 4):
            digits = "".join(ch * 2 for ch in digits)
        if len(digits) in (6, 8):
            try:
                channels = [int(digits[i:i + 2], 16) for i in range(0, len(digits), 2)]
            except ValueError:
                return default
            if len(channels) == 3:
                channels.append(255)
            return tuple(channels)  # type: ignore[return-value]
        return default

    match = _RGBA_PATTERN.match(text)
    if match:
        alpha = match.group("a")
        a = _clamp(float(alpha) * 255) if alpha is not None else 255
        return (_clamp(int(match.group("r"))), _clamp(int(match.group("g"))), _clamp(int(match.group("b"))), a)
    return default


def with_alpha(color: RGBA, opacity: float) -> RGBA:
    r, g, b, a = color
    return (r, g, b, _clamp(a * max(0.0, min(1.0, opacity))))


def rgb_to_hex(rgb: Tuple[int, int, int]) -> str:
    r, g, b = rgb
    return f"#{max(0, min(255, r)):02x}{max(0, min(255, g)):02x}{max(0, min(255, b)):02x}"


# Deterministic colour from a category code; channels stay within 60-215.
def color_from_code(code: str) -> Tuple[int, int, int]:
    digest = hashlib.sha1((code or "UNK").encode("utf-8")).hexdigest()
    r = 60 + (int(digest[0:2], 16) % 156)
    g = 60 + (int(digest[2:4], 16) % 156)
    b = 60 + (int(digest[4:6], 16) % 156)
    return (r, g, b)


def _clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def resolve_feature_color(
    strategy: str,
    props: Dict[str, Any],
    *,
    static: Optional[str] = None,
    field: Optional[str] = None,
    lookup: Optional[Dict[str, str]] = None,
    default: Optional[str] = None,
) -> Optional[str]:
    """Pick a feature colour by ``static``, ``lookup`` or ``hash_code`` strategy."""
    if strategy == "lookup":
        key = _clean_text(props.get(field)) if field else None
        if key is None or not lookup:
            return default
        return lookup.get(key) or lookup.get(key.upper()) or lookup.get(key.lower()) or default
    if strategy == "hash_code":
        key = _clean_text(props.get(field)) if field else None
        if key is None:
            return default or static
        return rgb_to_hex(color_from_code(key))
    return static or default
