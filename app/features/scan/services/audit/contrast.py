"""
WCAG 2.x contrast math: colour parsing, relative luminance and the 1.4.3
thresholds.
"""
import re
from typing import Optional, Tuple

from app.features.scan.services.audit.dom_snapshot import DomElement, DomSnapshot

RGBA = Tuple[float, float, float, float]

WHITE: RGBA = (255.0, 255.0, 255.0, 1.0)

NORMAL_TEXT_RATIO = 4.5
LARGE_TEXT_RATIO = 3.0

NAMED_COLORS = {
    "black": "#000000",
    "white": "#ffffff",
    "red": "#ff0000",
    "green": "#008000",
    "blue": "#0000ff",
    "yellow": "#ffff00",
    "orange": "#ffa500",
    "purple": "#800080",
    "gray": "#808080",
    "grey": "#808080",
    "silver": "#c0c0c0",
    "lightgray": "#d3d3d3",
    "lightgrey": "#d3d3d3",
    "darkgray": "#a9a9a9",
    "darkgrey": "#a9a9a9",
    "navy": "#000080",
    "maroon": "#800000",
    "teal": "#008080",
    "olive": "#808000",
    "lime": "#00ff00",
    "aqua": "#00ffff",
    "cyan": "#00ffff",
    "fuchsia": "#ff00ff",
    "magenta": "#ff00ff",
    "pink": "#ffc0cb",
    "brown": "#a52a2a",
    "whitesmoke": "#f5f5f5",
    "gainsboro": "#dcdcdc",
}

_RGB_PATTERN = re.compile(r"rgba?\(\s*([^)]*)\)")
_FONT_SIZE_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)(px|pt|rem|em)?$")


def parse_color(value: str) -> Optional[RGBA]:
    """Parse hex, rgb()/rgba() and a small set of named colours. None if unknown."""
    if not value:
        return None
    value = value.strip().lower()
    if value == "transparent":
        return (0.0, 0.0, 0.0, 0.0)
    value = NAMED_COLORS.get(value, value)

    if value.startswith("#"):
        digits = value[1:]
        if len(digits) in (3, 4):
            digits = "".join(c * 2 for c in digits)
        if len(digits) not in (6, 8):
            return None
        try:
            r, g, b = (int(digits[i:i + 2], 16) for i in (0, 2, 4))
            a = int(digits[6:8], 16) / 255.0 if len(digits) == 8 else 1.0
        except ValueError:
            return None
        return (float(r), float(g), float(b), a)

    match = _RGB_PATTERN.match(value)
    if match:
        parts = [p for p in re.split(r"[\s,/]+", match.group(1)) if p]
        if len(parts) < 3:
            return None
        try:
            channels = [_channel(p) for p in parts[:3]]
            alpha = _alpha(parts[3]) if len(parts) > 3 else 1.0
        except ValueError:
            return None
        return (channels[0], channels[1], channels[2], alpha)
    return None


def _channel(token: str) -> float:
    if token.endswith("%"):
        return max(0.0, min(255.0, float(token[:-1]) * 2.55))
    return max(0.0, min(255.0, float(token)))


def _alpha(token: str) -> float:
    if token.endswith("%"):
        return max(0.0, min(1.0, float(token[:-1]) / 100))
    return max(0.0, min(1.0, float(token)))


def relative_luminance(color: RGBA) -> float:
    def linear(channel: float) -> float:
        c = channel / 255.0
        return c / 12.92 if c <= 0.03928 else ((c + 0.055) / 1.055) ** 2.4

    r, g, b = (linear(c) for c in color[:3])
    return 0.2126 * r + 0.7152 * g + 0.0722 * b


def contrast_ratio(foreground: RGBA, background: RGBA) -> float:
    lighter, darker = sorted(
        (relative_luminance(foreground), relative_luminance(background)), reverse=True
    )
    return (lighter + 0.05) / (darker + 0.05)


def blend(top: RGBA, bottom: RGBA) -> RGBA:
    """Composite a translucent colour over an opaque one."""
    alpha = top[3]
    if alpha >= 1:
        return top
    return (
        top[0] * alpha + bottom[0] * (1 - alpha),
        top[1] * alpha + bottom[1] * (1 - alpha),
        top[2] * alpha + bottom[2] * (1 - alpha),
        1.0,
    )


def effective_background(element: DomElement, snapshot: DomSnapshot) -> RGBA:
    """First non-transparent background walking up from the element, white if none."""
    layers = []
    for node in [element, *snapshot.ancestors(element)]:
        color = parse_color(node.style.get("background-color", ""))
        if color is None or color[3] == 0:
            continue
        layers.append(color)
        if color[3] >= 1:
            break

    background = WHITE
    for layer in reversed(layers):
        background = blend(layer, background)
    return background


def parse_font_size(value: str) -> float:
    match = _FONT_SIZE_PATTERN.match((value or "").strip().lower())
    if not match:
        return 16.0
    number, unit = float(match.group(1)), match.group(2)
    if unit == "pt":
        return number * 4 / 3
    if unit in ("em", "rem"):
        return number * 16
    return number


def parse_font_weight(value: str) -> int:
    value = (value or "").strip().lower()
    if value in ("bold", "bolder"):
        return 700
    try:
        return int(float(value))
    except ValueError:
        return 400


def is_large_text(element: DomElement) -> bool:
    size = parse_font_size(element.style.get("font-size", ""))
    weight = parse_font_weight(element.style.get("font-weight", ""))
    return size >= 18 or (size >= 14 and weight >= 700)


def required_ratio(element: DomElement) -> float:
    return LARGE_TEXT_RATIO if is_large_text(element) else NORMAL_TEXT_RATIO


def element_contrast(element: DomElement, snapshot: DomSnapshot) -> Optional[float]:
    """Contrast ratio of the element's text, or None when the colour cannot be read."""
    foreground = parse_color(element.style.get("color", ""))
    if foreground is None:
        return None
    background = effective_background(element, snapshot)
    return contrast_ratio(blend(foreground, background), background)
