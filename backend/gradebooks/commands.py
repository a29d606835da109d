"""Draw command list shared by the vector and DOM executors.

Every coordinate is already in output units with a top-left origin. Executors
only translate primitives; they never look at template JSON.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import re

_HEX_PATTERN = re.compile(r"^#([0-9a-fA-F]{3}|[0-9a-fA-F]{6}|[0-9a-fA-F]{8})$")
_RGB_PATTERN = re.compile(
    r"^rgba?\(\s*([\d.]+)\s*,\s*([\d.]+)\s*,\s*([\d.]+)\s*(?:,\s*([\d.]+)\s*)?\)$"
)
_NAMED_COLORS = {
    "black": (0, 0, 0),
    "white": (255, 255, 255),
    "red": (255, 0, 0),
    "green": (0, 128, 0),
    "blue": (0, 0, 255),
    "grey": (128, 128, 128),
    "gray": (128, 128, 128),
    "orange": (255, 165, 0),
    "yellow": (255, 255, 0),
    "purple": (128, 0, 128),
}


@dataclass(frozen=True)
class Color:
    red: int
    green: int
    blue: int
    alpha: float = 1.0

    @property
    def rgb_fractions(self) -> tuple[float, float, float]:
        return self.red / 255, self.green / 255, self.blue / 255

    def css(self) -> str:
        if self.alpha >= 1:
            return f"#{self.red:02x}{self.green:02x}{self.blue:02x}"
        return f"rgba({self.red},{self.green},{self.blue},{self.alpha:g})"


def parse_color(value) -> Color | None:
    """Parse ``#rgb``/``#rrggbb``/``rgb()``/``rgba()``/named colours. ``transparent`` is None."""
    if value is None:
        return None
    raw = str(value).strip().lower()
    if not raw or raw in {"transparent", "none"}:
        return None
    hex_match = _HEX_PATTERN.match(raw)
    if hex_match:
        digits = hex_match.group(1)
        if len(digits) == 3:
            digits = "".join(char * 2 for char in digits)
        alpha = 1.0
        if len(digits) == 8:
            alpha = int(digits[6:8], 16) / 255
        return Color(int(digits[0:2], 16), int(digits[2:4], 16), int(digits[4:6], 16), alpha)
    rgb_match = _RGB_PATTERN.match(raw)
    if rgb_match:
        red, green, blue = (min(255, int(float(part))) for part in rgb_match.groups()[:3])
        alpha_raw = rgb_match.group(4)
        alpha = max(0.0, min(1.0, float(alpha_raw))) if alpha_raw is not None else 1.0
        return Color(red, green, blue, alpha)
    named = _NAMED_COLORS.get(raw)
    if named is not None:
        return Color(*named)
    return None


@dataclass(frozen=True)
class TextCommand:
    x: float
    y: float
    text: str
    font_size: float
    color: Color
    width: float | None = None
    align: str = "left"
    bold: bool = False


@dataclass(frozen=True)
class RectCommand:
    x: float
    y: float
    width: float
    height: float
    fill: Color | None = None
    stroke: Color | None = None
    stroke_width: float = 1.0
    radius: float = 0.0
    dashed: bool = False


@dataclass(frozen=True)
class CircleCommand:
    cx: float
    cy: float
    radius: float
    fill: Color | None = None
    stroke: Color | None = None
    stroke_width: float = 1.0


@dataclass(frozen=True)
class LineCommand:
    x1: float
    y1: float
    x2: float
    y2: float
    color: Color
    width: float = 1.0


@dataclass(frozen=True)
class PolygonCommand:
    points: tuple[tuple[float, float], ...]
    fill: Color


@dataclass(frozen=True)
class ImageCommand:
    x: float
    y: float
    width: float
    height: float
    data: bytes
    mime_type: str = "image/png"
    clip_circle: bool = False
    fit: str = "fill"


DrawCommand = TextCommand | RectCommand | CircleCommand | LineCommand | PolygonCommand | ImageCommand


@dataclass
class PageCommands:
    width: float
    height: float
    background: Color | None = None
    commands: list[DrawCommand] = field(default_factory=list)

    def add(self, command: DrawCommand) -> None:
        self.commands.append(command)

    def texts(self) -> list[str]:
        return [command.text for command in self.commands if isinstance(command, TextCommand)]
