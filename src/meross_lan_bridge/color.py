"""Color and level conversions for Meross light payloads."""

from __future__ import annotations

import math
from typing import Tuple

LEVEL_MAX = 254
WHITE = 0xFFFFFF


def clamp(value: float, minimum: float, maximum: float) -> float:
    return max(minimum, min(maximum, value))


def round_half_up(value: float) -> int:
    """Round .5 towards positive infinity (``round`` uses banker's rounding)."""

    return int(math.floor(value + 0.5))


def rgb_to_int(r: float, g: float, b: float) -> int:
    """Pack 0..255 channels into a 24-bit ``0xRRGGBB`` integer."""

    rr = int(clamp(round_half_up(r), 0, 255))
    gg = int(clamp(round_half_up(g), 0, 255))
    bb = int(clamp(round_half_up(b), 0, 255))
    return (rr << 16) | (gg << 8) | bb


def int_to_rgb(value: int) -> Tuple[int, int, int]:
    """Unpack a 24-bit integer into ``(r, g, b)``."""

    value &= WHITE
    return (value >> 16) & 0xFF, (value >> 8) & 0xFF, value & 0xFF


def level_to_luminance(level_raw: float) -> int:
    """Convert a 0..254 level into a 0..100 luminance percentage."""

    return round_half_up(clamp(level_raw, 0, LEVEL_MAX) / LEVEL_MAX * 100)


def hsv_to_rgb_int(hue254: float, sat254: float) -> int:
    """Convert a 0..254 hue/saturation pair at full value into ``0xRRGGBB``.

    Hue is scaled to 0..360 degrees and saturation to 0..1; the conversion
    walks the six 60 degree sectors of the HSV hexcone.
    """

    h = clamp(hue254, 0, LEVEL_MAX) / LEVEL_MAX * 360
    s = clamp(sat254, 0, LEVEL_MAX) / LEVEL_MAX
    v = 1.0

    c = v * s
    x = c * (1 - abs(((h / 60) % 2) - 1))
    m = v - c

    if h < 60:
        r1, g1, b1 = c, x, 0.0
    elif h < 120:
        r1, g1, b1 = x, c, 0.0
    elif h < 180:
        r1, g1, b1 = 0.0, c, x
    elif h < 240:
        r1, g1, b1 = 0.0, x, c
    elif h < 300:
        r1, g1, b1 = x, 0.0, c
    else:
        r1, g1, b1 = c, 0.0, x

    return rgb_to_int((r1 + m) * 255, (g1 + m) * 255, (b1 + m) * 255)
