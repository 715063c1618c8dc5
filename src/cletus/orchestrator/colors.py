"""Label colors used to tell concurrent jobs apart on the console."""

from __future__ import annotations

import random

_SATURATION = 95
_LIGHTNESS = 70


def generate_high_contrast_hex(rng: random.Random | None = None) -> str:
    """Random saturated color readable on dark backgrounds."""

    hue = (rng or random).randrange(360)  # noqa: S311
    return hsl_to_hex(hue, _SATURATION, _LIGHTNESS)


def hsl_to_hex(hue: float, saturation: float, lightness: float) -> str:
    saturation /= 100
    lightness /= 100
    amplitude = saturation * min(lightness, 1 - lightness)

    def channel(n: int) -> int:
        k = (n + hue / 30) % 12
        value = lightness - amplitude * max(-1, min(k - 3, 9 - k, 1))
        return round(255 * value)

    return f"#{channel(0):02x}{channel(8):02x}{channel(4):02x}"


def hex_to_rgb(color: str) -> tuple[int, int, int] | None:
    """Parse `#rrggbb`; returns None for anything else."""

    value = color.strip().lstrip("#")
    if len(value) != 6:
        return None
    try:
        return int(value[0:2], 16), int(value[2:4], 16), int(value[4:6], 16)
    except ValueError:
        return None
