"""
ESC/POS Command Set for Phomemo Printers.

Binary commands understood by the M-series (and, with a combined header,
the D-series). Every function is pure and returns the exact wire bytes.

Reference: Epson ESC/POS Application Programming Guide; Phomemo firmware
behaviour observed on M110/M260/D30.
"""

from enum import IntEnum

ESC = 0x1B
GS = 0x1D


class Justification(IntEnum):
    """ESC a argument."""
    LEFT = 0
    CENTER = 1


# Density 1-8 mapped to ESC 7 heat time (40 = very light, 200 = very dark)
HEAT_TIMES = (40, 60, 80, 100, 120, 140, 160, 200)

# ESC 7 heating dots and interval used with every heat time
HEAT_MAX_DOTS = 7
HEAT_INTERVAL = 2

MIN_DENSITY = 1
MAX_DENSITY = 8


def _byte(value: int, name: str) -> int:
    if not 0 <= value <= 0xFF:
        raise ValueError(f"{name} must be 0-255, got {value}")
    return value


def _word(value: int, name: str) -> bytes:
    if not 0 <= value <= 0xFFFF:
        raise ValueError(f"{name} must be 0-65535, got {value}")
    return bytes([value & 0xFF, (value >> 8) & 0xFF])


def init() -> bytes:
    """ESC @ - reset the printer."""
    return bytes([ESC, 0x40])


def line_spacing(dots: int) -> bytes:
    """ESC 3 n - line spacing in dots."""
    return bytes([ESC, 0x33, _byte(dots, "Line spacing")])


def align(justification: Justification) -> bytes:
    """ESC a n - justification."""
    return bytes([ESC, 0x61, int(justification)])


def density(level: int) -> bytes:
    """GS | n - print density 1 (light) to 8 (dark)."""
    if not MIN_DENSITY <= level <= MAX_DENSITY:
        raise ValueError(f"Density must be {MIN_DENSITY}-{MAX_DENSITY}, got {level}")
    return bytes([GS, 0x7C, level])


def density_to_heat_time(level: int) -> int:
    """Heat time for a density level, clamped to 1-8."""
    return HEAT_TIMES[max(0, min(len(HEAT_TIMES) - 1, level - 1))]


def heat_settings(max_dots: int, heat_time: int, heat_interval: int) -> bytes:
    """ESC 7 n1 n2 n3 - heating dots, heat time and heat interval."""
    return bytes([
        ESC, 0x37,
        _byte(max_dots, "Max dots"),
        _byte(heat_time, "Heat time"),
        _byte(heat_interval, "Heat interval"),
    ])


def raster_header(width_bytes: int, height_rows: int) -> bytes:
    """
    GS v 0 m xL xH yL yH - start a raster bit image.

    Both fields are 16-bit little-endian; mode 0 is normal density.
    """
    return (
        bytes([GS, 0x76, 0x30, 0x00])
        + _word(width_bytes, "Raster width")
        + _word(height_rows, "Raster height")
    )


def feed(dots: int) -> bytes:
    """ESC J n - feed paper n dots."""
    return bytes([ESC, 0x4A, _byte(dots, "Feed")])


def heat_for_density(level: int) -> bytes:
    """ESC 7 heat settings for a 1-8 density level."""
    return heat_settings(HEAT_MAX_DOTS, density_to_heat_time(level), HEAT_INTERVAL)
