"""
TSPL (TSC Printer Language) command builder.

The tape (A30) and shipping (PM-241) printers speak TSPL: ASCII commands
ending in CRLF, with the raster carried as raw bytes inside BITMAP. Only
the commands needed to print a prepared bitmap are built here.

Reference: TSPL/TSPL2 Programming Manual
"""

from dataclasses import dataclass
from enum import IntEnum

# DENSITY accepts 0 (lightest) to 15 (darkest)
MIN_DENSITY = 0
MAX_DENSITY = 15


def density_from_level(level: int) -> int:
    """Scale a 1-8 density level onto the 0-15 TSPL range."""
    if not 1 <= level <= 8:
        raise ValueError(f"Density must be 1-8, got {level}")
    return round((level - 1) * MAX_DENSITY / 7)


class Direction(IntEnum):
    FORWARD = 0
    BACKWARD = 1


@dataclass(frozen=True)
class LabelSize:
    """Label dimensions in millimeters, as the printer feeds them."""
    width: float
    height: float
    gap: float = 2.0

    def swapped(self) -> "LabelSize":
        """Same label turned 90 degrees (tape printers feed along the width)."""
        return LabelSize(self.height, self.width, self.gap)


def invert_rows(data: bytes) -> bytes:
    """
    Flip bitmap polarity.

    Raster packets use set bit = black; TSPL bitmaps burn where a bit is 0.
    """
    return bytes(b ^ 0xFF for b in data)


def _mm(value: float) -> str:
    # "40" rather than "40.0" for whole millimeters
    return f"{value:g}"


class TSPLCommand:
    """
    Accumulates TSPL commands. Every method returns the builder so calls
    can be chained; get_commands() returns the bytes to send.
    """

    CRLF = b"\r\n"

    def __init__(self):
        self._parts: list[bytes] = []

    def get_commands(self) -> bytes:
        return b"".join(self._parts)

    def _line(self, text: str) -> "TSPLCommand":
        self._parts.append(text.encode("ascii") + self.CRLF)
        return self

    def _raw(self, data: bytes) -> "TSPLCommand":
        self._parts.append(bytes(data))
        return self

    def size(self, width_mm: float, height_mm: float) -> "TSPLCommand":
        return self._line(f"SIZE {_mm(width_mm)} mm,{_mm(height_mm)} mm")

    def gap(self, gap_mm: float, offset_mm: float = 0) -> "TSPLCommand":
        return self._line(f"GAP {_mm(gap_mm)} mm,{_mm(offset_mm)} mm")

    def density(self, value: int) -> "TSPLCommand":
        """Set print density on the printer's 0-15 scale."""
        if not MIN_DENSITY <= value <= MAX_DENSITY:
            raise ValueError(f"TSPL density must be {MIN_DENSITY}-{MAX_DENSITY}, got {value}")
        return self._line(f"DENSITY {value}")

    def direction(self, direction: Direction = Direction.FORWARD, mirror: int = 0) -> "TSPLCommand":
        return self._line(f"DIRECTION {int(direction)},{mirror}")

    def cls(self) -> "TSPLCommand":
        """Clear the image buffer."""
        return self._line("CLS")

    def bitmap_header(self, x: int, y: int, width_bytes: int, height: int) -> "TSPLCommand":
        """
        BITMAP up to and including the last comma; the pixel bytes follow
        directly, width_bytes * height of them in TSPL polarity (0 = black).

        Mode 0 overwrites the image buffer.
        """
        return self._raw(f"BITMAP {x},{y},{width_bytes},{height},0,".encode("ascii"))

    def print_label(self, sets: int = 1, copies: int = 1) -> "TSPLCommand":
        return self._line(f"PRINT {sets},{copies}")

    def setup_label(self, label: LabelSize, density: int,
                    direction: Direction = Direction.FORWARD) -> "TSPLCommand":
        """SIZE, GAP, DENSITY, DIRECTION and CLS for one label."""
        return (
            self.size(label.width, label.height)
            .gap(label.gap)
            .density(density)
            .direction(direction)
            .cls()
        )
