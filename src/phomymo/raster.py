"""
Raster Encoding for Thermal Printing.

Packs 1-bit images into rows exactly one print head wide, MSB first, set
bit = burn (black). Rotated printers get the label transposed first.
"""

import logging
from dataclasses import dataclass, field
from typing import NamedTuple, Optional

from PIL import Image, ImageDraw

from . import escpos
from .profiles import Alignment, PrinterProfile

logger = logging.getLogger(__name__)


@dataclass
class EncodeOptions:
    """
    Placement adjustments for upright printers (ignored when rotated).

    Attributes:
        margin_px: Blank dots kept on both sides of the head
        offset_bytes: Horizontal shift in bytes (8 dots), may be negative
        voffset_dots: Vertical shift in rows; positive moves content down
    """
    margin_px: int = 0
    offset_bytes: int = 0
    voffset_dots: int = 0

    def __post_init__(self):
        if self.margin_px < 0:
            raise ValueError(f"Margin must be >= 0, got {self.margin_px}")


@dataclass
class RasterPacket:
    """Encoded raster: rows of exactly width_bytes each."""
    width_bytes: int
    rows: list[bytes] = field(default_factory=list)

    @property
    def height(self) -> int:
        return len(self.rows)

    @property
    def header(self) -> bytes:
        """GS v 0 header matching this packet's shape."""
        return escpos.raster_header(self.width_bytes, self.height)

    @property
    def payload(self) -> bytes:
        """Pixel data, rows concatenated."""
        return b"".join(self.rows)

    def to_bytes(self) -> bytes:
        """Header followed by pixel data."""
        return self.header + self.payload

    def is_blank(self) -> bool:
        return not any(any(row) for row in self.rows)


@dataclass(frozen=True)
class ClippedWarning:
    """The bitmap was wider than the printable area; columns were dropped."""
    pixels_lost: int

    def __str__(self) -> str:
        return f"Raster clipped: {self.pixels_lost} pixel column(s) outside printable width"


class EncodeResult(NamedTuple):
    packet: RasterPacket
    warning: Optional[ClippedWarning] = None


def to_1bit(image: Image.Image, threshold: int = 128) -> Image.Image:
    """Return a "1" mode image, thresholding anything else."""
    if image.mode == "1":
        return image
    return image.convert("L").point(lambda x: 0 if x < threshold else 255, mode="1")


def rotate_cw(image: Image.Image) -> Image.Image:
    """
    Rotate 90 degrees clockwise: (x, y) -> (height - 1 - y, x).

    Rotated printers feed along the label's long edge, so the on-screen
    landscape label becomes portrait on the head.
    """
    return image.transpose(Image.Transpose.ROTATE_270)


def encode(
    bitmap: Image.Image,
    profile: PrinterProfile,
    options: Optional[EncodeOptions] = None,
) -> EncodeResult:
    """
    Encode a 1-bit image into head-width raster rows.

    Args:
        bitmap: Image to print ("1" mode; other modes are thresholded at 128)
        profile: Target printer
        options: Margin/offset adjustments for upright printers

    Returns:
        EncodeResult with the packet and, if columns fell outside the
        printable width, a ClippedWarning. Clipping never fails the encode.
    """
    options = options or EncodeOptions()
    bitmap = to_1bit(bitmap)

    width_bytes = profile.width_bytes
    head_px = width_bytes * 8

    if profile.rotated:
        # Full bleed: firmware positions the raster itself
        source = rotate_cw(bitmap)
        left, right = 0, head_px
        x0 = 0
        voffset = 0
    else:
        source = bitmap
        left = min(options.margin_px, head_px)
        right = max(left, head_px - options.margin_px)
        if profile.alignment is Alignment.CENTER:
            x0 = (head_px - source.width) // 2
        else:
            x0 = left
        x0 += options.offset_bytes * 8
        voffset = options.voffset_dots

    src_w, src_h = source.size
    height = src_h

    # Source columns that land inside the printable window
    first = max(0, left - x0)
    last = min(src_w, right - x0)
    lost = src_w - max(0, last - first)

    buf = bytearray(width_bytes * height)
    pixels = source.load()

    for y in range(src_h):
        ty = y + voffset
        if not 0 <= ty < height:
            continue
        base = ty * width_bytes
        for x in range(first, last):
            if pixels[x, y] == 0:  # Black pixel
                tx = x0 + x
                buf[base + (tx >> 3)] |= 0x80 >> (tx & 7)

    rows = [bytes(buf[i:i + width_bytes]) for i in range(0, len(buf), width_bytes)]
    packet = RasterPacket(width_bytes, rows)

    warning = None
    if lost > 0:
        warning = ClippedWarning(lost)
        logger.warning(f"{warning} ({src_w} dots into {right - left} on {profile.model})")

    return EncodeResult(packet, warning)


def create_test_pattern(
    width: int = 576,
    height: int = 120,
    border_width: int = 2,
    grid_spacing: int = 40,
) -> Image.Image:
    """
    Generate an alignment test pattern.

    The pattern includes:
    - Border rectangle at the edges
    - Corner markers (filled squares)
    - Center crosshair
    - Grid tick marks for measurement

    Args:
        width: Pattern width in pixels (usually the head width)
        height: Pattern height in pixels
        border_width: Border line thickness in pixels
        grid_spacing: Spacing between grid tick marks in pixels

    Returns:
        PIL Image with 1-bit test pattern (mode "1")
    """
    img = Image.new("1", (width, height), color=1)  # White background
    draw = ImageDraw.Draw(img)

    draw.rectangle([0, 0, width - 1, height - 1], outline=0, width=border_width)

    corner_size = 8
    for cx, cy in [
        (0, 0),
        (width - corner_size, 0),
        (0, height - corner_size),
        (width - corner_size, height - corner_size),
    ]:
        draw.rectangle([cx, cy, cx + corner_size - 1, cy + corner_size - 1], fill=0)

    center_x, center_y = width // 2, height // 2
    crosshair_size = 10
    draw.line(
        [(center_x - crosshair_size, center_y), (center_x + crosshair_size, center_y)],
        fill=0,
    )
    draw.line(
        [(center_x, center_y - crosshair_size), (center_x, center_y + crosshair_size)],
        fill=0,
    )

    tick_length = 4
    for x in range(grid_spacing, width, grid_spacing):
        draw.line([(x, 0), (x, tick_length)], fill=0)
        draw.line([(x, height - tick_length - 1), (x, height - 1)], fill=0)
    for y in range(grid_spacing, height, grid_spacing):
        draw.line([(0, y), (tick_length, y)], fill=0)
        draw.line([(width - tick_length - 1, y), (width - 1, y)], fill=0)

    return img
