"""
Dithering for thermal printing.

Converts grayscale images to 1-bit black/white images. Thermal heads can
only burn a dot or leave it, so every gray level has to be approximated
with a pattern of black and white dots.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from PIL import Image

from .errors import ImageError

# Image size limits to prevent memory exhaustion from malicious/malformed images
MAX_IMAGE_DIMENSION = 10000  # Maximum width or height in pixels
MAX_IMAGE_PIXELS = 10_000_000  # Maximum total pixels (10 megapixels)

DEFAULT_THRESHOLD = 128
BAYER_SIZES = (2, 4, 8)


class ImageSizeError(ImageError, ValueError):
    """Image dimensions exceed safety limits."""

    pass


class DitherKind(Enum):
    """Dithering algorithms."""
    AUTO = "auto"
    THRESHOLD = "threshold"
    FLOYD_STEINBERG = "floyd-steinberg"
    ATKINSON = "atkinson"
    ORDERED_BAYER = "bayer"


@dataclass(frozen=True)
class DitherMode:
    """A dithering algorithm plus its parameter.

    Attributes:
        kind: Algorithm to apply
        level: Black/white cut-off for THRESHOLD (black iff gray < level)
        matrix_size: Bayer matrix size for ORDERED_BAYER (2, 4 or 8)
    """
    kind: DitherKind
    level: int = DEFAULT_THRESHOLD
    matrix_size: int = 4

    def __post_init__(self):
        if not 0 <= self.level <= 256:
            raise ValueError(f"Threshold level must be 0-256, got {self.level}")
        if self.kind is DitherKind.ORDERED_BAYER and self.matrix_size not in BAYER_SIZES:
            raise ValueError(
                f"Bayer matrix size must be one of {BAYER_SIZES}, got {self.matrix_size}"
            )

    @classmethod
    def auto(cls) -> "DitherMode":
        return cls(DitherKind.AUTO)

    @classmethod
    def threshold(cls, level: int = DEFAULT_THRESHOLD) -> "DitherMode":
        return cls(DitherKind.THRESHOLD, level=level)

    @classmethod
    def floyd_steinberg(cls) -> "DitherMode":
        return cls(DitherKind.FLOYD_STEINBERG)

    @classmethod
    def atkinson(cls) -> "DitherMode":
        return cls(DitherKind.ATKINSON)

    @classmethod
    def ordered_bayer(cls, n: int = 4) -> "DitherMode":
        return cls(DitherKind.ORDERED_BAYER, matrix_size=n)

    @classmethod
    def parse(cls, text: str) -> "DitherMode":
        """
        Parse a mode from text such as "threshold:100" or "bayer:8".

        Raises:
            ValueError: If the name or parameter is invalid
        """
        name, _, param = text.strip().lower().partition(":")
        name = name.replace("_", "-")
        aliases = {"fs": "floyd-steinberg", "floyd": "floyd-steinberg", "ordered": "bayer"}
        name = aliases.get(name, name)

        try:
            kind = DitherKind(name)
        except ValueError:
            choices = ", ".join(k.value for k in DitherKind)
            raise ValueError(f"Unknown dither mode {text!r} (choose from {choices})") from None

        if kind is DitherKind.THRESHOLD:
            return cls.threshold(int(param) if param else DEFAULT_THRESHOLD)
        if kind is DitherKind.ORDERED_BAYER:
            return cls.ordered_bayer(int(param) if param else 4)
        if param:
            raise ValueError(f"Dither mode {name!r} takes no parameter")
        return cls(kind)

    def __str__(self) -> str:
        if self.kind is DitherKind.THRESHOLD:
            return f"threshold:{self.level}"
        if self.kind is DitherKind.ORDERED_BAYER:
            return f"bayer:{self.matrix_size}"
        return self.kind.value


def validate_size(image: Image.Image) -> None:
    """
    Check an image against the size limits.

    Raises:
        ImageSizeError: If image dimensions exceed safety limits
    """
    if image.width > MAX_IMAGE_DIMENSION or image.height > MAX_IMAGE_DIMENSION:
        raise ImageSizeError(
            f"Image dimensions ({image.width}x{image.height}) exceed maximum "
            f"({MAX_IMAGE_DIMENSION}x{MAX_IMAGE_DIMENSION})"
        )
    if image.width * image.height > MAX_IMAGE_PIXELS:
        raise ImageSizeError(
            f"Image pixel count ({image.width * image.height:,}) exceeds "
            f"maximum ({MAX_IMAGE_PIXELS:,})"
        )


def bayer_matrix(n: int) -> list[list[int]]:
    """
    Build an n x n Bayer index matrix (values 0 .. n*n-1).

    Built recursively from the 2x2 base: each step quadruples the previous
    matrix with offsets 0, 2, 3, 1.
    """
    if n not in BAYER_SIZES:
        raise ValueError(f"Bayer matrix size must be one of {BAYER_SIZES}, got {n}")

    matrix = [[0, 2], [3, 1]]
    size = 2
    while size < n:
        grown = [[0] * (size * 2) for _ in range(size * 2)]
        for y in range(size):
            for x in range(size):
                base = matrix[y][x] * 4
                grown[y][x] = base
                grown[y][x + size] = base + 2
                grown[y + size][x] = base + 3
                grown[y + size][x + size] = base + 1
        matrix = grown
        size *= 2
    return matrix


def bayer_thresholds(n: int) -> list[list[int]]:
    """Bayer matrix scaled to 0-255 gray thresholds (cell centers)."""
    cells = n * n
    return [
        [int((value + 0.5) * 256 / cells) for value in row]
        for row in bayer_matrix(n)
    ]


def resolve_mode(mode: Optional[DitherMode], threshold_only: bool = False) -> DitherMode:
    """
    Pick the algorithm that will actually run.

    Args:
        mode: Requested mode (None means AUTO)
        threshold_only: Force THRESHOLD (e.g. TSPL printers, where dithering
            would blur scannable barcode edges)

    Returns:
        Concrete mode (never AUTO)
    """
    if mode is None:
        mode = DitherMode.auto()
    if threshold_only:
        if mode.kind is DitherKind.THRESHOLD:
            return mode
        return DitherMode.threshold()
    if mode.kind is DitherKind.AUTO:
        return DitherMode.floyd_steinberg()
    return mode


def _to_grayscale(image: Image.Image) -> Image.Image:
    if image.mode == "L":
        return image
    if image.mode in ("RGBA", "LA") or "transparency" in image.info:
        # Transparent areas print as white (no burn)
        rgba = image.convert("RGBA")
        background = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
        return Image.alpha_composite(background, rgba).convert("L")
    return image.convert("L")


def _threshold(gray: Image.Image, level: int) -> Image.Image:
    # Pillow's "1" mode: 0 = black, 255 = white
    return gray.point(lambda x: 0 if x < level else 255, mode="1")


def _from_levels(levels, width: int, height: int) -> Image.Image:
    # Every level is already 0 or 255
    out = Image.frombytes("L", (width, height), bytes(levels))
    return out.convert("1", dither=Image.Dither.NONE)


def _floyd_steinberg(gray: Image.Image) -> Image.Image:
    # Pillow's own error diffusion
    return gray.convert("1", dither=Image.Dither.FLOYDSTEINBERG)


# (dx, dy) neighbours that each receive 1/8 of the quantization error
_ATKINSON_NEIGHBOURS = ((1, 0), (2, 0), (-1, 1), (0, 1), (1, 1), (0, 2))


def _atkinson(gray: Image.Image) -> Image.Image:
    width, height = gray.size
    pixels = list(gray.tobytes())

    for y in range(height):
        row = y * width
        for x in range(width):
            idx = row + x
            old = pixels[idx]
            new = 0 if old < DEFAULT_THRESHOLD else 255
            pixels[idx] = new
            share = (old - new) / 8
            if not share:
                continue

            for dx, dy in _ATKINSON_NEIGHBOURS:
                nx, ny = x + dx, y + dy
                if 0 <= nx < width and ny < height:
                    pixels[ny * width + nx] += share

    return _from_levels(pixels, width, height)


def _ordered_bayer(gray: Image.Image, n: int) -> Image.Image:
    width, height = gray.size
    thresholds = bayer_thresholds(n)
    source = gray.tobytes()
    levels = bytearray(width * height)

    for y in range(height):
        row = y * width
        cut = thresholds[y % n]
        for x in range(width):
            levels[row + x] = 0 if source[row + x] < cut[x % n] else 255

    return _from_levels(levels, width, height)


def dither(image: Image.Image, mode: Optional[DitherMode] = None) -> Image.Image:
    """
    Convert an image to 1-bit using the given algorithm.

    The source image is never modified; a new "1" mode image of the same
    size is returned (0 = black/burn, 255 = white).

    Args:
        image: Source image (any mode, converted to grayscale first)
        mode: Dithering algorithm (None or AUTO means Floyd-Steinberg)

    Returns:
        1-bit PIL Image
    """
    mode = resolve_mode(mode)
    gray = _to_grayscale(image)

    if mode.kind is DitherKind.THRESHOLD:
        return _threshold(gray, mode.level)
    if mode.kind is DitherKind.FLOYD_STEINBERG:
        return _floyd_steinberg(gray)
    if mode.kind is DitherKind.ATKINSON:
        return _atkinson(gray)
    return _ordered_bayer(gray, mode.matrix_size)
