"""Tests for dithering and image size validation."""

import pytest
from PIL import Image

from phomymo.dither import (
    MAX_IMAGE_DIMENSION,
    DitherKind,
    DitherMode,
    ImageSizeError,
    bayer_matrix,
    bayer_thresholds,
    dither,
    resolve_mode,
    validate_size,
)
from phomymo.errors import ImageError


def black_count(img: Image.Image) -> int:
    return img.convert("L").tobytes().count(0)


class TestDitherMode:
    """Test dither mode construction and parsing."""

    def test_parse_plain_names(self):
        assert DitherMode.parse("auto").kind is DitherKind.AUTO
        assert DitherMode.parse("atkinson").kind is DitherKind.ATKINSON
        assert DitherMode.parse("Floyd-Steinberg").kind is DitherKind.FLOYD_STEINBERG

    def test_parse_aliases(self):
        assert DitherMode.parse("fs") == DitherMode.floyd_steinberg()
        assert DitherMode.parse("ordered") == DitherMode.ordered_bayer(4)

    def test_parse_threshold_level(self):
        assert DitherMode.parse("threshold:100") == DitherMode.threshold(100)
        assert DitherMode.parse("threshold") == DitherMode.threshold(128)

    def test_parse_bayer_size(self):
        assert DitherMode.parse("bayer:8").matrix_size == 8

    def test_parse_unknown_raises(self):
        with pytest.raises(ValueError, match="Unknown dither mode"):
            DitherMode.parse("sierra")

    def test_parse_rejects_parameter_for_fs(self):
        with pytest.raises(ValueError, match="takes no parameter"):
            DitherMode.parse("atkinson:3")

    def test_invalid_bayer_size_raises(self):
        with pytest.raises(ValueError, match="Bayer matrix size"):
            DitherMode.ordered_bayer(3)

    def test_invalid_threshold_raises(self):
        with pytest.raises(ValueError, match="Threshold level"):
            DitherMode.threshold(300)

    def test_str(self):
        assert str(DitherMode.threshold(90)) == "threshold:90"
        assert str(DitherMode.ordered_bayer(2)) == "bayer:2"
        assert str(DitherMode.atkinson()) == "atkinson"


class TestResolveMode:
    """Test which algorithm actually runs."""

    def test_none_is_floyd_steinberg(self):
        assert resolve_mode(None) == DitherMode.floyd_steinberg()

    def test_auto_is_floyd_steinberg(self):
        assert resolve_mode(DitherMode.auto()) == DitherMode.floyd_steinberg()

    def test_explicit_mode_unchanged(self):
        assert resolve_mode(DitherMode.atkinson()) == DitherMode.atkinson()

    def test_threshold_only_forces_threshold(self):
        """Threshold-only printers never get error diffusion."""
        assert resolve_mode(DitherMode.auto(), threshold_only=True) == DitherMode.threshold(128)
        assert resolve_mode(DitherMode.atkinson(), threshold_only=True) == DitherMode.threshold(128)

    def test_threshold_only_keeps_requested_level(self):
        mode = DitherMode.threshold(90)
        assert resolve_mode(mode, threshold_only=True) == mode


class TestBayer:
    """Test Bayer matrix generation."""

    def test_2x2(self):
        assert bayer_matrix(2) == [[0, 2], [3, 1]]

    def test_4x4_first_row(self):
        assert bayer_matrix(4)[0] == [0, 8, 2, 10]

    @pytest.mark.parametrize("n", [2, 4, 8])
    def test_matrix_is_permutation(self, n):
        values = sorted(v for row in bayer_matrix(n) for v in row)
        assert values == list(range(n * n))

    def test_thresholds_in_byte_range(self):
        values = [v for row in bayer_thresholds(8) for v in row]
        assert min(values) > 0
        assert max(values) < 256

    def test_invalid_size_raises(self):
        with pytest.raises(ValueError):
            bayer_matrix(16)


class TestDither:
    """Test the dithering algorithms."""

    def test_threshold_boundary(self):
        """Gray below the level is black, at or above is white."""
        img = Image.new("L", (2, 1))
        img.putpixel((0, 0), 127)
        img.putpixel((1, 0), 128)

        out = dither(img, DitherMode.threshold(128))
        assert out.getpixel((0, 0)) == 0
        assert out.getpixel((1, 0)) == 255

    def test_threshold_is_idempotent(self):
        """Dithering an already 1-bit image with threshold changes nothing."""
        img = Image.linear_gradient("L").resize((64, 32))
        once = dither(img, DitherMode.threshold())
        twice = dither(once, DitherMode.threshold())
        assert once.tobytes() == twice.tobytes()

    @pytest.mark.parametrize("mode", [
        DitherMode.threshold(),
        DitherMode.floyd_steinberg(),
        DitherMode.atkinson(),
        DitherMode.ordered_bayer(4),
    ])
    def test_output_is_1bit_same_size(self, mode):
        img = Image.new("RGB", (17, 9), (120, 120, 120))
        out = dither(img, mode)
        assert out.mode == "1"
        assert out.size == (17, 9)

    @pytest.mark.parametrize("mode", [
        DitherMode.floyd_steinberg(),
        DitherMode.atkinson(),
        DitherMode.ordered_bayer(8),
    ])
    def test_solid_colors_stay_solid(self, mode):
        white = dither(Image.new("L", (16, 16), 255), mode)
        black = dither(Image.new("L", (16, 16), 0), mode)
        assert black_count(white) == 0
        assert black_count(black) == 256

    @pytest.mark.parametrize("mode", [DitherMode.floyd_steinberg(), DitherMode.atkinson()])
    def test_mid_gray_is_mixed(self, mode):
        out = dither(Image.new("L", (16, 16), 128), mode)
        assert 0 < black_count(out) < 256

    def test_floyd_steinberg_is_pillows(self):
        """Error diffusion is Pillow's, pixel for pixel."""
        img = Image.effect_noise((97, 61), 64)
        expected = img.convert("1", dither=Image.Dither.FLOYDSTEINBERG)
        assert dither(img, DitherMode.floyd_steinberg()).tobytes() == expected.tobytes()

    def test_bayer_mid_gray_is_half_black(self):
        out = dither(Image.new("L", (4, 4), 128), DitherMode.ordered_bayer(4))
        assert black_count(out) == 8

    def test_source_not_modified(self):
        img = Image.new("L", (8, 8), 100)
        before = img.tobytes()
        dither(img, DitherMode.floyd_steinberg())
        assert img.tobytes() == before

    def test_transparent_prints_white(self):
        """Fully transparent pixels must not burn."""
        img = Image.new("RGBA", (4, 4), (0, 0, 0, 0))
        out = dither(img, DitherMode.threshold())
        assert black_count(out) == 0


class TestImageSizeValidation:
    """Test image size limits."""

    def test_image_size_error_is_image_error(self):
        assert issubclass(ImageSizeError, ImageError)
        assert issubclass(ImageSizeError, ValueError)

    def test_accepts_normal_image(self):
        validate_size(Image.new("1", (576, 240)))

    def test_rejects_oversized_dimension(self):
        img = Image.new("1", (MAX_IMAGE_DIMENSION + 1, 1))
        with pytest.raises(ImageSizeError, match="exceed maximum"):
            validate_size(img)

    def test_rejects_too_many_pixels(self):
        img = Image.new("1", (5000, 2001))
        with pytest.raises(ImageSizeError, match="pixel count"):
            validate_size(img)
