"""Tests for TSPL command generation."""

import pytest

from phomymo.tspl import (
    Direction,
    LabelSize,
    TSPLCommand,
    density_from_level,
    invert_rows,
)


class TestTSPLCommand:
    """Test TSPL command generation."""

    def test_size_command(self):
        """Whole millimeters print without a decimal point."""
        assert TSPLCommand().size(15.0, 10.5).get_commands() == b"SIZE 15 mm,10.5 mm\r\n"

    def test_gap_command(self):
        assert TSPLCommand().gap(2.0).get_commands() == b"GAP 2 mm,0 mm\r\n"

    def test_density_command(self):
        assert TSPLCommand().density(8).get_commands() == b"DENSITY 8\r\n"

    def test_density_out_of_range(self):
        with pytest.raises(ValueError, match="0-15"):
            TSPLCommand().density(16)

    def test_direction_command(self):
        assert TSPLCommand().direction(Direction.FORWARD).get_commands() == b"DIRECTION 0,0\r\n"

    def test_print_command(self):
        assert TSPLCommand().print_label(1, 2).get_commands() == b"PRINT 1,2\r\n"

    def test_bitmap_header(self):
        """Pixel bytes follow the last comma directly; mode 0 overwrites."""
        cmd = TSPLCommand().bitmap_header(0, 0, 102, 10)
        assert cmd.get_commands() == b"BITMAP 0,0,102,10,0,"

    def test_setup_label(self):
        cmd = TSPLCommand().setup_label(LabelSize(40, 30), 10)
        assert cmd.get_commands() == (
            b"SIZE 40 mm,30 mm\r\n"
            b"GAP 2 mm,0 mm\r\n"
            b"DENSITY 10\r\n"
            b"DIRECTION 0,0\r\n"
            b"CLS\r\n"
        )


class TestDensity:
    """Test density scaling."""

    def test_endpoints(self):
        assert density_from_level(1) == 0
        assert density_from_level(8) == 15

    def test_default_level(self):
        assert density_from_level(6) == 11

    @pytest.mark.parametrize("level", [0, 9])
    def test_out_of_range(self, level):
        with pytest.raises(ValueError):
            density_from_level(level)


class TestLabelSize:
    """Test label geometry."""

    def test_swapped(self):
        assert LabelSize(40, 15, 3).swapped() == LabelSize(15, 40, 3)


class TestInvertRows:
    """Test bitmap polarity flip."""

    def test_invert(self):
        assert invert_rows(b"\x00\xff\x0f") == b"\xff\x00\xf0"

    def test_double_invert_is_identity(self):
        data = bytes(range(256))
        assert invert_rows(invert_rows(data)) == data
