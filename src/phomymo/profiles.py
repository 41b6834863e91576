"""
Printer Profiles for Phomemo and Compatible Label Printers.

Models differ by configuration, not behavior: a profile records the print
head width, resolution, orientation and command family, and the protocol
module dispatches on the family. Profiles are resolved from the BLE
advertised name, a remembered device mapping, or an explicit model choice.
"""

import logging
import math
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import MutableMapping, Optional, Union

from .errors import UnknownModelError

logger = logging.getLogger(__name__)

DEFAULT_DPI = 203
TAPE_WIDTHS_MM = (12, 15)


class ProtocolFamily(Enum):
    """Command language spoken by a printer."""
    ESCPOS = "escpos"                  # M-series: GS v 0 raster with init sequence
    ROTATED_RASTER = "rotated-raster"  # D-series: init + header in one write
    TSPL = "tspl"                      # Tape/shipping printers: TSC text commands


class Alignment(Enum):
    """Horizontal placement of the label on the print head."""
    LEFT = "left"
    CENTER = "center"


# Label presets in mm: name -> (width, height). Width runs across the print
# head for upright printers; rotated printers design in landscape.
M_SERIES_LABEL_SIZES = {
    "12x40": (12, 40),
    "15x30": (15, 30),
    "20x30": (20, 30),
    "25x50": (25, 50),
    "30x20": (30, 20),
    "30x40": (30, 40),
    "40x30": (40, 30),
    "40x60": (40, 60),
    "50x25": (50, 25),
    "50x30": (50, 30),
    "50x80": (50, 80),
    "60x40": (60, 40),
}

D_SERIES_LABEL_SIZES = {
    "40x12": (40, 12),
    "30x12": (30, 12),
    "22x12": (22, 12),
    "12x12": (12, 12),
    "30x14": (30, 14),
    "22x14": (22, 14),
    "40x15": (40, 15),
    "30x15": (30, 15),
}

# Height is the tape width, width is the label length
TAPE_LABEL_SIZES = {
    "40x12": (40, 12),
    "30x12": (30, 12),
    "22x12": (22, 12),
    "12x12": (12, 12),
    "40x15": (40, 15),
    "30x15": (30, 15),
    "22x15": (22, 15),
    "15x15": (15, 15),
}

SHIPPING_LABEL_SIZES = {
    "102x152": (102, 152),  # 4x6" standard shipping label
    "102x102": (102, 102),
    "102x76": (102, 76),
    "102x51": (102, 51),    # return address label
    "100x150": (100, 150),
    "100x100": (100, 100),
}


def mm_to_dots(mm: float, dpi: int = DEFAULT_DPI) -> int:
    """Convert millimeters to printer dots (rounded down)."""
    return int(mm * dpi / 25.4)


@dataclass(frozen=True)
class PrinterProfile:
    """
    Immutable description of one printer model.

    Attributes:
        model: Model key (e.g. "m260")
        width_bytes: Print head width in bytes (8 dots per byte)
        protocol_family: Command language
        dpi: Head resolution
        rotated: Label is transposed 90 degrees before encoding because the
            head feeds perpendicular to the on-screen orientation
        alignment: Placement of narrower bitmaps on the head
        tape_width_mm: Selected tape width for tape printers (12 or 15)
        combined_header_write: Send init and raster header as one write
            immediately before the pixel data
        prefix: Wake-up bytes sent before init (M02 family)
        raster_fits_label: The raster is only as wide as the label (D-series);
            width_bytes is then the widest label the head takes
        feed_dots: Paper feed after each label when the job does not set one
        label_sizes: Preset label sizes in mm
    """
    model: str
    width_bytes: int
    protocol_family: ProtocolFamily
    dpi: int = DEFAULT_DPI
    rotated: bool = False
    alignment: Alignment = Alignment.CENTER
    tape_width_mm: Optional[int] = None
    combined_header_write: bool = False
    prefix: bytes = b""
    raster_fits_label: bool = False
    feed_dots: int = 32
    label_sizes: dict = field(default_factory=dict, compare=False, hash=False)

    @property
    def width_px(self) -> int:
        """Print head width in dots."""
        return self.width_bytes * 8

    @property
    def is_tape(self) -> bool:
        return self.tape_width_mm is not None

    def with_tape_width(self, tape_width_mm: Optional[int]) -> "PrinterProfile":
        """
        Return a copy with a different tape width selected.

        The tape width only narrows the label presets; encoding is unchanged.
        Non-tape profiles are returned as-is.
        """
        if tape_width_mm is None or not self.is_tape:
            return self
        if tape_width_mm not in TAPE_WIDTHS_MM:
            raise ValueError(f"Tape width must be one of {TAPE_WIDTHS_MM} mm, got {tape_width_mm}")
        sizes = {
            name: size for name, size in TAPE_LABEL_SIZES.items()
            if size[1] == tape_width_mm
        }
        return replace(self, tape_width_mm=tape_width_mm, label_sizes=sizes)

    def fitted(self, label_px: int) -> "PrinterProfile":
        """
        Return a copy sized to a label label_px dots across the head.

        Only profiles with raster_fits_label narrow; the width never grows
        past the head. Others are returned as-is.
        """
        if not self.raster_fits_label:
            return self
        width_bytes = min(self.width_bytes, max(1, math.ceil(label_px / 8)))
        return replace(self, width_bytes=width_bytes)

    def describe(self) -> str:
        """Human-readable summary, e.g. "m260: ESC/POS 72 bytes (576 dots) @ 203 DPI"."""
        family = {
            ProtocolFamily.ESCPOS: "ESC/POS",
            ProtocolFamily.ROTATED_RASTER: "rotated raster",
            ProtocolFamily.TSPL: "TSPL",
        }[self.protocol_family]
        text = f"{self.model}: {family} {self.width_bytes} bytes ({self.width_px} dots) @ {self.dpi} DPI"
        if self.rotated:
            text += ", rotated"
        if self.tape_width_mm:
            text += f", {self.tape_width_mm}mm tape"
        return text


def _escpos(model: str, width_bytes: int, **kwargs) -> PrinterProfile:
    kwargs.setdefault("label_sizes", M_SERIES_LABEL_SIZES)
    return PrinterProfile(model, width_bytes, ProtocolFamily.ESCPOS, **kwargs)


def _d_series(model: str) -> PrinterProfile:
    # Labels up to 15mm across; the raster is sized to the label and the
    # firmware centers it
    return PrinterProfile(
        model, 15, ProtocolFamily.ROTATED_RASTER,
        rotated=True,
        alignment=Alignment.LEFT,
        combined_header_write=True,
        raster_fits_label=True,
        label_sizes=D_SERIES_LABEL_SIZES,
    )


M02_PREFIX = bytes([0x10, 0xFF, 0xFE, 0x01])

# Continuous paper and tape only need the head cleared
CONTINUOUS_FEED_DOTS = 8

MODELS: dict[str, PrinterProfile] = {
    profile.model: profile
    for profile in [
        _escpos("m02", 48, prefix=M02_PREFIX, feed_dots=CONTINUOUS_FEED_DOTS),
        _escpos("m02-pro", 78, dpi=300, prefix=M02_PREFIX, feed_dots=CONTINUOUS_FEED_DOTS),
        _escpos("m110", 48),
        _escpos("m120", 48),
        _escpos("m110s", 48),
        _escpos("m03", 54),
        _escpos("t02", 54),
        _escpos("m200", 76),
        _escpos("m250", 76),
        _escpos("m220", 81),
        _escpos("m221", 81),
        _escpos("m260", 72),
        _escpos("m04s", 54),
        # P12 tape printers: ESC/POS commands, rotated like the D-series
        _escpos(
            "p12", 12,
            rotated=True,
            alignment=Alignment.LEFT,
            tape_width_mm=12,
            feed_dots=CONTINUOUS_FEED_DOTS,
            label_sizes={k: v for k, v in TAPE_LABEL_SIZES.items() if v[1] == 12},
        ),
        _d_series("d30"),
        _d_series("d35"),
        _d_series("d50"),
        _d_series("d110"),
        _d_series("q30"),
        PrinterProfile(
            "a30", 15, ProtocolFamily.TSPL,
            rotated=True,
            alignment=Alignment.LEFT,
            tape_width_mm=15,
            label_sizes={k: v for k, v in TAPE_LABEL_SIZES.items() if v[1] == 15},
        ),
        PrinterProfile(
            "pm241", 102, ProtocolFamily.TSPL,
            alignment=Alignment.LEFT,
            label_sizes=SHIPPING_LABEL_SIZES,
        ),
    ]
}

# Advertised-name patterns, most specific first. The first match wins.
DEVICE_PATTERNS: list[tuple[re.Pattern, str]] = [
    (re.compile(pattern, re.IGNORECASE), model)
    for pattern, model in [
        (r"^P12[ _-]?PRO", "p12"),
        (r"^P12", "p12"),
        (r"^M02[ _-]?PRO", "m02-pro"),
        (r"^M02", "m02"),
        (r"^M03", "m03"),
        (r"^T02", "t02"),
        # M110S advertises a serial number: Q + 3 digits + letter + 10 digits
        (r"^Q\d{3}[A-Z]\d{10}$", "m110s"),
        (r"^M110", "m110"),
        (r"^M120", "m120"),
        (r"^M200", "m200"),
        (r"^M250", "m250"),
        (r"^M220", "m220"),
        (r"^M221", "m221"),
        (r"^M260", "m260"),
        (r"^M04", "m04s"),
        (r"^D30", "d30"),
        (r"^D35", "d35"),
        (r"^D50", "d50"),
        (r"^D110", "d110"),
        (r"^Q30", "q30"),
        (r"^A30", "a30"),
        (r"^PM[ _-]?241", "pm241"),
    ]
]


@dataclass(frozen=True)
class ModelSelector:
    """
    How the caller wants the model chosen.

    A selector with no model means auto-detect from the device name.
    """
    model: Optional[str] = None

    @classmethod
    def auto(cls) -> "ModelSelector":
        return cls(None)

    @classmethod
    def explicit(cls, model: str) -> "ModelSelector":
        return cls(model.strip().lower())

    @classmethod
    def parse(cls, text: Optional[str]) -> "ModelSelector":
        if not text or text.strip().lower() == "auto":
            return cls.auto()
        return cls.explicit(text)

    @property
    def is_auto(self) -> bool:
        return self.model is None

    def __str__(self) -> str:
        return self.model or "auto"


@dataclass(frozen=True)
class AmbiguousDevice:
    """
    A device name that matched no known model.

    Not an error: the caller must ask the user which model it is and may
    then call ProfileRegistry.remember() so the choice sticks.
    """
    device_name: Optional[str]
    candidates: tuple = ()


ResolveResult = Union[PrinterProfile, AmbiguousDevice]


class ProfileRegistry:
    """
    Resolves device names and model overrides into printer profiles.

    Resolution order: explicit override > remembered device mapping >
    name pattern match > AmbiguousDevice.
    """

    def __init__(
        self,
        mapping: Optional[MutableMapping[str, str]] = None,
        models: Optional[dict[str, PrinterProfile]] = None,
        patterns: Optional[list[tuple[re.Pattern, str]]] = None,
    ):
        """
        Args:
            mapping: Persistent device name -> model store (see mapping.DeviceMapping).
                A plain dict works for in-memory use.
            models: Model table (default MODELS)
            patterns: Name patterns (default DEVICE_PATTERNS)
        """
        self.mapping = mapping if mapping is not None else {}
        self._models = models if models is not None else MODELS
        self._patterns = patterns if patterns is not None else DEVICE_PATTERNS

    def models(self) -> list[str]:
        """Known model names."""
        return sorted(self._models)

    def get(self, model: str) -> PrinterProfile:
        """
        Look up a model by name.

        Raises:
            UnknownModelError: If the model is not in the table
        """
        try:
            return self._models[model.strip().lower()]
        except KeyError:
            raise UnknownModelError(model, self.models()) from None

    def match(self, device_name: Optional[str]) -> Optional[str]:
        """Model whose name pattern matches the device name, if any."""
        if not device_name:
            return None
        name = device_name.strip()
        for pattern, model in self._patterns:
            if pattern.search(name):
                return model
        return None

    def is_known(self, device_name: Optional[str]) -> bool:
        """True if the name is remembered or matches a known pattern."""
        if not device_name:
            return False
        return device_name in self.mapping or self.match(device_name) is not None

    def resolve(
        self,
        device_name: Optional[str] = None,
        selector: Optional[ModelSelector] = None,
        tape_width_mm: Optional[int] = None,
    ) -> ResolveResult:
        """
        Resolve a printer profile.

        Args:
            device_name: Advertised BLE name (may be None for USB)
            selector: Auto or explicit model (default auto)
            tape_width_mm: Tape width for tape printers (12 or 15)

        Returns:
            PrinterProfile, or AmbiguousDevice if nothing matched

        Raises:
            UnknownModelError: If an explicit or remembered model is unknown
        """
        selector = selector or ModelSelector.auto()

        if not selector.is_auto:
            profile = self.get(selector.model)
            source = "explicit"
        elif device_name and device_name in self.mapping:
            profile = self.get(self.mapping[device_name])
            source = "device mapping"
        else:
            model = self.match(device_name)
            if model is None:
                logger.info(f"No model matches device name {device_name!r}")
                return AmbiguousDevice(device_name, tuple(self.models()))
            profile = self._models[model]
            source = "name pattern"

        profile = profile.with_tape_width(tape_width_mm)
        logger.debug(f"Resolved {device_name!r} via {source}: {profile.describe()}")
        return profile

    def remember(self, device_name: str, model: str) -> PrinterProfile:
        """
        Store the user's model choice for a device name.

        Raises:
            UnknownModelError: If the model is unknown
        """
        profile = self.get(model)
        self.mapping[device_name] = profile.model
        logger.info(f"Remembered {device_name!r} as {profile.model}")
        return profile

    def forget(self, device_name: str) -> bool:
        """Drop a remembered mapping. Returns False if there was none."""
        if device_name not in self.mapping:
            return False
        del self.mapping[device_name]
        return True


def resolve_profile(
    device_name: Optional[str] = None,
    selector: Optional[ModelSelector] = None,
    mapping: Optional[MutableMapping[str, str]] = None,
    tape_width_mm: Optional[int] = None,
) -> ResolveResult:
    """Resolve a profile with the built-in model table."""
    return ProfileRegistry(mapping).resolve(device_name, selector, tape_width_mm)
