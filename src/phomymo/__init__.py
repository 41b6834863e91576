"""Phomemo Thermal Label Printer Driver for Linux/macOS."""

__version__ = "0.1.0"

from .errors import (
    PrinterError,
    ConnectionError,
    WriteError,
    PrintError,
    ImageError,
    AmbiguousDeviceError,
    UnknownModelError,
    BatchError,
)
from .dither import DitherKind, DitherMode, ImageSizeError, dither, MAX_IMAGE_DIMENSION, MAX_IMAGE_PIXELS
from .profiles import (
    AmbiguousDevice,
    ModelSelector,
    PrinterProfile,
    ProfileRegistry,
    ProtocolFamily,
    MODELS,
    resolve_profile,
)
from .mapping import DeviceMapping
from .raster import ClippedWarning, EncodeOptions, EncodeResult, RasterPacket, encode
from .protocol import PrintJobPlan, build_job
from .connection import BLEConnection, ConnectionState, PrinterInfo, Transport
from .usb import USBConnection
from .printer import (
    BatchProgress,
    BatchRecord,
    CancelToken,
    LabelConfig,
    PhomymoPrinter,
    PrintOptions,
    print_batch,
    print_label,
)

__all__ = [
    "PrinterError",
    "ConnectionError",
    "WriteError",
    "PrintError",
    "ImageError",
    "ImageSizeError",
    "AmbiguousDeviceError",
    "UnknownModelError",
    "BatchError",
    "MAX_IMAGE_DIMENSION",
    "MAX_IMAGE_PIXELS",
    "DitherKind",
    "DitherMode",
    "dither",
    "AmbiguousDevice",
    "ModelSelector",
    "PrinterProfile",
    "ProfileRegistry",
    "ProtocolFamily",
    "MODELS",
    "resolve_profile",
    "DeviceMapping",
    "ClippedWarning",
    "EncodeOptions",
    "EncodeResult",
    "RasterPacket",
    "encode",
    "PrintJobPlan",
    "build_job",
    "BLEConnection",
    "ConnectionState",
    "PrinterInfo",
    "Transport",
    "USBConnection",
    "BatchProgress",
    "BatchRecord",
    "CancelToken",
    "LabelConfig",
    "PhomymoPrinter",
    "PrintOptions",
    "print_batch",
    "print_label",
]
