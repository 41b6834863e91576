"""
Exception hierarchy for Phomymo printers.

Every failure the printing core raises derives from PrinterError, so callers
can catch one type at the outer edge. Non-fatal outcomes (clipped rasters,
unrecognized device names) are returned as values instead, see
raster.ClippedWarning and profiles.AmbiguousDevice.
"""

from typing import Optional, Sequence


class PrinterError(Exception):
    """Base exception for all printer errors."""

    pass


class ConnectionError(PrinterError):
    """Error finding, connecting to, or talking to a printer.

    Attributes:
        devices: Device names seen during the scan (diagnostics)
        services: Service UUIDs found on the device (diagnostics)
    """

    def __init__(
        self,
        message: str,
        devices: Optional[Sequence[str]] = None,
        services: Optional[Sequence[str]] = None,
    ):
        super().__init__(message)
        self.devices = list(devices or [])
        self.services = list(services or [])

    def __str__(self) -> str:
        text = super().__str__()
        if self.devices:
            text += f" (devices seen: {', '.join(self.devices)})"
        if self.services:
            text += f" (services available: {', '.join(self.services)})"
        return text


class WriteError(PrinterError):
    """The transport rejected a write."""

    pass


class PrintError(PrinterError):
    """Error during print operation."""

    pass


class ImageError(PrinterError):
    """Error processing image for printing."""

    pass


class AmbiguousDeviceError(PrinterError):
    """A device name matched no known model and no override was given."""

    def __init__(self, device_name: Optional[str]):
        super().__init__(
            f"Unrecognized printer {device_name!r}; choose a model explicitly"
        )
        self.device_name = device_name


class UnknownModelError(PrinterError, KeyError):
    """An explicit model name is not in the model table."""

    def __init__(self, model: str, known: Sequence[str] = ()):
        super().__init__(model)
        self.model = model
        self.known = list(known)

    def __str__(self) -> str:
        return f"Unknown printer model: {self.model!r}. Available: {', '.join(self.known)}"


class BatchError(PrintError):
    """A batch print stopped early because a record failed.

    Attributes:
        completed: Number of records printed before the failure
    """

    def __init__(self, message: str, completed: int):
        super().__init__(message)
        self.completed = completed
