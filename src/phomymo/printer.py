"""
High-Level Phomemo Printer Interface.

Ties the pieces together: resolve the profile, dither, encode, plan, and
send the plan over a transport with the pacing the printers need.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence, Union

from PIL import Image

from .connection import BLEConnection, Transport
from .dither import DitherMode, dither, resolve_mode, validate_size
from .errors import (
    AmbiguousDeviceError,
    BatchError,
    ConnectionError,
    PrinterError,
    PrintError,
)
from .mapping import DeviceMapping
from .profiles import (
    AmbiguousDevice,
    ModelSelector,
    PrinterProfile,
    ProfileRegistry,
    ProtocolFamily,
    ResolveResult,
    mm_to_dots,
    resolve_profile,
)
from .protocol import (
    DEFAULT_DENSITY,
    DENSITY_TEST_LEVELS,
    DENSITY_TEST_STRIP_DOTS,
    DENSITY_TEST_STRIP_ROWS,
    PrintJobPlan,
    build_density_strip,
    build_job,
)
from .raster import EncodeOptions, EncodeResult, encode
from .tspl import LabelSize

logger = logging.getLogger(__name__)

__all__ = [
    "BatchProgress",
    "BatchRecord",
    "CancelToken",
    "LabelConfig",
    "PhomymoPrinter",
    "PreparedLabel",
    "PrintOptions",
    "print_batch",
    "print_label",
    "resolve_profile",
]


@dataclass
class PrintOptions:
    """
    Per-job settings.

    Attributes:
        density: Print darkness, 1 (light) to 8 (dark)
        feed_dots: Paper feed after each label (ESC/POS families); None uses
            the printer's own (8 dots on continuous media, else 32)
        dither: Dithering algorithm; TSPL printers always use threshold
        encode: Margin/offset adjustments
        chunk_size: Override the transport's chunk size
        chunk_delay_ms: Override the transport's delay between chunks
        record_delay_ms: Pause between records in a batch
    """
    density: int = DEFAULT_DENSITY
    feed_dots: Optional[int] = None
    dither: DitherMode = field(default_factory=DitherMode.auto)
    encode: EncodeOptions = field(default_factory=EncodeOptions)
    chunk_size: Optional[int] = None
    chunk_delay_ms: Optional[float] = None
    record_delay_ms: float = 500

    def __post_init__(self):
        if not 1 <= self.density <= 8:
            raise ValueError(f"Density must be 1-8, got {self.density}")
        if self.feed_dots is not None and not 0 <= self.feed_dots <= 255:
            raise ValueError(f"Feed must be 0-255 dots, got {self.feed_dots}")
        if self.record_delay_ms < 0:
            raise ValueError(f"Record delay must be >= 0, got {self.record_delay_ms}")


@dataclass
class LabelConfig:
    """Physical label: size in mm, gap between labels, copies to print."""
    width_mm: float
    height_mm: float
    gap_mm: float = 2.0
    copies: int = 1

    def __post_init__(self):
        if self.width_mm <= 0 or self.height_mm <= 0:
            raise ValueError(f"Label size must be positive, got {self.width_mm}x{self.height_mm}mm")
        if self.copies < 1:
            raise ValueError(f"Copies must be >= 1, got {self.copies}")

    @classmethod
    def parse(cls, text: str, **kwargs) -> "LabelConfig":
        """Parse "40x30" (width x height in mm)."""
        try:
            width, height = (float(part) for part in text.lower().split("x"))
        except ValueError:
            raise ValueError(f"Label size must look like 40x30, got {text!r}") from None
        return cls(width, height, **kwargs)

    def size_px(self, dpi: int) -> tuple[int, int]:
        """Label size in dots."""
        return mm_to_dots(self.width_mm, dpi), mm_to_dots(self.height_mm, dpi)

    def to_label_size(self) -> LabelSize:
        return LabelSize(self.width_mm, self.height_mm, self.gap_mm)


class CancelToken:
    """Cooperative cancellation for batch prints."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class BatchProgress:
    """Progress of a batch print, reported after every chunk."""
    record: int        # 1-based
    records: int
    chunk: int         # 1-based, within the current record
    chunks: int
    bytes_sent: int


@dataclass
class PreparedLabel:
    """A label ready to send: what was applied and what will go on the wire."""
    profile: PrinterProfile
    dither_mode: DitherMode
    bitmap: Image.Image
    encoded: EncodeResult
    plan: PrintJobPlan

    @property
    def warning(self):
        return self.encoded.warning


ChunkProgress = Callable[[int, int, int], None]
BatchProgressCallback = Callable[[BatchProgress], None]

# An image, or an (image, label) pair whose label overrides the batch label
BatchRecord = Union[Image.Image, tuple[Image.Image, Optional[LabelConfig]]]


class PhomymoPrinter:
    """
    High-level interface to Phomemo label printers.

    Works with any Transport; BLE is the default.
    """

    def __init__(
        self,
        transport: Optional[Transport] = None,
        registry: Optional[ProfileRegistry] = None,
    ):
        self.transport = transport if transport is not None else BLEConnection()
        self.registry = registry if registry is not None else ProfileRegistry(DeviceMapping())
        self._profile: Optional[PrinterProfile] = None
        self._debug = False

    def set_debug(self, enabled: bool):
        """Enable/disable debug logging for the whole package."""
        self._debug = enabled
        logging.getLogger("phomymo").setLevel(logging.DEBUG if enabled else logging.NOTSET)

    @property
    def profile(self) -> Optional[PrinterProfile]:
        return self._profile

    def use_profile(self, profile: Union[PrinterProfile, str]) -> PrinterProfile:
        """Select the printer model directly, bypassing name resolution."""
        if isinstance(profile, str):
            profile = self.registry.get(profile)
        self._profile = profile
        return profile

    def resolve(
        self,
        device_name: Optional[str] = None,
        selector: Optional[ModelSelector] = None,
        tape_width_mm: Optional[int] = None,
    ) -> ResolveResult:
        """
        Resolve the profile for a device name; selects it if found.

        Returns:
            PrinterProfile, or AmbiguousDevice if the name is unrecognized
        """
        if device_name is None:
            device_name = self.transport.device_name
        result = self.registry.resolve(device_name, selector, tape_width_mm)
        if isinstance(result, PrinterProfile):
            self._profile = result
        return result

    async def connect(
        self,
        *args,
        selector: Optional[ModelSelector] = None,
        tape_width_mm: Optional[int] = None,
        **kwargs,
    ) -> ResolveResult:
        """
        Connect the transport and resolve the printer model.

        Extra arguments go to the transport's connect(). An explicit
        use_profile() choice is kept unless a selector is given. If the
        model cannot be resolved the transport is disconnected again.

        Returns:
            The active PrinterProfile, or AmbiguousDevice if the advertised
            name is unrecognized (connection stays open; call use_profile()
            or registry.remember() and resolve again)

        Raises:
            UnknownModelError: If an explicit or remembered model is unknown
        """
        if selector is not None and not selector.is_auto:
            # Reject an unknown model before opening a session
            self.registry.get(selector.model)

        await self.transport.connect(*args, **kwargs)

        if self._profile is not None and selector is None:
            return self._profile

        try:
            result = self.resolve(self.transport.device_name, selector, tape_width_mm)
        except Exception:
            await self.transport.disconnect()
            raise

        if isinstance(result, AmbiguousDevice):
            logger.warning(f"Unrecognized printer {result.device_name!r}, choose a model")
        else:
            logger.info(f"Using profile {result.describe()}")
        return result

    async def disconnect(self):
        """Disconnect from the printer."""
        await self.transport.disconnect()
        logger.debug("Disconnected")

    @property
    def is_connected(self) -> bool:
        """Check if currently connected to a printer."""
        return self.transport.is_connected

    def _require_profile(self) -> PrinterProfile:
        if self._profile is None:
            raise AmbiguousDeviceError(self.transport.device_name)
        return self._profile

    def _require_connection(self):
        if not self.is_connected:
            raise ConnectionError("Not connected to printer")

    def prepare(
        self,
        bitmap: Image.Image,
        options: Optional[PrintOptions] = None,
        label: Optional[LabelConfig] = None,
    ) -> PreparedLabel:
        """
        Dither, encode and plan a label without sending anything.

        Raises:
            AmbiguousDeviceError: If no profile is selected
            ImageSizeError: If the bitmap exceeds the size limits
        """
        profile = self._require_profile()
        options = options or PrintOptions()
        validate_size(bitmap)

        if profile.rotated:
            # The label's height runs across the head
            profile = profile.fitted(bitmap.height)

        mode = resolve_mode(
            options.dither,
            threshold_only=profile.protocol_family is ProtocolFamily.TSPL,
        )
        mono = dither(bitmap, mode)
        encoded = encode(mono, profile, options.encode)
        plan = build_job(
            profile,
            encoded.packet,
            density=options.density,
            feed_dots=options.feed_dots,
            label=label.to_label_size() if label is not None else None,
        )
        logger.debug(
            f"Prepared {bitmap.width}x{bitmap.height} label for {profile.model}: "
            f"{mode}, {encoded.packet.height} rows, {plan.total_bytes} bytes"
        )
        return PreparedLabel(profile, mode, mono, encoded, plan)

    async def _send_plan(
        self,
        plan: PrintJobPlan,
        options: PrintOptions,
        on_progress: Optional[ChunkProgress] = None,
    ):
        for command in plan.commands:
            await self.transport.send(command)
            await asyncio.sleep(plan.command_delay_ms / 1000.0)
        if plan.commands:
            await asyncio.sleep(plan.settle_delay_ms / 1000.0)

        # Header goes in its own write, immediately before the data
        await self.transport.send(plan.header)
        await self.transport.send_chunked(
            plan.payload,
            chunk_size=options.chunk_size,
            delay_ms=options.chunk_delay_ms,
            on_progress=on_progress,
        )

        await asyncio.sleep(plan.feed_delay_ms / 1000.0)
        await self.transport.send(plan.trailer)

    async def _print_one(
        self,
        bitmap: Image.Image,
        label: Optional[LabelConfig],
        options: PrintOptions,
        on_progress: Optional[ChunkProgress] = None,
    ) -> PreparedLabel:
        self._require_connection()
        prepared = self.prepare(bitmap, options, label)
        copies = label.copies if label is not None else 1

        for copy in range(copies):
            if copies > 1:
                logger.info(f"Printing copy {copy + 1}/{copies}")
            await self._send_plan(prepared.plan, options, on_progress)
        return prepared

    async def print_label(
        self,
        bitmap: Image.Image,
        label: Optional[LabelConfig] = None,
        options: Optional[PrintOptions] = None,
        on_progress: Optional[ChunkProgress] = None,
    ) -> PreparedLabel:
        """
        Print one label (repeated label.copies times).

        A job started while another is printing waits for it to finish.

        Args:
            bitmap: Rendered label, any mode (dithered to 1-bit here)
            label: Physical label; TSPL printers use its size
            options: Density, feed, dithering and pacing
            on_progress: Called as (chunk_index, total_chunks, bytes_sent)

        Returns:
            The PreparedLabel that was sent

        Raises:
            ConnectionError: If not connected
            AmbiguousDeviceError: If the printer model is unknown
            WriteError: If the transport rejects a write
        """
        async with self.transport.job_lock:
            prepared = await self._print_one(bitmap, label, options or PrintOptions(), on_progress)
        logger.info("Print job sent successfully")
        return prepared

    async def print_batch(
        self,
        records: Sequence[BatchRecord],
        label: Optional[LabelConfig] = None,
        options: Optional[PrintOptions] = None,
        on_progress: Optional[BatchProgressCallback] = None,
        cancel: Optional[CancelToken] = None,
    ) -> int:
        """
        Print several labels in order, holding the printer for the whole batch.

        Cancellation is checked before each record, never mid-record. The
        first failure stops the batch.

        Args:
            records: Images, or (image, label) pairs; a pair's label
                overrides the batch label (None keeps the batch label)
            label: Label used for records that do not carry their own
            options: Density, feed, dithering and pacing for every record
            on_progress: Called with a BatchProgress after every chunk
            cancel: Stop before the next record once cancelled

        Returns:
            Number of records printed

        Raises:
            BatchError: On the first failing record; .completed holds the
                number printed before it
        """
        options = options or PrintOptions()
        total = len(records)
        completed = 0

        async with self.transport.job_lock:
            for index, record in enumerate(records):
                if cancel is not None and cancel.cancelled:
                    logger.info(f"Batch cancelled after {completed}/{total} records")
                    break

                bitmap, record_label = _unpack_record(record, label)

                def chunk_progress(chunk, chunks, sent, record_num=index + 1):
                    if on_progress:
                        on_progress(BatchProgress(record_num, total, chunk, chunks, sent))

                try:
                    await self._print_one(bitmap, record_label, options, chunk_progress)
                except PrinterError as e:
                    raise BatchError(
                        f"Record {index + 1}/{total} failed: {e}", completed
                    ) from e
                completed += 1

                if index < total - 1 and options.record_delay_ms > 0:
                    await asyncio.sleep(options.record_delay_ms / 1000.0)

        return completed

    async def print_density_test(
        self,
        options: Optional[PrintOptions] = None,
        on_strip: Optional[Callable[[int, int], None]] = None,
    ) -> int:
        """
        Print eight solid strips at density levels 1 (light) to 8 (dark).

        Args:
            options: Chunk size and delay (density and dithering are ignored)
            on_strip: Called as (level, levels) before each strip

        Returns:
            Number of strips printed

        Raises:
            ConnectionError: If not connected
            PrintError: If the printer is not an upright ESC/POS model
        """
        self._require_connection()
        profile = self._require_profile()
        if profile.protocol_family is not ProtocolFamily.ESCPOS or profile.rotated:
            raise PrintError(f"Density test needs an upright ESC/POS printer, not {profile.model}")

        options = options or PrintOptions()
        width = min(DENSITY_TEST_STRIP_DOTS, profile.width_px)
        strip = Image.new("1", (width, DENSITY_TEST_STRIP_ROWS), 0)
        packet = encode(strip, profile).packet
        levels = list(DENSITY_TEST_LEVELS)

        async with self.transport.job_lock:
            for level in levels:
                if on_strip:
                    on_strip(level, len(levels))
                plan = build_density_strip(profile, packet, level, last=level == levels[-1])
                await self._send_plan(plan, options)

        logger.info("Density test sent")
        return len(levels)


def _unpack_record(
    record: BatchRecord, default_label: Optional[LabelConfig]
) -> tuple[Image.Image, Optional[LabelConfig]]:
    if isinstance(record, tuple):
        bitmap, label = record
        return bitmap, label if label is not None else default_label
    return record, default_label


def _printer_for(
    transport: Transport,
    device_name: Optional[str],
    selector: Optional[ModelSelector],
    registry: Optional[ProfileRegistry],
) -> PhomymoPrinter:
    printer = PhomymoPrinter(transport, registry)
    result = printer.resolve(device_name, selector)
    if isinstance(result, AmbiguousDevice):
        raise AmbiguousDeviceError(result.device_name)
    return printer


async def print_label(
    transport: Transport,
    bitmap: Image.Image,
    label: Optional[LabelConfig] = None,
    options: Optional[PrintOptions] = None,
    device_name: Optional[str] = None,
    selector: Optional[ModelSelector] = None,
    registry: Optional[ProfileRegistry] = None,
) -> PreparedLabel:
    """
    Print one label over an already connected transport.

    Raises:
        AmbiguousDeviceError: If the model cannot be resolved
    """
    printer = _printer_for(transport, device_name, selector, registry)
    return await printer.print_label(bitmap, label, options)


async def print_batch(
    transport: Transport,
    records: Sequence[BatchRecord],
    label: Optional[LabelConfig] = None,
    options: Optional[PrintOptions] = None,
    on_progress: Optional[BatchProgressCallback] = None,
    cancel: Optional[CancelToken] = None,
    device_name: Optional[str] = None,
    selector: Optional[ModelSelector] = None,
    registry: Optional[ProfileRegistry] = None,
) -> int:
    """Print several labels over an already connected transport."""
    printer = _printer_for(transport, device_name, selector, registry)
    return await printer.print_batch(records, label, options, on_progress, cancel)
