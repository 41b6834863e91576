"""
Print Job Planning.

Turns a profile and an encoded raster into the exact byte sequences to
send, dispatching on the profile's protocol family. Nothing here touches a
transport; the orchestrator sends what the plan says, in order, with the
plan's delays.
"""

from dataclasses import dataclass, field
from typing import Optional

from . import escpos
from .profiles import Alignment, PrinterProfile, ProtocolFamily
from .raster import RasterPacket
from .tspl import Direction, LabelSize, TSPLCommand, density_from_level, invert_rows

# Delays (milliseconds)
DELAY_BETWEEN_COMMANDS_MS = 50
DELAY_AFTER_INIT_MS = 100
DELAY_BEFORE_FEED_MS = 300

DEFAULT_DENSITY = 6

# TSPL ends the BITMAP data block, then prints one label
TSPL_PRINT = TSPLCommand.CRLF + TSPLCommand().print_label().get_commands()


@dataclass
class PrintJobPlan:
    """
    Everything needed to print one label, in send order.

    Attributes:
        commands: Init commands, each sent as its own write
        header: Raster header, sent as one write right before the payload
        payload: Pixel data, sent chunked
        trailer: Feed/print command sent after the payload
        command_delay_ms: Pause after each init command
        settle_delay_ms: Pause after the whole init sequence
        feed_delay_ms: Pause between the payload and the trailer
    """
    commands: list[bytes] = field(default_factory=list)
    header: bytes = b""
    payload: bytes = b""
    trailer: bytes = b""
    command_delay_ms: int = DELAY_BETWEEN_COMMANDS_MS
    settle_delay_ms: int = DELAY_AFTER_INIT_MS
    feed_delay_ms: int = DELAY_BEFORE_FEED_MS

    @property
    def total_bytes(self) -> int:
        return (
            sum(len(c) for c in self.commands)
            + len(self.header) + len(self.payload) + len(self.trailer)
        )

    def to_bytes(self) -> bytes:
        """The whole job as one buffer (useful for dumps and tests)."""
        return b"".join(self.commands) + self.header + self.payload + self.trailer


def _dots_to_mm(dots: int, dpi: int) -> float:
    return round(dots * 25.4 / dpi, 1)


def label_from_packet(profile: PrinterProfile, packet: RasterPacket) -> LabelSize:
    """TSPL label size matching an encoded packet (head width x rows)."""
    return LabelSize(
        width=_dots_to_mm(packet.width_bytes * 8, profile.dpi),
        height=_dots_to_mm(packet.height, profile.dpi),
    )


def init_sequence(
    profile: PrinterProfile,
    density: int = DEFAULT_DENSITY,
    label: Optional[LabelSize] = None,
) -> list[bytes]:
    """
    Initialization commands for a profile, one entry per write.

    Args:
        profile: Target printer
        density: 1 (light) to 8 (dark)
        label: Label size, required for TSPL. Given in design orientation;
            rotated printers get width and height swapped.

    Raises:
        ValueError: If density is outside 1-8, or TSPL has no label size
    """
    family = profile.protocol_family

    if family is ProtocolFamily.ESCPOS:
        justification = (
            escpos.Justification.CENTER
            if profile.alignment is Alignment.CENTER
            else escpos.Justification.LEFT
        )
        commands = [profile.prefix] if profile.prefix else []
        commands += [
            escpos.init(),
            escpos.line_spacing(0),
            escpos.align(justification),
            escpos.density(density),
        ]
        return commands

    if family is ProtocolFamily.ROTATED_RASTER:
        escpos.density(density)  # validate only
        return []

    if label is None:
        raise ValueError(f"{profile.model} uses TSPL and needs a label size")

    if profile.rotated:
        label = label.swapped()

    setup = TSPLCommand().setup_label(label, density_from_level(density), Direction.FORWARD)
    return [setup.get_commands()]


def build_init(
    profile: PrinterProfile,
    density: int = DEFAULT_DENSITY,
    label: Optional[LabelSize] = None,
) -> bytes:
    """Initialization commands concatenated into one buffer."""
    return b"".join(init_sequence(profile, density, label))


def build_raster_header(profile: PrinterProfile, width_bytes: int, height_rows: int) -> bytes:
    """Raster header announcing width_bytes x height_rows of pixel data."""
    family = profile.protocol_family

    if family is ProtocolFamily.TSPL:
        return TSPLCommand().bitmap_header(0, 0, width_bytes, height_rows).get_commands()

    header = escpos.raster_header(width_bytes, height_rows)
    if family is ProtocolFamily.ROTATED_RASTER and profile.combined_header_write:
        # Init must arrive in the same write as the header
        return escpos.init() + header
    return header


def build_feed(profile: PrinterProfile, dots: Optional[int] = None) -> bytes:
    """Command sent after the pixel data; dots defaults to the profile's feed."""
    if profile.protocol_family is ProtocolFamily.TSPL:
        return TSPL_PRINT
    return escpos.feed(profile.feed_dots if dots is None else dots)


def build_job(
    profile: PrinterProfile,
    packet: RasterPacket,
    density: int = DEFAULT_DENSITY,
    feed_dots: Optional[int] = None,
    label: Optional[LabelSize] = None,
) -> PrintJobPlan:
    """
    Plan a single-label print job.

    Args:
        profile: Target printer
        packet: Encoded raster (rows already head-width)
        density: 1 (light) to 8 (dark)
        feed_dots: Paper feed after printing (ESC/POS families); None uses
            the profile's feed
        label: TSPL label size; derived from the packet when omitted

    Returns:
        PrintJobPlan in send order
    """
    if packet.width_bytes != profile.width_bytes:
        raise ValueError(
            f"Packet is {packet.width_bytes} bytes wide, {profile.model} needs {profile.width_bytes}"
        )

    payload = packet.payload
    if profile.protocol_family is ProtocolFamily.TSPL:
        if label is None:
            label = label_from_packet(profile, packet)
            if profile.rotated:
                # init_sequence expects design orientation
                label = label.swapped()
        payload = invert_rows(payload)

    return PrintJobPlan(
        commands=init_sequence(profile, density, label),
        header=build_raster_header(profile, packet.width_bytes, packet.height),
        payload=payload,
        trailer=build_feed(profile, feed_dots),
    )


# Density test: eight solid strips, light (1) to dark (8)
DENSITY_TEST_LEVELS = range(1, 9)
DENSITY_TEST_STRIP_DOTS = 320
DENSITY_TEST_STRIP_ROWS = 30
DENSITY_TEST_GAP_DOTS = 8
DENSITY_TEST_FINAL_FEED_DOTS = 48


def build_density_strip(
    profile: PrinterProfile,
    packet: RasterPacket,
    level: int,
    last: bool = False,
) -> PrintJobPlan:
    """
    Plan one strip of the density test.

    Each strip sets both the ESC 7 heat time and GS | density for its level,
    so the printout shows which of the two the firmware honours.

    Raises:
        ValueError: If the profile is not an upright ESC/POS printer
    """
    if profile.protocol_family is not ProtocolFamily.ESCPOS or profile.rotated:
        raise ValueError(f"Density test needs an upright ESC/POS printer, not {profile.model}")

    commands = [profile.prefix] if profile.prefix else []
    commands += [
        escpos.init(),
        escpos.heat_for_density(level),
        escpos.density(level),
    ]
    feed = DENSITY_TEST_FINAL_FEED_DOTS if last else DENSITY_TEST_GAP_DOTS
    return PrintJobPlan(
        commands=commands,
        header=escpos.raster_header(packet.width_bytes, packet.height),
        payload=packet.payload,
        trailer=escpos.feed(feed),
    )
