"""
Command-Line Interface for Phomemo Printers.

Usage:
    phomymo scan                 - Scan for printers
    phomymo discover             - Discover services on a printer
    phomymo models               - List supported printer models
    phomymo print IMAGE...       - Print one or more images
    phomymo test                 - Print an alignment test pattern
    phomymo density-test         - Print density calibration strips
    phomymo map NAME MODEL       - Remember which model a device name is
"""

import asyncio
import functools
import logging
import re
import sys
from typing import Optional

import click
from PIL import Image, UnidentifiedImageError

from .connection import BLEConnection
from .dither import DitherMode
from .errors import (
    BatchError,
    ConnectionError,
    ImageError,
    PrinterError,
    PrintError,
)
from .mapping import DeviceMapping
from .printer import BatchProgress, LabelConfig, PhomymoPrinter, PrintOptions
from .profiles import AmbiguousDevice, ModelSelector, PrinterProfile, ProfileRegistry
from .raster import EncodeOptions, create_test_pattern
from .usb import USBConnection

# Bluetooth MAC address format: XX:XX:XX:XX:XX:XX (hex pairs separated by colons)
BLUETOOTH_MAC_PATTERN = re.compile(r"^([0-9A-Fa-f]{2}:){5}[0-9A-Fa-f]{2}$")

# macOS CoreBluetooth UUID format: XXXXXXXX-XXXX-XXXX-XXXX-XXXXXXXXXXXX
MACOS_UUID_PATTERN = re.compile(
    r"^[0-9A-Fa-f]{8}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{12}$"
)

# Test pattern length for upright printers without a label size, in dots
TEST_PATTERN_HEIGHT = 120


def validate_bluetooth_address(ctx, param, value):
    """Validate Bluetooth address format.

    Accepts:
        - MAC address format: XX:XX:XX:XX:XX:XX (Linux/Windows)
        - UUID format: XXXXXXXX-XXXX-XXXX-XXXX-XXXXXXXXXXXX (macOS)

    Returns:
        The validated address (uppercased for consistency)

    Raises:
        click.BadParameter: If the address format is invalid
    """
    if value is None:
        return None
    if BLUETOOTH_MAC_PATTERN.match(value) or MACOS_UUID_PATTERN.match(value):
        return value.upper()
    raise click.BadParameter(
        f"Invalid Bluetooth address format: '{value}'. "
        "Expected MAC format XX:XX:XX:XX:XX:XX or "
        "macOS UUID format XXXXXXXX-XXXX-XXXX-XXXX-XXXXXXXXXXXX"
    )


def validate_dither(ctx, param, value):
    try:
        return DitherMode.parse(value)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


def validate_label(ctx, param, value):
    if value is None:
        return None
    try:
        return LabelConfig.parse(value)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


def connection_options(f):
    """Options shared by every command that talks to a printer."""
    options = [
        click.option(
            "--address", "-a",
            callback=validate_bluetooth_address,
            help="Printer Bluetooth address (if omitted, scans for the strongest printer)",
        ),
        click.option("--name", "name_filter", help="Only connect to devices whose name contains this"),
        click.option("--model", "-m", default="auto", help="Printer model (default: detect from name)"),
        click.option("--tape-width", type=click.Choice(["12", "15"]), help="Tape width in mm (tape printers)"),
        click.option("--timeout", default=BLEConnection.DEFAULT_SCAN_TIMEOUT, help="Scan timeout in seconds"),
        click.option("--ble-service", help="Override BLE service UUID"),
        click.option("--ble-char", help="Override BLE write characteristic UUID"),
        click.option("--usb", is_flag=True, help="Use USB instead of Bluetooth"),
        click.option("--vendor", default="0x0483", help="USB vendor ID"),
        click.option("--product", default="0x5740", help="USB product ID"),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def _make_printer(ctx, usb, vendor, product, ble_service, ble_char) -> PhomymoPrinter:
    if usb:
        transport = USBConnection(vendor, product)
    else:
        transport = BLEConnection(service_uuid=ble_service, write_uuid=ble_char)
    printer = PhomymoPrinter(transport, ProfileRegistry(DeviceMapping()))
    printer.set_debug(ctx.obj["debug"])
    return printer


def _choose_model(printer: PhomymoPrinter, result: AmbiguousDevice) -> PrinterProfile:
    """Ask which model an unrecognized device is and remember the answer."""
    click.echo(f"Unrecognized printer name: {result.device_name!r}")
    model = click.prompt(
        "Which model is it?",
        type=click.Choice(printer.registry.models()),
    )
    if result.device_name:
        printer.registry.remember(result.device_name, model)
        click.echo(f"Remembered {result.device_name} as {model}")
    return printer.use_profile(model)


async def open_printer(ctx, opts: dict) -> PhomymoPrinter:
    """Connect using the shared connection options; resolves the profile."""
    printer = _make_printer(
        ctx, opts["usb"], opts["vendor"], opts["product"],
        opts["ble_service"], opts["ble_char"],
    )
    selector = ModelSelector.parse(opts["model"])
    tape_width = int(opts["tape_width"]) if opts["tape_width"] else None

    if opts["usb"]:
        click.echo("Connecting over USB...")
        connect_args = {}
        if selector.is_auto:
            # USB devices have no advertised name to match
            selector = ModelSelector.explicit("m260")
    else:
        target = opts["address"] or "strongest printer"
        click.echo(f"Connecting to {target}...")
        connect_args = {
            "address": opts["address"],
            "name_filter": opts["name_filter"],
            "scan_timeout": opts["timeout"],
        }

    result = await printer.connect(selector=selector, tape_width_mm=tape_width, **connect_args)
    if isinstance(result, AmbiguousDevice):
        try:
            result = _choose_model(printer, result)
        except Exception:
            await printer.disconnect()
            raise

    click.echo(f"Printer: {result.describe()}")
    return printer


def run_printer_command(f):
    """Run an async command body, reporting printer errors the same way."""
    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            asyncio.run(f(*args, **kwargs))
        except ConnectionError as e:
            click.echo(f"Connection error: {e}", err=True)
            sys.exit(1)
        except ImageError as e:
            click.echo(f"Image error: {e}", err=True)
            sys.exit(1)
        except BatchError as e:
            click.echo(f"Print error: {e} ({e.completed} printed)", err=True)
            sys.exit(1)
        except PrintError as e:
            click.echo(f"Print error: {e}", err=True)
            sys.exit(1)
        except PrinterError as e:
            click.echo(f"Printer error: {e}", err=True)
            sys.exit(1)
    return wrapper


def load_image(path: str) -> Image.Image:
    """Open an image file; load errors become ImageError."""
    try:
        img = Image.open(path)
        img.load()
    except (OSError, UnidentifiedImageError) as e:
        raise ImageError(f"Failed to load image {path}: {e}") from e
    return img


def fit_image(img: Image.Image, size: tuple[int, int]) -> Image.Image:
    """Scale to fit inside size (keeping aspect) and center on a white canvas."""
    if img.mode in ("RGBA", "LA", "P"):
        img = img.convert("RGBA")
        background = Image.new("RGBA", img.size, (255, 255, 255, 255))
        img = Image.alpha_composite(background, img)
    img = img.convert("L")

    fitted = img.copy()
    fitted.thumbnail(size, Image.Resampling.LANCZOS)
    canvas = Image.new("L", size, 255)
    canvas.paste(fitted, ((size[0] - fitted.width) // 2, (size[1] - fitted.height) // 2))
    return canvas


def canvas_size(profile: PrinterProfile, label: Optional[LabelConfig], margin_px: int = 0) -> Optional[tuple[int, int]]:
    """Pixel size a label is rendered at, or None to print images as they are."""
    if label is not None:
        width, height = label.size_px(profile.dpi)
        if not profile.rotated:
            width = min(width, profile.width_px - 2 * margin_px)
        return width, height
    return None


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug output")
@click.pass_context
def main(ctx, debug):
    """Phomemo Label Printer CLI."""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="[%(name)s] %(message)s",
    )


@main.command()
@click.option("--timeout", default=BLEConnection.DEFAULT_SCAN_TIMEOUT, help="Scan timeout in seconds")
@click.option("--all", "show_all", is_flag=True, help="Show every named device, not just printers")
def scan(timeout, show_all):
    """Scan for Phomemo printers."""

    @run_printer_command
    async def _scan():
        click.echo(f"Scanning for printers ({timeout}s)...")
        printers = await BLEConnection.scan(timeout=timeout, show_all=show_all)

        if not printers:
            click.echo("No printers found.")
            return

        registry = ProfileRegistry(DeviceMapping())
        click.echo(f"\nFound {len(printers)} printer(s):\n")
        for p in printers:
            result = registry.resolve(p.name)
            model = result.model if isinstance(result, PrinterProfile) else "unknown model"
            click.echo(f"  {p}  ({model})")

    _scan()


@main.command()
@click.option(
    "--address", "-a",
    callback=validate_bluetooth_address,
    help="Printer Bluetooth address (if omitted, scans for the strongest printer)",
)
@click.option("--name", "name_filter", help="Only connect to devices whose name contains this")
@click.option("--timeout", default=BLEConnection.DEFAULT_SCAN_TIMEOUT, help="Scan timeout in seconds")
@click.pass_context
def discover(ctx, address, name_filter, timeout):
    """Discover GATT services on a printer."""

    @run_printer_command
    async def _discover():
        connection = BLEConnection()
        click.echo(f"Connecting to {address or 'strongest printer'}...")
        await connection.connect(
            address, name_filter=name_filter, show_all=bool(name_filter), scan_timeout=timeout
        )

        try:
            services = await connection.get_services()

            click.echo(f"\nGATT Services on {connection.device_name}:\n")
            for svc in services:
                click.echo(f"Service: {svc.service_uuid}")
                for char in svc.characteristics:
                    props = ", ".join(char["properties"])
                    click.echo(f"  Char: {char['uuid']}")
                    click.echo(f"        Properties: [{props}]")
                click.echo()
        finally:
            await connection.disconnect()

    _discover()


@main.command()
def models():
    """List supported printer models."""
    registry = ProfileRegistry()
    for model in registry.models():
        click.echo(f"  {registry.get(model).describe()}")


@main.command("print")
@click.argument("images", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@connection_options
@click.option("--label", "-l", callback=validate_label, help="Label size in mm, e.g. 40x30")
@click.option("--gap", default=2.0, help="Gap between labels in mm")
@click.option("--copies", default=1, type=click.IntRange(1), help="Copies of each image")
@click.option("--density", "-d", default=6, type=click.IntRange(1, 8), help="Print density (1-8, default 6)")
@click.option("--feed", type=click.IntRange(0, 255), help="Feed after each label in dots (default: per model)")
@click.option("--dither", default="auto", callback=validate_dither,
              help="auto, threshold[:LEVEL], floyd-steinberg, atkinson, bayer[:N]")
@click.option("--margin", default=0, type=click.IntRange(0), help="Side margin in dots")
@click.option("--offset", default=0, help="Horizontal offset in bytes (8 dots)")
@click.option("--voffset", default=0, help="Vertical offset in dots")
@click.pass_context
def print_images(ctx, images, label, gap, copies, density, feed, dither,
                 margin, offset, voffset, **opts):
    """Print one or more image files."""
    options = PrintOptions(
        density=density,
        feed_dots=feed,
        dither=dither,
        encode=EncodeOptions(margin_px=margin, offset_bytes=offset, voffset_dots=voffset),
    )
    if label is not None:
        label = LabelConfig(label.width_mm, label.height_mm, gap_mm=gap, copies=copies)

    @run_printer_command
    async def _print():
        records = [load_image(path) for path in images]
        if label is None and copies > 1:
            records = [img for img in records for _ in range(copies)]

        printer = await open_printer(ctx, opts)
        try:
            size = canvas_size(printer.profile, label, margin)
            if size is not None:
                records = [fit_image(img, size) for img in records]

            def report(progress: BatchProgress):
                if progress.chunk == progress.chunks:
                    click.echo(
                        f"Sent label {progress.record}/{progress.records} "
                        f"({progress.bytes_sent} bytes)"
                    )

            click.echo(f"Printing {len(records)} image(s)...")
            printed = await printer.print_batch(records, label, options, on_progress=report)
            click.echo(f"Print complete! ({printed} label(s))")
        finally:
            await printer.disconnect()

    _print()


@main.command()
@connection_options
@click.option("--label", "-l", callback=validate_label, help="Label size in mm, e.g. 40x30")
@click.option("--density", "-d", default=6, type=click.IntRange(1, 8), help="Print density (1-8, default 6)")
@click.pass_context
def test(ctx, label, density, **opts):
    """Print an alignment test pattern (border, corners, crosshair)."""

    @run_printer_command
    async def _test():
        printer = await open_printer(ctx, opts)
        try:
            profile = printer.profile
            size = canvas_size(profile, label)
            if size is None:
                # Rotated printers design in landscape; the head width is the label height
                size = (
                    (TEST_PATTERN_HEIGHT * 2, profile.width_px)
                    if profile.rotated
                    else (profile.width_px, TEST_PATTERN_HEIGHT)
                )
            click.echo(f"Printing test pattern ({size[0]}x{size[1]} px)...")
            pattern = create_test_pattern(*size)
            await printer.print_label(
                pattern, label, PrintOptions(density=density, dither=DitherMode.threshold())
            )
            click.echo("Test print complete!")
            click.echo("\nVerify:")
            click.echo("  - Border visible on all 4 edges (no clipping)")
            click.echo("  - Corner markers at label corners")
            click.echo("  - Center crosshair well-centered")
        finally:
            await printer.disconnect()

    _test()


@main.command("density-test")
@connection_options
@click.pass_context
def density_test(ctx, **opts):
    """Print eight strips from lightest (1) to darkest (8) density."""

    @run_printer_command
    async def _density_test():
        printer = await open_printer(ctx, opts)
        try:
            click.echo("Printing density test...")
            await printer.print_density_test(
                on_strip=lambda level, levels: click.echo(f"  Strip {level}/{levels}")
            )
            click.echo("Density test complete! Pick the lightest strip that prints solid.")
        finally:
            await printer.disconnect()

    _density_test()


@main.command("map")
@click.argument("name", required=False)
@click.argument("model", required=False)
@click.option("--forget", is_flag=True, help="Remove the remembered model for NAME")
def map_device(name, model, forget):
    """Remember which model a device NAME is, or list remembered devices."""
    registry = ProfileRegistry(DeviceMapping())

    if name is None:
        if not registry.mapping:
            click.echo("No remembered devices.")
        for device_name, device_model in sorted(registry.mapping.items()):
            click.echo(f"  {device_name} -> {device_model}")
        return

    if forget:
        if registry.forget(name):
            click.echo(f"Forgot {name}")
        else:
            click.echo(f"{name} was not remembered", err=True)
            sys.exit(1)
        return

    if model is None:
        raise click.UsageError("MODEL is required (or use --forget)")

    try:
        profile = registry.remember(name, model)
    except PrinterError as e:
        click.echo(str(e), err=True)
        sys.exit(1)
    click.echo(f"Remembered {name} as {profile.model}")


if __name__ == "__main__":
    main()
