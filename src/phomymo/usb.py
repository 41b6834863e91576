"""
USB Connection Handler for Phomemo Printers.

Uses pyusb. The library is blocking, so every device call runs in a worker
thread via asyncio.to_thread and the transport keeps the async interface.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import usb.core
import usb.util

from .connection import ConnectionState, Transport, hex_preview
from .errors import ConnectionError, WriteError

logger = logging.getLogger(__name__)

DEFAULT_VENDOR_ID = 0x0483
DEFAULT_PRODUCT_ID = 0x5740

# bInterfaceClass for USB printers
PRINTER_INTERFACE_CLASS = 7


def parse_usb_id(value, default: int) -> int:
    """Accept 0x-prefixed hex strings, decimal strings or ints."""
    if value is None:
        return default
    if isinstance(value, int):
        return value
    return int(value, 0)


@dataclass
class USBDeviceInfo:
    """A USB device seen on the bus."""
    vendor_id: int
    product_id: int
    bus: Optional[int] = None
    address: Optional[int] = None

    def __str__(self) -> str:
        return f"Vendor ID: 0x{self.vendor_id:04x}, Product ID: 0x{self.product_id:04x}"


class USBConnection(Transport):
    """Manages a USB connection to a Phomemo printer."""

    DEFAULT_CHUNK_SIZE = 512
    DEFAULT_CHUNK_DELAY_MS = 20

    # Milliseconds per bulk write
    WRITE_TIMEOUT = 5000

    def __init__(
        self,
        vendor_id=None,
        product_id=None,
        chunk_size: Optional[int] = None,
        chunk_delay_ms: Optional[float] = None,
    ):
        super().__init__(chunk_size, chunk_delay_ms)
        self.vendor_id = parse_usb_id(vendor_id, DEFAULT_VENDOR_ID)
        self.product_id = parse_usb_id(product_id, DEFAULT_PRODUCT_ID)
        self.device = None
        self.interface_number: Optional[int] = None
        self.endpoint = None

    @staticmethod
    def list_devices() -> list[USBDeviceInfo]:
        """All USB devices on the bus."""
        return [
            USBDeviceInfo(dev.idVendor, dev.idProduct, dev.bus, dev.address)
            for dev in usb.core.find(find_all=True)
        ]

    async def connect(self) -> None:
        """
        Open the printer and claim its interface.

        Raises:
            ConnectionError: If the device is missing, has no bulk OUT endpoint,
                or no USB backend (libusb) is available
        """
        if self.state is not ConnectionState.DISCONNECTED:
            await self.disconnect()

        self.state = ConnectionState.CONNECTING
        try:
            await asyncio.to_thread(self._open)
        except ConnectionError:
            await self.disconnect()
            raise
        except (usb.core.USBError, usb.core.NoBackendError, NotImplementedError) as e:
            # NoBackendError: libusb is not installed
            await self.disconnect()
            raise ConnectionError(f"USB connection failed: {e}") from e

        self.state = ConnectionState.CONNECTED
        logger.info(f"Connected to USB printer 0x{self.vendor_id:04x}:0x{self.product_id:04x}")

    def _open(self):
        self.device = usb.core.find(idVendor=self.vendor_id, idProduct=self.product_id)
        if self.device is None:
            raise ConnectionError(
                f"USB printer 0x{self.vendor_id:04x}:0x{self.product_id:04x} not found",
                devices=[str(d) for d in self.list_devices()],
            )
        self.device_name = f"USB {self.vendor_id:04x}:{self.product_id:04x}"

        try:
            cfg = self.device.get_active_configuration()
        except usb.core.USBError:
            # Unconfigured device
            self.device.set_configuration()
            cfg = self.device.get_active_configuration()

        interfaces = list(cfg)
        if not interfaces:
            raise ConnectionError("No interfaces found on the device")

        # Prefer the printer-class interface, else the first one
        intf = next(
            (i for i in interfaces if i.bInterfaceClass == PRINTER_INTERFACE_CLASS),
            interfaces[0],
        )
        self.interface_number = intf.bInterfaceNumber
        logger.debug(
            f"Using interface {intf.bInterfaceNumber} (class {intf.bInterfaceClass})"
        )

        try:
            if self.device.is_kernel_driver_active(self.interface_number):
                self.device.detach_kernel_driver(self.interface_number)
        except NotImplementedError:
            # Not supported on macOS/Windows backends
            pass

        try:
            usb.util.claim_interface(self.device, self.interface_number)
        except usb.core.USBError as e:
            logger.warning(f"Could not claim interface: {e}, attempting to proceed anyway")

        self.endpoint = usb.util.find_descriptor(
            intf,
            custom_match=lambda e: (
                usb.util.endpoint_direction(e.bEndpointAddress) == usb.util.ENDPOINT_OUT
                and usb.util.endpoint_type(e.bmAttributes) == usb.util.ENDPOINT_TYPE_BULK
            ),
        )
        if self.endpoint is None:
            raise ConnectionError("No bulk OUT endpoint found for sending data")
        logger.debug(f"Using OUT endpoint 0x{self.endpoint.bEndpointAddress:02x}")

    async def send(self, data: bytes) -> None:
        """Bulk-write data to the OUT endpoint."""
        if not self.is_connected or self.endpoint is None:
            raise WriteError("Not connected to a USB printer")

        logger.debug(f"TX {hex_preview(data)}")
        try:
            await asyncio.to_thread(self.endpoint.write, data, self.WRITE_TIMEOUT)
        except usb.core.USBError as e:
            raise WriteError(f"USB write failed: {e}") from e

    async def disconnect(self) -> None:
        """Release the interface. Errors are logged, never raised."""
        device = self.device
        if device is not None:
            try:
                if self.interface_number is not None:
                    await asyncio.to_thread(
                        usb.util.release_interface, device, self.interface_number
                    )
                await asyncio.to_thread(usb.util.dispose_resources, device)
            except Exception as e:
                logger.warning(f"Error during disconnect: {e}")
        self.device = None
        self.endpoint = None
        self.interface_number = None
        self.state = ConnectionState.DISCONNECTED
