"""
Transports for Phomemo Printers.

A transport moves bytes to the printer and nothing else: it knows nothing
about ESC/POS or TSPL. The BLE transport uses the Bleak library; the USB
transport lives in usb.py.
"""

import asyncio
import logging
import platform
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.exc import BleakError

from .errors import ConnectionError, WriteError
from .profiles import DEVICE_PATTERNS

logger = logging.getLogger(__name__)

# Bluetooth base UUID tail shared by all 16-bit assigned UUIDs
BASE_UUID_SUFFIX = "00001000800000805f9b34fb"

ProgressCallback = Callable[[int, int, int], None]


def normalize_uuid(uuid: str) -> str:
    """Lowercase, dashes removed."""
    return uuid.lower().replace("-", "")


def short_uuid(uuid: str) -> str:
    """
    Short form of a UUID: "0000ff02-0000-1000-8000-00805f9b34fb" -> "ff02".

    UUIDs outside the Bluetooth base range are returned normalized.
    """
    normalized = normalize_uuid(uuid)
    if (
        len(normalized) == 32
        and normalized.startswith("0000")
        and normalized.endswith(BASE_UUID_SUFFIX)
    ):
        return normalized[4:8]
    return normalized


def uuid_matches(a: str, b: str) -> bool:
    """True if two UUIDs name the same attribute, in short or long form."""
    return short_uuid(a) == short_uuid(b)


def hex_preview(data: bytes, limit: int = 50) -> str:
    """Hex dump for debug logs, truncated to limit bytes."""
    text = data[:limit].hex(" ")
    if len(data) > limit:
        text += f" ... ({len(data)} bytes)"
    return text


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class Transport(ABC):
    """
    Base class for printer transports.

    Subclasses implement connect(), send() and disconnect(); chunked sending
    with pacing and progress reporting is shared.
    """

    DEFAULT_CHUNK_SIZE = 512
    DEFAULT_CHUNK_DELAY_MS = 20

    def __init__(self, chunk_size: Optional[int] = None, chunk_delay_ms: Optional[float] = None):
        self.chunk_size = chunk_size or self.DEFAULT_CHUNK_SIZE
        self.chunk_delay_ms = (
            self.DEFAULT_CHUNK_DELAY_MS if chunk_delay_ms is None else chunk_delay_ms
        )
        self.state = ConnectionState.DISCONNECTED
        self.device_name: Optional[str] = None
        self._write_lock = asyncio.Lock()
        # Held by the print job that owns the session
        self.job_lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @abstractmethod
    async def connect(self, *args, **kwargs) -> None:
        """Open the session. Raises ConnectionError on failure."""

    @abstractmethod
    async def send(self, data: bytes) -> None:
        """Write one buffer to the printer. Raises WriteError on failure."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the session. Never raises."""

    async def send_chunked(
        self,
        data: bytes,
        chunk_size: Optional[int] = None,
        delay_ms: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> int:
        """
        Write data in chunks.

        Args:
            data: Data to write
            chunk_size: Maximum bytes per write (default: transport's chunk_size)
            delay_ms: Pause between writes, not after the last one
            on_progress: Called as (chunk_index, total_chunks, bytes_sent)
                after each write; chunk_index starts at 1

        Returns:
            Number of writes performed

        Raises:
            WriteError: If any write fails; later chunks are not sent
        """
        chunk_size = chunk_size or self.chunk_size
        if chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive, got {chunk_size}")
        delay_ms = self.chunk_delay_ms if delay_ms is None else delay_ms

        total_chunks = (len(data) + chunk_size - 1) // chunk_size

        async with self._write_lock:
            for chunk_num, start in enumerate(range(0, len(data), chunk_size), start=1):
                chunk = data[start:start + chunk_size]
                await self.send(chunk)
                sent = start + len(chunk)

                if on_progress:
                    on_progress(chunk_num, total_chunks, sent)

                # Small delay between chunks to avoid overwhelming the printer
                if delay_ms > 0 and sent < len(data):
                    await asyncio.sleep(delay_ms / 1000.0)

        return total_chunks


@dataclass
class PrinterInfo:
    """Information about a discovered printer.

    Attributes:
        name: Device advertised name (e.g., "M260_AABB")
        address: Platform-specific identifier for connecting:
            - MAC address (XX:XX:XX:XX:XX:XX) on Linux/Windows
            - UUID on macOS (CoreBluetooth privacy feature)
        mac_address: Actual MAC address if extractable from advertisement data.
            On Linux/Windows, this matches address. On macOS, this may be
            extracted from manufacturer data if the device broadcasts it.
        rssi: Signal strength in dB
    """
    name: str
    address: str
    rssi: int
    mac_address: Optional[str] = None

    def __str__(self) -> str:
        if self.mac_address and self.mac_address != self.address:
            # macOS case: show MAC prominently, UUID secondary
            return (
                f"{self.name} [{self.mac_address}] RSSI: {self.rssi} dB\n"
                f"            (macOS UUID: {self.address})"
            )
        return f"{self.name} [{self.address}] RSSI: {self.rssi} dB"


@dataclass
class ServiceInfo:
    """Information about a GATT service and its characteristics."""
    service_uuid: str
    characteristics: list[dict]


def looks_like_printer(name: str) -> bool:
    """True if an advertised name belongs to a supported printer."""
    if not name:
        return False
    if any(pattern.search(name) for pattern, _ in DEVICE_PATTERNS):
        return True
    lowered = name.lower()
    return any(hint in lowered for hint in BLEConnection.NAME_HINTS)


class BLEConnection(Transport):
    """Manages BLE connection to a Phomemo printer."""

    DEFAULT_CHUNK_SIZE = 128
    DEFAULT_CHUNK_DELAY_MS = 20

    # Seconds
    ADAPTER_TIMEOUT = 10.0
    DEFAULT_SCAN_TIMEOUT = 15.0
    DEFAULT_CONNECT_TIMEOUT = 30.0

    # GATT connect retries; the delay doubles after each failure
    MAX_RETRIES = 1
    INITIAL_RETRY_DELAY_MS = 300

    # Name fragments accepted in addition to the model patterns
    NAME_HINTS = ("phomemo", "printer")

    # Response queue limits (security: prevent memory exhaustion from malicious devices)
    MAX_QUEUE_SIZE = 100  # Maximum number of queued notifications
    MAX_RESPONSE_SIZE = 4096  # Maximum size of a single notification (bytes)

    # Phomemo vendor service: write on ff02, notify on ff03
    SERVICE_UUID = "0000ff00-0000-1000-8000-00805f9b34fb"
    CHAR_WRITE = "0000ff02-0000-1000-8000-00805f9b34fb"
    CHAR_NOTIFY = "0000ff03-0000-1000-8000-00805f9b34fb"

    def __init__(
        self,
        service_uuid: Optional[str] = None,
        write_uuid: Optional[str] = None,
        notify_uuid: Optional[str] = None,
        chunk_size: Optional[int] = None,
        chunk_delay_ms: Optional[float] = None,
        retries: int = MAX_RETRIES,
        retry_delay_ms: float = INITIAL_RETRY_DELAY_MS,
    ):
        super().__init__(chunk_size, chunk_delay_ms)
        self.retries = retries
        self.retry_delay_ms = retry_delay_ms
        self.service_uuid = service_uuid or self.SERVICE_UUID
        self.write_uuid = write_uuid or self.CHAR_WRITE
        self.notify_uuid = notify_uuid or self.CHAR_NOTIFY
        self.client: Optional[BleakClient] = None
        self.device: Optional[BLEDevice] = None
        self.write_char: Optional[str] = None
        self.notify_char: Optional[str] = None
        self._write_response = False
        self._response_queue: asyncio.Queue = asyncio.Queue()

    @staticmethod
    def _is_macos() -> bool:
        """Check if running on macOS."""
        return platform.system() == "Darwin"

    @staticmethod
    def _extract_mac_from_manufacturer_data(
        manufacturer_data: dict[int, bytes]
    ) -> Optional[str]:
        """Extract MAC address from manufacturer data if present.

        Many Chinese BLE devices embed their MAC address in the manufacturer
        data, typically as 6 bytes (sometimes reversed).

        Args:
            manufacturer_data: Dict mapping company ID to data bytes

        Returns:
            MAC address in XX:XX:XX:XX:XX:XX format, or None if not found
        """
        invalid = ("00:00:00:00:00:00", "FF:FF:FF:FF:FF:FF")
        for data in manufacturer_data.values():
            if len(data) < 6:
                continue
            # First 6 bytes, last 6 bytes, then little-endian first 6
            candidates = [data[:6]]
            if len(data) > 6:
                candidates.append(data[-6:])
            candidates.append(data[:6][::-1])
            for mac_bytes in candidates:
                mac = ":".join(f"{b:02X}" for b in mac_bytes)
                if mac not in invalid:
                    return mac
        return None

    @classmethod
    async def _discover(cls, timeout: float) -> list[PrinterInfo]:
        """Every named device in range, strongest signal first."""
        try:
            devices = await asyncio.wait_for(
                BleakScanner.discover(timeout=timeout, return_adv=True),
                timeout=timeout + cls.ADAPTER_TIMEOUT,
            )
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            raise ConnectionError(
                f"Bluetooth adapter not available, make sure Bluetooth is enabled ({e})"
            ) from e

        is_macos = cls._is_macos()
        found = []

        for device, adv_data in devices.values():
            name = device.name or adv_data.local_name or ""
            if not name:
                continue

            mac_address: Optional[str] = None
            if is_macos:
                # On macOS, device.address is a UUID, try to extract real MAC
                if adv_data.manufacturer_data:
                    mac_address = cls._extract_mac_from_manufacturer_data(
                        adv_data.manufacturer_data
                    )
            else:
                # On Linux/Windows, device.address is already the MAC
                mac_address = device.address

            found.append(PrinterInfo(
                name=name,
                address=device.address,
                rssi=adv_data.rssi if adv_data.rssi is not None else -100,
                mac_address=mac_address,
            ))

        return sorted(found, key=lambda p: p.rssi, reverse=True)

    @staticmethod
    def _filter(
        devices: list[PrinterInfo],
        name_filter: Optional[str] = None,
        show_all: bool = False,
    ) -> list[PrinterInfo]:
        if name_filter:
            return [d for d in devices if name_filter.lower() in d.name.lower()]
        if show_all:
            return list(devices)
        return [d for d in devices if looks_like_printer(d.name)]

    @classmethod
    async def scan(
        cls,
        timeout: float = DEFAULT_SCAN_TIMEOUT,
        show_all: bool = False,
        name_filter: Optional[str] = None,
    ) -> list[PrinterInfo]:
        """Scan for printers.

        On macOS, attempts to extract real MAC addresses from advertisement
        data since CoreBluetooth returns UUIDs instead of MAC addresses.

        Args:
            timeout: Scan duration in seconds
            show_all: Include every named device, not just known printers
            name_filter: Only devices whose name contains this text

        Returns:
            Matching devices, strongest signal first

        Raises:
            ConnectionError: If the Bluetooth adapter is unavailable
        """
        return cls._filter(await cls._discover(timeout), name_filter, show_all)

    async def connect(
        self,
        address: Optional[str] = None,
        name_filter: Optional[str] = None,
        show_all: bool = False,
        scan_timeout: float = DEFAULT_SCAN_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    ) -> None:
        """
        Connect to a printer.

        A failed GATT connection is retried up to self.retries times, waiting
        retry_delay_ms and doubling it after each failure.

        Args:
            address: Device address; scans for the strongest printer if None
            name_filter: Only consider devices whose name contains this text
            show_all: Consider any named device when scanning
            scan_timeout: Scan duration in seconds
            connect_timeout: GATT connection timeout in seconds

        Raises:
            ConnectionError: If no device is found, the connection fails, or
                the write characteristic cannot be resolved
        """
        if self.state is not ConnectionState.DISCONNECTED:
            await self.disconnect()

        self.state = ConnectionState.CONNECTING
        try:
            await self._find_device(address, name_filter, show_all, scan_timeout)
            await self._open_with_retry(connect_timeout)
        except ConnectionError:
            await self.disconnect()
            raise
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            await self.disconnect()
            raise ConnectionError(f"Connection failed: {e}") from e

        self.state = ConnectionState.CONNECTED
        logger.info(f"Connected to {self.device_name or address}")

    async def _find_device(
        self,
        address: Optional[str],
        name_filter: Optional[str],
        show_all: bool,
        scan_timeout: float,
    ) -> None:
        if address is None:
            seen = await self._discover(scan_timeout)
            candidates = self._filter(seen, name_filter, show_all)
            if not candidates:
                raise ConnectionError(
                    "No printer found", devices=[d.name for d in seen]
                )
            target = candidates[0]
            logger.info(f"Selected printer: {target}")
            address = target.address

        self.device = await BleakScanner.find_device_by_address(address, timeout=scan_timeout)
        if self.device is None:
            raise ConnectionError(f"Printer {address} not found")
        self.device_name = self.device.name

    async def _open_with_retry(self, connect_timeout: float) -> None:
        """GATT connect, retried with exponential backoff (the device search is not)."""
        delay_ms = self.retry_delay_ms
        for attempt in range(self.retries + 1):
            try:
                await self._open(connect_timeout)
                return
            except (BleakError, OSError, asyncio.TimeoutError) as e:
                if attempt == self.retries:
                    raise
                logger.info(
                    f"Connection attempt {attempt + 1} failed: {e}. "
                    f"Retrying in {delay_ms}ms..."
                )
                await self._close_client()
                await asyncio.sleep(delay_ms / 1000.0)
                delay_ms *= 2

    async def _open(self, connect_timeout: float) -> None:
        self.client = BleakClient(self.device, timeout=connect_timeout)
        await self.client.connect()

        self._resolve_characteristics()

        # Printers ignore data until notifications are enabled
        if self.notify_char:
            await self.client.start_notify(self.notify_char, self._handle_notification)
        else:
            logger.debug("No notify characteristic found, continuing without")

    def _resolve_characteristics(self):
        """Find write and notify characteristics."""
        services = list(self.client.services)

        service = next(
            (s for s in services if uuid_matches(s.uuid, self.service_uuid)), None
        )
        if service is None:
            logger.warning(
                f"Service {short_uuid(self.service_uuid)} not found, "
                f"falling back to first writable characteristic"
            )
            search = services
        else:
            search = [service]

        chars = [c for s in search for c in s.characteristics]

        write_char = next((c for c in chars if uuid_matches(c.uuid, self.write_uuid)), None)
        if write_char is None:
            write_char = next(
                (c for c in chars
                 if "write" in c.properties or "write-without-response" in c.properties),
                None,
            )
        if write_char is None:
            raise ConnectionError(
                f"No writable characteristic found (wanted {short_uuid(self.write_uuid)})",
                services=[s.uuid for s in services],
            )

        notify_char = next((c for c in chars if uuid_matches(c.uuid, self.notify_uuid)), None)

        self.write_char = write_char.uuid
        self._write_response = "write-without-response" not in write_char.properties
        self.notify_char = notify_char.uuid if notify_char else None
        logger.debug(f"Write characteristic: {self.write_char}, notify: {self.notify_char}")

    async def disconnect(self):
        """Disconnect from the printer. Errors are logged, never raised."""
        await self._close_client()
        self.state = ConnectionState.DISCONNECTED

    async def _close_client(self):
        client = self.client
        if client is not None:
            try:
                if client.is_connected:
                    if self.notify_char:
                        await client.stop_notify(self.notify_char)
                    await client.disconnect()
            except Exception as e:
                logger.warning(f"Error during disconnect: {e}")
        self.client = None
        self.write_char = None
        self.notify_char = None

    def _handle_notification(self, sender: BleakGATTCharacteristic, data: bytearray):
        """Handle incoming notifications from the printer."""
        # Security: reject oversized responses
        if len(data) > self.MAX_RESPONSE_SIZE:
            return

        # Security: if queue is full, drop oldest item to prevent memory exhaustion
        if self._response_queue.qsize() >= self.MAX_QUEUE_SIZE:
            self._response_queue.get_nowait()

        self._response_queue.put_nowait(bytes(data))

    async def send(self, data: bytes) -> None:
        """Write data to the printer in a single GATT write."""
        if not self.client or not self.write_char or not self.is_connected:
            raise WriteError("Not connected to a BLE printer")

        logger.debug(f"TX {hex_preview(data)}")
        try:
            await self.client.write_gatt_char(
                self.write_char,
                data,
                response=self._write_response
            )
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            raise WriteError(f"BLE write failed: {e}") from e

    async def get_services(self) -> list[ServiceInfo]:
        """Get all services and characteristics (for discovery)."""
        if not self.client:
            return []

        services = []
        for service in self.client.services:
            chars = []
            for char in service.characteristics:
                chars.append({
                    "uuid": char.uuid,
                    "properties": list(char.properties),
                    "handle": char.handle,
                })
            services.append(ServiceInfo(
                service_uuid=service.uuid,
                characteristics=chars
            ))

        return services

    @property
    def is_connected(self) -> bool:
        """Check if currently connected."""
        return (
            self.state is ConnectionState.CONNECTED
            and self.client is not None
            and self.client.is_connected
        )
