"""
Pytest configuration for Phomymo printer tests.

Provides an in-memory transport, fixtures, and command-line options for
hardware tests.
"""

import asyncio

import pytest
import pytest_asyncio

from phomymo import PhomymoPrinter, ProfileRegistry
from phomymo.connection import ConnectionState, Transport
from phomymo.errors import WriteError


class RecordingTransport(Transport):
    """Transport that records every write instead of sending it."""

    def __init__(self, device_name="M260_AABB", fail_on_write=None, yield_on_send=False, **kwargs):
        super().__init__(**kwargs)
        self.advertised_name = device_name
        self.writes: list[bytes] = []
        self.chunked_calls = 0
        self.fail_on_write = fail_on_write
        self.yield_on_send = yield_on_send

    async def connect(self, *args, **kwargs):
        self.device_name = self.advertised_name
        self.state = ConnectionState.CONNECTED

    async def send(self, data):
        if self.fail_on_write is not None and len(self.writes) + 1 == self.fail_on_write:
            raise WriteError("simulated write failure")
        self.writes.append(bytes(data))
        if self.yield_on_send:
            # One event loop turn; asyncio.sleep is patched out in most tests
            loop = asyncio.get_running_loop()
            fut = loop.create_future()
            loop.call_soon(fut.set_result, None)
            await fut

    async def send_chunked(self, data, chunk_size=None, delay_ms=None, on_progress=None):
        self.chunked_calls += 1
        return await super().send_chunked(data, chunk_size, 0, on_progress)

    async def disconnect(self):
        self.state = ConnectionState.DISCONNECTED


def pytest_addoption(parser):
    """Add command-line options for hardware tests."""
    parser.addoption(
        "--address",
        action="store",
        default=None,
        help="Bluetooth address of the printer for hardware tests",
    )


def pytest_collection_modifyitems(config, items):
    """Skip tests marked as hardware unless an address was given."""
    if config.getoption("--address"):
        return
    skip = pytest.mark.skip(reason="No printer address provided (use --address=XX:XX:XX:XX:XX:XX)")
    for item in items:
        if "hardware" in item.keywords:
            item.add_marker(skip)


@pytest.fixture
def printer_address(request):
    """Get the printer address from command line."""
    address = request.config.getoption("--address")
    if address is None:
        pytest.skip("No printer address provided (use --address=XX:XX:XX:XX:XX:XX)")
    return address


@pytest.fixture
def transport():
    """A connected-on-demand transport that records writes."""
    return RecordingTransport()


@pytest.fixture
def no_sleep(mocker):
    """Skip the pacing delays between commands and records."""
    return mocker.patch("phomymo.printer.asyncio.sleep", new=mocker.AsyncMock())


@pytest.fixture
def registry():
    """Profile registry with an in-memory device mapping."""
    return ProfileRegistry({})


@pytest_asyncio.fixture
async def connected_printer(printer_address):
    """Provide a printer connected over BLE."""
    printer = PhomymoPrinter(registry=ProfileRegistry({}))
    printer.set_debug(True)

    await printer.connect(printer_address)
    if printer.profile is None:
        pytest.skip(f"Printer at {printer_address} has an unrecognized name")

    yield printer

    await printer.disconnect()
