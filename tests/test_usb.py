"""Tests for the USB transport."""

from unittest.mock import MagicMock

import pytest
import usb.core

from phomymo.connection import ConnectionState
from phomymo.errors import ConnectionError, WriteError
from phomymo.usb import (
    DEFAULT_PRODUCT_ID,
    DEFAULT_VENDOR_ID,
    USBConnection,
    USBDeviceInfo,
    parse_usb_id,
)


def make_interface(number, cls):
    intf = MagicMock()
    intf.bInterfaceNumber = number
    intf.bInterfaceClass = cls
    return intf


@pytest.fixture
def usb_device():
    """A printer with a vendor interface and a printer-class interface."""
    device = MagicMock()
    device.get_active_configuration.return_value = [
        make_interface(0, 0xFF),
        make_interface(1, 7),
    ]
    device.is_kernel_driver_active.return_value = False
    return device


@pytest.fixture
def endpoint():
    ep = MagicMock()
    ep.bEndpointAddress = 0x02
    return ep


@pytest.fixture
def usb_bus(mocker, usb_device, endpoint):
    """Patch pyusb so the fake device is the one found."""
    bus = MagicMock()
    bus.find = mocker.patch("usb.core.find", return_value=usb_device)
    bus.claim_interface = mocker.patch("usb.util.claim_interface")
    bus.release_interface = mocker.patch("usb.util.release_interface")
    bus.dispose_resources = mocker.patch("usb.util.dispose_resources")
    bus.find_descriptor = mocker.patch("usb.util.find_descriptor", return_value=endpoint)
    return bus


class TestParseUsbId:
    """Test vendor/product id parsing."""

    def test_hex_string(self):
        assert parse_usb_id("0x0483", 0) == 0x0483

    def test_decimal_string(self):
        assert parse_usb_id("1155", 0) == 1155

    def test_default(self):
        assert parse_usb_id(None, 0x5740) == 0x5740

    def test_int(self):
        assert parse_usb_id(0x1234, 0) == 0x1234

    def test_invalid(self):
        with pytest.raises(ValueError):
            parse_usb_id("printer", 0)


class TestUSBConnection:
    """Test USB connect, send and disconnect."""

    def test_defaults(self):
        conn = USBConnection()
        assert conn.vendor_id == DEFAULT_VENDOR_ID
        assert conn.product_id == DEFAULT_PRODUCT_ID
        assert conn.chunk_size == 512

    @pytest.mark.asyncio
    async def test_connect_prefers_printer_interface(self, usb_bus, usb_device, endpoint):
        conn = USBConnection()
        await conn.connect()

        assert conn.is_connected
        assert conn.interface_number == 1
        assert conn.endpoint is endpoint
        assert conn.device_name == "USB 0483:5740"
        usb_bus.find.assert_called_with(idVendor=0x0483, idProduct=0x5740)

    @pytest.mark.asyncio
    async def test_connect_detaches_kernel_driver(self, usb_bus, usb_device):
        usb_device.is_kernel_driver_active.return_value = True
        await USBConnection().connect()
        usb_device.detach_kernel_driver.assert_called_once_with(1)

    @pytest.mark.asyncio
    async def test_connect_configures_unconfigured_device(self, usb_bus, usb_device):
        interfaces = usb_device.get_active_configuration.return_value
        usb_device.get_active_configuration.side_effect = [
            usb.core.USBError("not configured"),
            interfaces,
        ]
        await USBConnection().connect()
        usb_device.set_configuration.assert_called_once()

    @pytest.mark.asyncio
    async def test_device_not_found(self, mocker):
        other = MagicMock(idVendor=0x1234, idProduct=0x0001, bus=1, address=4)

        def find(find_all=False, **kwargs):
            return iter([other]) if find_all else None

        mocker.patch("usb.core.find", side_effect=find)
        conn = USBConnection()

        with pytest.raises(ConnectionError, match="not found") as exc_info:
            await conn.connect()

        assert exc_info.value.devices == ["Vendor ID: 0x1234, Product ID: 0x0001"]
        assert conn.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_missing_backend(self, mocker):
        mocker.patch("usb.core.find", side_effect=usb.core.NoBackendError("No backend available"))
        conn = USBConnection()

        with pytest.raises(ConnectionError, match="No backend available"):
            await conn.connect()

        assert conn.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_endpoint_must_be_bulk_out(self, usb_bus):
        await USBConnection().connect()

        match = usb_bus.find_descriptor.call_args.kwargs["custom_match"]
        assert match(MagicMock(bEndpointAddress=0x02, bmAttributes=0x02))
        assert not match(MagicMock(bEndpointAddress=0x03, bmAttributes=0x03))  # interrupt
        assert not match(MagicMock(bEndpointAddress=0x81, bmAttributes=0x02))  # IN

    @pytest.mark.asyncio
    async def test_no_out_endpoint(self, usb_bus, mocker):
        mocker.patch("usb.util.find_descriptor", return_value=None)
        conn = USBConnection()
        with pytest.raises(ConnectionError, match="OUT endpoint"):
            await conn.connect()
        assert conn.device is None

    @pytest.mark.asyncio
    async def test_send(self, usb_bus, endpoint):
        conn = USBConnection()
        await conn.connect()
        await conn.send(b"\x1b\x40")
        endpoint.write.assert_called_once_with(b"\x1b\x40", USBConnection.WRITE_TIMEOUT)

    @pytest.mark.asyncio
    async def test_send_failure(self, usb_bus, endpoint):
        endpoint.write.side_effect = usb.core.USBError("pipe error")
        conn = USBConnection()
        await conn.connect()
        with pytest.raises(WriteError, match="USB write failed"):
            await conn.send(b"\x1b\x40")

    @pytest.mark.asyncio
    async def test_send_not_connected(self):
        with pytest.raises(WriteError):
            await USBConnection().send(b"\x00")

    @pytest.mark.asyncio
    async def test_disconnect_releases(self, usb_bus, usb_device):
        conn = USBConnection()
        await conn.connect()
        await conn.disconnect()

        usb_bus.release_interface.assert_called_once_with(usb_device, 1)
        usb_bus.dispose_resources.assert_called_once_with(usb_device)
        assert conn.state is ConnectionState.DISCONNECTED

    def test_device_info_str(self):
        assert str(USBDeviceInfo(0x0483, 0x5740)) == "Vendor ID: 0x0483, Product ID: 0x5740"

    @pytest.mark.asyncio
    async def test_disconnect_never_raises(self, usb_bus):
        conn = USBConnection()
        await conn.connect()
        usb_bus.release_interface.side_effect = ValueError("device gone")

        await conn.disconnect()

        assert conn.state is ConnectionState.DISCONNECTED
        assert conn.device is None
