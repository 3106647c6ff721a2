"""
Byte-stream transports for the PPA6 printer.

A Transport is an opened, full-duplex byte stream. The Session takes
exclusive ownership of one; nothing else reads or writes it afterwards.

    SerialTransport  RFCOMM tty, USB serial or any pyserial URL (pyserial)
    FileTransport    USB printer-class device node (/dev/usb/lp0)
    BLETransport     Bluetooth Low Energy UART-style service (bleak)
"""

import abc
import asyncio
import logging
import re
import select
import time
from dataclasses import dataclass
from typing import BinaryIO, Optional

import serial
from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic

from .errors import TransportError

logger = logging.getLogger(__name__)

# Bluetooth MAC address format: XX:XX:XX:XX:XX:XX (hex pairs separated by colons)
BLUETOOTH_MAC_PATTERN = re.compile(r"^([0-9A-Fa-f]{2}:){5}[0-9A-Fa-f]{2}$")

# USB printer class nodes: /dev/usb/lp0, /dev/usblp0
USB_LP_PATTERN = re.compile(r"^/dev/(usb/lp|usblp)\d+$")

# Explicit device-file prefix for anything else (FIFOs, other printer nodes)
FILE_PREFIX = "file:"

# macOS CoreBluetooth UUID format: XXXXXXXX-XXXX-XXXX-XXXX-XXXXXXXXXXXX
MACOS_UUID_PATTERN = re.compile(
    r"^[0-9A-Fa-f]{8}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{12}$"
)


class Transport(abc.ABC):
    """Opened byte stream to one printer."""

    @abc.abstractmethod
    async def write(self, data: bytes) -> None:
        """Write all bytes. Raises OSError if the link is gone."""

    @abc.abstractmethod
    async def read(self, timeout: float) -> bytes:
        """Return whatever bytes arrive within timeout, or b"" on timeout."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Release the underlying connection."""

    @property
    @abc.abstractmethod
    def is_connected(self) -> bool:
        """Check if the link is still up."""


class SerialTransport(Transport):
    """Transport over a serial port (e.g. /dev/rfcomm0, /dev/ttyUSB0, loop://)."""

    DEFAULT_BAUD_RATE = 115200
    READ_SIZE = 256

    def __init__(self, port: serial.SerialBase):
        self._port = port

    @classmethod
    def open(cls, url: str, baudrate: int = DEFAULT_BAUD_RATE) -> "SerialTransport":
        """Open a serial device or pyserial URL."""
        try:
            port = serial.serial_for_url(url, baudrate=baudrate, timeout=0)
        except (serial.SerialException, ValueError) as e:
            raise TransportError(f"Cannot open {url}: {e}") from e
        logger.info("Opened serial transport %s at %d baud", url, baudrate)
        return cls(port)

    async def write(self, data: bytes) -> None:
        try:
            await asyncio.to_thread(self._write_all, data)
        except serial.SerialException as e:
            raise OSError(f"Serial write failed: {e}") from e

    def _write_all(self, data: bytes):
        self._port.write(data)
        self._port.flush()

    async def read(self, timeout: float) -> bytes:
        try:
            return await asyncio.to_thread(self._read_some, timeout)
        except serial.SerialException as e:
            raise OSError(f"Serial read failed: {e}") from e

    def _read_some(self, timeout: float) -> bytes:
        self._port.timeout = timeout
        first = self._port.read(1)
        if not first:
            return b""
        # Drain whatever else is already buffered
        waiting = self._port.in_waiting
        return first + (self._port.read(min(waiting, self.READ_SIZE)) if waiting else b"")

    async def close(self) -> None:
        if self._port.is_open:
            self._port.close()

    @property
    def is_connected(self) -> bool:
        return self._port.is_open


class FileTransport(Transport):
    """Transport over a printer character device (e.g. /dev/usb/lp0)."""

    READ_SIZE = 256

    def __init__(self, file: BinaryIO, path: str = ""):
        self._file = file
        self.path = path

    @classmethod
    def open(cls, path: str) -> "FileTransport":
        try:
            file = open(path, "r+b", buffering=0)
        except OSError as e:
            raise TransportError(f"Cannot open {path}: {e}") from e
        logger.info("Opened device file %s", path)
        return cls(file, path)

    async def write(self, data: bytes) -> None:
        if self._file.closed:
            raise OSError(f"{self.path} is closed")
        await asyncio.to_thread(self._write_all, data)

    def _write_all(self, data: bytes):
        view = memoryview(data)
        while view:
            written = self._file.write(view)
            view = view[written or 0:]

    async def read(self, timeout: float) -> bytes:
        if self._file.closed:
            raise OSError(f"{self.path} is closed")
        return await asyncio.to_thread(self._read_some, timeout)

    def _read_some(self, timeout: float) -> bytes:
        ready, _, _ = select.select([self._file], [], [], timeout)
        if not ready:
            return b""
        data = self._file.read(self.READ_SIZE)
        if not data:
            # End of file: nothing more will arrive within this timeout
            time.sleep(timeout)
            return b""
        return data

    async def close(self) -> None:
        self._file.close()

    @property
    def is_connected(self) -> bool:
        return not self._file.closed


@dataclass
class PrinterInfo:
    """Information about a discovered printer.

    Attributes:
        name: Device advertised name (e.g., "PeriPage_A6_1234")
        address: MAC address on Linux/Windows, CoreBluetooth UUID on macOS
        rssi: Signal strength in dB
    """
    name: str
    address: str
    rssi: int

    def __str__(self) -> str:
        return f"{self.name} [{self.address}] RSSI: {self.rssi} dB"


class BLETransport(Transport):
    """Transport over a BLE write/notify characteristic pair."""

    # Known device name patterns
    DEVICE_PATTERNS = ["PPA6", "PERIPAGE", "A6"]

    # Response queue limits (prevent memory exhaustion from misbehaving devices)
    MAX_QUEUE_SIZE = 100  # Maximum number of queued notifications
    MAX_RESPONSE_SIZE = 4096  # Maximum size of a single notification (bytes)

    # Default write size; raised to the negotiated MTU after connecting
    DEFAULT_CHUNK_SIZE = 100

    def __init__(self):
        self.client: Optional[BleakClient] = None
        self.write_char: Optional[str] = None
        self.notify_char: Optional[str] = None
        self.chunk_size = self.DEFAULT_CHUNK_SIZE
        self._response_queue: asyncio.Queue = asyncio.Queue()

    @classmethod
    async def scan(cls, timeout: float = 10.0) -> list[PrinterInfo]:
        """Scan for PPA6 printers, strongest signal first."""
        printers = []
        devices = await BleakScanner.discover(timeout=timeout, return_adv=True)

        for device, adv_data in devices.values():
            name = device.name or adv_data.local_name or ""
            if any(pattern in name.upper() for pattern in cls.DEVICE_PATTERNS):
                printers.append(PrinterInfo(
                    name=name,
                    address=device.address,
                    rssi=adv_data.rssi if adv_data.rssi is not None else -100,
                ))

        return sorted(printers, key=lambda p: p.rssi, reverse=True)

    @classmethod
    async def open(cls, address: str) -> "BLETransport":
        """Connect to a printer by address."""
        transport = cls()
        await transport.connect(address)
        return transport

    async def connect(self, address: str):
        self.client = BleakClient(address)

        try:
            await self.client.connect()
            self._discover_characteristics()
            if not self.write_char:
                raise TransportError(f"No writable characteristic on {address}")

            if self.notify_char:
                await self.client.start_notify(self.notify_char, self._handle_notification)

            mtu = getattr(self.client, "mtu_size", None)
            if mtu:
                # MTU includes 3 bytes of ATT overhead
                self.chunk_size = max(mtu - 3, self.DEFAULT_CHUNK_SIZE)
        except TransportError:
            await self.close()
            raise
        except Exception as e:
            await self.close()
            raise TransportError(f"Connection to {address} failed: {e}") from e

        logger.info("Connected to %s (write %s, notify %s)", address, self.write_char, self.notify_char)

    def _discover_characteristics(self):
        """Find write and notify characteristics."""
        for service in self.client.services:
            for char in service.characteristics:
                props = char.properties

                if "write" in props or "write-without-response" in props:
                    if not self.write_char:
                        self.write_char = char.uuid
                        logger.debug("Found write characteristic: %s", char.uuid)

                if "notify" in props or "indicate" in props:
                    if not self.notify_char:
                        self.notify_char = char.uuid
                        logger.debug("Found notify characteristic: %s", char.uuid)

    def _handle_notification(self, sender: BleakGATTCharacteristic, data: bytearray):
        """Handle incoming notifications from the printer."""
        if len(data) > self.MAX_RESPONSE_SIZE:
            logger.warning("Dropping oversized notification (%d bytes)", len(data))
            return

        # If queue is full, drop oldest item
        if self._response_queue.qsize() >= self.MAX_QUEUE_SIZE:
            try:
                self._response_queue.get_nowait()
            except asyncio.QueueEmpty:
                pass

        self._response_queue.put_nowait(bytes(data))

    async def write(self, data: bytes) -> None:
        if not self.is_connected or not self.write_char:
            raise OSError("BLE link is not connected")

        for i in range(0, len(data), self.chunk_size):
            try:
                await self.client.write_gatt_char(
                    self.write_char,
                    data[i:i + self.chunk_size],
                    response=False,
                )
            except Exception as e:
                raise OSError(f"BLE write failed at offset {i}: {e}") from e

    async def read(self, timeout: float) -> bytes:
        try:
            return await asyncio.wait_for(self._response_queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return b""

    async def close(self) -> None:
        if self.client and self.client.is_connected:
            if self.notify_char:
                try:
                    await self.client.stop_notify(self.notify_char)
                except Exception as e:
                    logger.debug("stop_notify failed: %s", e)
            await self.client.disconnect()
        self.client = None
        self.write_char = None
        self.notify_char = None

    @property
    def is_connected(self) -> bool:
        return self.client is not None and self.client.is_connected


def is_bluetooth_address(device: str) -> bool:
    return bool(BLUETOOTH_MAC_PATTERN.match(device) or MACOS_UUID_PATTERN.match(device))


async def open_transport(device: str, baudrate: int = SerialTransport.DEFAULT_BAUD_RATE) -> Transport:
    """
    Open a transport for a device string.

    A Bluetooth MAC or macOS UUID opens a BLE link. A /dev/usb/lpN node, or
    any path prefixed with "file:", is written as a plain device file.
    Anything else is taken as a serial port path or pyserial URL.
    """
    if is_bluetooth_address(device):
        return await BLETransport.open(device.upper())
    if device.startswith(FILE_PREFIX):
        return FileTransport.open(device[len(FILE_PREFIX):])
    if USB_LP_PATTERN.match(device):
        return FileTransport.open(device)
    return SerialTransport.open(device, baudrate=baudrate)
