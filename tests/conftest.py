"""
Pytest configuration for PPA6 printer tests.

Provides an in-memory fake printer plus the command-line option and
marker for tests against real hardware.
"""

import asyncio
from typing import Optional

import pytest

from ppa6.connection import Transport
from ppa6.errors import CorruptFrameError
from ppa6.protocol import (
    Feed,
    FrameDecoder,
    Print,
    ProtocolProfile,
    QueryInfo,
    QueryStatus,
    Reset,
    SetHeat,
    encode,
    frame_name,
)
from ppa6.responses import Ack, InfoField, InfoReply, Nak, NakReason, StatusReport
from ppa6.session import Session


def pytest_addoption(parser):
    """Add command-line options for hardware tests."""
    parser.addoption(
        "--device",
        action="store",
        default=None,
        help="Printer device for hardware tests (serial port or Bluetooth address)",
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--device"):
        return
    skip = pytest.mark.skip(reason="No printer device provided (use --device=/dev/rfcomm0)")
    for item in items:
        if "hardware" in item.keywords:
            item.add_marker(skip)


@pytest.fixture
def printer_device(request):
    """Get the printer device from command line."""
    return request.config.getoption("--device")


class FakePrinter(Transport):
    """
    In-memory PPA6 printer.

    Decodes every frame the host writes, applies it to its own state and
    queues the reply the real device would send. Knobs let tests lose,
    corrupt or reject replies and run out of paper.
    """

    def __init__(self, profile: Optional[ProtocolProfile] = None):
        self.profile = profile or ProtocolProfile()
        self.decoder = FrameDecoder(self.profile)
        self.received: list = []
        self.printed_rows: list[bytes] = []
        self.lines_printed = 0
        self.fed_lines = 0
        self.heat: Optional[int] = None
        self.resets = 0

        self.paper_present = True
        self.over_temperature = False
        self.battery_level = 87
        self.info = {
            InfoField.NAME: "PPA6-TEST",
            InfoField.SERIAL: "A6-000123",
            InfoField.FIRMWARE: "V2.1.7",
            InfoField.HARDWARE: "HW1.0",
            InfoField.MAC: "AA:BB:CC:DD:EE:FF",
            InfoField.IP: "",
        }

        # Fault injection
        self.drop_acks: dict[str, int] = {}  # frame name -> ACKs to lose (command still applied)
        self.nak_next = 0
        self.corrupt_replies = 0
        self.reply_noise = b""  # line noise sent ahead of every reply
        self.write_errors = 0
        self.silent_after: Optional[int] = None  # stop answering after N frames
        self.paper_out_after_rows: Optional[int] = None

        self.connected = True
        self._replies: asyncio.Queue = asyncio.Queue()

    @property
    def received_names(self) -> list[str]:
        return [frame_name(f) for f in self.received]

    def frames(self, cls) -> list:
        return [f for f in self.received if isinstance(f, cls)]

    def status(self) -> StatusReport:
        return StatusReport(
            paper_present=self.paper_present,
            over_temperature=self.over_temperature,
            battery_level=self.battery_level,
            lines_printed=self.lines_printed,
        )

    # --- Transport ---

    async def write(self, data: bytes) -> None:
        if not self.connected:
            raise OSError("not connected")
        if self.write_errors:
            self.write_errors -= 1
            raise OSError("write failed")
        for item in self.decoder.feed(data):
            if isinstance(item, CorruptFrameError):
                continue
            self.received.append(item)
            self._handle(item)

    async def read(self, timeout: float) -> bytes:
        try:
            return await asyncio.wait_for(self._replies.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return b""

    async def close(self) -> None:
        self.connected = False

    @property
    def is_connected(self) -> bool:
        return self.connected

    # --- Device behaviour ---

    def _handle(self, cmd):
        if self.silent_after is not None and len(self.received) > self.silent_after:
            return

        if isinstance(cmd, QueryStatus):
            self._reply(self.status())
            return
        if isinstance(cmd, QueryInfo):
            self._reply(InfoReply(cmd.field, self.info.get(cmd.field, "")))
            return

        opcode = self.profile.opcode(cmd.name)
        if self.nak_next:
            self.nak_next -= 1
            self._reply(Nak(opcode, NakReason.BUSY))
            return

        if isinstance(cmd, Print):
            if self.paper_present:
                self.printed_rows.extend(cmd.rows)
                self.lines_printed += len(cmd.rows)
                if self.paper_out_after_rows is not None and self.lines_printed >= self.paper_out_after_rows:
                    self.paper_present = False
        elif isinstance(cmd, Feed):
            self.fed_lines += cmd.lines
        elif isinstance(cmd, SetHeat):
            self.heat = cmd.level
        elif isinstance(cmd, Reset):
            self.resets += 1

        if self.drop_acks.get(cmd.name):
            self.drop_acks[cmd.name] -= 1
            return
        if self.profile.explicit_ack:
            self._reply(Ack(opcode, cmd.seq if isinstance(cmd, Print) else 0))

    def _reply(self, frame):
        data = bytearray(encode(frame, self.profile))
        if self.corrupt_replies:
            self.corrupt_replies -= 1
            data[-3] ^= 0xFF  # checksum byte
        self._replies.put_nowait(self.reply_noise + bytes(data))


@pytest.fixture
def profile():
    """Default profile with a short ACK timeout so lost replies fail fast."""
    return ProtocolProfile(ack_timeout=0.05)


@pytest.fixture
def fake_printer(profile):
    return FakePrinter(profile)


@pytest.fixture
def session(fake_printer, profile):
    return Session(fake_printer, profile, retry_delay=0.001)
