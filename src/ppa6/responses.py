"""
Reply frames sent by the PPA6 printer.

Payload layouts (after the frame header has been stripped):

    STATUS  [flags:1][battery:1][lines_printed:4 LE]
    ACK     [opcode:1][tag:2 LE]
    NAK     [opcode:1][reason:1]
    INFO    [field:1][utf-8 text...]

The tag echoed in an ACK is the sequence number of the acknowledged Print
chunk, or 0 for every other command.
"""

from dataclasses import dataclass
from enum import IntEnum, IntFlag
from typing import Optional


class StatusFlag(IntFlag):
    """Fault and state bits of the status flags byte."""
    NONE = 0
    PAPER_OUT = 0x01
    OVER_TEMPERATURE = 0x02
    LOW_BATTERY = 0x04
    BUSY = 0x08


# Bits that make the printer unable to continue a job
FAULT_FLAGS = StatusFlag.PAPER_OUT | StatusFlag.OVER_TEMPERATURE


class InfoField(IntEnum):
    """Device information fields answered by QUERY_INFO."""
    NAME = 0x01
    SERIAL = 0x02
    FIRMWARE = 0x03
    HARDWARE = 0x04
    MAC = 0x05
    IP = 0x06


class NakReason(IntEnum):
    """Reasons the printer gives for rejecting a frame."""
    UNKNOWN = 0x00
    BAD_CHECKSUM = 0x01
    BAD_LENGTH = 0x02
    BUSY = 0x03
    UNSUPPORTED = 0x04


@dataclass(frozen=True)
class StatusReport:
    """
    Parsed STATUS reply.

    Attributes:
        paper_present: False when the paper roll is empty
        over_temperature: Print head too hot to fire
        low_battery: Battery below the firmware's warning level
        busy: Head is still firing previously received lines
        battery_level: Battery charge, 0-100 percent
        lines_printed: Running count of dot rows accepted since reset
    """

    paper_present: bool = True
    over_temperature: bool = False
    low_battery: bool = False
    busy: bool = False
    battery_level: int = 100
    lines_printed: int = 0

    SIZE = 6

    @classmethod
    def parse(cls, data: bytes) -> Optional["StatusReport"]:
        """
        Parse a STATUS payload.

        Args:
            data: Payload bytes (expected exactly 6 bytes)

        Returns:
            StatusReport instance or None if the payload is malformed
        """
        if len(data) != cls.SIZE:
            return None

        flags = StatusFlag(data[0] & 0x0F)
        battery = data[1]
        if battery > 100:
            return None

        return cls(
            paper_present=not flags & StatusFlag.PAPER_OUT,
            over_temperature=bool(flags & StatusFlag.OVER_TEMPERATURE),
            low_battery=bool(flags & StatusFlag.LOW_BATTERY),
            busy=bool(flags & StatusFlag.BUSY),
            battery_level=battery,
            lines_printed=int.from_bytes(data[2:6], "little"),
        )

    @property
    def flags(self) -> StatusFlag:
        flags = StatusFlag.NONE
        if not self.paper_present:
            flags |= StatusFlag.PAPER_OUT
        if self.over_temperature:
            flags |= StatusFlag.OVER_TEMPERATURE
        if self.low_battery:
            flags |= StatusFlag.LOW_BATTERY
        if self.busy:
            flags |= StatusFlag.BUSY
        return flags

    @property
    def faults(self) -> StatusFlag:
        """Subset of flags that must stop a print job."""
        return self.flags & FAULT_FLAGS

    @property
    def is_clean(self) -> bool:
        return not self.faults

    def to_bytes(self) -> bytes:
        return (
            bytes([int(self.flags), self.battery_level])
            + self.lines_printed.to_bytes(4, "little")
        )

    def __str__(self) -> str:
        paper = "ok" if self.paper_present else "OUT"
        temp = "HOT" if self.over_temperature else "ok"
        busy = " (busy)" if self.busy else ""
        low = " low" if self.low_battery else ""
        return (
            f"Paper: {paper}, head: {temp}, battery: {self.battery_level}%{low}, "
            f"lines: {self.lines_printed}{busy}"
        )


@dataclass(frozen=True)
class Ack:
    """Positive acknowledgement of one command."""

    opcode: int
    tag: int = 0

    SIZE = 3

    @classmethod
    def parse(cls, data: bytes) -> Optional["Ack"]:
        if len(data) != cls.SIZE:
            return None
        return cls(opcode=data[0], tag=int.from_bytes(data[1:3], "little"))

    def to_bytes(self) -> bytes:
        return bytes([self.opcode]) + (self.tag & 0xFFFF).to_bytes(2, "little")


@dataclass(frozen=True)
class Nak:
    """Negative acknowledgement; the command should be resent."""

    opcode: int
    reason: int = NakReason.UNKNOWN

    SIZE = 2

    @classmethod
    def parse(cls, data: bytes) -> Optional["Nak"]:
        if len(data) != cls.SIZE:
            return None
        return cls(opcode=data[0], reason=data[1])

    def to_bytes(self) -> bytes:
        return bytes([self.opcode, self.reason])


@dataclass(frozen=True)
class InfoReply:
    """Parsed INFO reply carrying one device information string."""

    field: InfoField
    value: str = ""

    @classmethod
    def parse(cls, data: bytes) -> Optional["InfoReply"]:
        if not data:
            return None
        try:
            info_field = InfoField(data[0])
            value = data[1:].decode("utf-8")
        except (ValueError, UnicodeDecodeError):
            return None
        return cls(field=info_field, value=value)

    def to_bytes(self) -> bytes:
        return bytes([self.field]) + self.value.encode("utf-8")
