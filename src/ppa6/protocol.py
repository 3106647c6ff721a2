"""
PPA6 Printer Protocol Implementation.

This module implements command encoding and streaming frame decoding for
the PPA6 thermal printer.

Frame Structure:
    Opcode:     1 byte, looked up in the protocol profile
    Length:     2 bytes, little-endian payload length
    Payload:    Length bytes
    Checksum:   Sum (mod 256) or CRC8 of Opcode through Payload
    Terminator: 2 fixed bytes (0xFE 0xEF by default)

The opcode table lives in a ProtocolProfile so the codec does not depend
on one firmware revision. A profile maps each frame name to its opcode
byte and payload shape (fixed length in bytes, or None when variable).
"""

import logging
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, ClassVar, Mapping, Optional, Union

from .errors import ConfigError, CorruptFrameError
from .responses import Ack, InfoField, InfoReply, Nak, StatusReport

logger = logging.getLogger(__name__)


# name: (opcode byte, payload length or None for variable)
DEFAULT_OPCODES: dict[str, tuple[int, Optional[int]]] = {
    # Host -> printer
    "RESET": (0x10, 0),
    "SET_HEAT": (0x11, 1),
    "FEED": (0x12, 2),
    "PRINT": (0x13, None),
    "QUERY_STATUS": (0x20, 0),
    "QUERY_INFO": (0x21, 1),
    # Printer -> host
    "ACK": (0x06, Ack.SIZE),
    "NAK": (0x15, Nak.SIZE),
    "STATUS": (0x30, StatusReport.SIZE),
    "INFO": (0x31, None),
}

CHECKSUM_KINDS = ("sum", "crc8")


def _crc8_table(poly: int = 0x07) -> list[int]:
    table = []
    for i in range(256):
        crc = i
        for _ in range(8):
            crc = ((crc << 1) ^ poly) & 0xFF if crc & 0x80 else (crc << 1) & 0xFF
        table.append(crc)
    return table


CRC8_TABLE = _crc8_table()


def crc8(data: bytes) -> int:
    """Calculate CRC8 (polynomial 0x07) checksum."""
    crc = 0
    for byte in data:
        crc = CRC8_TABLE[(crc ^ byte) & 0xFF]
    return crc


def sum8(data: bytes) -> int:
    """Calculate 8-bit additive checksum."""
    return sum(data) & 0xFF


@dataclass(frozen=True)
class ProtocolProfile:
    """
    Device protocol constants, loaded once per Session.

    Attributes:
        name: Profile name for logs
        opcodes: {frame_name: (opcode_byte, payload_shape)}
        terminator: Fixed trailer appended after the checksum
        checksum: "sum" or "crc8"
        max_payload: Largest payload the decoder will buffer
        device_width: Print head width in dots
        chunk_rows: Preferred dot rows per Print frame
        explicit_ack: Printer answers each command with ACK/NAK
        reports_line_count: STATUS carries a reliable lines_printed counter
        ack_timeout: Default seconds to wait for an ACK or reply
        line_period: Seconds the head needs to fire one dot row
        min_command_interval: Minimum gap between commands without ACKs
    """

    name: str = "ppa6"
    opcodes: Mapping[str, tuple[int, Optional[int]]] = field(
        default_factory=lambda: dict(DEFAULT_OPCODES)
    )
    terminator: bytes = b"\xfe\xef"
    checksum: str = "sum"
    max_payload: int = 4096
    device_width: int = 384
    chunk_rows: int = 24
    explicit_ack: bool = True
    reports_line_count: bool = True
    ack_timeout: float = 2.0
    line_period: float = 0.0025
    min_command_interval: float = 0.01

    def __post_init__(self):
        missing = set(DEFAULT_OPCODES) - set(self.opcodes)
        if missing:
            raise ConfigError(f"Profile {self.name!r} lacks opcodes: {sorted(missing)}")

        by_byte: dict[int, str] = {}
        for name, (value, shape) in self.opcodes.items():
            if not 0 <= value <= 0xFF:
                raise ConfigError(f"Opcode {name} out of range: {value}")
            if value in by_byte:
                raise ConfigError(
                    f"Opcode 0x{value:02X} used by both {by_byte[value]} and {name}"
                )
            if shape is not None and not 0 <= shape <= self.max_payload:
                raise ConfigError(f"Payload shape of {name} out of range: {shape}")
            by_byte[value] = name

        if len(self.terminator) != 2:
            raise ConfigError("Terminator must be exactly 2 bytes")
        if self.checksum not in CHECKSUM_KINDS:
            raise ConfigError(f"Unknown checksum kind: {self.checksum!r}")
        if not 0 < self.max_payload <= 0xFFFF:
            raise ConfigError(f"max_payload out of range: {self.max_payload}")
        if self.device_width <= 0 or self.chunk_rows <= 0:
            raise ConfigError("device_width and chunk_rows must be positive")

        object.__setattr__(self, "_by_byte", by_byte)

    def opcode(self, name: str) -> int:
        return self.opcodes[name][0]

    def shape(self, name: str) -> Optional[int]:
        return self.opcodes[name][1]

    def name_of(self, opcode: int) -> Optional[str]:
        """Return the frame name for an opcode byte, or None if unknown."""
        return self._by_byte.get(opcode)

    def checksum_of(self, data: bytes) -> int:
        if self.checksum == "crc8":
            return crc8(data)
        return sum8(data)

    @property
    def row_bytes(self) -> int:
        return (self.device_width + 7) // 8

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ProtocolProfile":
        """
        Build a profile from plain data (e.g. parsed JSON).

        Unknown keys are rejected. Opcodes given in ``data["opcodes"]`` are
        merged onto the defaults; each value is ``[byte, shape]`` where byte
        may be an int or a hex string such as ``"0x13"``.
        """
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown profile keys: {sorted(unknown)}")

        kwargs = dict(data)
        opcodes = dict(DEFAULT_OPCODES)
        for name, entry in dict(data.get("opcodes", {})).items():
            try:
                value, shape = entry
                if isinstance(value, str):
                    value = int(value, 0)
                opcodes[name] = (int(value), None if shape is None else int(shape))
            except (TypeError, ValueError) as e:
                raise ConfigError(f"Invalid opcode entry for {name}: {entry!r}") from e
        kwargs["opcodes"] = opcodes

        if isinstance(kwargs.get("terminator"), str):
            try:
                kwargs["terminator"] = bytes.fromhex(kwargs["terminator"])
            except ValueError as e:
                raise ConfigError(f"Invalid terminator: {data['terminator']!r}") from e

        return cls(**kwargs)


DEFAULT_PROFILE = ProtocolProfile()


# --- Commands ---


@dataclass(frozen=True)
class Reset:
    """Reset the printer and clear its line buffer."""

    name: ClassVar[str] = "RESET"
    lines: ClassVar[int] = 0

    @classmethod
    def parse(cls, data: bytes) -> Optional["Reset"]:
        return cls() if not data else None

    def to_bytes(self) -> bytes:
        return b""


@dataclass(frozen=True)
class QueryStatus:
    """Ask for a STATUS reply."""

    name: ClassVar[str] = "QUERY_STATUS"
    lines: ClassVar[int] = 0

    @classmethod
    def parse(cls, data: bytes) -> Optional["QueryStatus"]:
        return cls() if not data else None

    def to_bytes(self) -> bytes:
        return b""


@dataclass(frozen=True)
class SetHeat:
    """Set print head heat (darkness), 0-255."""

    level: int

    name: ClassVar[str] = "SET_HEAT"
    lines: ClassVar[int] = 0

    def __post_init__(self):
        if not 0 <= self.level <= 0xFF:
            raise ValueError(f"Heat level must be 0-255, got {self.level}")

    @classmethod
    def parse(cls, data: bytes) -> Optional["SetHeat"]:
        if len(data) != 1:
            return None
        return cls(level=data[0])

    def to_bytes(self) -> bytes:
        return bytes([self.level])


@dataclass(frozen=True)
class Feed:
    """Advance the paper by a number of blank dot rows."""

    lines: int

    name: ClassVar[str] = "FEED"

    def __post_init__(self):
        if not 0 <= self.lines <= 0xFFFF:
            raise ValueError(f"Feed lines must be 0-65535, got {self.lines}")

    @classmethod
    def parse(cls, data: bytes) -> Optional["Feed"]:
        if len(data) != 2:
            return None
        return cls(lines=int.from_bytes(data, "little"))

    def to_bytes(self) -> bytes:
        return self.lines.to_bytes(2, "little")


@dataclass(frozen=True)
class QueryInfo:
    """Ask for one device information string (name, serial, ...)."""

    field: InfoField

    name: ClassVar[str] = "QUERY_INFO"
    lines: ClassVar[int] = 0

    def __post_init__(self):
        object.__setattr__(self, "field", InfoField(self.field))

    @classmethod
    def parse(cls, data: bytes) -> Optional["QueryInfo"]:
        if len(data) != 1:
            return None
        try:
            return cls(field=InfoField(data[0]))
        except ValueError:
            return None

    def to_bytes(self) -> bytes:
        return bytes([self.field])


@dataclass(frozen=True)
class Print:
    """
    A chunk of bit-packed dot rows.

    Payload: [seq:2 LE][row_bytes:2 LE][row 0][row 1]...

    Attributes:
        rows: Packed rows, all the same length (MSB = leftmost dot)
        seq: Chunk sequence tag, echoed back in the ACK
    """

    rows: tuple[bytes, ...]
    seq: int = 0

    name: ClassVar[str] = "PRINT"

    def __post_init__(self):
        rows = tuple(bytes(r) for r in self.rows)
        if not rows:
            raise ValueError("Print needs at least one row")
        width = len(rows[0])
        if not 0 < width <= 0xFFFF:
            raise ValueError(f"Row length out of range: {width}")
        if any(len(r) != width for r in rows):
            raise ValueError("All rows in a Print chunk must have the same length")
        if not 0 <= self.seq <= 0xFFFF:
            raise ValueError(f"Sequence must be 0-65535, got {self.seq}")
        object.__setattr__(self, "rows", rows)

    @property
    def row_bytes(self) -> int:
        return len(self.rows[0])

    @property
    def lines(self) -> int:
        return len(self.rows)

    @classmethod
    def parse(cls, data: bytes) -> Optional["Print"]:
        if len(data) < 5:
            return None
        seq = int.from_bytes(data[0:2], "little")
        row_bytes = int.from_bytes(data[2:4], "little")
        body = data[4:]
        if row_bytes == 0 or len(body) % row_bytes != 0:
            return None
        rows = tuple(body[i:i + row_bytes] for i in range(0, len(body), row_bytes))
        return cls(rows=rows, seq=seq)

    def to_bytes(self) -> bytes:
        header = self.seq.to_bytes(2, "little") + self.row_bytes.to_bytes(2, "little")
        return header + b"".join(self.rows)

    def __repr__(self) -> str:
        return f"Print(seq={self.seq}, rows={len(self.rows)}x{self.row_bytes}B)"


Command = Union[Print, Feed, SetHeat, QueryStatus, Reset, QueryInfo]
Reply = Union[StatusReport, Ack, Nak, InfoReply]
Frame = Union[Command, Reply]

FRAME_TYPES: dict[str, type] = {
    "RESET": Reset,
    "SET_HEAT": SetHeat,
    "FEED": Feed,
    "PRINT": Print,
    "QUERY_STATUS": QueryStatus,
    "QUERY_INFO": QueryInfo,
    "ACK": Ack,
    "NAK": Nak,
    "STATUS": StatusReport,
    "INFO": InfoReply,
}

_FRAME_NAMES = {cls: name for name, cls in FRAME_TYPES.items()}


def frame_name(frame: Frame) -> str:
    """Return the opcode-table name of a command or reply."""
    try:
        return _FRAME_NAMES[type(frame)]
    except KeyError:
        raise TypeError(f"Not a protocol frame: {frame!r}") from None


def encode(frame: Frame, profile: ProtocolProfile = DEFAULT_PROFILE) -> bytes:
    """
    Encode a command (or reply) to wire bytes.

    Raises:
        ValueError: If the payload does not fit the profile
    """
    name = frame_name(frame)
    opcode, shape = profile.opcodes[name]
    payload = frame.to_bytes()

    if len(payload) > profile.max_payload:
        raise ValueError(
            f"{name} payload of {len(payload)} bytes exceeds maximum {profile.max_payload}"
        )
    if shape is not None and len(payload) != shape:
        raise ValueError(f"{name} payload must be {shape} bytes, got {len(payload)}")

    return encode_raw(opcode, payload, profile)


def encode_raw(opcode: int, payload: bytes = b"", profile: ProtocolProfile = DEFAULT_PROFILE) -> bytes:
    """Frame an arbitrary opcode and payload without checking the opcode table."""
    if not 0 <= opcode <= 0xFF:
        raise ValueError(f"Opcode must be 0-255, got {opcode}")
    if len(payload) > 0xFFFF:
        raise ValueError(f"Payload of {len(payload)} bytes does not fit the length field")
    body = bytes([opcode]) + len(payload).to_bytes(2, "little") + payload
    return body + bytes([profile.checksum_of(body)]) + profile.terminator


# --- Decoding ---


class DecoderState(Enum):
    AWAIT_HEADER = "await_header"
    AWAIT_LENGTH = "await_length"
    AWAIT_PAYLOAD = "await_payload"
    AWAIT_CHECKSUM = "await_checksum"
    COMPLETE = "complete"


class FrameDecoder:
    """
    Streaming frame decoder.

    Bytes may arrive in arbitrary pieces. Bytes that do not start a known
    opcode are skipped as line noise. A known opcode byte is only a false
    header when its length is impossible for that frame, or when a complete
    valid frame already sits further on in the buffered bytes; it is then
    skipped too. A frame that fails its terminator, checksum or payload
    check is reported and everything after its first byte is scanned
    again, so a frame it swallowed is still found.

    feed() returns decoded frames in order. A corrupt frame shows up in
    that list as a CorruptFrameError instance (not raised).
    """

    def __init__(self, profile: ProtocolProfile = DEFAULT_PROFILE):
        self.profile = profile
        self.discarded = 0
        self.corrupt = 0
        self._trailer_len = 1 + len(profile.terminator)
        self.reset()

    def reset(self):
        """Drop any partially received frame."""
        self.state = DecoderState.AWAIT_HEADER
        self._buf = bytearray()

    def feed(self, data: bytes) -> list[Union[Frame, CorruptFrameError]]:
        self._buf += data
        results: list[Union[Frame, CorruptFrameError]] = []

        while self._buf:
            if self.profile.name_of(self._buf[0]) is None:
                self._skip("noise")
                continue

            kind, value = self._inspect(0)
            if kind == "frame":
                frame, size = value
                del self._buf[:size]
                self.state = DecoderState.COMPLETE
                results.append(frame)
            elif kind == "partial":
                if self._complete_frame_after(0):
                    self._skip("false header, a complete frame follows")
                    continue
                self.state = value
                break
            elif kind == "false":
                self._skip(value)
            else:
                results.append(self._corrupt(value))
                del self._buf[0]
                self.state = DecoderState.AWAIT_HEADER

        return results

    def _inspect(self, start: int):
        """
        Classify the candidate frame starting at self._buf[start].

        Returns one of:
            ("frame", (frame, size))
            ("partial", DecoderState)  more bytes are needed
            ("false", reason)          not a frame header at all
            ("corrupt", reason)        complete but damaged
        """
        buf = self._buf
        name = self.profile.name_of(buf[start])
        available = len(buf) - start
        if available < 3:
            return "partial", DecoderState.AWAIT_LENGTH

        length = int.from_bytes(buf[start + 1:start + 3], "little")
        shape = self.profile.shape(name)
        if length > self.profile.max_payload or (shape is not None and length != shape):
            return "false", f"{name} header with impossible length {length}"

        end = start + 3 + length
        if len(buf) < end:
            return "partial", DecoderState.AWAIT_PAYLOAD
        size = 3 + length + self._trailer_len
        if available < size:
            return "partial", DecoderState.AWAIT_CHECKSUM

        terminator = bytes(buf[end + 1:start + size])
        if terminator != self.profile.terminator:
            return "corrupt", f"{name} frame with bad terminator {terminator.hex()}"

        body = bytes(buf[start:end])
        checksum = buf[end]
        expected = self.profile.checksum_of(body)
        if checksum != expected:
            return "corrupt", (
                f"{name} checksum mismatch: got 0x{checksum:02X}, expected 0x{expected:02X}"
            )

        frame = FRAME_TYPES[name].parse(body[3:])
        if frame is None:
            return "corrupt", f"{name} frame with malformed payload"
        return "frame", (frame, size)

    def _complete_frame_after(self, start: int) -> bool:
        for offset in range(start + 1, len(self._buf)):
            if self.profile.name_of(self._buf[offset]) is None:
                continue
            if self._inspect(offset)[0] == "frame":
                return True
        return False

    def _skip(self, reason: str):
        if reason != "noise":
            logger.debug("Skipping 0x%02X: %s", self._buf[0], reason)
        del self._buf[0]
        self.discarded += 1
        self.state = DecoderState.AWAIT_HEADER

    def _corrupt(self, message: str) -> CorruptFrameError:
        self.corrupt += 1
        logger.debug("Corrupt frame: %s", message)
        return CorruptFrameError(message)


def decode(data: bytes, profile: ProtocolProfile = DEFAULT_PROFILE) -> Frame:
    """
    Decode exactly one complete frame.

    Raises:
        CorruptFrameError: If the bytes are not exactly one valid frame
    """
    decoder = FrameDecoder(profile)
    results = decoder.feed(data)

    for item in results:
        if isinstance(item, CorruptFrameError):
            raise item
    if decoder.discarded:
        raise CorruptFrameError(f"{decoder.discarded} stray byte(s) around frame")
    if len(results) != 1 or decoder.state is not DecoderState.COMPLETE:
        raise CorruptFrameError(
            "Incomplete frame" if not results else f"Expected one frame, got {len(results)}"
        )
    return results[0]
