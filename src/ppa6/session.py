"""
Transport Session for the PPA6 printer.

A Session owns one opened Transport and runs the half-duplex request cycle
on it: write one frame, wait for its ACK (or reply), retry with exponential
backoff, and give up by closing itself once every retry has failed.

Only one request is outstanding at a time. Sessions are not reused after
closing; reconnecting means opening a new Transport and a new Session.
"""

import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Callable, Optional

from .errors import (
    ConfigError,
    CorruptFrameError,
    SessionClosedError,
    TransportError,
    TransportTimeout,
    UnresponsiveError,
)
from .connection import Transport
from .protocol import (
    DEFAULT_PROFILE,
    Command,
    Frame,
    FrameDecoder,
    Print,
    ProtocolProfile,
    QueryInfo,
    QueryStatus,
    encode,
)
from .responses import Ack, InfoField, InfoReply, Nak, NakReason, StatusReport

logger = logging.getLogger(__name__)

# Print payload bytes ahead of the rows: seq(2) + row_bytes(2)
PRINT_HEADER_SIZE = 4


def _hex(data: bytes) -> str:
    return data.hex() if len(data) < 50 else data[:50].hex() + "..."


class SessionState(Enum):
    OPEN = "open"
    CLOSED = "closed"


class NakError(TransportError):
    """The printer rejected a frame; it was not applied."""

    def __init__(self, nak: Nak):
        self.nak = nak
        try:
            reason = NakReason(nak.reason).name.lower()
        except ValueError:
            reason = f"0x{nak.reason:02X}"
        super().__init__(f"NAK ({reason})")


class Session:
    """
    Stateful request/acknowledge cycle over one Transport.

    Attributes:
        profile: Protocol constants loaded at construction
        state: OPEN until closed or retries are exhausted
        chunk_rows: Negotiated dot rows per Print frame
        last_status: Most recent StatusReport seen on the link
    """

    DEFAULT_MAX_RETRIES = 3
    DEFAULT_RETRY_DELAY = 0.05  # seconds, doubled after every retry

    def __init__(
        self,
        transport: Transport,
        profile: Optional[ProtocolProfile] = None,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ):
        self.profile = profile or DEFAULT_PROFILE
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.state = SessionState.OPEN
        self.last_status: Optional[StatusReport] = None

        self._transport = transport
        self._decoder = FrameDecoder(self.profile)
        self._backlog: deque = deque()
        self._sequence = 0
        self._lock = asyncio.Lock()

        self.chunk_rows = self.negotiate_chunk_size(self.profile.row_bytes)

    async def __aenter__(self) -> "Session":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN

    def ensure_open(self):
        if not self.is_open:
            raise SessionClosedError("Session is closed; open a new connection")

    def next_sequence(self) -> int:
        """Hand out the next Print chunk tag (wraps at 16 bits)."""
        seq = self._sequence
        self._sequence = (self._sequence + 1) & 0xFFFF
        return seq

    def negotiate_chunk_size(self, row_bytes: int) -> int:
        """
        Pick how many dot rows go into one Print frame.

        The profile's preferred chunk height, capped so the frame never
        exceeds the maximum payload length.
        """
        if row_bytes <= 0:
            raise ConfigError(f"Row length must be positive, got {row_bytes}")
        fits = (self.profile.max_payload - PRINT_HEADER_SIZE) // row_bytes
        if fits < 1:
            raise ConfigError(
                f"A {row_bytes}-byte row does not fit in a "
                f"{self.profile.max_payload}-byte payload"
            )
        self.chunk_rows = min(self.profile.chunk_rows, fits)
        return self.chunk_rows

    async def close(self):
        """Close the session and its transport."""
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        try:
            await self._transport.close()
        except OSError as e:
            logger.warning("Error closing transport: %s", e)
        logger.debug("Session closed")

    # --- Requests ---

    async def send(
        self,
        cmd: Command,
        timeout: Optional[float] = None,
        *,
        applied: Optional[Callable[[StatusReport], bool]] = None,
    ) -> None:
        """
        Send one command and wait until the printer has taken it.

        Args:
            cmd: Command to send
            timeout: Seconds to wait for the ACK (profile default if None)
            applied: For ambiguous failures, called with a fresh status
                before resending; returning True means the printer already
                applied the command and it must not be sent again

        Raises:
            UnresponsiveError: Retries exhausted; the session is now closed
            SessionClosedError: The session was already closed
        """
        self.ensure_open()
        async with self._lock:
            if not self.profile.explicit_ack:
                await self._send_paced(cmd)
                return
            opcode = self.profile.opcode(cmd.name)
            tag = cmd.seq if isinstance(cmd, Print) else 0
            await self._exchange(
                cmd,
                timeout,
                lambda f: isinstance(f, Ack) and f.opcode == opcode and f.tag == tag,
                applied,
            )

    async def query_status(self, timeout: Optional[float] = None) -> StatusReport:
        """
        Ask the printer for its status.

        Raises:
            UnresponsiveError: Retries exhausted; the session is now closed
        """
        self.ensure_open()
        async with self._lock:
            status = await self._exchange(
                QueryStatus(), timeout, lambda f: isinstance(f, StatusReport)
            )
        self.last_status = status
        return status

    async def query_info(self, info_field: InfoField, timeout: Optional[float] = None) -> str:
        """Ask the printer for one device information string."""
        self.ensure_open()
        info_field = InfoField(info_field)
        async with self._lock:
            reply = await self._exchange(
                QueryInfo(info_field),
                timeout,
                lambda f: isinstance(f, InfoReply) and f.field == info_field,
            )
        return reply.value

    async def send_raw(self, data: bytes, timeout: Optional[float] = None) -> list:
        """
        Write raw bytes and collect every frame that arrives until timeout.

        Meant for protocol debugging; no retries.
        """
        self.ensure_open()
        timeout = self.profile.ack_timeout if timeout is None else timeout
        async with self._lock:
            await self._write(data)
            frames = list(self._backlog)
            self._backlog.clear()
            loop = asyncio.get_running_loop()
            deadline = loop.time() + timeout
            while (remaining := deadline - loop.time()) > 0:
                chunk = await self._transport.read(remaining)
                if chunk:
                    logger.debug("RX: %s", _hex(chunk))
                    frames.extend(self._decoder.feed(chunk))
        return frames

    # --- Internals ---

    async def _exchange(
        self,
        cmd: Command,
        timeout: Optional[float],
        matches: Callable[[Frame], bool],
        applied: Optional[Callable[[StatusReport], bool]] = None,
    ):
        timeout = self.profile.ack_timeout if timeout is None else timeout
        frame = encode(cmd, self.profile)
        delay = self.retry_delay
        last_error: Optional[Exception] = None
        ambiguous = False
        attempts = self.max_retries + 1

        for attempt in range(attempts):
            if attempt > 0:
                logger.warning(
                    "%s failed (%s), retry %d/%d in %.2fs",
                    cmd.name, last_error, attempt, self.max_retries, delay,
                )
                await asyncio.sleep(delay)
                delay *= 2

                if ambiguous and applied is not None and self.profile.reports_line_count:
                    status = await self._check_status(timeout)
                    if status is not None and applied(status):
                        logger.info("%r already applied by printer, not resending", cmd)
                        return None

            try:
                await self._write(frame)
                return await self._await_reply(cmd, matches, timeout)
            except (TransportTimeout, CorruptFrameError) as e:
                # Lost or mangled reply: the printer may or may not have it
                last_error = e
                ambiguous = True
            except NakError as e:
                last_error = e
                ambiguous = False
            except OSError as e:
                last_error = e
                ambiguous = True

        await self.close()
        raise UnresponsiveError(
            f"{cmd.name} failed after {attempts} attempt(s): {last_error}"
        ) from last_error

    async def _check_status(self, timeout: float) -> Optional[StatusReport]:
        """One unretried status query, used to resolve an ambiguous send."""
        try:
            await self._write(encode(QueryStatus(), self.profile))
            status = await self._await_reply(
                QueryStatus(), lambda f: isinstance(f, StatusReport), timeout
            )
        except (TransportTimeout, CorruptFrameError, NakError, OSError) as e:
            logger.debug("Status check failed: %s", e)
            return None
        self.last_status = status
        return status

    async def _write(self, data: bytes):
        if not self._transport.is_connected:
            await self.close()
            raise UnresponsiveError("Transport disconnected")
        logger.debug("TX: %s", _hex(data))
        await self._transport.write(data)

    async def _await_reply(self, cmd: Command, matches: Callable[[Frame], bool], timeout: float):
        opcode = self.profile.opcode(cmd.name)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        corrupt: Optional[CorruptFrameError] = None

        while True:
            while self._backlog:
                item = self._backlog.popleft()
                if isinstance(item, CorruptFrameError):
                    # The reply may still follow a damaged or false frame
                    corrupt = item
                    continue
                if isinstance(item, StatusReport):
                    self.last_status = item
                if isinstance(item, Nak) and item.opcode == opcode:
                    raise NakError(item)
                if matches(item):
                    return item
                logger.debug("Ignoring %r while waiting for %s", item, cmd.name)

            remaining = deadline - loop.time()
            if remaining <= 0:
                self._decoder.reset()
                if corrupt is not None:
                    raise corrupt
                raise TransportTimeout(f"No reply to {cmd.name} within {timeout:.2f}s")

            data = await self._transport.read(remaining)
            if data:
                logger.debug("RX: %s", _hex(data))
                self._backlog.extend(self._decoder.feed(data))

    async def _send_paced(self, cmd: Command):
        """Send without ACKs, then hold off for the head's duty cycle."""
        frame = encode(cmd, self.profile)
        delay = self.retry_delay
        attempts = self.max_retries + 1

        for attempt in range(attempts):
            try:
                await self._write(frame)
                break
            except OSError as e:
                if attempt == attempts - 1:
                    await self.close()
                    raise UnresponsiveError(
                        f"{cmd.name} failed after {attempts} attempt(s): {e}"
                    ) from e
                logger.warning("%s write failed (%s), retry %d/%d", cmd.name, e, attempt + 1, self.max_retries)
                await asyncio.sleep(delay)
                delay *= 2

        pause = max(self.profile.min_command_interval, cmd.lines * self.profile.line_period)
        await asyncio.sleep(pause)
