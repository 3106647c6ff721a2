"""
Print Job Driver.

Turns one pixel buffer into a complete print: rasterize, stream Print
chunks through the Session, watch the printer's status, feed the paper
out and confirm with a final status query.

Rasterization runs in a producer task that fills a bounded queue of
chunks, so transmission starts as soon as the first chunk is ready and
memory stays bounded for long images.

Job states:
    IDLE -> RASTERIZING -> TRANSMITTING -> AWAITING_FINAL_STATUS -> DONE
    any non-idle state -> ABORTED
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import DeviceFaultError, JobError, PrinterError
from .protocol import Feed, Print, SetHeat
from .raster import FIT_MODES, PixelBuffer, Raster, rasterize
from .session import Session

logger = logging.getLogger(__name__)


class JobState(Enum):
    IDLE = "idle"
    RASTERIZING = "rasterizing"
    TRANSMITTING = "transmitting"
    AWAITING_FINAL_STATUS = "awaiting_final_status"
    DONE = "done"
    ABORTED = "aborted"


class JobStatus(Enum):
    """Outcome reported to the caller."""
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class JobOptions:
    """
    Per-job settings.

    Attributes:
        heat_level: Send SetHeat before the first chunk (None keeps the
            printer's current setting)
        feed_lines_after: Blank rows fed after the image (0 skips the Feed)
        dither: Ordered dithering; False uses a flat threshold
        fit: "scale" or "pad" (see rasterize)
        threshold: Cut-off when dithering is off
        invert: Swap black and white
        status_poll_interval: Query status every N chunks
        queue_depth: Rasterized chunks buffered ahead of the transmitter
        timeout: Per-command ACK timeout (profile default if None)
    """

    heat_level: Optional[int] = None
    feed_lines_after: int = 96
    dither: bool = True
    fit: str = "scale"
    threshold: int = 128
    invert: bool = False
    status_poll_interval: int = 8
    queue_depth: int = 4
    timeout: Optional[float] = None

    def __post_init__(self):
        if self.heat_level is not None and not 0 <= self.heat_level <= 0xFF:
            raise ValueError(f"heat_level must be 0-255, got {self.heat_level}")
        if not 0 <= self.feed_lines_after <= 0xFFFF:
            raise ValueError(f"feed_lines_after must be 0-65535, got {self.feed_lines_after}")
        if not 0 <= self.threshold <= 0xFF:
            raise ValueError(f"threshold must be 0-255, got {self.threshold}")
        if self.fit not in FIT_MODES:
            raise ValueError(f"Unknown fit mode: {self.fit!r}")
        if self.status_poll_interval < 1:
            raise ValueError("status_poll_interval must be at least 1")
        if self.queue_depth < 1:
            raise ValueError("queue_depth must be at least 1")


class JobCancelled(JobError):
    """The caller cancelled the job between chunks."""

    pass


class JobHandle:
    """
    Caller's view of a submitted job.

    Attributes:
        id: Job number, unique per driver
        state: Current JobState
        transitions: Every state the job has been in, in order
        status: RUNNING until the job finishes
        error: The exception that failed or aborted the job, if any
        rows_sent: Dot rows the printer has acknowledged
        total_rows: Dot rows in the rasterized image
    """

    def __init__(self, job_id: int, total_rows: int = 0):
        self.id = job_id
        self.state = JobState.IDLE
        self.transitions: list[JobState] = [JobState.IDLE]
        self.status = JobStatus.RUNNING
        self.error: Optional[BaseException] = None
        self.rows_sent = 0
        self.total_rows = total_rows
        self._cancel_requested = False
        self._task: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return (
            f"JobHandle(id={self.id}, state={self.state.name}, "
            f"status={self.status.name}, rows={self.rows_sent}/{self.total_rows})"
        )

    @property
    def done(self) -> bool:
        return self.status is not JobStatus.RUNNING

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def cancel(self):
        """Ask the job to stop before its next chunk."""
        if not self.done:
            self._cancel_requested = True

    async def wait(self) -> JobStatus:
        """Wait for the job to finish and return its final status."""
        if self._task is not None:
            await self._task
        return self.status

    def _enter(self, state: JobState):
        logger.debug("Job %d: %s -> %s", self.id, self.state.name, state.name)
        self.state = state
        self.transitions.append(state)


class JobDriver:
    """Runs print jobs, one at a time, over a Session."""

    def __init__(self, session: Session):
        self.session = session
        self.current: Optional[JobHandle] = None
        self._ids = itertools.count(1)

    def submit(self, pixels: PixelBuffer, options: Optional[JobOptions] = None) -> JobHandle:
        """
        Start printing a pixel buffer.

        Must be called from a running event loop. Returns at once; the job
        runs as a task and its outcome is reported through the handle.

        Raises:
            InvalidImageError: Unprintable image (nothing is sent)
            JobError: Another job is still running
            SessionClosedError: The session is closed
        """
        options = options or JobOptions()
        self.session.ensure_open()
        if self.current is not None and not self.current.done:
            raise JobError(f"Job {self.current.id} is still running")

        raster = rasterize(
            pixels,
            self.session.profile.device_width,
            dither=options.dither,
            fit=options.fit,
            threshold=options.threshold,
            invert=options.invert,
        )

        handle = JobHandle(next(self._ids), total_rows=len(raster))
        handle._enter(JobState.RASTERIZING)
        logger.info(
            "Job %d: %dx%d image -> %d rows", handle.id, pixels.width, pixels.height, len(raster)
        )
        handle._task = asyncio.get_running_loop().create_task(
            self._run(handle, raster, options)
        )
        self.current = handle
        return handle

    async def _run(self, handle: JobHandle, raster: Raster, options: JobOptions):
        queue: asyncio.Queue = asyncio.Queue(maxsize=options.queue_depth)
        producer = asyncio.create_task(_produce(raster, queue, self.session.chunk_rows))

        try:
            await self._transmit(handle, queue, options)

            handle._enter(JobState.AWAITING_FINAL_STATUS)
            status = await self.session.query_status(options.timeout)
            if status.faults:
                raise DeviceFaultError(status.faults, status)

            handle._enter(JobState.DONE)
            handle.status = JobStatus.DONE
            logger.info("Job %d done (%d rows)", handle.id, handle.rows_sent)
        except JobCancelled as e:
            self._abort(handle, JobStatus.ABORTED, e)
        except PrinterError as e:
            self._abort(handle, JobStatus.FAILED, e)
        except asyncio.CancelledError as e:
            self._abort(handle, JobStatus.ABORTED, e)
            raise
        except Exception as e:
            self._abort(handle, JobStatus.FAILED, e)
            raise
        finally:
            producer.cancel()
            await asyncio.gather(producer, return_exceptions=True)

    async def _transmit(self, handle: JobHandle, queue: asyncio.Queue, options: JobOptions):
        session = self.session
        chunk = await queue.get()
        handle._enter(JobState.TRANSMITTING)

        if options.heat_level is not None:
            await session.send(SetHeat(options.heat_level), options.timeout)

        since_poll = options.status_poll_interval
        base_lines = 0

        while chunk is not None:
            if isinstance(chunk, BaseException):
                raise chunk
            if handle.cancel_requested:
                raise JobCancelled(f"Job {handle.id} cancelled after {handle.rows_sent} rows")

            if since_poll >= options.status_poll_interval:
                status = await session.query_status(options.timeout)
                if handle.rows_sent == 0:
                    base_lines = status.lines_printed
                since_poll = 0

            status = session.last_status
            if status is not None and status.faults:
                raise DeviceFaultError(status.faults, status)

            target = base_lines + handle.rows_sent + len(chunk)
            await session.send(
                Print(chunk, seq=session.next_sequence()),
                options.timeout,
                applied=lambda s, target=target: s.lines_printed >= target,
            )
            handle.rows_sent += len(chunk)
            since_poll += 1

            chunk = await queue.get()

        if options.feed_lines_after:
            await session.send(Feed(options.feed_lines_after), options.timeout)

    def _abort(self, handle: JobHandle, status: JobStatus, error: BaseException):
        if isinstance(error, asyncio.CancelledError):
            logger.warning("Job %d interrupted", handle.id)
        elif status is JobStatus.ABORTED:
            logger.info("Job %d aborted: %s", handle.id, error)
        else:
            logger.error("Job %d failed: %s", handle.id, error)
        handle.error = error
        handle.status = status
        handle._enter(JobState.ABORTED)


async def _produce(raster: Raster, queue: asyncio.Queue, chunk_rows: int):
    """Fill the queue with row chunks, then None. Errors are queued too."""
    try:
        chunk = []
        for row in raster:
            chunk.append(row)
            if len(chunk) == chunk_rows:
                await queue.put(tuple(chunk))
                chunk = []
            else:
                await asyncio.sleep(0)
        if chunk:
            await queue.put(tuple(chunk))
        await queue.put(None)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        await queue.put(e)
