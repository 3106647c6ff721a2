"""
Exception hierarchy for the PPA6 driver.

Everything raised by the driver derives from PrinterError so callers can
catch the whole family at once.
"""

from typing import Optional

from .responses import StatusFlag

FAULT_ORDER = (
    StatusFlag.PAPER_OUT,
    StatusFlag.OVER_TEMPERATURE,
    StatusFlag.LOW_BATTERY,
    StatusFlag.BUSY,
)


class PrinterError(Exception):
    """Base exception for all printer errors."""

    pass


class ConfigError(PrinterError):
    """Invalid configuration or protocol profile."""

    pass


class InvalidImageError(PrinterError, ValueError):
    """Pixel buffer cannot be rasterized (empty or malformed)."""

    pass


class ImageSizeError(InvalidImageError):
    """Image dimensions exceed safety limits."""

    pass


class FrameError(PrinterError):
    """Wire frame could not be decoded."""

    pass


class CorruptFrameError(FrameError):
    """Checksum mismatch, bad terminator or impossible length."""

    pass


class TransportError(PrinterError):
    """Error talking to the printer over the byte stream."""

    pass


class TransportTimeout(TransportError):
    """No acknowledgement or reply within the timeout."""

    pass


class UnresponsiveError(TransportError):
    """Retries exhausted; the session is closed."""

    pass


class SessionClosedError(TransportError):
    """The session was closed and accepts no further commands."""

    pass


class JobError(PrinterError):
    """Print job failed or was rejected."""

    pass


class DeviceFaultError(JobError):
    """The printer reported a physical fault (paper out, over temperature).

    Attributes:
        faults: StatusFlag bits that caused the abort
        status: The StatusReport that carried the fault, if any
    """

    def __init__(self, faults: StatusFlag, status=None, message: Optional[str] = None):
        self.faults = StatusFlag(faults)
        self.status = status
        if message is None:
            names = [f.name.lower() for f in FAULT_ORDER if f in self.faults]
            message = f"Device fault: {', '.join(names) or 'unknown'}"
        super().__init__(message)

    @property
    def paper_out(self) -> bool:
        return bool(self.faults & StatusFlag.PAPER_OUT)

    @property
    def over_temperature(self) -> bool:
        return bool(self.faults & StatusFlag.OVER_TEMPERATURE)
