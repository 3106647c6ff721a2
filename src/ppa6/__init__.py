"""PPA6 Thermal Printer Driver for Linux/macOS."""

__version__ = "0.1.0"

from .connection import BLETransport, FileTransport, PrinterInfo, SerialTransport, Transport, open_transport
from .errors import (
    ConfigError,
    CorruptFrameError,
    DeviceFaultError,
    FrameError,
    ImageSizeError,
    InvalidImageError,
    JobError,
    PrinterError,
    SessionClosedError,
    TransportError,
    TransportTimeout,
    UnresponsiveError,
)
from .job import JobDriver, JobHandle, JobOptions, JobState, JobStatus
from .printer import Printer, quick_print
from .protocol import (
    DEFAULT_PROFILE,
    Feed,
    FrameDecoder,
    Print,
    ProtocolProfile,
    QueryInfo,
    QueryStatus,
    Reset,
    SetHeat,
    decode,
    encode,
)
from .raster import MAX_IMAGE_DIMENSION, MAX_IMAGE_PIXELS, PixelBuffer, Raster, rasterize
from .responses import Ack, InfoField, InfoReply, Nak, StatusFlag, StatusReport
from .session import Session

__all__ = [
    "Printer",
    "quick_print",
    "PrinterError",
    "ConfigError",
    "InvalidImageError",
    "ImageSizeError",
    "FrameError",
    "CorruptFrameError",
    "TransportError",
    "TransportTimeout",
    "UnresponsiveError",
    "SessionClosedError",
    "JobError",
    "DeviceFaultError",
    "MAX_IMAGE_DIMENSION",
    "MAX_IMAGE_PIXELS",
    "PixelBuffer",
    "Raster",
    "rasterize",
    "ProtocolProfile",
    "DEFAULT_PROFILE",
    "Print",
    "Feed",
    "SetHeat",
    "QueryStatus",
    "QueryInfo",
    "Reset",
    "encode",
    "decode",
    "FrameDecoder",
    "StatusReport",
    "StatusFlag",
    "Ack",
    "Nak",
    "InfoField",
    "InfoReply",
    "Transport",
    "SerialTransport",
    "FileTransport",
    "BLETransport",
    "PrinterInfo",
    "open_transport",
    "Session",
    "JobDriver",
    "JobHandle",
    "JobOptions",
    "JobState",
    "JobStatus",
]
