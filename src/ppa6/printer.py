"""
High-Level PPA6 Printer Interface.

Wraps a Session and a JobDriver behind a small API for printing images
and querying the printer.
"""

import logging
from pathlib import Path
from typing import Optional, Union

from PIL import Image, UnidentifiedImageError

from .connection import BLETransport, PrinterInfo, Transport, open_transport
from .errors import InvalidImageError, JobError
from .job import JobDriver, JobHandle, JobOptions, JobStatus
from .protocol import Feed, ProtocolProfile, Reset, SetHeat
from .raster import PixelBuffer, create_test_pattern, load_image
from .responses import InfoField, StatusReport
from .session import Session

logger = logging.getLogger(__name__)

ImageSource = Union[str, Path, bytes, Image.Image, PixelBuffer]


class Printer:
    """
    High-level interface to a PPA6 thermal printer.

    Takes ownership of an opened Transport; closing the Printer closes it.
    """

    # Heat levels behind the 0-2 concentration knob (light, normal, dark)
    CONCENTRATION_HEAT = (0x55, 0xAA, 0xFF)

    DEFAULT_FEED_LINES = 96

    def __init__(
        self,
        transport: Transport,
        profile: Optional[ProtocolProfile] = None,
        *,
        max_retries: int = Session.DEFAULT_MAX_RETRIES,
        retry_delay: float = Session.DEFAULT_RETRY_DELAY,
    ):
        self.session = Session(
            transport, profile, max_retries=max_retries, retry_delay=retry_delay
        )
        self.driver = JobDriver(self.session)

    @classmethod
    async def open(
        cls, device: str, profile: Optional[ProtocolProfile] = None, **kwargs
    ) -> "Printer":
        """Open a transport for a device string and wrap it."""
        transport = await open_transport(device)
        return cls(transport, profile, **kwargs)

    @classmethod
    async def scan(cls, timeout: float = 10.0) -> list[PrinterInfo]:
        """Scan for PPA6 printers over Bluetooth LE."""
        return await BLETransport.scan(timeout)

    async def __aenter__(self) -> "Printer":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        await self.session.close()

    @property
    def is_connected(self) -> bool:
        return self.session.is_open

    # --- Settings ---

    async def reset(self):
        await self.session.send(Reset())

    async def set_heat(self, level: int):
        """Set print head heat, 0-255."""
        await self.session.send(SetHeat(level))

    async def set_concentration(self, concentration: int):
        """Set darkness: 0 light, 1 normal, 2 dark."""
        if not 0 <= concentration < len(self.CONCENTRATION_HEAT):
            raise ValueError(f"Concentration must be 0-2, got {concentration}")
        await self.set_heat(self.CONCENTRATION_HEAT[concentration])

    async def feed(self, lines: int = DEFAULT_FEED_LINES):
        """Feed blank dot rows."""
        await self.session.send(Feed(lines))

    # --- Queries ---

    async def status(self) -> StatusReport:
        return await self.session.query_status()

    async def get_name(self) -> str:
        return await self.session.query_info(InfoField.NAME)

    async def get_serial(self) -> str:
        return await self.session.query_info(InfoField.SERIAL)

    async def get_firmware_ver(self) -> str:
        return await self.session.query_info(InfoField.FIRMWARE)

    async def get_hardware_ver(self) -> str:
        return await self.session.query_info(InfoField.HARDWARE)

    async def get_mac(self) -> str:
        return await self.session.query_info(InfoField.MAC)

    async def get_ip(self) -> str:
        return await self.session.query_info(InfoField.IP)

    async def get_battery(self) -> int:
        """Battery charge in percent."""
        return (await self.status()).battery_level

    async def get_info(self) -> dict[str, str]:
        """Query every device information field."""
        return {
            info_field.name.lower(): await self.session.query_info(info_field)
            for info_field in InfoField
        }

    # --- Printing ---

    def _load_image(self, image: ImageSource) -> PixelBuffer:
        """
        Load and validate an image for printing.

        Raises:
            InvalidImageError: If image cannot be loaded or is invalid
        """
        if isinstance(image, PixelBuffer):
            return image
        if isinstance(image, (str, Path)) and not Path(image).exists():
            raise InvalidImageError(f"Image file not found: {image}")
        if not isinstance(image, (str, Path, bytes, Image.Image)):
            raise InvalidImageError(f"Unsupported image type: {type(image)}")

        try:
            return PixelBuffer.from_image(load_image(image))
        except InvalidImageError:
            raise
        except (OSError, UnidentifiedImageError, ValueError) as e:
            raise InvalidImageError(f"Failed to load image: {e}") from e

    async def print_image(
        self,
        image: ImageSource,
        options: Optional[JobOptions] = None,
        copies: int = 1,
    ) -> JobHandle:
        """
        Print an image and wait for the job to finish.

        Args:
            image: Path, encoded bytes, PIL Image or PixelBuffer
            options: Job settings (defaults if None)
            copies: Number of copies, printed as separate jobs

        Returns:
            Handle of the last job

        Raises:
            InvalidImageError: If image cannot be loaded
            DeviceFaultError: Printer reported paper out or over temperature
            UnresponsiveError: Printer stopped answering
            JobError: Job was cancelled
        """
        if copies < 1:
            raise ValueError(f"copies must be at least 1, got {copies}")
        pixels = self._load_image(image)

        handle = None
        for copy in range(copies):
            logger.info("Printing copy %d/%d", copy + 1, copies)
            handle = self.driver.submit(pixels, options)
            status = await handle.wait()
            if status is JobStatus.FAILED:
                raise handle.error
            if status is JobStatus.ABORTED:
                raise JobError(f"Job {handle.id} aborted: {handle.error}")
        return handle

    async def print_test_pattern(self, options: Optional[JobOptions] = None) -> JobHandle:
        """Print a border, diagonals and a gray ramp across the full width."""
        width = self.session.profile.device_width
        return await self.print_image(create_test_pattern(width=width), options)


async def quick_print(
    device: str,
    image_path: Union[str, Path],
    options: Optional[JobOptions] = None,
) -> JobHandle:
    """
    Convenience function to quickly print an image.

    Args:
        device: Serial port, /dev/usb/lpN, pyserial URL or Bluetooth address
        image_path: Path to image file
        options: Job settings

    Raises:
        TransportError: If the device cannot be opened
        InvalidImageError: If image cannot be loaded
        JobError: If the print job fails
    """
    async with await Printer.open(device) as printer:
        return await printer.print_image(image_path, options)
