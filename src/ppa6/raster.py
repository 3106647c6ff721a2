"""
Image Rasterization for the PPA6 Printer.

Converts decoded pixel buffers to 1-bit dot rows for the 384-dot thermal
head, using ordered (Bayer) dithering so gradients survive the 1-bit
output.

Row format: ceil(device_width / 8) bytes, MSB is the leftmost dot,
1 = burn (black), 0 = blank (white).
"""

from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import ClassVar, Iterator, Union

from PIL import Image, ImageDraw

from .errors import ImageSizeError, InvalidImageError

# Image size limits to prevent memory exhaustion from malicious/malformed images
MAX_IMAGE_DIMENSION = 10000  # Maximum width or height in pixels
MAX_IMAGE_PIXELS = 10_000_000  # Maximum total pixels (10 megapixels)

# 8x8 Bayer index matrix
BAYER8 = [
    [0, 48, 12, 60, 3, 51, 15, 63],
    [32, 16, 44, 28, 35, 19, 47, 31],
    [8, 56, 4, 52, 11, 59, 7, 55],
    [40, 24, 36, 20, 43, 27, 39, 23],
    [2, 50, 14, 62, 1, 49, 13, 61],
    [34, 18, 46, 30, 33, 17, 45, 29],
    [10, 58, 6, 54, 9, 57, 5, 53],
    [42, 26, 38, 22, 41, 25, 37, 21],
]

# Gray levels below these thresholds become black dots.
# Centered in each of the 64 bands so pure white never burns.
BAYER_THRESHOLDS = [[(v + 0.5) * 4.0 for v in row] for row in BAYER8]

RESAMPLE_FILTERS = {
    "nearest": Image.Resampling.NEAREST,
    "box": Image.Resampling.BOX,
}

FIT_MODES = ("scale", "pad")


@dataclass(frozen=True)
class PixelBuffer:
    """
    Decoded image handed to the rasterizer.

    Attributes:
        width: Width in pixels
        height: Height in pixels
        data: Row-major samples, len == width * height * channels
        mode: "L" (grayscale), "RGB" or "RGBA"
    """

    width: int
    height: int
    data: bytes
    mode: str = "L"

    CHANNELS: ClassVar[dict[str, int]] = {"L": 1, "RGB": 3, "RGBA": 4}

    def __post_init__(self):
        if self.mode not in self.CHANNELS:
            raise InvalidImageError(f"Unsupported pixel mode: {self.mode!r}")
        if self.width < 0 or self.height < 0:
            raise InvalidImageError(f"Negative image size: {self.width}x{self.height}")
        object.__setattr__(self, "data", bytes(self.data))
        expected = self.width * self.height * self.channels
        if len(self.data) != expected:
            raise InvalidImageError(
                f"Pixel data is {len(self.data)} bytes, expected {expected} "
                f"for {self.width}x{self.height} {self.mode}"
            )

    @property
    def channels(self) -> int:
        return self.CHANNELS[self.mode]

    @classmethod
    def from_image(cls, image: Image.Image) -> "PixelBuffer":
        """Wrap a PIL image, converting exotic modes to L/RGB/RGBA."""
        if image.mode not in cls.CHANNELS:
            has_alpha = "A" in image.getbands() or "transparency" in image.info
            if has_alpha:
                image = image.convert("RGBA")
            elif len(image.getbands()) == 1:
                image = image.convert("L")
            else:
                image = image.convert("RGB")
        return cls(image.width, image.height, image.tobytes(), image.mode)

    def to_gray(self) -> Image.Image:
        """Return the buffer as an 8-bit grayscale PIL image."""
        image = Image.frombytes(self.mode, (self.width, self.height), self.data)
        if self.mode == "RGBA":
            # Transparent areas print as paper
            background = Image.new("RGBA", image.size, (255, 255, 255, 255))
            image = Image.alpha_composite(background, image)
        if image.mode != "L":
            image = image.convert("L")
        return image


def pack_dots(dots: list[bool], row_bytes: int) -> bytes:
    """Pack dots MSB-first into a fixed-width row."""
    packed = bytearray(row_bytes)
    for x, dot in enumerate(dots):
        if dot:
            packed[x >> 3] |= 0x80 >> (x & 7)
    return bytes(packed)


class Raster:
    """
    Lazy, restartable sequence of packed dot rows.

    Each iteration resamples and dithers one output row at a time, so a
    consumer can start transmitting before the rest of the image is done.
    """

    def __init__(
        self,
        pixels: PixelBuffer,
        device_width: int,
        dither: bool = True,
        resample: str = "box",
        fit: str = "scale",
        threshold: int = 128,
        invert: bool = False,
    ):
        if pixels.width == 0 or pixels.height == 0:
            raise InvalidImageError(
                f"Image has no pixels ({pixels.width}x{pixels.height})"
            )
        if device_width <= 0:
            raise InvalidImageError(f"Device width must be positive, got {device_width}")
        if resample not in RESAMPLE_FILTERS:
            raise ValueError(f"Unknown resample filter: {resample!r}")
        if fit not in FIT_MODES:
            raise ValueError(f"Unknown fit mode: {fit!r}")
        if not 0 <= threshold <= 255:
            raise ValueError(f"Threshold must be 0-255, got {threshold}")

        self.pixels = pixels
        self.device_width = device_width
        self.dither = dither
        self.resample = resample
        self.threshold = threshold
        self.invert = invert
        self.row_bytes = (device_width + 7) // 8

        self.scaled = fit == "scale" or pixels.width > device_width
        if self.scaled:
            self.content_width = device_width
            self.height = max(1, round(pixels.height * device_width / pixels.width))
        else:
            self.content_width = pixels.width
            self.height = pixels.height

    def __len__(self) -> int:
        return self.height

    def __iter__(self) -> Iterator[bytes]:
        gray = self.pixels.to_gray()
        step = self.pixels.height / self.height
        for y in range(self.height):
            if self.scaled:
                line = gray.resize(
                    (self.content_width, 1),
                    RESAMPLE_FILTERS[self.resample],
                    box=(0, y * step, self.pixels.width, (y + 1) * step),
                )
            else:
                line = gray.crop((0, y, self.pixels.width, y + 1))
            yield self.binarize(line.tobytes(), y)

    def binarize(self, values: bytes, y: int) -> bytes:
        """Turn one row of gray levels into a packed dot row."""
        if self.dither:
            thresholds = BAYER_THRESHOLDS[y % 8]
            dots = [gray < thresholds[x % 8] for x, gray in enumerate(values)]
        else:
            dots = [gray < self.threshold for gray in values]
        if self.invert:
            dots = [not dot for dot in dots]
        return pack_dots(dots, self.row_bytes)


def rasterize(
    pixels: PixelBuffer,
    device_width: int,
    *,
    dither: bool = True,
    resample: str = "box",
    fit: str = "scale",
    threshold: int = 128,
    invert: bool = False,
) -> Raster:
    """
    Convert a pixel buffer to packed 1-bit rows for the print head.

    Args:
        pixels: Decoded image
        device_width: Print head width in dots
        dither: Ordered Bayer dithering; False uses a flat threshold
        resample: "box" or "nearest"
        fit: "scale" to stretch to device_width, "pad" to keep narrow
            images at their size and leave the rest of the row blank
        threshold: Gray level cut-off when dithering is disabled
        invert: Swap black and white dots

    Raises:
        InvalidImageError: If the image has zero width or height
    """
    return Raster(
        pixels,
        device_width,
        dither=dither,
        resample=resample,
        fit=fit,
        threshold=threshold,
        invert=invert,
    )


def load_image(source: Union[str, Path, bytes, Image.Image]) -> Image.Image:
    """
    Load an image from various sources.

    Args:
        source: File path, bytes, or PIL Image

    Returns:
        PIL Image object

    Raises:
        ImageSizeError: If image dimensions exceed safety limits
        ValueError: If source type is unsupported
    """
    if isinstance(source, Image.Image):
        img = source
    elif isinstance(source, (str, Path)):
        img = Image.open(source)
    elif isinstance(source, bytes):
        img = Image.open(BytesIO(source))
    else:
        raise ValueError(f"Unsupported source type: {type(source)}")

    # Validate image dimensions to prevent memory exhaustion
    if img.width > MAX_IMAGE_DIMENSION or img.height > MAX_IMAGE_DIMENSION:
        raise ImageSizeError(
            f"Image dimensions ({img.width}x{img.height}) exceed maximum "
            f"({MAX_IMAGE_DIMENSION}x{MAX_IMAGE_DIMENSION})"
        )
    if img.width * img.height > MAX_IMAGE_PIXELS:
        raise ImageSizeError(
            f"Image pixel count ({img.width * img.height:,}) exceeds "
            f"maximum ({MAX_IMAGE_PIXELS:,})"
        )

    return img


def rows_to_image(rows: list[bytes], device_width: int) -> Image.Image:
    """Render packed rows back to a 1-bit PIL image (for previews)."""
    image = Image.new("1", (device_width, max(1, len(rows))), color=1)
    for y, row in enumerate(rows):
        for x in range(device_width):
            if row[x >> 3] & (0x80 >> (x & 7)):
                image.putpixel((x, y), 0)
    return image


def create_test_pattern(width: int = 384, height: int = 96) -> Image.Image:
    """Create a test pattern: border, diagonals and a gray ramp."""
    img = Image.new("L", (width, height), color=255)
    draw = ImageDraw.Draw(img)

    # Gray ramp across the middle third exercises the dither
    top, bottom = height // 3, 2 * height // 3
    for x in range(width):
        gray = 255 - (x * 255) // max(1, width - 1)
        draw.line([(x, top), (x, bottom)], fill=gray)

    draw.rectangle([0, 0, width - 1, height - 1], outline=0)
    draw.line([(0, 0), (width - 1, height - 1)], fill=0)
    draw.line([(width - 1, 0), (0, height - 1)], fill=0)

    return img
