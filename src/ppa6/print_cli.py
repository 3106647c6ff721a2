"""
Print an image file on a PPA6 printer.

Usage:
    ppa6-print photo.png
    ppa6-print -d /dev/rfcomm0 -n 2 --concentration 2 label.png
    cat receipt.png | ppa6-print -
    ppa6-print --preview out.png photo.jpg
"""

import asyncio
import sys

import click
from PIL import Image, ImageEnhance, UnidentifiedImageError

from .cli import run_with_printer, setup_logging
from .config import load_profile
from .errors import ConfigError, InvalidImageError
from .job import JobOptions
from .printer import Printer
from .raster import FIT_MODES, PixelBuffer, load_image, rasterize, rows_to_image


def prepare_image(
    image: Image.Image,
    rotate: int = 0,
    brighten: int = 0,
    contrast: float = 0.0,
) -> Image.Image:
    """Apply rotation and tone adjustments before rasterizing."""
    if rotate:
        # Counter-clockwise in PIL; the CLI turns clockwise
        image = image.rotate(-rotate, expand=True)
    if brighten or contrast:
        image = image.convert("L")
        if brighten:
            image = image.point(lambda v: max(0, min(255, v + brighten)))
        if contrast:
            image = ImageEnhance.Contrast(image).enhance(max(0.0, 1.0 + contrast / 100.0))
    return image


def read_image(path: str) -> Image.Image:
    try:
        if path == "-":
            return load_image(sys.stdin.buffer.read())
        return load_image(path)
    except InvalidImageError:
        raise
    except (OSError, UnidentifiedImageError) as e:
        raise InvalidImageError(f"Failed to load image: {e}") from e


@click.command()
@click.argument("file", type=click.Path(allow_dash=True))
@click.option("--device", "-d", help="Serial port, /dev/usb/lpN, pyserial URL or Bluetooth address (default: last used)")
@click.option("--num", "-n", type=click.IntRange(1, 100), default=1, help="Number of copies")
@click.option("--feed/--no-feed", default=True, help="Feed paper out after printing")
@click.option("--feed-lines", type=click.IntRange(1, 0xFFFF), default=96, help="Rows to feed")
@click.option("--invert", is_flag=True, help="Swap black and white")
@click.option("--rotate", type=click.Choice(["0", "90", "180", "270"]), default="0", help="Rotate clockwise")
@click.option("--threshold", type=click.IntRange(0, 255), default=128, help="Cut-off with --no-dither")
@click.option("--no-dither", is_flag=True, help="Flat threshold instead of dithering")
@click.option("--brighten", type=click.IntRange(-255, 255), default=0, help="Add to every gray level")
@click.option("--contrast", type=float, default=0.0, help="Contrast change in percent")
@click.option("--concentration", type=click.IntRange(0, 2), default=None, help="Darkness: 0 light, 1 normal, 2 dark")
@click.option("--fit", type=click.Choice(FIT_MODES), default="scale", help="Scale to paper width or pad narrow images")
@click.option("--preview", type=click.Path(dir_okay=False, writable=True), help="Save the 1-bit result here instead of printing")
@click.option("--profile", "profile_path", type=click.Path(exists=True, dir_okay=False), help="Protocol profile JSON")
@click.option("--debug/--no-debug", default=False, help="Enable debug output")
def main(
    file, device, num, feed, feed_lines, invert, rotate, threshold, no_dither,
    brighten, contrast, concentration, fit, preview, profile_path, debug,
):
    """Print FILE (use - for stdin)."""
    setup_logging(debug)

    try:
        image = prepare_image(read_image(file), int(rotate), brighten, contrast)
        pixels = PixelBuffer.from_image(image)
    except InvalidImageError as e:
        click.echo(f"Image error: {e}", err=True)
        sys.exit(1)

    heat = None if concentration is None else Printer.CONCENTRATION_HEAT[concentration]
    options = JobOptions(
        heat_level=heat,
        feed_lines_after=feed_lines if feed else 0,
        dither=not no_dither,
        fit=fit,
        threshold=threshold,
        invert=invert,
    )

    if preview:
        try:
            raster = rasterize(
                pixels,
                load_profile(profile_path).device_width,
                dither=options.dither,
                fit=options.fit,
                threshold=options.threshold,
                invert=options.invert,
            )
        except (ConfigError, InvalidImageError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        rows_to_image(list(raster), raster.device_width).save(preview)
        click.echo(f"Preview saved to {preview} ({len(raster)} rows)")
        return

    async def _print(printer: Printer):
        click.echo(f"Printing {file} ({num} cop{'y' if num == 1 else 'ies'})...")
        handle = await printer.print_image(pixels, options, copies=num)
        click.echo(f"Print complete ({handle.rows_sent} rows).")

    asyncio.run(run_with_printer(device, _print, profile_path))


if __name__ == "__main__":
    main()
