"""
Command-Line Interface for the PPA6 Printer.

Usage:
    ppa6 scan                 - Scan for Bluetooth LE printers
    ppa6 info                 - Show device information
    ppa6 status               - Show paper, temperature and battery state
    ppa6 reset                - Reset the printer
    ppa6 feed LINES           - Feed blank dot rows
    ppa6 heat LEVEL           - Set print head heat (0-255)
    ppa6 test                 - Print a test pattern
    ppa6 raw OPCODE [HEX]     - Send one raw frame (debugging)

DEVICE is a serial port (/dev/rfcomm0), a USB printer node (/dev/usb/lp0),
a pyserial URL, or a Bluetooth address. When omitted, the last used device
is taken from the cache, or printers are scanned and one is picked.
"""

import asyncio
import logging
import sys
from typing import Awaitable, Callable, Optional

import click

from .config import load_cached_device, load_profile, save_device
from .errors import (
    ConfigError,
    DeviceFaultError,
    InvalidImageError,
    PrinterError,
    TransportError,
)
from .printer import Printer
from .protocol import encode_raw, frame_name


def setup_logging(debug: bool):
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="[%(name)s] %(message)s",
    )


async def resolve_device(device: Optional[str], scan_timeout: float = 10.0) -> Optional[str]:
    """Explicit device, else the cached one, else the printer picked from a scan."""
    if device:
        return device

    cached = load_cached_device()
    if cached:
        click.echo(f"Using cached printer: {cached.name} [{cached.address}]")
        return cached.address

    click.echo(f"No device given, scanning for {scan_timeout:g}s...")
    found = await Printer.scan(timeout=scan_timeout)
    if not found:
        click.echo("No printers found.", err=True)
        return None

    chosen = found[0]
    if len(found) > 1:
        for number, candidate in enumerate(found, 1):
            click.echo(f"  [{number}] {candidate}")
        number = click.prompt("Printer", type=click.IntRange(1, len(found)), default=1)
        chosen = found[number - 1]
    click.echo(f"Using {chosen.name} [{chosen.address}]")
    return chosen.address


async def run_with_printer(
    device: Optional[str],
    action: Callable[[Printer], Awaitable[None]],
    profile_path: Optional[str] = None,
):
    """Open the printer, run an action on it, and report errors the same way for every command."""
    device = await resolve_device(device)
    if device is None:
        sys.exit(1)

    try:
        profile = load_profile(profile_path)
    except ConfigError as e:
        click.echo(f"Config error: {e}", err=True)
        sys.exit(1)

    click.echo(f"Connecting to {device}...")
    try:
        printer = await Printer.open(device, profile)
    except TransportError as e:
        click.echo(f"Connection error: {e}", err=True)
        sys.exit(1)

    try:
        await action(printer)
        save_device(device)
    except DeviceFaultError as e:
        click.echo(f"Printer fault: {e}", err=True)
        sys.exit(1)
    except InvalidImageError as e:
        click.echo(f"Image error: {e}", err=True)
        sys.exit(1)
    except TransportError as e:
        click.echo(f"Connection error: {e}", err=True)
        sys.exit(1)
    except PrinterError as e:
        click.echo(f"Printer error: {e}", err=True)
        sys.exit(1)
    finally:
        await printer.close()


device_option = click.option(
    "--device",
    "-d",
    help="Serial port, /dev/usb/lpN, pyserial URL or Bluetooth address (default: last used)",
)
profile_option = click.option(
    "--profile",
    "profile_path",
    type=click.Path(exists=True, dir_okay=False),
    help="Protocol profile JSON (default: ~/.config/ppa6/profile.json)",
)


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug output")
def main(debug):
    """PPA6 Thermal Printer CLI."""
    setup_logging(debug)


@main.command()
@click.option("--timeout", default=10.0, help="Scan timeout in seconds")
def scan(timeout):
    """Scan for PPA6 printers over Bluetooth LE."""

    async def _scan():
        click.echo(f"Scanning for printers ({timeout}s)...")
        printers = await Printer.scan(timeout=timeout)

        if not printers:
            click.echo("No printers found.")
            return

        click.echo(f"\nFound {len(printers)} printer(s):\n")
        for p in printers:
            click.echo(f"  {p}")

    asyncio.run(_scan())


@main.command()
@device_option
@profile_option
def info(device, profile_path):
    """Show device information (name, serial, firmware, ...)."""

    async def _info(printer: Printer):
        for key, value in (await printer.get_info()).items():
            click.echo(f"{key:>10}: {value}")

    asyncio.run(run_with_printer(device, _info, profile_path))


@main.command()
@device_option
@profile_option
def status(device, profile_path):
    """Show paper, temperature and battery state."""

    async def _status(printer: Printer):
        report = await printer.status()
        click.echo(str(report))
        if report.faults:
            sys.exit(2)

    asyncio.run(run_with_printer(device, _status, profile_path))


@main.command()
@device_option
@profile_option
def reset(device, profile_path):
    """Reset the printer."""

    async def _reset(printer: Printer):
        await printer.reset()
        click.echo("Printer reset.")

    asyncio.run(run_with_printer(device, _reset, profile_path))


@main.command()
@click.argument("lines", type=click.IntRange(1, 0xFFFF), default=Printer.DEFAULT_FEED_LINES)
@device_option
@profile_option
def feed(lines, device, profile_path):
    """Feed LINES blank dot rows (default 96)."""

    async def _feed(printer: Printer):
        await printer.feed(lines)
        click.echo(f"Fed {lines} lines.")

    asyncio.run(run_with_printer(device, _feed, profile_path))


@main.command()
@click.argument("level", type=click.IntRange(0, 255))
@device_option
@profile_option
def heat(level, device, profile_path):
    """Set print head heat LEVEL (0-255)."""

    async def _heat(printer: Printer):
        await printer.set_heat(level)
        click.echo(f"Heat set to {level}.")

    asyncio.run(run_with_printer(device, _heat, profile_path))


@main.command()
@device_option
@profile_option
def test(device, profile_path):
    """Print a test pattern."""

    async def _test(printer: Printer):
        click.echo("Printing test pattern...")
        handle = await printer.print_test_pattern()
        click.echo(f"Test pattern printed ({handle.rows_sent} rows).")

    asyncio.run(run_with_printer(device, _test, profile_path))


@main.command()
@click.argument("opcode")
@click.argument("hex_data", default="")
@click.option("--timeout", default=2.0, help="Seconds to collect replies")
@click.option(
    "--force",
    is_flag=True,
    help="Acknowledge risks and skip warning prompt",
)
@device_option
@profile_option
def raw(opcode, hex_data, timeout, force, device, profile_path):
    """Send one raw frame: OPCODE byte (e.g. 0x20) and HEX payload.

    WARNING: This command bypasses the opcode table and all safety checks
    and can misconfigure the printer or burn the head.
    """
    try:
        opcode_value = int(opcode, 0)
        payload = bytes.fromhex(hex_data)
    except ValueError:
        click.echo("Invalid opcode or hex data!", err=True)
        sys.exit(1)

    if not force:
        click.echo(
            "WARNING: Raw mode bypasses all safety checks and sends arbitrary "
            "data directly to the printer.",
            err=True,
        )
        if not click.confirm("Do you want to continue?"):
            click.echo("Aborted.")
            return

    async def _raw(printer: Printer):
        try:
            frame = encode_raw(opcode_value, payload, printer.session.profile)
        except ValueError as e:
            click.echo(f"Invalid frame: {e}", err=True)
            sys.exit(1)

        click.echo(f"Sending: {frame.hex()}")
        replies = await printer.session.send_raw(frame, timeout=timeout)
        if not replies:
            click.echo("No response")
        for reply in replies:
            if isinstance(reply, Exception):
                click.echo(f"Corrupt: {reply}")
            else:
                click.echo(f"Response: {frame_name(reply)} {reply}")

    asyncio.run(run_with_printer(device, _raw, profile_path))


if __name__ == "__main__":
    main()
