"""Tests for CLI functionality."""

import json
from unittest.mock import AsyncMock

import pytest
from click.testing import CliRunner
from PIL import Image

from ppa6.cli import main
from ppa6.config import load_cached_device, save_device
from ppa6.connection import PrinterInfo
from ppa6.print_cli import main as print_main
from ppa6.print_cli import prepare_image
from ppa6.printer import Printer
from ppa6.protocol import Feed, Print, SetHeat


@pytest.fixture(autouse=True)
def config_dir(tmp_path, monkeypatch):
    """Keep the device cache and profile out of the real home directory."""
    config_dir = tmp_path / ".config" / "ppa6"
    monkeypatch.setattr("ppa6.config.CONFIG_DIR", config_dir)
    monkeypatch.setattr("ppa6.config.CACHE_FILE", config_dir / "last_device")
    monkeypatch.setattr("ppa6.config.PROFILE_FILE", config_dir / "profile.json")
    return config_dir


@pytest.fixture
def runner():
    """Create CLI test runner."""
    return CliRunner()


@pytest.fixture
def open_printer(mocker, fake_printer, profile):
    """Make Printer.open return a printer backed by the fake device."""
    printer = Printer(fake_printer, profile, retry_delay=0.001)
    return mocker.patch("ppa6.cli.Printer.open", AsyncMock(return_value=printer))


@pytest.fixture
def image_file(tmp_path):
    path = tmp_path / "test.png"
    Image.new("L", (384, 20), color=0).save(path)
    return path


class TestScan:
    """Test scan command output."""

    def test_scan_lists_printers(self, runner, mocker):
        mocker.patch(
            "ppa6.cli.Printer.scan",
            AsyncMock(return_value=[
                PrinterInfo(name="PeriPage_A6", address="AA:BB:CC:DD:EE:FF", rssi=-50),
                PrinterInfo(name="PPA6", address="11:22:33:44:55:66", rssi=-60),
            ]),
        )
        result = runner.invoke(main, ["scan", "--timeout", "1"])
        assert result.exit_code == 0
        assert "Found 2 printer(s):" in result.output
        assert "PeriPage_A6 [AA:BB:CC:DD:EE:FF] RSSI: -50 dB" in result.output

    def test_scan_no_printers_found(self, runner, mocker):
        mocker.patch("ppa6.cli.Printer.scan", AsyncMock(return_value=[]))
        result = runner.invoke(main, ["scan", "--timeout", "1"])
        assert result.exit_code == 0
        assert "No printers found." in result.output


class TestDeviceSelection:
    """Explicit device, then cache, then scan."""

    def test_explicit_device_is_cached(self, runner, open_printer):
        result = runner.invoke(main, ["reset", "-d", "/dev/rfcomm0"])
        assert result.exit_code == 0
        open_printer.assert_awaited_once()
        assert open_printer.await_args.args[0] == "/dev/rfcomm0"
        assert load_cached_device().address == "/dev/rfcomm0"

    def test_cached_device_used(self, runner, open_printer):
        save_device("/dev/rfcomm7", "Desk printer")
        result = runner.invoke(main, ["reset"])
        assert result.exit_code == 0
        assert "Using cached printer: Desk printer [/dev/rfcomm7]" in result.output
        assert open_printer.await_args.args[0] == "/dev/rfcomm7"

    def test_scan_auto_selects_single_printer(self, runner, mocker, open_printer):
        mocker.patch(
            "ppa6.cli.Printer.scan",
            AsyncMock(return_value=[
                PrinterInfo(name="PeriPage_A6", address="AA:BB:CC:DD:EE:FF", rssi=-50),
            ]),
        )
        result = runner.invoke(main, ["reset"])
        assert result.exit_code == 0
        assert "Using PeriPage_A6 [AA:BB:CC:DD:EE:FF]" in result.output
        assert "[1]" not in result.output
        assert open_printer.await_args.args[0] == "AA:BB:CC:DD:EE:FF"

    def test_interactive_selection(self, runner, mocker, open_printer):
        mocker.patch(
            "ppa6.cli.Printer.scan",
            AsyncMock(return_value=[
                PrinterInfo(name="First", address="AA:BB:CC:DD:EE:FF", rssi=-50),
                PrinterInfo(name="Second", address="11:22:33:44:55:66", rssi=-60),
            ]),
        )
        result = runner.invoke(main, ["reset"], input="2\n")
        assert result.exit_code == 0
        assert "[2] Second [11:22:33:44:55:66]" in result.output
        assert "Using Second [11:22:33:44:55:66]" in result.output
        assert open_printer.await_args.args[0] == "11:22:33:44:55:66"

    def test_no_printers_exits(self, runner, mocker, open_printer):
        mocker.patch("ppa6.cli.Printer.scan", AsyncMock(return_value=[]))
        result = runner.invoke(main, ["reset"])
        assert result.exit_code == 1
        open_printer.assert_not_awaited()


class TestCommands:

    def test_status(self, runner, open_printer):
        result = runner.invoke(main, ["status", "-d", "/dev/rfcomm0"])
        assert result.exit_code == 0
        assert "Paper: ok" in result.output
        assert "battery: 87%" in result.output

    def test_status_fault_exit_code(self, runner, open_printer, fake_printer):
        fake_printer.paper_present = False
        result = runner.invoke(main, ["status", "-d", "/dev/rfcomm0"])
        assert result.exit_code == 2
        assert "Paper: OUT" in result.output

    def test_info(self, runner, open_printer):
        result = runner.invoke(main, ["info", "-d", "/dev/rfcomm0"])
        assert result.exit_code == 0
        assert "firmware: V2.1.7" in result.output
        assert "name: PPA6-TEST" in result.output

    def test_feed(self, runner, open_printer, fake_printer):
        result = runner.invoke(main, ["feed", "40", "-d", "/dev/rfcomm0"])
        assert result.exit_code == 0
        assert fake_printer.frames(Feed) == [Feed(40)]

    def test_heat(self, runner, open_printer, fake_printer):
        result = runner.invoke(main, ["heat", "200", "-d", "/dev/rfcomm0"])
        assert result.exit_code == 0
        assert fake_printer.frames(SetHeat) == [SetHeat(200)]

    def test_heat_out_of_range(self, runner, open_printer):
        result = runner.invoke(main, ["heat", "300", "-d", "/dev/rfcomm0"])
        assert result.exit_code == 2
        open_printer.assert_not_awaited()

    def test_test_pattern(self, runner, open_printer, fake_printer):
        result = runner.invoke(main, ["test", "-d", "/dev/rfcomm0"])
        assert result.exit_code == 0
        assert "Test pattern printed (96 rows)." in result.output
        assert len(fake_printer.printed_rows) == 96

    def test_unresponsive_printer(self, runner, open_printer, fake_printer):
        fake_printer.silent_after = 0
        result = runner.invoke(main, ["reset", "-d", "/dev/rfcomm0"])
        assert result.exit_code == 1
        assert "Connection error:" in result.output
        assert load_cached_device() is None

    def test_bad_profile(self, runner, open_printer, tmp_path):
        path = tmp_path / "profile.json"
        path.write_text(json.dumps({"checksum": "md5"}))
        result = runner.invoke(main, ["reset", "-d", "/dev/rfcomm0", "--profile", str(path)])
        assert result.exit_code == 1
        assert "Config error:" in result.output
        open_printer.assert_not_awaited()


class TestRaw:

    def test_invalid_hex(self, runner, open_printer):
        result = runner.invoke(main, ["raw", "0x20", "zz", "--force", "-d", "/dev/rfcomm0"])
        assert result.exit_code == 1
        assert "Invalid opcode or hex data!" in result.output

    def test_declined_prompt(self, runner, open_printer):
        result = runner.invoke(main, ["raw", "0x20", "-d", "/dev/rfcomm0"], input="n\n")
        assert "WARNING" in result.output
        assert "Aborted." in result.output
        open_printer.assert_not_awaited()

    def test_status_query(self, runner, open_printer):
        result = runner.invoke(
            main, ["raw", "0x20", "--force", "--timeout", "0.05", "-d", "/dev/rfcomm0"]
        )
        assert result.exit_code == 0
        assert "Sending: 2000002000feef" in result.output
        assert "Response: STATUS" in result.output

    def test_opcode_out_of_range(self, runner, open_printer):
        result = runner.invoke(main, ["raw", "0x100", "--force", "-d", "/dev/rfcomm0"])
        assert result.exit_code == 1
        assert "Invalid frame:" in result.output


class TestPrintCommand:

    def test_print(self, runner, open_printer, fake_printer, image_file):
        result = runner.invoke(print_main, [str(image_file), "-d", "/dev/rfcomm0"])
        assert result.exit_code == 0
        assert "Print complete (20 rows)." in result.output
        assert len(fake_printer.frames(Print)) == 1
        assert fake_printer.frames(Feed) == [Feed(96)]

    def test_print_copies_no_feed(self, runner, open_printer, fake_printer, image_file):
        result = runner.invoke(
            print_main, [str(image_file), "-d", "/dev/rfcomm0", "-n", "2", "--no-feed"]
        )
        assert result.exit_code == 0
        assert "2 copies" in result.output
        assert len(fake_printer.printed_rows) == 40
        assert fake_printer.frames(Feed) == []

    def test_print_concentration(self, runner, open_printer, fake_printer, image_file):
        result = runner.invoke(
            print_main, [str(image_file), "-d", "/dev/rfcomm0", "--concentration", "0"]
        )
        assert result.exit_code == 0
        assert fake_printer.frames(SetHeat) == [SetHeat(0x55)]

    def test_print_paper_out(self, runner, open_printer, fake_printer, image_file):
        fake_printer.paper_present = False
        result = runner.invoke(print_main, [str(image_file), "-d", "/dev/rfcomm0"])
        assert result.exit_code == 1
        assert "Printer fault: Device fault: paper_out" in result.output

    def test_bad_file(self, runner, open_printer, tmp_path):
        path = tmp_path / "notes.png"
        path.write_text("not an image")
        result = runner.invoke(print_main, [str(path), "-d", "/dev/rfcomm0"])
        assert result.exit_code == 1
        assert "Image error:" in result.output
        open_printer.assert_not_awaited()

    def test_stdin(self, runner, open_printer, fake_printer, image_file):
        result = runner.invoke(
            print_main, ["-", "-d", "/dev/rfcomm0"], input=image_file.read_bytes()
        )
        assert result.exit_code == 0
        assert len(fake_printer.printed_rows) == 20

    def test_preview(self, runner, open_printer, tmp_path):
        source = tmp_path / "narrow.png"
        Image.new("L", (100, 50), color=255).save(source)
        preview = tmp_path / "preview.png"

        result = runner.invoke(print_main, [str(source), "--preview", str(preview)])

        assert result.exit_code == 0
        assert "192 rows" in result.output
        with Image.open(preview) as img:
            assert img.size == (384, 192)
        open_printer.assert_not_awaited()

    def test_preview_pad(self, runner, tmp_path):
        source = tmp_path / "narrow.png"
        Image.new("L", (100, 50), color=255).save(source)
        preview = tmp_path / "preview.png"

        result = runner.invoke(
            print_main, [str(source), "--fit", "pad", "--preview", str(preview)]
        )
        assert result.exit_code == 0
        assert "50 rows" in result.output


class TestPrepareImage:

    def test_rotate_clockwise(self):
        image = Image.new("L", (30, 10))
        assert prepare_image(image, rotate=90).size == (10, 30)

    def test_brighten(self):
        image = Image.new("L", (1, 1), color=100)
        assert prepare_image(image, brighten=50).getpixel((0, 0)) == 150

    def test_brighten_clamps(self):
        image = Image.new("L", (1, 1), color=250)
        assert prepare_image(image, brighten=50).getpixel((0, 0)) == 255

    def test_untouched_without_adjustments(self):
        image = Image.new("RGB", (2, 2))
        assert prepare_image(image) is image
