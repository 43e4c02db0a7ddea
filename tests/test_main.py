from __future__ import annotations

import json

import pytest

from devswitch import main as cli
from devswitch.services.logging_config import reset_logging
from devswitch.services.session import DeviceSession
from tests.fakes import EMULATOR, FakeShellTransport


@pytest.fixture(autouse=True)
def _isolated_data_dir(tmp_path, monkeypatch):  # noqa: ANN001, ANN202
    monkeypatch.setenv("DEVSWITCH_DATA_DIR", str(tmp_path))
    reset_logging()
    yield
    reset_logging()


@pytest.fixture
def transport(monkeypatch) -> FakeShellTransport:  # noqa: ANN001
    fake = FakeShellTransport(devices=[EMULATOR])
    monkeypatch.setattr(cli, "create_transport", lambda _prefs: fake)
    return fake


def test_build_parser_requires_a_command() -> None:
    parser = cli.build_parser()

    with pytest.raises(SystemExit):
        parser.parse_args([])
    args = parser.parse_args(["set", "-s", "emulator-5554", "wifi", "on"])
    assert (args.serial, args.key, args.value) == ("emulator-5554", "wifi", "on")


def test_presets_command_lists_builtins(capsys) -> None:  # noqa: ANN001
    assert cli.main(["presets"]) == 0

    out = capsys.readouterr().out
    assert "UI Testing (built-in): Clean status bar" in out
    assert "Default/Reset (built-in)" in out


def test_devices_command_lists_serials(transport, capsys) -> None:  # noqa: ANN001
    assert cli.main(["devices"]) == 0

    assert "emulator-5554\tonline\tPixel 7 (emulator-5554)" in capsys.readouterr().out


def test_set_command_writes_and_prints_fresh_value(transport, capsys) -> None:  # noqa: ANN001
    assert cli.main(["set", "wifi", "on"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload == {"device": "emulator-5554", "wifi": True}
    assert transport.writes() == ["svc wifi enable"]


def test_unknown_serial_and_unknown_setting_fail(transport, capsys) -> None:  # noqa: ANN001
    assert cli.main(["toggle", "-s", "nope", "wifi"]) == 1
    assert "Device 'nope' not found." in capsys.readouterr().err

    assert cli.main(["toggle", "warp_drive"]) == 1
    assert "Unknown setting 'warp_drive'" in capsys.readouterr().err


def test_apply_preset_from_file_saves_and_applies(transport, tmp_path, capsys) -> None:  # noqa: ANN001
    preset_file = tmp_path / "radios.json"
    preset_file.write_text(
        json.dumps({"name": "Radios", "settings": {"wifi": True, "warp_drive": 1}}),
        encoding="utf-8",
    )

    assert cli.main(["apply-preset", "--file", str(preset_file)]) == 0

    result = json.loads(capsys.readouterr().out)
    assert result["applied"] == ["wifi"]
    assert result["skipped"] == ["warp_drive"]
    assert (tmp_path / "presets.json").exists()


def test_cli_session_never_persists_refresh_preferences(transport, tmp_path) -> None:  # noqa: ANN001
    session = cli._build_session()

    assert isinstance(session, DeviceSession)
    assert session.controller.auto_refresh is False
    assert not (tmp_path / "preferences.json").exists()


def test_logcat_command_prints_or_saves(transport, tmp_path, capsys) -> None:  # noqa: ANN001
    transport.responses["logcat -d -t 50 '*:E'"] = "E AndroidRuntime: FATAL EXCEPTION\n"

    assert cli.main(["logcat", "-n", "50", "-p", "E"]) == 0
    assert capsys.readouterr().out == "E AndroidRuntime: FATAL EXCEPTION\n"

    out_file = tmp_path / "logcat.txt"
    assert cli.main(["logcat", "-o", str(out_file)]) == 0
    assert out_file.exists()

    assert cli.main(["logcat", "--clear"]) == 0
    assert transport.commands[-1] == "logcat -c"


def test_window_dump_and_record_commands(transport, tmp_path, capsys) -> None:  # noqa: ANN001
    transport.responses["cat /sdcard/window_dump.xml"] = "<hierarchy rotation=\"0\"/>"
    out_file = tmp_path / "ui.xml"

    assert cli.main(["window-dump", "-o", str(out_file)]) == 0
    assert out_file.read_text(encoding="utf-8") == "<hierarchy rotation=\"0\"/>"

    assert cli.main(["record", "start", "--time-limit", "10"]) == 0
    assert cli.main(["record", "stop"]) == 0
    assert transport.commands[-1] == "pkill -SIGINT screenrecord"
    assert transport.commands[-2].startswith("nohup screenrecord --time-limit 10 ")

    assert cli.main(["record", "start", "--time-limit", "999"]) == 1
    assert "time limit" in capsys.readouterr().err
