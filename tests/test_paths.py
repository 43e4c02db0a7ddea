from __future__ import annotations

from pathlib import Path

from devswitch.services import paths


def test_user_data_dir_prefers_explicit_override(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("DEVSWITCH_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("APPDATA", str(tmp_path / "appdata"))

    assert paths.user_data_dir() == tmp_path / "data"
    assert paths.logs_dir() == tmp_path / "data" / "logs"


def test_user_data_dir_falls_back_to_appdata_then_home(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("DEVSWITCH_DATA_DIR", raising=False)
    monkeypatch.setenv("APPDATA", str(tmp_path))
    assert paths.user_data_dir() == tmp_path / "DevSwitch"

    monkeypatch.delenv("APPDATA", raising=False)
    assert paths.user_data_dir() == Path.home() / ".devswitch"


def test_schemas_dir_contains_preset_schema() -> None:
    assert (paths.schemas_dir() / "preset.schema.json").is_file()


def test_adb_candidates_are_ordered_and_deduplicated(tmp_path, monkeypatch) -> None:
    sdk = tmp_path / "sdk"
    adb = sdk / "platform-tools" / ("adb.exe" if paths.os.name == "nt" else "adb")
    adb.parent.mkdir(parents=True)
    adb.write_text("", encoding="utf-8")
    monkeypatch.setenv("DEVSWITCH_ADB_PATH", str(tmp_path / "missing-adb"))
    monkeypatch.setenv("ANDROID_SDK_ROOT", str(sdk))
    monkeypatch.setenv("ANDROID_HOME", str(sdk))
    monkeypatch.setattr(paths.shutil, "which", lambda _name: None)

    candidates = paths.adb_path_candidates()

    assert candidates == [tmp_path / "missing-adb", adb]
    assert paths.find_adb_path() == str(adb)


def test_find_adb_path_defaults_to_bare_name(monkeypatch) -> None:
    for name in ("DEVSWITCH_ADB_PATH", "ANDROID_SDK_ROOT", "ANDROID_HOME"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(paths.shutil, "which", lambda _name: None)

    assert paths.find_adb_path() == "adb"
