from __future__ import annotations

import json

import pytest

from devswitch.services.preferences import AUTO_REFRESH_KEY, REFRESH_INTERVAL_KEY, PreferenceStore


def test_preference_store_round_trips_values(tmp_path) -> None:
    path = tmp_path / "preferences.json"
    store = PreferenceStore(storage_path=path)

    store.set(AUTO_REFRESH_KEY, False)
    store.set(REFRESH_INTERVAL_KEY, 2000)
    store.set("ssh_targets", [{"host": "10.0.0.5"}])

    reloaded = PreferenceStore(storage_path=path)
    assert reloaded.get_bool(AUTO_REFRESH_KEY, True) is False
    assert reloaded.get_int(REFRESH_INTERVAL_KEY, 1000) == 2000
    assert reloaded.get("ssh_targets") == [{"host": "10.0.0.5"}]
    assert reloaded.keys() == [AUTO_REFRESH_KEY, REFRESH_INTERVAL_KEY, "ssh_targets"]
    assert json.loads(path.read_text(encoding="utf-8"))["values"][REFRESH_INTERVAL_KEY] == 2000


def test_preference_store_defaults_for_missing_or_corrupt_file(tmp_path) -> None:
    path = tmp_path / "preferences.json"
    store = PreferenceStore(storage_path=path)
    assert store.get("missing", "fallback") == "fallback"
    assert store.get_bool(AUTO_REFRESH_KEY, True) is True

    path.write_text("{broken", encoding="utf-8")
    assert store.keys() == []
    assert store.get_int(REFRESH_INTERVAL_KEY, 1000) == 1000


def test_preference_store_coerces_loose_values(tmp_path) -> None:
    store = PreferenceStore(storage_path=tmp_path / "preferences.json")
    store.set(AUTO_REFRESH_KEY, "off")
    store.set(REFRESH_INTERVAL_KEY, "500")
    store.set("garbage_flag", "perhaps")
    store.set("bool_interval", True)

    assert store.get_bool(AUTO_REFRESH_KEY, True) is False
    assert store.get_int(REFRESH_INTERVAL_KEY, 1000) == 500
    assert store.get_bool("garbage_flag", True) is True
    assert store.get_int("bool_interval", 1000) == 1000


def test_preference_store_delete_and_blank_keys(tmp_path) -> None:
    store = PreferenceStore(storage_path=tmp_path / "preferences.json")
    store.set("theme", "dark")

    assert store.delete("theme") is True
    assert store.delete("theme") is False
    assert store.delete("   ") is False
    with pytest.raises(ValueError):
        store.set("  ", 1)


def test_preference_store_default_path_uses_data_dir(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("DEVSWITCH_DATA_DIR", str(tmp_path))

    assert PreferenceStore().storage_path == tmp_path / "preferences.json"
