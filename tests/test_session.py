from __future__ import annotations

import asyncio

import pytest

from devswitch.domain.models import BoolValue, Device, DevSwitchError, Preset
from devswitch.services.presets import PresetCatalogService
from devswitch.services.session import DeviceSession, create_transport
from devswitch.services.transport import DEVICE_CHANGED, DEVICE_CONNECTED, AdbTransport, SSHTransport
from tests.fakes import EMULATOR, FakeShellTransport

TABLET = Device(serial="R58M123ABC", model="Galaxy Tab")


def _session(transport: FakeShellTransport, **kwargs) -> DeviceSession:  # noqa: ANN003
    session = DeviceSession(transport, command_timeout=2.0, **kwargs)
    session.controller.set_auto_refresh(False)
    return session


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0.01)


def test_create_transport_follows_environment(monkeypatch) -> None:
    monkeypatch.delenv("DEVSWITCH_TRANSPORT", raising=False)
    assert isinstance(create_transport(), AdbTransport)

    class _Prefs:
        def get(self, _key: str, default: object = None) -> object:
            return [{"name": "bench", "host": "10.0.0.5", "username": "shell"}]

    monkeypatch.setenv("DEVSWITCH_TRANSPORT", "SSH")
    transport = create_transport(_Prefs())  # type: ignore[arg-type]
    assert isinstance(transport, SSHTransport)
    assert list(transport.targets) == ["10.0.0.5:22"]

    monkeypatch.setenv("DEVSWITCH_TRANSPORT", "bluetooth")
    with pytest.raises(DevSwitchError):
        create_transport()


def test_session_selects_first_device_and_tracks_online_flag() -> None:
    transport = FakeShellTransport(devices=[EMULATOR])
    transport.settings[("global", "wifi_on")] = "1"
    session = _session(transport)

    async def scenario() -> tuple[list[str], bool, bool]:
        async with session:
            devices = await session.wait_for_devices(timeout=2)
            await _settle()
            assert session.selected_device == EMULATOR
            assert session.state_store.snapshot().values["wifi"] == BoolValue(True)

            offline = Device(serial=EMULATOR.serial, name=EMULATOR.name, model=EMULATOR.model, online=False)
            transport.devices = [offline, TABLET]
            transport.emit(DEVICE_CHANGED, offline)
            await _settle()
            still_selected = session.selected_device.serial == EMULATOR.serial
            online = session.state_store.snapshot().device.online
            return [d.serial for d in devices], still_selected, online

    serials, still_selected, online = asyncio.run(scenario())

    assert serials == ["emulator-5554"]
    assert still_selected is True
    assert online is False
    assert transport.listeners == []


def test_session_switches_device_and_applies_presets(tmp_path) -> None:
    transport = FakeShellTransport(devices=[EMULATOR])
    catalog = PresetCatalogService(storage_path=tmp_path / "presets.json")
    catalog.save_preset(Preset(name="Radios", settings={"wifi": True, "bluetooth": True}))
    session = _session(transport, preset_catalog=catalog)

    async def scenario():  # noqa: ANN202
        async with session:
            await session.wait_for_devices(timeout=2)
            transport.devices = [EMULATOR, TABLET]
            transport.emit(DEVICE_CONNECTED, TABLET)
            await _settle()
            assert [d.serial for d in session.devices] == ["emulator-5554", "R58M123ABC"]

            selected = session.select_device("R58M123ABC")
            await _settle()
            result = await session.apply_preset("radios")
            toggled = await session.toggle_setting("wifi")
            captured = session.capture_preset("Snapshot", save=True)
            with pytest.raises(DevSwitchError):
                session.select_device("missing")
            return selected, result, toggled, captured

    selected, result, toggled, captured = asyncio.run(scenario())

    assert selected == TABLET
    assert result.applied == ["wifi", "bluetooth"]
    assert toggled == BoolValue(False)
    assert captured.settings["bluetooth"] is True
    assert captured.settings["wifi"] is False
    assert catalog.load_preset("snapshot").name == "Snapshot"


def test_session_dispose_stops_watching_and_clears_selection() -> None:
    transport = FakeShellTransport(devices=[EMULATOR], latency=0.2)
    session = DeviceSession(transport, command_timeout=2.0)

    async def scenario() -> None:
        await session.start()
        await session.wait_for_devices(timeout=2)
        session.set_refresh_interval(500)
        await asyncio.sleep(0.05)
        await session.dispose()

    asyncio.run(scenario())

    assert session.selected_device is None
    assert transport.listeners == []
    assert session.controller.values() == {}


def test_session_without_catalog_rejects_named_presets() -> None:
    session = _session(FakeShellTransport(devices=[]))

    with pytest.raises(DevSwitchError):
        session.capture_preset("x", save=True)
    with pytest.raises(DevSwitchError):
        asyncio.run(session.apply_preset("UI Testing"))
