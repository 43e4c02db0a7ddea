from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Mapping

from devswitch.domain.models import Device, DevSwitchError, Preset, PresetApplyResult, SettingValue
from devswitch.services.action_log import ActionLogService
from devswitch.services.command_channel import COMMAND_TIMEOUT_SECONDS, CommandChannel
from devswitch.services.device_registry import DeviceRegistry, choose_selection
from devswitch.services.device_tools import DeviceToolsService
from devswitch.services.preferences import PreferenceStore
from devswitch.services.presets import PresetCatalogService, PresetEngine
from devswitch.services.setting_actions import SettingAction
from devswitch.services.setting_catalog import build_catalog
from devswitch.services.sync_controller import SyncController
from devswitch.services.transport import (
    AdbTransport,
    DeviceTransport,
    SSHTransport,
    load_ssh_targets,
)
from devswitch.ui.app_state import AppStateStore

_LOGGER = logging.getLogger(__name__)

SSH_REFRESH_INTERVAL_SECONDS = 5.0


def create_transport(preferences: PreferenceStore | None = None) -> DeviceTransport:
    """Pick the transport named by ``DEVSWITCH_TRANSPORT`` (``adb`` by default)."""
    kind = (os.getenv("DEVSWITCH_TRANSPORT") or "adb").strip().lower()
    if kind == "adb":
        return AdbTransport()
    if kind == "ssh":
        targets = load_ssh_targets(preferences or PreferenceStore())
        if not targets:
            _LOGGER.warning("DEVSWITCH_TRANSPORT=ssh but no SSH targets are saved")
        return SSHTransport(targets)
    raise DevSwitchError(f"Unsupported transport '{kind}'; expected 'adb' or 'ssh'.")


class DeviceSession:
    """Wires a transport to the registry, controller, presets and tools.

    Created when a UI session starts and disposed when it ends. Everything
    here runs on one event loop; see :class:`LoopThread` for synchronous
    callers.
    """

    def __init__(
        self,
        transport: DeviceTransport,
        *,
        catalog: Mapping[str, SettingAction] | None = None,
        preferences: PreferenceStore | None = None,
        state_store: AppStateStore | None = None,
        action_log: ActionLogService | None = None,
        preset_catalog: PresetCatalogService | None = None,
        command_timeout: float = COMMAND_TIMEOUT_SECONDS,
    ) -> None:
        self.transport = transport
        self.channel = CommandChannel(transport, timeout=command_timeout)
        self.registry = DeviceRegistry(transport)
        self.state_store = state_store or AppStateStore()
        self.action_log = action_log
        self.preset_catalog = preset_catalog
        self.controller = SyncController(
            catalog if catalog is not None else build_catalog(self.channel),
            preferences=preferences,
            state_store=self.state_store,
            action_log=action_log,
        )
        self.presets = PresetEngine(self.controller, action_log=action_log)
        self.tools = DeviceToolsService(self.channel, action_log=action_log)
        self._devices: list[Device] = []
        self._tasks: list[asyncio.Task[None]] = []
        self._first_snapshot = asyncio.Event()

    async def __aenter__(self) -> "DeviceSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.dispose()

    @property
    def devices(self) -> list[Device]:
        return list(self._devices)

    @property
    def selected_device(self) -> Device | None:
        return self.controller.selected_device

    async def start(self) -> None:
        if self._tasks:
            return
        loop = asyncio.get_running_loop()
        self._tasks.append(loop.create_task(self._watch_devices()))
        if isinstance(self.transport, SSHTransport):
            self._tasks.append(loop.create_task(self._watch_ssh_targets(self.transport)))

    async def wait_for_devices(self, timeout: float | None = None) -> list[Device]:
        """Block until the first device snapshot has been applied."""
        await asyncio.wait_for(self._first_snapshot.wait(), timeout)
        return self.devices

    async def _watch_devices(self) -> None:
        async for devices in self.registry.observe_devices():
            self._apply_snapshot(devices)

    async def _watch_ssh_targets(self, transport: SSHTransport) -> None:
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(SSH_REFRESH_INTERVAL_SECONDS)
            await loop.run_in_executor(None, transport.refresh)

    def _apply_snapshot(self, devices: list[Device]) -> None:
        self._devices = list(devices)
        selected = choose_selection(self.controller.selected_device, self._devices)
        self.state_store.update_devices(devices=self._devices, selected=selected)
        self.controller.select_device(selected)
        self._first_snapshot.set()

    # UI boundary ---------------------------------------------------------

    def select_device(self, serial: str) -> Device:
        for device in self._devices:
            if device.serial == serial:
                self.controller.select_device(device)
                return device
        raise DevSwitchError(f"No connected device with serial '{serial}'.")

    def set_auto_refresh(self, enabled: bool) -> None:
        self.controller.set_auto_refresh(enabled)

    def set_refresh_interval(self, interval_ms: int) -> None:
        self.controller.set_refresh_interval(interval_ms)

    async def refresh(self) -> dict[str, SettingValue]:
        return await self.controller.refresh_all()

    async def change_setting(self, key: str, value: Any) -> SettingValue | None:
        return await self.controller.change_setting(key, value)

    async def toggle_setting(self, key: str) -> SettingValue | None:
        return await self.controller.toggle_setting(key)

    async def available_options(self, key: str) -> list[str]:
        return await self.controller.available_options(key)

    def capture_preset(self, name: str, description: str = "", *, save: bool = False) -> Preset:
        preset = self.presets.capture(name, description)
        if save:
            if self.preset_catalog is None:
                raise DevSwitchError("No preset catalogue is configured.")
            self.preset_catalog.save_preset(preset)
        return preset

    async def apply_preset(self, preset: Preset | str) -> PresetApplyResult:
        if isinstance(preset, str):
            if self.preset_catalog is None:
                raise DevSwitchError("No preset catalogue is configured.")
            preset = self.preset_catalog.load_preset(preset)
        return await self.presets.apply(preset)

    async def dispose(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                _LOGGER.warning("Device watcher ended with error: %s", result)
        await self.controller.dispose()
        if isinstance(self.transport, SSHTransport):
            self.transport.close()
