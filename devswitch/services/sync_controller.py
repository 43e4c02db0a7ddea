from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Coroutine, Mapping

from devswitch.domain.models import (
    DEFAULT_REFRESH_INTERVAL_MS,
    REFRESH_INTERVALS,
    Device,
    DevSwitchError,
    SettingValue,
    refresh_interval_label,
)
from devswitch.services.action_log import ActionLogService
from devswitch.services.command_channel import CommandChannelError
from devswitch.services.preferences import (
    AUTO_REFRESH_KEY,
    REFRESH_INTERVAL_KEY,
    PreferenceStore,
)
from devswitch.services.setting_actions import (
    CommandFailed,
    RangeAction,
    SettingAction,
    ToggleAction,
)
from devswitch.ui.app_state import AppStateStore

_LOGGER = logging.getLogger(__name__)

_REFRESH_MENU = frozenset(value for value, _label in REFRESH_INTERVALS)


class DeviceOffline(DevSwitchError):
    """Raised when a mutation targets a selected device that is offline."""


class NoDeviceSelected(DevSwitchError):
    """Raised when an operation needs a selected device and there is none."""


class UnknownSetting(DevSwitchError, KeyError):
    """Raised for a setting key the catalogue does not define."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class ControllerMode(str, Enum):
    IDLE = "idle"
    MANUAL = "manual"
    POLLING = "polling"


class SyncController:
    """Keeps a cache of setting values for the selected device fresh.

    All methods run on the event loop that owns the controller. Every task the
    controller starts is tracked so ``dispose()`` can cancel and await it.
    Reads and writes of one key are serialized by that key's lock; different
    keys proceed independently.
    """

    def __init__(
        self,
        catalog: Mapping[str, SettingAction],
        *,
        preferences: PreferenceStore | None = None,
        state_store: AppStateStore | None = None,
        action_log: ActionLogService | None = None,
    ) -> None:
        self._actions: dict[str, SettingAction] = dict(catalog)
        self._locks: dict[str, asyncio.Lock] = {key: asyncio.Lock() for key in self._actions}
        self._values: dict[str, SettingValue] = {}
        self.preferences = preferences
        self.state_store = state_store
        self.action_log = action_log

        self._device: Device | None = None
        self._auto_refresh = True
        self._interval_ms = DEFAULT_REFRESH_INTERVAL_MS
        if preferences is not None:
            self._auto_refresh = preferences.get_bool(AUTO_REFRESH_KEY, True)
            stored = preferences.get_int(REFRESH_INTERVAL_KEY, DEFAULT_REFRESH_INTERVAL_MS)
            if stored in _REFRESH_MENU:
                self._interval_ms = stored

        self._poll_loop_task: asyncio.Task[None] | None = None
        self._poll_fetches: dict[str, asyncio.Task[None]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._last_error: str | None = None
        self._disposed = False
        self._publish_sync()

    # ------------------------------------------------------------------
    # Read-only views

    @property
    def keys(self) -> list[str]:
        return list(self._actions)

    @property
    def selected_device(self) -> Device | None:
        return self._device

    @property
    def auto_refresh(self) -> bool:
        return self._auto_refresh

    @property
    def refresh_interval_ms(self) -> int:
        return self._interval_ms

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def mode(self) -> ControllerMode:
        if self._device is None:
            return ControllerMode.IDLE
        if self._auto_refresh:
            return ControllerMode.POLLING
        return ControllerMode.MANUAL

    def action(self, key: str) -> SettingAction:
        try:
            return self._actions[key]
        except KeyError:
            raise UnknownSetting(f"Unknown setting '{key}'.") from None

    def value(self, key: str) -> SettingValue | None:
        self.action(key)
        return self._values.get(key)

    def values(self) -> dict[str, SettingValue]:
        return dict(self._values)

    def clear_error(self) -> None:
        self._set_error(None)

    # ------------------------------------------------------------------
    # Device selection and refresh settings

    def select_device(self, device: Device | None, *, refresh: bool = True) -> None:
        """Point the controller at ``device``; must run on the owning loop.

        With ``refresh=False`` a newly selected device is not read until the
        caller asks for it or polling is armed.
        """
        if self._disposed:
            return
        previous = self._device
        if device is not None and device.same_device(previous):
            self._device = device
            if previous is not None and previous.online != device.online:
                _LOGGER.info(
                    "Device %s is now %s", device.serial, "online" if device.online else "offline"
                )
            self._publish_device()
            return

        self._stop_polling()
        self._device = device
        self._values.clear()
        for action in self._actions.values():
            action.clear_cache()
        self._publish_device()
        self._publish_values()
        self._publish_sync()
        if device is None:
            _LOGGER.info("No device selected")
            return

        _LOGGER.info("Selected device %s", device.serial)
        if self.action_log is not None:
            self.action_log.log_event("select_device", device=device.serial, name=device.display_name)
        if self._auto_refresh:
            self._start_polling()
        elif refresh:
            self._spawn(self.refresh_all()).add_done_callback(self._on_background_done)

    def set_auto_refresh(self, enabled: bool) -> None:
        enabled = bool(enabled)
        self._auto_refresh = enabled
        if self.preferences is not None:
            self.preferences.set(AUTO_REFRESH_KEY, enabled)
        if enabled and self._device is not None:
            self._start_polling()
        elif not enabled:
            self._stop_polling()
        self._publish_sync()

    def set_refresh_interval(self, interval_ms: int) -> None:
        if interval_ms not in _REFRESH_MENU:
            allowed = ", ".join(label for _value, label in REFRESH_INTERVALS)
            raise ValueError(f"Refresh interval must be one of: {allowed}.")
        self._interval_ms = int(interval_ms)
        if self.preferences is not None:
            self.preferences.set(REFRESH_INTERVAL_KEY, self._interval_ms)
        _LOGGER.debug("Refresh interval set to %s", refresh_interval_label(self._interval_ms))
        if self._poll_loop_task is not None and not self._poll_loop_task.done():
            self._poll_loop_task.cancel()
            self._poll_loop_task = None
            self._start_polling()
        self._publish_sync()

    # ------------------------------------------------------------------
    # Refresh

    async def refresh_all(self) -> dict[str, SettingValue]:
        device = self._device
        if device is None or not device.online:
            return self.values()
        if self.state_store is not None:
            self.state_store.update_sync(refreshing=True)
        try:
            await asyncio.gather(*(self._fetch_quietly(key, device) for key in self._actions))
        finally:
            if self.state_store is not None:
                self.state_store.update_sync(refreshing=False)
        return self.values()

    async def refresh_setting(self, key: str) -> SettingValue | None:
        action = self.action(key)
        device = self._device
        if device is None or not device.online:
            return self._values.get(key)
        try:
            return await self._fetch(action, device)
        except (CommandFailed, CommandChannelError) as exc:
            self._set_error(str(exc), source=key)
            raise

    async def _fetch(self, action: SettingAction, device: Device) -> SettingValue:
        async with self._locks[action.key]:
            value = await action.get_value(device)
            self._store(action.key, device, value)
            return value

    async def _fetch_quietly(self, key: str, device: Device) -> None:
        try:
            await self._fetch(self._actions[key], device)
        except (CommandFailed, CommandChannelError) as exc:
            _LOGGER.warning("Refreshing '%s' on %s failed: %s", key, device.serial, exc)

    # ------------------------------------------------------------------
    # Polling

    def _start_polling(self) -> None:
        if self._disposed or self._device is None:
            return
        if self._poll_loop_task is not None and not self._poll_loop_task.done():
            return
        self._poll_loop_task = asyncio.get_running_loop().create_task(self._poll_loop())
        self._poll_loop_task.add_done_callback(self._on_background_done)
        _LOGGER.debug("Polling every %s", refresh_interval_label(self._interval_ms))

    def _stop_polling(self) -> None:
        if self._poll_loop_task is not None:
            self._poll_loop_task.cancel()
            self._poll_loop_task = None
        for task in list(self._poll_fetches.values()):
            task.cancel()
        self._poll_fetches.clear()

    async def _poll_loop(self) -> None:
        while True:
            self._poll_tick()
            await asyncio.sleep(self._interval_ms / 1000)

    def _poll_tick(self) -> None:
        device = self._device
        if device is None or not device.online:
            return
        for key, action in self._actions.items():
            in_flight = self._poll_fetches.get(key)
            if in_flight is not None and not in_flight.done():
                continue
            if self._locks[key].locked():
                continue
            task = self._spawn(self._poll_key(action, device))
            self._poll_fetches[key] = task
            task.add_done_callback(self._on_poll_fetch_done)

    async def _poll_key(self, action: SettingAction, device: Device) -> None:
        try:
            await self._fetch(action, device)
        except (CommandFailed, CommandChannelError) as exc:
            _LOGGER.debug("Poll of '%s' on %s failed: %s", action.key, device.serial, exc)

    def _on_poll_fetch_done(self, task: asyncio.Task[None]) -> None:
        for key, tracked in list(self._poll_fetches.items()):
            if tracked is task:
                del self._poll_fetches[key]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._disarm(exc)

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._disarm(exc)

    def _disarm(self, exc: BaseException) -> None:
        _LOGGER.error("Auto-refresh stopped after unexpected error: %r", exc)
        self._auto_refresh = False
        self._stop_polling()
        self._set_error(f"Auto-refresh stopped: {exc}", source="poll")
        self._publish_sync()

    # ------------------------------------------------------------------
    # Mutations

    async def change_setting(self, key: str, value: Any) -> SettingValue | None:
        """Write ``value`` and return the value read back from the device."""
        action = self.action(key)
        device = self._checked_device()
        if device is None:
            return None
        return await self._spawn(self._mutate(action, device, value))

    async def toggle_setting(self, key: str) -> SettingValue | None:
        action = self.action(key)
        if not isinstance(action, ToggleAction):
            raise ValueError(f"Setting '{key}' is not a toggle.")
        device = self._checked_device()
        if device is None:
            return None
        return await self._spawn(self._mutate(action, device, None, toggle=True))

    async def available_options(self, key: str) -> list[str]:
        action = self.action(key)
        if not isinstance(action, RangeAction):
            raise ValueError(f"Setting '{key}' has no option list.")
        device = self._device
        if device is None:
            raise NoDeviceSelected("Select a device first.")
        try:
            return await action.get_available_options(device)
        except CommandFailed:
            raise
        except CommandChannelError as exc:
            raise CommandFailed(key, exc) from exc

    def _checked_device(self) -> Device | None:
        device = self._device
        if device is None:
            return None
        if not device.online:
            raise DeviceOffline(f"Device {device.display_name} is offline.")
        return device

    async def _mutate(
        self,
        action: SettingAction,
        device: Device,
        value: Any,
        *,
        toggle: bool = False,
    ) -> SettingValue:
        async with self._locks[action.key]:
            try:
                if toggle:
                    current = self._values.get(action.key)
                    if current is None or not device.same_device(self._device):
                        current = await action.get_value(device)
                    value = not bool(current.value)
                await action.set_value(device, value)
                fresh = await action.get_value(device)
            except (CommandFailed, CommandChannelError) as exc:
                self._set_error(str(exc), source=action.key)
                self._log_change(device, action.key, value, error=str(exc))
                raise
            self._store(action.key, device, fresh)
            self._log_change(device, action.key, value)
            return fresh

    def _log_change(self, device: Device, key: str, value: Any, *, error: str = "") -> None:
        if error:
            _LOGGER.warning("Setting '%s' to %r on %s failed: %s", key, value, device.serial, error)
        else:
            _LOGGER.info("Set '%s' to %r on %s", key, value, device.serial)
        if self.action_log is None:
            return
        fields: dict[str, Any] = {"key": key, "value": value, "ok": not error}
        if error:
            fields["error"] = error
        self.action_log.log_event("change_setting", device=device.serial, **fields)

    # ------------------------------------------------------------------
    # Lifecycle

    async def dispose(self) -> None:
        """Cancel polling and in-flight work, then drop cached values."""
        self._disposed = True
        poll_loop = self._poll_loop_task
        self._poll_loop_task = None
        pending = [task for task in (poll_loop, *self._tasks) if task is not None]
        for task in pending:
            task.cancel()
        try:
            await asyncio.gather(*pending, return_exceptions=True)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("Error while disposing controller: %s", exc)
        self._tasks.clear()
        self._poll_fetches.clear()
        self._device = None
        self._values.clear()
        for action in self._actions.values():
            action.clear_cache()
        _LOGGER.debug("Controller disposed")

    # ------------------------------------------------------------------
    # Internals

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _store(self, key: str, device: Device, value: SettingValue) -> None:
        # Results for a device that is no longer selected are dropped.
        if self._disposed or not device.same_device(self._device):
            return
        if self._values.get(key) == value:
            return
        self._values[key] = value
        self._publish_values()

    def _set_error(self, message: str | None, *, source: str = "") -> None:
        self._last_error = message
        if self.state_store is not None:
            self.state_store.update_error(message or "", source=source)

    def _publish_device(self) -> None:
        if self.state_store is not None:
            self.state_store.update_devices(selected=self._device)
            self.state_store.update_sync(mode=self.mode.value)

    def _publish_values(self) -> None:
        if self.state_store is not None:
            self.state_store.update_values(self._values)

    def _publish_sync(self) -> None:
        if self.state_store is not None:
            self.state_store.update_sync(
                mode=self.mode.value,
                auto_refresh=self._auto_refresh,
                refresh_interval_ms=self._interval_ms,
            )
