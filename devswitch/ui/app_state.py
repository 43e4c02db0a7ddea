from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Mapping, Sequence

from devswitch.domain.models import DEFAULT_REFRESH_INTERVAL_MS, Device, SettingValue


@dataclass(frozen=True)
class DeviceState:
    devices: tuple[Device, ...] = ()
    selected_serial: str = ""
    selected_name: str = ""
    online: bool = False
    last_updated_utc: str = ""

    @property
    def has_selection(self) -> bool:
        return bool(self.selected_serial)


@dataclass(frozen=True)
class SyncState:
    mode: str = "idle"  # idle|manual|polling
    auto_refresh: bool = True
    refresh_interval_ms: int = DEFAULT_REFRESH_INTERVAL_MS
    refreshing: bool = False
    last_updated_utc: str = ""


@dataclass(frozen=True)
class ErrorState:
    message: str = ""
    source: str = ""
    last_updated_utc: str = ""


@dataclass(frozen=True)
class AppState:
    device: DeviceState = field(default_factory=DeviceState)
    sync: SyncState = field(default_factory=SyncState)
    values: Mapping[str, SettingValue] = field(default_factory=dict)
    error: ErrorState = field(default_factory=ErrorState)


Listener = Callable[[AppState], None]


def _now_utc() -> str:
    return datetime.now(timezone.utc).isoformat()


class AppStateStore:
    """Centralized in-memory app state with coarse-grained update helpers.

    Listeners run on the thread that publishes, which is the engine's event
    loop thread; a GUI must marshal onto its own thread.
    """

    def __init__(self) -> None:
        self._state = AppState()
        self._listeners: list[Listener] = []

    def snapshot(self) -> AppState:
        return self._state

    def subscribe(self, listener: Listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def update_devices(
        self,
        *,
        devices: Sequence[Device] | None = None,
        selected: Device | None,
    ) -> None:
        current = self._state.device
        device = DeviceState(
            devices=current.devices if devices is None else tuple(devices),
            selected_serial=selected.serial if selected else "",
            selected_name=selected.display_name if selected else "",
            online=bool(selected and selected.online),
            last_updated_utc=_now_utc(),
        )
        self._publish(replace(self._state, device=device))

    def update_sync(
        self,
        *,
        mode: str | None = None,
        auto_refresh: bool | None = None,
        refresh_interval_ms: int | None = None,
        refreshing: bool | None = None,
    ) -> None:
        current = self._state.sync
        sync = SyncState(
            mode=current.mode if mode is None else str(mode),
            auto_refresh=current.auto_refresh if auto_refresh is None else bool(auto_refresh),
            refresh_interval_ms=(
                current.refresh_interval_ms
                if refresh_interval_ms is None
                else int(refresh_interval_ms)
            ),
            refreshing=current.refreshing if refreshing is None else bool(refreshing),
            last_updated_utc=_now_utc(),
        )
        self._publish(replace(self._state, sync=sync))

    def update_values(self, values: Mapping[str, SettingValue]) -> None:
        self._publish(replace(self._state, values=dict(values)))

    def update_error(self, message: str, *, source: str = "") -> None:
        error = ErrorState(
            message=str(message or ""),
            source=source if message else "",
            last_updated_utc=_now_utc(),
        )
        self._publish(replace(self._state, error=error))

    def _publish(self, next_state: AppState) -> None:
        self._state = next_state
        for listener in list(self._listeners):
            listener(self._state)
