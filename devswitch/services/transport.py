from __future__ import annotations

import logging
import subprocess
import threading
import time
from typing import Any, Callable, Iterable, Protocol

import paramiko
from pydantic import BaseModel, Field, ValidationError

from devswitch.domain.models import Device
from devswitch.services.command_channel import TransportError
from devswitch.services.paths import find_adb_path
from devswitch.services.preferences import SSH_TARGETS_KEY, PreferenceStore

_LOGGER = logging.getLogger(__name__)

DEVICE_CONNECTED = "connected"
DEVICE_DISCONNECTED = "disconnected"
DEVICE_CHANGED = "changed"

TRACKER_JOIN_TIMEOUT_SECONDS = 2.0

DeviceListener = Callable[[str, Device], None]


class OutputReceiver(Protocol):
    def add_output(self, data: bytes) -> None: ...

    def flush(self) -> None: ...

    def is_cancelled(self) -> bool: ...


class DeviceTransport(Protocol):
    """Narrow contract the engine needs from a device-control bridge.

    Listener callbacks may arrive on any thread.
    """

    def device_list(self) -> list[Device]: ...

    def add_device_listener(self, listener: DeviceListener) -> None: ...

    def remove_device_listener(self, listener: DeviceListener) -> None: ...

    def execute_command(
        self,
        device: Device,
        command: str,
        receiver: OutputReceiver,
        timeout: float,
    ) -> None: ...


class _ListenerSet:
    def __init__(self) -> None:
        self._listeners: list[DeviceListener] = []
        self._lock = threading.Lock()

    def add(self, listener: DeviceListener) -> int:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)
            return len(self._listeners)

    def remove(self, listener: DeviceListener) -> int:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)
            return len(self._listeners)

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)

    def notify(self, event: str, device: Device) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event, device)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("Device listener failed for %s", device.serial)


def diff_device_lists(previous: Iterable[Device], current: Iterable[Device]) -> list[tuple[str, Device]]:
    """Return (event, device) pairs that turn ``previous`` into ``current``."""
    before = {device.serial: device for device in previous}
    after = {device.serial: device for device in current}
    events: list[tuple[str, Device]] = []
    for serial, device in after.items():
        old = before.get(serial)
        if old is None:
            events.append((DEVICE_CONNECTED, device))
        elif old != device:
            events.append((DEVICE_CHANGED, device))
    for serial, device in before.items():
        if serial not in after:
            events.append((DEVICE_DISCONNECTED, device))
    return events


# ---------------------------------------------------------------------------
# adb


def parse_adb_devices(output: str) -> list[Device]:
    """Parse ``adb devices -l`` (or the ``track-devices`` payload)."""
    devices: list[Device] = []
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("List of devices") or line.startswith("*"):
            continue
        parts = line.split()
        if len(parts) < 2:
            continue
        serial, state = parts[0], parts[1]
        details: dict[str, str] = {}
        for token in parts[2:]:
            if ":" in token:
                key, _, value = token.partition(":")
                details[key] = value
        model = details.get("model", "").replace("_", " ")
        devices.append(
            Device(
                serial=serial,
                name=details.get("device", "") or serial,
                online=state == "device",
                model=model,
            )
        )
    return devices


class _TrackerRun:
    """State owned by one ``track-devices`` thread."""

    def __init__(self) -> None:
        self.stop = threading.Event()
        self.process: subprocess.Popen[bytes] | None = None
        self.thread: threading.Thread = threading.Thread()


class AdbTransport:
    """Transport backed by the ``adb`` command line client."""

    def __init__(self, adb_path: str | None = None, *, retry_delay: float = 2.0) -> None:
        self.adb_path = adb_path or find_adb_path()
        self.retry_delay = retry_delay
        self._listeners = _ListenerSet()
        self._tracker: _TrackerRun | None = None
        self._known: list[Device] = []

    def _run(self, args: list[str], timeout: float = 10.0) -> str:
        try:
            completed = subprocess.run(
                [self.adb_path, *args],
                capture_output=True,
                timeout=timeout,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise TransportError(f"adb {' '.join(args)} failed: {exc}") from exc
        if completed.returncode != 0:
            detail = completed.stderr.decode("utf-8", errors="replace").strip()
            raise TransportError(
                f"adb {' '.join(args)} failed: {detail or f'exit code {completed.returncode}'}"
            )
        return completed.stdout.decode("utf-8", errors="replace")

    def device_list(self) -> list[Device]:
        return parse_adb_devices(self._run(["devices", "-l"]))

    def add_device_listener(self, listener: DeviceListener) -> None:
        if self._listeners.add(listener) == 1:
            self._start_tracker()

    def remove_device_listener(self, listener: DeviceListener) -> None:
        if self._listeners.remove(listener) == 0:
            self._stop_tracker()

    def execute_command(
        self,
        device: Device,
        command: str,
        receiver: OutputReceiver,
        timeout: float,
    ) -> None:
        try:
            process = subprocess.Popen(
                [self.adb_path, "-s", device.serial, "shell", command],
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
            )
        except OSError as exc:
            raise TransportError(f"Unable to start adb for {device.serial}: {exc}") from exc

        watchdog = threading.Timer(timeout, process.kill)
        watchdog.daemon = True
        watchdog.start()
        try:
            assert process.stdout is not None
            while True:
                if receiver.is_cancelled():
                    process.kill()
                    process.wait()
                    return
                chunk = process.stdout.read1(4096)
                if not chunk:
                    break
                receiver.add_output(chunk)
            process.wait()
        finally:
            watchdog.cancel()
            if process.stdout is not None:
                process.stdout.close()
        if receiver.is_cancelled():
            return
        if process.returncode is not None and process.returncode < 0:
            raise TransportError(f"adb shell on {device.serial} was killed: {command}")
        receiver.flush()

    # Tracking -----------------------------------------------------------

    def _start_tracker(self) -> None:
        if self._tracker is not None and self._tracker.thread.is_alive():
            return
        try:
            self._known = self.device_list()
        except TransportError:
            self._known = []
        run = _TrackerRun()
        run.thread = threading.Thread(
            target=self._track_devices,
            args=(run,),
            name="adb-track-devices",
            daemon=True,
        )
        self._tracker = run
        run.thread.start()

    def _stop_tracker(self) -> None:
        run, self._tracker = self._tracker, None
        if run is None:
            return
        run.stop.set()
        process = run.process
        if process is not None and process.poll() is None:
            process.kill()
        if run.thread is not threading.current_thread():
            run.thread.join(TRACKER_JOIN_TIMEOUT_SECONDS)
            if run.thread.is_alive():
                _LOGGER.warning("adb track-devices thread did not exit in time")

    def _track_devices(self, run: _TrackerRun) -> None:
        stop = run.stop
        while not stop.is_set():
            try:
                process = subprocess.Popen(
                    [self.adb_path, "track-devices", "-l"],
                    stdout=subprocess.PIPE,
                    stderr=subprocess.DEVNULL,
                )
            except OSError as exc:
                _LOGGER.warning("Unable to start adb track-devices: %s", exc)
                stop.wait(self.retry_delay)
                continue
            run.process = process
            stream = process.stdout
            assert stream is not None
            try:
                while not stop.is_set():
                    header = stream.read(4)
                    if len(header) < 4:
                        break
                    length = int(header.decode("ascii"), 16)
                    payload = stream.read(length).decode("utf-8", errors="replace")
                    if stop.is_set():
                        break
                    self._publish(parse_adb_devices(payload))
            except (OSError, ValueError) as exc:
                _LOGGER.debug("adb track-devices stream ended: %s", exc)
            finally:
                stream.close()
                if process.poll() is None:
                    process.kill()
                process.wait()
            if not stop.is_set():
                # Server restarted or went away; everything is gone until it returns.
                self._publish([])
                stop.wait(self.retry_delay)

    def _publish(self, devices: list[Device]) -> None:
        events = diff_device_lists(self._known, devices)
        self._known = devices
        for event, device in events:
            self._listeners.notify(event, device)


# ---------------------------------------------------------------------------
# ssh


class SSHTarget(BaseModel):
    name: str
    host: str
    port: int = Field(default=22, gt=0, lt=65536)
    username: str = "root"
    password: str | None = None
    key_path: str | None = None

    @property
    def serial(self) -> str:
        return f"{self.host}:{self.port}"


def load_ssh_targets(store: PreferenceStore) -> list[SSHTarget]:
    raw = store.get(SSH_TARGETS_KEY, [])
    if not isinstance(raw, list):
        return []
    targets: list[SSHTarget] = []
    for item in raw:
        try:
            targets.append(SSHTarget.model_validate(item))
        except ValidationError as exc:
            _LOGGER.warning("Ignoring invalid SSH target %r: %s", item, exc)
    return targets


class SSHTransport:
    """Transport for devices whose shell is reachable over SSH."""

    def __init__(
        self,
        targets: Iterable[SSHTarget],
        *,
        connect_timeout: float = 5.0,
        poll_delay: float = 0.05,
    ) -> None:
        self.targets = {target.serial: target for target in targets}
        self.connect_timeout = connect_timeout
        self.poll_delay = poll_delay
        self._clients: dict[str, paramiko.SSHClient] = {}
        self._clients_lock = threading.Lock()
        self._listeners = _ListenerSet()
        self._known: list[Device] = []

    @staticmethod
    def _create_client() -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        return client

    def _connect(self, target: SSHTarget) -> paramiko.SSHClient:
        client = self._create_client()
        kwargs: dict[str, Any] = {
            "hostname": target.host,
            "port": target.port,
            "username": target.username,
            "timeout": self.connect_timeout,
        }
        if target.key_path:
            kwargs["key_filename"] = target.key_path
            if target.password:
                kwargs["passphrase"] = target.password
        elif target.password:
            kwargs["password"] = target.password
        else:
            kwargs["look_for_keys"] = True
            kwargs["allow_agent"] = True
        try:
            client.connect(**kwargs)
        except Exception as exc:  # noqa: BLE001
            client.close()
            raise TransportError(f"SSH connection to {target.serial} failed: {exc}") from exc
        return client

    def _client_for(self, serial: str) -> paramiko.SSHClient:
        target = self.targets.get(serial)
        if target is None:
            raise TransportError(f"Unknown SSH device '{serial}'.")
        with self._clients_lock:
            client = self._clients.get(serial)
            transport = client.get_transport() if client is not None else None
            if client is not None and transport is not None and transport.is_active():
                return client
            if client is not None:
                client.close()
            client = self._connect(target)
            self._clients[serial] = client
            return client

    def _is_reachable(self, target: SSHTarget) -> bool:
        try:
            self._client_for(target.serial)
        except TransportError as exc:
            _LOGGER.debug("SSH device %s offline: %s", target.serial, exc)
            return False
        return True

    def device_list(self) -> list[Device]:
        return [
            Device(serial=target.serial, name=target.name, online=self._is_reachable(target))
            for target in self.targets.values()
        ]

    def refresh(self) -> list[Device]:
        """Re-check every target and notify listeners about changes."""
        devices = self.device_list()
        events = diff_device_lists(self._known, devices)
        self._known = devices
        for event, device in events:
            self._listeners.notify(event, device)
        return devices

    def add_device_listener(self, listener: DeviceListener) -> None:
        self._listeners.add(listener)

    def remove_device_listener(self, listener: DeviceListener) -> None:
        self._listeners.remove(listener)

    def execute_command(
        self,
        device: Device,
        command: str,
        receiver: OutputReceiver,
        timeout: float,
    ) -> None:
        client = self._client_for(device.serial)
        try:
            channel = client.get_transport().open_session()  # type: ignore[union-attr]
            channel.set_combine_stderr(True)
            channel.exec_command(command)
        except Exception as exc:  # noqa: BLE001
            raise TransportError(f"Failed to run remote command '{command}': {exc}") from exc

        deadline = time.monotonic() + timeout
        try:
            while True:
                if receiver.is_cancelled():
                    return
                if channel.recv_ready():
                    receiver.add_output(channel.recv(4096))
                    continue
                if channel.exit_status_ready():
                    while channel.recv_ready():
                        receiver.add_output(channel.recv(4096))
                    break
                if time.monotonic() > deadline:
                    raise TransportError(f"Remote command timed out on {device.serial}: {command}")
                time.sleep(self.poll_delay)
        finally:
            channel.close()
        receiver.flush()

    def close(self) -> None:
        with self._clients_lock:
            for client in self._clients.values():
                client.close()
            self._clients.clear()
