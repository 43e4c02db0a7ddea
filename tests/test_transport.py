from __future__ import annotations

import io
import subprocess
import threading
import time

import pytest

from devswitch.domain.models import Device
from devswitch.services import transport as transport_module
from devswitch.services.command_channel import TransportError
from devswitch.services.preferences import SSH_TARGETS_KEY, PreferenceStore
from devswitch.services.transport import (
    DEVICE_CHANGED,
    DEVICE_CONNECTED,
    DEVICE_DISCONNECTED,
    AdbTransport,
    SSHTarget,
    SSHTransport,
    _ListenerSet,
    diff_device_lists,
    load_ssh_targets,
    parse_adb_devices,
)

ADB_DEVICES_OUTPUT = """\
* daemon not running; starting now at tcp:5037
* daemon started successfully
List of devices attached
emulator-5554          device product:sdk_gphone64 model:sdk_gphone64_x86_64 device:emu64x transport_id:1
R58M123ABC             unauthorized usb:1-1 transport_id:2
192.168.1.40:5555      offline

"""


class _Receiver:
    def __init__(self, cancelled: bool = False) -> None:
        self.chunks: list[bytes] = []
        self.flushed = False
        self.cancelled = cancelled

    def add_output(self, data: bytes) -> None:
        self.chunks.append(data)

    def flush(self) -> None:
        self.flushed = True

    def is_cancelled(self) -> bool:
        return self.cancelled


def test_parse_adb_devices_reads_state_and_details() -> None:
    devices = parse_adb_devices(ADB_DEVICES_OUTPUT)

    assert [device.serial for device in devices] == [
        "emulator-5554",
        "R58M123ABC",
        "192.168.1.40:5555",
    ]
    emulator = devices[0]
    assert emulator.online is True
    assert emulator.model == "sdk gphone64 x86 64"
    assert emulator.name == "emu64x"
    assert devices[1].online is False
    assert devices[2].online is False
    assert devices[2].name == "192.168.1.40:5555"


def test_diff_device_lists_reports_connect_change_and_disconnect() -> None:
    before = [Device("a"), Device("b", online=True)]
    after = [Device("b", online=False), Device("c")]

    events = diff_device_lists(before, after)

    assert (DEVICE_CHANGED, Device("b", online=False)) in events
    assert (DEVICE_CONNECTED, Device("c")) in events
    assert (DEVICE_DISCONNECTED, Device("a")) in events
    assert len(events) == 3


def test_listener_set_isolates_failing_listeners() -> None:
    listeners = _ListenerSet()
    seen: list[str] = []

    def broken(_event: str, _device: Device) -> None:
        raise RuntimeError("boom")

    def working(event: str, device: Device) -> None:
        seen.append(f"{event}:{device.serial}")

    assert listeners.add(broken) == 1
    assert listeners.add(working) == 2
    assert listeners.add(working) == 2
    listeners.notify(DEVICE_CONNECTED, Device("emulator-5554"))

    assert seen == ["connected:emulator-5554"]
    assert listeners.remove(broken) == 1


def test_adb_device_list_runs_devices_command(monkeypatch) -> None:
    captured: dict[str, object] = {}

    def fake_run(args, **kwargs):  # noqa: ANN001
        captured["args"] = args
        return subprocess.CompletedProcess(args, 0, ADB_DEVICES_OUTPUT.encode(), b"")

    monkeypatch.setattr(transport_module.subprocess, "run", fake_run)
    adb = AdbTransport("/opt/sdk/platform-tools/adb")

    devices = adb.device_list()

    assert captured["args"] == ["/opt/sdk/platform-tools/adb", "devices", "-l"]
    assert len(devices) == 3


def test_adb_device_list_surfaces_failures(monkeypatch) -> None:
    def fake_run(args, **kwargs):  # noqa: ANN001
        return subprocess.CompletedProcess(args, 1, b"", b"cannot connect to daemon")

    monkeypatch.setattr(transport_module.subprocess, "run", fake_run)

    with pytest.raises(TransportError, match="cannot connect to daemon"):
        AdbTransport("adb").device_list()


class _FakePopen:
    def __init__(self, args, stdout=None, stderr=None) -> None:  # noqa: ANN001
        self.args = args
        self.stdout = io.BufferedReader(io.BytesIO(b"Night mode: yes\n"))
        self.returncode: int | None = None
        self.killed = False

    def wait(self, timeout=None) -> int:  # noqa: ANN001
        if self.returncode is None:
            self.returncode = -9 if self.killed else 0
        return self.returncode

    def kill(self) -> None:
        self.killed = True

    def poll(self):  # noqa: ANN201
        return self.returncode


def test_adb_execute_command_streams_output(monkeypatch) -> None:
    launched: list[_FakePopen] = []

    def fake_popen(args, **kwargs):  # noqa: ANN001
        process = _FakePopen(args, **kwargs)
        launched.append(process)
        return process

    monkeypatch.setattr(transport_module.subprocess, "Popen", fake_popen)
    receiver = _Receiver()

    AdbTransport("adb").execute_command(Device("emulator-5554"), "cmd uimode night", receiver, 5.0)

    assert launched[0].args == ["adb", "-s", "emulator-5554", "shell", "cmd uimode night"]
    assert b"".join(receiver.chunks) == b"Night mode: yes\n"
    assert receiver.flushed is True


def test_adb_execute_command_stops_when_cancelled(monkeypatch) -> None:
    launched: list[_FakePopen] = []

    def fake_popen(args, **kwargs):  # noqa: ANN001
        process = _FakePopen(args, **kwargs)
        launched.append(process)
        return process

    monkeypatch.setattr(transport_module.subprocess, "Popen", fake_popen)
    receiver = _Receiver(cancelled=True)

    AdbTransport("adb").execute_command(Device("emulator-5554"), "dumpsys window", receiver, 5.0)

    assert launched[0].killed is True
    assert receiver.chunks == []
    assert receiver.flushed is False


def test_load_ssh_targets_skips_invalid_entries(tmp_path) -> None:
    store = PreferenceStore(storage_path=tmp_path / "preferences.json")
    store.set(
        SSH_TARGETS_KEY,
        [
            {"name": "Lab tablet", "host": "10.0.0.7", "port": 2222},
            {"name": "Broken", "host": "10.0.0.8", "port": 70000},
            "not-a-target",
        ],
    )

    targets = load_ssh_targets(store)

    assert [target.serial for target in targets] == ["10.0.0.7:2222"]
    assert targets[0].username == "root"


class _FakeChannel:
    def __init__(self, output: bytes) -> None:
        self._pending = [output]
        self.command = ""
        self.closed = False

    def set_combine_stderr(self, combine: bool) -> None:
        self.combine = combine

    def exec_command(self, command: str) -> None:
        self.command = command

    def recv_ready(self) -> bool:
        return bool(self._pending)

    def recv(self, _size: int) -> bytes:
        return self._pending.pop(0)

    def exit_status_ready(self) -> bool:
        return not self._pending

    def close(self) -> None:
        self.closed = True


class _FakeSSHTransportHandle:
    def __init__(self, channel: _FakeChannel) -> None:
        self.channel = channel

    def open_session(self) -> _FakeChannel:
        return self.channel


class _DummyClient:
    def __init__(self, channel: _FakeChannel) -> None:
        self.handle = _FakeSSHTransportHandle(channel)
        self.closed = False

    def get_transport(self) -> _FakeSSHTransportHandle:
        return self.handle

    def close(self) -> None:
        self.closed = True


def test_ssh_execute_command_collects_channel_output(monkeypatch) -> None:
    target = SSHTarget(name="Lab tablet", host="10.0.0.7")
    transport = SSHTransport([target], poll_delay=0.0)
    channel = _FakeChannel(b"1\n")
    client = _DummyClient(channel)
    monkeypatch.setattr(transport, "_client_for", lambda _serial: client)
    receiver = _Receiver()

    transport.execute_command(
        Device(target.serial), "settings get global wifi_on", receiver, 5.0
    )

    assert channel.command == "settings get global wifi_on"
    assert channel.closed is True
    assert b"".join(receiver.chunks) == b"1\n"
    assert receiver.flushed is True


def test_ssh_refresh_notifies_listeners_about_reachability_changes(monkeypatch) -> None:
    online = SSHTarget(name="Lab tablet", host="10.0.0.7")
    offline = SSHTarget(name="Spare", host="10.0.0.9")
    transport = SSHTransport([online, offline])
    monkeypatch.setattr(transport, "_is_reachable", lambda target: target.host == "10.0.0.7")
    events: list[tuple[str, str, bool]] = []
    transport.add_device_listener(lambda event, device: events.append((event, device.serial, device.online)))

    transport.refresh()
    transport.refresh()

    assert events == [
        (DEVICE_CONNECTED, "10.0.0.7:22", True),
        (DEVICE_CONNECTED, "10.0.0.9:22", False),
    ]


class _TrackerStream:
    def __init__(self, payload: bytes, killed: threading.Event) -> None:
        self._buffer = payload
        self._killed = killed

    def read(self, size: int) -> bytes:
        if self._buffer:
            chunk, self._buffer = self._buffer[:size], self._buffer[size:]
            return chunk
        self._killed.wait(5.0)
        return b""

    def close(self) -> None:
        return None


class _TrackerPopen:
    def __init__(self, args, stdout=None, stderr=None) -> None:  # noqa: ANN001
        payload = b"emulator-5554\tdevice\n"
        self.args = args
        self.killed = threading.Event()
        self.stdout = _TrackerStream(f"{len(payload):04x}".encode() + payload, self.killed)
        self.returncode: int | None = None

    def kill(self) -> None:
        self.killed.set()
        self.returncode = -9

    def poll(self):  # noqa: ANN201
        return self.returncode

    def wait(self, timeout=None) -> int:  # noqa: ANN001
        self.killed.wait(timeout)
        return self.returncode if self.returncode is not None else 0


def _wait_for(condition, timeout: float = 2.0) -> bool:  # noqa: ANN001
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


def _alive_trackers() -> list[threading.Thread]:
    return [t for t in threading.enumerate() if t.name == "adb-track-devices" and t.is_alive()]


def test_adb_tracker_restart_leaves_a_single_tracker(monkeypatch) -> None:
    launched: list[_TrackerPopen] = []

    def fake_run(args, **kwargs):  # noqa: ANN001
        return subprocess.CompletedProcess(args, 0, b"List of devices attached\n\n", b"")

    def fake_popen(args, **kwargs):  # noqa: ANN001
        process = _TrackerPopen(args, **kwargs)
        launched.append(process)
        return process

    monkeypatch.setattr(transport_module.subprocess, "run", fake_run)
    monkeypatch.setattr(transport_module.subprocess, "Popen", fake_popen)
    adb = AdbTransport("adb", retry_delay=0.05)
    first_events: list[tuple[str, str]] = []
    second_events: list[tuple[str, str]] = []

    def first(event: str, device: Device) -> None:
        first_events.append((event, device.serial))

    def second(event: str, device: Device) -> None:
        second_events.append((event, device.serial))

    adb.add_device_listener(first)
    assert _wait_for(lambda: first_events == [(DEVICE_CONNECTED, "emulator-5554")])

    adb.remove_device_listener(first)
    adb.add_device_listener(second)
    assert _wait_for(lambda: len(second_events) == 1)
    time.sleep(0.2)

    try:
        assert len(_alive_trackers()) == 1
        assert len(launched) == 2
        assert launched[0].killed.is_set()
        assert second_events == [(DEVICE_CONNECTED, "emulator-5554")]
        assert first_events == [(DEVICE_CONNECTED, "emulator-5554")]
    finally:
        adb.remove_device_listener(second)

    assert all(process.killed.is_set() for process in launched)
    assert _alive_trackers() == []
