from __future__ import annotations

import logging
import re
import shlex
from enum import Enum
from pathlib import Path
from typing import Mapping

from devswitch.domain.models import Device, DeviceInfo, DevSwitchError
from devswitch.services.action_log import ActionLogService
from devswitch.services.command_channel import CommandChannel

_LOGGER = logging.getLogger(__name__)

_PACKAGE_NAME = re.compile(r"^[A-Za-z][\w]*(\.[A-Za-z][\w]*)+$")
_SIZE_LINE = re.compile(r"(Override|Physical) size:\s*(\d+x\d+)")
_DENSITY_LINE = re.compile(r"(Override|Physical) density:\s*(\d+)")
_FOCUSED_APP = re.compile(r"mCurrentFocus=Window\{[^}]*?\s([\w.]+)/")
_RESUMED_ACTIVITY = re.compile(r"(?:mResumedActivity|topResumedActivity).*?\s([\w.]+)/")
_SCREEN_SIZE = re.compile(r"^\d+x\d+$")
_LOG_TAG = re.compile(r"^[\w.-]+$")

LOGCAT_PRIORITIES = ("V", "D", "I", "W", "E", "F", "S")
WINDOW_DUMP_PATH = "/sdcard/window_dump.xml"
RECORDING_PATH = "/sdcard/devswitch_recording.mp4"
MAX_RECORDING_SECONDS = 180


class DeviceToolsError(DevSwitchError):
    """Raised when a device utility produces no usable result."""


class BatteryStatus(int, Enum):
    UNKNOWN = 1
    CHARGING = 2
    DISCHARGING = 3
    NOT_CHARGING = 4
    FULL = 5


class BatteryPlugged(int, Enum):
    NONE = 0
    AC = 1
    USB = 2
    WIRELESS = 4


class PowerBroadcast(str, Enum):
    POWER_CONNECTED = "android.intent.action.ACTION_POWER_CONNECTED"
    POWER_DISCONNECTED = "android.intent.action.ACTION_POWER_DISCONNECTED"
    BATTERY_LOW = "android.intent.action.BATTERY_LOW"
    BATTERY_OKAY = "android.intent.action.BATTERY_OKAY"


def validate_package_name(package: str) -> str:
    name = package.strip()
    if not _PACKAGE_NAME.match(name):
        raise ValueError(f"Invalid package name '{package}'.")
    return name


def _pick(pattern: re.Pattern[str], output: str) -> str:
    found = {kind: value for kind, value in pattern.findall(output)}
    return found.get("Override") or found.get("Physical") or ""


def parse_key_values(output: str) -> dict[str, str]:
    info: dict[str, str] = {}
    for line in output.splitlines():
        key, sep, value = line.partition(":")
        if not sep or not key.strip():
            continue
        info[key.strip()] = value.strip()
    return info


class DeviceToolsService:
    """One-shot device utilities that are not cached settings."""

    def __init__(self, channel: CommandChannel, action_log: ActionLogService | None = None) -> None:
        self.channel = channel
        self.action_log = action_log

    async def _run(self, device: Device, command: str) -> str:
        return await self.channel.execute(device, command)

    def _log(self, device: Device, action: str, **fields: object) -> None:
        _LOGGER.info("%s on %s %s", action, device.serial, fields or "")
        if self.action_log is not None:
            self.action_log.log_event(action, device=device.serial, **fields)

    async def device_info(self, device: Device) -> DeviceInfo:
        async def prop(name: str) -> str:
            return (await self._run(device, f"getprop {name}")).strip()

        return DeviceInfo(
            model=await prop("ro.product.model"),
            manufacturer=await prop("ro.product.manufacturer"),
            android_version=await prop("ro.build.version.release"),
            api_level=await prop("ro.build.version.sdk"),
            screen_resolution=_pick(_SIZE_LINE, await self._run(device, "wm size")),
            screen_density=_pick(_DENSITY_LINE, await self._run(device, "wm density")),
        )

    # Battery simulation

    async def unplug_battery(self, device: Device) -> None:
        await self._run(device, "dumpsys battery unplug")
        self._log(device, "battery_unplug")

    async def reset_battery(self, device: Device) -> None:
        await self._run(device, "dumpsys battery reset")
        self._log(device, "battery_reset")

    async def set_battery_level(self, device: Device, level: int) -> None:
        clamped = max(0, min(100, int(level)))
        await self._run(device, f"dumpsys battery set level {clamped}")
        self._log(device, "battery_level", level=clamped)

    async def set_battery_status(self, device: Device, status: BatteryStatus) -> None:
        await self._run(device, f"dumpsys battery set status {int(status)}")
        self._log(device, "battery_status", status=status.name.lower())

    async def set_battery_plugged(self, device: Device, plugged: BatteryPlugged) -> None:
        if plugged is BatteryPlugged.NONE:
            command = "dumpsys battery unplug"
        else:
            command = f"dumpsys battery set {plugged.name.lower()} 1"
        await self._run(device, command)
        self._log(device, "battery_plugged", plugged=plugged.name.lower())

    async def battery_info(self, device: Device) -> dict[str, str]:
        return parse_key_values(await self._run(device, "dumpsys battery"))

    async def send_power_broadcast(self, device: Device, broadcast: PowerBroadcast) -> None:
        await self._run(device, f"am broadcast -a {broadcast.value}")
        self._log(device, "power_broadcast", action=broadcast.name.lower())

    # Doze

    async def enter_doze(self, device: Device) -> None:
        await self._run(device, "dumpsys deviceidle force-idle")
        self._log(device, "doze_enter")

    async def exit_doze(self, device: Device) -> None:
        await self._run(device, "dumpsys deviceidle unforce")
        self._log(device, "doze_exit")

    async def doze_state(self, device: Device) -> str:
        return (await self._run(device, "dumpsys deviceidle get deep")).strip()

    # Intents

    async def open_deep_link(self, device: Device, uri: str, package: str = "") -> str:
        link = uri.strip()
        if not link:
            raise ValueError("Deep link URI is required.")
        parts = ["am start -a android.intent.action.VIEW -d", shlex.quote(link)]
        if package.strip():
            parts.append(validate_package_name(package))
        output = await self._run(device, " ".join(parts))
        self._log(device, "deep_link", uri=link)
        return output

    async def send_broadcast(
        self,
        device: Device,
        action: str,
        extras: Mapping[str, str] | None = None,
    ) -> str:
        if not action.strip():
            raise ValueError("Broadcast action is required.")
        parts = ["am broadcast -a", shlex.quote(action.strip())]
        for key, value in (extras or {}).items():
            parts.extend(["-e", shlex.quote(str(key)), shlex.quote(str(value))])
        output = await self._run(device, " ".join(parts))
        self._log(device, "broadcast", intent=action.strip())
        return output

    # Apps

    async def installed_packages(self, device: Device, *, include_system: bool = False) -> list[str]:
        command = "pm list packages" if include_system else "pm list packages -3"
        output = await self._run(device, command)
        return sorted(
            line.strip()[len("package:"):]
            for line in output.splitlines()
            if line.strip().startswith("package:")
        )

    async def foreground_app(self, device: Device) -> str:
        output = await self._run(device, "dumpsys window")
        match = _FOCUSED_APP.search(output)
        if match:
            return match.group(1)
        output = await self._run(device, "dumpsys activity activities")
        match = _RESUMED_ACTIVITY.search(output)
        return match.group(1) if match else ""

    async def force_stop(self, device: Device, package: str) -> None:
        name = validate_package_name(package)
        await self._run(device, f"am force-stop {name}")
        self._log(device, "force_stop", package=name)

    async def clear_data(self, device: Device, package: str) -> str:
        name = validate_package_name(package)
        output = (await self._run(device, f"pm clear {name}")).strip()
        self._log(device, "clear_data", package=name, result=output)
        return output

    async def launch_app(self, device: Device, package: str) -> None:
        name = validate_package_name(package)
        await self._run(device, f"monkey -p {name} -c android.intent.category.LAUNCHER 1")
        self._log(device, "launch_app", package=name)

    # Capture

    async def get_logcat(
        self,
        device: Device,
        lines: int = 500,
        *,
        tag: str = "",
        pattern: str = "",
        priority: str = "V",
    ) -> str:
        level = priority.strip().upper()
        if level not in LOGCAT_PRIORITIES:
            raise ValueError(f"Log priority must be one of: {', '.join(LOGCAT_PRIORITIES)}.")
        count = int(lines)
        if count <= 0:
            raise ValueError("Logcat line count must be positive.")
        parts = ["logcat", "-d", "-t", str(count)]
        if tag.strip():
            if not _LOG_TAG.match(tag.strip()):
                raise ValueError(f"Invalid log tag '{tag}'.")
            parts.extend(["-s", tag.strip()])
        parts.append(shlex.quote(f"*:{level}"))
        if pattern.strip():
            parts.extend(["-e", shlex.quote(pattern.strip())])
        return await self._run(device, " ".join(parts))

    async def clear_logcat(self, device: Device) -> None:
        await self._run(device, "logcat -c")
        self._log(device, "logcat_clear")

    async def save_logcat(self, device: Device, path: Path, lines: int = 5000) -> Path:
        text = await self.get_logcat(device, lines)
        path = path.expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        self._log(device, "logcat_save", path=str(path), lines=lines)
        return path

    async def dump_window_hierarchy(self, device: Device) -> str:
        """Return the ``uiautomator`` XML dump of the current screen."""
        status = await self._run(device, f"uiautomator dump {WINDOW_DUMP_PATH}")
        try:
            xml = await self._run(device, f"cat {WINDOW_DUMP_PATH}")
        finally:
            await self._run(device, f"rm -f {WINDOW_DUMP_PATH}")
        if "<hierarchy" not in xml:
            raise DeviceToolsError(f"Window hierarchy dump failed: {status.strip() or 'no output'}")
        return xml

    async def start_screen_recording(
        self,
        device: Device,
        remote_path: str = RECORDING_PATH,
        *,
        time_limit: int = MAX_RECORDING_SECONDS,
        bit_rate: int = 4_000_000,
        size: str = "",
    ) -> str:
        if not 0 < int(time_limit) <= MAX_RECORDING_SECONDS:
            raise ValueError(f"Recording time limit must be 1-{MAX_RECORDING_SECONDS} seconds.")
        if int(bit_rate) <= 0:
            raise ValueError("Recording bit rate must be positive.")
        target = remote_path.strip()
        if not target:
            raise ValueError("Recording path is required.")
        parts = ["screenrecord", "--time-limit", str(int(time_limit)), "--bit-rate", str(int(bit_rate))]
        if size.strip():
            if not _SCREEN_SIZE.match(size.strip()):
                raise ValueError(f"Recording size must look like 1280x720, got '{size}'.")
            parts.extend(["--size", size.strip()])
        parts.append(shlex.quote(target))
        # screenrecord blocks until it stops; detach it from the shell session.
        await self._run(device, f"nohup {' '.join(parts)} > /dev/null 2>&1 &")
        self._log(device, "screen_record_start", path=target, time_limit=int(time_limit))
        return target

    async def stop_screen_recording(self, device: Device) -> None:
        await self._run(device, "pkill -SIGINT screenrecord")
        self._log(device, "screen_record_stop")
