from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Awaitable, Callable

from devswitch.domain.models import Device, DevSwitchError
from devswitch.services.action_log import ActionLogService
from devswitch.services.device_registry import choose_selection
from devswitch.services.device_tools import MAX_RECORDING_SECONDS, RECORDING_PATH
from devswitch.services.logging_config import setup_logging
from devswitch.services.preferences import PreferenceStore
from devswitch.services.presets import PresetCatalogService
from devswitch.services.session import DeviceSession, create_transport

_LOGGER = logging.getLogger(__name__)

SessionCommand = Callable[[DeviceSession, Device, argparse.Namespace], Awaitable[int]]


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=False, default=str))


def _build_session() -> DeviceSession:
    # The command line never persists refresh preferences.
    session = DeviceSession(
        create_transport(PreferenceStore()),
        action_log=ActionLogService(),
        preset_catalog=PresetCatalogService(),
    )
    session.controller.set_auto_refresh(False)
    return session


async def _with_device(args: argparse.Namespace, command: SessionCommand) -> int:
    session = _build_session()
    try:
        devices = await session.registry.devices()
        if args.serial:
            device = next((d for d in devices if d.serial == args.serial), None)
        else:
            device = choose_selection(None, devices)
        if device is None:
            missing = f"Device '{args.serial}' not found." if args.serial else "No device found."
            print(missing, file=sys.stderr)
            return 1
        session.controller.select_device(device, refresh=False)
        return await command(session, device, args)
    finally:
        await session.dispose()


def cmd_devices(_args: argparse.Namespace) -> int:
    async def _list() -> list[Device]:
        session = _build_session()
        try:
            return await session.registry.devices()
        finally:
            await session.dispose()

    devices = asyncio.run(_list())
    if not devices:
        print("No devices connected.")
        return 0
    for device in devices:
        state = "online" if device.online else "offline"
        print(f"{device.serial}\t{state}\t{device.display_name}")
    return 0


async def _dump_settings(session: DeviceSession, device: Device, _args: argparse.Namespace) -> int:
    values = await session.refresh()
    _print_json(
        {
            "device": device.serial,
            "settings": {key: value.value for key, value in values.items()},
        }
    )
    return 0


async def _set_setting(session: DeviceSession, device: Device, args: argparse.Namespace) -> int:
    fresh = await session.change_setting(args.key, args.value)
    _print_json({"device": device.serial, args.key: fresh.value if fresh else None})
    return 0


async def _toggle_setting(session: DeviceSession, device: Device, args: argparse.Namespace) -> int:
    fresh = await session.toggle_setting(args.key)
    _print_json({"device": device.serial, args.key: fresh.value if fresh else None})
    return 0


async def _list_options(session: DeviceSession, _device: Device, args: argparse.Namespace) -> int:
    for label in await session.available_options(args.key):
        print(label)
    return 0


async def _apply_preset(session: DeviceSession, _device: Device, args: argparse.Namespace) -> int:
    if args.file:
        assert session.preset_catalog is not None
        preset = session.preset_catalog.import_preset(Path(args.file))
    else:
        preset = args.name
    result = await session.apply_preset(preset)
    _print_json(result.model_dump())
    return 0 if result.ok else 2


async def _device_info(session: DeviceSession, device: Device, _args: argparse.Namespace) -> int:
    info = await session.tools.device_info(device)
    _print_json({"serial": device.serial, **asdict(info)})
    return 0


async def _logcat(session: DeviceSession, device: Device, args: argparse.Namespace) -> int:
    if args.clear:
        await session.tools.clear_logcat(device)
        print("Logcat buffer cleared.")
        return 0
    if args.output:
        path = await session.tools.save_logcat(device, Path(args.output), args.lines)
        print(f"Saved logcat to {path}")
        return 0
    text = await session.tools.get_logcat(
        device,
        args.lines,
        tag=args.tag,
        pattern=args.grep,
        priority=args.priority,
    )
    sys.stdout.write(text)
    return 0


async def _window_dump(session: DeviceSession, device: Device, args: argparse.Namespace) -> int:
    xml = await session.tools.dump_window_hierarchy(device)
    if args.output:
        path = Path(args.output).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(xml, encoding="utf-8")
        print(f"Saved window hierarchy to {path}")
    else:
        sys.stdout.write(xml)
    return 0


async def _record(session: DeviceSession, device: Device, args: argparse.Namespace) -> int:
    if args.action == "stop":
        await session.tools.stop_screen_recording(device)
        print("Screen recording stopped.")
        return 0
    remote = await session.tools.start_screen_recording(
        device,
        args.remote_path,
        time_limit=args.time_limit,
        size=args.size,
    )
    print(f"Recording to {remote} on {device.serial}")
    return 0


def cmd_presets(_args: argparse.Namespace) -> int:
    catalog = PresetCatalogService()
    for preset in catalog.list_presets():
        marker = " (built-in)" if catalog.is_builtin(preset.name) else ""
        print(f"{preset.name}{marker}: {preset.description}")
    return 0


def _device_command(command: SessionCommand) -> Callable[[argparse.Namespace], int]:
    def _run(args: argparse.Namespace) -> int:
        return asyncio.run(_with_device(args, command))

    return _run


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="devswitch",
        description="Inspect and change Android device settings from the command line.",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Also write log messages to stderr.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    devices_parser = subparsers.add_parser("devices", help="List connected devices.")
    devices_parser.set_defaults(func=cmd_devices)

    presets_parser = subparsers.add_parser("presets", help="List saved and built-in presets.")
    presets_parser.set_defaults(func=cmd_presets)

    def _with_serial(sub: argparse.ArgumentParser) -> argparse.ArgumentParser:
        sub.add_argument("--serial", "-s", default="", help="Device serial (default: first device).")
        return sub

    settings_parser = _with_serial(
        subparsers.add_parser("settings", help="Read every setting and print it as JSON.")
    )
    settings_parser.set_defaults(func=_device_command(_dump_settings))

    set_parser = _with_serial(subparsers.add_parser("set", help="Change one setting."))
    set_parser.add_argument("key")
    set_parser.add_argument("value")
    set_parser.set_defaults(func=_device_command(_set_setting))

    toggle_parser = _with_serial(subparsers.add_parser("toggle", help="Flip a boolean setting."))
    toggle_parser.add_argument("key")
    toggle_parser.set_defaults(func=_device_command(_toggle_setting))

    options_parser = _with_serial(
        subparsers.add_parser("options", help="List the options a range setting accepts.")
    )
    options_parser.add_argument("key")
    options_parser.set_defaults(func=_device_command(_list_options))

    apply_parser = _with_serial(subparsers.add_parser("apply-preset", help="Apply a preset."))
    source = apply_parser.add_mutually_exclusive_group(required=True)
    source.add_argument("name", nargs="?", help="Name of a saved or built-in preset.")
    source.add_argument("--file", help="Import a preset JSON file, save it, then apply it.")
    apply_parser.set_defaults(func=_device_command(_apply_preset))

    info_parser = _with_serial(subparsers.add_parser("info", help="Show device properties."))
    info_parser.set_defaults(func=_device_command(_device_info))

    logcat_parser = _with_serial(subparsers.add_parser("logcat", help="Print, save or clear logcat."))
    logcat_parser.add_argument("--lines", "-n", type=int, default=500, help="Most recent lines to read.")
    logcat_parser.add_argument("--tag", default="", help="Only this log tag.")
    logcat_parser.add_argument("--grep", default="", help="Only lines matching this expression.")
    logcat_parser.add_argument("--priority", "-p", default="V", help="Minimum priority (V D I W E F S).")
    logcat_mode = logcat_parser.add_mutually_exclusive_group()
    logcat_mode.add_argument("--output", "-o", default="", help="Save to this file instead of printing.")
    logcat_mode.add_argument("--clear", action="store_true", help="Clear the logcat buffer.")
    logcat_parser.set_defaults(func=_device_command(_logcat))

    dump_parser = _with_serial(
        subparsers.add_parser("window-dump", help="Dump the current window hierarchy as XML.")
    )
    dump_parser.add_argument("--output", "-o", default="", help="Save to this file instead of printing.")
    dump_parser.set_defaults(func=_device_command(_window_dump))

    record_parser = _with_serial(subparsers.add_parser("record", help="Start or stop screen recording."))
    record_parser.add_argument("action", choices=("start", "stop"))
    record_parser.add_argument("--remote-path", default=RECORDING_PATH, help="File on the device.")
    record_parser.add_argument("--time-limit", type=int, default=MAX_RECORDING_SECONDS)
    record_parser.add_argument("--size", default="", help="Video size, e.g. 1280x720.")
    record_parser.set_defaults(func=_device_command(_record))

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=True if args.debug else None, console=True if args.verbose else None)
    try:
        return args.func(args)
    except (DevSwitchError, KeyError, ValueError) as exc:
        _LOGGER.debug("Command failed", exc_info=True)
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
