from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from jsonschema import Draft202012Validator
from pydantic import ValidationError

from devswitch.domain.models import DevSwitchError, Preset, PresetApplyResult
from devswitch.services.action_log import ActionLogService
from devswitch.services.command_channel import CommandChannelError
from devswitch.services.paths import schemas_dir as default_schemas_dir
from devswitch.services.paths import user_data_dir
from devswitch.services.setting_actions import CommandFailed
from devswitch.services.setting_catalog import resolve_key
from devswitch.services.sync_controller import DeviceOffline, NoDeviceSelected, SyncController

_LOGGER = logging.getLogger(__name__)

# Settings worth replaying on another device; radios and debug overlays.
CAPTURE_KEYS: tuple[str, ...] = (
    "wifi",
    "data",
    "bluetooth",
    "layout_bounds",
    "taps",
    "stay_awake",
    "hwui",
    "force_rtl",
    "strict_mode",
    "pointer_location",
    "demo_mode",
    "dark_mode",
    "high_contrast",
    "color_inversion",
    "talkback",
    "animation_scale",
    "font_scale",
    "locale",
)

_BUILTIN_CREATED_AT = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _builtin(name: str, description: str, settings: dict[str, Any]) -> Preset:
    return Preset(
        name=name,
        description=description,
        settings=settings,
        created_at=_BUILTIN_CREATED_AT,
    )


BUILTIN_PRESETS: tuple[Preset, ...] = (
    _builtin(
        "UI Testing",
        "Clean status bar, no animations, screen stays on.",
        {"demo_mode": True, "animations": "off", "show_touches": False, "stay_awake": True},
    ),
    _builtin(
        "Accessibility Testing",
        "Larger fonts and high contrast text.",
        {"font_scale": "1.3x", "high_contrast": True, "talkback": False},
    ),
    _builtin(
        "Performance Debug",
        "Rendering overlays for jank hunting.",
        {"show_fps": True, "gpu_overdraw": True, "hwui": True, "strict_mode": True},
    ),
    _builtin(
        "Layout Debug",
        "Layout bounds and touch feedback.",
        {"layout_bounds": True, "show_touches": True, "pointer_location": True},
    ),
    _builtin(
        "RTL Testing",
        "Force right-to-left layout direction.",
        {"force_rtl": True},
    ),
    _builtin(
        "Default/Reset",
        "Turn debug overlays off and restore normal animations.",
        {
            "demo_mode": False,
            "animations": "1x",
            "show_touches": False,
            "layout_bounds": False,
            "gpu_overdraw": False,
            "hwui": False,
            "show_fps": False,
            "strict_mode": False,
            "pointer_location": False,
            "force_rtl": False,
        },
    ),
)


class PresetCatalogError(DevSwitchError):
    """Raised when presets cannot be saved, loaded, or imported."""


class PresetEngine:
    """Captures cached setting values into presets and replays them."""

    def __init__(
        self,
        controller: SyncController,
        *,
        capture_keys: Iterable[str] = CAPTURE_KEYS,
        action_log: ActionLogService | None = None,
    ) -> None:
        self.controller = controller
        self.capture_keys = tuple(capture_keys)
        self.action_log = action_log

    def capture(self, name: str, description: str = "") -> Preset:
        """Freeze the known, genuinely read values of the capture keys."""
        known = set(self.controller.keys)
        values = self.controller.values()
        settings: dict[str, Any] = {}
        for key in self.capture_keys:
            cached = values.get(key)
            if key not in known or cached is None or cached.fallback:
                continue
            settings[key] = cached.value
        return Preset(name=name, description=description, settings=settings)

    async def apply(self, preset: Preset) -> PresetApplyResult:
        """Replay ``preset`` in insertion order; failures do not stop the run."""
        device = self.controller.selected_device
        if device is None:
            raise NoDeviceSelected("Select a device before applying a preset.")
        if not device.online:
            raise DeviceOffline(f"Device {device.display_name} is offline.")

        known = set(self.controller.keys)
        result = PresetApplyResult(preset_name=preset.name)
        for raw_key, value in preset.settings.items():
            key = resolve_key(raw_key)
            if key not in known:
                result.skipped.append(raw_key)
                continue
            try:
                await self.controller.change_setting(key, value)
            except (CommandFailed, CommandChannelError, DeviceOffline, ValueError) as exc:
                result.failed[key] = str(exc)
                continue
            result.applied.append(key)

        if result.failed:
            _LOGGER.warning(
                "Preset '%s' applied with %d failure(s): %s",
                preset.name,
                len(result.failed),
                ", ".join(sorted(result.failed)),
            )
        else:
            _LOGGER.info("Preset '%s' applied to %s", preset.name, device.serial)
        if self.action_log is not None:
            self.action_log.log_event(
                "apply_preset",
                device=device.serial,
                preset=preset.name,
                applied=result.applied,
                skipped=result.skipped,
                failed=result.failed,
            )
        return result


class PresetCatalogService:
    """Built-in presets plus user presets persisted newest-first."""

    def __init__(
        self,
        storage_path: Path | None = None,
        schema_root: Path | None = None,
    ) -> None:
        self.storage_path = storage_path or (user_data_dir() / "presets.json")
        self.schema_root = schema_root or default_schemas_dir()
        self._preset_schema = self._read_json(self.schema_root / "preset.schema.json")
        self._preset_validator = Draft202012Validator(self._preset_schema)
        self._lock = threading.Lock()

    @staticmethod
    def _read_json(path: Path) -> dict:
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)

    def _read_store(self) -> list[Preset]:
        if not self.storage_path.exists():
            return []
        try:
            raw = json.loads(self.storage_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return []
        entries = raw.get("presets") if isinstance(raw, dict) else None
        if not isinstance(entries, list):
            return []

        presets: list[Preset] = []
        for entry in entries:
            try:
                presets.append(Preset.model_validate(entry))
            except ValidationError:
                continue
        return presets

    def _write_store(self, presets: list[Preset]) -> None:
        payload = {"presets": [preset.model_dump(mode="json") for preset in presets]}
        self.storage_path.parent.mkdir(parents=True, exist_ok=True)
        self.storage_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def get_preset_schema(self) -> dict:
        return self._preset_schema

    @staticmethod
    def is_builtin(name: str) -> bool:
        wanted = name.strip().casefold()
        return any(preset.name.casefold() == wanted for preset in BUILTIN_PRESETS)

    def list_presets(self) -> list[Preset]:
        with self._lock:
            user = self._read_store()
        return [*user, *BUILTIN_PRESETS]

    def load_preset(self, name: str) -> Preset:
        wanted = name.strip().casefold()
        for preset in self.list_presets():
            if preset.name.casefold() == wanted:
                return preset
        raise PresetCatalogError(f"Unknown preset '{name}'.")

    def save_preset(self, preset: Preset) -> None:
        if self.is_builtin(preset.name):
            raise PresetCatalogError(f"'{preset.name}' is a built-in preset and cannot be replaced.")
        with self._lock:
            presets = [
                existing
                for existing in self._read_store()
                if existing.name.casefold() != preset.name.casefold()
            ]
            presets.insert(0, preset)
            self._write_store(presets)
        _LOGGER.info("Saved preset '%s'", preset.name)

    def delete_preset(self, name: str) -> bool:
        if self.is_builtin(name):
            raise PresetCatalogError(f"'{name.strip()}' is a built-in preset and cannot be deleted.")
        wanted = name.strip().casefold()
        if not wanted:
            return False
        with self._lock:
            presets = self._read_store()
            remaining = [preset for preset in presets if preset.name.casefold() != wanted]
            if len(remaining) == len(presets):
                return False
            self._write_store(remaining)
        _LOGGER.info("Deleted preset '%s'", name.strip())
        return True

    def rename_preset(self, old_name: str, new_name: str) -> Preset:
        """Rename a user preset in place; another preset named ``new_name`` is replaced."""
        target = new_name.strip()
        if not target:
            raise PresetCatalogError("Preset name is required.")
        for name in (old_name, target):
            if self.is_builtin(name):
                raise PresetCatalogError(f"'{name.strip()}' is a built-in preset and cannot be renamed.")
        wanted = old_name.strip().casefold()
        with self._lock:
            presets = self._read_store()
            current = next((preset for preset in presets if preset.name.casefold() == wanted), None)
            if current is None:
                raise PresetCatalogError(f"Unknown preset '{old_name}'.")
            renamed = current.model_copy(update={"name": target})
            updated: list[Preset] = []
            for preset in presets:
                if preset is current:
                    updated.append(renamed)
                elif preset.name.casefold() != target.casefold():
                    updated.append(preset)
            self._write_store(updated)
        _LOGGER.info("Renamed preset '%s' to '%s'", current.name, target)
        return renamed

    def export_preset(self, preset: Preset, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(preset.model_dump(mode="json"), indent=2), encoding="utf-8")
        return path

    def import_preset(self, path: Path) -> Preset:
        try:
            data = self._read_json(path)
        except (OSError, json.JSONDecodeError) as exc:
            raise PresetCatalogError(f"Unable to read preset file {path.name}: {exc}") from exc
        errors = list(self._preset_validator.iter_errors(data))
        if errors:
            raise PresetCatalogError(
                f"Preset schema validation failed for {path.name}: {errors[0].message}"
            )
        try:
            preset = Preset.model_validate(data)
        except ValidationError as exc:
            raise PresetCatalogError(f"Invalid preset in {path.name}: {exc}") from exc
        self.save_preset(preset)
        return preset
