from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any

from devswitch.services.paths import preferences_path

AUTO_REFRESH_KEY = "auto_refresh_enabled"
REFRESH_INTERVAL_KEY = "refresh_interval_ms"
SSH_TARGETS_KEY = "ssh_targets"


class PreferenceStore:
    """String key -> JSON value store persisted as one JSON document.

    A missing or corrupt file reads as an empty store.
    """

    def __init__(self, storage_path: Path | None = None) -> None:
        self.storage_path = storage_path or preferences_path()
        self._lock = threading.Lock()

    @staticmethod
    def _coerce_bool(raw: object, default: bool) -> bool:
        if isinstance(raw, bool):
            return raw
        text = str(raw).strip().lower()
        if text in {"1", "true", "yes", "on"}:
            return True
        if text in {"0", "false", "no", "off"}:
            return False
        return default

    @staticmethod
    def _coerce_int(raw: object, default: int) -> int:
        if isinstance(raw, bool):
            return default
        try:
            return int(str(raw).strip())
        except (TypeError, ValueError):
            return default

    def _read_store(self) -> dict[str, Any]:
        if not self.storage_path.exists():
            return {}
        try:
            raw = json.loads(self.storage_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return {}
        values = raw.get("values") if isinstance(raw, dict) else None
        if not isinstance(values, dict):
            return {}
        return {str(key): value for key, value in values.items() if str(key).strip()}

    def _write_store(self, values: dict[str, Any]) -> None:
        payload = {"values": values}
        self.storage_path.parent.mkdir(parents=True, exist_ok=True)
        self.storage_path.write_text(
            json.dumps(payload, indent=2, sort_keys=True, default=str),
            encoding="utf-8",
        )

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._read_store().keys(), key=str.casefold)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._read_store().get(key.strip(), default)

    def set(self, key: str, value: Any) -> None:
        name = key.strip()
        if not name:
            raise ValueError("Preference key is required.")
        with self._lock:
            values = self._read_store()
            values[name] = value
            self._write_store(values)

    def delete(self, key: str) -> bool:
        name = key.strip()
        if not name:
            return False
        with self._lock:
            values = self._read_store()
            if name not in values:
                return False
            del values[name]
            self._write_store(values)
            return True

    def get_bool(self, key: str, default: bool) -> bool:
        raw = self.get(key)
        if raw is None:
            return default
        return self._coerce_bool(raw, default)

    def get_int(self, key: str, default: int) -> int:
        raw = self.get(key)
        if raw is None:
            return default
        return self._coerce_int(raw, default)
