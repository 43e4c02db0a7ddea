from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from devswitch.services.paths import logs_dir


class ActionLogService:
    """Append-only JSON-lines record of operator actions against devices."""

    def __init__(self, log_path: Path | None = None) -> None:
        if log_path is None:
            log_path = logs_dir() / "actions.log"
        self.log_path = log_path.expanduser()

    def log_event(self, action: str, *, device: str = "", **fields: Any) -> None:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "action": action,
        }
        if device:
            payload["device"] = device
        payload.update(fields)
        self._append_json_line(payload)

    def recent(self, limit: int = 50) -> list[dict[str, Any]]:
        if limit <= 0 or not self.log_path.exists():
            return []
        try:
            lines = self.log_path.read_text(encoding="utf-8").splitlines()
        except OSError:
            return []
        entries: list[dict[str, Any]] = []
        for line in lines[-limit:]:
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(entry, dict):
                entries.append(entry)
        return entries

    def _append_json_line(self, payload: dict[str, Any]) -> None:
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(payload, sort_keys=True, default=str) + "\n")
        except OSError:
            # Logging must never break device workflows.
            return
