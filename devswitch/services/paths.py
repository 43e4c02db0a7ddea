from __future__ import annotations

import os
import shutil
import sys
from pathlib import Path


def app_root() -> Path:
    if getattr(sys, "frozen", False) and hasattr(sys, "_MEIPASS"):
        return Path(sys._MEIPASS) / "devswitch"  # type: ignore[attr-defined]
    return Path(__file__).resolve().parents[1]


def schemas_dir() -> Path:
    return app_root() / "schemas"


def user_data_dir() -> Path:
    configured = (os.getenv("DEVSWITCH_DATA_DIR") or "").strip()
    if configured:
        return Path(configured).expanduser()
    appdata = os.getenv("APPDATA")
    if appdata:
        return Path(appdata) / "DevSwitch"
    return Path.home() / ".devswitch"


def preferences_path() -> Path:
    return user_data_dir() / "preferences.json"


def logs_dir() -> Path:
    return user_data_dir() / "logs"


def _adb_executable_name() -> str:
    return "adb.exe" if os.name == "nt" else "adb"


def adb_path_candidates() -> list[Path]:
    candidates: list[Path] = []
    configured = (os.getenv("DEVSWITCH_ADB_PATH") or "").strip()
    if configured:
        candidates.append(Path(configured).expanduser())
    # SDK locations, newest variable first.
    for env_name in ("ANDROID_SDK_ROOT", "ANDROID_HOME"):
        sdk_root = (os.getenv(env_name) or "").strip()
        if sdk_root:
            candidates.append(Path(sdk_root).expanduser() / "platform-tools" / _adb_executable_name())
    on_path = shutil.which("adb")
    if on_path:
        candidates.append(Path(on_path))
    deduped: list[Path] = []
    seen: set[str] = set()
    for candidate in candidates:
        key = str(candidate)
        if key in seen:
            continue
        seen.add(key)
        deduped.append(candidate)
    return deduped


def find_adb_path() -> str:
    for candidate in adb_path_candidates():
        if candidate.exists():
            return str(candidate)
    # Let subprocess resolve it and fail loudly when used.
    return "adb"
