from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


SettingKey = str


class DevSwitchError(Exception):
    """Base class for errors raised by the setting engine."""


@dataclass(frozen=True, slots=True)
class Device:
    """Handle to a connected device as reported by a transport.

    Identity is the serial; ``online`` reflects the transport's last report and
    is refreshed by replacing the handle, never by mutating it.
    """

    serial: str
    name: str = ""
    online: bool = True
    model: str = ""

    @property
    def display_name(self) -> str:
        if self.model:
            return f"{self.model} ({self.serial})"
        return self.name or self.serial

    def same_device(self, other: "Device | None") -> bool:
        return other is not None and other.serial == self.serial


class SettingKind(str, Enum):
    TOGGLE = "toggle"
    RANGE = "range"
    NUMERIC = "numeric"


@dataclass(frozen=True, slots=True)
class BoolValue:
    value: bool
    fallback: bool = False

    kind = SettingKind.TOGGLE


@dataclass(frozen=True, slots=True)
class TextValue:
    value: str
    fallback: bool = False

    kind = SettingKind.RANGE


@dataclass(frozen=True, slots=True)
class IntValue:
    value: int
    fallback: bool = False

    kind = SettingKind.NUMERIC


SettingValue = Union[BoolValue, TextValue, IntValue]


# (milliseconds, label) pairs offered to the operator.
REFRESH_INTERVALS: tuple[tuple[int, str], ...] = (
    (500, "0.5s"),
    (1000, "1s"),
    (2000, "2s"),
    (3000, "3s"),
    (5000, "5s"),
    (10000, "10s"),
    (30000, "30s"),
    (60000, "1m"),
)
DEFAULT_REFRESH_INTERVAL_MS = 1000


def refresh_interval_label(interval_ms: int) -> str:
    for value, label in REFRESH_INTERVALS:
        if value == interval_ms:
            return label
    return f"{interval_ms}ms"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class Preset(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    description: str = ""
    settings: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now_utc)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("Preset name is required.")
        return stripped


class PresetApplyResult(BaseModel):
    preset_name: str
    applied: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass(frozen=True)
class DeviceInfo:
    model: str
    manufacturer: str
    android_version: str
    api_level: str
    screen_resolution: str
    screen_density: str
