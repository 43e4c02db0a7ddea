"""Typed get/set contracts for remote device settings.

Every setting is one of three shapes:

``ToggleAction``
    boolean state, written with one command sequence per direction and read
    back through a per-setting text parser.
``RangeAction``
    one label out of an ordered option list; the list may come from the
    device itself.
``NumericRangeAction``
    bounded integer that is scaled linearly to the unit the device expects.

Concrete settings are built from data in :mod:`devswitch.services.setting_catalog`.
Anything that goes wrong while building or sending commands surfaces as
:class:`CommandFailed` carrying the setting key.
"""

from __future__ import annotations

import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Iterable, Sequence

from devswitch.domain.models import (
    BoolValue,
    Device,
    DevSwitchError,
    IntValue,
    SettingKind,
    SettingValue,
    TextValue,
)
from devswitch.services.command_channel import CommandChannel

RESTART_SYSTEM_UI = "service call activity 1599295570"

BoolParser = Callable[[str], bool | None]


class CommandFailed(DevSwitchError):
    """Raised when reading or writing a setting fails."""

    def __init__(self, key: str, cause: BaseException) -> None:
        self.key = key
        self.cause = cause
        super().__init__(f"Setting '{key}' failed: {cause}")


# ---------------------------------------------------------------------------
# Output parsers. ``None`` means the output could not be interpreted.


def _clean(raw: str) -> str:
    return raw.strip()


def parse_flag(raw: str) -> bool | None:
    text = _clean(raw)
    if text == "1":
        return True
    if text == "0":
        return False
    return None


def parse_bool_literal(raw: str) -> bool | None:
    text = _clean(raw).lower()
    if text == "true":
        return True
    if text == "false":
        return False
    return None


def parse_equals(token: str) -> BoolParser:
    def _parse(raw: str) -> bool | None:
        return _clean(raw) == token

    return _parse


def parse_contains(keyword: str) -> BoolParser:
    lowered = keyword.lower()

    def _parse(raw: str) -> bool | None:
        return lowered in raw.lower()

    return _parse


def parse_positive_int(raw: str) -> bool | None:
    try:
        return int(_clean(raw)) > 0
    except ValueError:
        return None


def parse_int(raw: str) -> int | None:
    text = _clean(raw)
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return round_half_up(number)


def round_half_up(number: float) -> int:
    return int(math.floor(number + 0.5))


def normalize_token(text: object) -> str:
    return re.sub(r"\s+", " ", str(text).strip().lower().replace("_", "-"))


def numeric_token(text: object) -> float | None:
    token = normalize_token(text).replace(",", ".")
    token = token.rstrip("x%").strip()
    try:
        number = float(token)
    except ValueError:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def coerce_bool(value: object) -> bool:
    if isinstance(value, BoolValue):
        return value.value
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    text = normalize_token(value)
    if text in {"1", "true", "yes", "on", "enable", "enabled"}:
        return True
    if text in {"0", "false", "no", "off", "disable", "disabled"}:
        return False
    raise ValueError(f"Expected a boolean value, got {value!r}.")


# ---------------------------------------------------------------------------
# Base


class SettingAction(ABC):
    kind: ClassVar[SettingKind]

    def __init__(
        self,
        channel: CommandChannel,
        key: str,
        label: str,
        *,
        category: str = "",
    ) -> None:
        self.channel = channel
        self.key = key
        self.label = label
        self.category = category

    def __repr__(self) -> str:
        return f"{type(self).__name__}(key={self.key!r})"

    async def shell(self, device: Device, command: str) -> str:
        return await self.channel.execute(device, command)

    async def run_all(self, device: Device, commands: Iterable[str]) -> None:
        for command in commands:
            await self.shell(device, command)

    async def get_value(self, device: Device) -> SettingValue:
        try:
            return await self._read(device)
        except CommandFailed:
            raise
        except Exception as exc:  # noqa: BLE001
            raise CommandFailed(self.key, exc) from exc

    async def set_value(self, device: Device, value: Any) -> None:
        try:
            await self._write(device, self.coerce(value))
        except CommandFailed:
            raise
        except Exception as exc:  # noqa: BLE001
            raise CommandFailed(self.key, exc) from exc

    def clear_cache(self) -> None:
        """Forget anything remembered about a previously selected device."""

    @abstractmethod
    def coerce(self, value: Any) -> Any:
        """Convert operator input into the value ``_write`` expects."""

    @abstractmethod
    async def _read(self, device: Device) -> SettingValue: ...

    @abstractmethod
    async def _write(self, device: Device, value: Any) -> None: ...


# ---------------------------------------------------------------------------
# Toggle


class ToggleAction(SettingAction):
    kind = SettingKind.TOGGLE

    def __init__(
        self,
        channel: CommandChannel,
        key: str,
        label: str,
        *,
        read: str,
        on: Sequence[str],
        off: Sequence[str],
        parse: BoolParser = parse_flag,
        after: Sequence[str] = (),
        category: str = "",
    ) -> None:
        super().__init__(channel, key, label, category=category)
        self.read = read
        self.on = tuple(on)
        self.off = tuple(off)
        self.parse = parse
        self.after = tuple(after)

    def coerce(self, value: Any) -> bool:
        return coerce_bool(value)

    async def _write(self, device: Device, value: bool) -> None:
        await self.run_all(device, self.on if value else self.off)
        await self.run_all(device, self.after)

    async def _read(self, device: Device) -> BoolValue:
        parsed = self.parse(await self.shell(device, self.read))
        if parsed is None:
            return BoolValue(False, fallback=True)
        return BoolValue(parsed)


def settings_toggle(
    channel: CommandChannel,
    key: str,
    label: str,
    namespace: str,
    name: str,
    *,
    on_value: str = "1",
    off_value: str = "0",
    after: Sequence[str] = (),
    category: str = "",
) -> ToggleAction:
    """Toggle stored in the ``settings`` provider as two literal values."""
    parse = parse_flag if (on_value, off_value) == ("1", "0") else parse_equals(on_value)
    return ToggleAction(
        channel,
        key,
        label,
        read=f"settings get {namespace} {name}",
        on=(f"settings put {namespace} {name} {on_value}",),
        off=(f"settings put {namespace} {name} {off_value}",),
        parse=parse,
        after=after,
        category=category,
    )


def property_toggle(
    channel: CommandChannel,
    key: str,
    label: str,
    prop: str,
    *,
    on_value: str = "true",
    off_value: str = "false",
    after: Sequence[str] = (RESTART_SYSTEM_UI,),
    category: str = "",
) -> ToggleAction:
    """Toggle backed by a system property, refreshed by poking SystemUI."""
    parse = parse_bool_literal if (on_value, off_value) == ("true", "false") else parse_equals(on_value)
    return ToggleAction(
        channel,
        key,
        label,
        read=f"getprop {prop}",
        on=(f"setprop {prop} {on_value}",),
        off=(f"setprop {prop} {off_value}",),
        parse=parse,
        after=after,
        category=category,
    )


# ---------------------------------------------------------------------------
# Range


@dataclass(frozen=True)
class Option:
    label: str
    remote: str
    commands: tuple[str, ...] = ()


def match_option(options: Sequence[Option], value: object) -> Option | None:
    """Find the option ``value`` names, ignoring case, separators and numeric form."""
    token = normalize_token(value)
    if not token:
        return None
    for option in options:
        if token in (normalize_token(option.label), normalize_token(option.remote)):
            return option
    number = numeric_token(value)
    if number is None:
        return None
    for option in options:
        for candidate in (option.label, option.remote):
            candidate_number = numeric_token(candidate)
            if candidate_number is not None and math.isclose(candidate_number, number):
                return option
    return None


class RangeAction(SettingAction):
    kind = SettingKind.RANGE

    @abstractmethod
    async def get_available_options(self, device: Device) -> list[str]: ...


class OptionsAction(RangeAction):
    """Range setting described by an option table.

    ``read`` commands are tried in order; ``decode`` turns raw output into a
    remote token (or ``None`` to try the next command). A token that matches
    no option is shown through ``describe_unknown`` when given, otherwise the
    default option is substituted and flagged as a fallback.
    """

    def __init__(
        self,
        channel: CommandChannel,
        key: str,
        label: str,
        *,
        options: Sequence[Option],
        default: str,
        read: Sequence[str] = (),
        write: Sequence[str] = (),
        decode: Callable[[str], str | None] | None = None,
        describe_unknown: Callable[[str], str | None] | None = None,
        after: Sequence[str] = (),
        category: str = "",
    ) -> None:
        super().__init__(channel, key, label, category=category)
        self.options = tuple(options)
        self.default = default
        self.read = tuple(read)
        self.write = tuple(write)
        self.decode = decode or _decode_plain
        self.describe_unknown = describe_unknown
        self.after = tuple(after)

    async def options_for(self, device: Device) -> tuple[Option, ...]:
        return self.options

    async def get_available_options(self, device: Device) -> list[str]:
        return [option.label for option in await self.options_for(device)]

    def default_option(self, options: Sequence[Option] | None = None) -> Option:
        pool = self.options if options is None else options
        found = match_option(pool, self.default)
        if found is not None:
            return found
        return Option(self.default, self.default)

    def coerce(self, value: Any) -> str:
        if isinstance(value, TextValue):
            value = value.value
        return str(value).strip()

    def normalize(self, value: object, options: Sequence[Option] | None = None) -> Option:
        """Resolve operator input to an option, falling back to the default."""
        pool = self.options if options is None else options
        return match_option(pool, value) or self.default_option(pool)

    def commands_for(self, option: Option) -> tuple[str, ...]:
        if option.commands:
            return option.commands
        return tuple(template.format(remote=option.remote) for template in self.write)

    async def _write(self, device: Device, value: str) -> None:
        option = self.normalize(value, await self.options_for(device))
        await self.run_all(device, self.commands_for(option))
        await self.run_all(device, self.after)

    async def _read(self, device: Device) -> TextValue:
        options = await self.options_for(device)
        for command in self.read:
            token = self.decode(await self.shell(device, command))
            if token is None:
                continue
            return self.label_for(token, options)
        return TextValue(self.default_option(options).label, fallback=True)

    def label_for(self, token: str, options: Sequence[Option]) -> TextValue:
        option = match_option(options, token)
        if option is not None:
            return TextValue(option.label)
        if self.describe_unknown is not None:
            described = self.describe_unknown(token)
            if described:
                return TextValue(described)
        return TextValue(self.default_option(options).label, fallback=True)


def _decode_plain(raw: str) -> str | None:
    text = _clean(raw)
    if not text or text == "null":
        return None
    return text


# ---------------------------------------------------------------------------
# Numeric


class NumericRangeAction(SettingAction):
    """Integer setting in ``[minimum, maximum]`` mapped onto a remote range."""

    kind = SettingKind.NUMERIC

    def __init__(
        self,
        channel: CommandChannel,
        key: str,
        label: str,
        *,
        minimum: int,
        maximum: int,
        default: int,
        read: str,
        write: Sequence[str],
        remote_minimum: int | None = None,
        remote_maximum: int | None = None,
        prepare: Sequence[str] = (),
        decode: Callable[[str], int | None] = parse_int,
        category: str = "",
    ) -> None:
        if minimum >= maximum:
            raise ValueError(f"Invalid range for '{key}': {minimum}..{maximum}")
        remote_low = minimum if remote_minimum is None else remote_minimum
        remote_high = maximum if remote_maximum is None else remote_maximum
        if remote_low >= remote_high:
            raise ValueError(f"Invalid device range for '{key}': {remote_low}..{remote_high}")
        super().__init__(channel, key, label, category=category)
        self.minimum = minimum
        self.maximum = maximum
        self.default = default
        self.read = read
        self.write = tuple(write)
        self.remote_minimum = remote_low
        self.remote_maximum = remote_high
        self.prepare = tuple(prepare)
        self.decode = decode

    def clamp(self, value: int) -> int:
        return max(self.minimum, min(self.maximum, value))

    def coerce(self, value: Any) -> int:
        if isinstance(value, IntValue):
            value = value.value
        if isinstance(value, bool):
            raise ValueError(f"Expected a number for '{self.key}', got {value!r}.")
        if isinstance(value, (int, float)):
            number = float(value)
        else:
            parsed = numeric_token(value)
            if parsed is None:
                raise ValueError(f"Expected a number for '{self.key}', got {value!r}.")
            number = parsed
        return self.clamp(round_half_up(number))

    def to_remote(self, value: int) -> int:
        span = self.maximum - self.minimum
        remote_span = self.remote_maximum - self.remote_minimum
        scaled = self.remote_minimum + (self.clamp(value) - self.minimum) * remote_span / span
        return round_half_up(scaled)

    def from_remote(self, remote: int) -> int:
        span = self.maximum - self.minimum
        remote_span = self.remote_maximum - self.remote_minimum
        scaled = self.minimum + (remote - self.remote_minimum) * span / remote_span
        return self.clamp(round_half_up(scaled))

    async def _write(self, device: Device, value: int) -> None:
        remote = self.to_remote(value)
        await self.run_all(device, self.prepare)
        await self.run_all(device, (template.format(value=remote) for template in self.write))

    async def _read(self, device: Device) -> IntValue:
        remote = self.decode(await self.shell(device, self.read))
        if remote is None:
            return IntValue(self.default, fallback=True)
        return IntValue(self.from_remote(remote))
