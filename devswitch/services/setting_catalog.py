from __future__ import annotations

import re
from typing import Sequence

from devswitch.domain.models import Device, TextValue
from devswitch.services.command_channel import CommandChannel
from devswitch.services.setting_actions import (
    RESTART_SYSTEM_UI,
    NumericRangeAction,
    Option,
    OptionsAction,
    SettingAction,
    ToggleAction,
    numeric_token,
    parse_bool_literal,
    parse_contains,
    parse_equals,
    parse_flag,
    parse_positive_int,
    property_toggle,
    settings_toggle,
)

NETWORK = "network"
DEBUG_OVERLAYS = "debug_overlays"
DEVELOPER_OPTIONS = "developer_options"
DISPLAY_ACCESSIBILITY = "display_accessibility"
BATTERY = "battery"

DEMO = "am broadcast -a com.android.systemui.demo -e command"

# Older names still found in saved presets.
KEY_ALIASES: dict[str, str] = {
    "show_touches": "taps",
    "show_taps": "taps",
    "animations": "animation_scale",
    "airplane": "airplane_mode",
    "hwui_profile": "hwui",
    "high_contrast_text": "high_contrast",
    "window_animation_scale": "animation_scale",
    "transition_animation_scale": "animation_scale",
    "animator_duration_scale": "animation_scale",
}


def resolve_key(key: str) -> str:
    return KEY_ALIASES.get(key, key)


class TalkBackAction(ToggleAction):
    """Adds or removes TalkBack from the enabled accessibility services list."""

    SERVICES_SETTING = "settings get secure enabled_accessibility_services"
    TALKBACK_SERVICE = (
        "com.google.android.marvin.talkback/com.google.android.marvin.talkback.TalkBackService"
    )

    def __init__(self, channel: CommandChannel) -> None:
        super().__init__(
            channel,
            "talkback",
            "TalkBack",
            read=self.SERVICES_SETTING,
            on=(),
            off=(),
            parse=parse_contains("talkback"),
            category=DISPLAY_ACCESSIBILITY,
        )

    async def _write(self, device: Device, value: bool) -> None:
        current = (await self.shell(device, self.SERVICES_SETTING)).strip()
        services = [item for item in current.split(":") if item and item != "null"]
        if value:
            if not any("talkback" in item.lower() for item in services):
                services.append(self.TALKBACK_SERVICE)
            await self.shell(
                device,
                f"settings put secure enabled_accessibility_services '{':'.join(services)}'",
            )
            await self.shell(device, "settings put secure accessibility_enabled 1")
            return
        remaining = [item for item in services if "talkback" not in item.lower()]
        await self.shell(
            device,
            f"settings put secure enabled_accessibility_services '{':'.join(remaining)}'",
        )
        if not remaining:
            await self.shell(device, "settings put secure accessibility_enabled 0")


class RefreshRateAction(OptionsAction):
    """Peak refresh rate, offered from the modes the display reports."""

    DISPLAY_MODE_PATTERN = re.compile(r"DisplayMode\{[^}]*?(?:vsyncRate|refreshRate)=([\d.]+)")

    def __init__(self, channel: CommandChannel) -> None:
        super().__init__(
            channel,
            "fps_scale",
            "Refresh Rate",
            options=(),
            default="Default",
            read=("settings get system peak_refresh_rate",),
            write=(
                "settings put system min_refresh_rate {remote}",
                "settings put system peak_refresh_rate {remote}",
            ),
            category=DISPLAY_ACCESSIBILITY,
        )
        self._modes: dict[str, tuple[Option, ...]] = {}

    def clear_cache(self) -> None:
        self._modes.clear()

    async def options_for(self, device: Device) -> tuple[Option, ...]:
        cached = self._modes.get(device.serial)
        if cached is not None:
            return cached
        output = await self.shell(device, "dumpsys display")
        rates: list[str] = []
        for match in self.DISPLAY_MODE_PATTERN.finditer(output):
            rate = numeric_token(match.group(1))
            if rate is None:
                continue
            label = str(int(round(rate)))
            if label not in rates:
                rates.append(label)
        options = (
            Option(
                "Default",
                "default",
                commands=(
                    "settings delete system min_refresh_rate",
                    "settings delete system peak_refresh_rate",
                ),
            ),
            *(Option(rate, rate) for rate in rates),
        )
        self._modes[device.serial] = options
        return options

    async def _read(self, device: Device) -> TextValue:
        raw = (await self.shell(device, self.read[0])).strip()
        if not raw or raw == "null":
            return TextValue("Default")
        rate = numeric_token(raw)
        if rate is None:
            return TextValue("Default", fallback=True)
        return TextValue(str(int(round(rate))))


class ColorCorrectionAction(OptionsAction):
    DALTONIZER = "settings get secure accessibility_display_daltonizer"
    DALTONIZER_ENABLED = "settings get secure accessibility_display_daltonizer_enabled"

    def __init__(self, channel: CommandChannel) -> None:
        disable = (
            "settings put secure accessibility_display_daltonizer_enabled 0",
            "settings put secure accessibility_display_daltonizer 0",
        )

        def _mode(remote: str) -> tuple[str, ...]:
            return (
                f"settings put secure accessibility_display_daltonizer {remote}",
                "settings put secure accessibility_display_daltonizer_enabled 1",
            )

        super().__init__(
            channel,
            "color_correction",
            "Color Correction",
            options=(
                Option("Disabled", "0", commands=disable),
                Option("Deuteranomaly", "12", commands=_mode("12")),
                Option("Protanomaly", "11", commands=_mode("11")),
                Option("Tritanomaly", "13", commands=_mode("13")),
                Option("Grayscale", "-1", commands=_mode("-1")),
            ),
            default="Disabled",
            after=("service call SurfaceFlinger 1015",),
            category=DISPLAY_ACCESSIBILITY,
        )

    async def _read(self, device: Device) -> TextValue:
        if parse_flag(await self.shell(device, self.DALTONIZER_ENABLED)) is not True:
            return TextValue("Disabled")
        return self.label_for((await self.shell(device, self.DALTONIZER)).strip(), self.options)


class BackgroundLimitAction(OptionsAction):
    def __init__(self, channel: CommandChannel) -> None:
        keep = "settings put global always_finish_activities 0"

        def _limit(count: int) -> tuple[str, ...]:
            return (keep, f"settings put global background_process_limit {count}")

        super().__init__(
            channel,
            "background_limit",
            "Background Process Limit",
            options=(
                Option(
                    "Standard limit",
                    "standard",
                    commands=(keep, "settings delete global background_process_limit"),
                ),
                Option(
                    "No background",
                    "0",
                    commands=(
                        "settings put global always_finish_activities 1",
                        "settings put global background_process_limit 0",
                    ),
                ),
                Option("1 process", "1", commands=_limit(1)),
                Option("2 processes", "2", commands=_limit(2)),
                Option("3 processes", "3", commands=_limit(3)),
                Option("4 processes", "4", commands=_limit(4)),
            ),
            default="Standard limit",
            category=DEVELOPER_OPTIONS,
        )

    async def _read(self, device: Device) -> TextValue:
        if parse_flag(await self.shell(device, "settings get global always_finish_activities")):
            return TextValue("No background")
        raw = (await self.shell(device, "settings get global background_process_limit")).strip()
        if not raw or raw == "null":
            return TextValue("Standard limit")
        return self.label_for(raw, self.options)


LOCALES: tuple[tuple[str, str], ...] = (
    ("English (US)", "en-US"),
    ("English (UK)", "en-GB"),
    ("Spanish", "es-ES"),
    ("French", "fr-FR"),
    ("German", "de-DE"),
    ("Italian", "it-IT"),
    ("Japanese", "ja-JP"),
    ("Korean", "ko-KR"),
    ("Chinese (Simplified)", "zh-CN"),
    ("Chinese (Traditional)", "zh-TW"),
    ("Arabic", "ar-SA"),
    ("Hebrew", "he-IL"),
    ("Russian", "ru-RU"),
    ("Portuguese (Brazil)", "pt-BR"),
    ("Hindi", "hi-IN"),
    ("Pseudo-Accented", "en-XA"),
    ("Pseudo-Bidi", "ar-XB"),
)


def _locale_option(name: str, code: str) -> Option:
    language, country = code.split("-")
    locale = f"{language}_{country}"
    return Option(
        f"{name} ({code})",
        code,
        commands=(
            f"settings put system system_locales {locale}",
            f"setprop persist.sys.locale {locale}",
            f"setprop persist.sys.language {language}",
            f"setprop persist.sys.country {country}",
            "am broadcast -a android.intent.action.LOCALE_CHANGED",
        ),
    )


def _decode_locale(raw: str) -> str | None:
    text = raw.strip()
    if not text or text == "null":
        return None
    # system_locales may hold a priority list; the first entry is active.
    return text.split(",")[0].replace("_", "-")


_DENSITY_OVERRIDE = re.compile(r"Override density:\s*(\d+)")


def _decode_density(raw: str) -> str | None:
    match = _DENSITY_OVERRIDE.search(raw)
    if match:
        return match.group(1)
    if "Physical density" in raw:
        return "reset"
    return None


def _describe_scale(token: str) -> str | None:
    number = numeric_token(token)
    if number is None:
        return None
    return f"{number:g}x"


_BATTERY_LEVEL = re.compile(r"^\s*level:\s*(\d+)", re.MULTILINE)


def _decode_battery_level(raw: str) -> int | None:
    match = _BATTERY_LEVEL.search(raw)
    return int(match.group(1)) if match else None


def _parse_dirty_regions(raw: str) -> bool | None:
    parsed = parse_flag(raw)
    return parse_bool_literal(raw) if parsed is None else parsed


def _demo_mode(channel: CommandChannel) -> ToggleAction:
    return ToggleAction(
        channel,
        "demo_mode",
        "Demo Mode",
        read="settings get global sysui_demo_allowed",
        on=(
            "settings put global sysui_demo_allowed 1",
            f"{DEMO} enter",
            f"{DEMO} clock -e hhmm 1200",
            f"{DEMO} battery -e level 100 -e plugged false",
            f"{DEMO} network -e wifi show -e level 4",
            f"{DEMO} notifications -e visible false",
        ),
        off=(
            f"{DEMO} exit",
            "settings put global sysui_demo_allowed 0",
        ),
        category=DEVELOPER_OPTIONS,
    )


def _toggles(channel: CommandChannel) -> list[SettingAction]:
    return [
        # Network
        ToggleAction(
            channel,
            "wifi",
            "Wi-Fi",
            read="settings get global wifi_on",
            on=("svc wifi enable",),
            off=("svc wifi disable",),
            category=NETWORK,
        ),
        ToggleAction(
            channel,
            "data",
            "Mobile Data",
            read="settings get global mobile_data",
            on=("svc data enable",),
            off=("svc data disable",),
            category=NETWORK,
        ),
        ToggleAction(
            channel,
            "airplane_mode",
            "Airplane Mode",
            read="settings get global airplane_mode_on",
            on=(
                "settings put global airplane_mode_on 1",
                "am broadcast -a android.intent.action.AIRPLANE_MODE --ez state true",
            ),
            off=(
                "settings put global airplane_mode_on 0",
                "am broadcast -a android.intent.action.AIRPLANE_MODE --ez state false",
            ),
            category=NETWORK,
        ),
        ToggleAction(
            channel,
            "bluetooth",
            "Bluetooth",
            read="settings get global bluetooth_on",
            on=("svc bluetooth enable",),
            off=("svc bluetooth disable",),
            category=NETWORK,
        ),
        # Debug overlays
        property_toggle(channel, "layout_bounds", "Layout Bounds", "debug.layout", category=DEBUG_OVERLAYS),
        property_toggle(
            channel,
            "hwui",
            "Profile HWUI Rendering",
            "debug.hwui.profile",
            on_value="visual_bars",
            off_value="off",
            category=DEBUG_OVERLAYS,
        ),
        settings_toggle(
            channel,
            "taps",
            "Show Taps",
            "system",
            "show_touches",
            after=("am broadcast -a android.intent.action.USER_PRESENT", RESTART_SYSTEM_UI),
            category=DEBUG_OVERLAYS,
        ),
        property_toggle(
            channel,
            "show_fps",
            "Show FPS",
            "debug.hwui.show_fps",
            after=(),
            category=DEBUG_OVERLAYS,
        ),
        settings_toggle(
            channel,
            "pointer_location",
            "Pointer Location",
            "system",
            "pointer_location",
            category=DEBUG_OVERLAYS,
        ),
        ToggleAction(
            channel,
            "gpu_overdraw",
            "GPU Overdraw",
            read="getprop debug.hwui.overdraw",
            on=(
                "setprop debug.hwui.overdraw show",
                "settings put secure debug_hw_overdraw show",
            ),
            off=(
                "setprop debug.hwui.overdraw false",
                "settings put secure debug_hw_overdraw off",
            ),
            parse=parse_equals("show"),
            after=(RESTART_SYSTEM_UI,),
            category=DEBUG_OVERLAYS,
        ),
        ToggleAction(
            channel,
            "surface_updates",
            "Surface Updates",
            read="getprop debug.hwui.show_dirty_regions",
            on=(
                "setprop debug.hwui.show_dirty_regions 1",
                "service call SurfaceFlinger 1002 i32 1",
            ),
            off=(
                "setprop debug.hwui.show_dirty_regions 0",
                "service call SurfaceFlinger 1002 i32 0",
            ),
            parse=_parse_dirty_regions,
            after=(RESTART_SYSTEM_UI,),
            category=DEBUG_OVERLAYS,
        ),
        settings_toggle(
            channel,
            "strict_mode",
            "Strict Mode",
            "global",
            "strict_mode_visual_indicator",
            category=DEBUG_OVERLAYS,
        ),
        # Developer options
        settings_toggle(
            channel,
            "stay_awake",
            "Stay Awake",
            "global",
            "stay_on_while_plugged_in",
            on_value="3",
            category=DEVELOPER_OPTIONS,
        ),
        settings_toggle(
            channel,
            "dont_keep_activities",
            "Don't Keep Activities",
            "global",
            "always_finish_activities",
            category=DEVELOPER_OPTIONS,
        ),
        settings_toggle(
            channel,
            "force_rtl",
            "Force RTL",
            "global",
            "debug.force_rtl",
            after=(RESTART_SYSTEM_UI,),
            category=DEVELOPER_OPTIONS,
        ),
        settings_toggle(
            channel,
            "usb_debugging",
            "USB Debugging",
            "global",
            "adb_enabled",
            category=DEVELOPER_OPTIONS,
        ),
        _demo_mode(channel),
        # Display and accessibility
        ToggleAction(
            channel,
            "dark_mode",
            "Dark Mode",
            read="cmd uimode night",
            on=("cmd uimode night yes",),
            off=("cmd uimode night no",),
            parse=parse_contains("yes"),
            category=DISPLAY_ACCESSIBILITY,
        ),
        settings_toggle(
            channel,
            "high_contrast",
            "High Contrast Text",
            "secure",
            "high_text_contrast_enabled",
            category=DISPLAY_ACCESSIBILITY,
        ),
        settings_toggle(
            channel,
            "color_inversion",
            "Color Inversion",
            "secure",
            "accessibility_display_inversion_enabled",
            category=DISPLAY_ACCESSIBILITY,
        ),
        settings_toggle(
            channel,
            "magnification",
            "Magnification",
            "secure",
            "accessibility_display_magnification_enabled",
            category=DISPLAY_ACCESSIBILITY,
        ),
        ToggleAction(
            channel,
            "bold_text",
            "Bold Text",
            read="settings get secure font_weight_adjustment",
            on=("settings put secure font_weight_adjustment 300",),
            off=("settings put secure font_weight_adjustment 0",),
            parse=parse_positive_int,
            category=DISPLAY_ACCESSIBILITY,
        ),
        settings_toggle(
            channel,
            "auto_brightness",
            "Auto Brightness",
            "system",
            "screen_brightness_mode",
            category=DISPLAY_ACCESSIBILITY,
        ),
        TalkBackAction(channel),
        # Battery
        settings_toggle(
            channel,
            "battery_saver",
            "Battery Saver",
            "global",
            "low_power",
            category=BATTERY,
        ),
    ]


def _ranges(channel: CommandChannel) -> list[SettingAction]:
    return [
        OptionsAction(
            channel,
            "animation_scale",
            "Animation Scale",
            options=(
                Option("Off", "0"),
                Option("0.5x", "0.5"),
                Option("1x", "1"),
                Option("1.5x", "1.5"),
                Option("2x", "2"),
                Option("5x", "5"),
                Option("10x", "10"),
            ),
            default="1x",
            read=("settings get global window_animation_scale",),
            write=(
                "settings put global window_animation_scale {remote}",
                "settings put global transition_animation_scale {remote}",
                "settings put global animator_duration_scale {remote}",
            ),
            describe_unknown=_describe_scale,
            category=DEVELOPER_OPTIONS,
        ),
        RefreshRateAction(channel),
        OptionsAction(
            channel,
            "font_scale",
            "Font Scale",
            options=tuple(
                Option(f"{scale}x", scale)
                for scale in ("0.85", "1.0", "1.15", "1.3", "1.5", "1.8", "2.0")
            ),
            default="1.0x",
            read=("settings get system font_scale",),
            write=("settings put system font_scale {remote}",),
            describe_unknown=_describe_scale,
            category=DISPLAY_ACCESSIBILITY,
        ),
        OptionsAction(
            channel,
            "display_density",
            "Display Density",
            options=(
                Option("Default", "reset"),
                *(Option(dpi, dpi) for dpi in ("120", "160", "240", "320", "400", "480", "560", "640")),
            ),
            default="Default",
            read=("wm density",),
            write=("wm density {remote}",),
            decode=_decode_density,
            describe_unknown=lambda token: token if token.isdigit() else None,
            category=DISPLAY_ACCESSIBILITY,
        ),
        ColorCorrectionAction(channel),
        BackgroundLimitAction(channel),
        OptionsAction(
            channel,
            "locale",
            "Locale",
            options=tuple(_locale_option(name, code) for name, code in LOCALES),
            default="English (US) (en-US)",
            read=(
                "settings get system system_locales",
                "getprop persist.sys.locale",
            ),
            decode=_decode_locale,
            describe_unknown=lambda token: token,
            category=DISPLAY_ACCESSIBILITY,
        ),
        OptionsAction(
            channel,
            "screen_timeout",
            "Screen Timeout",
            options=(
                Option("15 sec", "15000"),
                Option("30 sec", "30000"),
                Option("1 min", "60000"),
                Option("2 min", "120000"),
                Option("5 min", "300000"),
                Option("10 min", "600000"),
                Option("30 min", "1800000"),
            ),
            default="1 min",
            read=("settings get system screen_off_timeout",),
            write=("settings put system screen_off_timeout {remote}",),
            category=DISPLAY_ACCESSIBILITY,
        ),
    ]


def _numeric(channel: CommandChannel) -> list[SettingAction]:
    return [
        NumericRangeAction(
            channel,
            "brightness",
            "Screen Brightness",
            minimum=0,
            maximum=100,
            remote_minimum=0,
            remote_maximum=255,
            default=50,
            read="settings get system screen_brightness",
            prepare=("settings put system screen_brightness_mode 0",),
            write=("settings put system screen_brightness {value}",),
            category=DISPLAY_ACCESSIBILITY,
        ),
        NumericRangeAction(
            channel,
            "battery_level",
            "Battery Level",
            minimum=0,
            maximum=100,
            default=100,
            read="dumpsys battery",
            prepare=("dumpsys battery unplug",),
            write=("dumpsys battery set level {value}",),
            decode=_decode_battery_level,
            category=BATTERY,
        ),
    ]


def build_catalog(channel: CommandChannel) -> dict[str, SettingAction]:
    """Every supported setting keyed by its setting key, in display order."""
    catalog: dict[str, SettingAction] = {}
    for action in (*_toggles(channel), *_ranges(channel), *_numeric(channel)):
        if action.key in catalog:
            raise ValueError(f"Duplicate setting key '{action.key}'.")
        catalog[action.key] = action
    return catalog


def catalog_by_category(catalog: dict[str, SettingAction]) -> dict[str, list[SettingAction]]:
    grouped: dict[str, list[SettingAction]] = {}
    for action in catalog.values():
        grouped.setdefault(action.category or "other", []).append(action)
    return grouped


def toggle_keys(catalog: dict[str, SettingAction]) -> Sequence[str]:
    return [key for key, action in catalog.items() if isinstance(action, ToggleAction)]


__all__ = [
    "BATTERY",
    "DEBUG_OVERLAYS",
    "DEVELOPER_OPTIONS",
    "DISPLAY_ACCESSIBILITY",
    "KEY_ALIASES",
    "NETWORK",
    "build_catalog",
    "catalog_by_category",
    "resolve_key",
    "toggle_keys",
]
