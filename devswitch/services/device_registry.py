from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Sequence

from devswitch.domain.models import Device
from devswitch.services.command_channel import TransportError
from devswitch.services.transport import DeviceTransport

_LOGGER = logging.getLogger(__name__)


def choose_selection(current: Device | None, devices: Sequence[Device]) -> Device | None:
    """Rebind ``current`` to its fresh handle, else fall back to the first device."""
    if current is not None:
        for device in devices:
            if device.serial == current.serial:
                return device
    return devices[0] if devices else None


class DeviceRegistry:
    """Live view of the devices a transport currently reports."""

    def __init__(self, transport: DeviceTransport) -> None:
        self.transport = transport

    async def devices(self) -> list[Device]:
        loop = asyncio.get_running_loop()
        try:
            return list(await loop.run_in_executor(None, self.transport.device_list))
        except TransportError as exc:
            _LOGGER.warning("Device list unavailable: %s", exc)
            return []

    async def observe_devices(self) -> AsyncIterator[list[Device]]:
        """Yield a full snapshot now and again after every device event.

        Each iteration owns its own transport listener, installed on first
        ``__anext__`` and removed when the generator is closed.
        """
        loop = asyncio.get_running_loop()
        events: asyncio.Queue[tuple[str, str]] = asyncio.Queue()

        def _on_device_event(event: str, device: Device) -> None:
            # Transport thread: hand off to the loop, never touch state here.
            try:
                loop.call_soon_threadsafe(events.put_nowait, (event, device.serial))
            except RuntimeError:
                return

        self.transport.add_device_listener(_on_device_event)
        try:
            yield await self.devices()
            while True:
                event, serial = await events.get()
                _LOGGER.debug("Device %s %s", serial, event)
                yield await self.devices()
        finally:
            self.transport.remove_device_listener(_on_device_event)
