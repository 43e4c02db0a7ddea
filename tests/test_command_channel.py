from __future__ import annotations

import asyncio
import threading
import time

import pytest

from devswitch.domain.models import Device
from devswitch.services.command_channel import (
    CommandChannel,
    CommandTimeout,
    TransportError,
)

DEVICE = Device(serial="emulator-5554")


class _ScriptedTransport:
    def __init__(self, chunks=(), *, delay: float = 0.0, flush: bool = True, error=None) -> None:  # noqa: ANN001
        self.chunks = list(chunks)
        self.delay = delay
        self.flush = flush
        self.error = error
        self.saw_cancel = threading.Event()
        self.finished = threading.Event()
        self.commands: list[str] = []

    def execute_command(self, device, command, receiver, timeout) -> None:  # noqa: ANN001
        self.commands.append(command)
        try:
            deadline = time.monotonic() + self.delay
            while time.monotonic() < deadline:
                if receiver.is_cancelled():
                    self.saw_cancel.set()
                    return
                time.sleep(0.005)
            if self.error is not None:
                raise self.error
            for chunk in self.chunks:
                receiver.add_output(chunk)
            if self.flush:
                receiver.flush()
        finally:
            self.finished.set()


def test_execute_joins_pushed_chunks() -> None:
    transport = _ScriptedTransport([b"Physical ", b"density: ", b"420\n"])
    channel = CommandChannel(transport)

    output = asyncio.run(channel.execute(DEVICE, "  wm density  "))

    assert output == "Physical density: 420\n"
    assert transport.commands == ["wm density"]


def test_execute_completes_when_transport_forgets_to_flush() -> None:
    transport = _ScriptedTransport([b"1"], flush=False)
    channel = CommandChannel(transport)

    assert asyncio.run(channel.execute(DEVICE, "settings get global wifi_on")) == "1"


def test_execute_decodes_invalid_utf8_with_replacement() -> None:
    transport = _ScriptedTransport([b"ok\xff"])
    channel = CommandChannel(transport)

    assert asyncio.run(channel.execute(DEVICE, "echo")) == "ok�"


def test_execute_rejects_empty_command() -> None:
    channel = CommandChannel(_ScriptedTransport())
    with pytest.raises(TransportError, match="Remote command is empty."):
        asyncio.run(channel.execute(DEVICE, "   "))


def test_execute_wraps_unexpected_transport_errors() -> None:
    transport = _ScriptedTransport(error=RuntimeError("device not found"))
    channel = CommandChannel(transport)

    with pytest.raises(TransportError, match="device not found"):
        asyncio.run(channel.execute(DEVICE, "svc wifi enable"))


def test_execute_keeps_transport_error_type() -> None:
    original = TransportError("adb server went away")
    channel = CommandChannel(_ScriptedTransport(error=original))

    with pytest.raises(TransportError) as excinfo:
        asyncio.run(channel.execute(DEVICE, "svc wifi enable"))

    assert excinfo.value is original


def test_execute_times_out_and_ignores_late_flush() -> None:
    transport = _ScriptedTransport([b"late"], delay=10.0)
    channel = CommandChannel(transport, timeout=0.05)

    async def scenario() -> None:
        with pytest.raises(CommandTimeout):
            await channel.execute(DEVICE, "dumpsys display")
        # The worker notices the cancelled receiver and returns.
        await asyncio.sleep(0.1)

    asyncio.run(scenario())

    assert transport.saw_cancel.is_set()
    assert transport.finished.is_set()


def test_cancelling_the_caller_cancels_the_receiver() -> None:
    transport = _ScriptedTransport([b"never"], delay=10.0)
    channel = CommandChannel(transport, timeout=5.0)

    async def scenario() -> None:
        task = asyncio.create_task(channel.execute(DEVICE, "dumpsys window"))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())

    assert transport.saw_cancel.wait(1.0)
