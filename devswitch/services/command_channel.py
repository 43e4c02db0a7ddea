from __future__ import annotations

import asyncio
import logging
import threading
from typing import TYPE_CHECKING

from devswitch.domain.models import Device, DevSwitchError

if TYPE_CHECKING:
    from devswitch.services.transport import DeviceTransport

_LOGGER = logging.getLogger(__name__)

COMMAND_TIMEOUT_SECONDS = 10.0


class CommandChannelError(DevSwitchError):
    """Raised when a remote command cannot be completed."""


class CommandTimeout(CommandChannelError):
    """Raised when no output was flushed within the command timeout."""


class CommandCancelled(CommandChannelError):
    """Raised when the transport aborted the command on request."""


class TransportError(CommandChannelError):
    """Raised when the underlying transport fails."""


class _FutureReceiver:
    """Collects pushed output chunks and resolves one future on flush.

    Called from a transport thread; every resolution is marshalled back onto
    the owning loop and happens at most once.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, future: asyncio.Future[str]) -> None:
        self._loop = loop
        self._future = future
        self._chunks: list[bytes] = []
        self._lock = threading.Lock()
        self._cancelled = threading.Event()
        self._resolved = False

    def add_output(self, data: bytes) -> None:
        if not data or self._cancelled.is_set():
            return
        with self._lock:
            self._chunks.append(bytes(data))

    def flush(self) -> None:
        with self._lock:
            if self._resolved:
                return
            self._resolved = True
            text = b"".join(self._chunks).decode("utf-8", errors="replace")
        self._resolve(result=text)

    def fail(self, exc: BaseException) -> None:
        with self._lock:
            if self._resolved:
                return
            self._resolved = True
        self._resolve(error=exc)

    def cancel(self) -> None:
        self._cancelled.set()

    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def _resolve(self, *, result: str | None = None, error: BaseException | None = None) -> None:
        def _apply() -> None:
            if self._future.done():
                return
            if error is not None:
                self._future.set_exception(error)
            else:
                self._future.set_result(result or "")

        try:
            self._loop.call_soon_threadsafe(_apply)
        except RuntimeError:
            # Loop already closed; nobody is waiting any more.
            return


class CommandChannel:
    """Runs shell commands on a device and awaits their complete output.

    The transport call is blocking and runs on the loop's default executor.
    Each call has its own timeout, independent of any polling cadence.
    """

    def __init__(
        self,
        transport: "DeviceTransport",
        *,
        timeout: float = COMMAND_TIMEOUT_SECONDS,
    ) -> None:
        self.transport = transport
        self.timeout = timeout

    async def execute(self, device: Device, command: str) -> str:
        text = command.strip()
        if not text:
            raise TransportError("Remote command is empty.")

        loop = asyncio.get_running_loop()
        future: asyncio.Future[str] = loop.create_future()
        receiver = _FutureReceiver(loop, future)

        def _run() -> None:
            try:
                self.transport.execute_command(device, text, receiver, self.timeout)
            except Exception as exc:  # noqa: BLE001
                if isinstance(exc, CommandChannelError):
                    receiver.fail(exc)
                else:
                    receiver.fail(
                        TransportError(f"Failed to run '{text}' on {device.serial}: {exc}")
                    )
                return
            if receiver.is_cancelled():
                receiver.fail(CommandCancelled(f"Command cancelled: {text}"))
            else:
                # Transports that forget to flush still complete the call.
                receiver.flush()

        worker = loop.run_in_executor(None, _run)
        try:
            return await asyncio.wait_for(future, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            receiver.cancel()
            _LOGGER.debug("Command timed out on %s: %s", device.serial, text)
            raise CommandTimeout(
                f"No output from {device.serial} within {self.timeout:g}s: {text}"
            ) from exc
        except asyncio.CancelledError:
            receiver.cancel()
            raise
        finally:
            if not future.done():
                future.cancel()
            worker.add_done_callback(_consume_worker_result)


def _consume_worker_result(worker: asyncio.Future[None]) -> None:
    if worker.cancelled():
        return
    exc = worker.exception()
    if exc is not None:
        _LOGGER.debug("Transport worker finished with %r", exc)
