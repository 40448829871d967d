"""Operation handles: the minimal surface a managed operation needs from a process.

A handle exposes data subscriptions for stdout/stderr, a one-shot "closed"
notification, a one-shot "errored" notification and a kill switch. The
:class:`SubprocessHandle` implementation drives an OS process through
``loop.subprocess_exec`` so every notification is dispatched by the event loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import subprocess
import sys
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Literal, Protocol

from managed_process.errors import SpawnError

logger = logging.getLogger(__name__)

Stream = Literal["stdout", "stderr"]
DataCallback = Callable[[bytes], None]
CloseCallback = Callable[[int | None, str | None], None]
ErrorCallback = Callable[[BaseException], None]

_STREAM_FDS: dict[int, Stream] = {1: "stdout", 2: "stderr"}


class OperationHandle(Protocol):
    """Reference to a spawned process as seen by the lifecycle machinery."""

    pid: int | None

    def subscribe(self, stream: Stream, callback: DataCallback) -> None: ...

    def once_close(self, callback: CloseCallback) -> None: ...

    def once_error(self, callback: ErrorCallback) -> None: ...

    def kill(self) -> None: ...

    def write_stdin(self, data: bytes) -> None: ...

    def close_stdin(self) -> None: ...


def _signal_name(returncode: int) -> str:
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return f"SIG{-returncode}"


class _HandleProtocol(asyncio.SubprocessProtocol):
    """Forwards transport events to the owning handle."""

    def __init__(self, handle: SubprocessHandle) -> None:
        self._handle = handle

    def pipe_data_received(self, fd: int, data: bytes | str) -> None:
        self._handle._dispatch_data(fd, data)  # noqa: SLF001

    def process_exited(self) -> None:
        self._handle._on_process_exited()  # noqa: SLF001

    def connection_lost(self, exc: Exception | None) -> None:
        self._handle._on_connection_lost(exc)  # noqa: SLF001


class SubprocessHandle:
    """Handle over an asyncio subprocess transport.

    The handle is usable as soon as it is created: stdin writes and kill
    requests issued before the OS spawn completes are queued and applied once
    the transport exists. A spawn failure is delivered through ``once_error``.
    "Closed" fires only after the process exited and its pipes drained, so all
    data notifications precede it.
    """

    def __init__(self, command: Sequence[str]) -> None:
        self.command = list(command)
        self.pid: int | None = None
        self._transport: asyncio.SubprocessTransport | None = None
        self._data_callbacks: dict[Stream, list[DataCallback]] = {"stdout": [], "stderr": []}
        self._close_callbacks: list[CloseCallback] = []
        self._error_callbacks: list[ErrorCallback] = []
        self._pending_stdin: list[bytes] = []
        self._stdin_close_requested = False
        self._kill_requested = False
        self._closed = False
        self._errored = False
        self._spawn_task: asyncio.Task[None] | None = None

    def __repr__(self) -> str:
        return f"SubprocessHandle(pid={self.pid}, command={subprocess.list2cmdline(self.command)!r})"

    # Subscription API
    def subscribe(self, stream: Stream, callback: DataCallback) -> None:
        self._data_callbacks[stream].append(callback)

    def once_close(self, callback: CloseCallback) -> None:
        self._close_callbacks.append(callback)

    def once_error(self, callback: ErrorCallback) -> None:
        self._error_callbacks.append(callback)

    @property
    def finished(self) -> bool:
        return self._closed or self._errored

    # Control API
    def kill(self) -> None:
        """Send a termination signal. No-op once the process is gone."""
        if self.finished:
            return
        if self._transport is None:
            self._kill_requested = True
            return
        with contextlib.suppress(ProcessLookupError):
            self._transport.terminate()

    def write_stdin(self, data: bytes) -> None:
        if self._transport is None:
            self._pending_stdin.append(data)
            return
        pipe = self._transport.get_pipe_transport(0)
        if pipe is not None and not pipe.is_closing():
            pipe.write(data)  # type: ignore[attr-defined]

    def close_stdin(self) -> None:
        if self._transport is None:
            self._stdin_close_requested = True
            return
        pipe = self._transport.get_pipe_transport(0)
        if pipe is not None and not pipe.is_closing():
            pipe.close()

    # Spawning
    def start(
        self,
        env: Mapping[str, str] | None = None,
        cwd: str | Path | None = None,
    ) -> None:
        """Schedule the OS spawn on the running loop."""
        loop = asyncio.get_running_loop()
        self._spawn_task = loop.create_task(self._spawn(loop, env, cwd))

    async def _spawn(
        self,
        loop: asyncio.AbstractEventLoop,
        env: Mapping[str, str] | None,
        cwd: str | Path | None,
    ) -> None:
        kwargs: dict[str, object] = {}
        if sys.platform == "win32":
            kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW
        try:
            transport, _ = await loop.subprocess_exec(
                lambda: _HandleProtocol(self),
                *self.command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=dict(env) if env is not None else None,
                cwd=str(cwd) if cwd is not None else None,
                **kwargs,
            )
        except (OSError, ValueError) as e:
            self._emit_error(SpawnError(subprocess.list2cmdline(self.command), e))
            return

        self._transport = transport
        self.pid = transport.get_pid()
        logger.debug("Spawned pid=%s: %s", self.pid, self.command)

        for chunk in self._pending_stdin:
            self.write_stdin(chunk)
        self._pending_stdin.clear()
        if self._stdin_close_requested:
            self.close_stdin()
        if self._kill_requested:
            self.kill()

    # Transport events
    def _dispatch_data(self, fd: int, data: bytes | str) -> None:
        stream = _STREAM_FDS.get(fd)
        if stream is None:
            return
        if isinstance(data, str):
            data = data.encode()
        for callback in list(self._data_callbacks[stream]):
            callback(data)

    def _on_process_exited(self) -> None:
        # Unblock the stdin pipe so the transport can finish
        if self._transport is not None:
            pipe = self._transport.get_pipe_transport(0)
            if pipe is not None and not pipe.is_closing():
                pipe.close()

    def _on_connection_lost(self, exc: Exception | None) -> None:
        if self.finished:
            return
        self._closed = True
        transport = self._transport
        returncode = transport.get_returncode() if transport is not None else None
        if transport is not None:
            transport.close()
        if exc is not None:
            logger.debug("Transport for pid=%s lost with error: %s", self.pid, exc)

        code: int | None = returncode
        signal_name: str | None = None
        if returncode is not None and returncode < 0 and os.name != "nt":
            code, signal_name = None, _signal_name(returncode)

        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            callback(code, signal_name)

    def _emit_error(self, error: BaseException) -> None:
        if self.finished:
            return
        self._errored = True
        callbacks, self._error_callbacks = self._error_callbacks, []
        for callback in callbacks:
            callback(error)


def spawn_subprocess(
    program: str,
    args: Sequence[str] = (),
    env: Mapping[str, str] | None = None,
    cwd: str | Path | None = None,
) -> SubprocessHandle:
    """Create a handle for ``program args...`` and start spawning it.

    Must be called from a coroutine or callback running on an event loop.
    """
    handle = SubprocessHandle([program, *args])
    handle.start(env=env, cwd=cwd)
    return handle
