"""Lifecycle arbitration for a single spawned process.

Four independent triggers can end an operation:

- the deadline timer fires (timed out)
- the process exits and its pipes drain (closed)
- the process fails to spawn or errors (errored)
- the caller invokes ``stop()`` (stopped)

All four go through one "completed" latch. The first to take it runs the
cleanup body: cancel the timer, deregister (which updates the power signal),
kill where needed, then fire exactly one completion callback. Later triggers
are no-ops. Every trigger is dispatched by the event loop, so the latch is a
plain check-and-set with no lock.

Example::

    handle = spawn_subprocess("borg", ["list", repo])
    op = register_managed(
        registry,
        id="list-1",
        handle=handle,
        timeout_ms=30_000,
        on_stdout=chunks.append,
        on_exit=lambda code, sig: print("exit", code, sig),
        on_error=lambda err, meta: print("error", err, meta.timed_out),
    )
    ...
    op.stop()
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from managed_process.errors import OperationTimeoutError, ignore_and_log
from managed_process.kill_strategy import KillStrategy, select_kill_strategy
from managed_process.registry import OperationKind, OperationRegistry

if TYPE_CHECKING:
    from managed_process.handle import DataCallback, OperationHandle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ErrorMeta:
    """Extra information passed to ``on_error``."""

    timed_out: bool


ExitCallback = Callable[[int | None, str | None], None]
ErrorCallback = Callable[[BaseException, ErrorMeta], None]
StopCallback = Callable[[], None]


class TerminalState(enum.Enum):
    RUNNING = "running"
    TIMED_OUT = "timed_out"
    CLOSED = "closed"
    ERRORED = "errored"
    STOPPED = "stopped"


class StopHandle(Protocol):
    def stop(self) -> None: ...


class NullStopHandle:
    """Stop handle returned when registration was refused. Does nothing."""

    def stop(self) -> None:
        return None


def _valid_timeout(timeout_ms: float | None) -> bool:
    return isinstance(timeout_ms, (int, float)) and not isinstance(timeout_ms, bool) and timeout_ms > 0


class ManagedOperation:
    """One registered process and the state machine that retires it."""

    def __init__(
        self,
        registry: OperationRegistry,
        id: str,  # noqa: A002
        handle: OperationHandle,
        kind: OperationKind | str = OperationKind.PROCESS,
        timeout_ms: float | None = None,
        on_stdout: DataCallback | None = None,
        on_stderr: DataCallback | None = None,
        on_exit: ExitCallback | None = None,
        on_error: ErrorCallback | None = None,
        on_stop: StopCallback | None = None,
        kill_strategy: KillStrategy | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self.id = id
        self.handle = handle
        self.kind = kind
        self.timeout_ms = timeout_ms if _valid_timeout(timeout_ms) else None
        self._registry = registry
        self._on_stdout = on_stdout
        self._on_stderr = on_stderr
        self._on_exit = on_exit
        self._on_error = on_error
        self._on_stop = on_stop
        self._kill_strategy = kill_strategy if kill_strategy is not None else select_kill_strategy()
        self._loop = loop
        self._timer: asyncio.TimerHandle | None = None
        self._state = TerminalState.RUNNING

    def __repr__(self) -> str:
        return f"ManagedOperation(id={self.id!r}, state={self._state.value})"

    @property
    def state(self) -> TerminalState:
        return self._state

    @property
    def done(self) -> bool:
        return self._state is not TerminalState.RUNNING

    def start(self) -> bool:
        """Register, arm the deadline and wire the handle's notifications.

        Returns False if the registry refused the operation or a deadline was
        requested with no running event loop. Nothing is wired in that case.
        """
        loop: asyncio.AbstractEventLoop | None = None
        if self.timeout_ms is not None:
            # A deadline needs a loop; resolve it before touching the registry
            try:
                loop = self._loop if self._loop is not None else asyncio.get_running_loop()
            except RuntimeError:
                logger.warning("Ignoring registration of %s: timeout_ms needs a running event loop", self.id)
                return False

        if not self._registry.register(self.id, self.handle, self.kind):
            return False

        if loop is not None and self.timeout_ms is not None:
            self._timer = loop.call_later(self.timeout_ms / 1000, self._handle_timeout)

        if self._on_stdout is not None:
            self.handle.subscribe("stdout", self._guard_data("stdout", self._on_stdout))
        if self._on_stderr is not None:
            self.handle.subscribe("stderr", self._guard_data("stderr", self._on_stderr))
        self.handle.once_close(self._handle_close)
        self.handle.once_error(self._handle_error)
        return True

    def stop(self) -> None:
        """Kill the process and retire the operation. Safe to call repeatedly.

        Bookkeeping is complete when this returns; the OS process may still be
        dying.
        """
        if not self._acquire(TerminalState.STOPPED):
            return
        self._cancel_timer()
        self._kill_strategy.terminate(self.handle)
        self._deregister()
        if self._on_stop is not None:
            with ignore_and_log(f"on_stop callback for {self.id}"):
                self._on_stop()

    def _acquire(self, state: TerminalState) -> bool:
        if self._state is not TerminalState.RUNNING:
            return False
        self._state = state
        return True

    def _guard_data(self, stream: str, callback: DataCallback) -> DataCallback:
        def _forward(data: bytes) -> None:
            if self.done:
                return
            with ignore_and_log(f"{stream} callback for {self.id}"):
                callback(data)

        return _forward

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _deregister(self) -> None:
        with ignore_and_log(f"deregister {self.id}"):
            self._registry.deregister(self.id)

    def _notify_error(self, error: BaseException, timed_out: bool) -> None:
        if self._on_error is not None:
            with ignore_and_log(f"on_error callback for {self.id}"):
                self._on_error(error, ErrorMeta(timed_out=timed_out))

    def _handle_timeout(self) -> None:
        self._timer = None
        if not self._acquire(TerminalState.TIMED_OUT):
            return
        logger.warning("Killing timed out operation %s after %sms", self.id, self.timeout_ms)
        self._deregister()
        self._kill_strategy.terminate(self.handle)
        self._notify_error(OperationTimeoutError(self.timeout_ms or 0), timed_out=True)

    def _handle_close(self, code: int | None, signal_name: str | None) -> None:
        if not self._acquire(TerminalState.CLOSED):
            return
        self._cancel_timer()
        self._deregister()
        if self._on_exit is not None:
            with ignore_and_log(f"on_exit callback for {self.id}"):
                self._on_exit(code, signal_name)

    def _handle_error(self, error: BaseException) -> None:
        if not self._acquire(TerminalState.ERRORED):
            return
        self._cancel_timer()
        self._deregister()
        logger.debug("Operation %s errored: %s", self.id, error)
        self._notify_error(error, timed_out=False)


def register_managed(
    registry: OperationRegistry | None,
    id: str | None,  # noqa: A002
    handle: OperationHandle | None,
    kind: OperationKind | str = OperationKind.PROCESS,
    timeout_ms: float | None = None,
    on_stdout: DataCallback | None = None,
    on_stderr: DataCallback | None = None,
    on_exit: ExitCallback | None = None,
    on_error: ErrorCallback | None = None,
    on_stop: StopCallback | None = None,
    kill_strategy: KillStrategy | None = None,
) -> StopHandle:
    """Register ``handle`` under ``id`` and return its stop handle.

    A missing registry, id or handle, an unknown kind, an id that is already
    live, or a timeout requested outside a running event loop yields a harmless
    :class:`NullStopHandle` instead of an exception.
    """
    if registry is None or not id or handle is None:
        logger.warning("register_managed called without registry/id/handle (id=%r), ignoring", id)
        return NullStopHandle()

    operation = ManagedOperation(
        registry,
        id,
        handle,
        kind=kind,
        timeout_ms=timeout_ms,
        on_stdout=on_stdout,
        on_stderr=on_stderr,
        on_exit=on_exit,
        on_error=on_error,
        on_stop=on_stop,
        kill_strategy=kill_strategy,
    )
    if not operation.start():
        return NullStopHandle()
    return operation
