"""Facade wiring a registry, kill strategy and capture invoker together.

The host creates one ``ProcessManager`` for the application runtime, passing
the function that toggles its sleep blocker::

    manager = ProcessManager(power_signal=update_power_blocker)
    result = await manager.run("borg", ["info", repo], timeout_ms=60_000)
    manager.stop_all()  # on shutdown
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from managed_process.capture import CaptureInvoker, CaptureResult, RunOptions, SpawnFunction
from managed_process.errors import ignore_and_log
from managed_process.handle import spawn_subprocess
from managed_process.kill_strategy import KillStrategy, select_kill_strategy
from managed_process.managed_operation import (
    ErrorCallback,
    ErrorMeta,
    ExitCallback,
    ManagedOperation,
    StopCallback,
    StopHandle,
    register_managed,
)
from managed_process.registry import OperationKind, OperationRegistry, PowerSignal

if TYPE_CHECKING:
    import asyncio

    from managed_process.handle import DataCallback, OperationHandle

logger = logging.getLogger(__name__)


class ProcessManager:
    """Owns the process-wide registry and hands out managed operations."""

    def __init__(
        self,
        power_signal: PowerSignal | None = None,
        registry: OperationRegistry | None = None,
        kill_strategy: KillStrategy | None = None,
        spawn: SpawnFunction = spawn_subprocess,
    ) -> None:
        self.registry = registry if registry is not None else OperationRegistry(power_signal)
        self.kill_strategy = kill_strategy if kill_strategy is not None else select_kill_strategy()
        # Live operations started through this manager, for stop-by-id
        self._operations: dict[str, ManagedOperation] = {}
        self._invoker = CaptureInvoker(
            self.registry,
            kill_strategy=self.kill_strategy,
            spawn=spawn,
            register=self.register,
        )

    def register(
        self,
        id: str | None,  # noqa: A002
        handle: OperationHandle | None,
        kind: OperationKind | str = OperationKind.PROCESS,
        timeout_ms: float | None = None,
        on_stdout: DataCallback | None = None,
        on_stderr: DataCallback | None = None,
        on_exit: ExitCallback | None = None,
        on_error: ErrorCallback | None = None,
        on_stop: StopCallback | None = None,
    ) -> StopHandle:
        """Track ``handle`` under ``id`` until it exits, errors, times out or is stopped."""

        def _forget() -> None:
            if id is not None:
                self._operations.pop(id, None)

        def _exit(code: int | None, signal_name: str | None) -> None:
            _forget()
            if on_exit is not None:
                on_exit(code, signal_name)

        def _error(error: BaseException, meta: ErrorMeta) -> None:
            _forget()
            if on_error is not None:
                on_error(error, meta)

        def _stop() -> None:
            _forget()
            if on_stop is not None:
                on_stop()

        stop_handle = register_managed(
            self.registry,
            id=id,
            handle=handle,
            kind=kind,
            timeout_ms=timeout_ms,
            on_stdout=on_stdout,
            on_stderr=on_stderr,
            on_exit=_exit,
            on_error=_error,
            on_stop=_stop,
            kill_strategy=self.kill_strategy,
        )
        if id and isinstance(stop_handle, ManagedOperation):
            self._operations[id] = stop_handle
        return stop_handle

    def run(
        self,
        program: str,
        args: Sequence[str] = (),
        options: RunOptions | None = None,
        **overrides: Any,
    ) -> asyncio.Future[CaptureResult]:
        """Run a command to completion; see :meth:`CaptureInvoker.run`."""
        return self._invoker.run(program, args, options, **overrides)

    def kill_child(self, handle: OperationHandle | None) -> None:
        """Terminate ``handle`` (and its tree where the platform needs it)."""
        self.kill_strategy.terminate(handle)

    def stop_tracked_entry(self, entry: Any) -> None:
        """Stop whatever is tracked for an operation.

        Real handles go through the kill strategy. Placeholder objects that
        only have a ``kill()`` method get it called. Anything else is ignored.
        """
        if entry is None:
            return
        if hasattr(entry, "pid"):
            self.kill_child(entry)
            return
        kill = getattr(entry, "kill", None)
        if callable(kill):
            with ignore_and_log("placeholder kill", level=logging.DEBUG):
                kill()

    def stop(self, id: str) -> bool:  # noqa: A002
        """Stop the live operation ``id``. Returns False if nothing is running under it."""
        operation = self._operations.get(id)
        if operation is not None:
            operation.stop()
            return True
        record = self.registry.get(id)
        if record is None:
            return False
        # Registered on the registry directly, not through this manager
        self.stop_tracked_entry(record.handle)
        self.registry.deregister(id)
        return True

    def stop_all(self) -> int:
        """Stop every live operation. Returns how many were stopped."""
        stopped = sum(1 for op_id in self.registry.ids() if self.stop(op_id))
        if stopped:
            logger.info("Stopped %d active operation(s)", stopped)
        return stopped

    def is_busy(self) -> bool:
        return not self.registry.is_empty()
