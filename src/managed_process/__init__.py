"""Exactly-once lifecycle management for external command subprocesses."""

from __future__ import annotations

__version__ = "1.0.0"

from managed_process.capture import CaptureInvoker, CaptureResult, RunOptions
from managed_process.errors import ManagedProcessError, OperationTimeoutError, RegistrationError, SpawnError
from managed_process.handle import OperationHandle, SubprocessHandle, spawn_subprocess
from managed_process.kill_strategy import KillStrategy, SignalKillStrategy, TreeKillStrategy, select_kill_strategy
from managed_process.managed_operation import ErrorMeta, ManagedOperation, TerminalState, register_managed
from managed_process.process_manager import ProcessManager
from managed_process.process_utils import get_process_tree_info, kill_process_tree
from managed_process.registry import OperationKind, OperationRecord, OperationRegistry

__all__ = [
    "CaptureInvoker",
    "CaptureResult",
    "ErrorMeta",
    "KillStrategy",
    "ManagedOperation",
    "ManagedProcessError",
    "OperationHandle",
    "OperationKind",
    "OperationRecord",
    "OperationRegistry",
    "OperationTimeoutError",
    "ProcessManager",
    "RegistrationError",
    "RunOptions",
    "SignalKillStrategy",
    "SpawnError",
    "SubprocessHandle",
    "TerminalState",
    "TreeKillStrategy",
    "get_process_tree_info",
    "kill_process_tree",
    "register_managed",
    "select_kill_strategy",
    "spawn_subprocess",
]
