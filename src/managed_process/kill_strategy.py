"""Platform specific termination of operation handles.

A strategy is selected once via :func:`select_kill_strategy` and injected into
the operations that need it, instead of branching on the platform at each call
site.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Protocol

from managed_process.errors import ignore_and_log
from managed_process.process_utils import kill_process_tree

if TYPE_CHECKING:
    from managed_process.handle import OperationHandle

logger = logging.getLogger(__name__)


class KillStrategy(Protocol):
    """Best-effort, idempotent termination of a handle. Never raises."""

    def terminate(self, handle: OperationHandle | None) -> None: ...


class SignalKillStrategy:
    """Send a termination signal to the immediate process only."""

    def terminate(self, handle: OperationHandle | None) -> None:
        if handle is None:
            return
        with ignore_and_log(f"kill pid={handle.pid}", level=logging.DEBUG):
            handle.kill()


class TreeKillStrategy(SignalKillStrategy):
    """Signal the process, then force kill its entire descendant tree.

    Needed where descendants outlive their parent (Windows), e.g. a tool
    launched through an intermediate shell or WSL layer.
    """

    def terminate(self, handle: OperationHandle | None) -> None:
        if handle is None:
            return
        pid = handle.pid
        if pid is not None:
            # Fire and forget; an already exited tree is not an error
            with ignore_and_log(f"tree kill pid={pid}", level=logging.DEBUG):
                kill_process_tree(pid)
        super().terminate(handle)


def select_kill_strategy(platform: str | None = None) -> KillStrategy:
    """Pick the strategy for ``platform`` (defaults to ``sys.platform``)."""
    platform = platform if platform is not None else sys.platform
    if platform == "win32":
        return TreeKillStrategy()
    return SignalKillStrategy()
