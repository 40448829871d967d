"""Registry of live operations.

Pure storage: two mutation points and one predicate. The registry fires an
injected power signal whenever it flips between empty and non-empty, so the
host can hold off system sleep while anything is running. It has no timing
logic of its own.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING

from managed_process.errors import RegistrationError, ignore_and_log
from managed_process.process_utils import get_process_tree_info

if TYPE_CHECKING:
    from managed_process.handle import OperationHandle

logger = logging.getLogger(__name__)

PowerSignal = Callable[[], None]


class OperationKind(str, enum.Enum):
    PROCESS = "process"
    MOUNT = "mount"


@dataclass(frozen=True)
class OperationRecord:
    id: str
    kind: OperationKind
    handle: OperationHandle


class OperationRegistry:
    """Mapping of operation id to its live handle.

    Each managed operation owns exactly one entry, so operations never contend
    for the same key.
    """

    def __init__(self, power_signal: PowerSignal | None = None) -> None:
        self._records: dict[str, OperationRecord] = {}
        self._power_signal = power_signal

    def register(
        self,
        id: str | None,  # noqa: A002
        handle: OperationHandle | None,
        kind: OperationKind | str = OperationKind.PROCESS,
    ) -> bool:
        """Store a record. Returns False, without raising, on a missing id or handle or an id already live."""
        if not id or handle is None:
            logger.warning("Ignoring registration: %s", RegistrationError(f"id={id!r} handle={handle!r}"))
            return False
        if id in self._records:
            logger.warning("Ignoring registration: id %r is already live", id)
            return False
        try:
            kind = OperationKind(kind)
        except ValueError:
            logger.warning("Ignoring registration of %s: unknown kind %r", id, kind)
            return False
        was_empty = self.is_empty()
        self._records[id] = OperationRecord(id=id, kind=kind, handle=handle)
        if was_empty:
            self._notify_power_signal()
        return True

    def deregister(self, id: str) -> None:  # noqa: A002
        """Remove a record. Unknown ids are ignored."""
        if self._records.pop(id, None) is not None and self.is_empty():
            self._notify_power_signal()

    def is_empty(self) -> bool:
        return not self._records

    def get(self, id: str) -> OperationRecord | None:  # noqa: A002
        return self._records.get(id)

    def ids(self) -> list[str]:
        return list(self._records)

    def count(self, kind: OperationKind | str | None = None) -> int:
        if kind is None:
            return len(self._records)
        kind = OperationKind(kind)
        return sum(1 for record in self._records.values() if record.kind is kind)

    def list_active(self) -> list[OperationRecord]:
        return list(self._records.values())

    def __contains__(self, id: object) -> bool:  # noqa: A002
        return id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[OperationRecord]:
        return iter(self.list_active())

    def dump_active(self) -> None:
        """Log every live operation along with its process tree."""
        active = self.list_active()
        if not active:
            logger.info("No active operations")
            return

        logger.warning("Active operations (%d):", len(active))
        for idx, record in enumerate(active, 1):
            pid = getattr(record.handle, "pid", None)
            tree = get_process_tree_info(pid) if pid is not None else "not spawned"
            logger.warning("  %d. id=%s kind=%s pid=%s\n%s", idx, record.id, record.kind.value, pid, tree)

    def _notify_power_signal(self) -> None:
        if self._power_signal is None:
            return
        with ignore_and_log("power signal update"):
            self._power_signal()
