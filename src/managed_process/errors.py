"""Error types and the shared best-effort suppression helper.

None of these exceptions escape the public API. They are handed to
``on_error`` callbacks and flattened into ``CaptureResult.error``.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Iterator

logger = logging.getLogger(__name__)


class ManagedProcessError(Exception):
    """Base class for errors reported by managed operations."""


class SpawnError(ManagedProcessError):
    """The OS refused to create the process."""

    def __init__(self, command: str, cause: BaseException) -> None:
        self.command = command
        self.cause = cause
        super().__init__(f"Failed to spawn {command}: {cause}")


class OperationTimeoutError(ManagedProcessError, TimeoutError):
    """The operation exceeded its deadline and was killed."""

    def __init__(self, timeout_ms: float) -> None:
        self.timeout_ms = timeout_ms
        super().__init__(f"Process timeout after {timeout_ms:g}ms")


class RegistrationError(ManagedProcessError):
    """An operation was registered without an id or handle."""


@contextlib.contextmanager
def ignore_and_log(context: str, level: int = logging.WARNING) -> Iterator[None]:
    """Swallow and log any failure raised inside the block.

    Used only where a failure must not stop the exactly-once completion path:
    killing an already dead process, registry cleanup, power signal updates
    and user callbacks.
    """
    try:
        yield
    except Exception as e:  # noqa: BLE001
        logger.log(level, "%s failed: %s", context, e)
