"""Run a command to completion and capture its output.

``CaptureInvoker.run()`` spawns the process, optionally feeds it stdin,
accumulates stdout and stderr separately, and resolves a future with a single
:class:`CaptureResult`. Failures are reported as data on the result, never
raised.

Example::

    invoker = CaptureInvoker(OperationRegistry())
    result = await invoker.run("borg", ["--version"], timeout_ms=15_000)
    if result.exit_code == 0:
        print(result.stdout)
"""

from __future__ import annotations

import asyncio
import codecs
import dataclasses
import functools
import itertools
import logging
import os
import uuid
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from managed_process.errors import ignore_and_log
from managed_process.handle import spawn_subprocess
from managed_process.managed_operation import ErrorMeta, NullStopHandle, StopHandle, register_managed
from managed_process.registry import OperationKind, OperationRegistry

if TYPE_CHECKING:
    from managed_process.handle import OperationHandle
    from managed_process.kill_strategy import KillStrategy

logger = logging.getLogger(__name__)

SpawnFunction = Callable[..., "OperationHandle"]
RegisterFunction = Callable[..., StopHandle]

STOPPED_MESSAGE = "Process stopped"
REFUSED_MESSAGE = "Operation was not registered"


@dataclass(frozen=True)
class CaptureResult:
    """Outcome of one invocation."""

    exit_code: int | None
    stdout: str
    stderr: str
    error: str | None
    timed_out: bool

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.exit_code == 0

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass(frozen=True)
class RunOptions:
    """Per-invocation options. ``env=None`` inherits the current environment.

    ``encoding`` applies to both the captured output and ``str`` stdin.
    """

    env: Mapping[str, str] | None = None
    cwd: str | Path | None = None
    encoding: str = "utf-8"
    timeout_ms: float | None = None
    stdin: str | bytes | None = None


class OperationIdFactory:
    """Generates ids that are unique across concurrent invocations."""

    def __init__(self, prefix: str = "proc") -> None:
        self._prefix = prefix
        self._counter = itertools.count(1)
        self._session = uuid.uuid4().hex[:8]

    def __call__(self) -> str:
        return f"{self._prefix}-{self._session}-{next(self._counter)}"


def _text_codec(encoding: str) -> codecs.CodecInfo | None:
    """Look up ``encoding``, rejecting unknown and bytes-to-bytes codecs."""
    try:
        info = codecs.lookup(encoding)
    except LookupError:
        logger.warning("Unknown encoding %r, using utf-8", encoding)
        return None
    if not getattr(info, "_is_text_encoding", True):
        logger.warning("%r is not a text encoding, using utf-8", encoding)
        return None
    return info


def encode_input(data: str | bytes, encoding: str = "utf-8") -> bytes:
    """Encode stdin text with ``encoding``, falling back to utf-8."""
    if isinstance(data, bytes):
        return data
    info = _text_codec(encoding)
    if info is not None:
        try:
            return data.encode(info.name)
        except UnicodeEncodeError as e:
            logger.warning("Could not encode stdin as %s, using utf-8: %s", info.name, e)
    return data.encode("utf-8", errors="replace")


class StreamDecoder:
    """Incremental decoder that degrades to lossy UTF-8 instead of raising."""

    def __init__(self, encoding: str = "utf-8") -> None:
        info = _text_codec(encoding)
        if info is None:
            self.encoding = "utf-8"
            self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        else:
            self.encoding = info.name
            self._decoder = info.incrementaldecoder()

    def decode(self, data: bytes) -> str:
        try:
            text = self._decoder.decode(data)
        except UnicodeDecodeError:
            pending, _ = self._decoder.getstate()
            self._decoder.reset()
            return (pending + data).decode("utf-8", errors="replace")
        except Exception as e:  # noqa: BLE001
            logger.debug("%s decoder failed, using utf-8: %s", self.encoding, e)
            return data.decode("utf-8", errors="replace")
        if not isinstance(text, str):
            return data.decode("utf-8", errors="replace")
        return text

    def flush(self) -> str:
        """Decode whatever partial sequence is still buffered."""
        try:
            text = self._decoder.decode(b"", final=True)
        except UnicodeDecodeError:
            pending, _ = self._decoder.getstate()
            self._decoder.reset()
            return pending.decode("utf-8", errors="replace")
        except Exception as e:  # noqa: BLE001
            logger.debug("%s decoder flush failed: %s", self.encoding, e)
            return ""
        return text if isinstance(text, str) else ""


class _OutputBuffer:
    def __init__(self, encoding: str) -> None:
        self._decoder = StreamDecoder(encoding)
        self._parts: list[str] = []

    def append(self, data: bytes) -> None:
        self._parts.append(self._decoder.decode(data))

    def getvalue(self) -> str:
        tail = self._decoder.flush()
        if tail:
            self._parts.append(tail)
        return "".join(part for part in self._parts if isinstance(part, str))


class CaptureInvoker:
    """Spawns commands as managed operations and captures their output."""

    def __init__(
        self,
        registry: OperationRegistry,
        kill_strategy: KillStrategy | None = None,
        spawn: SpawnFunction = spawn_subprocess,
        id_factory: Callable[[], str] | None = None,
        register: RegisterFunction | None = None,
    ) -> None:
        self._spawn = spawn
        self._id_factory = id_factory if id_factory is not None else OperationIdFactory()
        if register is None:
            register = functools.partial(register_managed, registry, kill_strategy=kill_strategy)
        self._register = register

    def run(
        self,
        program: str,
        args: Sequence[str] = (),
        options: RunOptions | None = None,
        **overrides: Any,
    ) -> asyncio.Future[CaptureResult]:
        """Start ``program args...`` and return a future for its result.

        Keyword ``overrides`` (``env``, ``cwd``, ``encoding``, ``timeout_ms``,
        ``stdin``) take precedence over ``options``. Must be called with an
        event loop running.
        """
        options = dataclasses.replace(options or RunOptions(), **overrides)
        loop = asyncio.get_running_loop()
        future: asyncio.Future[CaptureResult] = loop.create_future()
        stdout = _OutputBuffer(options.encoding)
        stderr = _OutputBuffer(options.encoding)

        def _resolve(exit_code: int | None, error: str | None, timed_out: bool) -> None:
            if future.done():
                return
            out, err = "", ""
            try:
                out, err = stdout.getvalue(), stderr.getvalue()
            except Exception as e:  # noqa: BLE001
                logger.warning("Could not assemble output of %s: %s", program, e)
            future.set_result(
                CaptureResult(
                    exit_code=exit_code,
                    stdout=out,
                    stderr=err,
                    error=error,
                    timed_out=timed_out,
                )
            )

        def _on_exit(code: int | None, signal_name: str | None) -> None:
            if signal_name is not None:
                logger.debug("%s terminated by %s", program, signal_name)
            _resolve(code, None, False)

        def _on_error(error: BaseException, meta: ErrorMeta) -> None:
            _resolve(None, str(error) or type(error).__name__, meta.timed_out)

        env = options.env if options.env is not None else os.environ
        try:
            handle = self._spawn(program, list(args), env=env, cwd=options.cwd or None)
        except (OSError, ValueError, RuntimeError) as e:
            logger.warning("Could not spawn %s: %s", program, e)
            _resolve(None, str(e), False)
            return future

        if options.stdin is not None:
            data = encode_input(options.stdin, options.encoding)
            with ignore_and_log(f"stdin write to {program}", level=logging.DEBUG):
                handle.write_stdin(data)
                handle.close_stdin()

        stop_handle = self._register(
            id=self._id_factory(),
            handle=handle,
            kind=OperationKind.PROCESS,
            timeout_ms=options.timeout_ms,
            on_stdout=stdout.append,
            on_stderr=stderr.append,
            on_exit=_on_exit,
            on_error=_on_error,
            on_stop=lambda: _resolve(None, STOPPED_MESSAGE, False),
        )
        if isinstance(stop_handle, NullStopHandle):
            # Nothing tracks the process, so it must not outlive this call
            with ignore_and_log(f"kill unregistered {program}", level=logging.DEBUG):
                handle.kill()
            _resolve(None, REFUSED_MESSAGE, False)
        return future
