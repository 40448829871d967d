"""In-memory operation handle for driving lifecycle races by hand."""

from __future__ import annotations


class FakeHandle:
    def __init__(self, pid: int | None = None) -> None:
        self.pid = pid
        self.kill_calls = 0
        self.stdin: list[bytes] = []
        self.stdin_closed = False
        self._data: dict[str, list] = {"stdout": [], "stderr": []}
        self._close: list = []
        self._error: list = []

    def subscribe(self, stream, callback) -> None:
        self._data[stream].append(callback)

    def once_close(self, callback) -> None:
        self._close.append(callback)

    def once_error(self, callback) -> None:
        self._error.append(callback)

    def kill(self) -> None:
        self.kill_calls += 1

    def write_stdin(self, data: bytes) -> None:
        self.stdin.append(data)

    def close_stdin(self) -> None:
        self.stdin_closed = True

    # Test drivers
    def emit_data(self, stream: str, data: bytes) -> None:
        for callback in list(self._data[stream]):
            callback(data)

    def emit_close(self, code: int | None = 0, signal_name: str | None = None) -> None:
        callbacks, self._close = self._close, []
        for callback in callbacks:
            callback(code, signal_name)

    def emit_error(self, error: BaseException) -> None:
        callbacks, self._error = self._error, []
        for callback in callbacks:
            callback(error)
