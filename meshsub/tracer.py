"""Event tracers that buffer trace events and write them out asynchronously."""

from __future__ import annotations

import base64
import enum
import json
import logging
import threading
from collections.abc import Mapping
from typing import IO, Any, Union
import os

_log = logging.getLogger("meshsub.tracer")

TRACE_BUFFER_SIZE = 1 << 16
MIN_TRACE_BATCH_SIZE = 16


class RejectReason(str, enum.Enum):
    """Reasons a message can be rejected."""

    BLACKLISTED_PEER = "blacklisted peer"
    BLACKLISTED_SOURCE = "blacklisted source"
    MISSING_SIGNATURE = "missing signature"
    UNEXPECTED_SIGNATURE = "unexpected signature"
    UNEXPECTED_AUTH_INFO = "unexpected auth info"
    INVALID_SIGNATURE = "invalid signature"
    VALIDATION_QUEUE_FULL = "validation queue full"
    VALIDATION_THROTTLED = "validation throttled"
    VALIDATION_FAILED = "validation failed"
    VALIDATION_IGNORED = "validation ignored"
    SELF_ORIGIN = "self originated message"


class BasicTracer:
    """Collects trace events in a buffer until a consumer takes them.

    A lossy tracer drops events once more than ``buffer_size`` are waiting.
    Events traced after :meth:`close` are ignored.
    """

    def __init__(self, lossy: bool = False, buffer_size: int = TRACE_BUFFER_SIZE) -> None:
        self._cond = threading.Condition()
        self._buffer: list[Any] = []
        self._lossy = lossy
        self._buffer_size = buffer_size
        self._closed = False

    def trace(self, event: Any) -> None:
        """Buffer ``event`` and wake the consumer."""
        with self._cond:
            if self._closed:
                return
            if self._lossy and len(self._buffer) > self._buffer_size:
                _log.debug("trace buffer overflow; dropping trace event")
            else:
                self._buffer.append(event)
            self._cond.notify_all()

    def close(self) -> None:
        """Stop accepting events."""
        with self._cond:
            if not self._closed:
                self._closed = True
                self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._buffer)

    def __enter__(self) -> "BasicTracer":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _take(self) -> tuple[list[Any], bool]:
        """Wait for events or closing; return the buffered events and the closed flag."""
        with self._cond:
            self._cond.wait_for(lambda: self._buffer or self._closed)
            batch, self._buffer = self._buffer, []
            return batch, self._closed


def _encode(obj: Any) -> Any:
    if isinstance(obj, (bytes, bytearray)):
        return base64.b64encode(bytes(obj)).decode("ascii")
    if isinstance(obj, enum.Enum):
        return obj.value
    raise TypeError(f"cannot encode {type(obj).__name__} in a trace event")


class JSONTracer(BasicTracer):
    """Writes trace events to a text stream as newline-delimited JSON.

    Events are mappings; byte strings are written in base64. The stream is
    closed when the tracer is closed.
    """

    def __init__(self, stream: IO[str]) -> None:
        super().__init__()
        self._stream = stream
        self._writer = threading.Thread(target=self._run, name="json-tracer", daemon=True)
        self._writer.start()

    def trace(self, event: Mapping[str, Any]) -> None:
        """Buffer a copy of ``event``; raise TypeError if it is not a mapping."""
        if not isinstance(event, Mapping):
            raise TypeError("trace events must be mappings")
        super().trace(dict(event))

    def close(self) -> None:
        """Flush the pending events, close the stream and stop the writer."""
        super().close()
        self._writer.join()

    def _run(self) -> None:
        while True:
            batch, closing = self._take()
            for event in batch:
                try:
                    line = json.dumps(event, separators=(",", ":"), default=_encode)
                    self._stream.write(line + "\n")
                except (TypeError, ValueError, OSError) as err:
                    _log.warning("error writing event trace: %s", err)
            if closing:
                self._stream.close()
                return


def open_json_tracer(path: Union[str, os.PathLike], mode: str = "w") -> JSONTracer:
    """Open ``path`` with ``mode`` ('w' truncates, 'a' appends, 'x' must not exist)."""
    if mode not in ("w", "a", "x"):
        raise ValueError(f"unsupported file mode {mode!r}")
    stream = open(path, mode, encoding="utf-8")
    return JSONTracer(stream)