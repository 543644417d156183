import logging
from datetime import datetime
from typing import Callable, Iterable, Iterator, List, Optional

from ..models.bot import LogEntry
from .status import parse_engine_time

logger = logging.getLogger(__name__)


class LogReader:
    """
    Line-oriented reader over a stream of raw log chunks.

    Wraps whatever the backend hands out (an engine log stream, an open file)
    and must be closed by the caller, or used as a context manager.
    """

    def __init__(self, chunks: Iterable[bytes], stream: Optional[str] = None,
                 timestamps: bool = False, on_close: Optional[Callable[[], None]] = None):
        self._chunks = chunks
        self._stream = stream
        self._timestamps = timestamps
        self._on_close = on_close
        self._closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def __iter__(self) -> Iterator[LogEntry]:
        return self.entries()

    def lines(self) -> Iterator[str]:
        buffer = b""
        for chunk in self._chunks:
            if self._closed:
                return
            if isinstance(chunk, str):
                chunk = chunk.encode()
            buffer += chunk
            while b"\n" in buffer:
                line, buffer = buffer.split(b"\n", 1)
                yield line.decode("utf-8", errors="replace").rstrip("\r")
        if buffer:
            yield buffer.decode("utf-8", errors="replace").rstrip("\r")

    def entries(self) -> Iterator[LogEntry]:
        for line in self.lines():
            timestamp: Optional[datetime] = None
            message = line
            if self._timestamps:
                prefix, _, rest = line.partition(" ")
                timestamp = parse_engine_time(prefix)
                if timestamp is not None:
                    message = rest
            yield LogEntry(timestamp=timestamp, stream=self._stream, message=message)

    def read_all(self) -> str:
        lines: List[str] = list(self.lines())
        return "\n".join(lines)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        closer = self._on_close or getattr(self._chunks, "close", None)
        if closer is not None:
            try:
                closer()
            except Exception as e:
                logger.debug(f"Error closing log stream: {e}")
