"""Newline framing for the capture process output and the pipe reader thread."""

from __future__ import annotations

import logging
import os
import queue
import threading
from typing import BinaryIO, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_CAPACITY = 10240
DEFAULT_READ_CHUNK_BYTES = 65536


class StreamReassembler:
    """Split arbitrarily chunked bytes into newline-terminated records."""

    def __init__(self, delimiter: bytes = b"\n") -> None:
        if len(delimiter) != 1:
            raise ValueError("delimiter must be a single byte")
        self._delimiter = delimiter
        self._pending = bytearray()

    @property
    def pending(self) -> bytes:
        """Bytes of the record that has not been terminated yet."""
        return bytes(self._pending)

    def feed(self, data: bytes) -> List[bytes]:
        if not data:
            return []
        self._pending += data
        records: List[bytes] = []
        start = 0
        while True:
            pos = self._pending.find(self._delimiter, start)
            if pos < 0:
                break
            if pos > start:
                records.append(bytes(self._pending[start:pos]))
            start = pos + 1
        if start:
            del self._pending[:start]
        return records


class PipeReader(threading.Thread):
    """Move raw chunks from a pipe into a bounded queue.

    ``put`` blocks while the queue is full, so a slow consumer stalls this
    thread, the pipe fills up and the writing process blocks in turn. A
    ``None`` sentinel is queued once the pipe reaches end of file.
    """

    def __init__(
        self,
        stream: BinaryIO,
        chunks: "queue.Queue[Optional[bytes]]",
        *,
        chunk_size: int = DEFAULT_READ_CHUNK_BYTES,
        name: str = "capture-reader",
    ) -> None:
        super().__init__(name=name, daemon=True)
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self._stream = stream
        self._chunks = chunks
        self._chunk_size = chunk_size
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        fd = self._stream.fileno()
        try:
            while not self._stop_event.is_set():
                try:
                    chunk = os.read(fd, self._chunk_size)
                except InterruptedError:
                    continue
                except OSError as exc:
                    if not self._stop_event.is_set():
                        logger.error("reading capture output failed: %s", exc)
                    break
                if not chunk:
                    break
                self._chunks.put(chunk)
        finally:
            self._chunks.put(None)


__all__ = [
    "DEFAULT_QUEUE_CAPACITY",
    "DEFAULT_READ_CHUNK_BYTES",
    "PipeReader",
    "StreamReassembler",
]
