"""Per-transaction change buffers that spill to disk once they grow large."""

from __future__ import annotations

import itertools
import json
import logging
import os
import re
import weakref
from pathlib import Path
from typing import Iterator, List, Optional

from ..entities import ChangeRecord
from ..errors import BufferDrained

logger = logging.getLogger(__name__)

DEFAULT_SPILL_THRESHOLD = 5000
DEFAULT_BATCH_SIZE = 1000


def _remove_spill_file(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except OSError as exc:
        logger.debug("unable to remove spill file %s: %s", path, exc)


def buffer_identifier(connection_name: str, xid: int) -> str:
    return f"{connection_name}.{xid}"


class TransactionBuffer:
    """Append-only store of change records for one in-progress transaction.

    Records stay in memory until ``spill_threshold`` is reached, at which point
    the in-memory batch is appended to ``<directory>/<identifier>`` as JSON
    lines. Draining yields the spilled records first and the in-memory tail
    afterwards, preserving arrival order.
    """

    def __init__(
        self,
        xid: int,
        identifier: str,
        directory: Path | str,
        *,
        spill_threshold: int = DEFAULT_SPILL_THRESHOLD,
    ) -> None:
        if spill_threshold <= 0:
            raise ValueError("spill_threshold must be positive")
        self.xid = xid
        self.identifier = identifier
        self._path = Path(directory) / identifier
        self._spill_threshold = spill_threshold
        self._records: List[ChangeRecord] = []
        self._spilled = 0
        self._drained = False
        self._finalizer: Optional[weakref.finalize] = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def spilled(self) -> int:
        """Number of records written to the backing file so far."""
        return self._spilled

    @property
    def resident(self) -> int:
        return len(self._records)

    def __len__(self) -> int:
        return self._spilled + len(self._records)

    def push(self, record: ChangeRecord) -> None:
        if self._drained:
            raise BufferDrained(f"transaction {self.xid} buffer already drained")
        self._records.append(record)
        if len(self._records) >= self._spill_threshold:
            self._spill()

    def drain(self) -> Iterator[ChangeRecord]:
        """Yield every buffered record once, in arrival order."""
        if self._drained:
            raise BufferDrained(f"transaction {self.xid} buffer already drained")
        self._drained = True
        return self._iter_records()

    def drain_batches(
        self, batch_size: int = DEFAULT_BATCH_SIZE
    ) -> Iterator[List[ChangeRecord]]:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        records = self.drain()
        return iter(lambda: list(itertools.islice(records, batch_size)), [])

    def close(self) -> None:
        """Drop in-memory records and delete the backing file, if any."""
        self._records = []
        if self._finalizer is not None:
            self._finalizer()
            self._finalizer = None

    def __enter__(self) -> "TransactionBuffer":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def _iter_records(self) -> Iterator[ChangeRecord]:
        if self._spilled:
            with self._path.open("r", encoding="utf-8") as handle:
                for line in handle:
                    line = line.rstrip("\n")
                    if not line:
                        continue
                    yield ChangeRecord.from_dict(json.loads(line))
        records, self._records = self._records, []
        yield from records

    def _spill(self) -> None:
        payload = "".join(
            json.dumps(record.to_dict()) + "\n"
            for record in self._records
        )
        with self._open_for_append() as handle:
            handle.write(payload)
        self._spilled += len(self._records)
        logger.debug(
            "transaction %s spilled %d records to %s",
            self.xid,
            len(self._records),
            self._path,
        )
        self._records = []

    def _open_for_append(self):
        if self._finalizer is not None:
            return self._path.open("a", encoding="utf-8")
        flags = os.O_WRONLY | os.O_CREAT | os.O_EXCL | os.O_APPEND
        try:
            fd = os.open(self._path, flags, 0o600)
        except FileExistsError:
            logger.warning(
                "discarding stale spill file %s for transaction %s",
                self._path,
                self.xid,
            )
            self._path.unlink()
            fd = os.open(self._path, flags, 0o600)
        self._finalizer = weakref.finalize(self, _remove_spill_file, self._path)
        return os.fdopen(fd, "a", encoding="utf-8")


_ORPHAN_SUFFIX = re.compile(r"^\d+$")


def purge_orphaned_buffers(directory: Path | str, connection_name: str) -> int:
    """Remove spill files an earlier process left behind for ``connection_name``."""
    root = Path(directory)
    if not root.is_dir():
        return 0
    prefix = f"{connection_name}."
    removed = 0
    for entry in root.iterdir():
        name = entry.name
        if not name.startswith(prefix) or not entry.is_file():
            continue
        if not _ORPHAN_SUFFIX.match(name[len(prefix) :]):
            continue
        try:
            entry.unlink()
        except OSError as exc:
            logger.warning("unable to remove orphaned spill file %s: %s", entry, exc)
            continue
        removed += 1
    if removed:
        logger.info(
            "removed %d orphaned spill file(s) for connection %s from %s",
            removed,
            connection_name,
            root,
        )
    return removed


__all__ = [
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_SPILL_THRESHOLD",
    "TransactionBuffer",
    "buffer_identifier",
    "purge_orphaned_buffers",
]
