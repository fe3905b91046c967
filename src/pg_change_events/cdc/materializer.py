"""Transaction reassembly and conversion of change records into event batches."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import (
    TYPE_CHECKING,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Protocol,
    Tuple,
)

from ..entities import (
    ChangeRecord,
    EntitySnapshot,
    EntityType,
    EventModelsGroup,
    Operation,
)
from ..errors import (
    DuplicateTransaction,
    ParseError,
    UnknownTransaction,
    UnresolvedEntityKind,
)
from .buffer import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_SPILL_THRESHOLD,
    TransactionBuffer,
    buffer_identifier,
)

if TYPE_CHECKING:  # pragma: no cover - import-time helper only
    from .pipeline import PipelineMetrics

logger = logging.getLogger(__name__)

ACTION_BEGIN = "B"
ACTION_COMMIT = "C"
CHANGE_ACTIONS = {operation.value: operation for operation in Operation}


class EntityResolver(Protocol):
    """Maps an entity kind to the application entity type handling it."""

    def resolve(self, entity_kind: str) -> Optional[EntityType]: ...


class EventDispatcher(Protocol):
    def dispatch(self, group: EventModelsGroup) -> None: ...


def _printable(raw: bytes | str) -> str:
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="backslashreplace")
    return raw


def parse_record(raw: bytes | str) -> Dict[str, object]:
    """Decode one wire record and validate the ``action``/``xid`` envelope.

    Byte records must be valid UTF-8; undecodable input is a :class:`ParseError`
    rather than being patched up with replacement characters.
    """
    if isinstance(raw, bytes):
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ParseError(
                f"record is not valid UTF-8: {exc.reason}", _printable(raw)
            ) from exc
    else:
        text = raw
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ParseError(f"record is not valid JSON: {exc.msg}", text) from exc
    if not isinstance(data, dict):
        raise ParseError("record is not a JSON object", text)
    action = data.get("action")
    if not isinstance(action, str):
        raise ParseError("record has no string 'action'", text)
    xid = data.get("xid")
    if not isinstance(xid, int) or isinstance(xid, bool):
        raise ParseError("record has no integer 'xid'", text)
    if action not in (ACTION_BEGIN, ACTION_COMMIT) and action not in CHANGE_ACTIONS:
        raise ParseError(f"unknown action {action!r}", text)
    if action in CHANGE_ACTIONS and not isinstance(data.get("table"), str):
        raise ParseError("change record has no string 'table'", text)
    return data


def _rows_to_mapping(rows: object, field: str, raw: str) -> Dict[str, object]:
    if rows is None:
        return {}
    if not isinstance(rows, list):
        raise ParseError(f"'{field}' must be a list", raw)
    mapping: Dict[str, object] = {}
    for row in rows:
        if not isinstance(row, dict) or "name" not in row:
            raise ParseError(f"'{field}' entries need a 'name'", raw)
        mapping[str(row["name"])] = row.get("value")
    return mapping


def change_record_from_payload(
    data: Mapping[str, object], raw: str = ""
) -> ChangeRecord:
    return ChangeRecord(
        operation=CHANGE_ACTIONS[str(data["action"])],
        entity_kind=str(data["table"]),
        identity=_rows_to_mapping(data.get("identity"), "identity", raw),
        columns=_rows_to_mapping(data.get("columns"), "columns", raw),
    )


class ChangeEventMaterializer:
    """State machine over begin/change/commit records.

    Each begin opens a :class:`TransactionBuffer`; change records are appended
    to it; the commit replays the buffer in batches of ``batch_size`` and hands
    the grouped snapshots of every batch to the dispatcher before moving on.
    Record-level problems are logged and the record dropped; only a begin for a
    transaction that is already open is raised, since the stream can no longer
    be trusted after it.
    """

    def __init__(
        self,
        *,
        connection_name: str,
        buffer_dir: Path | str,
        resolver: EntityResolver,
        dispatcher: EventDispatcher,
        batch_size: int = DEFAULT_BATCH_SIZE,
        spill_threshold: int = DEFAULT_SPILL_THRESHOLD,
        log_malformed: bool = True,
        diagnostic_sink: Optional[Callable[[str], None]] = None,
        metrics: Optional["PipelineMetrics"] = None,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.connection_name = connection_name
        self._buffer_dir = Path(buffer_dir)
        self._resolver = resolver
        self._dispatcher = dispatcher
        self._batch_size = batch_size
        self._spill_threshold = spill_threshold
        self._log_malformed = log_malformed
        self._diagnostic_sink = diagnostic_sink
        self._metrics = metrics
        self._buffers: Dict[int, TransactionBuffer] = {}

    def open_transactions(self) -> List[int]:
        return list(self._buffers)

    def buffer_for(self, xid: int) -> Optional[TransactionBuffer]:
        return self._buffers.get(xid)

    def consume(self, raw: bytes | str) -> None:
        text = _printable(raw)
        if self._metrics:
            self._metrics.inc_records()
        try:
            data = parse_record(raw)
            action = str(data["action"])
            xid = int(data["xid"])  # type: ignore[arg-type]
            if action == ACTION_BEGIN:
                self._begin(xid)
            elif action == ACTION_COMMIT:
                self._commit(xid)
            else:
                self._append(xid, change_record_from_payload(data, text))
        except ParseError as exc:
            self._report_malformed(text, exc)
        except UnknownTransaction as exc:
            if self._metrics:
                self._metrics.inc_unknown_transactions()
            logger.error("%s; record dropped", exc)

    def consume_many(self, records: Iterable[bytes | str]) -> None:
        for record in records:
            self.consume(record)

    def close(self) -> None:
        """Destroy all live buffers; their transactions are not dispatched."""
        for xid, buffer in list(self._buffers.items()):
            logger.warning(
                "discarding uncommitted transaction %s (%d records)", xid, len(buffer)
            )
            buffer.close()
        self._buffers.clear()
        self._update_open_gauge()

    # ------------------------------------------------------------------ Actions
    def _begin(self, xid: int) -> None:
        if xid in self._buffers:
            error = DuplicateTransaction(xid)
            logger.error("protocol violation from capture process: %s", error)
            raise error
        self._buffers[xid] = TransactionBuffer(
            xid,
            buffer_identifier(self.connection_name, xid),
            self._buffer_dir,
            spill_threshold=self._spill_threshold,
        )
        self._update_open_gauge()

    def _append(self, xid: int, record: ChangeRecord) -> None:
        buffer = self._buffers.get(xid)
        if buffer is None:
            raise UnknownTransaction(xid, record.operation.value)
        spilled = buffer.spilled
        buffer.push(record)
        if self._metrics and buffer.spilled > spilled:
            self._metrics.inc_spilled(buffer.spilled - spilled)

    def _commit(self, xid: int) -> None:
        buffer = self._buffers.get(xid)
        if buffer is None:
            raise UnknownTransaction(xid, ACTION_COMMIT)
        try:
            for groups in self.event_batches(buffer):
                for group in groups:
                    self._dispatch(group)
        finally:
            buffer.close()
            del self._buffers[xid]
            self._update_open_gauge()
        if self._metrics:
            self._metrics.inc_transactions()

    # ------------------------------------------------------------------ Materialization
    def event_batches(
        self, buffer: TransactionBuffer
    ) -> Iterator[List[EventModelsGroup]]:
        """Yield the event groups of each replayed batch, one batch at a time."""
        for batch in buffer.drain_batches(self._batch_size):
            yield self.materialize(batch)

    def materialize(self, records: Iterable[ChangeRecord]) -> List[EventModelsGroup]:
        groups: Dict[Tuple[Operation, str], EventModelsGroup] = {}
        for record in records:
            entity_type = self._resolve(record.entity_kind)
            if entity_type is None:
                if self._metrics:
                    self._metrics.inc_unresolved()
                continue
            key = (record.operation, record.entity_kind)
            group = groups.get(key)
            if group is None:
                group = EventModelsGroup(
                    operation=record.operation,
                    entity_kind=record.entity_kind,
                    entity_type=entity_type.name,
                )
                groups[key] = group
            group.add(self._snapshot(entity_type, record))
        return list(groups.values())

    def _resolve(self, entity_kind: str) -> Optional[EntityType]:
        try:
            return self._resolver.resolve(entity_kind)
        except UnresolvedEntityKind:
            return None

    @staticmethod
    def _snapshot(entity_type: EntityType, record: ChangeRecord) -> EntitySnapshot:
        before, after = record.states()
        snapshot = EntitySnapshot.with_original(entity_type.name, before)
        for name, value in entity_type.deserialize(after).items():
            snapshot.set_attribute(name, value)
        return snapshot

    # ------------------------------------------------------------------ Helpers
    def _dispatch(self, group: EventModelsGroup) -> None:
        try:
            self._dispatcher.dispatch(group)
        except Exception:  # noqa: BLE001 - dispatcher errors should not stop CDC
            logger.exception(
                "event dispatcher raised for %s %s (%d entities)",
                group.operation.label,
                group.entity_kind,
                len(group),
            )
            if self._metrics:
                self._metrics.inc_dispatch_errors()
            return
        if self._metrics:
            self._metrics.inc_groups()

    def _report_malformed(self, text: str, error: ParseError) -> None:
        if self._metrics:
            self._metrics.inc_malformed()
        if self._log_malformed:
            logger.error("malformed capture record (%s): %s", error, text)
        if self._diagnostic_sink is not None:
            self._diagnostic_sink(text)

    def _update_open_gauge(self) -> None:
        if self._metrics:
            self._metrics.set_open_transactions(len(self._buffers))


__all__ = [
    "ChangeEventMaterializer",
    "EntityResolver",
    "EventDispatcher",
    "change_record_from_payload",
    "parse_record",
]
