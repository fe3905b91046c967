import gc
import json
import logging

import pytest

from pg_change_events.cdc.buffer import (
    TransactionBuffer,
    buffer_identifier,
    purge_orphaned_buffers,
)
from pg_change_events.entities import ChangeRecord, Operation
from pg_change_events.errors import BufferDrained


def _record(index: int) -> ChangeRecord:
    return ChangeRecord(
        operation=Operation.UPDATE,
        entity_kind="users",
        identity={"id": index},
        columns={"name": f"user-{index}", "score": index * 1.5},
    )


def _build(tmp_path, xid: int = 10, threshold: int = 5) -> TransactionBuffer:
    return TransactionBuffer(
        xid,
        buffer_identifier("default", xid),
        tmp_path,
        spill_threshold=threshold,
    )


@pytest.mark.unit
def test_small_transaction_stays_in_memory(tmp_path):
    buffer = _build(tmp_path)
    records = [_record(i) for i in range(3)]
    for record in records:
        buffer.push(record)

    assert not buffer.path.exists()
    assert buffer.resident == 3
    assert list(buffer.drain()) == records


@pytest.mark.unit
def test_spill_writes_json_lines_and_clears_memory(tmp_path):
    buffer = _build(tmp_path, threshold=5)
    for i in range(12):
        buffer.push(_record(i))

    assert buffer.path == tmp_path / "default.10"
    lines = buffer.path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 10
    assert json.loads(lines[0]) == {
        "operation": "U",
        "entity_kind": "users",
        "identity": {"id": 0},
        "columns": {"name": "user-0", "score": 0.0},
    }
    assert buffer.spilled == 10
    assert buffer.resident == 2
    assert len(buffer) == 12


@pytest.mark.unit
def test_spilled_text_survives_values_utf8_cannot_encode(tmp_path):
    buffer = _build(tmp_path, threshold=2)
    records = [
        ChangeRecord(Operation.INSERT, "notes", columns={"body": "lone \ud800 half"}),
        ChangeRecord(Operation.INSERT, "notes", columns={"body": "Zoë ☃"}),
        _record(3),
    ]
    for record in records:
        buffer.push(record)

    assert buffer.spilled == 2
    assert buffer.path.read_bytes().isascii()
    assert list(buffer.drain()) == records


@pytest.mark.unit
def test_drain_output_is_identical_with_and_without_spill(tmp_path):
    records = [_record(i) for i in range(5001)]
    in_memory = TransactionBuffer(1, "default.1", tmp_path, spill_threshold=10_000)
    spilling = TransactionBuffer(2, "default.2", tmp_path)
    for record in records:
        in_memory.push(record)
        spilling.push(record)

    assert spilling.spilled == 5000
    assert not in_memory.path.exists()
    assert list(spilling.drain()) == list(in_memory.drain()) == records


@pytest.mark.unit
def test_drain_batches_chunks_in_arrival_order(tmp_path):
    buffer = _build(tmp_path, threshold=4)
    records = [_record(i) for i in range(12)]
    for record in records:
        buffer.push(record)

    batches = list(buffer.drain_batches(5))

    assert [len(batch) for batch in batches] == [5, 5, 2]
    assert [record for batch in batches for record in batch] == records


@pytest.mark.unit
def test_drain_batches_rejects_non_positive_size(tmp_path):
    buffer = _build(tmp_path)
    with pytest.raises(ValueError):
        buffer.drain_batches(0)


@pytest.mark.unit
def test_blank_lines_in_spill_file_are_skipped(tmp_path):
    buffer = _build(tmp_path, threshold=2)
    records = [_record(i) for i in range(3)]
    buffer.push(records[0])
    buffer.push(records[1])
    with buffer.path.open("a", encoding="utf-8") as handle:
        handle.write("\n\n")
    buffer.push(records[2])

    assert list(buffer.drain()) == records


@pytest.mark.unit
def test_buffer_is_drained_only_once(tmp_path):
    buffer = _build(tmp_path)
    buffer.push(_record(1))
    list(buffer.drain())

    with pytest.raises(BufferDrained):
        buffer.drain()
    with pytest.raises(BufferDrained):
        buffer.push(_record(2))


@pytest.mark.unit
def test_close_removes_backing_file(tmp_path):
    buffer = _build(tmp_path, threshold=2)
    for i in range(4):
        buffer.push(_record(i))
    assert buffer.path.exists()

    buffer.close()

    assert not buffer.path.exists()
    buffer.close()  # second close is a no-op


@pytest.mark.unit
def test_context_manager_removes_backing_file(tmp_path):
    with _build(tmp_path, threshold=1) as buffer:
        buffer.push(_record(1))
        path = buffer.path
        assert path.exists()
    assert not path.exists()


@pytest.mark.unit
def test_abandoned_buffer_removes_backing_file(tmp_path):
    buffer = _build(tmp_path, threshold=1)
    buffer.push(_record(1))
    path = buffer.path
    assert path.exists()

    del buffer
    gc.collect()

    assert not path.exists()


@pytest.mark.unit
def test_stale_spill_file_is_replaced(tmp_path, caplog):
    caplog.set_level(logging.WARNING)
    stale = tmp_path / "default.10"
    stale.write_text(json.dumps(_record(99).to_dict()) + "\n", encoding="utf-8")

    buffer = _build(tmp_path, threshold=2)
    records = [_record(i) for i in range(2)]
    for record in records:
        buffer.push(record)

    assert "discarding stale spill file" in caplog.text
    assert list(buffer.drain()) == records


@pytest.mark.unit
def test_unspilled_buffer_ignores_foreign_file(tmp_path):
    (tmp_path / "default.10").write_text("not json\n", encoding="utf-8")
    buffer = _build(tmp_path)
    buffer.push(_record(1))

    assert list(buffer.drain()) == [_record(1)]


@pytest.mark.unit
def test_purge_orphaned_buffers_only_removes_connection_files(tmp_path):
    (tmp_path / "default.10").write_text("{}\n")
    (tmp_path / "default.11").write_text("{}\n")
    (tmp_path / "default.notes").write_text("keep")
    (tmp_path / "replica.10").write_text("{}\n")

    removed = purge_orphaned_buffers(tmp_path, "default")

    assert removed == 2
    assert sorted(p.name for p in tmp_path.iterdir()) == [
        "default.notes",
        "replica.10",
    ]


@pytest.mark.unit
def test_purge_orphaned_buffers_missing_directory(tmp_path):
    assert purge_orphaned_buffers(tmp_path / "missing", "default") == 0


@pytest.mark.unit
def test_threshold_must_be_positive(tmp_path):
    with pytest.raises(ValueError):
        TransactionBuffer(1, "default.1", tmp_path, spill_threshold=0)
