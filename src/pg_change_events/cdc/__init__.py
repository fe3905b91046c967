"""Capture process supervision, transaction buffering, and event materialization."""

from .buffer import TransactionBuffer, buffer_identifier, purge_orphaned_buffers
from .materializer import (
    ChangeEventMaterializer,
    EntityResolver,
    EventDispatcher,
    parse_record,
)
from .pipeline import (
    ChangeEventPipeline,
    PipelineMetrics,
    build_diagnostic_sink,
    build_pipeline,
)
from .reassembler import PipeReader, StreamReassembler
from .supervisor import (
    CaptureProcess,
    ChildReaper,
    ConnectionParameters,
    HandlerStack,
    LivenessMonitor,
    ProcessSupervisor,
    SignalForwarder,
    build_dsn,
    derive_slot_name,
    resolve_capture_binary,
)

__all__ = [
    "CaptureProcess",
    "ChangeEventMaterializer",
    "ChangeEventPipeline",
    "ChildReaper",
    "ConnectionParameters",
    "EntityResolver",
    "EventDispatcher",
    "HandlerStack",
    "LivenessMonitor",
    "PipeReader",
    "PipelineMetrics",
    "ProcessSupervisor",
    "SignalForwarder",
    "StreamReassembler",
    "TransactionBuffer",
    "buffer_identifier",
    "build_diagnostic_sink",
    "build_dsn",
    "build_pipeline",
    "derive_slot_name",
    "parse_record",
    "purge_orphaned_buffers",
    "resolve_capture_binary",
]
