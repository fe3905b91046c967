"""Wiring of capture process, reader thread, reassembler and materializer."""

from __future__ import annotations

import logging
import queue
import sys
import threading
from pathlib import Path
from typing import Callable, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge

from ..config import Settings
from ..entities import EntityRegistry
from ..errors import ChildExited
from .buffer import purge_orphaned_buffers
from .materializer import ChangeEventMaterializer, EntityResolver, EventDispatcher
from .reassembler import (
    DEFAULT_QUEUE_CAPACITY,
    DEFAULT_READ_CHUNK_BYTES,
    PipeReader,
    StreamReassembler,
)
from .supervisor import (
    DEFAULT_LIVENESS_INTERVAL,
    CaptureSource,
    ChildReaper,
    ConnectionParameters,
    LivenessMonitor,
    ProcessHandle,
    ProcessSupervisor,
    SignalForwarder,
)

logger = logging.getLogger(__name__)

DIAGNOSTIC_LOGGER_NAME = "pg_change_events.diagnostics"


class PipelineMetrics:
    """Prometheus counters and gauges for one pipeline instance."""

    def __init__(
        self,
        namespace: str = "pg_change_events",
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        self.registry = registry or CollectorRegistry()
        self._namespace = namespace
        self._records = self._counter("records", "Capture records consumed")
        self._malformed = self._counter("malformed", "Malformed capture records")
        self._unknown = self._counter(
            "unknown_transactions", "Records referencing an unknown transaction"
        )
        self._unresolved = self._counter(
            "unresolved_entities", "Changes skipped for unregistered entity kinds"
        )
        self._transactions = self._counter(
            "transactions", "Transactions committed and replayed"
        )
        self._groups = self._counter("groups", "Event groups dispatched")
        self._dispatch_errors = self._counter(
            "dispatch_errors", "Event groups the dispatcher rejected"
        )
        self._spilled = self._counter(
            "spilled_records", "Change records spilled to disk"
        )
        self._open_transactions = Gauge(
            "open_transactions",
            "Transactions with a live buffer",
            namespace=namespace,
            registry=self.registry,
        )
        self._queue_depth = Gauge(
            "queue_depth",
            "Raw chunks waiting in the reader queue",
            namespace=namespace,
            registry=self.registry,
        )

    def _counter(self, name: str, documentation: str) -> Counter:
        return Counter(
            name, documentation, namespace=self._namespace, registry=self.registry
        )

    def inc_records(self, amount: int = 1) -> None:
        self._records.inc(amount)

    def inc_malformed(self, amount: int = 1) -> None:
        self._malformed.inc(amount)

    def inc_unknown_transactions(self, amount: int = 1) -> None:
        self._unknown.inc(amount)

    def inc_unresolved(self, amount: int = 1) -> None:
        self._unresolved.inc(amount)

    def inc_transactions(self, amount: int = 1) -> None:
        self._transactions.inc(amount)

    def inc_groups(self, amount: int = 1) -> None:
        self._groups.inc(amount)

    def inc_dispatch_errors(self, amount: int = 1) -> None:
        self._dispatch_errors.inc(amount)

    def inc_spilled(self, amount: int) -> None:
        if amount <= 0:
            return
        self._spilled.inc(amount)

    def set_open_transactions(self, value: int) -> None:
        self._open_transactions.set(value)

    def set_queue_depth(self, value: int) -> None:
        self._queue_depth.set(value)

    def snapshot(self) -> Dict[str, float]:
        keys = (
            "records_total",
            "malformed_total",
            "unknown_transactions_total",
            "unresolved_entities_total",
            "transactions_total",
            "groups_total",
            "dispatch_errors_total",
            "spilled_records_total",
            "open_transactions",
            "queue_depth",
        )
        return {
            key: self.registry.get_sample_value(f"{self._namespace}_{key}") or 0.0
            for key in keys
        }


class ChangeEventPipeline:
    """Runs the capture process and feeds its records through the materializer.

    The reader thread and the liveness monitor only talk to the main loop
    through the bounded chunk queue; everything past the queue runs on the
    thread that calls :meth:`run`.
    """

    def __init__(
        self,
        source: CaptureSource,
        materializer: ChangeEventMaterializer,
        *,
        queue_capacity: int = DEFAULT_QUEUE_CAPACITY,
        read_chunk_bytes: int = DEFAULT_READ_CHUNK_BYTES,
        liveness_interval: float = DEFAULT_LIVENESS_INTERVAL,
        metrics: Optional[PipelineMetrics] = None,
        install_signal_handlers: bool = False,
    ) -> None:
        if queue_capacity <= 0:
            raise ValueError("queue_capacity must be positive")
        self._source = source
        self._materializer = materializer
        self._chunks: "queue.Queue[Optional[bytes]]" = queue.Queue(queue_capacity)
        self._read_chunk_bytes = read_chunk_bytes
        self._liveness_interval = liveness_interval
        self._metrics = metrics or PipelineMetrics()
        self._install_signal_handlers = install_signal_handlers
        self._reassembler = StreamReassembler()
        self._stop_event = threading.Event()
        self._exit_lock = threading.Lock()
        self._child_error: Optional[ChildExited] = None
        self._handle: Optional[ProcessHandle] = None
        self._reader: Optional[PipeReader] = None
        self._monitor: Optional[LivenessMonitor] = None
        self._forwarder: Optional[SignalForwarder] = None

    @property
    def metrics(self) -> PipelineMetrics:
        return self._metrics

    @property
    def materializer(self) -> ChangeEventMaterializer:
        return self._materializer

    @property
    def handle(self) -> Optional[ProcessHandle]:
        return self._handle

    def start(self) -> ProcessHandle:
        handle = self._source.start()
        self._handle = handle
        if self._install_signal_handlers:
            ChildReaper().install()
            self._forwarder = SignalForwarder(handle)
            self._forwarder.install()
        self._reader = PipeReader(
            handle.stdout, self._chunks, chunk_size=self._read_chunk_bytes
        )
        self._reader.start()
        self._monitor = LivenessMonitor(
            handle,
            interval=self._liveness_interval,
            on_exit=self._on_child_exit,
        )
        self._monitor.start()
        logger.info("PostgreSQL Event Dispatcher started.")
        return handle

    def run(self) -> None:
        """Process records until stopped; raises ChildExited if the child dies."""
        if self._handle is None:
            self.start()
        try:
            while not self._stop_event.is_set():
                chunk = self._chunks.get()
                self._metrics.set_queue_depth(self._chunks.qsize())
                if chunk is None:
                    if self._stop_event.is_set():
                        break
                    raise self._child_exit_error()
                self.process_chunk(chunk)
        finally:
            self.close()

    def process_chunk(self, chunk: bytes) -> int:
        records = self._reassembler.feed(chunk)
        for record in records:
            self._materializer.consume(record)
        return len(records)

    def stop(self) -> None:
        self._stop_event.set()
        self._wake()

    def close(self) -> None:
        self._stop_event.set()
        if self._monitor is not None:
            self._monitor.stop()
        if self._reader is not None:
            self._reader.stop()
        if self._forwarder is not None:
            self._forwarder.uninstall()
            self._forwarder = None
        self._materializer.close()
        if self._handle is not None and self._handle.is_alive():
            self._handle.terminate()
            self._handle.wait(timeout=5)

    def _on_child_exit(self, error: ChildExited) -> None:
        with self._exit_lock:
            if self._child_error is not None or self._stop_event.is_set():
                return
            self._child_error = error
        self._wake()

    def _child_exit_error(self) -> ChildExited:
        with self._exit_lock:
            if self._child_error is None:
                if self._monitor is not None:
                    self._monitor.stop()
                handle = self._handle
                pid = handle.pid if handle is not None else -1
                if handle is not None and handle.is_alive():
                    # stdout closed while the process is still running
                    handle.wait(timeout=self._liveness_interval)
                returncode = getattr(handle, "returncode", None)
                self._child_error = ChildExited(pid, returncode)
                logger.critical(
                    "capture process output ended: %s", self._child_error
                )
            return self._child_error

    def _wake(self) -> None:
        try:
            self._chunks.put_nowait(None)
        except queue.Full:
            pass


def build_diagnostic_sink(
    stream=None,
) -> Callable[[str], None]:
    """Secondary sink for malformed records: a stdout logger of its own."""
    diagnostics = logging.getLogger(DIAGNOSTIC_LOGGER_NAME)
    if not diagnostics.handlers:
        handler = logging.StreamHandler(stream or sys.stdout)
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")
        )
        diagnostics.addHandler(handler)
        diagnostics.propagate = False
    diagnostics.setLevel(logging.ERROR)
    return diagnostics.error


def build_pipeline(
    settings: Settings,
    *,
    dispatcher: EventDispatcher,
    resolver: Optional[EntityResolver] = None,
    source: Optional[CaptureSource] = None,
    metrics: Optional[PipelineMetrics] = None,
    install_signal_handlers: bool = True,
) -> ChangeEventPipeline:
    """Construct a pipeline from application settings."""

    buffer_dir = Path(settings.buffer_dir)
    buffer_dir.mkdir(parents=True, exist_ok=True)
    purge_orphaned_buffers(buffer_dir, settings.connection_name)

    if resolver is None:
        resolver = EntityRegistry(
            dict(settings.entity_map), passthrough=settings.entity_passthrough
        )

    if source is None:
        source = ProcessSupervisor(
            app_name=settings.app_name,
            connection_name=settings.connection_name,
            connection=ConnectionParameters(
                host=settings.db_host,
                port=settings.db_port,
                user=settings.db_user,
                password=settings.db_password,
                database=settings.db_name,
            ),
            capture_dir=settings.capture_dir,
        )

    metrics = metrics or PipelineMetrics()
    materializer = ChangeEventMaterializer(
        connection_name=settings.connection_name,
        buffer_dir=buffer_dir,
        resolver=resolver,
        dispatcher=dispatcher,
        batch_size=settings.batch_size,
        spill_threshold=settings.spill_threshold,
        log_malformed=settings.log_malformed,
        diagnostic_sink=build_diagnostic_sink() if settings.diagnostic_stdout else None,
        metrics=metrics,
    )
    return ChangeEventPipeline(
        source,
        materializer,
        queue_capacity=settings.queue_capacity,
        read_chunk_bytes=settings.read_chunk_bytes,
        liveness_interval=settings.liveness_interval_seconds,
        metrics=metrics,
        install_signal_handlers=install_signal_handlers,
    )


__all__ = [
    "ChangeEventPipeline",
    "PipelineMetrics",
    "build_diagnostic_sink",
    "build_pipeline",
]
