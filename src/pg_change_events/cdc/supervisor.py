"""Supervision of the external capture process.

The capture binary connects to PostgreSQL with a logical replication slot and
prints one JSON record per line on stdout. This module starts it with the
connection parameters in its environment, watches its liveness, forwards
termination signals to it and reaps exited children.
"""

from __future__ import annotations

import logging
import os
import platform
import re
import signal
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import (
    Any,
    BinaryIO,
    Callable,
    Dict,
    Iterable,
    Mapping,
    Optional,
    Protocol,
)

from psycopg2.extensions import make_dsn

from ..errors import ChildExited, SpawnError, UnsupportedPlatform

logger = logging.getLogger(__name__)

BINARY_PREFIX = "pg-replication-"
DEFAULT_LIVENESS_INTERVAL = 1.0
FORWARDED_SIGNALS = (signal.SIGINT, signal.SIGTERM)

_SLOT_INVALID_CHARS = re.compile(r"[^a-z0-9_]")


def derive_slot_name(app_name: str, connection_name: str) -> str:
    """Replication slot name for an application/connection pair.

    Distinct pairs may map to the same slot (``"a-b", "c"`` and ``"a", "b-c"``
    both give ``a_b_c``); such collisions are not detected.
    """
    return _SLOT_INVALID_CHARS.sub("_", f"{app_name}_{connection_name}".lower())


def build_dsn(
    *,
    host: str,
    port: int,
    user: str,
    password: str,
    database: str,
) -> str:
    """libpq connection string for a logical replication session."""
    return make_dsn(
        host=host,
        port=port,
        user=user,
        password=password,
        dbname=database,
        replication="database",
    )


def resolve_capture_binary(
    directory: Path | str, machine: Optional[str] = None
) -> Path:
    arch = machine or platform.machine()
    path = Path(directory) / f"{BINARY_PREFIX}{arch}"
    if not path.is_file():
        raise UnsupportedPlatform(
            f"Unsupported platform for PostgreSQL replication {arch}."
        )
    try:
        path.chmod(0o755)
    except OSError as exc:
        logger.warning("unable to mark %s executable: %s", path, exc)
    return path


class ProcessHandle(Protocol):
    """Byte-stream source with a lifecycle."""

    pid: int
    stdout: BinaryIO

    def is_alive(self) -> bool: ...

    def send_signal(self, signum: int) -> None: ...

    def terminate(self) -> None: ...

    def wait(self, timeout: Optional[float] = None) -> Optional[int]: ...


class CaptureSource(Protocol):
    def start(self) -> ProcessHandle: ...


class CaptureProcess:
    """Handle over a running capture binary."""

    def __init__(self, process: subprocess.Popen) -> None:
        self._process = process

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def stdout(self) -> BinaryIO:
        assert self._process.stdout is not None
        return self._process.stdout

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    def is_alive(self) -> bool:
        return self._process.poll() is None

    def send_signal(self, signum: int) -> None:
        try:
            self._process.send_signal(signum)
        except ProcessLookupError:
            pass

    def terminate(self) -> None:
        if self.is_alive():
            self.send_signal(signal.SIGTERM)

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        try:
            return self._process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None


@dataclass(frozen=True)
class ConnectionParameters:
    host: str
    port: int
    user: str
    password: str
    database: str


class ProcessSupervisor:
    """Starts the capture binary for one database connection."""

    def __init__(
        self,
        *,
        app_name: str,
        connection_name: str,
        connection: ConnectionParameters,
        capture_dir: Path | str,
        machine: Optional[str] = None,
        base_env: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.app_name = app_name
        self.connection_name = connection_name
        self._connection = connection
        self._capture_dir = Path(capture_dir)
        self._machine = machine
        self._base_env = base_env

    @property
    def slot_name(self) -> str:
        return derive_slot_name(self.app_name, self.connection_name)

    @property
    def process_name(self) -> str:
        return f"{self.app_name}.PostgreSQL-Replication-{self.connection_name}"

    def child_environment(self) -> Dict[str, str]:
        env = dict(os.environ if self._base_env is None else self._base_env)
        env.update(
            {
                "PG_DSN": build_dsn(
                    host=self._connection.host,
                    port=self._connection.port,
                    user=self._connection.user,
                    password=self._connection.password,
                    database=self._connection.database,
                ),
                "PG_SLOT": self.slot_name,
                "PG_PROCESS_NAME": self.process_name,
                "PG_MASTER_PID": str(os.getpid()),
            }
        )
        return env

    def start(self) -> CaptureProcess:
        path = resolve_capture_binary(self._capture_dir, self._machine)
        try:
            process = subprocess.Popen(
                [str(path)],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                env=self.child_environment(),
                bufsize=0,
                close_fds=True,
            )
        except OSError as exc:
            raise SpawnError(
                f"unable to execute capture binary {path}: {exc}"
            ) from exc
        logger.info(
            "capture process %s started (pid=%s, slot=%s)",
            self.process_name,
            process.pid,
            self.slot_name,
        )
        return CaptureProcess(process)


class LivenessMonitor(threading.Thread):
    """Polls the capture process and reports its death exactly once.

    There is no restart: the default reaction sends SIGTERM to the current
    process so the outer process manager can restart the whole service.
    """

    def __init__(
        self,
        handle: ProcessHandle,
        *,
        interval: float = DEFAULT_LIVENESS_INTERVAL,
        on_exit: Optional[Callable[[ChildExited], None]] = None,
    ) -> None:
        super().__init__(name="capture-liveness", daemon=True)
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._handle = handle
        self._interval = interval
        self._on_exit = on_exit or _terminate_self
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    def check(self) -> bool:
        """Run one poll; returns ``False`` once the child has died."""
        if self._handle.is_alive():
            return True
        returncode = getattr(self._handle, "returncode", None)
        error = ChildExited(self._handle.pid, returncode)
        logger.critical(
            "PostgreSQL event dispatcher child process exited abnormally: %s", error
        )
        self._on_exit(error)
        return False

    def run(self) -> None:
        while not self._stop_event.wait(self._interval):
            if not self.check():
                return


def _terminate_self(_error: ChildExited) -> None:
    os.kill(os.getpid(), signal.SIGTERM)


SignalHandler = Any


@dataclass
class HandlerStack:
    """Signal handlers displaced by the forwarder, keyed by signal number."""

    previous: Dict[int, SignalHandler] = field(default_factory=dict)

    def push(self, signum: int, handler: SignalHandler) -> None:
        self.previous.setdefault(signum, handler)

    def pop(self, signum: int) -> Optional[SignalHandler]:
        return self.previous.pop(signum, None)


class SignalForwarder:
    """Forwards SIGINT/SIGTERM to the child before the parent handles them.

    When a forwarded signal arrives, the previous handler is restored, SIGCHLD
    is ignored, the signal is sent to the child and then re-sent to this
    process so the restored handler runs: child first, then self.
    """

    def __init__(
        self,
        handle: ProcessHandle,
        *,
        signals: Iterable[int] = FORWARDED_SIGNALS,
        stack: Optional[HandlerStack] = None,
        set_handler: Callable[[int, object], object] = signal.signal,
        get_handler: Callable[[int], object] = signal.getsignal,
        kill: Callable[[int, int], None] = os.kill,
        getpid: Callable[[], int] = os.getpid,
    ) -> None:
        self._handle = handle
        self._signals = tuple(signals)
        self.stack = stack or HandlerStack()
        self._set_handler = set_handler
        self._get_handler = get_handler
        self._kill = kill
        self._getpid = getpid

    def install(self) -> HandlerStack:
        for signum in self._signals:
            self.stack.push(signum, self._get_handler(signum))
            self._set_handler(signum, self._forward)
        return self.stack

    def uninstall(self) -> None:
        for signum in self._signals:
            previous = self.stack.pop(signum)
            if previous is not None:
                self._set_handler(signum, previous)

    def _forward(self, signum: int, _frame) -> None:
        previous = self.stack.pop(signum)
        self._set_handler(signum, previous if previous is not None else signal.SIG_DFL)
        self._set_handler(signal.SIGCHLD, signal.SIG_IGN)
        logger.info("PostgreSQL event dispatcher stopped (signal %s)", signum)
        try:
            self._kill(self._handle.pid, signum)
        except ProcessLookupError:
            logger.debug("capture process %s already gone", self._handle.pid)
        self._kill(self._getpid(), signum)


class ChildReaper:
    """SIGCHLD handler that collects every exited child without blocking."""

    def __init__(
        self,
        *,
        waitpid: Callable[[int, int], tuple] = os.waitpid,
        set_handler: Callable[[int, object], object] = signal.signal,
    ) -> None:
        self._waitpid = waitpid
        self._set_handler = set_handler
        self.reaped: Dict[int, int] = {}

    def install(self) -> None:
        self._set_handler(signal.SIGCHLD, self._handle)

    def reap(self) -> int:
        count = 0
        while True:
            try:
                pid, status = self._waitpid(-1, os.WNOHANG)
            except ChildProcessError:
                break
            if pid == 0:
                break
            self.reaped[pid] = status
            count += 1
        return count

    def _handle(self, _signum: int, _frame) -> None:
        self.reap()


__all__ = [
    "CaptureProcess",
    "CaptureSource",
    "ChildReaper",
    "ConnectionParameters",
    "HandlerStack",
    "LivenessMonitor",
    "ProcessHandle",
    "ProcessSupervisor",
    "SignalForwarder",
    "build_dsn",
    "derive_slot_name",
    "resolve_capture_binary",
]
