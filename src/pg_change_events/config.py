"""Runtime configuration helpers for the PostgreSQL change-event service."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

DEFAULT_CAPTURE_DIR = Path(__file__).resolve().parent / "bin"
DEFAULT_BUFFER_DIR = Path("runtime") / "tmp" / "database" / "listen" / "postgresql"


@dataclass(frozen=True)
class Settings:
    """Immutable container for service configuration."""

    app_name: str
    connection_name: str
    db_host: str
    db_port: int
    db_name: str
    db_user: str
    db_password: str
    capture_dir: Path
    buffer_dir: Path
    spill_threshold: int
    batch_size: int
    queue_capacity: int
    read_chunk_bytes: int
    liveness_interval_seconds: float
    log_malformed: bool
    diagnostic_stdout: bool
    entity_map: Tuple[Tuple[str, str], ...] = ()
    entity_passthrough: bool = True
    dispatch_url: str = ""
    dispatch_timeout_seconds: float = 10.0
    dispatch_retry_attempts: int = 3
    dispatch_retry_base_delay_seconds: float = 0.2
    dispatch_retry_max_delay_seconds: float = 5.0
    write_jsonl: bool = False
    jsonl_path: Path = Path("change_events.jsonl")
    log_level: str = "INFO"


def _as_bool(value: Optional[str], default: bool) -> bool:
    """Convert environment strings to booleans."""
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no"}


def _positive_int(value: Optional[str], default: int) -> int:
    if value is None or not value.strip():
        return default
    parsed = int(value)
    if parsed <= 0:
        raise ValueError(f"expected a positive integer, got {value!r}")
    return parsed


def _split_mapping(value: Optional[str]) -> Tuple[Tuple[str, str], ...]:
    """Parse ``kind=Type,kind2=Type2`` pairs; a bare kind maps to itself."""
    if not value:
        return ()
    pairs = []
    for entry in value.split(","):
        entry = entry.strip()
        if not entry:
            continue
        kind, _, type_name = entry.partition("=")
        kind = kind.strip()
        if not kind:
            continue
        pairs.append((kind, type_name.strip() or kind))
    return tuple(pairs)


def load_settings() -> Settings:
    """Load configuration from the environment (and `.env`)."""
    load_dotenv()
    app_name = os.getenv("APP_NAME", "app").strip() or "app"
    connection_name = os.getenv("CDC_CONNECTION_NAME", "default").strip() or "default"

    db_host = os.getenv("PGHOST", "localhost")
    db_port = int(os.getenv("PGPORT", "5432"))
    db_name = os.getenv("PGDATABASE", "postgres")
    db_user = os.getenv("PGUSER", "postgres")
    db_password = os.getenv("PGPASSWORD", "")

    capture_dir = Path(os.getenv("CDC_CAPTURE_DIR", str(DEFAULT_CAPTURE_DIR)))
    buffer_dir = Path(os.getenv("CDC_BUFFER_DIR", str(DEFAULT_BUFFER_DIR)))
    spill_threshold = _positive_int(os.getenv("CDC_SPILL_THRESHOLD"), 5000)
    batch_size = _positive_int(os.getenv("CDC_BATCH_SIZE"), 1000)
    queue_capacity = _positive_int(os.getenv("CDC_QUEUE_CAPACITY"), 10240)
    read_chunk_bytes = _positive_int(os.getenv("CDC_READ_CHUNK_BYTES"), 65536)
    liveness_interval_seconds = float(
        os.getenv("CDC_LIVENESS_INTERVAL_SECONDS", "1.0")
    )
    if liveness_interval_seconds <= 0:
        raise ValueError("CDC_LIVENESS_INTERVAL_SECONDS must be positive")

    log_malformed = _as_bool(os.getenv("CDC_LOG_MALFORMED"), True)
    diagnostic_stdout = _as_bool(os.getenv("CDC_DIAGNOSTIC_STDOUT"), True)

    entity_map = _split_mapping(os.getenv("CDC_ENTITY_MAP"))
    entity_passthrough = _as_bool(
        os.getenv("CDC_ENTITY_PASSTHROUGH"), not entity_map
    )

    dispatch_url = os.getenv("CDC_DISPATCH_URL", "").strip()
    dispatch_timeout_seconds = float(os.getenv("CDC_DISPATCH_TIMEOUT_SECONDS", "10.0"))
    dispatch_retry_attempts = int(os.getenv("CDC_DISPATCH_RETRY_ATTEMPTS", "3"))
    dispatch_retry_base_delay_seconds = float(
        os.getenv("CDC_DISPATCH_RETRY_BASE_DELAY_SECONDS", "0.2")
    )
    dispatch_retry_max_delay_seconds = float(
        os.getenv("CDC_DISPATCH_RETRY_MAX_DELAY_SECONDS", "5.0")
    )
    write_jsonl = _as_bool(os.getenv("CDC_WRITE_JSONL"), False)
    jsonl_path = Path(os.getenv("CDC_JSONL_PATH", "change_events.jsonl"))
    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"

    if dispatch_url.endswith("/"):
        dispatch_url = dispatch_url.rstrip("/")

    return Settings(
        app_name=app_name,
        connection_name=connection_name,
        db_host=db_host,
        db_port=db_port,
        db_name=db_name,
        db_user=db_user,
        db_password=db_password,
        capture_dir=capture_dir,
        buffer_dir=buffer_dir,
        spill_threshold=spill_threshold,
        batch_size=batch_size,
        queue_capacity=queue_capacity,
        read_chunk_bytes=read_chunk_bytes,
        liveness_interval_seconds=liveness_interval_seconds,
        log_malformed=log_malformed,
        diagnostic_stdout=diagnostic_stdout,
        entity_map=entity_map,
        entity_passthrough=entity_passthrough,
        dispatch_url=dispatch_url,
        dispatch_timeout_seconds=dispatch_timeout_seconds,
        dispatch_retry_attempts=dispatch_retry_attempts,
        dispatch_retry_base_delay_seconds=dispatch_retry_base_delay_seconds,
        dispatch_retry_max_delay_seconds=dispatch_retry_max_delay_seconds,
        write_jsonl=write_jsonl,
        jsonl_path=jsonl_path,
        log_level=log_level,
    )
