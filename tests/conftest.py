"""Shared pytest fixtures.

The session loads a local ``.env`` once so integration runs pick up the same
``PG*``/``CDC_*`` values as the service. Tests that build a :class:`Settings`
directly use ``make_settings`` instead of the environment.
"""

from __future__ import annotations

import dataclasses
from pathlib import Path
from typing import Callable

import pytest
from dotenv import find_dotenv, load_dotenv

from pg_change_events.config import Settings


@pytest.fixture(scope="session", autouse=True)
def _session_dotenv() -> None:
    load_dotenv(find_dotenv(usecwd=True), override=False)


def _baseline_settings(root: Path) -> Settings:
    return Settings(
        app_name="app",
        connection_name="default",
        db_host="localhost",
        db_port=5432,
        db_name="postgres",
        db_user="postgres",
        db_password="",
        capture_dir=root / "bin",
        buffer_dir=root / "buffers",
        spill_threshold=5000,
        batch_size=1000,
        queue_capacity=16,
        read_chunk_bytes=1024,
        liveness_interval_seconds=30.0,
        log_malformed=True,
        diagnostic_stdout=False,
    )


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
    """Settings rooted in ``tmp_path``; keyword arguments override fields."""

    def factory(**overrides) -> Settings:
        return dataclasses.replace(_baseline_settings(tmp_path), **overrides)

    return factory
