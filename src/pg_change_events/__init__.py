"""Change-event ingestion for PostgreSQL logical replication streams."""

from .entities import (
    ChangeRecord,
    EntityRegistry,
    EntitySnapshot,
    EventModelsGroup,
    Operation,
)


def main() -> None:
    """Entrypoint proxy that defers importing the service until needed."""

    from .service import main as _service_main

    _service_main()


__all__ = [
    "ChangeRecord",
    "EntityRegistry",
    "EntitySnapshot",
    "EventModelsGroup",
    "Operation",
    "main",
]
