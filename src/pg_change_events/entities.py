"""Change records, entity snapshots, and grouped event batches."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Tuple


class Operation(str, Enum):
    """Row-level operation carried by a change record."""

    INSERT = "I"
    UPDATE = "U"
    DELETE = "D"

    @property
    def label(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class ChangeRecord:
    """One row mutation inside a transaction."""

    operation: Operation
    entity_kind: str
    identity: Mapping[str, object] = field(default_factory=dict)
    columns: Mapping[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # read-only copies; later edits to the source dicts do not leak in
        object.__setattr__(self, "identity", MappingProxyType(dict(self.identity)))
        object.__setattr__(self, "columns", MappingProxyType(dict(self.columns)))

    def to_dict(self) -> Dict[str, object]:
        return {
            "operation": self.operation.value,
            "entity_kind": self.entity_kind,
            "identity": dict(self.identity),
            "columns": dict(self.columns),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "ChangeRecord":
        return cls(
            operation=Operation(data["operation"]),
            entity_kind=str(data["entity_kind"]),
            identity=dict(data.get("identity") or {}),  # type: ignore[arg-type]
            columns=dict(data.get("columns") or {}),  # type: ignore[arg-type]
        )

    def states(self) -> Tuple[Dict[str, object], Dict[str, object]]:
        """Return the ``(before, after)`` attribute mappings for this change.

        Inserts have no prior state so both sides are the new columns. Deletes
        only carry the old key, which is used for both sides. Updates start
        from the identity and fill in any column that only appears in the
        post-image; the after state is the identity overwritten by columns.
        """
        if self.operation is Operation.INSERT:
            return dict(self.columns), dict(self.columns)
        if self.operation is Operation.DELETE:
            return dict(self.identity), dict(self.identity)
        before = dict(self.identity)
        after = dict(self.identity)
        for name, value in self.columns.items():
            if name not in before:
                before[name] = value
            after[name] = value
        return before, after


@dataclass
class EntitySnapshot:
    """Entity attributes with the original (before) state kept alongside."""

    entity_type: str
    original: Dict[str, object] = field(default_factory=dict)
    attributes: Dict[str, object] = field(default_factory=dict)

    @classmethod
    def with_original(
        cls, entity_type: str, original: Mapping[str, object]
    ) -> "EntitySnapshot":
        return cls(
            entity_type=entity_type,
            original=dict(original),
            attributes=dict(original),
        )

    def set_attribute(self, name: str, value: object) -> None:
        self.attributes[name] = value

    def changes(self) -> Dict[str, object]:
        """Attributes whose value differs from the original state."""
        return {
            name: value
            for name, value in self.attributes.items()
            if name not in self.original or self.original[name] != value
        }

    def to_dict(self) -> Dict[str, object]:
        return {
            "entity_type": self.entity_type,
            "original": dict(self.original),
            "attributes": dict(self.attributes),
            "changes": self.changes(),
        }


@dataclass
class EventModelsGroup:
    """Snapshots sharing one (operation, entity kind) pair, dispatched together."""

    operation: Operation
    entity_kind: str
    entity_type: str
    entities: List[EntitySnapshot] = field(default_factory=list)

    def add(self, snapshot: EntitySnapshot) -> None:
        self.entities.append(snapshot)

    def __len__(self) -> int:
        return len(self.entities)

    def to_dict(self) -> Dict[str, object]:
        return {
            "operation": self.operation.label,
            "entity_kind": self.entity_kind,
            "entity_type": self.entity_type,
            "entities": [entity.to_dict() for entity in self.entities],
        }


Deserializer = Callable[[Mapping[str, object]], Mapping[str, object]]


def _identity_deserializer(values: Mapping[str, object]) -> Mapping[str, object]:
    return values


@dataclass(frozen=True)
class EntityType:
    """Application entity type registered for one or more entity kinds."""

    name: str
    deserialize: Deserializer = _identity_deserializer


class EntityRegistry:
    """Maps entity kinds (table names) to application entity types.

    With ``passthrough`` enabled, unregistered kinds resolve to an entity type
    named after the kind itself.
    """

    def __init__(
        self,
        mapping: Optional[Mapping[str, str]] = None,
        *,
        passthrough: bool = False,
    ) -> None:
        self._types: Dict[str, EntityType] = {}
        self._passthrough = passthrough
        for entity_kind, type_name in (mapping or {}).items():
            self.register(entity_kind, type_name)

    def register(
        self,
        entity_kind: str,
        type_name: str,
        *,
        deserialize: Optional[Deserializer] = None,
    ) -> EntityType:
        entity_type = EntityType(
            name=type_name, deserialize=deserialize or _identity_deserializer
        )
        self._types[entity_kind] = entity_type
        return entity_type

    def resolve(self, entity_kind: str) -> Optional[EntityType]:
        entity_type = self._types.get(entity_kind)
        if entity_type is None and self._passthrough and entity_kind:
            return EntityType(name=entity_kind)
        return entity_type

    def kinds(self) -> List[str]:
        return list(self._types)


__all__ = [
    "ChangeRecord",
    "EntityRegistry",
    "EntitySnapshot",
    "EntityType",
    "EventModelsGroup",
    "Operation",
]
