"""Entity records and the entity arena for parsed STEP data.

The cross-reference graph of a STEP file is cyclic, so it is stored as an
arena: records are indexed by integer entity id and references stay as
``Ref`` values until a caller resolves them through the graph.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, NamedTuple, Optional, Tuple


class Ref(NamedTuple):
    """Reference to another entity instance (``#123``)."""

    id: int

    def __repr__(self) -> str:
        return f"#{self.id}"


class StepEnum(NamedTuple):
    """Enumeration value such as ``.MILLI.`` (booleans are decoded to ``bool``)."""

    name: str

    def __repr__(self) -> str:
        return f".{self.name}."


class TypedParam(NamedTuple):
    """Typed parameter such as ``LENGTH_MEASURE(1.0)``."""

    type: str
    value: Any


class _Derived:
    """Singleton for the ``*`` (derived attribute) token."""

    _instance: Optional["_Derived"] = None

    def __new__(cls) -> "_Derived":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "*"


DERIVED = _Derived()


@dataclass
class EntityRecord:
    """One entity instance from the DATA section.

    Simple instances have a ``type`` and ``params``. Complex instances
    (``#n = (A(...) B(...));``) have ``type == "COMPLEX"`` and one entry per
    partial type in ``parts``.
    """

    id: int
    type: str
    params: Tuple[Any, ...]
    offset: int = 0
    parts: Dict[str, Tuple[Any, ...]] = field(default_factory=dict)

    @property
    def is_complex(self) -> bool:
        return self.type == "COMPLEX"

    def is_a(self, name: str) -> bool:
        """Return True if this record is, or contains the partial type, ``name``."""
        return self.type == name or name in self.parts

    def part(self, name: str) -> Tuple[Any, ...]:
        """Return the parameters of ``name``, for simple and complex records alike."""
        if self.type == name:
            return self.params
        try:
            return self.parts[name]
        except KeyError:
            raise KeyError(f"#{self.id} has no {name} part") from None

    @property
    def type_names(self) -> List[str]:
        if self.is_complex:
            return list(self.parts)
        return [self.type]

    def references(self) -> Iterator[Ref]:
        """Yield every reference in the parameters (and parts) of this record."""
        stack: List[Any] = list(self.params)
        for params in self.parts.values():
            stack.extend(params)
        while stack:
            value = stack.pop()
            if isinstance(value, Ref):
                yield value
            elif isinstance(value, TypedParam):
                stack.append(value.value)
            elif isinstance(value, (tuple, list)):
                stack.extend(value)


@dataclass
class HeaderRecord:
    """Header section entry such as ``FILE_SCHEMA(('AUTOMOTIVE_DESIGN'))``."""

    type: str
    params: Tuple[Any, ...]


@dataclass
class EntityGraph:
    """Arena of parsed entity records keyed by entity id."""

    records: Dict[int, EntityRecord] = field(default_factory=dict)
    header: List[HeaderRecord] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.records)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self.records

    def __getitem__(self, entity_id: int) -> EntityRecord:
        return self.records[entity_id]

    def get(self, entity_id: int) -> Optional[EntityRecord]:
        return self.records.get(entity_id)

    def resolve(self, value: Any) -> EntityRecord:
        """Resolve a ``Ref`` (or a raw id) to its record."""
        entity_id = value.id if isinstance(value, Ref) else int(value)
        return self.records[entity_id]

    def of_type(self, *names: str) -> List[EntityRecord]:
        """Return records that are any of ``names``, in ascending id order."""
        return [
            record for _, record in sorted(self.records.items())
            if any(record.is_a(name) for name in names)
        ]

    def type_counts(self) -> Dict[str, int]:
        """Count records per type name (complex records count each part)."""
        counts: Dict[str, int] = {}
        for record in self.records.values():
            for name in record.type_names:
                counts[name] = counts.get(name, 0) + 1
        return dict(sorted(counts.items()))

    def header_value(self, name: str) -> Optional[Tuple[Any, ...]]:
        for record in self.header:
            if record.type == name:
                return record.params
        return None

    @property
    def schema(self) -> Optional[str]:
        """First schema name from ``FILE_SCHEMA``, if present."""
        params = self.header_value("FILE_SCHEMA")
        if not params or not params[0]:
            return None
        names = params[0]
        if isinstance(names, tuple) and names:
            return str(names[0])
        return None
