"""Base error types shared by the entity-graph parser and the kernel.

Every error carries enough context (entity id, face index, byte offset) to
make a failed load actionable in a log or UI. The context is kept both as
attributes and in the rendered message.
"""

from __future__ import annotations

from typing import Any


class StepMeshError(Exception):
    """Base class for all pipeline errors."""

    def __init__(
        self,
        message: str,
        *,
        entity_id: int | None = None,
        face_index: int | None = None,
        offset: int | None = None,
    ) -> None:
        self.message = message
        self.entity_id = entity_id
        self.face_index = face_index
        self.offset = offset
        super().__init__(self._render())

    def _render(self) -> str:
        context = []
        if self.entity_id is not None:
            context.append(f"entity #{self.entity_id}")
        if self.face_index is not None:
            context.append(f"face {self.face_index}")
        if self.offset is not None:
            context.append(f"byte offset {self.offset}")
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"

    def context(self) -> dict[str, Any]:
        """Return the non-empty context fields for structured logging."""
        fields = {
            "entity_id": self.entity_id,
            "face_index": self.face_index,
            "offset": self.offset,
        }
        return {k: v for k, v in fields.items() if v is not None}


class ParseError(StepMeshError):
    """Raised for malformed STEP syntax, unresolved references or unsupported entities."""

    pass
