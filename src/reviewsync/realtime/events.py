"""Change events — the row-level mutation records carried by the change stream.

Learn: A ChangeEvent is ephemeral. The backend builds one after every
committed mutation and publishes it once per scope column present in the
row, so a subscriber filtering on ``content_item_id=eq.42`` and another
filtering on ``id=eq.42`` each receive their own copy. Subscribers never
persist events; they react by invalidating cached queries.

Stream naming: reviewsync:changes:{entity_type}:{column}={value}
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from reviewsync.errors import ValidationError
from reviewsync.events.types import SCOPE_COLUMNS

STREAM_PREFIX = "reviewsync:changes"


class Operation(str, enum.Enum):
    """Row-level operation that produced the event."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


ALL_OPERATIONS = frozenset(Operation)


class ChangeEvent(BaseModel):
    """One row mutation, as seen by a single scoped stream."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    entity_type: str
    scope_key: str = Field(..., description="Stream filter this copy was published under")
    operation: Operation
    payload: dict[str, Any] = Field(default_factory=dict, description="Row after the change")
    old: Optional[dict[str, Any]] = Field(None, description="Row before an UPDATE/DELETE")
    origin_actor_id: Optional[str] = None
    provenance: Optional[str] = Field(None, description="Client mutation id, if any")
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def row(self) -> dict[str, Any]:
        """The row the event is about (``old`` for deletes)."""
        if self.operation is Operation.DELETE and self.old:
            return self.old
        return self.payload

    @property
    def row_id(self) -> Optional[str]:
        value = self.row.get("id")
        return str(value) if value is not None else None


class StreamFilter(BaseModel):
    """Equality predicate on one scope column: ``column=eq.value``."""

    model_config = ConfigDict(frozen=True)

    column: str
    value: str

    @classmethod
    def parse(cls, expression: str) -> "StreamFilter":
        column, sep, rest = expression.partition("=")
        if not sep or not rest.startswith("eq.") or not column or len(rest) <= 3:
            raise ValidationError(
                f"Invalid filter {expression!r}: expected 'column=eq.value'"
            )
        return cls(column=column.strip(), value=rest[3:].strip())

    @classmethod
    def eq(cls, column: str, value: Any) -> "StreamFilter":
        return cls(column=column, value=str(value))

    def __str__(self) -> str:
        return f"{self.column}=eq.{self.value}"

    @property
    def scope_key(self) -> str:
        return f"{self.column}={self.value}"

    def matches(self, event: ChangeEvent) -> bool:
        """Client-side check that an event really belongs to this scope."""
        value = event.row.get(self.column)
        return value is not None and str(value) == self.value


class StreamRequest(BaseModel):
    """A change stream subscription request: one table, one filter, some kinds."""

    model_config = ConfigDict(frozen=True)

    entity_type: str
    filter: StreamFilter
    event_kinds: frozenset[Operation] = ALL_OPERATIONS

    def validate_scope(self) -> "StreamRequest":
        columns = SCOPE_COLUMNS.get(self.entity_type)
        if columns is None:
            raise ValidationError(f"Unknown entity type: {self.entity_type}")
        if self.filter.column not in columns:
            raise ValidationError(
                f"{self.entity_type} streams can only be filtered on {', '.join(columns)}"
            )
        return self

    @property
    def stream_name(self) -> str:
        return stream_name(self.entity_type, self.filter.scope_key)

    def accepts(self, event: ChangeEvent) -> bool:
        return (
            event.entity_type == self.entity_type
            and event.operation in self.event_kinds
            and self.filter.matches(event)
        )


def stream_name(entity_type: str, scope_key: str) -> str:
    return f"{STREAM_PREFIX}:{entity_type}:{scope_key}"


def build_events(
    entity_type: str,
    operation: Operation,
    payload: dict[str, Any],
    *,
    old: Optional[dict[str, Any]] = None,
    origin_actor_id: Optional[str] = None,
    provenance: Optional[str] = None,
) -> list[ChangeEvent]:
    """Fan one row mutation out to every scope the row belongs to.

    Learn: All copies share the same event_id so a consumer subscribed
    to two scopes of the same table can recognise the duplicate.
    """
    row = old if operation is Operation.DELETE and old else payload
    event_id = uuid.uuid4().hex
    occurred_at = datetime.now(timezone.utc)
    events = []
    for column in SCOPE_COLUMNS.get(entity_type, ()):
        value = row.get(column)
        if value is None:
            continue
        events.append(
            ChangeEvent(
                event_id=event_id,
                entity_type=entity_type,
                scope_key=StreamFilter.eq(column, value).scope_key,
                operation=operation,
                payload=payload,
                old=old,
                origin_actor_id=origin_actor_id,
                provenance=provenance,
                occurred_at=occurred_at,
            )
        )
    return events
