"""Audit records and the audit trail.

Every write performed by the core produces one typed AuditRecord:
``(actor_id, action, entity_table, entity_id, old_value, new_value)``.
Records are collected while a transaction runs and handed to the
AuditTrail only after the transaction commits, so a rolled-back write never
leaves an audit entry behind.

Delivery is fire-and-forget: a sink that raises is logged and skipped, and
never fails the operation that produced the record.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from fpms.clock import utcnow
from fpms.types import EventType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditRecord:
    """One audit log entry.

    Attributes:
        actor_id: User id of the principal that performed the write
        action: Action tag
        entity_table: Table the written row lives in
        entity_id: Id of the written row
        old_value: Relevant values before the write (None for inserts)
        new_value: Relevant values after the write (None for deletes)
        ts: UTC instant the record was produced
        record_id: Unique record identifier

    Examples:
        >>> record = AuditRecord(
        ...     actor_id=1,
        ...     action=EventType.FORM_CREATED,
        ...     entity_table="forms",
        ...     entity_id=12,
        ...     new_value={"code": "FAM01"},
        ... )
        >>> record.to_dict()["action"]
        'form.created'
    """
    actor_id: Optional[int]
    action: EventType
    entity_table: str
    entity_id: Optional[int]
    old_value: Optional[Dict[str, Any]] = None
    new_value: Optional[Dict[str, Any]] = None
    ts: datetime = field(default_factory=utcnow)
    record_id: str = field(default_factory=lambda: f"aud_{uuid.uuid4().hex[:16]}")

    def __post_init__(self):
        if isinstance(self.action, str) and not isinstance(self.action, EventType):
            object.__setattr__(self, "action", EventType(self.action))

    def to_dict(self) -> Dict[str, Any]:
        """Convert record to dictionary for serialization."""
        result: Dict[str, Any] = {
            "recordId": self.record_id,
            "actorId": self.actor_id,
            "action": self.action.value,
            "entityTable": self.entity_table,
            "entityId": self.entity_id,
            "ts": self.ts.isoformat(),
        }
        if self.old_value is not None:
            result["oldValue"] = self.old_value
        if self.new_value is not None:
            result["newValue"] = self.new_value
        return result

    def to_jsonl(self) -> str:
        """Single-line JSON suitable for appending to a JSONL audit file."""
        return json.dumps(self.to_dict(), separators=(",", ":"), default=str)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditRecord":
        return cls(
            actor_id=data.get("actorId"),
            action=EventType(data["action"]),
            entity_table=data["entityTable"],
            entity_id=data.get("entityId"),
            old_value=data.get("oldValue"),
            new_value=data.get("newValue"),
            ts=datetime.fromisoformat(data["ts"]),
            record_id=data["recordId"],
        )


AuditSink = Callable[[AuditRecord], None]
"""Any callable accepting an AuditRecord.

Sinks are called synchronously after commit, in registration order.
"""


class AuditTrail:
    """Dispatches committed audit records to registered sinks.

    Supports sinks for a specific action tag and wildcard sinks that see
    every record. Sink failures are isolated from each other and from the
    caller.

    Examples:
        >>> trail = AuditTrail()
        >>> seen = []
        >>> trail.on_any(seen.append)
        >>> trail.emit(AuditRecord(1, EventType.FORM_CREATED, "forms", 3))
        >>> len(seen)
        1
    """

    def __init__(self):
        self._listeners: Dict[EventType, List[AuditSink]] = {}
        self._any_listeners: List[AuditSink] = []

    def on(self, action: EventType, sink: AuditSink) -> None:
        self._listeners.setdefault(action, []).append(sink)

    def on_any(self, sink: AuditSink) -> None:
        self._any_listeners.append(sink)

    def off(self, action: EventType, sink: AuditSink) -> None:
        listeners = self._listeners.get(action, [])
        if sink in listeners:
            listeners.remove(sink)

    def off_any(self, sink: AuditSink) -> None:
        if sink in self._any_listeners:
            self._any_listeners.remove(sink)

    def emit(self, record: AuditRecord) -> None:
        """Deliver one record to type-specific sinks, then wildcard sinks."""
        for sink in list(self._listeners.get(record.action, [])) + list(self._any_listeners):
            try:
                sink(record)
            except Exception:
                logger.warning(
                    "Audit sink failed for %s on %s:%s",
                    record.action.value,
                    record.entity_table,
                    record.entity_id,
                    exc_info=True,
                )

    def emit_all(self, records: Iterable[AuditRecord]) -> None:
        for record in records:
            self.emit(record)

    def clear(self) -> None:
        self._listeners.clear()
        self._any_listeners.clear()

    def listener_count(self, action: Optional[EventType] = None) -> int:
        """Number of registered sinks (for one action, or all including wildcard)."""
        if action is not None:
            return len(self._listeners.get(action, []))
        return len(self._any_listeners) + sum(len(v) for v in self._listeners.values())


class MemoryAuditSink:
    """Keeps every record in memory; handy for inspection and tests."""

    def __init__(self):
        self.records: List[AuditRecord] = []

    def __call__(self, record: AuditRecord) -> None:
        self.records.append(record)

    def actions(self) -> List[EventType]:
        return [r.action for r in self.records]


class JsonlAuditSink:
    """Appends each record as one JSON line to a file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def __call__(self, record: AuditRecord) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as fh:
            fh.write(record.to_jsonl() + "\n")


__all__ = [
    "AuditRecord",
    "AuditSink",
    "AuditTrail",
    "MemoryAuditSink",
    "JsonlAuditSink",
]
