"""
Persistence layer for workflow instances, segments and the credit ledger.

WorkflowStore is the protocol the orchestrator talks to. Two backends:
  - InMemoryStore  — process-local dicts, used by tests and local runs
  - SupabaseStore  — production tables (see supabase_store.py)

Conditional updates take an `expect` mapping of column → value (None meaning
IS NULL). The row is written only if every expectation still holds; otherwise
the update returns None and the caller treats the lost race as a no-op.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional, Protocol

from pydantic import BaseModel

from .models import CreditTransaction, InstanceStatus, Segment, WorkflowInstance


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def serialize_value(value: Any) -> Any:
    """Turn enums, datetimes and models into JSON-safe column values."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


def serialize_changes(changes: dict) -> dict:
    return {key: serialize_value(value) for key, value in changes.items()}


class WorkflowStore(Protocol):
    """Protocol for orchestrator persistence backends."""

    async def list_due_instances(
        self, statuses: Iterable[InstanceStatus], limit: int
    ) -> list[WorkflowInstance]:
        """Instances in `statuses`, oldest last_processed_at first (nulls first)."""

    async def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        """Fetch one instance."""

    async def insert_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        """Persist a new instance."""

    async def update_instance(
        self, instance_id: str, changes: dict, expect: Optional[dict] = None
    ) -> Optional[WorkflowInstance]:
        """Apply `changes` if `expect` still holds; None when it does not."""

    async def list_segments(self, project_id: str) -> list[Segment]:
        """All segments of a project ordered by segment_index."""

    async def insert_segments(self, segments: list[Segment]) -> list[Segment]:
        """Persist the segments of a new project."""

    async def update_segment(
        self, segment_id: str, changes: dict, expect: Optional[dict] = None
    ) -> Optional[Segment]:
        """Apply `changes` if `expect` still holds; None when it does not."""

    async def get_balance(self, user_id: str) -> Optional[int]:
        """Current credit balance, None when the user has no credit row."""

    async def compare_and_set_balance(
        self, user_id: str, expected: Optional[int], new_balance: int
    ) -> bool:
        """Write `new_balance` only if the stored balance still equals `expected`."""

    async def append_transaction(self, transaction: CreditTransaction) -> CreditTransaction:
        """Append a ledger entry."""

    async def list_transactions(self, user_id: str, limit: int = 50) -> list[CreditTransaction]:
        """Newest ledger entries first."""


def _matches(model: BaseModel, expect: Optional[dict]) -> bool:
    if not expect:
        return True
    for key, expected in expect.items():
        actual = getattr(model, key)
        if expected is None:
            if actual is not None:
                return False
        elif serialize_value(actual) != serialize_value(expected):
            return False
    return True


class InMemoryStore:
    """Keep orchestrator state in local memory.

    Every method completes without awaiting, so each call is atomic with
    respect to other coroutines on the same event loop.
    """

    def __init__(self) -> None:
        self._instances: dict[str, WorkflowInstance] = {}
        self._segments: dict[str, Segment] = {}
        self._balances: dict[str, int] = {}
        self._transactions: list[CreditTransaction] = []

    # ── Instances ────────────────────────────────────────────────────────

    async def list_due_instances(
        self, statuses: Iterable[InstanceStatus], limit: int
    ) -> list[WorkflowInstance]:
        wanted = {InstanceStatus(s) for s in statuses}
        due = [i for i in self._instances.values() if i.status in wanted]
        due.sort(key=lambda i: (i.last_processed_at is not None, i.last_processed_at or datetime.min))
        return [i.model_copy(deep=True) for i in due[:limit]]

    async def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        instance = self._instances.get(instance_id)
        return instance.model_copy(deep=True) if instance else None

    async def insert_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        now = utcnow()
        stored = instance.model_copy(update={
            "created_at": instance.created_at or now,
            "updated_at": now,
        }, deep=True)
        self._instances[stored.id] = stored
        return stored.model_copy(deep=True)

    async def update_instance(
        self, instance_id: str, changes: dict, expect: Optional[dict] = None
    ) -> Optional[WorkflowInstance]:
        current = self._instances.get(instance_id)
        if current is None or not _matches(current, expect):
            return None
        merged = {**current.model_dump(), **changes, "updated_at": utcnow()}
        updated = WorkflowInstance.model_validate(merged)
        self._instances[instance_id] = updated
        return updated.model_copy(deep=True)

    # ── Segments ─────────────────────────────────────────────────────────

    async def list_segments(self, project_id: str) -> list[Segment]:
        rows = [s for s in self._segments.values() if s.project_id == project_id]
        rows.sort(key=lambda s: s.segment_index)
        return [s.model_copy(deep=True) for s in rows]

    async def insert_segments(self, segments: list[Segment]) -> list[Segment]:
        now = utcnow()
        stored = []
        for segment in segments:
            row = segment.model_copy(update={"created_at": now, "updated_at": now}, deep=True)
            self._segments[row.id] = row
            stored.append(row.model_copy(deep=True))
        return stored

    async def update_segment(
        self, segment_id: str, changes: dict, expect: Optional[dict] = None
    ) -> Optional[Segment]:
        current = self._segments.get(segment_id)
        if current is None or not _matches(current, expect):
            return None
        merged = {**current.model_dump(), **changes, "updated_at": utcnow()}
        updated = Segment.model_validate(merged)
        self._segments[segment_id] = updated
        return updated.model_copy(deep=True)

    # ── Credits ──────────────────────────────────────────────────────────

    async def get_balance(self, user_id: str) -> Optional[int]:
        return self._balances.get(user_id)

    async def compare_and_set_balance(
        self, user_id: str, expected: Optional[int], new_balance: int
    ) -> bool:
        if self._balances.get(user_id) != expected:
            return False
        self._balances[user_id] = new_balance
        return True

    async def append_transaction(self, transaction: CreditTransaction) -> CreditTransaction:
        stored = transaction.model_copy(update={"created_at": transaction.created_at or utcnow()})
        self._transactions.append(stored)
        return stored

    async def list_transactions(self, user_id: str, limit: int = 50) -> list[CreditTransaction]:
        rows = [t for t in self._transactions if t.user_id == user_id]
        return list(reversed(rows))[:limit]
