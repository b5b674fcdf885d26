"""
Supabase-backed WorkflowStore.

Tables:
  workflow_instances   — one row per WorkflowInstance
  workflow_segments    — one row per Segment (project_id → workflow_instances.id)
  user_credits         — user_id, credits_remaining
  credit_transactions  — append-only ledger

All mutations go through the service role client (RLS bypass). supabase-py is
synchronous, so each call runs in a worker thread to keep the event loop free.
"""

import asyncio
import logging
from typing import Callable, Iterable, Optional, TypeVar

from supabase import Client, create_client

from .errors import PersistenceError
from .models import CreditTransaction, InstanceStatus, Segment, WorkflowInstance
from .store import serialize_changes, serialize_value, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

INSTANCES_TABLE = "workflow_instances"
SEGMENTS_TABLE = "workflow_segments"
CREDITS_TABLE = "user_credits"
TRANSACTIONS_TABLE = "credit_transactions"


def _apply_expectations(query, expect: Optional[dict]):
    for column, value in (expect or {}).items():
        if value is None:
            query = query.is_(column, "null")
        else:
            query = query.eq(column, serialize_value(value))
    return query


class SupabaseStore:
    """WorkflowStore over Supabase (PostgREST) tables."""

    def __init__(self, client: Client):
        self._client = client

    @classmethod
    def from_credentials(cls, url: str, key: str) -> "SupabaseStore":
        if not url or not key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        return cls(create_client(url, key))

    async def _run(self, description: str, fn: Callable[[], T]) -> T:
        try:
            return await asyncio.to_thread(fn)
        except Exception as e:
            logger.error(f"Supabase {description} failed: {e}")
            raise PersistenceError(f"Failed to {description}: {e}") from e

    # ── Instances ────────────────────────────────────────────────────────

    async def list_due_instances(
        self, statuses: Iterable[InstanceStatus], limit: int
    ) -> list[WorkflowInstance]:
        values = [InstanceStatus(s).value for s in statuses]

        def query():
            return (
                self._client.table(INSTANCES_TABLE)
                .select("*")
                .in_("status", values)
                .order("last_processed_at", desc=False, nullsfirst=True)
                .limit(limit)
                .execute()
            )

        result = await self._run("load due instances", query)
        return [WorkflowInstance.model_validate(row) for row in result.data or []]

    async def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        result = await self._run(
            "load instance",
            lambda: self._client.table(INSTANCES_TABLE).select("*").eq("id", instance_id).limit(1).execute(),
        )
        rows = result.data or []
        return WorkflowInstance.model_validate(rows[0]) if rows else None

    async def insert_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        now = utcnow()
        row = instance.model_copy(update={
            "created_at": instance.created_at or now,
            "updated_at": now,
        }).model_dump(mode="json")
        result = await self._run(
            "insert instance",
            lambda: self._client.table(INSTANCES_TABLE).insert(row).execute(),
        )
        return WorkflowInstance.model_validate(result.data[0])

    async def update_instance(
        self, instance_id: str, changes: dict, expect: Optional[dict] = None
    ) -> Optional[WorkflowInstance]:
        payload = serialize_changes({**changes, "updated_at": utcnow()})

        def query():
            q = self._client.table(INSTANCES_TABLE).update(payload).eq("id", instance_id)
            return _apply_expectations(q, expect).execute()

        result = await self._run("update instance", query)
        rows = result.data or []
        return WorkflowInstance.model_validate(rows[0]) if rows else None

    # ── Segments ─────────────────────────────────────────────────────────

    async def list_segments(self, project_id: str) -> list[Segment]:
        result = await self._run(
            "load segments",
            lambda: (
                self._client.table(SEGMENTS_TABLE)
                .select("*")
                .eq("project_id", project_id)
                .order("segment_index")
                .execute()
            ),
        )
        return [Segment.model_validate(row) for row in result.data or []]

    async def insert_segments(self, segments: list[Segment]) -> list[Segment]:
        if not segments:
            return []
        now = utcnow()
        rows = [
            s.model_copy(update={"created_at": now, "updated_at": now}).model_dump(mode="json")
            for s in segments
        ]
        result = await self._run(
            "insert segments",
            lambda: self._client.table(SEGMENTS_TABLE).insert(rows).execute(),
        )
        return [Segment.model_validate(row) for row in result.data or []]

    async def update_segment(
        self, segment_id: str, changes: dict, expect: Optional[dict] = None
    ) -> Optional[Segment]:
        payload = serialize_changes({**changes, "updated_at": utcnow()})

        def query():
            q = self._client.table(SEGMENTS_TABLE).update(payload).eq("id", segment_id)
            return _apply_expectations(q, expect).execute()

        result = await self._run("update segment", query)
        rows = result.data or []
        return Segment.model_validate(rows[0]) if rows else None

    # ── Credits ──────────────────────────────────────────────────────────

    async def get_balance(self, user_id: str) -> Optional[int]:
        result = await self._run(
            "read credit balance",
            lambda: (
                self._client.table(CREDITS_TABLE)
                .select("credits_remaining")
                .eq("user_id", user_id)
                .limit(1)
                .execute()
            ),
        )
        rows = result.data or []
        return int(rows[0].get("credits_remaining") or 0) if rows else None

    async def compare_and_set_balance(
        self, user_id: str, expected: Optional[int], new_balance: int
    ) -> bool:
        now = utcnow().isoformat()

        if expected is None:
            result = await self._run(
                "create credit account",
                lambda: self._client.table(CREDITS_TABLE).insert({
                    "user_id": user_id,
                    "credits_remaining": new_balance,
                    "updated_at": now,
                }).execute(),
            )
            return bool(result.data)

        result = await self._run(
            "write credit balance",
            lambda: (
                self._client.table(CREDITS_TABLE)
                .update({"credits_remaining": new_balance, "updated_at": now})
                .eq("user_id", user_id)
                .eq("credits_remaining", expected)
                .execute()
            ),
        )
        return bool(result.data)

    async def append_transaction(self, transaction: CreditTransaction) -> CreditTransaction:
        row = transaction.model_copy(update={
            "created_at": transaction.created_at or utcnow(),
        }).model_dump(mode="json")
        result = await self._run(
            "record credit transaction",
            lambda: self._client.table(TRANSACTIONS_TABLE).insert(row).execute(),
        )
        return CreditTransaction.model_validate(result.data[0])

    async def list_transactions(self, user_id: str, limit: int = 50) -> list[CreditTransaction]:
        result = await self._run(
            "load credit transactions",
            lambda: (
                self._client.table(TRANSACTIONS_TABLE)
                .select("*")
                .eq("user_id", user_id)
                .order("created_at", desc=True)
                .limit(limit)
                .execute()
            ),
        )
        return [CreditTransaction.model_validate(row) for row in result.data or []]
