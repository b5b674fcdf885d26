"""
Credit Ledger.

Charges and refunds move the balance row with a compare-and-swap and append a
matching entry to credit_transactions, so the balance always equals the sum of
the user's transactions:
  - usage    — stored negative
  - refund   — "<original description> refund", linked to the same instance
  - purchase — top-ups and initial grants

Callers that charge several times in one operation use `compensating()` so a
later failure refunds every earlier charge before the error surfaces.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from .errors import InsufficientCreditsError, LedgerWriteError, PersistenceError
from .models import ChargeReceipt, CreditTransaction, TransactionType
from .store import WorkflowStore

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 5


class CreditLedger:
    """Reserve, charge and refund credits against a WorkflowStore."""

    def __init__(self, store: WorkflowStore, max_attempts: int = MAX_CAS_ATTEMPTS):
        self._store = store
        self._max_attempts = max_attempts

    async def get_balance(self, user_id: str) -> int:
        balance = await self._store.get_balance(user_id)
        return balance or 0

    async def list_transactions(self, user_id: str, limit: int = 50) -> list[CreditTransaction]:
        return await self._store.list_transactions(user_id, limit)

    # ── Balance moves ────────────────────────────────────────────────────

    async def _apply_delta(self, user_id: str, delta: int, require_funds: bool) -> int:
        """Atomically add `delta` to the balance. Returns the new balance."""
        for attempt in range(self._max_attempts):
            try:
                current = await self._store.get_balance(user_id)
                available = current or 0
                if require_funds and available < -delta:
                    raise InsufficientCreditsError(required=-delta, available=available)

                new_balance = available + delta
                if await self._store.compare_and_set_balance(user_id, current, new_balance):
                    return new_balance
            except PersistenceError as e:
                raise LedgerWriteError(f"Credit balance update failed for user {user_id}: {e.message}") from e

            logger.warning(
                f"Credit balance for {user_id} changed concurrently "
                f"(attempt {attempt + 1}/{self._max_attempts}) — retrying"
            )

        raise LedgerWriteError(
            f"Credit balance update for user {user_id} lost {self._max_attempts} concurrent races"
        )

    async def _record(
        self,
        user_id: str,
        type_: TransactionType,
        amount: int,
        description: str,
        instance_id: Optional[str],
    ) -> CreditTransaction:
        """Append a ledger entry, reverting the balance move if the append fails."""
        transaction = CreditTransaction(
            user_id=user_id,
            type=type_,
            amount=amount,
            description=description,
            linked_instance_id=instance_id,
        )
        try:
            return await self._store.append_transaction(transaction)
        except PersistenceError as e:
            logger.error(f"Ledger append failed for {user_id} ({description}): {e.message} — reverting balance")
            await self._apply_delta(user_id, -amount, require_funds=False)
            raise LedgerWriteError(f"Failed to record credit transaction: {e.message}") from e

    # ── Public API ───────────────────────────────────────────────────────

    async def reserve_and_charge(
        self,
        user_id: str,
        amount: int,
        description: str,
        instance_id: Optional[str] = None,
    ) -> ChargeReceipt:
        """
        Check the balance covers `amount`, deduct it and record a usage entry.

        Raises:
            InsufficientCreditsError: balance below `amount`; nothing was written.
            LedgerWriteError:         the store rejected the write.
        """
        if amount <= 0:
            raise ValueError(f"Charge amount must be positive, got {amount}")

        new_balance = await self._apply_delta(user_id, -amount, require_funds=True)
        transaction = await self._record(user_id, TransactionType.USAGE, -amount, description, instance_id)

        logger.info(f"Charged {amount} credits to {user_id} ({description}) → balance {new_balance}")
        return ChargeReceipt(
            transaction_id=transaction.id,
            user_id=user_id,
            amount=amount,
            description=description,
            instance_id=instance_id,
        )

    async def refund(self, receipt: ChargeReceipt) -> CreditTransaction:
        """Return a charge's credits and record the matching refund entry."""
        new_balance = await self._apply_delta(receipt.user_id, receipt.amount, require_funds=False)
        transaction = await self._record(
            receipt.user_id,
            TransactionType.REFUND,
            receipt.amount,
            f"{receipt.description} refund",
            receipt.instance_id,
        )
        logger.info(f"Refunded {receipt.amount} credits to {receipt.user_id} → balance {new_balance}")
        return transaction

    async def grant(self, user_id: str, amount: int, description: str = "Credit purchase") -> CreditTransaction:
        """Add purchased or promotional credits."""
        if amount <= 0:
            raise ValueError(f"Grant amount must be positive, got {amount}")
        await self._apply_delta(user_id, amount, require_funds=False)
        return await self._record(user_id, TransactionType.PURCHASE, amount, description, None)

    async def refund_all(self, receipts: list[ChargeReceipt]) -> None:
        """Refund receipts newest first. Keeps going past individual failures."""
        failures = []
        for receipt in reversed(receipts):
            try:
                await self.refund(receipt)
            except PersistenceError as e:
                logger.error(
                    f"Refund of {receipt.amount} credits to {receipt.user_id} failed: {e.message}",
                    exc_info=True,
                )
                failures.append(receipt)
        if failures:
            raise LedgerWriteError(f"{len(failures)} compensating refund(s) could not be recorded")

    @asynccontextmanager
    async def compensating(self) -> AsyncIterator["ChargeBatch"]:
        """
        Scope in which every charge is refunded if the block raises.

        Usage:
            async with ledger.compensating() as batch:
                await batch.charge(user_id, 6, "Segment first frame regeneration", instance_id)
                task_id = await provider.submit(params)
        """
        batch = ChargeBatch(self)
        try:
            yield batch
        except Exception:
            if batch.receipts:
                logger.warning(f"Operation failed — refunding {len(batch.receipts)} charge(s)")
                await self.refund_all(batch.receipts)
            raise


class ChargeBatch:
    """Receipts charged inside one `CreditLedger.compensating()` block."""

    def __init__(self, ledger: CreditLedger):
        self._ledger = ledger
        self.receipts: list[ChargeReceipt] = []

    async def charge(
        self,
        user_id: str,
        amount: int,
        description: str,
        instance_id: Optional[str] = None,
    ) -> Optional[ChargeReceipt]:
        if amount <= 0:
            return None
        receipt = await self._ledger.reserve_and_charge(user_id, amount, description, instance_id)
        self.receipts.append(receipt)
        return receipt

    @property
    def total(self) -> int:
        return sum(r.amount for r in self.receipts)
