"""
Cost ledger - the balance gate in front of every costed stage.

Debits are taken once per stage (never per character / scene), before the
stage issues its first remote call. A refused debit is a hard precondition
failure: the stage does no work at all. Debits are never reversed.

  image stage cost = scenes_in_run × costs.image
  video stage cost = Σ scene.duration_seconds × costs.video_per_second
"""

import asyncio
import logging
from typing import Optional, Protocol

from supabase import create_client, Client

from ..config import CostRates, SupabaseSettings
from ..errors import PreconditionFailure
from .models import DebitResult, LedgerEntry, OperationKind, Scene

logger = logging.getLogger(__name__)


def estimate_image_cost(scene_count: int, costs: CostRates) -> int:
    return scene_count * costs.image


def estimate_video_cost(scenes: list[Scene], costs: CostRates) -> int:
    return sum(s.duration_seconds for s in scenes) * costs.video_per_second


class BalanceStore(Protocol):
    async def get_balance(self, user_id: str) -> int: ...

    async def debit(self, user_id: str, amount: int, reason: str) -> DebitResult: ...


class CostLedger:
    """Append-only record of debit attempts for one orchestrator."""

    def __init__(self, store: BalanceStore):
        self.store = store
        self.entries: list[LedgerEntry] = []

    async def try_debit(
        self,
        user_id: str,
        amount: int,
        operation_kind: OperationKind,
        run_id: str,
    ) -> DebitResult:
        if amount <= 0:
            result = DebitResult(ok=True, new_balance=await self.store.get_balance(user_id))
        else:
            result = await self.store.debit(user_id, amount, operation_kind.value)

        self.entries.append(LedgerEntry(
            amount=amount,
            operation_kind=operation_kind,
            run_id=run_id,
            accepted=result.ok,
            balance_after=result.new_balance,
        ))
        logger.info(
            f"[{run_id}] debit {operation_kind.value} amount={amount} "
            f"{'accepted' if result.ok else 'REFUSED'} balance={result.new_balance}"
        )
        return result

    async def require(
        self,
        user_id: str,
        amount: int,
        operation_kind: OperationKind,
        run_id: str,
    ) -> DebitResult:
        """Debit or raise PreconditionFailure('insufficient-balance')."""
        result = await self.try_debit(user_id, amount, operation_kind, run_id)
        if not result.ok:
            raise PreconditionFailure(
                "insufficient-balance",
                f"Insufficient balance for {operation_kind.value}: "
                f"required {amount}, available {result.new_balance}",
            )
        return result

    def entries_for(self, run_id: str) -> list[LedgerEntry]:
        return [e for e in self.entries if e.run_id == run_id]


# ── Supabase Balance Store ───────────────────────────────────────────────────

class SupabaseBalanceStore:
    """
    Balance in `profiles.balance_cents`; every debit appends a row to
    `credit_transactions`. The debit is a compare-and-set update on the balance
    read, retried when a concurrent writer got there first.
    """

    MAX_CAS_ATTEMPTS = 3

    def __init__(self, settings: SupabaseSettings, client: Optional[Client] = None):
        self.settings = settings
        self._client = client

    def _sb(self) -> Client:
        if self._client is None:
            if not self.settings.url or not self.settings.service_role_key:
                raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
            self._client = create_client(self.settings.url, self.settings.service_role_key)
        return self._client

    def _read_balance(self, user_id: str) -> int:
        profile = (
            self._sb().table("profiles")
            .select("balance_cents")
            .eq("id", user_id)
            .single()
            .execute()
        )
        return (profile.data or {}).get("balance_cents") or 0

    def _debit_sync(self, user_id: str, amount: int, reason: str) -> DebitResult:
        sb = self._sb()

        for _ in range(self.MAX_CAS_ATTEMPTS):
            balance = self._read_balance(user_id)
            if balance < amount:
                return DebitResult(ok=False, new_balance=balance)

            new_balance = balance - amount
            updated = (
                sb.table("profiles")
                .update({"balance_cents": new_balance})
                .eq("id", user_id)
                .eq("balance_cents", balance)
                .execute()
            )
            if not updated.data:
                logger.warning(f"Balance for user {user_id} changed during debit, retrying")
                continue

            try:
                sb.table("credit_transactions").insert({
                    "user_id": user_id,
                    "amount_cents": -amount,
                    "operation_type": reason,
                    "type": "consumption",
                    "description": f"Consumo: {reason}",
                }).execute()
            except Exception as e:
                logger.error(f"Failed to record transaction for user {user_id}: {e}")

            return DebitResult(ok=True, new_balance=new_balance)

        raise RuntimeError(f"Balance debit for user {user_id} kept conflicting; giving up")

    async def get_balance(self, user_id: str) -> int:
        return await asyncio.to_thread(self._read_balance, user_id)

    async def debit(self, user_id: str, amount: int, reason: str) -> DebitResult:
        return await asyncio.to_thread(self._debit_sync, user_id, amount, reason)
