# settlement.py
"""
Settlement controller: ends eligible raffles on the ledger.

Per raffle: reconcile tickets sold with the contract, fetch a drand sample,
submit end_raffle, then read the winner back. The local winning index is
logged and stored for display only; the contract picks the winner.

Only one settlement pass runs at a time. A pass that finds another one in
progress is skipped, not queued.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, Optional

from pydantic import ValidationError

from db import ProjectionStore
from errors import LedgerRejection, LedgerUnavailable, RaffleIndexerError
from ledger import LedgerGateway
from models import Raffle
from randomness import DrandBeacon, winning_ticket_index

logger = logging.getLogger(__name__)


class SettlementController:
    def __init__(
        self,
        store: ProjectionStore,
        gateway: LedgerGateway,
        beacon: DrandBeacon,
        *,
        safety_buffer_s: int = 30,
        interval_s: float = 60.0,
        enabled: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.beacon = beacon
        self.safety_buffer = timedelta(seconds=safety_buffer_s)
        self.interval_s = interval_s
        self.enabled = enabled
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = asyncio.Lock()

        self.last_pass_at: Optional[datetime] = None
        self.settled_total = 0

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def now(self) -> datetime:
        return self._clock()

    # -------------------------
    # Passes (single-flight)
    # -------------------------
    async def scan(self) -> int:
        """One periodic pass over every eligible raffle. Returns raffles settled."""
        if self._lock.locked():
            logger.debug("Settlement pass already in progress, skipping scan")
            return 0
        async with self._lock:
            if not self._ready():
                return 0
            raffles = await self.store.find_eligible(self.now(), self.safety_buffer)
            if raffles:
                logger.info(f"Found {len(raffles)} raffles eligible for ending")
            return await self._settle_sequentially(raffles)

    async def settle_many(self, raffles: Iterable[Raffle]) -> int:
        """Settle a caller-chosen set (expiry sweep, sold-out hand-off) under the same guard."""
        raffles = list(raffles)
        if not raffles:
            return 0
        if self._lock.locked():
            logger.debug(f"Settlement pass in progress, {len(raffles)} raffles left for the next pass")
            return 0
        async with self._lock:
            if not self._ready():
                return 0
            return await self._settle_sequentially(raffles)

    def _ready(self) -> bool:
        if not self.enabled:
            logger.debug("Automation disabled, no settlement")
            return False
        if not self.gateway.signer_ready:
            logger.error("Signing client not initialized. Cannot execute transactions.")
            return False
        return True

    async def _settle_sequentially(self, raffles: Iterable[Raffle]) -> int:
        self.last_pass_at = self.now()
        settled = 0
        for raffle in raffles:
            try:
                if await self.settle_raffle(raffle):
                    settled += 1
            except Exception as e:
                logger.error(f"Failed to end raffle {raffle.raffle_id}: {type(e).__name__}: {e}", exc_info=True)
        self.settled_total += settled
        return settled

    # -------------------------
    # One raffle
    # -------------------------
    async def settle_raffle(self, raffle: Raffle) -> bool:
        """
        Returns True when end_raffle was accepted. Benign rejections re-sync
        the store and return False; anything else raises.
        """
        raffle_id = raffle.raffle_id
        logger.info(f"Attempting to end raffle {raffle_id} (token {raffle.token_id})")

        # 1. contract state is authoritative for tickets sold
        view = await self.gateway.query_raffle(raffle_id)
        if view is None:
            logger.warning(f"Raffle {raffle_id} not found on contract, skipping")
            return False
        if view.status != "active":
            logger.warning(f"Raffle {raffle_id} is {view.status} on-chain, syncing store")
            await self.store.apply_ledger_view(view)
            return False

        sold = view.total_sold
        if sold != raffle.tickets_sold:
            logger.warning(
                f"Tickets sold mismatch for raffle {raffle_id}: contract {sold}, store {raffle.tickets_sold}; using contract value"
            )
            await self.store.set_tickets_sold(raffle_id, sold)
        if sold <= 0:
            logger.info(f"Raffle {raffle_id} has no tickets sold on-chain, skipping")
            return False

        # 2. randomness
        sample = await self.beacon.latest()

        # 3. display-only index
        index = winning_ticket_index(sample.randomness, sold)
        logger.info(f"drand round {sample.round}: expected winning ticket index {index} of {sold}")

        # 4. submit
        msg = {
            "end_raffle": {
                "raffle_id": int(raffle_id),
                "drand_round": sample.round,
                "randomness": sample.randomness,
                "signature": sample.signature,
            }
        }
        try:
            result = await self.gateway.execute_contract(self.gateway.signer_address, msg)
        except LedgerRejection as e:
            if not e.is_benign:
                raise
            logger.warning(f"Raffle {raffle_id} end rejected ({e.kind.value}): {e}; syncing store")
            await self.sync_raffle_status(raffle_id)
            return False

        if not result.succeeded:
            raise LedgerRejection.from_message(result.raw_log, tx_hash=result.tx_hash, code=result.code)
        logger.info(f"Ended raffle {raffle_id}, tx {result.tx_hash}")

        # 5. read the winner back
        end_reason = "soldout" if sold >= view.max_tickets else "time"
        winner: Optional[str] = None
        try:
            after = await self.gateway.query_raffle(raffle_id)
            winner = after.winner if after is not None else None
        except (LedgerUnavailable, ValidationError) as e:
            logger.warning(f"Winner read-back failed for raffle {raffle_id}: {e}")
        if winner is None:
            logger.warning(f"No winner readable for raffle {raffle_id} yet; the indexer will fill it in")

        await self.store.complete_settlement(
            raffle_id,
            end_tx_hash=result.tx_hash,
            drand_round=sample.round,
            end_reason=end_reason,
            tickets_sold=sold,
            winner=winner,
            winner_ticket_index=index if winner else None,
        )
        if winner:
            logger.info(f"Raffle {raffle_id} completed, winner {winner}")
        return True

    async def sync_raffle_status(self, raffle_id: str) -> bool:
        """Copy status / winner / tickets sold from the contract into the store."""
        try:
            view = await self.gateway.query_raffle(raffle_id)
        except RaffleIndexerError as e:
            logger.error(f"Failed to sync raffle {raffle_id} status: {e}")
            return False
        if view is None:
            return False
        await self.store.apply_ledger_view(view)
        logger.info(f"Synced raffle {raffle_id} status: {view.status}")
        return True

    # -------------------------
    # Introspection
    # -------------------------
    async def stats(self) -> Dict[str, Any]:
        now = self.now()
        return {
            "enabled": self.enabled,
            "busy": self.busy,
            "interval_s": self.interval_s,
            "signer_ready": self.gateway.signer_ready,
            "signer_address": self.gateway.signer_address,
            "eligible": await self.store.count_eligible(now, self.safety_buffer),
            "completed_24h": await self.store.count_completed_since(now - timedelta(hours=24)),
            "active": await self.store.count_raffles(status="active"),
            "settled_total": self.settled_total,
            "last_pass_at": self.last_pass_at.isoformat() if self.last_pass_at else None,
        }
