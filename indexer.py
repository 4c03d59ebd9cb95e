# indexer.py
"""
Ledger indexer: walks block heights in bounded batches, projects contract
events into the store and advances the durable sync cursor.

Projection rules are keyed by raffle_id and every one of them is idempotent,
so re-applying a batch after a crash (cursor not yet advanced) is harmless.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from db import ProjectionStore
from ledger import LedgerGateway
from models import (
    ContractEvent,
    RaffleCancelled,
    RaffleCreated,
    RaffleEnded,
    TicketsBought,
    UnknownEvent,
    WinnerSelected,
)

logger = logging.getLogger(__name__)

# upper bound for one manual reprocess request
MAX_REPROCESS_SPAN = 10_000
LEDGER_PAGE_LIMIT = 50


class Indexer:
    def __init__(
        self,
        store: ProjectionStore,
        gateway: LedgerGateway,
        *,
        batch_size: int = 100,
        start_height: int = 1,
        controller: Any = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.batch_size = max(1, int(batch_size))
        self.start_height = max(1, int(start_height))
        # settlement controller used by the expiry sweep
        self.controller = controller
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.last_height: Optional[int] = None
        self.chain_height: Optional[int] = None
        self.last_poll_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

        self._handlers = {
            RaffleCreated: self._on_created,
            TicketsBought: self._on_tickets_bought,
            RaffleEnded: self._on_ended,
            WinnerSelected: self._on_winner,
            RaffleCancelled: self._on_cancelled,
        }

    # -------------------------
    # Cursor
    # -------------------------
    async def load_cursor(self) -> int:
        """Persisted cursor, or INDEXING_START_HEIGHT - 1 on a fresh store."""
        self.last_height = await self.store.init_cursor(self.start_height)
        return self.last_height

    def lag(self) -> Optional[int]:
        if self.chain_height is None or self.last_height is None:
            return None
        return max(0, self.chain_height - self.last_height)

    # -------------------------
    # Polling
    # -------------------------
    async def poll_once(self) -> int:
        """
        One indexing pass over at most batch_size heights.
        Returns the number of events applied. Any failure to read the height
        or the events propagates and leaves the cursor where it was.
        """
        try:
            return await self._poll()
        except Exception as e:
            self.last_error = f"{type(e).__name__}: {e}"
            raise

    async def _poll(self) -> int:
        # re-read every pass so an operator reset is picked up
        last = await self.store.get_cursor()
        if last is None:
            last = await self.load_cursor()
        self.last_height = last

        current = await self.gateway.current_height()
        self.chain_height = current
        self.last_poll_at = self._clock()
        if current <= last:
            return 0

        to_height = min(last + self.batch_size, current)
        events = await self.gateway.events_in_range(last + 1, to_height)
        applied = await self._apply_all(events)

        self.last_height = await self.store.advance_cursor(to_height)
        self.last_error = None
        if events:
            logger.info(f"Indexed heights {last + 1}-{to_height}: {applied}/{len(events)} events applied")
        else:
            logger.debug(f"Indexed heights {last + 1}-{to_height}: no contract events")
        return applied

    async def process_range(self, from_height: int, to_height: int) -> Dict[str, int]:
        """Manual reprocess of [from_height, to_height]. Does not touch the cursor."""
        if from_height < 1 or to_height < from_height:
            raise ValueError(f"invalid height range {from_height}..{to_height}")
        if to_height - from_height + 1 > MAX_REPROCESS_SPAN:
            raise ValueError(f"range too large (max {MAX_REPROCESS_SPAN} heights)")

        logger.info(f"Manually processing heights {from_height}-{to_height}")
        events = await self.gateway.events_in_range(from_height, to_height)
        applied = await self._apply_all(events)
        return {"from_height": from_height, "to_height": to_height, "events": len(events), "applied": applied}

    async def _apply_all(self, events: List[ContractEvent]) -> int:
        applied = 0
        for ev in events:
            try:
                if await self.apply_event(ev):
                    applied += 1
            except Exception as e:
                logger.error(f"Failed to apply {ev.kind} at {ev.height} ({ev.tx_hash}): {e}", exc_info=True)
        return applied

    # -------------------------
    # Projection
    # -------------------------
    async def apply_event(self, ev: ContractEvent) -> bool:
        """Project one event. Returns True when the store changed."""
        handler = self._handlers.get(type(ev))
        if handler is None:
            if isinstance(ev, UnknownEvent):
                logger.debug(f"Ignoring contract action {ev.kind!r} in {ev.tx_hash}")
            return False
        return await handler(ev)

    async def _on_created(self, ev: RaffleCreated) -> bool:
        inserted = await self.store.insert_raffle(ev)
        if inserted:
            logger.info(f"New raffle {ev.raffle_id} by {ev.creator} ({ev.max_tickets} tickets)")
        else:
            logger.info(f"Raffle {ev.raffle_id} already indexed, skipping")
        return inserted

    async def _on_tickets_bought(self, ev: TicketsBought) -> bool:
        recorded = await self.store.record_purchase(ev)
        if recorded:
            logger.info(f"{ev.buyer} bought {ev.quantity} tickets for raffle {ev.raffle_id}")
        else:
            logger.debug(f"Purchase {ev.tx_hash}#{ev.event_index} already recorded")
        return recorded

    async def _on_ended(self, ev: RaffleEnded) -> bool:
        ok = await self.store.mark_raffle_ended(ev)
        if ok:
            logger.info(f"Raffle {ev.raffle_id} ended ({ev.end_reason}, drand round {ev.drand_round})")
        else:
            logger.warning(f"raffle_ended for unknown raffle {ev.raffle_id}")
        return ok

    async def _on_winner(self, ev: WinnerSelected) -> bool:
        ok = await self.store.set_winner(ev)
        if ok:
            logger.info(f"Raffle {ev.raffle_id} winner {ev.winner} (ticket {ev.ticket_index})")
        else:
            logger.warning(f"winner_selected for unknown raffle {ev.raffle_id}")
        return ok

    async def _on_cancelled(self, ev: RaffleCancelled) -> bool:
        ok = await self.store.mark_raffle_cancelled(ev)
        if ok:
            logger.info(f"Raffle {ev.raffle_id} cancelled by {ev.creator}")
        else:
            logger.warning(f"raffle_cancelled for unknown raffle {ev.raffle_id}")
        return ok

    # -------------------------
    # Secondary tasks
    # -------------------------
    async def sweep_expired(self, controller: Any = None) -> int:
        """Hand time-expired active raffles with sales to the settlement controller."""
        controller = controller or self.controller
        if controller is None:
            return 0
        expired = await self.store.find_time_expired(self._clock())
        if not expired:
            return 0
        logger.info(f"Found {len(expired)} time-expired raffles to process")
        return await controller.settle_many(expired)

    async def sync_from_ledger(self, limit: int = LEDGER_PAGE_LIMIT) -> int:
        """Page the contract's `raffles` query and upsert every view. Returns views synced."""
        synced = 0
        start_after: Optional[str] = None
        while True:
            views = await self.gateway.query_raffles(start_after=start_after, limit=limit)
            for view in views:
                await self.store.upsert_raffle_from_ledger(view)
                synced += 1
            if len(views) < limit:
                break
            start_after = str(views[-1].id)
        logger.info(f"Synced {synced} raffles from contract")
        return synced

    def status(self) -> Dict[str, Any]:
        return {
            "last_processed_height": self.last_height,
            "chain_height": self.chain_height,
            "lag": self.lag(),
            "batch_size": self.batch_size,
            "last_poll_at": self.last_poll_at.isoformat() if self.last_poll_at else None,
            "last_error": self.last_error,
        }
