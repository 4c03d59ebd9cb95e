"""Builders for typed events and ledger views used across the tests."""

from datetime import datetime, timedelta, timezone
from typing import Optional

from models import (
    LedgerRaffleView,
    RaffleCancelled,
    RaffleCreated,
    RaffleEnded,
    RandomnessSample,
    TicketsBought,
    WinnerSelected,
)

T0 = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
CONTRACT = "testcore1rafflecontract"
SIGNER = "testcore1automation"
CREATOR = "testcore1creator"

# first 8 bytes read big-endian == 7
RANDOMNESS = "0000000000000007" + "ab" * 24


def created(
    raffle_id: str = "1",
    *,
    max_tickets: int = 10,
    end_time: Optional[datetime] = None,
    height: int = 100,
    creator: str = CREATOR,
) -> RaffleCreated:
    return RaffleCreated(
        raffle_id=raffle_id,
        height=height,
        tx_hash=f"CREATE{raffle_id}",
        timestamp=T0,
        creator=creator,
        nft_contract="testcore1nft",
        token_id=f"token-{raffle_id}",
        ticket_price="100",
        price_denom="utestcore",
        max_tickets=max_tickets,
        start_time=None,
        end_time=end_time or T0 + timedelta(hours=1),
        revenue_address=creator,
        payment_denom="utestcore",
    )


def bought(
    raffle_id: str = "1",
    *,
    buyer: str = "testcore1alice",
    quantity: int = 1,
    tx_hash: str = "BUY1",
    event_index: int = 0,
    timestamp: datetime = T0,
    height: int = 101,
) -> TicketsBought:
    return TicketsBought(
        raffle_id=raffle_id,
        height=height,
        tx_hash=tx_hash,
        event_index=event_index,
        timestamp=timestamp,
        buyer=buyer,
        quantity=quantity,
        total_paid=str(100 * quantity),
        denom="utestcore",
    )


def ended(raffle_id: str = "1", *, end_reason: str = "time", drand_round: int = 4242, height: int = 200) -> RaffleEnded:
    return RaffleEnded(
        raffle_id=raffle_id, height=height, tx_hash=f"END{raffle_id}", event_index=0, timestamp=T0,
        end_reason=end_reason, drand_round=drand_round,
    )


def winner(raffle_id: str = "1", *, address: str = "testcore1alice", ticket_index: int = 0, height: int = 200) -> WinnerSelected:
    return WinnerSelected(
        raffle_id=raffle_id, height=height, tx_hash=f"END{raffle_id}", event_index=1, timestamp=T0,
        winner=address, ticket_index=ticket_index,
    )


def cancelled(raffle_id: str = "1", *, height: int = 150) -> RaffleCancelled:
    return RaffleCancelled(
        raffle_id=raffle_id, height=height, tx_hash=f"CANCEL{raffle_id}", timestamp=T0, creator=CREATOR,
    )


def view(
    raffle_id: str = "1",
    *,
    total_sold: int = 1,
    max_tickets: int = 10,
    status: str = "active",
    winner_address: Optional[str] = None,
    end_time: datetime = T0 + timedelta(hours=1),
) -> LedgerRaffleView:
    return LedgerRaffleView(
        id=int(raffle_id),
        creator=CREATOR,
        nft_contract="testcore1nft",
        token_id=f"token-{raffle_id}",
        price={"denom": "utestcore", "amount": "100"},
        max_tickets=max_tickets,
        total_sold=total_sold,
        start_time=None,
        end_time=end_time,
        status=status,
        winner=winner_address,
    )


def sample(round_: int = 4242, randomness: str = RANDOMNESS) -> RandomnessSample:
    return RandomnessSample(round=round_, randomness=randomness, signature="b0" * 48)
