# models.py
"""
Typed records shared across the service.

Contract events are parsed exactly once, at the ledger gateway boundary, from the
raw wasm attribute map into one of the tagged variants below. Everything
downstream (indexer projection, tests) works on typed fields only.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

RaffleStatus = Literal["active", "completed", "cancelled"]
EndReason = Literal["time", "soldout"]

_COIN_RE = re.compile(r"^(\d+)(.*)$")


def _utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _epoch_seconds(v):
    """Contract attributes carry times as unix seconds; empty means unset."""
    if v is None or v == "":
        return None
    if isinstance(v, datetime):
        return _utc(v)
    return datetime.fromtimestamp(int(v), tz=timezone.utc)


def _digits(v):
    """Arbitrary-precision integer amounts stay text; validate they parse."""
    s = str(v).strip()
    try:
        Decimal(s)
    except InvalidOperation:
        raise ValueError(f"not a decimal amount: {v!r}")
    return s


# =========================================================
# Contract events (tagged variants)
# =========================================================
class _EventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    raffle_id: str
    height: int
    tx_hash: str
    # position of the logical event inside its transaction
    event_index: int = 0
    timestamp: datetime

    @field_validator("raffle_id", mode="before")
    @classmethod
    def _raffle_id(cls, v):
        s = str(v).strip()
        if not s:
            raise ValueError("raffle_id is required")
        return s

    @field_validator("timestamp")
    @classmethod
    def _ts(cls, v: datetime) -> datetime:
        return _utc(v)


class RaffleCreated(_EventBase):
    kind: Literal["raffle_created"] = "raffle_created"
    creator: str
    nft_contract: str
    token_id: str
    ticket_price: str
    price_denom: str
    max_tickets: int
    start_time: Optional[datetime] = None
    end_time: datetime
    revenue_address: str
    payment_denom: Optional[str] = None
    payment_cw20: Optional[str] = None

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def _times(cls, v):
        return _epoch_seconds(v)

    @field_validator("ticket_price", mode="before")
    @classmethod
    def _price(cls, v):
        return _digits(v)

    @property
    def payment_type(self) -> str:
        return "cw20" if self.payment_cw20 else "native"


class TicketsBought(_EventBase):
    kind: Literal["tickets_bought"] = "tickets_bought"
    buyer: str
    quantity: int = Field(gt=0)
    total_paid: str
    denom: str

    @field_validator("total_paid", mode="before")
    @classmethod
    def _paid(cls, v):
        return _digits(v)


class RaffleEnded(_EventBase):
    kind: Literal["raffle_ended"] = "raffle_ended"
    end_reason: EndReason
    drand_round: Optional[int] = None


class WinnerSelected(_EventBase):
    kind: Literal["winner_selected"] = "winner_selected"
    winner: str
    ticket_index: int = Field(ge=0)


class RaffleCancelled(_EventBase):
    kind: Literal["raffle_cancelled"] = "raffle_cancelled"
    creator: Optional[str] = None


class UnknownEvent(BaseModel):
    """Any action the projection has no rule for (instantiate, update_config...)."""
    model_config = ConfigDict(frozen=True)

    kind: str
    height: int
    tx_hash: str
    event_index: int = 0
    timestamp: datetime
    attributes: Dict[str, str] = Field(default_factory=dict)


ContractEvent = Union[RaffleCreated, TicketsBought, RaffleEnded, WinnerSelected, RaffleCancelled, UnknownEvent]


def _created_fields(attrs: Dict[str, str]) -> dict:
    amount, denom = attrs.get("ticket_price", ""), ""
    m = _COIN_RE.match(amount)
    if m:
        amount, denom = m.group(1), m.group(2)
    return {
        "creator": attrs.get("creator"),
        "nft_contract": attrs.get("cw721_addr"),
        "token_id": attrs.get("token_id"),
        "ticket_price": amount,
        "price_denom": denom or attrs.get("payment_denom", ""),
        "max_tickets": attrs.get("max_tickets"),
        "start_time": attrs.get("start_time"),
        "end_time": attrs.get("end_time"),
        "revenue_address": attrs.get("revenue_addr") or attrs.get("creator"),
        "payment_denom": attrs.get("payment_denom") or None,
        "payment_cw20": attrs.get("payment_cw20") or None,
    }


_PARSERS = {
    "raffle_created": (RaffleCreated, _created_fields),
    "tickets_bought": (TicketsBought, lambda a: {
        "buyer": a.get("buyer"),
        "quantity": a.get("quantity"),
        "total_paid": a.get("total_paid"),
        "denom": a.get("denom"),
    }),
    "raffle_ended": (RaffleEnded, lambda a: {
        "end_reason": a.get("end_reason"),
        "drand_round": a.get("drand_round") or None,
    }),
    "winner_selected": (WinnerSelected, lambda a: {
        "winner": a.get("winner"),
        "ticket_index": a.get("ticket_index"),
    }),
    "raffle_cancelled": (RaffleCancelled, lambda a: {
        "creator": a.get("creator"),
    }),
}


def parse_contract_event(
    action: str,
    attrs: Dict[str, str],
    *,
    height: int,
    tx_hash: str,
    event_index: int,
    timestamp: datetime,
) -> ContractEvent:
    """
    Build the typed variant for one logical contract event.
    Raises pydantic.ValidationError when a known action is missing fields.
    """
    meta = {"height": height, "tx_hash": tx_hash, "event_index": event_index, "timestamp": timestamp}
    entry = _PARSERS.get(action)
    if entry is None:
        return UnknownEvent(kind=action, attributes=dict(attrs), **meta)
    model, fields = entry
    return model(raffle_id=attrs.get("raffle_id", ""), **fields(attrs), **meta)


# =========================================================
# Projection records
# =========================================================
class Raffle(BaseModel):
    raffle_id: str
    creator: str
    nft_contract: str
    token_id: str
    ticket_price: str
    max_tickets: int
    tickets_sold: int = 0
    start_time: Optional[datetime] = None
    end_time: datetime
    payment_type: Literal["native", "cw20"] = "native"
    payment_denom: Optional[str] = None
    payment_cw20: Optional[str] = None
    revenue_address: str
    status: RaffleStatus = "active"
    winner: Optional[str] = None
    winner_ticket_index: Optional[int] = None
    drand_round: Optional[int] = None
    end_reason: Optional[EndReason] = None
    created_at_height: Optional[int] = None
    ended_at_height: Optional[int] = None
    create_tx_hash: Optional[str] = None
    end_tx_hash: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("start_time", "end_time", "created_at", "updated_at")
    @classmethod
    def _aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _utc(v) if v is not None else None

    @property
    def is_sold_out(self) -> bool:
        return self.tickets_sold >= self.max_tickets

    def is_eligible(self, now: datetime, safety_buffer: timedelta) -> bool:
        """active, at least one sale, and (expired past the buffer or sold out)."""
        if self.status != "active" or self.tickets_sold <= 0:
            return False
        return self.end_time <= _utc(now) - safety_buffer or self.is_sold_out


class Participant(BaseModel):
    raffle_id: str
    address: str
    ticket_count: int = 0
    total_paid: str = "0"
    first_purchase: datetime
    last_purchase: datetime
    payment_denom: str


class LedgerRaffleView(BaseModel):
    """The contract's `raffle` query shape (times are nanosecond strings)."""
    id: int
    creator: str
    nft_contract: str
    token_id: str
    price: Dict[str, str]
    max_tickets: int
    total_sold: int
    start_time: Optional[datetime] = None
    end_time: datetime
    status: RaffleStatus
    winner: Optional[str] = None

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def _nanos(cls, v):
        if v is None or v == "":
            return None
        if isinstance(v, datetime):
            return _utc(v)
        return datetime.fromtimestamp(int(v) / 1_000_000_000, tz=timezone.utc)


# =========================================================
# Ledger / beacon value objects
# =========================================================
class RandomnessSample(BaseModel):
    model_config = ConfigDict(frozen=True)

    round: int
    randomness: str
    signature: str


class ExecuteResult(BaseModel):
    tx_hash: Optional[str] = None
    code: int = 0
    raw_log: str = ""

    @property
    def succeeded(self) -> bool:
        return self.code == 0 or bool(self.tx_hash)
