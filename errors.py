# errors.py
"""
Exception taxonomy shared by the gateway, indexer and settlement controller.

- LedgerUnavailable      transient: retried on the next natural tick
- SigningNotReady        precondition: no signer configured
- ContractNotConfigured  precondition: no raffle contract address
- LedgerRejection        remote rejection, classified once into a RejectionKind
- BeaconError            randomness source failure
"""

from __future__ import annotations
from enum import Enum
from typing import Optional


class RaffleIndexerError(Exception):
    """Base class for every error this service raises on purpose."""


class LedgerUnavailable(RaffleIndexerError):
    """RPC/REST call failed: timeout, connection error, 5xx, unreadable body."""


class PreconditionFailed(RaffleIndexerError):
    pass


class SigningNotReady(PreconditionFailed):
    def __init__(self, message: str = "signing client not initialized"):
        super().__init__(message)


class ContractNotConfigured(PreconditionFailed):
    def __init__(self, message: str = "RAFFLE_CONTRACT_ADDRESS is not set"):
        super().__init__(message)


class RejectionKind(str, Enum):
    ALREADY_PENDING = "already_pending"   # same tx already in the mempool cache
    NOT_ACTIVE = "not_active"             # raffle ended or cancelled on-chain
    NOT_READY = "not_ready"               # neither expired nor sold out yet
    OTHER = "other"

    @property
    def is_benign(self) -> bool:
        return self is not RejectionKind.OTHER


# Vocabulary observed from the node (mempool) and the raffle contract.
# Matched exactly once, when the rejection is first seen by the gateway.
_REJECTION_MARKERS = (
    ("tx already exists in cache", RejectionKind.ALREADY_PENDING),
    ("raffle not active", RejectionKind.NOT_ACTIVE),
    ("raffle not ready to end", RejectionKind.NOT_READY),
)


def classify_rejection(message: Optional[str]) -> RejectionKind:
    text = (message or "").lower()
    for marker, kind in _REJECTION_MARKERS:
        if marker in text:
            return kind
    return RejectionKind.OTHER


class LedgerRejection(RaffleIndexerError):
    """The ledger accepted the request but refused the transaction."""

    def __init__(self, kind: RejectionKind, message: str, tx_hash: Optional[str] = None, code: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.tx_hash = tx_hash
        self.code = code

    @classmethod
    def from_message(cls, message: str, tx_hash: Optional[str] = None, code: Optional[int] = None) -> "LedgerRejection":
        return cls(classify_rejection(message), message, tx_hash=tx_hash, code=code)

    @property
    def is_benign(self) -> bool:
        return self.kind.is_benign

    def __repr__(self) -> str:
        return f"LedgerRejection(kind={self.kind.value!r}, code={self.code!r}, message={str(self)!r})"


class BeaconError(RaffleIndexerError):
    """Randomness beacon unreachable or returned an incomplete sample."""
