# randomness.py
"""
drand beacon client + the local winning-index derivation.

The index computed here is for logs and the store only. The contract derives
the authoritative winner itself from the same beacon output.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from errors import BeaconError
from models import RandomnessSample

logger = logging.getLogger(__name__)

DRAND_URL = "https://api.drand.sh"


class DrandBeacon:
    def __init__(self, base_url: str = DRAND_URL, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def latest(self) -> RandomnessSample:
        """GET /public/latest. Any transport failure or missing field is a BeaconError."""
        try:
            r = await self._client.get("/public/latest")
            r.raise_for_status()
            body = r.json()
        except (httpx.HTTPError, ValueError) as e:
            raise BeaconError(f"drand fetch failed: {e}") from e

        if not isinstance(body, dict):
            raise BeaconError("drand returned a non-object body")
        missing = [k for k in ("round", "randomness", "signature") if not body.get(k)]
        if missing:
            raise BeaconError(f"drand sample missing {', '.join(missing)}")

        try:
            sample = RandomnessSample(
                round=int(body["round"]),
                randomness=str(body["randomness"]),
                signature=str(body["signature"]),
            )
        except (TypeError, ValueError) as e:
            raise BeaconError(f"drand sample malformed: {e}") from e
        logger.debug(f"drand round {sample.round}")
        return sample


def winning_ticket_index(randomness_hex: str, tickets_sold: int) -> int:
    """
    First 8 bytes of the randomness (right-padded with zeros when shorter),
    read as a big-endian u64, modulo tickets_sold.
    """
    if tickets_sold <= 0:
        raise ValueError("tickets_sold must be positive")
    raw = bytes.fromhex(randomness_hex)
    if not raw:
        raise ValueError("randomness is empty")
    head = raw[:8].ljust(8, b"\x00")
    return int.from_bytes(head, "big") % tickets_sold
