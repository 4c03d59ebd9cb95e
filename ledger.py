# ledger.py
"""
Ledger gateway for one Coreum (CosmWasm) chain and one raffle contract.

Reads go over HTTP with httpx: CometBFT RPC for heights / tx search / block
times, and the LCD (REST) endpoint for contract smart queries. Writes go
through an optional signer built on cosmpy. No business logic and no retries
here: callers retry on their own next tick.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from pydantic import ValidationError

from cosmpy.aerial.client import LedgerClient, NetworkConfig
from cosmpy.aerial.client.utils import prepare_and_broadcast_basic_transaction
from cosmpy.aerial.contract.cosmwasm import create_cosmwasm_execute_msg
from cosmpy.aerial.tx import Transaction
from cosmpy.aerial.wallet import LocalWallet
from cosmpy.crypto.address import Address

from errors import ContractNotConfigured, LedgerRejection, LedgerUnavailable, SigningNotReady
from models import ContractEvent, ExecuteResult, LedgerRaffleView, parse_contract_event

logger = logging.getLogger(__name__)

EXECUTE_MEMO = "Automated raffle ending"
TX_SEARCH_PAGE_SIZE = 100

_FRACTION_RE = re.compile(r"\.(\d+)")


def _parse_block_time(s: Optional[str]) -> datetime:
    """CometBFT times carry nanoseconds ('...:05.123456789Z'); keep microseconds."""
    if not s:
        return datetime.now(timezone.utc)
    s2 = str(s).strip()
    if s2.endswith("Z"):
        s2 = s2[:-1] + "+00:00"
    s2 = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), s2, count=1)
    dt = datetime.fromisoformat(s2)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def split_actions(attributes: List[Tuple[str, str]]) -> List[Tuple[str, Dict[str, str]]]:
    """
    One wasm event may carry several `action` attributes (end_raffle emits
    raffle_ended then winner_selected in the same response). Split it into one
    logical event per action; each segment also sees every attribute emitted
    before it (e.g. _contract_address, raffle_id). Attributes before the first
    action belong to no event on their own.
    """
    segments: List[Tuple[str, Dict[str, str]]] = []
    context: Dict[str, str] = {}
    current: Optional[Tuple[str, Dict[str, str]]] = None
    for key, value in attributes:
        if key == "action":
            if current is not None:
                segments.append(current)
            current = (value, dict(context))
            continue
        context[key] = value
        if current is not None:
            current[1][key] = value
    if current is not None:
        segments.append(current)
    return segments


# =========================================================
# Signer (cosmpy)
# =========================================================
class CosmpySigner:
    """
    Process-wide signing identity derived from a mnemonic.
    cosmpy is blocking; the gateway runs `execute` in a worker thread.
    """

    def __init__(
        self,
        *,
        mnemonic: str,
        prefix: str,
        chain_id: str,
        url: str,
        fee_denom: str,
        gas_price: float,
    ):
        if not mnemonic:
            raise SigningNotReady("AUTOMATION_MNEMONIC not set")
        cfg = NetworkConfig(
            chain_id=chain_id,
            url=url,
            fee_minimum_gas_price=gas_price,
            fee_denomination=fee_denom,
            staking_denomination=fee_denom,
        )
        self._client = LedgerClient(cfg)
        self._wallet = LocalWallet.from_mnemonic(mnemonic, prefix=prefix)
        self.address = str(self._wallet.address())

    def execute(self, contract: str, msg: Dict[str, Any], *, funds: Optional[str], gas_limit: int, memo: str) -> ExecuteResult:
        tx = Transaction()
        tx.add_message(
            create_cosmwasm_execute_msg(self._wallet.address(), Address(contract), msg, funds=funds)
        )
        submitted = prepare_and_broadcast_basic_transaction(
            self._client, tx, self._wallet, gas_limit=gas_limit, memo=memo
        )
        submitted.wait_to_complete()
        resp = submitted.response
        return ExecuteResult(
            tx_hash=submitted.tx_hash,
            code=int(getattr(resp, "code", 0) or 0),
            raw_log=str(getattr(resp, "raw_log", "") or ""),
        )


# =========================================================
# Gateway
# =========================================================
class LedgerGateway:
    def __init__(
        self,
        *,
        rpc_url: str,
        rest_url: str,
        contract_address: str = "",
        chain_id: str = "",
        timeout: float = 15.0,
        gas_limit: int = 1_000_000,
        execute_timeout: float = 90.0,
        signer_factory: Optional[Callable[[], Any]] = None,
        signer: Any = None,
        rpc_client: Optional[httpx.AsyncClient] = None,
        rest_client: Optional[httpx.AsyncClient] = None,
    ):
        self.rpc_url = rpc_url.rstrip("/")
        self.rest_url = rest_url.rstrip("/")
        self.contract_address = contract_address or ""
        self.chain_id = chain_id
        self.gas_limit = gas_limit
        self.execute_timeout = execute_timeout
        self._signer_factory = signer_factory
        self._signer = signer
        self._rpc = rpc_client or httpx.AsyncClient(base_url=self.rpc_url, timeout=timeout)
        self._rest = rest_client or httpx.AsyncClient(base_url=self.rest_url, timeout=timeout)

    async def close(self) -> None:
        await self._rpc.aclose()
        await self._rest.aclose()
        logger.info("Disconnected from ledger")

    # -------------------------
    # Signer
    # -------------------------
    @property
    def signer_ready(self) -> bool:
        return self._signer is not None and bool(getattr(self._signer, "address", None))

    @property
    def signer_address(self) -> Optional[str]:
        return getattr(self._signer, "address", None) if self._signer is not None else None

    async def init_signer(self) -> bool:
        """Build the signer once. False (and logged) when not configured or on failure."""
        if self.signer_ready:
            return True
        if self._signer_factory is None:
            logger.info("AUTOMATION_MNEMONIC not set, skipping signing client initialization")
            return False
        try:
            self._signer = await asyncio.to_thread(self._signer_factory)
        except Exception as e:
            logger.error(f"Failed to initialize signing client: {e}", exc_info=True)
            self._signer = None
            return False
        logger.info(f"Automation signing client initialized: {self.signer_address}")
        return True

    def _require_contract(self) -> str:
        if not self.contract_address:
            raise ContractNotConfigured()
        return self.contract_address

    # -------------------------
    # Low-level HTTP
    # -------------------------
    async def _rpc_get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            r = await self._rpc.get(path, params=params)
            r.raise_for_status()
            body = r.json()
        except (httpx.HTTPError, ValueError) as e:
            raise LedgerUnavailable(f"rpc {path} failed: {e}") from e
        if isinstance(body, dict) and body.get("error"):
            raise LedgerUnavailable(f"rpc {path} error: {body['error']}")
        return body.get("result", body) if isinstance(body, dict) else {}

    # -------------------------
    # Heights / events
    # -------------------------
    async def current_height(self) -> int:
        result = await self._rpc_get("/status")
        try:
            return int(result["sync_info"]["latest_block_height"])
        except (KeyError, TypeError, ValueError) as e:
            raise LedgerUnavailable(f"unexpected /status shape: {e}") from e

    async def block_time(self, height: int) -> datetime:
        result = await self._rpc_get("/block", {"height": height})
        header = ((result.get("block") or {}).get("header") or {})
        return _parse_block_time(header.get("time"))

    async def _search_txs(self, height: int) -> List[Dict[str, Any]]:
        query = f"wasm._contract_address='{self.contract_address}' AND tx.height={height}"
        txs: List[Dict[str, Any]] = []
        page = 1
        while True:
            result = await self._rpc_get(
                "/tx_search",
                {"query": f'"{query}"', "page": page, "per_page": TX_SEARCH_PAGE_SIZE, "order_by": '"asc"'},
            )
            batch = result.get("txs") or []
            txs.extend(batch)
            total = int(result.get("total_count") or 0)
            if not batch or len(txs) >= total:
                break
            page += 1
        return txs

    async def events_in_range(self, from_height: int, to_height: int) -> List[ContractEvent]:
        """Contract events for heights [from_height, to_height], in ledger order."""
        self._require_contract()
        events: List[ContractEvent] = []
        for height in range(from_height, to_height + 1):
            txs = await self._search_txs(height)
            if not txs:
                continue
            ts = await self.block_time(height)
            for tx in sorted(txs, key=lambda t: int(t.get("index") or 0)):
                tx_result = tx.get("tx_result") or {}
                if int(tx_result.get("code") or 0) != 0:
                    continue
                events.extend(
                    self.extract_events(tx_result.get("events") or [], height=height, tx_hash=tx.get("hash", ""), timestamp=ts)
                )
        return events

    def extract_events(self, raw_events: List[Dict[str, Any]], *, height: int, tx_hash: str, timestamp: datetime) -> List[ContractEvent]:
        """
        Keep wasm events emitted by our contract, one typed event per `action`.
        Attributes without an action are dropped silently; malformed known
        events are logged and dropped.
        """
        out: List[ContractEvent] = []
        index = 0
        for raw in raw_events:
            if raw.get("type") != "wasm":
                continue
            attrs = [(str(a.get("key") or ""), str(a.get("value") or "")) for a in raw.get("attributes") or []]
            for action, fields in split_actions(attrs):
                if fields.get("_contract_address") != self.contract_address:
                    continue
                try:
                    out.append(
                        parse_contract_event(
                            action, fields, height=height, tx_hash=tx_hash, event_index=index, timestamp=timestamp
                        )
                    )
                except ValidationError as e:
                    logger.warning(f"Dropping malformed {action} event in tx {tx_hash} at {height}: {e.errors()}")
                index += 1
        return out

    # -------------------------
    # Contract queries
    # -------------------------
    async def query_contract(self, address: str, query: Dict[str, Any]) -> Any:
        encoded = base64.urlsafe_b64encode(json.dumps(query, separators=(",", ":")).encode()).decode()
        path = f"/cosmwasm/wasm/v1/contract/{address}/smart/{encoded}"
        try:
            r = await self._rest.get(path)
            r.raise_for_status()
            body = r.json()
        except httpx.HTTPStatusError as e:
            raise LedgerUnavailable(f"smart query {query} failed: {e.response.status_code} {e.response.text[:200]}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise LedgerUnavailable(f"smart query {query} failed: {e}") from e
        return body.get("data") if isinstance(body, dict) else None

    async def query_raffle(self, raffle_id) -> Optional[LedgerRaffleView]:
        data = await self.query_contract(self._require_contract(), {"raffle": {"raffle_id": int(raffle_id)}})
        raffle = (data or {}).get("raffle")
        return LedgerRaffleView.model_validate(raffle) if raffle else None

    async def query_raffles(self, start_after: Optional[str] = None, limit: int = 50) -> List[LedgerRaffleView]:
        data = await self.query_contract(
            self._require_contract(), {"raffles": {"start_after": start_after, "limit": limit}}
        )
        return [LedgerRaffleView.model_validate(r) for r in (data or {}).get("raffles") or []]

    # -------------------------
    # Execution
    # -------------------------
    async def execute_contract(self, sender: str, msg: Dict[str, Any], funds: Optional[str] = None) -> ExecuteResult:
        """
        Sign and broadcast a contract execution. Rejections are classified here,
        once, into LedgerRejection.kind; transport failures become LedgerUnavailable.
        """
        if not self.signer_ready:
            raise SigningNotReady()
        contract = self._require_contract()
        if sender != self.signer_address:
            raise SigningNotReady(f"no signing key for sender {sender}")

        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(
                    self._signer.execute, contract, msg, funds=funds, gas_limit=self.gas_limit, memo=EXECUTE_MEMO
                ),
                timeout=self.execute_timeout,
            )
        except asyncio.TimeoutError as e:
            raise LedgerUnavailable(f"execute timed out after {self.execute_timeout}s") from e
        except OSError as e:
            # requests / socket level failures inside cosmpy
            raise LedgerUnavailable(f"execute transport failure: {e}") from e
        except Exception as e:
            raise LedgerRejection.from_message(str(e), tx_hash=getattr(e, "tx_hash", None)) from e

        if result.code != 0:
            raise LedgerRejection.from_message(result.raw_log or f"code {result.code}", tx_hash=result.tx_hash, code=result.code)
        return result
