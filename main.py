# main.py
"""
Raffle Indexer — FastAPI app.

Builds the services once at startup (store, ledger gateway, drand beacon,
indexer, settlement controller) and runs the background loops under a
Supervisor. The HTTP surface is a small operator/control API.
"""

from __future__ import annotations

import functools
import logging
from typing import Optional

import aiosqlite
from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from config import settings
from db import ProjectionStore
from errors import ContractNotConfigured, LedgerUnavailable, RaffleIndexerError
from indexer import Indexer
from ledger import CosmpySigner, LedgerGateway
from logging_config import setup_logging
from randomness import DrandBeacon
from scheduler import PollingLoop, Supervisor
from settlement import SettlementController

logger = logging.getLogger(__name__)

API = settings.API_PREFIX
VERSION = "0.1.0"

# =========================================================
# Auth
# =========================================================
_auth_scheme = HTTPBearer(auto_error=False)

def admin_guard(creds: HTTPAuthorizationCredentials = Depends(_auth_scheme)):
    token = settings.ADMIN_TOKEN
    if not token:
        # allow only if explicitly running in debug/dev
        if settings.DEBUG:
            return True
        raise HTTPException(401, "ADMIN_TOKEN required in production")
    if not creds or creds.credentials != token:
        raise HTTPException(401, "Unauthorized")
    return True

# =========================================================
# App Init
# =========================================================
app = FastAPI(title="Raffle Indexer", version=VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def build_services(app: FastAPI, store: ProjectionStore) -> None:
    """Wire every service from settings onto app.state."""
    signer_factory = None
    if settings.AUTOMATION_MNEMONIC:
        signer_factory = functools.partial(
            CosmpySigner,
            mnemonic=settings.AUTOMATION_MNEMONIC,
            prefix=settings.BECH32_PREFIX,
            chain_id=settings.COREUM_CHAIN_ID,
            url=settings.signing_url,
            fee_denom=settings.FEE_DENOM,
            gas_price=settings.GAS_PRICE,
        )

    gateway = LedgerGateway(
        rpc_url=settings.COREUM_RPC_URL,
        rest_url=settings.COREUM_REST_URL,
        contract_address=settings.RAFFLE_CONTRACT_ADDRESS,
        chain_id=settings.COREUM_CHAIN_ID,
        timeout=settings.LEDGER_TIMEOUT_S,
        gas_limit=settings.SETTLEMENT_GAS_LIMIT,
        execute_timeout=settings.EXECUTE_TIMEOUT_S,
        signer_factory=signer_factory,
    )
    beacon = DrandBeacon(settings.DRAND_URL, timeout=settings.DRAND_TIMEOUT_S)
    controller = SettlementController(
        store,
        gateway,
        beacon,
        safety_buffer_s=settings.SETTLEMENT_SAFETY_BUFFER_S,
        interval_s=settings.automation_interval_s,
        enabled=settings.AUTOMATION_ENABLED,
    )
    indexer = Indexer(
        store,
        gateway,
        batch_size=settings.INDEXING_BATCH_SIZE,
        start_height=settings.INDEXING_START_HEIGHT,
        controller=controller,
    )
    supervisor = Supervisor({
        "indexer": PollingLoop("indexer", settings.indexing_interval_s, indexer.poll_once),
        "expiry_sweep": PollingLoop("expiry_sweep", settings.expiry_sweep_interval_s, indexer.sweep_expired),
        "settlement": PollingLoop("settlement", settings.automation_interval_s, controller.scan),
    })

    app.state.store = store
    app.state.gateway = gateway
    app.state.beacon = beacon
    app.state.controller = controller
    app.state.indexer = indexer
    app.state.supervisor = supervisor


@app.on_event("startup")
async def on_startup():
    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
    store = await ProjectionStore.open(settings.DB_PATH)
    build_services(app, store)

    cursor = await app.state.indexer.load_cursor()
    logger.info(f"Sync cursor at height {cursor}")

    if settings.RAFFLE_CONTRACT_ADDRESS:
        app.state.supervisor.start_indexer()
    else:
        logger.warning("RAFFLE_CONTRACT_ADDRESS not set; indexer not started")

    if settings.AUTOMATION_ENABLED:
        if await app.state.gateway.init_signer():
            app.state.supervisor.start_automation()
        else:
            logger.error("Automation enabled but signing client unavailable; settlement loop not started")


@app.on_event("shutdown")
async def on_shutdown():
    await app.state.supervisor.stop_all()
    await app.state.gateway.close()
    await app.state.beacon.close()
    await app.state.store.close()

# =========================================================
# Models
# =========================================================
class ProcessRangeReq(BaseModel):
    from_height: int = Field(description="First height to reprocess (inclusive)")
    to_height: int = Field(description="Last height to reprocess (inclusive)")


def _error(status: int, e: Exception) -> HTTPException:
    return HTTPException(status, {"error": type(e).__name__, "message": str(e)})

# =========================================================
# Health / status
# =========================================================
@app.get(f"{API}/system/health")
async def health():
    st = app.state
    try:
        await st.store.ping()
        cursor = await st.store.get_cursor()
        height = await st.gateway.current_height()
        eligible = await st.store.count_eligible(st.controller.now(), st.controller.safety_buffer)
    except (RaffleIndexerError, aiosqlite.Error, ValueError) as e:
        return JSONResponse(
            status_code=503,
            content={"status": "error", "error": type(e).__name__, "message": str(e), "version": VERSION},
        )

    lag = max(0, height - cursor) if cursor is not None else None
    issues = []
    if lag is None or lag > settings.HEALTH_MAX_LAG:
        issues.append(f"indexer lag {lag} exceeds {settings.HEALTH_MAX_LAG}")
    if st.controller.enabled and not st.gateway.signer_ready:
        issues.append("automation enabled but signing client not ready")
    expected = list(Supervisor.INDEXER_GROUP)
    if st.controller.enabled:
        expected += list(Supervisor.AUTOMATION_GROUP)
    states = st.supervisor.states()
    stopped = [name for name in expected if not states.get(name, {}).get("running")]
    if stopped:
        issues.append(f"stopped loops: {', '.join(stopped)}")

    return {
        "status": "degraded" if issues else "ok",
        "issues": issues,
        "height": height,
        "cursor": cursor,
        "lag": lag,
        "eligible": eligible,
        "version": VERSION,
    }


@app.get(f"{API}/system/status")
async def status():
    st = app.state
    height: Optional[int] = None
    height_error: Optional[str] = None
    try:
        height = await st.gateway.current_height()
    except LedgerUnavailable as e:
        height_error = str(e)
    cursor = await st.store.get_cursor()

    return {
        "chain_id": settings.COREUM_CHAIN_ID,
        "contract_address": settings.RAFFLE_CONTRACT_ADDRESS or None,
        "current_height": height,
        "height_error": height_error,
        "last_processed_height": cursor,
        "lag": (height - cursor) if height is not None and cursor is not None else None,
        "indexer": st.indexer.status(),
        "loops": st.supervisor.states(),
        "automation": await st.controller.stats(),
        "version": VERSION,
    }

# =========================================================
# Control (admin)
# =========================================================
@app.post(f"{API}/system/indexer/start")
async def indexer_start(auth: bool = Depends(admin_guard)):
    if not app.state.gateway.contract_address:
        raise _error(409, ContractNotConfigured())
    changed = app.state.supervisor.start_indexer()
    return {"ok": True, "running": app.state.supervisor.indexer_running, "changed": changed}


@app.post(f"{API}/system/indexer/stop")
async def indexer_stop(auth: bool = Depends(admin_guard)):
    changed = await app.state.supervisor.stop_indexer()
    return {"ok": True, "running": app.state.supervisor.indexer_running, "changed": changed}


@app.post(f"{API}/system/automation/start")
async def automation_start(auth: bool = Depends(admin_guard)):
    if not await app.state.gateway.init_signer():
        raise HTTPException(409, {"error": "SigningNotReady", "message": "signing client not initialized"})
    app.state.controller.enabled = True
    changed = app.state.supervisor.start_automation()
    return {"ok": True, "running": app.state.supervisor.automation_running, "changed": changed}


@app.post(f"{API}/system/automation/stop")
async def automation_stop(auth: bool = Depends(admin_guard)):
    app.state.controller.enabled = False
    changed = await app.state.supervisor.stop_automation()
    return {"ok": True, "running": app.state.supervisor.automation_running, "changed": changed}


@app.post(f"{API}/system/indexer/process")
async def indexer_process(body: ProcessRangeReq, auth: bool = Depends(admin_guard)):
    try:
        result = await app.state.indexer.process_range(body.from_height, body.to_height)
    except ValueError as e:
        raise _error(400, e)
    except ContractNotConfigured as e:
        raise _error(409, e)
    except LedgerUnavailable as e:
        raise _error(502, e)
    return {"ok": True, **result}


@app.post(f"{API}/system/sync")
async def sync_from_ledger(auth: bool = Depends(admin_guard)):
    try:
        synced = await app.state.indexer.sync_from_ledger()
    except ContractNotConfigured as e:
        raise _error(409, e)
    except LedgerUnavailable as e:
        raise _error(502, e)
    return {"ok": True, "synced": synced}
