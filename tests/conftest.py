"""
Pytest configuration and shared fixtures for the raffle indexer tests.

Testing Standards:
- All async tests use pytest.mark.asyncio (auto mode enabled in pyproject.toml)
- Use AsyncMock for ledger / beacon collaborators
- Store tests run against an in-memory SQLite database
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from db import ProjectionStore
from factories import CONTRACT, SIGNER, sample
from models import ExecuteResult


@pytest.fixture
async def store():
    """Fresh in-memory projection store with the canonical schema."""
    s = await ProjectionStore.open(":memory:")
    yield s
    await s.close()


@pytest.fixture
def gateway() -> MagicMock:
    """Ledger gateway double: configured contract, ready signer, no events."""
    gw = MagicMock()
    gw.contract_address = CONTRACT
    gw.signer_ready = True
    gw.signer_address = SIGNER
    gw.current_height = AsyncMock(return_value=0)
    gw.events_in_range = AsyncMock(return_value=[])
    gw.query_raffle = AsyncMock(return_value=None)
    gw.query_raffles = AsyncMock(return_value=[])
    gw.execute_contract = AsyncMock(return_value=ExecuteResult(tx_hash="ENDTX", code=0))
    gw.init_signer = AsyncMock(return_value=True)
    return gw


@pytest.fixture
def beacon() -> MagicMock:
    b = MagicMock()
    b.latest = AsyncMock(return_value=sample())
    return b
