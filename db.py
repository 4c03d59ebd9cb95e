# db.py

"""
Raffle Indexer — db.py
Canonical schema + async (aiosqlite) projection store.
Target DB path: /data/raffle_indexer.db

The store owns Raffle / Participant records and the sync cursor. It holds no
business rules beyond upsert/merge; the indexer and the settlement controller
are its only writers.
"""

from __future__ import annotations
from typing import List, Optional, Tuple
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from contextlib import asynccontextmanager
import asyncio
import logging
import os
import aiosqlite

from models import (
    Participant,
    Raffle,
    RaffleCancelled,
    RaffleCreated,
    RaffleEnded,
    LedgerRaffleView,
    TicketsBought,
    WinnerSelected,
)

logger = logging.getLogger(__name__)

# =========================================================
# Canonical Schema
# =========================================================
SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS kv (
  k TEXT PRIMARY KEY,
  v TEXT
);

-- One row per ledger-assigned raffle id
CREATE TABLE IF NOT EXISTS raffles (
  raffle_id           TEXT PRIMARY KEY,
  creator             TEXT NOT NULL,
  nft_contract        TEXT NOT NULL,
  token_id            TEXT NOT NULL,
  ticket_price        TEXT NOT NULL,
  max_tickets         INTEGER NOT NULL,
  tickets_sold        INTEGER NOT NULL DEFAULT 0,
  start_time          TEXT,
  end_time            TEXT NOT NULL,
  payment_type        TEXT NOT NULL DEFAULT 'native',
  payment_denom       TEXT,
  payment_cw20        TEXT,
  revenue_address     TEXT NOT NULL,
  status              TEXT NOT NULL DEFAULT 'active',
  winner              TEXT,
  winner_ticket_index INTEGER,
  drand_round         INTEGER,
  end_reason          TEXT,
  created_at_height   INTEGER,
  ended_at_height     INTEGER,
  create_tx_hash      TEXT,
  end_tx_hash         TEXT,
  created_at          TEXT NOT NULL,
  updated_at          TEXT NOT NULL
);

-- Aggregate of all purchases by one address for one raffle
CREATE TABLE IF NOT EXISTS participants (
  raffle_id      TEXT NOT NULL,
  address        TEXT NOT NULL,
  ticket_count   INTEGER NOT NULL DEFAULT 0,
  total_paid     TEXT NOT NULL DEFAULT '0',
  first_purchase TEXT NOT NULL,
  last_purchase  TEXT NOT NULL,
  payment_denom  TEXT NOT NULL,
  PRIMARY KEY (raffle_id, address)
);

-- Dedup ledger for tickets_bought events; makes batch replays idempotent
CREATE TABLE IF NOT EXISTS ticket_purchases (
  tx_hash     TEXT NOT NULL,
  event_index INTEGER NOT NULL,
  raffle_id   TEXT NOT NULL,
  buyer       TEXT NOT NULL,
  quantity    INTEGER NOT NULL,
  total_paid  TEXT NOT NULL,
  denom       TEXT NOT NULL,
  height      INTEGER NOT NULL,
  created_at  TEXT NOT NULL,
  PRIMARY KEY (tx_hash, event_index)
);

CREATE INDEX IF NOT EXISTS idx_raffles_status          ON raffles(status);
CREATE INDEX IF NOT EXISTS idx_raffles_creator_status  ON raffles(creator, status);
CREATE INDEX IF NOT EXISTS idx_raffles_status_end      ON raffles(status, end_time);
CREATE INDEX IF NOT EXISTS idx_raffles_created_height  ON raffles(created_at_height);
CREATE INDEX IF NOT EXISTS idx_participants_address    ON participants(address, first_purchase);
CREATE INDEX IF NOT EXISTS idx_participants_tickets    ON participants(raffle_id, ticket_count);
CREATE INDEX IF NOT EXISTS idx_purchases_raffle        ON ticket_purchases(raffle_id);
""".strip()

CURSOR_KEY = "sync:last_processed_height"

# =========================================================
# Time helpers
# =========================================================
def _rfc3339(dt: Optional[datetime]) -> Optional[str]:
    """
    UTC timestamp ending with 'Z', second precision.
    Naive datetimes are treated as UTC. Fixed width, so TEXT columns compare
    chronologically.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

def _now() -> datetime:
    return datetime.now(timezone.utc)

# =========================================================
# Connection
# =========================================================
DB_PATH = os.getenv("DB_PATH", "/data/raffle_indexer.db")

async def connect(db_path: str = DB_PATH) -> aiosqlite.Connection:
    """
    Async connection; ensures schema and sets PRAGMAs.
    Opened in autocommit mode: multi-statement writes use explicit BEGIN/COMMIT.
    """
    db_dir = os.path.dirname(db_path)
    if db_path != ":memory:" and db_dir:
        os.makedirs(db_dir, exist_ok=True)
    conn = await aiosqlite.connect(db_path, isolation_level=None)

    # Per-connection PRAGMAs to reduce locking and keep WAL fast
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA synchronous=NORMAL")
    await conn.execute("PRAGMA temp_store=MEMORY")
    await conn.execute("PRAGMA wal_autocheckpoint=1000")
    await conn.execute("PRAGMA busy_timeout=5000")

    # Use aiosqlite.Row for dict-like access
    conn.row_factory = aiosqlite.Row

    await ensure_schema(conn)
    return conn

async def ensure_schema(conn: aiosqlite.Connection) -> None:
    """Apply canonical schema (idempotent)."""
    await conn.executescript(SCHEMA)
    await conn.commit()

# =========================================================
# KV Helpers
# =========================================================
async def kv_set(conn: aiosqlite.Connection, k: str, v: str) -> None:
    """
    Upsert a key/value pair in the KV table.
    """
    await conn.execute(
        "INSERT INTO kv(k, v) VALUES(?, ?) "
        "ON CONFLICT(k) DO UPDATE SET v=excluded.v",
        (k, v),
    )

async def kv_get(conn: aiosqlite.Connection, k: str) -> Optional[str]:
    """
    Read a value from KV; return None if missing.
    """
    async with conn.execute("SELECT v FROM kv WHERE k=?", (k,)) as cur:
        row = await cur.fetchone()
        return row[0] if row else None

# =========================================================
# Projection store
# =========================================================
class ProjectionStore:
    """
    Durable keyed store for Raffle / Participant records plus the sync cursor.

    One aiosqlite connection is shared by every loop; writes go through
    `_write_lock` so a multi-statement transaction from one task never
    interleaves with statements from another.
    """

    def __init__(self, conn: aiosqlite.Connection):
        self.conn = conn
        self._write_lock = asyncio.Lock()

    @classmethod
    async def open(cls, db_path: str = DB_PATH) -> "ProjectionStore":
        return cls(await connect(db_path))

    async def close(self) -> None:
        await self.conn.close()

    async def ping(self) -> bool:
        async with self.conn.execute("SELECT 1") as cur:
            return (await cur.fetchone()) is not None

    @asynccontextmanager
    async def _tx(self):
        """
        Transactional section.
            async with self._tx() as c:
                await c.execute(...)
        """
        async with self._write_lock:
            await self.conn.execute("BEGIN")
            try:
                yield self.conn
                await self.conn.execute("COMMIT")
            except BaseException:
                await self.conn.execute("ROLLBACK")
                raise

    # -------------------------
    # Sync cursor
    # -------------------------
    async def get_cursor(self) -> Optional[int]:
        v = await kv_get(self.conn, CURSOR_KEY)
        return int(v) if v is not None else None

    async def init_cursor(self, start_height: int) -> int:
        """Use the persisted cursor if present, else seed it at start_height - 1."""
        async with self._tx() as c:
            v = await kv_get(c, CURSOR_KEY)
            if v is not None:
                return int(v)
            seeded = max(0, int(start_height) - 1)
            await kv_set(c, CURSOR_KEY, str(seeded))
            return seeded

    async def advance_cursor(self, height: int) -> int:
        """Monotonic: never lowers the stored height. Returns the stored value."""
        async with self._tx() as c:
            v = await kv_get(c, CURSOR_KEY)
            current = int(v) if v is not None else 0
            if height > current:
                await kv_set(c, CURSOR_KEY, str(int(height)))
                return int(height)
            return current

    async def reset_cursor(self, height: int) -> None:
        """Operator intervention only; may move the cursor backwards."""
        async with self._tx() as c:
            await kv_set(c, CURSOR_KEY, str(max(0, int(height))))
        logger.warning(f"Sync cursor reset to {height}")

    # -------------------------
    # Projection writes (indexer)
    # -------------------------
    async def insert_raffle(self, ev: RaffleCreated) -> bool:
        """
        Insert a new active raffle. Returns False on a duplicate id (benign conflict).
        A row first seen through the ledger sync (no create_tx_hash yet) gets
        its creation-only fields filled from the event; status and counts stay.
        """
        now = _rfc3339(_now())
        async with self._tx() as c:
            cur = await c.execute(
                "INSERT INTO raffles(raffle_id,creator,nft_contract,token_id,ticket_price,max_tickets,tickets_sold,"
                "start_time,end_time,payment_type,payment_denom,payment_cw20,revenue_address,status,"
                "created_at_height,create_tx_hash,created_at,updated_at) "
                "VALUES(?,?,?,?,?,?,0,?,?,?,?,?,?,'active',?,?,?,?) "
                "ON CONFLICT(raffle_id) DO UPDATE SET "
                "payment_type=excluded.payment_type, "
                "payment_denom=COALESCE(excluded.payment_denom, raffles.payment_denom), "
                "payment_cw20=COALESCE(excluded.payment_cw20, raffles.payment_cw20), "
                "revenue_address=excluded.revenue_address, "
                "start_time=COALESCE(raffles.start_time, excluded.start_time), "
                "created_at_height=COALESCE(raffles.created_at_height, excluded.created_at_height), "
                "create_tx_hash=excluded.create_tx_hash, updated_at=excluded.updated_at "
                "WHERE raffles.create_tx_hash IS NULL",
                (
                    ev.raffle_id, ev.creator, ev.nft_contract, ev.token_id, ev.ticket_price, ev.max_tickets,
                    _rfc3339(ev.start_time), _rfc3339(ev.end_time), ev.payment_type,
                    ev.payment_denom or ev.price_denom, ev.payment_cw20, ev.revenue_address,
                    ev.height, ev.tx_hash, now, now,
                ),
            )
            return cur.rowcount > 0

    async def record_purchase(self, ev: TicketsBought) -> bool:
        """
        Apply one tickets_bought event. The purchase row is keyed by
        (tx_hash, event_index); aggregates only move when that row is new.
        """
        ts = _rfc3339(ev.timestamp)
        async with self._tx() as c:
            cur = await c.execute(
                "INSERT INTO ticket_purchases(tx_hash,event_index,raffle_id,buyer,quantity,total_paid,denom,height,created_at) "
                "VALUES(?,?,?,?,?,?,?,?,?) ON CONFLICT(tx_hash,event_index) DO NOTHING",
                (ev.tx_hash, ev.event_index, ev.raffle_id, ev.buyer, ev.quantity, ev.total_paid, ev.denom, ev.height, ts),
            )
            if cur.rowcount == 0:
                return False

            async with c.execute(
                "SELECT ticket_count,total_paid,first_purchase,last_purchase FROM participants WHERE raffle_id=? AND address=?",
                (ev.raffle_id, ev.buyer),
            ) as q:
                row = await q.fetchone()

            if row is None:
                await c.execute(
                    "INSERT INTO participants(raffle_id,address,ticket_count,total_paid,first_purchase,last_purchase,payment_denom) "
                    "VALUES(?,?,?,?,?,?,?)",
                    (ev.raffle_id, ev.buyer, ev.quantity, ev.total_paid, ts, ts, ev.denom),
                )
            else:
                paid = Decimal(row["total_paid"] or "0") + Decimal(ev.total_paid)
                await c.execute(
                    "UPDATE participants SET ticket_count=?, total_paid=?, first_purchase=?, last_purchase=? "
                    "WHERE raffle_id=? AND address=?",
                    (
                        int(row["ticket_count"]) + ev.quantity, str(paid),
                        min(row["first_purchase"], ts), max(row["last_purchase"], ts),
                        ev.raffle_id, ev.buyer,
                    ),
                )

            # the ledger-reconciled count may already include this purchase
            await c.execute(
                "UPDATE raffles SET tickets_sold = MAX(tickets_sold, "
                "(SELECT COALESCE(SUM(quantity), 0) FROM ticket_purchases WHERE raffle_id=?)), "
                "updated_at=? WHERE raffle_id=?",
                (ev.raffle_id, _rfc3339(_now()), ev.raffle_id),
            )
            return True

    async def mark_raffle_ended(self, ev: RaffleEnded) -> bool:
        async with self._tx() as c:
            cur = await c.execute(
                "UPDATE raffles SET status='completed', end_reason=?, drand_round=COALESCE(?, drand_round), "
                "ended_at_height=?, end_tx_hash=?, updated_at=? WHERE raffle_id=?",
                (ev.end_reason, ev.drand_round, ev.height, ev.tx_hash, _rfc3339(_now()), ev.raffle_id),
            )
            return cur.rowcount > 0

    async def set_winner(self, ev: WinnerSelected) -> bool:
        async with self._tx() as c:
            cur = await c.execute(
                "UPDATE raffles SET winner=?, winner_ticket_index=?, updated_at=? WHERE raffle_id=?",
                (ev.winner, ev.ticket_index, _rfc3339(_now()), ev.raffle_id),
            )
            return cur.rowcount > 0

    async def mark_raffle_cancelled(self, ev: RaffleCancelled) -> bool:
        async with self._tx() as c:
            cur = await c.execute(
                "UPDATE raffles SET status='cancelled', ended_at_height=?, end_tx_hash=?, updated_at=? WHERE raffle_id=?",
                (ev.height, ev.tx_hash, _rfc3339(_now()), ev.raffle_id),
            )
            return cur.rowcount > 0

    # -------------------------
    # Reconciliation writes (settlement controller / ledger sync)
    # -------------------------
    async def set_tickets_sold(self, raffle_id: str, tickets_sold: int) -> None:
        async with self._tx() as c:
            await c.execute(
                "UPDATE raffles SET tickets_sold=?, updated_at=? WHERE raffle_id=?",
                (int(tickets_sold), _rfc3339(_now()), raffle_id),
            )

    async def complete_settlement(
        self,
        raffle_id: str,
        *,
        end_tx_hash: Optional[str],
        drand_round: int,
        end_reason: str,
        tickets_sold: int,
        winner: Optional[str] = None,
        winner_ticket_index: Optional[int] = None,
    ) -> bool:
        """
        Record a successful end_raffle. winner / index are only written when
        given, so a missing read-back never clears what the indexer projected.
        """
        async with self._tx() as c:
            cur = await c.execute(
                "UPDATE raffles SET status='completed', end_tx_hash=COALESCE(?, end_tx_hash), drand_round=?, "
                "end_reason=?, tickets_sold=?, winner=COALESCE(?, winner), "
                "winner_ticket_index=COALESCE(?, winner_ticket_index), updated_at=? WHERE raffle_id=?",
                (end_tx_hash, drand_round, end_reason, int(tickets_sold), winner, winner_ticket_index,
                 _rfc3339(_now()), raffle_id),
            )
            return cur.rowcount > 0

    async def apply_ledger_view(self, view: LedgerRaffleView) -> bool:
        """Overwrite status / winner / tickets_sold with what the contract reports."""
        async with self._tx() as c:
            cur = await c.execute(
                "UPDATE raffles SET status=?, winner=COALESCE(?, winner), tickets_sold=?, updated_at=? WHERE raffle_id=?",
                (view.status, view.winner, view.total_sold, _rfc3339(_now()), str(view.id)),
            )
            return cur.rowcount > 0

    async def upsert_raffle_from_ledger(self, view: LedgerRaffleView) -> None:
        """Insert or refresh a raffle from the contract's own view of it."""
        now = _rfc3339(_now())
        amount = str(view.price.get("amount", "0"))
        denom = view.price.get("denom")
        async with self._tx() as c:
            await c.execute(
                "INSERT INTO raffles(raffle_id,creator,nft_contract,token_id,ticket_price,max_tickets,tickets_sold,"
                "start_time,end_time,payment_denom,revenue_address,status,winner,created_at,updated_at) "
                "VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?,?) "
                "ON CONFLICT(raffle_id) DO UPDATE SET "
                "max_tickets=excluded.max_tickets, tickets_sold=excluded.tickets_sold, "
                "start_time=excluded.start_time, end_time=excluded.end_time, status=excluded.status, "
                "winner=COALESCE(excluded.winner, raffles.winner), updated_at=excluded.updated_at",
                (
                    str(view.id), view.creator, view.nft_contract, view.token_id, amount, view.max_tickets,
                    view.total_sold, _rfc3339(view.start_time), _rfc3339(view.end_time), denom,
                    view.creator, view.status, view.winner, now, now,
                ),
            )

    # -------------------------
    # Reads
    # -------------------------
    async def get_raffle(self, raffle_id: str) -> Optional[Raffle]:
        async with self.conn.execute("SELECT * FROM raffles WHERE raffle_id=?", (str(raffle_id),)) as cur:
            row = await cur.fetchone()
        return Raffle.model_validate(dict(row)) if row else None

    @staticmethod
    def _filters(status=None, creator=None) -> Tuple[str, list]:
        clauses, params = [], []
        if status:
            statuses = [status] if isinstance(status, str) else list(status)
            clauses.append(f"status IN ({','.join('?' * len(statuses))})")
            params.extend(statuses)
        if creator:
            clauses.append("creator=?")
            params.append(creator)
        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        return where, params

    async def list_raffles(self, status=None, creator: Optional[str] = None, page: int = 1, limit: int = 100) -> List[Raffle]:
        where, params = self._filters(status, creator)
        offset = (max(1, page) - 1) * limit
        async with self.conn.execute(
            f"SELECT * FROM raffles{where} ORDER BY created_at DESC, CAST(raffle_id AS INTEGER) DESC LIMIT ? OFFSET ?",
            (*params, limit, offset),
        ) as cur:
            rows = await cur.fetchall()
        return [Raffle.model_validate(dict(r)) for r in rows]

    async def count_raffles(self, status=None, creator: Optional[str] = None) -> int:
        where, params = self._filters(status, creator)
        async with self.conn.execute(f"SELECT COUNT(*) FROM raffles{where}", params) as cur:
            row = await cur.fetchone()
        return int(row[0])

    async def list_participants(self, raffle_id: str, page: int = 1, limit: int = 50) -> List[Participant]:
        offset = (max(1, page) - 1) * limit
        async with self.conn.execute(
            "SELECT * FROM participants WHERE raffle_id=? ORDER BY first_purchase ASC LIMIT ? OFFSET ?",
            (str(raffle_id), limit, offset),
        ) as cur:
            rows = await cur.fetchall()
        return [Participant.model_validate(dict(r)) for r in rows]

    async def find_eligible(self, now: datetime, safety_buffer: timedelta) -> List[Raffle]:
        """active AND sold > 0 AND (end_time <= now - buffer OR sold >= max)"""
        cutoff = _rfc3339(now - safety_buffer)
        async with self.conn.execute(
            "SELECT * FROM raffles WHERE status='active' AND tickets_sold > 0 "
            "AND (end_time <= ? OR tickets_sold >= max_tickets) ORDER BY end_time ASC",
            (cutoff,),
        ) as cur:
            rows = await cur.fetchall()
        return [Raffle.model_validate(dict(r)) for r in rows]

    async def count_eligible(self, now: datetime, safety_buffer: timedelta) -> int:
        cutoff = _rfc3339(now - safety_buffer)
        async with self.conn.execute(
            "SELECT COUNT(*) FROM raffles WHERE status='active' AND tickets_sold > 0 "
            "AND (end_time <= ? OR tickets_sold >= max_tickets)",
            (cutoff,),
        ) as cur:
            row = await cur.fetchone()
        return int(row[0])

    async def find_time_expired(self, now: datetime) -> List[Raffle]:
        async with self.conn.execute(
            "SELECT * FROM raffles WHERE status='active' AND tickets_sold > 0 AND end_time <= ? ORDER BY end_time ASC",
            (_rfc3339(now),),
        ) as cur:
            rows = await cur.fetchall()
        return [Raffle.model_validate(dict(r)) for r in rows]

    async def count_completed_since(self, since: datetime) -> int:
        async with self.conn.execute(
            "SELECT COUNT(*) FROM raffles WHERE status='completed' AND updated_at >= ?",
            (_rfc3339(since),),
        ) as cur:
            row = await cur.fetchone()
        return int(row[0])
