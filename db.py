# db.py

"""
King of the Hill - db.py
Canonical schema + BOTH async (aiosqlite) and sync (sqlite3) helpers.
Target DB path: /data/hill.db

Game globals live in `kv`; accounts, settled rounds, event records and
outbound transfers get their own tables. Amounts and fixed-point values can
exceed 64 bits, so they are stored as TEXT.
"""

from __future__ import annotations
from typing import Dict, Iterable, List, Optional
from contextlib import contextmanager
import json
import os
import sqlite3
import time
import aiosqlite

from dividends import Account, DividendAccumulator
from game import Changes, GameState, Round
from payouts import SplitPercentages

# =========================================================
# Canonical Schema
# =========================================================
SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS kv (
  k TEXT PRIMARY KEY,
  v TEXT
);

CREATE TABLE IF NOT EXISTS accounts (
  address        TEXT PRIMARY KEY,
  keys_all_time  TEXT NOT NULL DEFAULT '0',
  reward_debt    TEXT NOT NULL DEFAULT '0'
);

-- Settled rounds: one row per endGame
CREATE TABLE IF NOT EXISTS rounds (
  number                 INTEGER PRIMARY KEY,
  winner                 TEXT NOT NULL,
  pot                    TEXT NOT NULL,
  keys                   TEXT NOT NULL,
  winner_share           TEXT NOT NULL,
  burn_share             TEXT NOT NULL,
  dividend_share         TEXT NOT NULL,
  dev_share              TEXT NOT NULL,
  dividends_distributed  INTEGER NOT NULL DEFAULT 1,
  settled_at             INTEGER NOT NULL,
  settled_by             TEXT
);

CREATE TABLE IF NOT EXISTS events (
  id         INTEGER PRIMARY KEY AUTOINCREMENT,
  name       TEXT NOT NULL,
  payload    TEXT NOT NULL,
  created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS transfers (
  id         INTEGER PRIMARY KEY AUTOINCREMENT,
  round      INTEGER NOT NULL,
  to_addr    TEXT NOT NULL,
  amount     TEXT NOT NULL,
  reason     TEXT NOT NULL,
  created_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_events_name      ON events(name);
CREATE INDEX IF NOT EXISTS idx_transfers_round  ON transfers(round);
CREATE INDEX IF NOT EXISTS idx_transfers_to     ON transfers(to_addr);
""".strip()

_PRAGMAS = (
    "PRAGMA foreign_keys=ON",
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA temp_store=MEMORY",
    "PRAGMA busy_timeout=5000",
)

# =========================================================
# Connection
# =========================================================
DB_PATH = os.getenv("DB_PATH", "/data/hill.db")


def _ensure_dir(db_path: str) -> None:
    d = os.path.dirname(db_path)
    if d:
        os.makedirs(d, exist_ok=True)


async def connect(db_path: str = DB_PATH) -> aiosqlite.Connection:
    """
    Async connection for FastAPI handlers; ensures schema and sets PRAGMAs.
    """
    _ensure_dir(db_path)
    conn = await aiosqlite.connect(db_path)
    for p in _PRAGMAS:
        await conn.execute(p)

    # Use aiosqlite.Row for dict-like access
    conn.row_factory = aiosqlite.Row

    await conn.executescript(SCHEMA)
    await conn.commit()
    return conn


def connect_sync(db_path: str = DB_PATH) -> sqlite3.Connection:
    """
    Synchronous connection for scripts and tests that prefer blocking I/O.
    """
    _ensure_dir(db_path)
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    for p in _PRAGMAS:
        conn.execute(p)
    conn.executescript(SCHEMA)
    conn.commit()
    return conn


@contextmanager
def tx(conn: sqlite3.Connection):
    """
    Tiny transactional context manager for sync code.
    Usage:
        with tx(conn) as c:
            c.execute(...)
            c.execute(...)
    """
    try:
        conn.execute("BEGIN")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise

# =========================================================
# KV upsert
# =========================================================
_KV_UPSERT = "INSERT INTO kv(k, v) VALUES(?, ?) ON CONFLICT(k) DO UPDATE SET v=excluded.v"

# =========================================================
# State <-> rows
# =========================================================
def state_to_kv(state: GameState) -> Dict[str, str]:
    rnd = state.round
    acc = state.dividends
    return {
        "owner": state.owner,
        "dev_address": state.dev_address,
        "burn_address": state.burn_address,
        "min_buy": str(state.min_buy),
        "time_window": str(state.time_window),
        "splits": json.dumps({
            "winner": state.splits.winner,
            "burn": state.splits.burn,
            "dividends": state.splits.dividends,
            "dev": state.splits.dev,
        }),
        "paused": "1" if state.paused else "0",
        "balance": str(state.balance),
        "round": json.dumps({
            "number": rnd.number,
            "pot": str(rnd.pot),
            "leader": rnd.leader,
            "crowned_at": rnd.crowned_at,
            "total_keys": str(rnd.total_keys),
        }),
        "acc_per_key": str(acc.acc_per_key),
        "acc_carry": str(acc.carry),
        "acc_total_weight": str(acc.total_weight),
    }


def state_from_rows(kv: Dict[str, str], account_rows: Iterable) -> Optional[GameState]:
    """Rebuild a GameState; None when the database holds no game yet."""
    if "owner" not in kv:
        return None
    r = json.loads(kv["round"])
    accounts = {
        row[0]: Account(keys_all_time=int(row[1]), reward_debt=int(row[2]))
        for row in account_rows
    }
    return GameState(
        owner=kv["owner"],
        dev_address=kv["dev_address"],
        burn_address=kv["burn_address"],
        min_buy=int(kv["min_buy"]),
        time_window=int(kv["time_window"]),
        splits=SplitPercentages(**json.loads(kv["splits"])),
        paused=kv["paused"] == "1",
        balance=int(kv["balance"]),
        round=Round(
            number=int(r["number"]),
            pot=int(r["pot"]),
            leader=r["leader"],
            crowned_at=r["crowned_at"],
            total_keys=int(r["total_keys"]),
        ),
        dividends=DividendAccumulator(
            acc_per_key=int(kv["acc_per_key"]),
            carry=int(kv["acc_carry"]),
            total_weight=int(kv["acc_total_weight"]),
        ),
        accounts=accounts,
    )


def _account_rows(accounts: Dict[str, Account]) -> List[tuple]:
    return [(a, str(acct.keys_all_time), str(acct.reward_debt)) for a, acct in accounts.items()]


def _round_rows(changes: Changes) -> List[tuple]:
    return [
        (
            r.number, r.winner, str(r.pot), str(r.keys),
            str(r.split.winner), str(r.split.burn), str(r.split.dividends), str(r.split.dev),
            1 if r.dividends_distributed else 0, r.settled_at, r.settled_by,
        )
        for r in changes.rounds
    ]


def _event_rows(changes: Changes, now: int) -> List[tuple]:
    return [(e.name, json.dumps(e.to_dict()), now) for e in changes.events]


def _transfer_rows(changes: Changes, now: int) -> List[tuple]:
    return [(t.round, t.to, str(t.amount), t.reason, now) for t in changes.transfers]


_ACCOUNT_UPSERT = (
    "INSERT INTO accounts(address, keys_all_time, reward_debt) VALUES(?, ?, ?) "
    "ON CONFLICT(address) DO UPDATE SET keys_all_time=excluded.keys_all_time, reward_debt=excluded.reward_debt"
)
_ROUND_INSERT = (
    "INSERT INTO rounds(number, winner, pot, keys, winner_share, burn_share, dividend_share, dev_share, "
    "dividends_distributed, settled_at, settled_by) VALUES(?,?,?,?,?,?,?,?,?,?,?)"
)
_EVENT_INSERT = "INSERT INTO events(name, payload, created_at) VALUES(?,?,?)"
_TRANSFER_INSERT = "INSERT INTO transfers(round, to_addr, amount, reason, created_at) VALUES(?,?,?,?,?)"

# =========================================================
# Load / persist (async)
# =========================================================
async def load_state(conn: aiosqlite.Connection) -> Optional[GameState]:
    async with conn.execute("SELECT k, v FROM kv") as cur:
        kv = {row[0]: row[1] for row in await cur.fetchall()}
    async with conn.execute("SELECT address, keys_all_time, reward_debt FROM accounts") as cur:
        rows = await cur.fetchall()
    return state_from_rows(kv, rows)


async def persist(conn: aiosqlite.Connection, state: GameState, changes: Changes) -> None:
    """
    Write one operation's outcome: globals, touched accounts and new records.
    All or nothing; on failure the transaction is rolled back and the error re-raised.
    """
    now = int(time.time())
    try:
        await conn.executemany(_KV_UPSERT, list(state_to_kv(state).items()))
        if changes.accounts:
            await conn.executemany(_ACCOUNT_UPSERT, _account_rows(changes.accounts))
        if changes.rounds:
            await conn.executemany(_ROUND_INSERT, _round_rows(changes))
        if changes.events:
            await conn.executemany(_EVENT_INSERT, _event_rows(changes, now))
        if changes.transfers:
            await conn.executemany(_TRANSFER_INSERT, _transfer_rows(changes, now))
        await conn.commit()
    except Exception:
        await conn.rollback()
        raise


async def recent_rounds(conn: aiosqlite.Connection, limit: int = 10) -> List[dict]:
    async with conn.execute(
        "SELECT * FROM rounds ORDER BY number DESC LIMIT ?", (limit,)
    ) as cur:
        rows = await cur.fetchall()
    return [_round_dict(r) for r in rows]


async def get_round(conn: aiosqlite.Connection, number: int) -> Optional[dict]:
    async with conn.execute("SELECT * FROM rounds WHERE number=?", (number,)) as cur:
        row = await cur.fetchone()
    return _round_dict(row) if row else None


async def recent_events(conn: aiosqlite.Connection, limit: int = 50) -> List[dict]:
    async with conn.execute(
        "SELECT id, payload, created_at FROM events ORDER BY id DESC LIMIT ?", (limit,)
    ) as cur:
        rows = await cur.fetchall()
    return [{"id": r[0], "created_at": r[2], **json.loads(r[1])} for r in rows]


def _round_dict(row) -> dict:
    return {
        "number": row["number"],
        "winner": row["winner"],
        "pot": int(row["pot"]),
        "keys": int(row["keys"]),
        "winner_share": int(row["winner_share"]),
        "burn_share": int(row["burn_share"]),
        "dividend_share": int(row["dividend_share"]),
        "dev_share": int(row["dev_share"]),
        "dividends_distributed": bool(row["dividends_distributed"]),
        "settled_at": row["settled_at"],
        "settled_by": row["settled_by"],
    }

# =========================================================
# Load / persist (sync mirrors)
# =========================================================
def load_state_sync(conn: sqlite3.Connection) -> Optional[GameState]:
    kv = {row[0]: row[1] for row in conn.execute("SELECT k, v FROM kv").fetchall()}
    rows = conn.execute("SELECT address, keys_all_time, reward_debt FROM accounts").fetchall()
    return state_from_rows(kv, rows)


def persist_sync(conn: sqlite3.Connection, state: GameState, changes: Changes) -> None:
    now = int(time.time())
    with tx(conn) as c:
        c.executemany(_KV_UPSERT, list(state_to_kv(state).items()))
        if changes.accounts:
            c.executemany(_ACCOUNT_UPSERT, _account_rows(changes.accounts))
        if changes.rounds:
            c.executemany(_ROUND_INSERT, _round_rows(changes))
        if changes.events:
            c.executemany(_EVENT_INSERT, _event_rows(changes, now))
        if changes.transfers:
            c.executemany(_TRANSFER_INSERT, _transfer_rows(changes, now))


def save_genesis_sync(conn: sqlite3.Connection, state: GameState) -> None:
    """Write a fresh game (globals plus any accounts it already has)."""
    persist_sync(conn, state, Changes(accounts=dict(state.accounts)))
