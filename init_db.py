"""
King of the Hill - init_db.py
One-shot initializer for the SQLite database:
- Ensures schema (PRAGMA + tables + indexes)
- Writes the genesis game (round 1, owner from settings) if none exists
"""

import asyncio
import logging

import aiosqlite
import db as dbmod
from config import Settings, settings
from game import Changes, GameState

log = logging.getLogger(__name__)


def genesis_state(cfg: Settings = settings) -> GameState:
    return GameState.genesis(
        owner=cfg.OWNER_ADDRESS,
        dev_address=cfg.dev_address,
        burn_address=cfg.BURN_ADDRESS,
        min_buy=cfg.MIN_BUY,
        time_window=cfg.TIME_WINDOW,
        splits=cfg.splits,
    )


async def ensure_game(conn: aiosqlite.Connection, cfg: Settings = settings) -> GameState:
    """Return the stored game, writing a genesis one first if the database is empty."""
    state = await dbmod.load_state(conn)
    if state is not None:
        log.info("[init] game exists: round=%s owner=%s", state.round.number, state.owner)
        return state

    state = genesis_state(cfg)
    await dbmod.persist(conn, state, Changes())
    log.info("[init] genesis game written: owner=%s dev=%s window=%ss", state.owner, state.dev_address, state.time_window)
    return state


# =========================================================
# Main
# =========================================================
async def main():
    logging.basicConfig(level=settings.LOG_LEVEL)
    log.info("Using DB_PATH=%s", settings.DB_PATH)
    conn = await dbmod.connect(settings.DB_PATH)
    try:
        await ensure_game(conn)
    finally:
        await conn.close()


if __name__ == "__main__":
    asyncio.run(main())
