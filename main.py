# main.py
# =========================================================
# King of the Hill Backend (FastAPI)
# =========================================================
from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

import db as dbmod
from config import format_units, settings
from errors import AuthorizationError, HillError, ReentrancyError, StateError, ValidationError
from game import GameState, KingOfTheHill
from init_db import ensure_game

log = logging.getLogger(__name__)

VERSION = "0.1.0"

# =========================================================
# App Init
# =========================================================
app = FastAPI(title="King of the Hill Backend", version=VERSION, debug=settings.DEBUG)

# ----------------------------- CORS ---------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

API = (getattr(settings, "API_PREFIX", "/api") or "/api").rstrip("/")

# =========================================================
# Errors
# =========================================================
_STATUS = {
    ValidationError: 400,
    AuthorizationError: 403,
    StateError: 409,
    ReentrancyError: 423,
}


@app.exception_handler(HillError)
async def hill_error_handler(request: Request, exc: HillError):
    status = _STATUS.get(type(exc), 400)
    return JSONResponse(status_code=status, content={"error": exc.kind, "detail": exc.reason})


# =========================================================
# Host: one game, one writer
# =========================================================
def caller_identity(x_caller: Optional[str] = Header(None)) -> str:
    """The caller's account comes from the X-Caller header."""
    if not x_caller or not x_caller.strip():
        raise HTTPException(401, "X-Caller header required")
    return x_caller.strip()


def _new_game(state: GameState) -> KingOfTheHill:
    # read app.state.clock at call time so it can be swapped after startup
    return KingOfTheHill(state, clock=lambda: app.state.clock())


async def _run(op: Callable[[KingOfTheHill], object]):
    """
    Execute one mutating operation under the writer lock and persist its outcome.
    A failed write rolls back and reloads the game from disk.
    """
    async with app.state.lock:
        game: KingOfTheHill = app.state.game
        result = op(game)
        changes = game.drain_changes()
        try:
            await dbmod.persist(app.state.db, game.state, changes)
        except Exception:
            log.exception("[persist] write failed; reloading game from disk")
            app.state.game = _new_game(await dbmod.load_state(app.state.db))
            raise HTTPException(500, "Failed to persist game state")
        return result


async def _read(fn: Callable[[KingOfTheHill], object]):
    async with app.state.lock:
        return fn(app.state.game)


async def _history(query, *args):
    # same lock as writers so a persist in flight is never seen half-done
    async with app.state.lock:
        return await query(app.state.db, *args)


# =========================================================
# Lifecycle
# =========================================================
@app.on_event("startup")
async def on_startup():
    logging.basicConfig(level=settings.LOG_LEVEL)

    # connect also applies the schema
    app.state.db = await dbmod.connect(settings.DB_PATH)

    app.state.clock = time.time
    app.state.lock = asyncio.Lock()
    app.state.game = _new_game(await ensure_game(app.state.db, settings))
    log.info(
        "[startup] round=%s owner=%s window=%ss db=%s",
        app.state.game.current_round, app.state.game.owner, app.state.game.time_window, settings.DB_PATH,
    )


@app.on_event("shutdown")
async def on_shutdown():
    conn = getattr(app.state, "db", None)
    if conn is not None:
        await conn.close()


# =========================================================
# Health
# =========================================================
@app.get(f"{API}/health")
async def health():
    return {"ok": True, "ts": time.time(), "service": "king-of-the-hill", "version": VERSION}


@app.get(f"{API}/health/full")
async def health_full():
    audit = await _read(lambda g: g.audit())
    return {"ok": audit.balanced, "audit": audit._asdict()}


# =========================================================
# Models
# =========================================================
class ValueReq(BaseModel):
    value: int = Field(ge=0, description="Attached value in base units")


class TimeWindowReq(BaseModel):
    seconds: int


class DevAddressReq(BaseModel):
    address: str


class GameInfoResp(BaseModel):
    round: int
    pot: int
    king: Optional[str] = None
    time_left: int
    keys: int
    active: bool


class BuyResp(BaseModel):
    keys: int
    round: int
    king: str
    pot: int
    time_left: int


class AccountResp(BaseModel):
    address: str
    keys_owned: int
    pending_dividends: int


class ClaimResp(BaseModel):
    holder: str
    amount: int


class RoundResp(BaseModel):
    number: int
    winner: str
    pot: int
    keys: int
    winner_share: int
    burn_share: int
    dividend_share: int
    dev_share: int
    dividends_distributed: bool
    settled_at: int
    settled_by: Optional[str] = None


class ConfigResp(BaseModel):
    owner: str
    dev_address: str
    burn_address: str
    paused: bool
    time_window: int
    min_buy: int
    min_buy_display: str
    token_decimals: int
    splits: dict


def _round_resp(result) -> RoundResp:
    s = result.split
    return RoundResp(
        number=result.number,
        winner=result.winner,
        pot=result.pot,
        keys=result.keys,
        winner_share=s.winner,
        burn_share=s.burn,
        dividend_share=s.dividends,
        dev_share=s.dev,
        dividends_distributed=result.dividends_distributed,
        settled_at=result.settled_at,
        settled_by=result.settled_by,
    )


# =========================================================
# Endpoints - Read-only
# =========================================================
@app.get(f"{API}/config", response_model=ConfigResp)
async def get_config():
    def _cfg(g: KingOfTheHill) -> ConfigResp:
        st = g.state
        return ConfigResp(
            owner=st.owner,
            dev_address=st.dev_address,
            burn_address=st.burn_address,
            paused=st.paused,
            time_window=st.time_window,
            min_buy=st.min_buy,
            min_buy_display=format_units(st.min_buy, settings.TOKEN_DECIMALS),
            token_decimals=settings.TOKEN_DECIMALS,
            splits={
                "winner": st.splits.winner,
                "burn": st.splits.burn,
                "dividends": st.splits.dividends,
                "dev": st.splits.dev,
            },
        )

    return await _read(_cfg)


@app.get(f"{API}/game", response_model=GameInfoResp)
async def game_info():
    info = await _read(lambda g: g.get_game_info())
    return GameInfoResp(**info._asdict())


@app.get(f"{API}/accounts/{{address}}", response_model=AccountResp)
async def account(address: str):
    keys, pending = await _read(lambda g: (g.keys_owned(address), g.pending_dividends(address)))
    return AccountResp(address=address, keys_owned=keys, pending_dividends=pending)


# =========================================================
# Endpoints - Player operations
# =========================================================
@app.post(f"{API}/keys", response_model=BuyResp)
async def buy_keys(body: ValueReq, caller: str = Depends(caller_identity)):

    def _buy(g: KingOfTheHill) -> BuyResp:
        keys = g.buy_keys(caller, body.value)
        return BuyResp(keys=keys, round=g.current_round, king=g.current_king, pot=g.total_pot, time_left=g.time_remaining())

    return await _run(_buy)


@app.post(f"{API}/game/end", response_model=RoundResp)
async def end_game(x_caller: Optional[str] = Header(None)):
    caller = x_caller.strip() if x_caller else None
    result = await _run(lambda g: g.end_game(caller))
    return _round_resp(result)


@app.post(f"{API}/dividends/claim", response_model=ClaimResp)
async def claim_dividends(caller: str = Depends(caller_identity)):
    amount = await _run(lambda g: g.claim_dividends(caller))
    return ClaimResp(holder=caller, amount=amount)


@app.post(f"{API}/transfer")
async def unsolicited_transfer(body: ValueReq, caller: str = Depends(caller_identity)):
    await _run(lambda g: g.receive(caller, body.value))


# =========================================================
# Endpoints - Owner operations
# =========================================================
@app.post(f"{API}/admin/time-window", response_model=ConfigResp)
async def admin_set_time_window(body: TimeWindowReq, caller: str = Depends(caller_identity)):
    await _run(lambda g: g.set_time_window(caller, body.seconds))
    return await get_config()


@app.post(f"{API}/admin/dev-address", response_model=ConfigResp)
async def admin_set_dev_address(body: DevAddressReq, caller: str = Depends(caller_identity)):
    await _run(lambda g: g.set_dev_address(caller, body.address))
    return await get_config()


@app.post(f"{API}/admin/pause", response_model=ConfigResp)
async def admin_pause(caller: str = Depends(caller_identity)):
    await _run(lambda g: g.pause(caller))
    return await get_config()


@app.post(f"{API}/admin/unpause", response_model=ConfigResp)
async def admin_unpause(caller: str = Depends(caller_identity)):
    await _run(lambda g: g.unpause(caller))
    return await get_config()


# =========================================================
# Endpoints - History
# =========================================================
@app.get(f"{API}/rounds/recent", response_model=List[RoundResp])
async def rounds_recent(limit: int = Query(10)):
    n = max(1, min(100, int(limit)))
    return await _history(dbmod.recent_rounds, n)


@app.get(f"{API}/rounds/{{number}}", response_model=RoundResp)
async def get_round(number: int):
    r = await _history(dbmod.get_round, number)
    if not r:
        raise HTTPException(404, "Round not found")
    return r


@app.get(f"{API}/events")
async def events(limit: int = Query(50)):
    n = max(1, min(500, int(limit)))
    return await _history(dbmod.recent_events, n)
