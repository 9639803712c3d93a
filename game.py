# game.py
"""
King of the Hill - round ledger and the game engine.

Buy keys to take the crown and restart the countdown. Whoever still holds the
crown when the countdown lapses wins once someone settles the round; the pot
is split between the winner, the burn sink, the key holders and the dev fee.

The engine is host-agnostic: the caller, the attached value and the clock are
explicit inputs, and outbound value is reported as Transfer records (plus an
optional `on_transfer` hook). Every operation is all-or-nothing.
"""

from __future__ import annotations

import copy
import logging
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from typing import Callable, ClassVar, Dict, List, NamedTuple, Optional

from dividends import SCALE, Account, DividendAccumulator
from errors import StateError, ValidationError
from guard import non_reentrant, only_owner, when_not_paused
from payouts import BURN_ADDRESS, DEFAULT_SPLITS, PayoutSplit, SplitPercentages, Transfer, split_pot

log = logging.getLogger(__name__)

MIN_TIME_WINDOW = 60
MAX_TIME_WINDOW = 3600
DEFAULT_TIME_WINDOW = 5 * 60
DEFAULT_MIN_BUY = 10 ** 15  # 0.001 at 18 decimals


# =========================================================
# State
# =========================================================
@dataclass
class Round:
    number: int = 1
    pot: int = 0
    leader: Optional[str] = None
    crowned_at: Optional[int] = None  # None = no purchase yet this round
    total_keys: int = 0


@dataclass
class GameState:
    owner: str
    dev_address: str
    burn_address: str = BURN_ADDRESS
    min_buy: int = DEFAULT_MIN_BUY
    time_window: int = DEFAULT_TIME_WINDOW
    splits: SplitPercentages = DEFAULT_SPLITS
    paused: bool = False
    balance: int = 0
    round: Round = field(default_factory=Round)
    dividends: DividendAccumulator = field(default_factory=DividendAccumulator)
    accounts: Dict[str, Account] = field(default_factory=dict)

    @classmethod
    def genesis(
        cls,
        owner: str,
        dev_address: Optional[str] = None,
        *,
        burn_address: str = BURN_ADDRESS,
        min_buy: int = DEFAULT_MIN_BUY,
        time_window: int = DEFAULT_TIME_WINDOW,
        splits: SplitPercentages = DEFAULT_SPLITS,
    ) -> "GameState":
        _require_address(owner)
        if min_buy <= 0:
            raise ValidationError("min buy must be positive")
        _require_time_window(time_window)
        return cls(
            owner=owner,
            dev_address=dev_address or owner,
            burn_address=burn_address,
            min_buy=min_buy,
            time_window=time_window,
            splits=splits,
        )


# =========================================================
# Records
# =========================================================
@dataclass(frozen=True)
class Event:
    name: ClassVar[str] = "Event"

    def to_dict(self) -> dict:
        return {"event": self.name, **asdict(self)}


@dataclass(frozen=True)
class KeysPurchased(Event):
    name: ClassVar[str] = "KeysPurchased"
    round: int
    buyer: str
    amount: int
    keys: int
    timestamp: int


@dataclass(frozen=True)
class GameEnded(Event):
    name: ClassVar[str] = "GameEnded"
    round: int
    winner: str
    pot: int
    winner_share: int
    burn_share: int
    dividend_share: int
    dev_share: int
    timestamp: int


@dataclass(frozen=True)
class DividendsClaimed(Event):
    name: ClassVar[str] = "DividendsClaimed"
    holder: str
    amount: int


@dataclass(frozen=True)
class TimeWindowUpdated(Event):
    name: ClassVar[str] = "TimeWindowUpdated"
    old: int
    new: int


@dataclass(frozen=True)
class DevAddressUpdated(Event):
    name: ClassVar[str] = "DevAddressUpdated"
    old: str
    new: str


@dataclass(frozen=True)
class Paused(Event):
    name: ClassVar[str] = "Paused"
    account: str


@dataclass(frozen=True)
class Unpaused(Event):
    name: ClassVar[str] = "Unpaused"
    account: str


@dataclass(frozen=True)
class RoundResult:
    number: int
    winner: str
    pot: int
    keys: int
    split: PayoutSplit
    dividends_distributed: bool
    settled_at: int
    settled_by: Optional[str] = None

    def to_dict(self) -> dict:
        d = asdict(self)
        d["split"] = self.split._asdict()
        return d


class GameInfo(NamedTuple):
    round: int
    pot: int
    king: Optional[str]
    time_left: int
    keys: int
    active: bool


class Audit(NamedTuple):
    balance: int
    pot: int
    pending_total: int
    dust: int
    balanced: bool


@dataclass
class Changes:
    """Everything an operation touched since the last drain, for persistence."""

    accounts: Dict[str, Account] = field(default_factory=dict)
    events: List[Event] = field(default_factory=list)
    transfers: List[Transfer] = field(default_factory=list)
    rounds: List[RoundResult] = field(default_factory=list)


@dataclass
class _Journal:
    round: Round
    dividends: DividendAccumulator
    scalars: dict
    accounts: Dict[str, Optional[Account]]
    marks: tuple


def _require_address(addr) -> None:
    if not isinstance(addr, str) or not addr.strip():
        raise ValidationError("invalid address")


def _require_time_window(seconds) -> None:
    if not isinstance(seconds, int) or isinstance(seconds, bool):
        raise ValidationError("invalid time window")
    if not MIN_TIME_WINDOW <= seconds <= MAX_TIME_WINDOW:
        raise ValidationError("invalid time window")


_SCALARS = ("balance", "paused", "time_window", "dev_address")


# =========================================================
# Engine
# =========================================================
class KingOfTheHill:
    def __init__(
        self,
        state: GameState,
        clock: Optional[Callable[[], float]] = None,
        on_transfer: Optional[Callable[[Transfer], None]] = None,
    ):
        self.state = state
        self.clock = clock or time.time
        self.on_transfer = on_transfer
        self.events: List[Event] = []
        self.transfers: List[Transfer] = []
        self.settled: List[RoundResult] = []
        self._entered = False
        self._journal: Optional[_Journal] = None
        self._touched: set = set()

    # ---------------- internals ----------------
    def _now(self) -> int:
        return int(self.clock())

    @contextmanager
    def _atomic(self):
        """Run the block as one unit: any exception restores the prior state."""
        if self._journal is not None:
            # nested inside a running operation; the outer journal covers it
            yield
            return
        st = self.state
        journal = _Journal(
            round=copy.copy(st.round),
            dividends=copy.copy(st.dividends),
            scalars={k: getattr(st, k) for k in _SCALARS},
            accounts={},
            marks=(len(self.events), len(self.transfers), len(self.settled)),
        )
        self._journal = journal
        try:
            yield
        except BaseException:
            st.round = journal.round
            st.dividends = journal.dividends
            for k, v in journal.scalars.items():
                setattr(st, k, v)
            for addr, saved in journal.accounts.items():
                if saved is None:
                    st.accounts.pop(addr, None)
                else:
                    st.accounts[addr] = saved
            e, t, s = journal.marks
            del self.events[e:]
            del self.transfers[t:]
            del self.settled[s:]
            raise
        else:
            self._touched.update(journal.accounts)
        finally:
            self._journal = None

    def _account(self, addr: str, create: bool = False) -> Optional[Account]:
        acct = self.state.accounts.get(addr)
        if self._journal is not None and addr not in self._journal.accounts:
            self._journal.accounts[addr] = copy.copy(acct) if acct is not None else None
        if acct is None and create:
            acct = self.state.accounts[addr] = Account()
        return acct

    def _emit(self, event: Event) -> None:
        self.events.append(event)

    def _pay(self, to: str, amount: int, reason: str) -> Optional[Transfer]:
        """Book an outbound transfer (effect only; hooks run in _interact)."""
        if amount <= 0:
            return None
        if amount > self.state.balance:
            raise StateError("insufficient balance")
        self.state.balance -= amount
        t = Transfer(to=to, amount=amount, reason=reason, round=self.state.round.number)
        self.transfers.append(t)
        return t

    def _interact(self, transfers) -> None:
        if self.on_transfer is None:
            return
        for t in transfers:
            if t is not None:
                self.on_transfer(t)

    # ---------------- player operations ----------------
    @non_reentrant
    @when_not_paused
    def buy_keys(self, caller: str, value: int) -> int:
        """Buy floor(value / min_buy) keys and take the crown. Returns keys bought."""
        st = self.state
        _require_address(caller)
        if not isinstance(value, int) or isinstance(value, bool):
            raise ValidationError("value must be an integer amount")
        if value < st.min_buy:
            raise ValidationError("below minimum buy")
        now = self._now()
        keys = value // st.min_buy

        with self._atomic():
            acct = self._account(caller, create=True)
            rnd = st.round
            st.balance += value
            rnd.pot += value
            rnd.total_keys += keys
            st.dividends.add_keys(acct, keys)
            rnd.leader = caller
            rnd.crowned_at = now
            self._emit(KeysPurchased(round=rnd.number, buyer=caller, amount=value, keys=keys, timestamp=now))

        log.info("[buy] round=%s buyer=%s value=%s keys=%s pot=%s", rnd.number, caller, value, keys, rnd.pot)
        return keys

    @non_reentrant
    def end_game(self, caller: Optional[str] = None) -> RoundResult:
        """Settle an expired round and open the next one."""
        st = self.state
        rnd = st.round
        if rnd.crowned_at is None:
            raise StateError("no purchases this round")
        now = self._now()
        if now < rnd.crowned_at + st.time_window:
            raise StateError("time window not expired")

        with self._atomic():
            split = split_pot(rnd.pot, st.splits)
            dev_amt = split.dev
            distributed = st.dividends.distribute(split.dividends)
            if not distributed:
                dev_amt += split.dividends
            paid = [
                self._pay(rnd.leader, split.winner, "winner"),
                self._pay(st.burn_address, split.burn, "burn"),
                self._pay(st.dev_address, dev_amt, "dev"),
            ]
            result = RoundResult(
                number=rnd.number,
                winner=rnd.leader,
                pot=rnd.pot,
                keys=rnd.total_keys,
                split=split,
                dividends_distributed=distributed,
                settled_at=now,
                settled_by=caller,
            )
            self.settled.append(result)
            st.round = Round(number=rnd.number + 1)
            self._emit(GameEnded(
                round=result.number,
                winner=result.winner,
                pot=result.pot,
                winner_share=split.winner,
                burn_share=split.burn,
                dividend_share=split.dividends,
                dev_share=split.dev,
                timestamp=now,
            ))
            self._interact(paid)

        log.info(
            "[settle] round=%s winner=%s pot=%s win=%s burn=%s div=%s dev=%s",
            result.number, result.winner, result.pot, split.winner, split.burn, split.dividends, dev_amt,
        )
        return result

    @non_reentrant
    def claim_dividends(self, caller: str) -> int:
        st = self.state
        acct = st.accounts.get(caller)
        if acct is None or st.dividends.pending(acct) == 0:
            raise ValidationError("no dividends to claim")

        with self._atomic():
            acct = self._account(caller)
            amount = st.dividends.claim(acct)
            t = self._pay(caller, amount, "dividends")
            self._emit(DividendsClaimed(holder=caller, amount=amount))
            self._interact([t])

        log.info("[claim] holder=%s amount=%s", caller, amount)
        return amount

    def receive(self, caller: str, value: int) -> None:
        """Value sent without a purchase is always refused."""
        raise StateError("use buyKeys")

    # ---------------- owner operations ----------------
    @only_owner
    def set_time_window(self, caller: str, seconds: int) -> None:
        _require_time_window(seconds)
        with self._atomic():
            old = self.state.time_window
            self.state.time_window = seconds
            self._emit(TimeWindowUpdated(old=old, new=seconds))
        log.info("[admin] time_window %s -> %s", old, seconds)

    @only_owner
    def set_dev_address(self, caller: str, address: str) -> None:
        _require_address(address)
        with self._atomic():
            old = self.state.dev_address
            self.state.dev_address = address
            self._emit(DevAddressUpdated(old=old, new=address))
        log.info("[admin] dev_address %s -> %s", old, address)

    @only_owner
    def pause(self, caller: str) -> None:
        if self.state.paused:
            raise StateError("already paused")
        with self._atomic():
            self.state.paused = True
            self._emit(Paused(account=caller))
        log.info("[admin] paused")

    @only_owner
    def unpause(self, caller: str) -> None:
        if not self.state.paused:
            raise StateError("not paused")
        with self._atomic():
            self.state.paused = False
            self._emit(Unpaused(account=caller))
        log.info("[admin] unpaused")

    # ---------------- views ----------------
    @property
    def owner(self) -> str:
        return self.state.owner

    @property
    def dev_address(self) -> str:
        return self.state.dev_address

    @property
    def paused(self) -> bool:
        return self.state.paused

    @property
    def time_window(self) -> int:
        return self.state.time_window

    @property
    def current_round(self) -> int:
        return self.state.round.number

    @property
    def total_pot(self) -> int:
        return self.state.round.pot

    @property
    def current_king(self) -> Optional[str]:
        return self.state.round.leader

    @property
    def total_keys_this_round(self) -> int:
        return self.state.round.total_keys

    @property
    def balance(self) -> int:
        return self.state.balance

    def keys_owned(self, account: str) -> int:
        acct = self.state.accounts.get(account)
        return acct.keys_all_time if acct else 0

    def pending_dividends(self, account: str) -> int:
        acct = self.state.accounts.get(account)
        return self.state.dividends.pending(acct) if acct else 0

    def is_game_active(self) -> bool:
        rnd = self.state.round
        if rnd.crowned_at is None:
            return False
        return self._now() < rnd.crowned_at + self.state.time_window

    def time_remaining(self) -> int:
        rnd = self.state.round
        if rnd.crowned_at is None:
            return self.state.time_window
        return max(0, rnd.crowned_at + self.state.time_window - self._now())

    def get_game_info(self) -> GameInfo:
        rnd = self.state.round
        return GameInfo(
            round=rnd.number,
            pot=rnd.pot,
            king=rnd.leader,
            time_left=self.time_remaining(),
            keys=rnd.total_keys,
            active=self.is_game_active(),
        )

    def audit(self) -> Audit:
        """
        Check that the held balance covers the pot plus every outstanding claim.
        Walks all accounts, so it is meant for health checks and tests only.
        """
        st = self.state
        acc = st.dividends
        accrued = sum(acc.accrued(a) for a in st.accounts.values())
        pending_total = sum(acc.pending(a) for a in st.accounts.values())
        balanced = st.balance * SCALE == st.round.pot * SCALE + accrued + acc.carry
        return Audit(
            balance=st.balance,
            pot=st.round.pot,
            pending_total=pending_total,
            dust=st.balance - st.round.pot - pending_total,
            balanced=balanced,
        )

    # ---------------- persistence support ----------------
    def drain_changes(self) -> Changes:
        """Hand over what changed since the last drain and start empty logs."""
        if self._journal is not None:
            # rollback marks index into the live logs
            raise StateError("cannot drain during an operation")
        changes = Changes(
            accounts={a: self.state.accounts[a] for a in self._touched if a in self.state.accounts},
            events=self.events,
            transfers=self.transfers,
            rounds=self.settled,
        )
        self.events, self.transfers, self.settled = [], [], []
        self._touched = set()
        return changes
