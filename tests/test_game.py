import random

import pytest

from conftest import OWNER
from errors import AuthorizationError, ReentrancyError, StateError, ValidationError
from game import (
    Changes,
    DevAddressUpdated,
    DividendsClaimed,
    GameEnded,
    GameState,
    KeysPurchased,
    KingOfTheHill,
    Paused,
    TimeWindowUpdated,
    Unpaused,
)
from payouts import BURN_ADDRESS

ETHER = 10 ** 18
MIN_BUY = ETHER // 1000
FIVE_MINUTES = 5 * 60

P1, P2, P3, DEV = "0xp1", "0xp2", "0xp3", "0xdev"


def ether(s: str) -> int:
    whole, _, frac = s.partition(".")
    return int(whole or 0) * ETHER + int(frac.ljust(18, "0") or 0)


def paid_to(game, who, reason=None):
    return sum(t.amount for t in game.transfers if t.to == who and (reason is None or t.reason == reason))


def assert_conserved(game):
    audit = game.audit()
    assert audit.balanced
    assert audit.dust >= 0
    assert game.balance == audit.pot + audit.pending_total + audit.dust


# =========================================================
# Deployment
# =========================================================
def test_initial_state(game):
    assert game.owner == OWNER
    assert game.dev_address == OWNER
    assert game.current_round == 1
    assert game.total_pot == 0
    assert game.current_king is None
    assert game.time_window == FIVE_MINUTES
    assert game.paused is False
    assert game.is_game_active() is False
    assert game.time_remaining() == FIVE_MINUTES


def test_genesis_rejects_bad_config():
    with pytest.raises(ValidationError):
        GameState.genesis(owner="")
    with pytest.raises(ValidationError):
        GameState.genesis(owner=OWNER, time_window=59)
    with pytest.raises(ValidationError):
        GameState.genesis(owner=OWNER, min_buy=0)


# =========================================================
# Buying keys
# =========================================================
def test_buy_minimum(game):
    assert game.buy_keys(P1, MIN_BUY) == 1
    assert game.current_king == P1
    assert game.keys_owned(P1) == 1
    assert game.total_pot == MIN_BUY
    assert game.balance == MIN_BUY
    assert isinstance(game.events[-1], KeysPurchased)
    assert game.events[-1].keys == 1


def test_below_minimum_rejected_and_state_unchanged(game):
    with pytest.raises(ValidationError, match="below minimum buy"):
        game.buy_keys(P1, ether("0.0005"))
    assert game.total_pot == 0
    assert game.current_king is None
    assert game.keys_owned(P1) == 0
    assert game.events == []
    assert P1 not in game.state.accounts


def test_keys_are_floor_of_value(game):
    game.buy_keys(P1, ether("0.005"))
    assert game.keys_owned(P1) == 5
    assert game.total_keys_this_round == 5


def test_remainder_stays_in_pot(game):
    game.buy_keys(P1, ether("0.0015"))
    assert game.keys_owned(P1) == 1
    assert game.total_pot == ether("0.0015")
    assert game.transfers == []


def test_king_changes_with_each_purchase(game):
    game.buy_keys(P1, MIN_BUY)
    assert game.current_king == P1
    game.buy_keys(P2, MIN_BUY)
    assert game.current_king == P2


def test_purchase_resets_timer(game, clock):
    game.buy_keys(P1, MIN_BUY)
    first = game.state.round.crowned_at
    clock.advance(60)
    assert game.time_remaining() == FIVE_MINUTES - 60
    game.buy_keys(P2, MIN_BUY)
    assert game.state.round.crowned_at > first
    assert game.time_remaining() == FIVE_MINUTES


def test_pot_accumulates(game):
    game.buy_keys(P1, MIN_BUY)
    game.buy_keys(P2, ether("0.002"))
    assert game.total_pot == ether("0.003")
    assert game.total_keys_this_round == 3


def test_non_integer_value_rejected(game):
    with pytest.raises(ValidationError):
        game.buy_keys(P1, 0.5)


def test_empty_caller_rejected(game):
    with pytest.raises(ValidationError):
        game.buy_keys("", MIN_BUY)


# =========================================================
# Time window
# =========================================================
def test_active_during_window(game, clock):
    game.buy_keys(P1, MIN_BUY)
    assert game.is_game_active() is True
    clock.advance(FIVE_MINUTES - 1)
    assert game.is_game_active() is True
    assert game.time_remaining() == 1


def test_inactive_once_window_lapses(game, clock):
    game.buy_keys(P1, MIN_BUY)
    clock.advance(FIVE_MINUTES)
    assert game.is_game_active() is False
    assert game.time_remaining() == 0
    clock.advance(1000)
    assert game.time_remaining() == 0


def test_buy_after_expiry_recrowns_and_restarts_timer(game, clock):
    game.buy_keys(P1, MIN_BUY)
    clock.advance(FIVE_MINUTES + 10)
    game.buy_keys(P2, MIN_BUY)
    assert game.current_king == P2
    assert game.is_game_active() is True
    with pytest.raises(StateError):
        game.end_game()


def test_new_time_window_applies_to_running_timer(game, clock):
    game.buy_keys(P1, MIN_BUY)
    game.set_time_window(OWNER, 60)
    assert game.time_remaining() == 60
    clock.advance(60)
    assert game.is_game_active() is False
    game.end_game()
    assert game.current_round == 2


# =========================================================
# Ending the game
# =========================================================
@pytest.fixture()
def three_buyers(game):
    game.buy_keys(P1, ether("0.01"))
    game.buy_keys(P2, ether("0.02"))
    game.buy_keys(P3, ether("0.01"))
    return game


def test_cannot_end_before_expiry(three_buyers):
    with pytest.raises(StateError, match="time window not expired"):
        three_buyers.end_game()


def test_cannot_end_without_purchase(game, clock):
    clock.advance(FIVE_MINUTES * 2)
    with pytest.raises(StateError, match="no purchases"):
        game.end_game()


def test_scenario_payouts(three_buyers, clock):
    game = three_buyers
    game.set_dev_address(OWNER, DEV)
    assert game.total_pot == ether("0.04")
    assert game.total_keys_this_round == 40

    clock.advance(FIVE_MINUTES + 1)
    result = game.end_game(P1)

    assert result.winner == P3
    assert result.number == 1
    assert paid_to(game, P3, "winner") == ether("0.016")
    assert paid_to(game, BURN_ADDRESS, "burn") == ether("0.012")
    assert paid_to(game, DEV, "dev") == ether("0.002")
    assert result.split.dividends == ether("0.01")
    assert game.state.dividends.acc_per_key // 10 ** 18 == ether("0.00025")

    assert game.current_round == 2
    assert game.total_pot == 0
    assert game.current_king is None
    assert game.total_keys_this_round == 0

    assert game.pending_dividends(P1) == ether("0.0025")
    assert game.pending_dividends(P2) == ether("0.005")
    assert game.pending_dividends(P3) == ether("0.0025")
    assert game.balance == ether("0.01")
    assert_conserved(game)

    ended = game.events[-1]
    assert isinstance(ended, GameEnded)
    assert ended.pot == ether("0.04")
    assert ended.winner_share + ended.burn_share + ended.dividend_share + ended.dev_share == ended.pot


def test_settles_exactly_once(three_buyers, clock):
    clock.advance(FIVE_MINUTES + 1)
    three_buyers.end_game()
    with pytest.raises(StateError):
        three_buyers.end_game()
    assert three_buyers.current_round == 2


def test_multiple_rounds(game, clock):
    game.buy_keys(P1, ether("0.01"))
    clock.advance(FIVE_MINUTES + 1)
    game.end_game()

    game.buy_keys(P2, ether("0.02"))
    assert game.current_round == 2
    assert game.current_king == P2
    assert game.total_keys_this_round == 20
    assert game.keys_owned(P1) == 10


def test_round_numbers_strictly_increase(game, clock):
    seen = [game.current_round]
    for _ in range(5):
        game.buy_keys(P1, MIN_BUY)
        clock.advance(FIVE_MINUTES)
        game.end_game()
        seen.append(game.current_round)
    assert seen == [1, 2, 3, 4, 5, 6]
    assert [r.number for r in game.settled] == [1, 2, 3, 4, 5]


# =========================================================
# Dividends
# =========================================================
def test_dividends_accumulate_for_holders(game, clock):
    game.buy_keys(P1, ether("0.01"))
    game.buy_keys(P2, ether("0.01"))
    clock.advance(FIVE_MINUTES + 1)
    game.end_game()
    assert game.pending_dividends(P1) == ether("0.0025")
    assert game.pending_dividends(P2) == ether("0.0025")


def test_claim_transfers_exact_pending(game, clock):
    game.buy_keys(P1, ether("0.01"))
    game.buy_keys(P2, ether("0.01"))
    clock.advance(FIVE_MINUTES + 1)
    game.end_game()

    pending = game.pending_dividends(P1)
    balance_before = game.balance
    assert game.claim_dividends(P1) == pending
    assert paid_to(game, P1, "dividends") == pending
    assert game.pending_dividends(P1) == 0
    assert game.balance == balance_before - pending
    assert game.events[-1] == DividendsClaimed(holder=P1, amount=pending)
    assert_conserved(game)


def test_claim_with_nothing_pending_fails(game):
    with pytest.raises(ValidationError, match="no dividends"):
        game.claim_dividends(P1)
    game.buy_keys(P1, MIN_BUY)
    with pytest.raises(ValidationError, match="no dividends"):
        game.claim_dividends(P1)


def test_double_claim_fails(game, clock):
    game.buy_keys(P1, ether("0.01"))
    clock.advance(FIVE_MINUTES)
    game.end_game()
    game.claim_dividends(P1)
    with pytest.raises(ValidationError):
        game.claim_dividends(P1)


def test_dividends_persist_across_rounds(game, clock):
    game.buy_keys(P1, ether("0.01"))
    game.buy_keys(P2, ether("0.01"))
    clock.advance(FIVE_MINUTES + 1)
    game.end_game()
    after_round1 = game.pending_dividends(P1)

    game.buy_keys(P3, ether("0.01"))
    clock.advance(FIVE_MINUTES + 1)
    game.end_game()
    assert game.pending_dividends(P1) >= after_round1
    assert_conserved(game)


def test_later_buyer_does_not_earn_earlier_rounds(game, clock):
    game.buy_keys(P1, ether("0.01"))
    clock.advance(FIVE_MINUTES)
    game.end_game()
    assert game.pending_dividends(P1) == ether("0.0025")

    game.buy_keys(P2, ether("0.01"))
    assert game.pending_dividends(P2) == 0
    assert game.pending_dividends(P1) == ether("0.0025")


def test_many_holders_all_earn(game, clock):
    players = [f"0xplayer{i}" for i in range(10)]
    for p in players:
        game.buy_keys(p, MIN_BUY)
    clock.advance(FIVE_MINUTES + 1)
    game.end_game()
    for p in players:
        assert game.pending_dividends(p) > 0
    assert_conserved(game)


def test_pending_is_non_decreasing_without_claims(game, clock):
    rng = random.Random(7)
    players = [P1, P2, P3]
    last = {p: 0 for p in players}
    for _ in range(8):
        for _ in range(rng.randint(1, 4)):
            game.buy_keys(rng.choice(players), MIN_BUY * rng.randint(1, 30) + rng.randint(0, MIN_BUY - 1))
        clock.advance(FIVE_MINUTES)
        game.end_game()
        for p in players:
            now = game.pending_dividends(p)
            assert now >= last[p]
            last[p] = now


# =========================================================
# Conservation
# =========================================================
def test_conservation_under_random_interleavings(clock):
    rng = random.Random(20240601)
    game = KingOfTheHill(GameState.genesis(owner=OWNER, dev_address=DEV), clock=clock)
    players = [f"0xp{i}" for i in range(6)]
    for _ in range(400):
        action = rng.random()
        try:
            if action < 0.55:
                game.buy_keys(rng.choice(players), rng.randint(MIN_BUY // 2, MIN_BUY * 50))
            elif action < 0.7:
                game.end_game(rng.choice(players))
            elif action < 0.85:
                game.claim_dividends(rng.choice(players))
            else:
                clock.advance(rng.randint(1, FIVE_MINUTES))
        except (ValidationError, StateError):
            pass
        assert_conserved(game)
        assert game.total_keys_this_round == sum(
            e.keys for e in game.events if isinstance(e, KeysPurchased) and e.round == game.current_round
        )
    assert game.current_round > 1
    total_in = sum(e.amount for e in game.events if isinstance(e, KeysPurchased))
    total_out = sum(t.amount for t in game.transfers)
    assert total_in - total_out == game.balance


# =========================================================
# Admin
# =========================================================
def test_owner_sets_time_window(game):
    game.set_time_window(OWNER, 10 * 60)
    assert game.time_window == 600
    assert game.events[-1] == TimeWindowUpdated(old=FIVE_MINUTES, new=600)


def test_non_owner_cannot_admin(game):
    with pytest.raises(AuthorizationError):
        game.set_time_window(P1, 600)
    with pytest.raises(AuthorizationError):
        game.set_dev_address(P1, P1)
    with pytest.raises(AuthorizationError):
        game.pause(P1)
    with pytest.raises(AuthorizationError):
        game.unpause(P1)
    assert game.time_window == FIVE_MINUTES
    assert game.dev_address == OWNER


@pytest.mark.parametrize("seconds", [30, 59, 3601, 2 * 60 * 60])
def test_invalid_time_window_rejected(game, seconds):
    with pytest.raises(ValidationError, match="invalid time window"):
        game.set_time_window(OWNER, seconds)
    assert game.time_window == FIVE_MINUTES


@pytest.mark.parametrize("seconds", [60, 3600])
def test_time_window_bounds_inclusive(game, seconds):
    game.set_time_window(OWNER, seconds)
    assert game.time_window == seconds


def test_owner_sets_dev_address(game):
    game.set_dev_address(OWNER, DEV)
    assert game.dev_address == DEV
    assert game.events[-1] == DevAddressUpdated(old=OWNER, new=DEV)
    with pytest.raises(ValidationError):
        game.set_dev_address(OWNER, "")


def test_pause_blocks_buying(game):
    game.pause(OWNER)
    assert game.paused is True
    assert game.events[-1] == Paused(account=OWNER)
    with pytest.raises(ValidationError, match="paused"):
        game.buy_keys(P1, MIN_BUY)
    with pytest.raises(StateError):
        game.pause(OWNER)


def test_unpause_allows_buying(game):
    game.pause(OWNER)
    game.unpause(OWNER)
    assert game.paused is False
    assert game.events[-1] == Unpaused(account=OWNER)
    game.buy_keys(P1, MIN_BUY)
    with pytest.raises(StateError):
        game.unpause(OWNER)


def test_pause_never_blocks_settlement_or_claims(game, clock):
    game.buy_keys(P1, ether("0.01"))
    game.pause(OWNER)
    clock.advance(FIVE_MINUTES)
    game.end_game()
    assert game.claim_dividends(P1) == ether("0.0025")


# =========================================================
# Edge cases
# =========================================================
def test_unsolicited_value_rejected(game):
    with pytest.raises(StateError, match="use buyKeys"):
        game.receive(OWNER, MIN_BUY)
    assert game.balance == 0


def test_game_info(game, clock):
    game.buy_keys(P1, ether("0.01"))
    clock.advance(2)
    info = game.get_game_info()
    assert info.round == 1
    assert info.pot == ether("0.01")
    assert info.king == P1
    assert info.time_left == FIVE_MINUTES - 2
    assert info.keys == 10
    assert info.active is True


# =========================================================
# Reentrancy & atomicity
# =========================================================
def test_reentrant_claim_from_payout_hook_is_rejected(clock):
    attempts = []

    def hook(transfer):
        try:
            game.claim_dividends(transfer.to)
        except ReentrancyError as e:
            attempts.append(e)

    game = KingOfTheHill(GameState.genesis(owner=OWNER), clock=clock, on_transfer=hook)
    game.buy_keys(P1, ether("0.01"))
    clock.advance(FIVE_MINUTES)
    game.end_game()
    amount = game.claim_dividends(P1)

    # winner, burn, dev on settlement plus the claim itself
    assert len(attempts) == 4
    assert amount == ether("0.0025")
    assert paid_to(game, P1, "dividends") == amount
    assert game.pending_dividends(P1) == 0
    assert_conserved(game)


def test_reentrant_buy_from_payout_hook_is_rejected(clock):
    seen = []

    def hook(transfer):
        try:
            game.buy_keys(transfer.to, MIN_BUY)
        except ReentrancyError:
            seen.append(transfer.reason)

    game = KingOfTheHill(GameState.genesis(owner=OWNER), clock=clock, on_transfer=hook)
    game.buy_keys(P1, MIN_BUY * 10)
    clock.advance(FIVE_MINUTES)
    game.end_game()
    assert seen == ["winner", "burn", "dev"]
    assert game.total_pot == 0


def test_state_is_settled_before_payout_hook_runs(clock):
    observed = []

    def hook(transfer):
        observed.append((game.current_round, game.total_pot, game.current_king))

    game = KingOfTheHill(GameState.genesis(owner=OWNER), clock=clock, on_transfer=hook)
    game.buy_keys(P1, MIN_BUY * 10)
    clock.advance(FIVE_MINUTES)
    game.end_game()
    assert observed and all(o == (2, 0, None) for o in observed)


def test_failed_payout_rolls_back_settlement(clock):
    def hook(transfer):
        if transfer.reason == "dev":
            raise RuntimeError("recipient rejected value")

    game = KingOfTheHill(GameState.genesis(owner=OWNER), clock=clock, on_transfer=hook)
    game.buy_keys(P1, ether("0.01"))
    game.buy_keys(P2, ether("0.01"))
    acc_before = game.state.dividends.acc_per_key
    events_before = list(game.events)
    clock.advance(FIVE_MINUTES)

    with pytest.raises(RuntimeError):
        game.end_game()

    assert game.current_round == 1
    assert game.total_pot == ether("0.02")
    assert game.current_king == P2
    assert game.balance == ether("0.02")
    assert game.state.dividends.acc_per_key == acc_before
    assert game.events == events_before
    assert game.transfers == []
    assert game.settled == []
    assert game.pending_dividends(P1) == 0
    assert_conserved(game)

    # guard is released after the failure
    game.on_transfer = None
    game.end_game()
    assert game.current_round == 2


def test_failed_claim_rolls_back(clock):
    def hook(transfer):
        if transfer.reason == "dividends":
            raise RuntimeError("boom")

    game = KingOfTheHill(GameState.genesis(owner=OWNER), clock=clock, on_transfer=hook)
    game.buy_keys(P1, ether("0.01"))
    clock.advance(FIVE_MINUTES)
    game.end_game()
    pending = game.pending_dividends(P1)
    with pytest.raises(RuntimeError):
        game.claim_dividends(P1)
    assert game.pending_dividends(P1) == pending
    assert_conserved(game)


def test_drain_changes_reports_only_touched_accounts(game, clock):
    game.buy_keys(P1, MIN_BUY)
    game.buy_keys(P2, MIN_BUY)
    first = game.drain_changes()
    assert set(first.accounts) == {P1, P2}
    assert len(first.events) == 2

    game.buy_keys(P3, MIN_BUY)
    with pytest.raises(ValidationError):
        game.buy_keys(P1, 1)
    second = game.drain_changes()
    assert set(second.accounts) == {P3}
    assert len(second.events) == 1
    assert second.rounds == []

    clock.advance(FIVE_MINUTES)
    game.end_game()
    third = game.drain_changes()
    assert third.accounts == {}
    assert len(third.rounds) == 1
    assert {t.reason for t in third.transfers} == {"winner", "burn", "dev"}


def test_drain_hands_over_logs(game, clock):
    for _ in range(20):
        game.buy_keys(P1, MIN_BUY)
        clock.advance(FIVE_MINUTES)
        game.end_game()
        changes = game.drain_changes()
        assert len(changes.events) == 2
        assert len(changes.rounds) == 1
        assert game.events == []
        assert game.transfers == []
        assert game.settled == []

    assert game.drain_changes() == Changes()
    assert game.current_round == 21
    assert_conserved(game)


def test_rollback_after_drain_keeps_new_logs_clean(clock):
    def hook(transfer):
        if transfer.reason == "dev":
            raise RuntimeError("recipient rejected value")

    game = KingOfTheHill(GameState.genesis(owner=OWNER), clock=clock, on_transfer=hook)
    game.buy_keys(P1, MIN_BUY)
    game.drain_changes()
    game.buy_keys(P2, MIN_BUY)
    clock.advance(FIVE_MINUTES)
    with pytest.raises(RuntimeError):
        game.end_game()
    assert [type(e) for e in game.events] == [KeysPurchased]
    assert game.transfers == [] and game.settled == []


def test_drain_refused_inside_an_operation(clock):
    seen = []

    def hook(transfer):
        with pytest.raises(StateError):
            game.drain_changes()
        seen.append(transfer.reason)

    game = KingOfTheHill(GameState.genesis(owner=OWNER), clock=clock, on_transfer=hook)
    game.buy_keys(P1, MIN_BUY)
    clock.advance(FIVE_MINUTES)
    game.end_game()
    assert seen == ["winner", "burn", "dev"]
    assert len(game.drain_changes().rounds) == 1
