import pytest

from game import GameState, KingOfTheHill

OWNER = "0x00000000000000000000000000000000000000aa"


class FakeClock:
    """Host clock stand-in; tests move time forward explicitly."""

    def __init__(self, start: int = 1_700_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def game(clock):
    return KingOfTheHill(GameState.genesis(owner=OWNER), clock=clock)
