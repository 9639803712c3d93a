# payouts.py
from __future__ import annotations
from dataclasses import dataclass
from typing import NamedTuple

# Irrecoverable sink for the burn share; nothing can ever be claimed from it.
BURN_ADDRESS = "0x000000000000000000000000000000000000dEaD"


# =========================================================
# Split percentages
# =========================================================
@dataclass(frozen=True)
class SplitPercentages:
    winner: int = 40
    burn: int = 30
    dividends: int = 25
    dev: int = 5

    def __post_init__(self):
        for name in ("winner", "burn", "dividends", "dev"):
            if getattr(self, name) < 0:
                raise ValueError(f"split '{name}' must be >= 0")
        total = self.winner + self.burn + self.dividends + self.dev
        if total != 100:
            raise ValueError(f"splits must sum to 100 (got {total})")


DEFAULT_SPLITS = SplitPercentages()


class PayoutSplit(NamedTuple):
    winner: int
    burn: int
    dividends: int
    dev: int

    @property
    def total(self) -> int:
        return self.winner + self.burn + self.dividends + self.dev


def split_pot(pot: int, splits: SplitPercentages = DEFAULT_SPLITS) -> PayoutSplit:
    """
    Divide a settled pot. Winner, burn and dev shares round down; the dividend
    bucket takes whatever is left so the four shares always add up to `pot`.
    """
    if pot < 0:
        raise ValueError("pot must be >= 0")
    win_amt = pot * splits.winner // 100
    burn_amt = pot * splits.burn // 100
    dev_amt = pot * splits.dev // 100
    div_amt = pot - (win_amt + burn_amt + dev_amt)
    return PayoutSplit(winner=win_amt, burn=burn_amt, dividends=div_amt, dev=dev_amt)


# =========================================================
# Outbound value
# =========================================================
@dataclass(frozen=True)
class Transfer:
    to: str
    amount: int
    reason: str  # winner | burn | dev | dividends
    round: int
