# dividends.py
"""
King of the Hill - dividend accumulator.

One global scalar (acc_per_key) tracks the dividends earned by a single key
since genesis. Each account keeps a debt snapshot, so settling a round and
claiming are both O(1) no matter how many holders exist.

All fixed-point values are scaled by SCALE. The division remainder of each
distribution is carried into the next one instead of being lost.
"""

from __future__ import annotations

from dataclasses import dataclass

SCALE = 10 ** 18


@dataclass
class Account:
    keys_all_time: int = 0
    reward_debt: int = 0  # fixed-point, SCALE units


@dataclass
class DividendAccumulator:
    acc_per_key: int = 0
    carry: int = 0          # undistributed remainder, SCALE units (< total_weight)
    total_weight: int = 0   # sum of keys_all_time over every account

    def accrued(self, account: Account) -> int:
        """Fixed-point amount owed to `account` (SCALE units)."""
        return account.keys_all_time * self.acc_per_key - account.reward_debt

    def pending(self, account: Account) -> int:
        return self.accrued(account) // SCALE

    def add_keys(self, account: Account, keys: int) -> None:
        """Give `account` more dividend weight; the new keys only earn from now on."""
        if keys < 0:
            raise ValueError("keys must be >= 0")
        account.keys_all_time += keys
        account.reward_debt += keys * self.acc_per_key
        self.total_weight += keys

    def distribute(self, amount: int) -> bool:
        """
        Spread `amount` over every key ever sold.
        Returns False (and changes nothing) when there is no weight to spread it on.
        """
        if amount < 0:
            raise ValueError("amount must be >= 0")
        if self.total_weight == 0:
            return False
        scaled = amount * SCALE + self.carry
        self.acc_per_key += scaled // self.total_weight
        self.carry = scaled % self.total_weight
        return True

    def claim(self, account: Account) -> int:
        """Reconcile `account` and return what it is owed in whole base units."""
        amount = self.pending(account)
        account.reward_debt += amount * SCALE
        return amount
