"""In-memory view of the four credit pools on a CreditAccount."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

from models.credit_account import CreditAccount
from services.ledger.types import POOL_PRIORITY, Pool


_POOL_COLUMNS = {
    Pool.TRIAL: "trial_credits",
    Pool.COUPON: "coupon_credits",
    Pool.PLAN: "plan_credits",
    Pool.PURCHASED: "purchased_credits",
}


def pool_balance(account: CreditAccount, pool: Pool) -> int:
    return int(getattr(account, _POOL_COLUMNS[pool]) or 0)


def adjust_pool(account: CreditAccount, pool: Pool, delta: int) -> int:
    """Apply `delta` to one pool and return the new balance.

    Raises ValueError instead of letting any pool go negative.
    """
    current = pool_balance(account, pool)
    updated = current + int(delta)
    if updated < 0:
        raise ValueError(f"{pool.value} pool would go negative ({current} + {delta}) for {account.store_id}")
    setattr(account, _POOL_COLUMNS[pool], updated)
    return updated


@dataclass(frozen=True)
class CreditPools:
    trial: int = 0
    coupon: int = 0
    plan: int = 0
    purchased: int = 0

    @classmethod
    def from_account(cls, account: CreditAccount) -> "CreditPools":
        return cls(
            trial=pool_balance(account, Pool.TRIAL),
            coupon=pool_balance(account, Pool.COUPON),
            plan=pool_balance(account, Pool.PLAN),
            purchased=pool_balance(account, Pool.PURCHASED),
        )

    @property
    def total(self) -> int:
        return self.trial + self.coupon + self.plan + self.purchased

    def get(self, pool: Pool) -> int:
        return getattr(self, pool.value)

    def breakdown(self) -> Dict[str, int]:
        return {pool.value: self.get(pool) for pool in POOL_PRIORITY}
