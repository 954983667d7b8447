"""Risk policy applied to BET orders."""

import math
from dataclasses import dataclass

from .errors import BetTooSmall, InsufficientFunds


@dataclass(frozen=True)
class RiskPolicy:
    """Bet sizing limits.

    Attributes:
        min_bet: Smallest accepted bet in dollars
        max_bet_fraction: Largest bet as a fraction of current cash; larger
            bets are capped, not rejected
    """
    min_bet: float = 10.0
    max_bet_fraction: float = 0.30

    def __post_init__(self):
        if self.min_bet < 0:
            raise ValueError("min_bet must be non-negative")
        if not 0 < self.max_bet_fraction <= 1:
            raise ValueError("max_bet_fraction must be within (0, 1]")

    @classmethod
    def from_settings(cls, settings) -> "RiskPolicy":
        return cls(min_bet=settings.min_bet, max_bet_fraction=settings.max_bet_fraction)

    def max_bet(self, cash_balance: float) -> float:
        return cash_balance * self.max_bet_fraction

    def size_bet(self, amount: float, cash_balance: float) -> tuple[float, bool]:
        """Apply the policy checks in order.

        1. amount above cash -> InsufficientFunds
        2. amount below the minimum -> BetTooSmall
        3. amount above the max fraction of cash -> capped (rejected as
           BetTooSmall if the cap itself is below the minimum)

        Returns:
            (amount to execute, whether it was capped)
        """
        if not math.isfinite(amount) or amount <= 0:
            raise BetTooSmall(amount if math.isfinite(amount) else 0.0, self.min_bet)
        if amount > cash_balance:
            raise InsufficientFunds(amount, cash_balance)
        if amount < self.min_bet:
            raise BetTooSmall(amount, self.min_bet)

        cap = self.max_bet(cash_balance)
        if amount > cap:
            if cap < self.min_bet:
                raise BetTooSmall(cap, self.min_bet)
            return cap, True
        return amount, False

    def can_place_min_bet(self, cash_balance: float) -> bool:
        """Whether any bet at all is still possible with this much cash."""
        return min(cash_balance, self.max_bet(cash_balance)) >= self.min_bet
