"""Exception hierarchy for the arena engine.

- ValidationError: malformed or incomplete decision output
- PolicyRejection: a well-formed order refused by the risk policy
- LedgerError: an accounting operation that cannot be applied
- PriceUnavailable: missing or invalid market price (recovered with a fallback)
- PersistenceError: an atomic write that failed to commit
- CycleAborted: a cycle-level fault surfaced to the invoker
"""


class ArenaError(Exception):
    """Base exception for all arena errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(ArenaError):
    """Decision output could not be parsed or is missing required fields."""

    def __init__(self, message: str, raw_response: str | None = None):
        super().__init__(message)
        self.raw_response = raw_response


class PolicyRejection(ArenaError):
    """Order refused by the risk policy. No trade is created."""

    reason = "rejected"


class InsufficientFunds(PolicyRejection):
    reason = "insufficient_funds"

    def __init__(self, amount: float, cash_balance: float):
        super().__init__(
            f"Bet amount ${amount:.2f} exceeds cash balance ${cash_balance:.2f}"
        )
        self.amount = amount
        self.cash_balance = cash_balance


class BetTooSmall(PolicyRejection):
    reason = "bet_too_small"

    def __init__(self, amount: float, min_bet: float):
        super().__init__(f"Bet amount ${amount:.2f} is below minimum ${min_bet:.2f}")
        self.amount = amount
        self.min_bet = min_bet


class MarketUnavailable(PolicyRejection):
    """Market unknown, not tradable, wrong side, or without a usable price."""

    reason = "market_unavailable"


class PositionNotFound(PolicyRejection):
    reason = "position_not_found"


class LedgerError(ArenaError):
    """Accounting operation cannot be applied to a position."""


class InvalidQuantity(LedgerError):
    reason = "invalid_quantity"


class OverSell(LedgerError):
    reason = "over_sell"

    def __init__(self, requested: float, held: float):
        super().__init__(f"Cannot sell {requested:.4f} shares; only {held:.4f} held")
        self.requested = requested
        self.held = held


class PriceUnavailable(ArenaError):
    """No valid price for a market side. Callers substitute a fallback."""

    def __init__(self, market_id: str, side: str, detail: str):
        super().__init__(f"No valid price for {market_id} side {side}: {detail}")
        self.market_id = market_id
        self.side = side


class PersistenceError(ArenaError):
    """An atomic write failed to commit."""


class CycleAborted(ArenaError):
    """Cycle-level fault; the remaining pass was abandoned."""
