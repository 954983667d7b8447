"""Position Ledger for the arena.

Single source of truth for share counts and cost basis per
(agent, market, side). Handles:
- Opening and averaging into positions
- Partial and full sells with realized P&L
- Mark-to-market revaluation with a fallback price
- Settlement and cancellation refunds
"""

import logging
import math
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .errors import InvalidQuantity, LedgerError, OverSell, PriceUnavailable
from .models import (
    MarketType,
    PositionSettlement,
    PositionStatus,
    SaleResult,
    Valuation,
)
from .schema import Agent, Position, utcnow

logger = logging.getLogger(__name__)

# Shares below this are treated as zero
SHARE_EPSILON = 1e-9

FALLBACK_PRICE = 0.5

BINARY_SIDES = ("YES", "NO")


def coerce_price(value: Any) -> float:
    """Convert a raw price to a float in [0, 1].

    Raises:
        ValueError: If the value is missing, non-numeric, NaN or out of range
    """
    if value is None:
        raise ValueError("price missing")
    if isinstance(value, bool):
        raise ValueError(f"non-numeric price {value!r}")
    try:
        price = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"non-numeric price {value!r}") from None
    if math.isnan(price) or price < 0 or price > 1:
        raise ValueError(f"price {price} outside [0, 1]")
    return price


def sides_match(a: str | None, b: str | None) -> bool:
    if a is None or b is None:
        return False
    return a.strip().casefold() == b.strip().casefold()


def _market_type(market: Any) -> MarketType:
    market_type = getattr(market, "market_type", MarketType.BINARY)
    return MarketType(market_type)


def normalize_side(market: Any, side: str) -> str | None:
    """Return the canonical side label for a market, or None if invalid.

    Binary markets accept YES/NO in any case; multi-outcome markets accept
    any listed outcome (or priced outcome) matched case-insensitively.
    """
    if not side:
        return None

    if _market_type(market) == MarketType.BINARY:
        upper = side.strip().upper()
        return upper if upper in BINARY_SIDES else None

    labels = list(getattr(market, "outcomes", None) or [])
    labels.extend((getattr(market, "current_prices", None) or {}).keys())
    for label in labels:
        if sides_match(label, side):
            return label
    return None


def side_price(market: Any, side: str) -> float:
    """Price of one side of a market.

    Binary markets carry the YES price; NO is valued at 1 - price.
    Multi-outcome markets look the side up in the outcome -> price map.

    Raises:
        PriceUnavailable: If the price is missing or invalid
    """
    market_id = str(getattr(market, "id", "?"))

    if _market_type(market) == MarketType.BINARY:
        upper = (side or "").strip().upper()
        if upper not in BINARY_SIDES:
            raise PriceUnavailable(market_id, side, "side is not YES or NO")
        try:
            yes_price = coerce_price(getattr(market, "current_price", None))
        except ValueError as e:
            raise PriceUnavailable(market_id, side, str(e)) from None
        return yes_price if upper == "YES" else 1.0 - yes_price

    prices = getattr(market, "current_prices", None) or {}
    if not isinstance(prices, dict):
        raise PriceUnavailable(market_id, side, "outcome prices are not a mapping")

    raw = prices.get(side)
    if raw is None:
        for label, value in prices.items():
            if sides_match(label, side):
                raw = value
                break
    try:
        return coerce_price(raw)
    except ValueError as e:
        raise PriceUnavailable(market_id, side, str(e)) from None


def resolve_side_price(market: Any, side: str) -> tuple[float, bool]:
    """Side price with the data-quality fallback applied.

    Returns:
        (price, fallback_used)
    """
    try:
        return side_price(market, side), False
    except PriceUnavailable as e:
        logger.warning(
            f"Price unavailable, valuing at {FALLBACK_PRICE}: {e.message}",
            extra={"market_id": e.market_id, "side": e.side},
        )
        return FALLBACK_PRICE, True


def _validate_quantity(shares: float, price: float) -> None:
    if shares is None or not math.isfinite(shares) or shares <= 0:
        raise InvalidQuantity(f"Share quantity must be positive, got {shares}")
    if price is None or not math.isfinite(price) or price < 0 or price > 1:
        raise InvalidQuantity(f"Price must be within [0, 1], got {price}")


class PositionLedger:
    """Accounting operations on positions.

    Methods that read or write rows take the caller's session so that the
    caller controls the transaction boundary. Cash movements from buys and
    sells belong to the executor; settlement credits cash here.
    """

    def find_position(
        self,
        session: Session,
        agent_id: str,
        market_id: str,
        side: str,
    ) -> Position | None:
        """Position row for (agent, market, side) in any status."""
        stmt = select(Position).where(
            Position.agent_id == agent_id,
            Position.market_id == market_id,
            Position.side == side,
        )
        return session.scalars(stmt).first()

    def open_positions(
        self,
        session: Session,
        agent_id: str,
        for_update: bool = False,
    ) -> list[Position]:
        stmt = (
            select(Position)
            .where(Position.agent_id == agent_id, Position.status == PositionStatus.OPEN)
            .order_by(Position.opened_at)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return list(session.scalars(stmt))

    def lock_agents(self, session: Session, agent_ids: list[str]) -> list[Agent]:
        """Lock agent rows in id order so concurrent lockers cannot deadlock."""
        if not agent_ids:
            return []
        stmt = (
            select(Agent)
            .where(Agent.id.in_(agent_ids))
            .order_by(Agent.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(session.scalars(stmt))

    def invested_capital(self, session: Session, agent_id: str) -> float:
        """Total cost basis currently deployed in open positions."""
        stmt = select(func.coalesce(func.sum(Position.total_cost), 0.0)).where(
            Position.agent_id == agent_id,
            Position.status == PositionStatus.OPEN,
        )
        return float(session.scalar(stmt) or 0.0)

    def open_or_increase(
        self,
        session: Session,
        agent_id: str,
        market_id: str,
        side: str,
        shares: float,
        price: float,
    ) -> Position:
        """Open a position or average into the existing one.

        Args:
            session: Active transaction
            agent_id: Buying agent
            market_id: Target market
            side: Canonical side label
            shares: Shares bought (> 0)
            price: Execution price per share in [0, 1]

        Returns:
            The open position after the purchase

        Raises:
            InvalidQuantity: If shares <= 0 or price is outside [0, 1]
            LedgerError: If the position was already settled
        """
        _validate_quantity(shares, price)

        position = self.find_position(session, agent_id, market_id, side)
        cost = shares * price

        if position is None:
            position = Position(
                agent_id=agent_id,
                market_id=market_id,
                side=side,
                shares=shares,
                avg_entry_price=price,
                total_cost=cost,
                current_value=None,
                unrealized_pnl=None,
                realized_pnl=0.0,
                status=PositionStatus.OPEN,
                opened_at=utcnow(),
            )
            session.add(position)
            session.flush()
            logger.debug(
                f"Opened position {side} on {market_id}",
                extra={"agent_id": agent_id, "shares": shares, "price": price},
            )
            return position

        if position.status == PositionStatus.SETTLED:
            raise LedgerError(f"Position {position.id} is settled and cannot be reopened")

        if position.status == PositionStatus.CLOSED:
            # Reopen the row in place; the unique key allows only one per triple
            position.shares = shares
            position.avg_entry_price = price
            position.total_cost = cost
            position.current_value = None
            position.unrealized_pnl = None
            position.status = PositionStatus.OPEN
            position.opened_at = utcnow()
            position.closed_at = None
            return position

        old_shares = position.shares
        new_shares = old_shares + shares
        position.avg_entry_price = (old_shares * position.avg_entry_price + cost) / new_shares
        position.shares = new_shares
        position.total_cost = new_shares * position.avg_entry_price
        if position.current_value is not None:
            position.current_value += cost
            position.unrealized_pnl = position.current_value - position.total_cost

        logger.debug(
            f"Increased position {position.id}",
            extra={"shares": new_shares, "avg_entry_price": position.avg_entry_price},
        )
        return position

    def reduce_or_close(
        self,
        position: Position,
        shares_to_sell: float,
        price: float,
    ) -> SaleResult:
        """Sell shares out of an open position at `price`.

        Cost basis removed is shares_to_sell x average entry price, so no lot
        tracking is needed.

        Raises:
            InvalidQuantity: If the quantity or price is invalid
            OverSell: If more shares are requested than are held
            LedgerError: If the position is not open
        """
        _validate_quantity(shares_to_sell, price)

        if position.status != PositionStatus.OPEN:
            raise LedgerError(f"Position {position.id} is {position.status.value}, not open")

        held = position.shares
        if shares_to_sell > held + SHARE_EPSILON * max(1.0, held):
            raise OverSell(shares_to_sell, held)
        shares_to_sell = min(shares_to_sell, held)

        cost_basis = shares_to_sell * position.avg_entry_price
        proceeds = shares_to_sell * price
        realized = proceeds - cost_basis
        remaining = held - shares_to_sell

        position.realized_pnl = (position.realized_pnl or 0.0) + realized

        closed = remaining <= SHARE_EPSILON
        if closed:
            position.shares = 0.0
            position.total_cost = 0.0
            position.current_value = 0.0
            position.unrealized_pnl = 0.0
            position.status = PositionStatus.CLOSED
            position.closed_at = utcnow()
        else:
            if position.current_value is not None:
                position.current_value = position.current_value * remaining / held
            position.shares = remaining
            position.total_cost = remaining * position.avg_entry_price
            if position.current_value is not None:
                position.unrealized_pnl = position.current_value - position.total_cost

        return SaleResult(
            shares_sold=shares_to_sell,
            price=price,
            proceeds=proceeds,
            cost_basis=cost_basis,
            realized_pnl=realized,
            closed=closed,
        )

    def revalue(self, position: Position, market: Any) -> Valuation:
        """Mark an open position to market.

        `market` is anything exposing market_type, current_price and
        current_prices (a Market row or a MarketQuote). Invalid prices are
        replaced by the fallback and flagged on the result.
        """
        if position.status != PositionStatus.OPEN:
            raise LedgerError(f"Position {position.id} is {position.status.value}, not open")

        price, fallback = resolve_side_price(market, position.side)
        position.current_value = position.shares * price
        position.unrealized_pnl = position.current_value - position.total_cost

        return Valuation(
            position_id=position.id,
            price=price,
            current_value=position.current_value,
            unrealized_pnl=position.unrealized_pnl,
            price_fallback=fallback,
        )

    def settle(
        self,
        session: Session,
        position: Position,
        winning_side: str,
    ) -> PositionSettlement | None:
        """Apply terminal accounting for a resolved market.

        Each winning share pays 1.0; losing shares pay nothing. The payout is
        credited to the agent's cash. Settling a settled (or already closed)
        position is a no-op and returns None.
        """
        if position.status != PositionStatus.OPEN:
            logger.debug(
                f"Skipping settlement of {position.status.value} position {position.id}"
            )
            return None

        won = sides_match(position.side, winning_side)
        payout = position.shares * 1.0 if won else 0.0
        realized = payout - position.total_cost

        agent = session.get(Agent, position.agent_id, with_for_update=True)
        if agent is None:
            raise LedgerError(f"Agent {position.agent_id} not found for position {position.id}")
        agent.cash_balance += payout

        position.realized_pnl = (position.realized_pnl or 0.0) + realized
        position.current_value = payout
        position.unrealized_pnl = 0.0
        position.status = PositionStatus.SETTLED
        position.closed_at = utcnow()

        logger.info(
            f"Settled position {position.id}: {'won' if won else 'lost'}",
            extra={
                "agent_id": position.agent_id,
                "market_id": position.market_id,
                "payout": payout,
                "realized_pnl": realized,
            },
        )

        return PositionSettlement(
            position_id=position.id,
            agent_id=position.agent_id,
            market_id=position.market_id,
            side=position.side,
            payout=payout,
            realized_pnl=realized,
            actual_outcome=1 if won else 0,
        )

    def refund(self, session: Session, position: Position) -> float | None:
        """Return the cost basis of a position in a cancelled market.

        Returns:
            Amount refunded, or None if the position was not open
        """
        if position.status != PositionStatus.OPEN:
            return None

        agent = session.get(Agent, position.agent_id, with_for_update=True)
        if agent is None:
            raise LedgerError(f"Agent {position.agent_id} not found for position {position.id}")

        refund = position.total_cost
        agent.cash_balance += refund
        position.current_value = refund
        position.unrealized_pnl = 0.0
        position.status = PositionStatus.SETTLED
        position.closed_at = utcnow()

        logger.info(
            f"Refunded position {position.id} in cancelled market",
            extra={"agent_id": position.agent_id, "refund": refund},
        )
        return refund
