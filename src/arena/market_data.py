"""Market-data boundary for the arena.

The external feed (prices, volume, resolution) is not part of the engine.
This module defines what the engine expects from it:
- MarketQuote: one market's current state as reported by the feed
- MarketDataSource: protocol for anything that can supply quotes
- apply_quote / upsert_market: write feed data into the local mirror
"""

import logging
import math
from datetime import datetime
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.orm import Session

from .models import MarketStatus, MarketType
from .schema import Market, utcnow

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (MarketStatus.RESOLVED, MarketStatus.CANCELLED)


def _lenient_price(value: Any) -> float | None:
    """Invalid prices become None so valuation falls back instead of failing."""
    if value is None or isinstance(value, bool):
        return None
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    return price if math.isfinite(price) else None


class MarketQuote(BaseModel):
    """Current state of one market as reported by the market-data feed."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(description="Local market identifier")
    market_type: MarketType = Field(default=MarketType.BINARY)
    current_price: float | None = Field(
        default=None, alias="price", description="YES price for binary markets"
    )
    current_prices: dict[str, float | None] | None = Field(
        default=None, alias="prices", description="Outcome -> price for multi-outcome markets"
    )
    status: MarketStatus = Field(default=MarketStatus.ACTIVE)
    resolution_outcome: str | None = Field(default=None)

    @field_validator("current_price", mode="before")
    @classmethod
    def _coerce_price(cls, value: Any) -> float | None:
        return _lenient_price(value)

    @field_validator("current_prices", mode="before")
    @classmethod
    def _coerce_prices(cls, value: Any) -> dict[str, float | None] | None:
        if value is None:
            return None
        if not isinstance(value, dict):
            return {}
        return {str(k): _lenient_price(v) for k, v in value.items()}


class MarketPayload(MarketQuote):
    """Full market record pushed by the feed sync into the local mirror."""

    external_id: str | None = None
    question: str
    category: str | None = None
    outcomes: list[str] | None = None
    volume: float | None = None
    close_date: datetime | None = None


class MarketDataSource(Protocol):
    """Anything that can report the current state of a market."""

    def get_quote(self, market_id: str) -> MarketQuote | None:
        """Return the latest quote, or None if the feed has nothing."""
        ...


def apply_quote(market: Market, quote: MarketQuote) -> bool:
    """Copy a quote onto the local mirror row.

    Resolved and cancelled markets are terminal: a quote trying to move them
    back to another status is ignored for the status field. The market type
    is only changed when the quote states it.

    Returns:
        True if the market transitioned into a terminal status
    """
    if "market_type" in quote.model_fields_set or market.market_type is None:
        market.market_type = quote.market_type
    if quote.current_price is not None:
        market.current_price = quote.current_price
    if quote.current_prices is not None:
        market.current_prices = dict(quote.current_prices)
    market.last_updated_at = utcnow()

    became_terminal = False
    if market.status in TERMINAL_STATUSES:
        if quote.status != market.status:
            logger.warning(
                f"Ignoring status {quote.status.value} for {market.status.value} market {market.id}"
            )
    else:
        if quote.status in TERMINAL_STATUSES:
            became_terminal = True
            market.resolved_at = utcnow()
        market.status = quote.status

    if quote.resolution_outcome is not None and market.resolution_outcome is None:
        market.resolution_outcome = quote.resolution_outcome

    return became_terminal


def upsert_market(session: Session, payload: MarketPayload) -> Market:
    """Insert or update a mirrored market from a feed payload."""
    market = session.get(Market, payload.id)
    if market is None:
        market = Market(
            id=payload.id,
            external_id=payload.external_id,
            question=payload.question,
            status=MarketStatus.ACTIVE,
            market_type=payload.market_type,
        )
        session.add(market)

    market.question = payload.question
    market.category = payload.category
    market.outcomes = payload.outcomes
    market.volume = payload.volume
    market.close_date = payload.close_date
    if payload.external_id:
        market.external_id = payload.external_id

    apply_quote(market, payload)
    return market


class StoredMarketData:
    """MarketDataSource backed by the local mirror.

    Used when an external sync job keeps the markets table current and the
    engine only needs to read what it wrote.
    """

    def __init__(self, database):
        self.database = database

    def get_quote(self, market_id: str) -> MarketQuote | None:
        with self.database.session() as session:
            market = session.get(Market, market_id)
            if market is None:
                return None
            return MarketQuote(
                id=market.id,
                market_type=market.market_type,
                price=market.current_price,
                prices=market.current_prices,
                status=market.status,
                resolution_outcome=market.resolution_outcome,
            )
