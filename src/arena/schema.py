"""SQLAlchemy models for the arena store.

Entities reference each other by identifier only; there are no ORM
relationships, so every read goes through an explicit query scoped to the
caller's transaction.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .models import (
    AgentStatus,
    CohortStatus,
    DecisionAction,
    DecisionState,
    EventSeverity,
    MarketStatus,
    MarketType,
    PositionStatus,
    TradeType,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _enum(enum_cls: type[PyEnum]) -> Enum:
    """Store enums by value in a portable VARCHAR column."""
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


class Base(DeclarativeBase):
    """Base class for all arena tables."""

    pass


class Cohort(Base):
    __tablename__ = "cohorts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    cohort_number: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    status: Mapped[CohortStatus] = mapped_column(
        _enum(CohortStatus), nullable=False, default=CohortStatus.ACTIVE
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    methodology_version: Mapped[str] = mapped_column(String(16), nullable=False, default="v1")
    initial_balance: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (
        CheckConstraint("initial_balance > 0", name="ck_cohorts_initial_balance"),
        Index("idx_cohorts_status", "status"),
    )


class Model(Base):
    """A competing model configuration. Deactivated, never deleted."""

    __tablename__ = "models"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    llm_id: Mapped[str] = mapped_column(String(128), nullable=False)
    display_name: Mapped[str] = mapped_column(String(128), nullable=False)
    provider: Mapped[str] = mapped_column(String(64), nullable=False)
    color: Mapped[str | None] = mapped_column(String(16))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Agent(Base):
    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    cohort_id: Mapped[str] = mapped_column(ForeignKey("cohorts.id"), nullable=False)
    model_id: Mapped[str] = mapped_column(ForeignKey("models.id"), nullable=False)
    cash_balance: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[AgentStatus] = mapped_column(
        _enum(AgentStatus), nullable=False, default=AgentStatus.ACTIVE
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("cohort_id", "model_id", name="uq_agents_cohort_model"),
        CheckConstraint("cash_balance >= 0", name="ck_agents_cash_non_negative"),
    )


class Market(Base):
    """Local mirror of an external prediction market."""

    __tablename__ = "markets"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    external_id: Mapped[str | None] = mapped_column(String(128), unique=True)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str | None] = mapped_column(String(64))
    market_type: Mapped[MarketType] = mapped_column(
        _enum(MarketType), nullable=False, default=MarketType.BINARY
    )
    outcomes: Mapped[list[str] | None] = mapped_column(JSON)
    current_price: Mapped[float | None] = mapped_column(Float)
    current_prices: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    volume: Mapped[float | None] = mapped_column(Float)
    close_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    status: Mapped[MarketStatus] = mapped_column(
        _enum(MarketStatus), nullable=False, default=MarketStatus.ACTIVE
    )
    resolution_outcome: Mapped[str | None] = mapped_column(String(128))
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        Index("idx_markets_status_volume", "status", "volume"),
    )


class Position(Base):
    __tablename__ = "positions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    agent_id: Mapped[str] = mapped_column(ForeignKey("agents.id"), nullable=False)
    market_id: Mapped[str] = mapped_column(ForeignKey("markets.id"), nullable=False)
    side: Mapped[str] = mapped_column(String(128), nullable=False)
    shares: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_entry_price: Mapped[float] = mapped_column(Float, nullable=False)
    total_cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    current_value: Mapped[float | None] = mapped_column(Float)
    unrealized_pnl: Mapped[float | None] = mapped_column(Float)
    realized_pnl: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    status: Mapped[PositionStatus] = mapped_column(
        _enum(PositionStatus), nullable=False, default=PositionStatus.OPEN
    )
    opened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("agent_id", "market_id", "side", name="uq_positions_agent_market_side"),
        CheckConstraint("shares >= 0", name="ck_positions_shares_non_negative"),
        CheckConstraint(
            "avg_entry_price >= 0 AND avg_entry_price <= 1",
            name="ck_positions_avg_price_range",
        ),
        Index("idx_positions_agent_status", "agent_id", "status"),
        Index("idx_positions_market_status", "market_id", "status"),
    )


class Decision(Base):
    """Immutable audit record of one agent's cycle."""

    __tablename__ = "decisions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    agent_id: Mapped[str] = mapped_column(ForeignKey("agents.id"), nullable=False)
    cohort_id: Mapped[str] = mapped_column(ForeignKey("cohorts.id"), nullable=False)
    decision_week: Mapped[int] = mapped_column(Integer, nullable=False)
    decision_timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    prompt_system: Mapped[str] = mapped_column(Text, nullable=False)
    prompt_user: Mapped[str] = mapped_column(Text, nullable=False)
    raw_response: Mapped[str | None] = mapped_column(Text)
    parsed_response: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    action: Mapped[DecisionAction] = mapped_column(_enum(DecisionAction), nullable=False)
    state: Mapped[DecisionState] = mapped_column(_enum(DecisionState), nullable=False)
    reasoning: Mapped[str | None] = mapped_column(Text)
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    error_message: Mapped[str | None] = mapped_column(Text)
    tokens_input: Mapped[int | None] = mapped_column(Integer)
    tokens_output: Mapped[int | None] = mapped_column(Integer)
    api_cost_usd: Mapped[float | None] = mapped_column(Float)
    response_time_ms: Mapped[int | None] = mapped_column(Integer)

    __table_args__ = (
        Index("idx_decisions_agent_timestamp", "agent_id", "decision_timestamp"),
    )


class Trade(Base):
    __tablename__ = "trades"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    agent_id: Mapped[str] = mapped_column(ForeignKey("agents.id"), nullable=False)
    market_id: Mapped[str] = mapped_column(ForeignKey("markets.id"), nullable=False)
    position_id: Mapped[str] = mapped_column(ForeignKey("positions.id"), nullable=False)
    decision_id: Mapped[str] = mapped_column(ForeignKey("decisions.id"), nullable=False)
    trade_type: Mapped[TradeType] = mapped_column(_enum(TradeType), nullable=False)
    side: Mapped[str] = mapped_column(String(128), nullable=False)
    shares: Mapped[float] = mapped_column(Float, nullable=False)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    total_amount: Mapped[float] = mapped_column(Float, nullable=False)
    implied_confidence: Mapped[float | None] = mapped_column(Float)
    cost_basis: Mapped[float | None] = mapped_column(Float)
    realized_pnl: Mapped[float | None] = mapped_column(Float)
    executed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("shares > 0", name="ck_trades_shares_positive"),
        Index("idx_trades_market_type", "market_id", "trade_type"),
        Index("idx_trades_agent", "agent_id"),
    )


class PortfolioSnapshot(Base):
    __tablename__ = "portfolio_snapshots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    agent_id: Mapped[str] = mapped_column(ForeignKey("agents.id"), nullable=False)
    snapshot_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    cash_balance: Mapped[float] = mapped_column(Float, nullable=False)
    positions_value: Mapped[float] = mapped_column(Float, nullable=False)
    total_value: Mapped[float] = mapped_column(Float, nullable=False)
    total_pnl: Mapped[float] = mapped_column(Float, nullable=False)
    total_pnl_percent: Mapped[float] = mapped_column(Float, nullable=False)
    brier_score: Mapped[float | None] = mapped_column(Float)
    num_resolved_bets: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("agent_id", "snapshot_at", name="uq_snapshots_agent_timestamp"),
    )


class BrierScore(Base):
    __tablename__ = "brier_scores"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    agent_id: Mapped[str] = mapped_column(ForeignKey("agents.id"), nullable=False)
    trade_id: Mapped[str] = mapped_column(ForeignKey("trades.id"), nullable=False, unique=True)
    market_id: Mapped[str] = mapped_column(ForeignKey("markets.id"), nullable=False)
    forecast_probability: Mapped[float] = mapped_column(Float, nullable=False)
    actual_outcome: Mapped[int] = mapped_column(Integer, nullable=False)
    brier_score: Mapped[float] = mapped_column(Float, nullable=False)
    scored_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("actual_outcome IN (0, 1)", name="ck_brier_outcome_binary"),
        CheckConstraint("brier_score >= 0 AND brier_score <= 1", name="ck_brier_score_range"),
        Index("idx_brier_scores_agent", "agent_id"),
    )


class SystemEvent(Base):
    """Append-only operational log."""

    __tablename__ = "system_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    severity: Mapped[EventSeverity] = mapped_column(
        _enum(EventSeverity), nullable=False, default=EventSeverity.INFO
    )
    event_data: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_system_events_type_created", "event_type", "created_at"),
    )
