"""Core enums and result types for the arena engine.

This module defines the value types shared across the engine:
- Status enums for cohorts, agents, markets, positions and decisions
- Ledger results: SaleResult, Valuation, PositionSettlement
- Executor results: OrderResult, AgentCycleResult
- Cycle summaries returned to the scheduler trigger
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class CohortStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class AgentStatus(str, Enum):
    ACTIVE = "active"
    BANKRUPT = "bankrupt"


class MarketType(str, Enum):
    BINARY = "binary"
    MULTI_OUTCOME = "multi_outcome"


class MarketStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


class PositionStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    SETTLED = "settled"


class DecisionAction(str, Enum):
    """Actions a model can return for one cycle."""
    BET = "BET"
    SELL = "SELL"
    HOLD = "HOLD"
    ERROR = "ERROR"


class DecisionState(str, Enum):
    """Terminal states of the per-agent decision state machine.

    REQUESTED and VALIDATED are transient and never persisted.
    """
    REQUESTED = "REQUESTED"
    VALIDATED = "VALIDATED"
    EXECUTED = "EXECUTED"
    REJECTED = "REJECTED"
    ERRORED = "ERRORED"


class TradeType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class EventSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class SaleResult:
    """Outcome of reducing or closing a position."""
    shares_sold: float
    price: float
    proceeds: float
    cost_basis: float
    realized_pnl: float
    closed: bool


@dataclass
class Valuation:
    """Mark-to-market result for one position."""
    position_id: str
    price: float
    current_value: float
    unrealized_pnl: float
    price_fallback: bool = False


@dataclass
class PositionSettlement:
    """Terminal accounting for a position whose market resolved."""
    position_id: str
    agent_id: str
    market_id: str
    side: str
    payout: float
    realized_pnl: float
    actual_outcome: int


@dataclass
class OrderResult:
    """Result of executing one order from a decision."""
    kind: str  # "BET" or "SELL"
    market_id: str | None
    side: str | None
    executed: bool
    trade_id: str | None = None
    amount: float = 0.0
    shares: float = 0.0
    price: float = 0.0
    capped: bool = False
    rejection_reason: str | None = None
    error: str | None = None


@dataclass
class AgentCycleResult:
    """Everything that happened to one agent in one decision cycle."""
    agent_id: str
    model_id: str
    decision_id: str | None
    action: DecisionAction
    state: DecisionState
    retry_count: int = 0
    orders: list[OrderResult] = field(default_factory=list)
    error: str | None = None

    @property
    def errored(self) -> bool:
        return self.state == DecisionState.ERRORED

    @property
    def trades_executed(self) -> int:
        return sum(1 for o in self.orders if o.executed)


@dataclass
class CycleSummary:
    """Summary returned by a decision cycle invocation."""
    cohorts_processed: int = 0
    agents_processed: int = 0
    agents_skipped: int = 0
    errors: int = 0
    trades_executed: int = 0
    duration_ms: int = 0
    budget_exhausted: bool = False
    results: list[AgentCycleResult] = field(default_factory=list)
    error_messages: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        return {
            "cohorts_processed": self.cohorts_processed,
            "agents_processed": self.agents_processed,
            "agents_skipped": self.agents_skipped,
            "errors": self.errors,
            "trades_executed": self.trades_executed,
            "duration_ms": self.duration_ms,
            "budget_exhausted": self.budget_exhausted,
            "error_messages": self.error_messages,
            "results": [
                {
                    "agent_id": r.agent_id,
                    "model_id": r.model_id,
                    "decision_id": r.decision_id,
                    "action": r.action.value,
                    "state": r.state.value,
                    "retry_count": r.retry_count,
                    "trades_executed": r.trades_executed,
                    "error": r.error,
                }
                for r in self.results
            ],
        }


@dataclass
class SnapshotSweepSummary:
    """Summary returned by a snapshot sweep."""
    snapshot_at: str
    cohorts_processed: int = 0
    agents_processed: int = 0
    snapshots_taken: int = 0
    snapshots_skipped: int = 0
    price_fallbacks: int = 0
    errors: int = 0
    duration_ms: int = 0
    budget_exhausted: bool = False
    error_messages: list[str] = field(default_factory=list)
    cohorts_completed: int = 0
    resolutions: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ResolutionSummary:
    """Summary returned by a settlement pass."""
    markets_checked: int = 0
    markets_resolved: int = 0
    markets_cancelled: int = 0
    positions_settled: int = 0
    brier_scores_recorded: int = 0
    cohorts_completed: int = 0
    errors: int = 0
    duration_ms: int = 0
    error_messages: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CohortStartResult:
    """Outcome of a cohort start attempt.

    When `started` is False, `reason` explains why nothing was done.
    """
    started: bool
    cohort_id: str | None = None
    cohort_number: int | None = None
    agent_ids: list[str] = field(default_factory=list)
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
