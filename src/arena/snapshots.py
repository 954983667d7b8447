"""Snapshot Engine for the arena.

Periodically marks every cohort agent's portfolio to market and records a
PortfolioSnapshot per agent per time bucket. Re-running a sweep inside the
same bucket is a no-op.
"""

import logging
import time
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from .calibration import CalibrationScorer
from .database import Database
from .errors import ArenaError, CycleAborted, PersistenceError
from .ledger import PositionLedger
from .market_data import MarketDataSource, MarketQuote, apply_quote
from .models import CohortStatus, PositionStatus, SnapshotSweepSummary
from .schema import Agent, Cohort, Market, PortfolioSnapshot, Position, as_utc, utcnow

logger = logging.getLogger(__name__)


def snapshot_bucket(now: datetime, interval_minutes: int) -> datetime:
    """Floor `now` to the start of its snapshot interval."""
    now = as_utc(now)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    minutes = (now - midnight) // timedelta(minutes=1)
    return midnight + timedelta(minutes=minutes - minutes % interval_minutes)


class SnapshotEngine:
    """Revalues open positions and records portfolio snapshots."""

    def __init__(
        self,
        database: Database,
        market_source: MarketDataSource | None = None,
        ledger: PositionLedger | None = None,
        scorer: CalibrationScorer | None = None,
        interval_minutes: int = 10,
        max_consecutive_failures: int = 3,
    ):
        if interval_minutes <= 0:
            raise ValueError("interval_minutes must be positive")
        self.database = database
        self.market_source = market_source
        self.ledger = ledger or PositionLedger()
        self.scorer = scorer or CalibrationScorer()
        self.interval_minutes = interval_minutes
        self.max_consecutive_failures = max_consecutive_failures

    def run_sweep(
        self,
        now: datetime | None = None,
        deadline: float | None = None,
    ) -> SnapshotSweepSummary:
        """Snapshot every agent of every active cohort, bankrupt ones included.

        Args:
            now: Sweep time, floored to the bucket (defaults to now)
            deadline: time.monotonic() value after which remaining agents
                are left for the next sweep

        Returns:
            SnapshotSweepSummary
        """
        started = time.time()
        bucket = snapshot_bucket(now or utcnow(), self.interval_minutes)
        summary = SnapshotSweepSummary(snapshot_at=bucket.isoformat())
        consecutive_failures = 0

        with self.database.session() as session:
            roster = [
                (cohort.id, cohort.initial_balance, list(session.scalars(
                    select(Agent.id)
                    .where(Agent.cohort_id == cohort.id)
                    .order_by(Agent.created_at, Agent.id)
                )))
                for cohort in session.scalars(
                    select(Cohort)
                    .where(Cohort.status == CohortStatus.ACTIVE)
                    .order_by(Cohort.cohort_number)
                )
            ]

        for cohort_id, initial_balance, agent_ids in roster:
            if summary.budget_exhausted:
                break
            summary.cohorts_processed += 1

            for agent_id in agent_ids:
                if deadline is not None and time.monotonic() >= deadline:
                    summary.budget_exhausted = True
                    logger.warning(f"Snapshot budget exhausted in cohort {cohort_id}")
                    break

                summary.agents_processed += 1
                try:
                    taken, fallbacks = self.snapshot_agent(agent_id, bucket, initial_balance)
                except ArenaError as e:
                    summary.errors += 1
                    summary.error_messages.append(f"{agent_id}: {e.message}")
                    logger.error(f"Snapshot failed for agent {agent_id}: {e}", exc_info=True)
                    if isinstance(e, PersistenceError):
                        consecutive_failures += 1
                        if consecutive_failures >= self.max_consecutive_failures:
                            raise CycleAborted(
                                f"{consecutive_failures} consecutive store failures during snapshot sweep"
                            ) from e
                    continue

                consecutive_failures = 0
                summary.price_fallbacks += fallbacks
                if taken:
                    summary.snapshots_taken += 1
                else:
                    summary.snapshots_skipped += 1

        summary.duration_ms = int((time.time() - started) * 1000)
        logger.info(
            f"Snapshot sweep {summary.snapshot_at}: {summary.snapshots_taken} taken, "
            f"{summary.snapshots_skipped} skipped",
            extra={"duration_ms": summary.duration_ms, "errors": summary.errors},
        )
        return summary

    def _fetch_quotes(self, agent_id: str) -> dict[str, MarketQuote]:
        if self.market_source is None:
            return {}

        with self.database.session() as session:
            market_ids = list(session.scalars(
                select(Position.market_id)
                .where(Position.agent_id == agent_id, Position.status == PositionStatus.OPEN)
                .distinct()
            ))

        quotes = {}
        for market_id in market_ids:
            try:
                quote = self.market_source.get_quote(market_id)
            except Exception as e:
                logger.warning(f"Quote fetch failed for {market_id}: {e}")
                continue
            if quote is not None:
                quotes[market_id] = quote
        return quotes

    def snapshot_agent(
        self,
        agent_id: str,
        bucket: datetime,
        initial_balance: float,
    ) -> tuple[bool, int]:
        """Revalue one agent and write its snapshot for `bucket`.

        Returns:
            (snapshot written, number of price fallbacks used)
        """
        quotes = self._fetch_quotes(agent_id)
        fallbacks = 0

        try:
            with self.database.session() as session:
                existing = session.scalar(
                    select(PortfolioSnapshot.id).where(
                        PortfolioSnapshot.agent_id == agent_id,
                        PortfolioSnapshot.snapshot_at == bucket,
                    )
                )
                if existing is not None:
                    return False, 0

                agent = session.get(Agent, agent_id, with_for_update=True)
                if agent is None:
                    raise ArenaError(f"Agent {agent_id} not found")

                positions_value = 0.0
                for position in self.ledger.open_positions(session, agent_id, for_update=True):
                    market = session.get(Market, position.market_id)
                    quote = quotes.get(position.market_id)
                    if market is not None and quote is not None:
                        apply_quote(market, quote)
                    valuation = self.ledger.revalue(position, market)
                    if valuation.price_fallback:
                        fallbacks += 1
                    positions_value += valuation.current_value

                calibration = self.scorer.agent_summary(session, agent_id)
                total_value = agent.cash_balance + positions_value
                total_pnl = total_value - initial_balance

                session.add(PortfolioSnapshot(
                    agent_id=agent_id,
                    snapshot_at=bucket,
                    cash_balance=agent.cash_balance,
                    positions_value=positions_value,
                    total_value=total_value,
                    total_pnl=total_pnl,
                    total_pnl_percent=total_pnl / initial_balance * 100,
                    brier_score=calibration.mean_brier,
                    num_resolved_bets=calibration.resolved_bets,
                    created_at=utcnow(),
                ))
        except PersistenceError as e:
            if isinstance(e.__cause__, IntegrityError):
                logger.info(f"Snapshot for agent {agent_id} at {bucket} already written")
                return False, 0
            raise

        return True, fallbacks
