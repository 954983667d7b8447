"""Settlement Service for the arena.

Detects resolved and cancelled markets and applies terminal accounting:
- Resolved: winning shares pay 1.0, losing shares 0, Brier scores recorded
- Cancelled: open positions are refunded at cost, no scores recorded
"""

import logging
import time

from sqlalchemy import select

from .calibration import CalibrationScorer
from .cohort import CohortManager
from .database import Database
from .errors import ArenaError
from .events import log_system_event
from .ledger import PositionLedger
from .market_data import MarketDataSource, MarketQuote, apply_quote
from .models import MarketStatus, PositionStatus, ResolutionSummary, TradeType
from .schema import BrierScore, Market, Position, Trade

logger = logging.getLogger(__name__)


class SettlementService:
    """Settles positions once their markets reach a terminal status."""

    def __init__(
        self,
        database: Database,
        market_source: MarketDataSource | None = None,
        ledger: PositionLedger | None = None,
        scorer: CalibrationScorer | None = None,
        cohorts: CohortManager | None = None,
    ):
        """Initialize the service.

        Args:
            database: Arena store
            market_source: Feed used to refresh market status before settling;
                when None the local mirror is trusted as-is
            ledger: Position ledger
            scorer: Brier scorer
            cohorts: Cohort manager re-checked for completion after a pass
        """
        self.database = database
        self.market_source = market_source
        self.ledger = ledger or PositionLedger()
        self.scorer = scorer or CalibrationScorer()
        self.cohorts = cohorts

    def candidate_markets(self) -> list[str]:
        """Markets that may need settlement work.

        Markets with open positions, plus resolved markets that still have
        unscored BUY trades (all positions closed before resolution).
        """
        with self.database.session() as session:
            open_ids = set(session.scalars(
                select(Position.market_id)
                .where(Position.status == PositionStatus.OPEN)
                .distinct()
            ))
            unscored_ids = set(session.scalars(
                select(Trade.market_id)
                .join(Market, Market.id == Trade.market_id)
                .where(
                    Market.status == MarketStatus.RESOLVED,
                    Trade.trade_type == TradeType.BUY,
                    Trade.id.not_in(select(BrierScore.trade_id)),
                )
                .distinct()
            ))
        return sorted(open_ids | unscored_ids)

    def process_resolutions(self) -> ResolutionSummary:
        """Check every candidate market and settle the terminal ones.

        One transaction per market; a failure on one market is counted and
        the pass continues.

        Returns:
            ResolutionSummary
        """
        started = time.time()
        summary = ResolutionSummary()

        for market_id in self.candidate_markets():
            summary.markets_checked += 1

            quote = None
            if self.market_source is not None:
                try:
                    quote = self.market_source.get_quote(market_id)
                except Exception as e:
                    logger.warning(f"Quote fetch failed for {market_id}: {e}")

            try:
                self._settle(market_id, quote, summary)
            except ArenaError as e:
                summary.errors += 1
                summary.error_messages.append(f"{market_id}: {e.message}")
                logger.error(f"Settlement failed for market {market_id}: {e}", exc_info=True)

        if self.cohorts is not None:
            summary.cohorts_completed = len(self.cohorts.check_completion())

        summary.duration_ms = int((time.time() - started) * 1000)
        logger.info(
            f"Resolution pass: {summary.markets_resolved} resolved, "
            f"{summary.markets_cancelled} cancelled, {summary.positions_settled} positions settled",
            extra={"duration_ms": summary.duration_ms, "errors": summary.errors},
        )
        return summary

    def settle_market(self, market_id: str) -> ResolutionSummary:
        """Settle one market from its current mirror state."""
        started = time.time()
        summary = ResolutionSummary(markets_checked=1)
        self._settle(market_id, None, summary)
        summary.duration_ms = int((time.time() - started) * 1000)
        return summary

    def _settle(
        self,
        market_id: str,
        quote: MarketQuote | None,
        summary: ResolutionSummary,
    ) -> None:
        with self.database.session() as session:
            market = session.get(Market, market_id)
            if market is None:
                raise ArenaError(f"Market {market_id} not found")
            if quote is not None:
                apply_quote(market, quote)

            if market.status not in (MarketStatus.RESOLVED, MarketStatus.CANCELLED):
                return

            open_on_market = (Position.market_id == market.id, Position.status == PositionStatus.OPEN)

            # Lock agents before reading positions so a sell committed in the
            # meantime is not paid out a second time
            with session.no_autoflush:
                agent_ids = list(session.scalars(
                    select(Position.agent_id).where(*open_on_market).distinct()
                ))
                self.ledger.lock_agents(session, agent_ids)

            positions = list(session.scalars(
                select(Position)
                .where(*open_on_market)
                .order_by(Position.opened_at)
                .with_for_update()
                .execution_options(populate_existing=True)
            ))

            if market.status == MarketStatus.CANCELLED:
                refunded = 0
                for position in positions:
                    if self.ledger.refund(session, position) is not None:
                        refunded += 1
                summary.markets_cancelled += 1
                summary.positions_settled += refunded
                log_system_event(session, "market_cancelled", {
                    "market_id": market.id,
                    "positions_refunded": refunded,
                })
                return

            winning = market.resolution_outcome
            if not winning:
                logger.warning(f"Market {market.id} resolved without an outcome; skipping")
                return

            settled = 0
            for position in positions:
                if self.ledger.settle(session, position, winning) is not None:
                    settled += 1
            scores = self.scorer.score_market(session, market.id, winning)

            summary.markets_resolved += 1
            summary.positions_settled += settled
            summary.brier_scores_recorded += len(scores)
            log_system_event(session, "market_resolved", {
                "market_id": market.id,
                "outcome": winning,
                "positions_settled": settled,
                "brier_scores": len(scores),
            })
