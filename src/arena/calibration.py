"""Calibration Scorer for the arena.

This module calculates Brier scores for resolved bets:
- Per-trade score when a market resolves (BUY trades only)
- Per-agent aggregate (mean of its scores)
- Human-readable interpretation of a score

Brier = (forecast - outcome)^2, so 0 is perfect and 0.25 is a coin flip.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .ledger import sides_match
from .models import TradeType
from .schema import BrierScore, Trade, utcnow

logger = logging.getLogger(__name__)


@dataclass
class CalibrationSummary:
    """An agent's calibration to date."""
    mean_brier: float | None
    resolved_bets: int


def clamp_probability(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def brier_score(forecast: float, outcome: int) -> float:
    """Squared error between a forecast probability and a 0/1 outcome.

    Args:
        forecast: Probability assigned to the outcome (clamped to [0, 1])
        outcome: 1 if the forecast side won, else 0

    Returns:
        Brier score in [0, 1]
    """
    if outcome not in (0, 1):
        raise ValueError(f"Outcome must be 0 or 1, got {outcome}")
    return (clamp_probability(forecast) - outcome) ** 2


def forecast_for_trade(trade: Trade) -> float:
    """Implied confidence of a BUY, falling back to its execution price."""
    if trade.implied_confidence is not None:
        return clamp_probability(trade.implied_confidence)
    return clamp_probability(trade.price)


def interpret(score: float | None) -> str:
    """Describe a Brier score in words."""
    if score is None:
        return "No resolved bets"
    if score <= 0.1:
        return "Excellent"
    if score <= 0.2:
        return "Good"
    if score <= 0.25:
        return "Fair"
    if score <= 0.35:
        return "Poor"
    return "Very poor"


def format_score(score: float | None) -> str:
    """Render a score for display; missing scores render as N/A."""
    if score is None:
        return "N/A"
    return f"{score:.4f}"


class CalibrationScorer:
    """Computes and aggregates Brier scores.

    Scores are written once per BUY trade; rescoring a market skips trades
    that already have a score.
    """

    def score_market(
        self,
        session: Session,
        market_id: str,
        winning_outcome: str,
    ) -> list[BrierScore]:
        """Score every unscored BUY trade on a resolved market.

        Args:
            session: Active transaction
            market_id: The resolved market
            winning_outcome: The market's resolution outcome

        Returns:
            Newly created BrierScore rows
        """
        scored_trade_ids = select(BrierScore.trade_id).where(BrierScore.market_id == market_id)
        stmt = (
            select(Trade)
            .where(
                Trade.market_id == market_id,
                Trade.trade_type == TradeType.BUY,
                Trade.id.not_in(scored_trade_ids),
            )
            .order_by(Trade.executed_at)
        )

        scores = []
        for trade in session.scalars(stmt):
            outcome = 1 if sides_match(trade.side, winning_outcome) else 0
            forecast = forecast_for_trade(trade)
            score = BrierScore(
                agent_id=trade.agent_id,
                trade_id=trade.id,
                market_id=market_id,
                forecast_probability=forecast,
                actual_outcome=outcome,
                brier_score=brier_score(forecast, outcome),
                scored_at=utcnow(),
            )
            session.add(score)
            scores.append(score)

        if scores:
            session.flush()
            logger.info(
                f"Recorded {len(scores)} Brier scores for market {market_id}",
                extra={"market_id": market_id, "winning_outcome": winning_outcome},
            )
        return scores

    def agent_summary(self, session: Session, agent_id: str) -> CalibrationSummary:
        """Mean Brier score and resolved-bet count for one agent.

        The mean is None when the agent has no scored bets.
        """
        mean, count = session.execute(
            select(func.avg(BrierScore.brier_score), func.count(BrierScore.id)).where(
                BrierScore.agent_id == agent_id
            )
        ).one()
        return CalibrationSummary(
            mean_brier=float(mean) if mean is not None else None,
            resolved_bets=int(count or 0),
        )
