"""Decision & Trade Executor for the arena.

Per agent, per cycle:
- Gather the agent's context (cash, open positions, eligible markets)
- Request a decision from the decision collaborator (with retries)
- Validate it against the risk policy and execute trades on the ledger
- Record the Decision and its Trades in one atomic transaction
"""

import logging
import math
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .calibration import clamp_probability
from .cohort import decision_week
from .database import Database
from .decision import (
    BetDecision,
    BetOrder,
    DecisionContext,
    DecisionOutcome,
    DecisionProvider,
    MarketView,
    PositionView,
    SellDecision,
    SellOrder,
    build_system_prompt,
    build_user_prompt,
    request_with_retries,
)
from .errors import (
    ArenaError,
    LedgerError,
    MarketUnavailable,
    PersistenceError,
    PolicyRejection,
    PositionNotFound,
    PriceUnavailable,
)
from .ledger import PositionLedger, normalize_side, side_price
from .models import (
    AgentCycleResult,
    AgentStatus,
    DecisionAction,
    DecisionState,
    MarketStatus,
    OrderResult,
    PositionStatus,
    TradeType,
)
from .policy import RiskPolicy
from .schema import Agent, Cohort, Decision, Market, Model, Position, Trade, utcnow

logger = logging.getLogger(__name__)


class TradeExecutor:
    """Turns one agent's decision into validated trades.

    Every ledger mutation for an agent happens inside a single transaction
    that holds the agent row lock, so a decision either lands completely
    (Decision row, Trade rows, positions, cash) or not at all.
    """

    def __init__(
        self,
        database: Database,
        provider: DecisionProvider,
        policy: RiskPolicy | None = None,
        ledger: PositionLedger | None = None,
        max_retries: int = 1,
        top_markets: int = 100,
        methodology_version: str = "v1",
    ):
        """Initialize the executor.

        Args:
            database: Arena store
            provider: Decision collaborator
            policy: Bet sizing limits
            ledger: Position ledger (a fresh one by default)
            max_retries: Re-requests allowed on malformed or failed replies
            top_markets: Eligible markets shown per decision, by volume
            methodology_version: Version tag shown in the system prompt
        """
        self.database = database
        self.provider = provider
        self.policy = policy or RiskPolicy()
        self.ledger = ledger or PositionLedger()
        self.max_retries = max_retries
        self.top_markets = top_markets
        self.methodology_version = methodology_version

    # -------------------------------------------------------------------------
    # Context
    # -------------------------------------------------------------------------

    def build_context(self, agent_id: str, now: datetime | None = None) -> DecisionContext:
        """Read the agent's state and the eligible markets.

        Raises:
            ArenaError: If the agent, its cohort or its model is missing
        """
        now = now or utcnow()
        with self.database.session() as session:
            agent = session.get(Agent, agent_id)
            if agent is None:
                raise ArenaError(f"Agent {agent_id} not found")
            cohort = session.get(Cohort, agent.cohort_id)
            model = session.get(Model, agent.model_id)
            if cohort is None or model is None:
                raise ArenaError(f"Agent {agent_id} has no cohort or model")

            positions = []
            for position in self.ledger.open_positions(session, agent.id):
                market = session.get(Market, position.market_id)
                try:
                    price = side_price(market, position.side) if market else None
                except PriceUnavailable:
                    price = None
                positions.append(PositionView(
                    id=position.id,
                    market_id=position.market_id,
                    question=market.question if market else position.market_id,
                    side=position.side,
                    shares=position.shares,
                    avg_entry_price=position.avg_entry_price,
                    current_price=price,
                    current_value=position.current_value,
                ))

            stmt = (
                select(Market)
                .where(Market.status == MarketStatus.ACTIVE)
                .order_by(func.coalesce(Market.volume, 0).desc(), Market.id)
                .limit(self.top_markets)
            )
            markets = [
                MarketView(
                    id=m.id,
                    question=m.question,
                    category=m.category,
                    market_type=m.market_type,
                    current_price=m.current_price,
                    current_prices=m.current_prices,
                    outcomes=m.outcomes,
                    volume=m.volume,
                    close_date=m.close_date,
                )
                for m in session.scalars(stmt)
            ]

            return DecisionContext(
                agent_id=agent.id,
                cohort_id=cohort.id,
                model_id=model.id,
                llm_id=model.llm_id,
                cohort_number=cohort.cohort_number,
                decision_week=decision_week(cohort, now),
                as_of=now,
                cash_balance=agent.cash_balance,
                initial_balance=cohort.initial_balance,
                min_bet=self.policy.min_bet,
                max_bet_fraction=self.policy.max_bet_fraction,
                methodology_version=self.methodology_version,
                positions=positions,
                markets=markets,
            )

    # -------------------------------------------------------------------------
    # Cycle entry points
    # -------------------------------------------------------------------------

    async def run_agent(self, agent_id: str, now: datetime | None = None) -> AgentCycleResult:
        """Run one agent through a full decision cycle."""
        context = self.build_context(agent_id, now)
        outcome = await request_with_retries(self.provider, context, self.max_retries)
        return self.execute(context, outcome)

    def execute(self, context: DecisionContext, outcome: DecisionOutcome) -> AgentCycleResult:
        """Apply a decision outcome atomically.

        A commit failure rolls everything back and records a fallback ERROR
        decision instead.

        Raises:
            PersistenceError: If even the fallback record cannot be written
        """
        try:
            with self.database.session() as session:
                return self._apply(session, context, outcome)
        except PersistenceError as e:
            logger.error(
                f"Failed to commit decision for agent {context.agent_id}: {e}",
                exc_info=True,
            )
            return self.record_error(context, f"Persistence failure: {e.message}", outcome)

    def record_error(
        self,
        context: DecisionContext,
        message: str,
        outcome: DecisionOutcome | None = None,
    ) -> AgentCycleResult:
        """Write an ERROR decision with no trades."""
        with self.database.session() as session:
            decision = Decision(
                agent_id=context.agent_id,
                cohort_id=context.cohort_id,
                decision_week=context.decision_week,
                decision_timestamp=context.as_of,
                prompt_system=outcome.system_prompt if outcome else build_system_prompt(context),
                prompt_user=outcome.user_prompt if outcome else build_user_prompt(context),
                raw_response=outcome.raw_response if outcome else None,
                parsed_response=outcome.payload if outcome else None,
                retry_count=outcome.retry_count if outcome else 0,
                action=DecisionAction.ERROR,
                state=DecisionState.ERRORED,
                reasoning=outcome.reasoning if outcome else None,
                error_message=message,
                tokens_input=outcome.tokens_input if outcome else None,
                tokens_output=outcome.tokens_output if outcome else None,
                api_cost_usd=outcome.cost_usd if outcome else None,
                response_time_ms=outcome.response_time_ms if outcome else None,
            )
            session.add(decision)
            session.flush()
            decision_id = decision.id

        return AgentCycleResult(
            agent_id=context.agent_id,
            model_id=context.model_id,
            decision_id=decision_id,
            action=DecisionAction.ERROR,
            state=DecisionState.ERRORED,
            retry_count=outcome.retry_count if outcome else 0,
            error=message,
        )

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def _apply(
        self,
        session: Session,
        context: DecisionContext,
        outcome: DecisionOutcome,
    ) -> AgentCycleResult:
        agent = session.get(Agent, context.agent_id, with_for_update=True)
        if agent is None:
            raise ArenaError(f"Agent {context.agent_id} not found")

        parsed = outcome.decision
        action = outcome.action
        orders: list[OrderResult] = []
        trades: list[Trade] = []
        error: str | None = None

        if parsed is None:
            state = DecisionState.ERRORED
            error = outcome.error or "Decision could not be parsed"
        elif action == DecisionAction.ERROR:
            state = DecisionState.ERRORED
            error = getattr(parsed, "error", None) or "Model returned ERROR"
        elif action == DecisionAction.HOLD:
            state = DecisionState.EXECUTED
        else:
            if isinstance(parsed, BetDecision):
                for order in parsed.bets:
                    orders.append(self._execute_bet(session, agent, order, parsed.confidence, trades))
            elif isinstance(parsed, SellDecision):
                for order in parsed.sells:
                    orders.append(self._execute_sell(session, agent, order, trades))
            state = (
                DecisionState.EXECUTED
                if any(o.executed for o in orders)
                else DecisionState.REJECTED
            )

        rejections = [o.rejection_reason for o in orders if o.rejection_reason]

        decision = Decision(
            agent_id=agent.id,
            cohort_id=context.cohort_id,
            decision_week=context.decision_week,
            decision_timestamp=context.as_of,
            prompt_system=outcome.system_prompt,
            prompt_user=outcome.user_prompt,
            raw_response=outcome.raw_response,
            parsed_response=outcome.payload,
            retry_count=outcome.retry_count,
            action=action,
            state=state,
            reasoning=outcome.reasoning,
            rejection_reason="; ".join(rejections) or None,
            error_message=error,
            tokens_input=outcome.tokens_input,
            tokens_output=outcome.tokens_output,
            api_cost_usd=outcome.cost_usd,
            response_time_ms=outcome.response_time_ms,
        )
        session.add(decision)
        session.flush()

        for trade in trades:
            trade.decision_id = decision.id
            session.add(trade)
        session.flush()

        for order, trade in zip([o for o in orders if o.executed], trades):
            order.trade_id = trade.id

        self._mark_bankrupt_if_spent(session, agent)

        logger.info(
            f"Agent {agent.id} decision {action.value} -> {state.value}",
            extra={
                "agent_id": agent.id,
                "model_id": context.model_id,
                "trades": len(trades),
                "rejections": len(rejections),
                "cash_balance": agent.cash_balance,
            },
        )

        return AgentCycleResult(
            agent_id=agent.id,
            model_id=context.model_id,
            decision_id=decision.id,
            action=action,
            state=state,
            retry_count=outcome.retry_count,
            orders=orders,
            error=error,
        )

    def _tradable_market(self, session: Session, market_id: str) -> Market:
        market = session.get(Market, market_id)
        if market is None:
            raise MarketUnavailable(f"Unknown market {market_id}")
        if market.status != MarketStatus.ACTIVE:
            raise MarketUnavailable(f"Market {market_id} is {market.status.value}")
        return market

    def _trade_price(self, market: Market, side: str) -> float:
        try:
            return side_price(market, side)
        except PriceUnavailable as e:
            raise MarketUnavailable(e.message) from None

    def _execute_bet(
        self,
        session: Session,
        agent: Agent,
        order: BetOrder,
        default_confidence: float | None,
        trades: list[Trade],
    ) -> OrderResult:
        result = OrderResult(kind="BET", market_id=order.market_id, side=order.side, executed=False)
        try:
            market = self._tradable_market(session, order.market_id)
            side = normalize_side(market, order.side)
            if side is None:
                raise MarketUnavailable(f"Side {order.side!r} is not valid for market {market.id}")
            price = self._trade_price(market, side)
            if price <= 0:
                raise MarketUnavailable(f"Side {side} of market {market.id} has zero price")

            amount, capped = self.policy.size_bet(order.amount, agent.cash_balance)
            shares = amount / price
            position = self.ledger.open_or_increase(session, agent.id, market.id, side, shares, price)
            agent.cash_balance -= amount
        except (PolicyRejection, LedgerError) as e:
            result.rejection_reason = f"{getattr(e, 'reason', 'rejected')}: {e.message}"
            logger.info(
                f"Rejected BET for agent {agent.id}: {e.message}",
                extra={"agent_id": agent.id, "market_id": order.market_id},
            )
            return result

        if capped:
            logger.info(
                f"Capped BET for agent {agent.id} from ${order.amount:.2f} to ${amount:.2f}",
                extra={"agent_id": agent.id, "market_id": market.id},
            )

        confidence = order.confidence if order.confidence is not None else default_confidence
        implied = (
            clamp_probability(confidence)
            if confidence is not None and math.isfinite(confidence)
            else None
        )

        trades.append(Trade(
            agent_id=agent.id,
            market_id=market.id,
            position_id=position.id,
            trade_type=TradeType.BUY,
            side=side,
            shares=shares,
            price=price,
            total_amount=amount,
            implied_confidence=implied,
            executed_at=utcnow(),
        ))

        result.side = side
        result.executed = True
        result.amount = amount
        result.shares = shares
        result.price = price
        result.capped = capped
        return result

    def _find_sell_target(self, session: Session, agent: Agent, order: SellOrder) -> Position:
        if order.position_id:
            position = session.get(Position, order.position_id)
            if position is not None and position.agent_id != agent.id:
                position = None
        else:
            market = session.get(Market, order.market_id)
            side = (normalize_side(market, order.side) if market else None) or order.side
            position = self.ledger.find_position(session, agent.id, order.market_id, side)

        if position is None or position.status != PositionStatus.OPEN:
            target = order.position_id or f"{order.market_id}/{order.side}"
            raise PositionNotFound(f"No open position {target}")
        return position

    def _execute_sell(
        self,
        session: Session,
        agent: Agent,
        order: SellOrder,
        trades: list[Trade],
    ) -> OrderResult:
        result = OrderResult(kind="SELL", market_id=order.market_id, side=order.side, executed=False)
        try:
            position = self._find_sell_target(session, agent, order)
            result.market_id = position.market_id
            result.side = position.side

            market = self._tradable_market(session, position.market_id)
            price = self._trade_price(market, position.side)

            if order.shares is not None:
                shares = order.shares
            else:
                shares = position.shares * order.percentage / 100

            sale = self.ledger.reduce_or_close(position, shares, price)
            agent.cash_balance += sale.proceeds
        except (PolicyRejection, LedgerError) as e:
            result.rejection_reason = f"{getattr(e, 'reason', 'rejected')}: {e.message}"
            logger.info(
                f"Rejected SELL for agent {agent.id}: {e.message}",
                extra={"agent_id": agent.id, "market_id": result.market_id},
            )
            return result

        trades.append(Trade(
            agent_id=agent.id,
            market_id=position.market_id,
            position_id=position.id,
            trade_type=TradeType.SELL,
            side=position.side,
            shares=sale.shares_sold,
            price=price,
            total_amount=sale.proceeds,
            cost_basis=sale.cost_basis,
            realized_pnl=sale.realized_pnl,
            executed_at=utcnow(),
        ))

        result.executed = True
        result.amount = sale.proceeds
        result.shares = sale.shares_sold
        result.price = price
        return result

    def _mark_bankrupt_if_spent(self, session: Session, agent: Agent) -> None:
        """An agent that can no longer bet and holds nothing is bankrupt."""
        if agent.status != AgentStatus.ACTIVE or self.policy.can_place_min_bet(agent.cash_balance):
            return
        if self.ledger.open_positions(session, agent.id):
            return
        agent.status = AgentStatus.BANKRUPT
        logger.warning(
            f"Agent {agent.id} marked bankrupt",
            extra={"agent_id": agent.id, "cash_balance": agent.cash_balance},
        )
