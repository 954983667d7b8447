"""Arena Engine.

Wires the components together and runs the scheduled passes:
- Decision cycle: every active agent of every active cohort decides once
- Snapshot sweep: settlement pass, portfolio snapshots, completion check
- Settlement pass on its own
- Cohort start

Agent-level faults are recorded and counted; cycle-level faults raise
CycleAborted to the invoker.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select

from llm_service.config import Settings
from llm_service.llm.client import LLMClient

from .calibration import CalibrationScorer
from .cohort import CohortManager
from .database import Database
from .decision import DecisionProvider, LLMDecisionProvider, request_with_retries
from .errors import CycleAborted, PersistenceError
from .events import log_system_event
from .executor import TradeExecutor
from .ledger import PositionLedger
from .market_data import MarketDataSource, StoredMarketData
from .models import (
    AgentStatus,
    CohortStartResult,
    CohortStatus,
    CycleSummary,
    EventSeverity,
    ResolutionSummary,
    SnapshotSweepSummary,
)
from .policy import RiskPolicy
from .schema import Agent, Cohort, utcnow
from .settlement import SettlementService
from .snapshots import SnapshotEngine

logger = logging.getLogger(__name__)


@dataclass
class EngineConfig:
    """Timing and fault limits for the scheduled passes."""
    decision_cycle_budget_seconds: float = 300.0
    snapshot_budget_seconds: float = 120.0
    snapshot_interval_minutes: int = 10
    max_consecutive_store_failures: int = 3
    decision_max_retries: int = 1
    top_markets_count: int = 100
    methodology_version: str = "v1"

    @classmethod
    def from_settings(cls, settings: Settings) -> "EngineConfig":
        return cls(
            decision_cycle_budget_seconds=settings.decision_cycle_budget_seconds,
            snapshot_budget_seconds=settings.snapshot_budget_seconds,
            snapshot_interval_minutes=settings.snapshot_interval_minutes,
            max_consecutive_store_failures=settings.max_consecutive_store_failures,
            decision_max_retries=settings.decision_max_retries,
            top_markets_count=settings.top_markets_count,
            methodology_version=settings.methodology_version,
        )


class ArenaEngine:
    """Entry point for every scheduled arena operation."""

    def __init__(
        self,
        database: Database,
        provider: DecisionProvider,
        market_source: MarketDataSource | None = None,
        policy: RiskPolicy | None = None,
        config: EngineConfig | None = None,
        cohorts: CohortManager | None = None,
    ):
        """Initialize the engine.

        Args:
            database: Arena store
            provider: Decision collaborator
            market_source: Market-data collaborator for revaluation and
                resolution checks
            policy: Bet sizing limits
            config: Budgets and fault limits
            cohorts: Cohort manager (defaults built from `database`)
        """
        self.database = database
        self.config = config or EngineConfig()
        self.policy = policy or RiskPolicy()
        self.ledger = PositionLedger()
        self.scorer = CalibrationScorer()
        self.cohorts = cohorts or CohortManager(
            database, methodology_version=self.config.methodology_version
        )

        self.executor = TradeExecutor(
            database,
            provider,
            policy=self.policy,
            ledger=self.ledger,
            max_retries=self.config.decision_max_retries,
            top_markets=self.config.top_markets_count,
            methodology_version=self.config.methodology_version,
        )
        self.settlement = SettlementService(
            database,
            market_source=market_source,
            ledger=self.ledger,
            scorer=self.scorer,
            cohorts=self.cohorts,
        )
        self.snapshots = SnapshotEngine(
            database,
            market_source=market_source,
            ledger=self.ledger,
            scorer=self.scorer,
            interval_minutes=self.config.snapshot_interval_minutes,
            max_consecutive_failures=self.config.max_consecutive_store_failures,
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _active_roster(self) -> list[tuple[str, list[str]]]:
        """(cohort_id, active agent ids) for every active cohort."""
        with self.database.session() as session:
            cohorts = list(session.scalars(
                select(Cohort)
                .where(Cohort.status == CohortStatus.ACTIVE)
                .order_by(Cohort.cohort_number)
            ))
            return [
                (cohort.id, list(session.scalars(
                    select(Agent.id)
                    .where(Agent.cohort_id == cohort.id, Agent.status == AgentStatus.ACTIVE)
                    .order_by(Agent.created_at, Agent.id)
                )))
                for cohort in cohorts
            ]

    def _abort(self, pass_name: str, error: Exception) -> CycleAborted:
        message = f"{pass_name} aborted: {error}"
        logger.error(message, exc_info=error)
        try:
            with self.database.session() as session:
                log_system_event(
                    session,
                    "cycle_aborted",
                    {"pass": pass_name, "error": str(error)},
                    severity=EventSeverity.ERROR,
                )
        except PersistenceError:
            logger.error("Could not record cycle_aborted event", exc_info=True)
        return CycleAborted(message)

    # -------------------------------------------------------------------------
    # Passes
    # -------------------------------------------------------------------------

    async def run_decision_cycle(self, now: datetime | None = None) -> CycleSummary:
        """Run one decision for every active agent of every active cohort.

        Agents run one at a time under the cycle budget. When the budget
        runs out, the in-flight decision request is cancelled and recorded
        as an ERROR decision; agents not yet reached are reported as skipped.

        Raises:
            CycleAborted: If cohorts cannot be listed or the store keeps failing
        """
        started = time.time()
        now = now or utcnow()
        summary = CycleSummary()

        try:
            roster = self._active_roster()
        except PersistenceError as e:
            raise self._abort("decision_cycle", e) from e

        summary.cohorts_processed = len(roster)
        queue = [agent_id for _, agent_ids in roster for agent_id in agent_ids]

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.decision_cycle_budget_seconds
        consecutive_failures = 0

        for index, agent_id in enumerate(queue):
            remaining = deadline - loop.time()
            if remaining <= 0:
                summary.budget_exhausted = True
                summary.agents_skipped = len(queue) - index
                break

            summary.agents_processed += 1
            try:
                context = self.executor.build_context(agent_id, now)
                try:
                    outcome = await asyncio.wait_for(
                        request_with_retries(
                            self.executor.provider, context, self.config.decision_max_retries
                        ),
                        timeout=remaining,
                    )
                except asyncio.TimeoutError:
                    logger.warning(f"Decision budget exhausted while agent {agent_id} was deciding")
                    result = self.executor.record_error(context, "Decision cycle budget exhausted")
                    summary.results.append(result)
                    summary.errors += 1
                    summary.budget_exhausted = True
                    summary.agents_skipped = len(queue) - index - 1
                    break

                result = self.executor.execute(context, outcome)
            except PersistenceError as e:
                consecutive_failures += 1
                summary.errors += 1
                summary.error_messages.append(f"{agent_id}: {e.message}")
                logger.error(f"Store failure for agent {agent_id}: {e}", exc_info=True)
                if consecutive_failures >= self.config.max_consecutive_store_failures:
                    raise self._abort("decision_cycle", e) from e
                continue
            except Exception as e:
                summary.errors += 1
                summary.error_messages.append(f"{agent_id}: {e}")
                logger.error(f"Agent {agent_id} failed: {e}", exc_info=True)
                continue

            consecutive_failures = 0
            summary.results.append(result)
            summary.trades_executed += result.trades_executed
            if result.errored:
                summary.errors += 1
                if result.error:
                    summary.error_messages.append(f"{agent_id}: {result.error}")

        summary.duration_ms = int((time.time() - started) * 1000)
        logger.info(
            f"Decision cycle: {summary.agents_processed} agents, "
            f"{summary.trades_executed} trades, {summary.errors} errors",
            extra={
                "cohorts": summary.cohorts_processed,
                "skipped": summary.agents_skipped,
                "duration_ms": summary.duration_ms,
                "budget_exhausted": summary.budget_exhausted,
            },
        )
        return summary

    def run_settlement_pass(self) -> ResolutionSummary:
        """Settle resolved and cancelled markets.

        Raises:
            CycleAborted: If candidate markets cannot be listed
        """
        try:
            return self.settlement.process_resolutions()
        except PersistenceError as e:
            raise self._abort("settlement_pass", e) from e

    def run_snapshot_sweep(self, now: datetime | None = None) -> SnapshotSweepSummary:
        """Settlement pass, then portfolio snapshots, then completion check.

        Raises:
            CycleAborted: On a cycle-level store fault
        """
        deadline = time.monotonic() + self.config.snapshot_budget_seconds
        resolutions = self.run_settlement_pass()

        try:
            summary = self.snapshots.run_sweep(now, deadline=deadline)
            completed = self.cohorts.check_completion(now)
        except CycleAborted as e:
            raise self._abort("snapshot_sweep", e) from e
        except PersistenceError as e:
            raise self._abort("snapshot_sweep", e) from e

        summary.resolutions = resolutions.to_dict()
        summary.cohorts_completed = resolutions.cohorts_completed + len(completed)
        return summary

    def start_cohort(self, force: bool = False, now: datetime | None = None) -> CohortStartResult:
        return self.cohorts.start_cohort(force=force, now=now)


def build_engine(settings: Settings, database: Database | None = None) -> ArenaEngine:
    """Assemble a production engine from settings.

    Decisions go through the LiteLLM client; market data is read from the
    local mirror kept current by the external feed sync.
    """
    database = database or Database(settings.database_url, echo=settings.database_echo)
    provider = LLMDecisionProvider(
        LLMClient(settings),
        temperature=settings.decision_temperature,
        max_tokens=settings.decision_max_tokens,
    )
    return ArenaEngine(
        database,
        provider,
        market_source=StoredMarketData(database),
        policy=RiskPolicy.from_settings(settings),
        config=EngineConfig.from_settings(settings),
        cohorts=CohortManager.from_settings(database, settings),
    )

