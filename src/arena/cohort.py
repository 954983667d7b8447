"""Cohort Lifecycle Manager for the arena.

A cohort is one weekly competition: every active model gets an agent with
the same starting cash. This module handles:
- Starting cohorts inside the weekly schedule window
- Completing cohorts once every position has settled
- Seeding the model roster from the provider catalogue
"""

import logging
import math
from collections.abc import Iterable
from datetime import datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from llm_service.llm.providers import AVAILABLE_MODELS

from .database import Database
from .errors import PersistenceError
from .events import log_system_event
from .models import AgentStatus, CohortStartResult, CohortStatus, PositionStatus
from .schema import Agent, Cohort, Model, Position, as_utc, utcnow

logger = logging.getLogger(__name__)


def decision_week(cohort: Cohort, now: datetime) -> int:
    """1-based week index of `now` within the cohort."""
    elapsed = as_utc(now) - as_utc(cohort.started_at)
    return max(1, math.floor(elapsed.days / 7) + 1)


def start_window(now: datetime, weekday: int, hours: int) -> tuple[datetime, datetime]:
    """The most recent weekly start window at or before `now`.

    Args:
        now: Reference time
        weekday: Window weekday, Monday=0 ... Sunday=6
        hours: Window length from 00:00 UTC

    Returns:
        (window_start, window_end)
    """
    now = as_utc(now)
    days_back = (now.weekday() - weekday) % 7
    start = (now - timedelta(days=days_back)).replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(hours=hours)


class CohortManager:
    """Starts and completes cohorts."""

    def __init__(
        self,
        database: Database,
        initial_balance: float = 10000.0,
        methodology_version: str = "v1",
        start_weekday: int = 6,
        start_window_hours: int = 1,
        allow_concurrent: bool = False,
        empty_grace_days: int = 7,
    ):
        self.database = database
        self.initial_balance = initial_balance
        self.methodology_version = methodology_version
        self.start_weekday = start_weekday
        self.start_window_hours = start_window_hours
        self.allow_concurrent = allow_concurrent
        self.empty_grace_days = empty_grace_days

    @classmethod
    def from_settings(cls, database: Database, settings) -> "CohortManager":
        return cls(
            database,
            initial_balance=settings.initial_balance,
            methodology_version=settings.methodology_version,
            start_weekday=settings.cohort_start_weekday,
            start_window_hours=settings.cohort_start_window_hours,
            allow_concurrent=settings.allow_concurrent_cohorts,
            empty_grace_days=settings.empty_cohort_grace_days,
        )

    def in_start_window(self, now: datetime) -> bool:
        start, end = start_window(now, self.start_weekday, self.start_window_hours)
        return start <= as_utc(now) < end

    # -------------------------------------------------------------------------
    # Roster
    # -------------------------------------------------------------------------

    def seed_models(self, roster: Iterable | None = None) -> int:
        """Insert catalogue models that are not in the store yet.

        Existing rows are left alone so a deactivated model stays inactive.

        Args:
            roster: ModelInfo entries; the provider catalogue by default

        Returns:
            Number of models inserted
        """
        if roster is None:
            roster = AVAILABLE_MODELS

        inserted = 0
        with self.database.session() as session:
            for info in roster:
                if session.get(Model, info.id) is not None:
                    continue
                session.add(Model(
                    id=info.id,
                    llm_id=info.llm_id,
                    display_name=info.name,
                    provider=info.provider,
                    color=info.color,
                    is_active=True,
                    added_at=utcnow(),
                ))
                inserted += 1

        if inserted:
            logger.info(f"Seeded {inserted} models")
        return inserted

    # -------------------------------------------------------------------------
    # Start
    # -------------------------------------------------------------------------

    def start_cohort(self, force: bool = False, now: datetime | None = None) -> CohortStartResult:
        """Start a new cohort with one agent per active model.

        Preconditions that fail return a result with started=False and a
        reason instead of raising.

        Args:
            force: Skip the schedule window and active-cohort checks
            now: Reference time (defaults to now)

        Returns:
            CohortStartResult
        """
        now = as_utc(now or utcnow())

        if not force and not self.in_start_window(now):
            return CohortStartResult(started=False, reason="outside_start_window")

        try:
            with self.database.session() as session:
                if not force:
                    reason = self._blocking_reason(session, now)
                    if reason:
                        logger.info(f"Cohort not started: {reason}")
                        return CohortStartResult(started=False, reason=reason)

                models = list(session.scalars(
                    select(Model).where(Model.is_active.is_(True)).order_by(Model.id)
                ))
                if not models:
                    logger.warning("Cohort not started: no active models")
                    return CohortStartResult(started=False, reason="no_active_models")

                last_number = session.scalar(select(func.max(Cohort.cohort_number))) or 0
                cohort = Cohort(
                    cohort_number=last_number + 1,
                    started_at=now,
                    status=CohortStatus.ACTIVE,
                    methodology_version=self.methodology_version,
                    initial_balance=self.initial_balance,
                )
                session.add(cohort)
                session.flush()

                agents = [
                    Agent(
                        cohort_id=cohort.id,
                        model_id=model.id,
                        cash_balance=self.initial_balance,
                        status=AgentStatus.ACTIVE,
                        created_at=now,
                    )
                    for model in models
                ]
                session.add_all(agents)
                session.flush()

                log_system_event(session, "cohort_started", {
                    "cohort_id": cohort.id,
                    "cohort_number": cohort.cohort_number,
                    "agents": len(agents),
                    "forced": force,
                })

                result = CohortStartResult(
                    started=True,
                    cohort_id=cohort.id,
                    cohort_number=cohort.cohort_number,
                    agent_ids=[a.id for a in agents],
                )
        except PersistenceError as e:
            if isinstance(e.__cause__, IntegrityError):
                logger.warning("Cohort start lost a race with a concurrent start")
                return CohortStartResult(started=False, reason="concurrent_start")
            raise

        logger.info(
            f"Started cohort #{result.cohort_number} with {len(result.agent_ids)} agents",
            extra={"cohort_id": result.cohort_id},
        )
        return result

    def _blocking_reason(self, session, now: datetime) -> str | None:
        if self.allow_concurrent:
            window_start, _ = start_window(now, self.start_weekday, self.start_window_hours)
            started = session.scalar(
                select(func.count(Cohort.id)).where(Cohort.started_at >= window_start)
            )
            return "cohort_already_started_this_window" if started else None

        active = session.scalar(
            select(func.count(Cohort.id)).where(Cohort.status == CohortStatus.ACTIVE)
        )
        return "cohort_already_active" if active else None

    # -------------------------------------------------------------------------
    # Completion
    # -------------------------------------------------------------------------

    def check_completion(self, now: datetime | None = None) -> list[str]:
        """Complete every active cohort whose positions have all settled.

        A cohort that never opened a position completes only after the
        empty-cohort grace period.

        Returns:
            IDs of cohorts completed by this call
        """
        now = as_utc(now or utcnow())
        completed = []

        with self.database.session() as session:
            cohorts = list(session.scalars(
                select(Cohort).where(Cohort.status == CohortStatus.ACTIVE)
            ))
            for cohort in cohorts:
                cohort_positions = (
                    select(Position.id)
                    .join(Agent, Agent.id == Position.agent_id)
                    .where(Agent.cohort_id == cohort.id)
                )
                has_open = session.scalar(select(
                    cohort_positions.where(Position.status == PositionStatus.OPEN).exists()
                ))
                if has_open:
                    continue

                has_any = session.scalar(select(cohort_positions.exists()))
                if not has_any:
                    age = now - as_utc(cohort.started_at)
                    if age < timedelta(days=self.empty_grace_days):
                        continue

                # Conditional on status so a concurrent check completes it once
                updated = session.execute(
                    update(Cohort)
                    .where(Cohort.id == cohort.id, Cohort.status == CohortStatus.ACTIVE)
                    .values(status=CohortStatus.COMPLETED, completed_at=now)
                    .execution_options(synchronize_session=False)
                )
                if updated.rowcount:
                    completed.append(cohort.id)
                    log_system_event(session, "cohort_completed", {
                        "cohort_id": cohort.id,
                        "cohort_number": cohort.cohort_number,
                        "empty": not has_any,
                    })

        for cohort_id in completed:
            logger.info(f"Cohort {cohort_id} completed")
        return completed
