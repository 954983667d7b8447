"""Portfolio snapshots and revaluation."""

import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from arena.executor import TradeExecutor
from arena.models import AgentStatus, MarketStatus
from arena.schema import Agent, Market, PortfolioSnapshot, Position
from arena.settlement import SettlementService
from arena.snapshots import SnapshotEngine, snapshot_bucket

from conftest import ScriptedProvider, bet, sell, set_market

SWEEP_AT = datetime(2026, 10, 6, 12, 37, 45, tzinfo=timezone.utc)


def snapshots_for(database, agent_id):
    with database.session() as session:
        return list(session.scalars(
            select(PortfolioSnapshot).where(PortfolioSnapshot.agent_id == agent_id)
        ))


@pytest.fixture
def funded_alpha(database, agent_ids, make_market):
    """Alpha holds 1250 YES shares of m1 bought at 0.40."""
    make_market("m1", price=0.40)
    executor = TradeExecutor(database, ScriptedProvider(bet("m1", "YES", 500)))
    asyncio.run(executor.run_agent(agent_ids["alpha"]))
    return agent_ids["alpha"]


def test_bucket_floors_to_interval():
    assert snapshot_bucket(SWEEP_AT, 10) == datetime(2026, 10, 6, 12, 30, tzinfo=timezone.utc)
    assert snapshot_bucket(SWEEP_AT, 60) == datetime(2026, 10, 6, 12, 0, tzinfo=timezone.utc)


def test_snapshot_values_portfolio(database, funded_alpha, market_source):
    market_source.set("m1", price=0.60)
    engine = SnapshotEngine(database, market_source=market_source)

    summary = engine.run_sweep(SWEEP_AT)

    assert summary.snapshots_taken == 2
    assert summary.cohorts_processed == 1
    [snapshot] = snapshots_for(database, funded_alpha)
    assert snapshot.cash_balance == pytest.approx(9500)
    assert snapshot.positions_value == pytest.approx(750)
    assert snapshot.total_value == pytest.approx(10250)
    assert snapshot.total_pnl == pytest.approx(250)
    assert snapshot.total_pnl_percent == pytest.approx(2.5)
    assert snapshot.brier_score is None
    assert snapshot.num_resolved_bets == 0

    with database.session() as session:
        position = session.scalars(select(Position).where(Position.agent_id == funded_alpha)).one()
        assert position.current_value == pytest.approx(750)
        assert position.unrealized_pnl == pytest.approx(250)


def test_sweep_is_idempotent_within_bucket(database, funded_alpha):
    engine = SnapshotEngine(database)

    first = engine.run_sweep(SWEEP_AT)
    second = engine.run_sweep(SWEEP_AT.replace(minute=39))

    assert first.snapshots_taken == 2
    assert second.snapshots_taken == 0
    assert second.snapshots_skipped == 2
    assert len(snapshots_for(database, funded_alpha)) == 1

    engine.run_sweep(SWEEP_AT.replace(minute=41))
    assert len(snapshots_for(database, funded_alpha)) == 2


def test_missing_price_falls_back(database, funded_alpha):
    set_market(database, "m1", current_price=None)
    engine = SnapshotEngine(database)

    summary = engine.run_sweep(SWEEP_AT)

    assert summary.price_fallbacks == 1
    [snapshot] = snapshots_for(database, funded_alpha)
    assert snapshot.positions_value == pytest.approx(625)


def test_quote_marks_market_terminal(database, funded_alpha, market_source):
    market_source.set("m1", price=1.0, status=MarketStatus.RESOLVED, resolution_outcome="YES")
    engine = SnapshotEngine(database, market_source=market_source)

    engine.run_sweep(SWEEP_AT)

    with database.session() as session:
        market = session.get(Market, "m1")
        assert market.status == MarketStatus.RESOLVED
        assert market.resolution_outcome == "YES"
        assert market.resolved_at is not None


def test_budget_leaves_agents_for_next_sweep(database, funded_alpha):
    engine = SnapshotEngine(database)

    summary = engine.run_sweep(SWEEP_AT, deadline=0.0)

    assert summary.budget_exhausted
    assert summary.snapshots_taken == 0


def test_bankrupt_agent_snapshot_carries_late_brier_score(database, funded_alpha):
    executor = TradeExecutor(database, ScriptedProvider(sell(market_id="m1", side="YES", shares=1250)))
    asyncio.run(executor.run_agent(funded_alpha))
    with database.session() as session:
        session.get(Agent, funded_alpha).status = AgentStatus.BANKRUPT

    set_market(database, "m1", status=MarketStatus.RESOLVED, resolution_outcome="YES")
    SettlementService(database).process_resolutions()

    summary = SnapshotEngine(database).run_sweep(SWEEP_AT)

    assert summary.snapshots_taken == 2
    [snapshot] = snapshots_for(database, funded_alpha)
    assert snapshot.num_resolved_bets == 1
    assert snapshot.brier_score == pytest.approx(0.36)
