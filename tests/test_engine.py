"""Scheduled passes: decision cycle, snapshot sweep, aborts."""

import asyncio

import pytest
from sqlalchemy import select

from arena.engine import ArenaEngine, EngineConfig
from arena.errors import CycleAborted, PersistenceError
from arena.models import AgentStatus, DecisionAction, DecisionState, MarketStatus
from arena.schema import Agent, Decision, SystemEvent

from conftest import HOLD, ScriptedProvider, SlowProvider, bet


def make_engine(database, cohorts, provider, market_source=None, **config):
    return ArenaEngine(
        database,
        provider,
        market_source=market_source,
        config=EngineConfig(**config),
        cohorts=cohorts,
    )


def decisions(database):
    with database.session() as session:
        return list(session.scalars(select(Decision)))


def test_cycle_runs_every_active_agent(database, cohorts, cohort):
    engine = make_engine(database, cohorts, ScriptedProvider(HOLD))

    summary = asyncio.run(engine.run_decision_cycle())

    assert summary.cohorts_processed == 1
    assert summary.agents_processed == 2
    assert summary.errors == 0
    assert not summary.budget_exhausted
    assert len(decisions(database)) == 2
    assert summary.to_dict()["results"][0]["action"] == "HOLD"


def test_agent_failure_is_isolated(database, cohorts, cohort, make_market):
    make_market("m1", price=0.40)
    provider = ScriptedProvider(by_model={
        "alpha": [RuntimeError("provider down")],
        "beta": [bet("m1", "YES", 500)],
    })
    engine = make_engine(database, cohorts, provider)

    summary = asyncio.run(engine.run_decision_cycle())

    assert summary.agents_processed == 2
    assert summary.errors == 1
    assert summary.trades_executed == 1
    by_model = {r.model_id: r for r in summary.results}
    assert by_model["alpha"].action == DecisionAction.ERROR
    assert by_model["beta"].state == DecisionState.EXECUTED


def test_bankrupt_agents_are_not_asked(database, cohorts, cohort, agent_ids):
    with database.session() as session:
        session.get(Agent, agent_ids["alpha"]).status = AgentStatus.BANKRUPT
    provider = ScriptedProvider(HOLD)
    engine = make_engine(database, cohorts, provider)

    summary = asyncio.run(engine.run_decision_cycle())

    assert summary.agents_processed == 1
    assert [call[0].model_id for call in provider.calls] == ["beta"]


def test_budget_exhaustion_returns_partial_results(database, cohorts, cohort):
    provider = SlowProvider(delay=5.0)
    engine = make_engine(database, cohorts, provider, decision_cycle_budget_seconds=0.05)

    summary = asyncio.run(engine.run_decision_cycle())

    assert summary.budget_exhausted
    assert summary.agents_processed == 1
    assert summary.agents_skipped == 1
    assert summary.errors == 1
    assert provider.cancelled == 1

    [decision] = decisions(database)
    assert decision.action == DecisionAction.ERROR
    assert decision.state == DecisionState.ERRORED
    assert "budget" in decision.error_message


def test_cycle_aborts_when_cohorts_cannot_be_listed(database, cohorts):
    engine = make_engine(database, cohorts, ScriptedProvider(HOLD))
    database.drop_all()

    with pytest.raises(CycleAborted):
        asyncio.run(engine.run_decision_cycle())


def test_cycle_aborts_after_consecutive_store_failures(database, cohorts, cohort, monkeypatch):
    engine = make_engine(database, cohorts, ScriptedProvider(HOLD), max_consecutive_store_failures=2)

    def failing_context(agent_id, now=None):
        raise PersistenceError("database is locked")

    monkeypatch.setattr(engine.executor, "build_context", failing_context)

    with pytest.raises(CycleAborted):
        asyncio.run(engine.run_decision_cycle())

    with database.session() as session:
        events = list(session.scalars(select(SystemEvent.event_type)))
    assert "cycle_aborted" in events


def test_isolated_store_failure_is_counted(database, cohorts, cohort, monkeypatch):
    engine = make_engine(database, cohorts, ScriptedProvider(HOLD))
    build_context = engine.executor.build_context
    failed = []

    def flaky_context(agent_id, now=None):
        if not failed:
            failed.append(agent_id)
            raise PersistenceError("database is locked")
        return build_context(agent_id, now)

    monkeypatch.setattr(engine.executor, "build_context", flaky_context)

    summary = asyncio.run(engine.run_decision_cycle())

    assert summary.errors == 1
    assert len(summary.results) == 1


def test_snapshot_sweep_runs_settlement_first(database, cohorts, cohort, agent_ids, make_market, market_source):
    make_market("m1", price=0.40)
    make_market("m2", price=0.50)
    provider = ScriptedProvider(by_model={
        "alpha": [bet("m1", "YES", 500)],
        "beta": [bet("m2", "YES", 500)],
    })
    engine = make_engine(database, cohorts, provider, market_source=market_source)
    asyncio.run(engine.run_decision_cycle())

    market_source.set("m1", price=1.0, status=MarketStatus.RESOLVED, resolution_outcome="YES")
    market_source.set("m2", price=0.55)
    summary = engine.run_snapshot_sweep()

    assert summary.resolutions["markets_resolved"] == 1
    assert summary.resolutions["brier_scores_recorded"] == 1
    assert summary.snapshots_taken == 2
    assert summary.cohorts_completed == 0


def test_snapshot_sweep_completes_finished_cohort(database, cohorts, cohort, make_market, market_source):
    make_market("m1", price=0.40)
    provider = ScriptedProvider(by_model={"alpha": [bet("m1", "YES", 500)], "beta": [HOLD]})
    engine = make_engine(database, cohorts, provider, market_source=market_source)
    asyncio.run(engine.run_decision_cycle())

    market_source.set("m1", status=MarketStatus.CANCELLED)
    summary = engine.run_snapshot_sweep()

    assert summary.resolutions["markets_cancelled"] == 1
    assert summary.cohorts_completed == 1
    assert summary.snapshots_taken == 0


def test_engine_starts_cohorts(database, cohorts):
    engine = make_engine(database, cohorts, ScriptedProvider(HOLD))
    assert engine.start_cohort(force=True).started
    assert engine.start_cohort().started is False
