"""Settlement against a sell that commits while settlement waits for locks.

Uses a file-backed SQLite store so the sell runs on its own connection.
"""

import asyncio

import pytest
from sqlalchemy import select

from arena.database import Database
from arena.executor import TradeExecutor
from arena.ledger import PositionLedger
from arena.models import MarketStatus, PositionStatus
from arena.schema import Agent, Position
from arena.settlement import SettlementService

from conftest import ScriptedProvider, bet, get_row, sell


@pytest.fixture
def database(tmp_path):
    db = Database(f"sqlite:///{tmp_path / 'arena.db'}")
    db.create_all()
    yield db
    db.dispose()


def test_sell_committed_before_locks_is_not_paid_again(database, agent_ids, make_market, market_source):
    alpha = agent_ids["alpha"]
    make_market("m1", price=0.40)
    asyncio.run(TradeExecutor(database, ScriptedProvider(bet("m1", "YES", 500))).run_agent(alpha))

    market_source.set("m1", price=1.0, status=MarketStatus.RESOLVED, resolution_outcome="YES")
    service = SettlementService(database, market_source=market_source)
    lock_agents = service.ledger.lock_agents
    seller = TradeExecutor(database, ScriptedProvider(sell(market_id="m1", side="YES", shares=1250)))

    def sell_then_lock(session, ids):
        # The agent's sell lands while settlement is still waiting on the lock
        result = asyncio.run(seller.run_agent(alpha))
        assert result.trades_executed == 1
        return lock_agents(session, ids)

    service.ledger.lock_agents = sell_then_lock

    summary = service.process_resolutions()

    assert summary.markets_resolved == 1
    assert summary.positions_settled == 0
    assert summary.brier_scores_recorded == 1
    # 500 spent, 1250 shares sold back at 0.40, no settlement payout
    assert get_row(database, Agent, alpha).cash_balance == pytest.approx(10000)
    with database.session() as session:
        [position] = session.scalars(select(Position).where(Position.agent_id == alpha))
        assert position.status == PositionStatus.CLOSED


def test_lock_agents_orders_by_id(database, agent_ids):
    ledger = PositionLedger()
    ids = sorted(agent_ids.values())
    with database.session() as session:
        assert [a.id for a in ledger.lock_agents(session, ids[::-1])] == ids
        assert ledger.lock_agents(session, []) == []
