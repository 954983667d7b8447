"""Shared fixtures: in-memory store, seeded roster, fake collaborators."""

import asyncio
import json
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from arena.cohort import CohortManager
from arena.database import Database
from arena.decision import ProviderReply, build_system_prompt, build_user_prompt
from arena.market_data import MarketQuote
from arena.models import MarketStatus, MarketType
from arena.schema import Agent, Market, utcnow

# A Sunday inside the default start window
COHORT_START = datetime(2026, 10, 4, 0, 30, tzinfo=timezone.utc)

ROSTER = [
    SimpleNamespace(id="alpha", llm_id="openrouter/test/alpha", name="Alpha", provider="openrouter", color="#111111"),
    SimpleNamespace(id="beta", llm_id="openrouter/test/beta", name="Beta", provider="openrouter", color="#222222"),
]


class ScriptedProvider:
    """Decision collaborator that replays canned responses.

    Responses are dicts (sent as JSON), raw strings, or exceptions to raise.
    Each queue pops until its last entry, which then repeats.
    """

    def __init__(self, *responses, by_model=None):
        self.responses = list(responses)
        self.by_model = {k: list(v) for k, v in (by_model or {}).items()}
        self.calls = []

    def _next(self, model_id):
        queue = self.by_model.get(model_id, self.responses)
        if not queue:
            raise AssertionError(f"no scripted response for {model_id}")
        return queue.pop(0) if len(queue) > 1 else queue[0]

    async def request_decision(self, context, feedback=None):
        self.calls.append((context, feedback))
        item = self._next(context.model_id)
        if isinstance(item, Exception):
            raise item
        text = item if isinstance(item, str) else json.dumps(item)
        return ProviderReply(
            system_prompt=build_system_prompt(context),
            user_prompt=build_user_prompt(context),
            text=text,
            tokens_input=100,
            tokens_output=50,
            cost_usd=0.001,
        )


class SlowProvider:
    """Never answers within any reasonable budget."""

    def __init__(self, delay=5.0):
        self.delay = delay
        self.cancelled = 0

    async def request_decision(self, context, feedback=None):
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        return ProviderReply(build_system_prompt(context), build_user_prompt(context), '{"action": "HOLD"}')


class FakeMarketSource:
    """In-memory market-data feed."""

    def __init__(self):
        self.quotes = {}

    def set(self, market_id, **fields):
        self.quotes[market_id] = MarketQuote(id=market_id, **fields)

    def get_quote(self, market_id):
        return self.quotes.get(market_id)


def bet(market_id, side, amount, confidence=None, reasoning="edge"):
    order = {"market_id": market_id, "side": side, "amount": amount}
    if confidence is not None:
        order["confidence"] = confidence
    return {"action": "BET", "bets": [order], "reasoning": reasoning}


def sell(position_id=None, shares=None, percentage=None, market_id=None, side=None):
    order = {
        k: v
        for k, v in {
            "position_id": position_id,
            "market_id": market_id,
            "side": side,
            "shares": shares,
            "percentage": percentage,
        }.items()
        if v is not None
    }
    return {"action": "SELL", "sells": [order], "reasoning": "take profit"}


HOLD = {"action": "HOLD", "reasoning": "nothing compelling"}


@pytest.fixture
def database():
    db = Database("sqlite://")
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def cohorts(database):
    manager = CohortManager(database)
    manager.seed_models(ROSTER)
    return manager


@pytest.fixture
def cohort(cohorts):
    result = cohorts.start_cohort(force=True, now=COHORT_START)
    assert result.started
    return result


@pytest.fixture
def agent_ids(database, cohort):
    """model_id -> agent_id for the started cohort."""
    with database.session() as session:
        agents = session.scalars(select(Agent).where(Agent.cohort_id == cohort.cohort_id))
        return {a.model_id: a.id for a in agents}


@pytest.fixture
def make_market(database):
    def _make(
        market_id="m1",
        price=0.40,
        volume=1000.0,
        market_type=MarketType.BINARY,
        prices=None,
        outcomes=None,
        status=MarketStatus.ACTIVE,
        question=None,
    ):
        with database.session() as session:
            session.add(Market(
                id=market_id,
                question=question or f"Will {market_id} happen?",
                market_type=market_type,
                current_price=price,
                current_prices=prices,
                outcomes=outcomes,
                volume=volume,
                status=status,
                last_updated_at=utcnow(),
            ))
        return market_id

    return _make


@pytest.fixture
def market_source():
    return FakeMarketSource()


def get_row(database, model, row_id):
    with database.session() as session:
        return session.get(model, row_id)


def set_market(database, market_id, **fields):
    with database.session() as session:
        market = session.get(Market, market_id)
        for key, value in fields.items():
            setattr(market, key, value)


def set_cash(database, agent_id, cash):
    with database.session() as session:
        session.get(Agent, agent_id).cash_balance = cash
