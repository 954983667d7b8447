"""Position ledger accounting."""

import pytest

from arena.errors import InvalidQuantity, OverSell, PriceUnavailable
from arena.ledger import (
    PositionLedger,
    normalize_side,
    resolve_side_price,
    side_price,
)
from arena.models import MarketType, PositionStatus
from arena.schema import Agent, Market, Position

from conftest import get_row


def assert_cost_basis(position):
    assert position.total_cost == pytest.approx(position.shares * position.avg_entry_price)


@pytest.fixture
def ledger():
    return PositionLedger()


@pytest.fixture
def alpha(agent_ids):
    return agent_ids["alpha"]


def test_open_position(database, ledger, alpha, make_market):
    make_market("m1", price=0.40)
    with database.session() as session:
        position = ledger.open_or_increase(session, alpha, "m1", "YES", 1250, 0.40)
        position_id = position.id

    position = get_row(database, Position, position_id)
    assert position.shares == pytest.approx(1250)
    assert position.avg_entry_price == pytest.approx(0.40)
    assert position.total_cost == pytest.approx(500)
    assert position.status == PositionStatus.OPEN
    assert_cost_basis(position)


def test_increase_averages_entry_price(database, ledger, alpha, make_market):
    make_market("m1")
    with database.session() as session:
        ledger.open_or_increase(session, alpha, "m1", "YES", 1250, 0.40)
        position = ledger.open_or_increase(session, alpha, "m1", "YES", 500, 0.60)

        assert position.shares == pytest.approx(1750)
        assert position.avg_entry_price == pytest.approx(800 / 1750)
        assert position.total_cost == pytest.approx(800)
        assert_cost_basis(position)


def test_revalue_marks_to_market(database, ledger, alpha, make_market):
    make_market("m1", price=0.40)
    with database.session() as session:
        position = ledger.open_or_increase(session, alpha, "m1", "YES", 1250, 0.40)
        market = session.get(Market, "m1")
        market.current_price = 0.60

        valuation = ledger.revalue(position, market)

        assert valuation.current_value == pytest.approx(750)
        assert valuation.unrealized_pnl == pytest.approx(250)
        assert not valuation.price_fallback
        assert position.unrealized_pnl == pytest.approx(position.current_value - position.total_cost)


def test_revalue_no_side_uses_complement(database, ledger, alpha, make_market):
    make_market("m1", price=0.25)
    with database.session() as session:
        position = ledger.open_or_increase(session, alpha, "m1", "NO", 100, 0.75)
        valuation = ledger.revalue(position, session.get(Market, "m1"))
        assert valuation.price == pytest.approx(0.75)
        assert valuation.unrealized_pnl == pytest.approx(0)


def test_revalue_falls_back_on_missing_price(database, ledger, alpha, make_market):
    make_market("m1", price=0.40)
    with database.session() as session:
        position = ledger.open_or_increase(session, alpha, "m1", "YES", 100, 0.40)
        market = session.get(Market, "m1")
        market.current_price = None

        valuation = ledger.revalue(position, market)

        assert valuation.price_fallback
        assert valuation.price == 0.5
        assert position.current_value == pytest.approx(50)


def test_partial_sell_realizes_pnl(database, ledger, alpha, make_market):
    make_market("m1")
    with database.session() as session:
        position = ledger.open_or_increase(session, alpha, "m1", "YES", 1250, 0.40)
        sale = ledger.reduce_or_close(position, 250, 0.60)

        assert sale.proceeds == pytest.approx(150)
        assert sale.cost_basis == pytest.approx(100)
        assert sale.realized_pnl == pytest.approx(50)
        assert not sale.closed
        assert position.shares == pytest.approx(1000)
        assert position.total_cost == pytest.approx(400)
        assert position.realized_pnl == pytest.approx(50)
        assert_cost_basis(position)


def test_oversell_leaves_position_untouched(database, ledger, alpha, make_market):
    make_market("m1")
    with database.session() as session:
        position = ledger.open_or_increase(session, alpha, "m1", "YES", 1250, 0.40)

        with pytest.raises(OverSell):
            ledger.reduce_or_close(position, 2000, 0.40)

        assert position.shares == pytest.approx(1250)
        assert position.total_cost == pytest.approx(500)
        assert position.status == PositionStatus.OPEN


def test_full_sell_closes_and_rebuy_reopens(database, ledger, alpha, make_market):
    make_market("m1")
    with database.session() as session:
        position = ledger.open_or_increase(session, alpha, "m1", "YES", 100, 0.40)
        sale = ledger.reduce_or_close(position, 100, 0.50)
        assert sale.closed
        assert position.status == PositionStatus.CLOSED
        assert position.shares == 0
        assert position.total_cost == 0

        reopened = ledger.open_or_increase(session, alpha, "m1", "YES", 20, 0.30)
        assert reopened.id == position.id
        assert reopened.status == PositionStatus.OPEN
        assert reopened.shares == pytest.approx(20)
        assert reopened.avg_entry_price == pytest.approx(0.30)
        assert reopened.realized_pnl == pytest.approx(10)


@pytest.mark.parametrize("shares,price", [(0, 0.5), (-5, 0.5), (10, 1.5), (float("nan"), 0.5)])
def test_invalid_quantities_rejected(database, ledger, alpha, make_market, shares, price):
    make_market("m1")
    with database.session() as session:
        with pytest.raises(InvalidQuantity):
            ledger.open_or_increase(session, alpha, "m1", "YES", shares, price)


def test_settle_winner_and_loser(database, ledger, agent_ids, make_market):
    make_market("m1")
    alpha, beta = agent_ids["alpha"], agent_ids["beta"]
    with database.session() as session:
        winner = ledger.open_or_increase(session, alpha, "m1", "YES", 1250, 0.40)
        loser = ledger.open_or_increase(session, beta, "m1", "NO", 100, 0.60)

        won = ledger.settle(session, winner, "yes")
        lost = ledger.settle(session, loser, "YES")

        assert won.payout == pytest.approx(1250)
        assert won.realized_pnl == pytest.approx(750)
        assert won.actual_outcome == 1
        assert lost.payout == 0
        assert lost.realized_pnl == pytest.approx(-60)
        assert winner.status == PositionStatus.SETTLED

        # Settling twice is a no-op
        assert ledger.settle(session, winner, "YES") is None

    assert get_row(database, Agent, alpha).cash_balance == pytest.approx(10000 + 1250)
    assert get_row(database, Agent, beta).cash_balance == pytest.approx(10000)


def test_refund_returns_cost_basis(database, ledger, alpha, make_market):
    make_market("m1")
    with database.session() as session:
        position = ledger.open_or_increase(session, alpha, "m1", "YES", 1250, 0.40)
        assert ledger.refund(session, position) == pytest.approx(500)
        assert position.status == PositionStatus.SETTLED
        assert ledger.refund(session, position) is None

    assert get_row(database, Agent, alpha).cash_balance == pytest.approx(10500)


def test_invested_capital_counts_open_positions(database, ledger, alpha, make_market):
    make_market("m1")
    make_market("m2")
    with database.session() as session:
        ledger.open_or_increase(session, alpha, "m1", "YES", 1000, 0.30)
        closed = ledger.open_or_increase(session, alpha, "m2", "YES", 100, 0.50)
        ledger.reduce_or_close(closed, 100, 0.50)
        assert ledger.invested_capital(session, alpha) == pytest.approx(300)


def test_side_lookup_for_multi_outcome_market():
    market = Market(
        id="election",
        question="Who wins?",
        market_type=MarketType.MULTI_OUTCOME,
        outcomes=["Alice", "Bob"],
        current_prices={"Alice": 0.55, "Bob": 0.45},
    )
    assert normalize_side(market, "alice") == "Alice"
    assert normalize_side(market, "Carol") is None
    assert side_price(market, "BOB") == pytest.approx(0.45)
    with pytest.raises(PriceUnavailable):
        side_price(market, "Carol")


def test_binary_side_validation():
    market = Market(id="m", question="?", market_type=MarketType.BINARY, current_price=0.3)
    assert normalize_side(market, " yes ") == "YES"
    assert normalize_side(market, "maybe") is None
    assert resolve_side_price(market, "NO") == (pytest.approx(0.7), False)

    market.current_price = 1.7
    assert resolve_side_price(market, "YES") == (0.5, True)
