"""
Tests for the portfolio simulator.

This module tests:
  - Whole-share affordability with commission.
  - Buy/sell accounting: average cost, realized P&L, holding period.
  - Costs: commission floor and slippage.
  - Rebalancing toward a target allocation.
  - The cash / quantity invariant.
"""

import pandas as pd
import pytest

from factorlab.execution.paper_broker import (
    Order,
    OrderSide,
    Portfolio,
    PortfolioSimulator,
    Position,
)
from factorlab.strategies.base import TargetAllocation
from factorlab.utils.errors import InternalInvariantError

DAY_1 = pd.Timestamp("2024-01-02")
DAY_2 = pd.Timestamp("2024-01-12")


# ============================================================================
# Single orders
# ============================================================================

def test_max_affordable_quantity_includes_commission():
    """
    Scenario: $100,000 cash, price $100, 10 bps commission.

    Expected: 999 shares (1000 shares would need $100,100).
    """
    simulator = PortfolioSimulator(commission_rate=0.001)

    assert simulator.max_affordable_quantity(100000.0, 100.0) == 999
    assert simulator.max_affordable_quantity(0.0, 100.0) == 0


def test_buy_debits_notional_and_commission():
    simulator = PortfolioSimulator(commission_rate=0.001)
    portfolio = Portfolio.create(100000.0)

    trade = simulator.execute_order(portfolio, Order("AAA", OrderSide.BUY, 5000, 100.0, DAY_1))

    assert trade.quantity == 999
    assert trade.commission == pytest.approx(99.9)
    assert portfolio.cash == pytest.approx(0.1)
    assert portfolio.quantity("AAA") == 999
    assert trade.trade_id == "T000001"


def test_average_cost_after_two_buys():
    simulator = PortfolioSimulator(commission_rate=0.0)
    portfolio = Portfolio.create(100000.0)

    simulator.execute_order(portfolio, Order("AAA", OrderSide.BUY, 10, 100.0, DAY_1))
    second = simulator.execute_order(portfolio, Order("AAA", OrderSide.BUY, 10, 200.0, DAY_1))

    assert portfolio.positions["AAA"].average_cost == pytest.approx(150.0)
    assert portfolio.positions["AAA"].quantity == 20
    assert second.trade_id == "T000002"


def test_sell_realizes_pnl_and_holding_period():
    """
    Scenario: Buy 10 @ 100, sell 10 @ 110 ten days later, 10 bps commission.

    Expected: realized = (110 - 100) * 10 - 1.10 = 98.90; holding 10 days;
              position removed.
    """
    simulator = PortfolioSimulator(commission_rate=0.001)
    portfolio = Portfolio.create(10000.0)

    simulator.execute_order(portfolio, Order("AAA", OrderSide.BUY, 10, 100.0, DAY_1))
    trade = simulator.execute_order(portfolio, Order("AAA", OrderSide.SELL, 10, 110.0, DAY_2))

    assert trade.realized_pnl == pytest.approx(98.9)
    assert trade.holding_period_days == 10
    assert "AAA" not in portfolio.positions
    assert portfolio.cash == pytest.approx(10000.0 - 1001.0 + 1100.0 - 1.1)


def test_sell_is_clamped_and_unheld_sell_rejected():
    simulator = PortfolioSimulator(commission_rate=0.0)
    portfolio = Portfolio.create(10000.0)
    simulator.execute_order(portfolio, Order("AAA", OrderSide.BUY, 10, 100.0, DAY_1))

    clamped = simulator.execute_order(portfolio, Order("AAA", OrderSide.SELL, 25, 100.0, DAY_2))
    rejected = simulator.execute_order(portfolio, Order("BBB", OrderSide.SELL, 5, 100.0, DAY_2))

    assert clamped.quantity == 10
    assert rejected is None
    assert portfolio.cash == pytest.approx(10000.0)


def test_commission_floor_and_slippage():
    simulator = PortfolioSimulator(commission_rate=0.001, minimum_commission=5.0, slippage_bps=10.0)
    portfolio = Portfolio.create(10000.0)

    buy = simulator.execute_order(portfolio, Order("AAA", OrderSide.BUY, 10, 100.0, DAY_1))
    sell = simulator.execute_order(portfolio, Order("AAA", OrderSide.SELL, 10, 100.0, DAY_2))

    assert buy.filled_price == pytest.approx(100.1)
    assert sell.filled_price == pytest.approx(99.9)
    assert buy.commission == pytest.approx(5.0)
    assert sell.commission == pytest.approx(5.0)


def test_commission_ceiling_caps_large_trades():
    """
    Scenario: 1% commission, $1 floor, $10 ceiling.

    Expected: small trades pay the floor, large trades pay the ceiling, and
    affordability uses the capped commission (999 shares of $100 from
    $100,000 instead of 990).
    """
    simulator = PortfolioSimulator(commission_rate=0.01, minimum_commission=1.0, maximum_commission=10.0)
    portfolio = Portfolio.create(100000.0)

    assert simulator.compute_commission(50.0) == pytest.approx(1.0)
    assert simulator.compute_commission(500.0) == pytest.approx(5.0)
    assert simulator.compute_commission(100000.0) == pytest.approx(10.0)
    assert simulator.max_affordable_quantity(100000.0, 100.0) == 999
    assert PortfolioSimulator(commission_rate=0.01).max_affordable_quantity(100000.0, 100.0) == 990

    trade = simulator.execute_order(portfolio, Order("AAA", OrderSide.BUY, 5000, 100.0, DAY_1))

    assert trade.quantity == 999
    assert trade.commission == pytest.approx(10.0)
    assert portfolio.cash == pytest.approx(90.0)


def test_invalid_orders_and_costs():
    with pytest.raises(ValueError):
        Order("AAA", OrderSide.BUY, 0, 100.0, DAY_1)
    with pytest.raises(ValueError):
        Order("AAA", OrderSide.BUY, 1, -1.0, DAY_1)
    with pytest.raises(ValueError):
        PortfolioSimulator(commission_rate=-0.01)
    with pytest.raises(ValueError):
        PortfolioSimulator(minimum_commission=5.0, maximum_commission=1.0)
    with pytest.raises(ValueError):
        Portfolio.create(0.0)


def test_negative_cash_raises_invariant_error():
    """A fill that leaves cash below zero is a bug, surfaced as InternalInvariantError."""
    simulator = PortfolioSimulator(commission_rate=0.001)
    portfolio = Portfolio(
        cash=-1000.0,
        positions={"AAA": Position("AAA", quantity=5, average_cost=10.0, last_price=10.0)},
    )

    with pytest.raises(InternalInvariantError) as exc_info:
        simulator.execute_order(portfolio, Order("AAA", OrderSide.SELL, 1, 10.0, DAY_1))
    assert exc_info.value.code == "internal_invariant"


# ============================================================================
# Rebalancing
# ============================================================================

def test_rebalance_to_equal_weights():
    """
    Scenario: $100,000, no commission, target 50/50 in A ($100) and B ($50).

    Expected: 500 A, 1000 B, no cash left; buys follow ranking order.
    """
    simulator = PortfolioSimulator(commission_rate=0.0)
    portfolio = Portfolio.create(100000.0)
    target = TargetAllocation(weights={"A": 0.5, "B": 0.5}, ranking=["A", "B"])

    outcome = simulator.rebalance(portfolio, target, {"A": 100.0, "B": 50.0}, DAY_1)

    assert portfolio.quantity("A") == 500
    assert portfolio.quantity("B") == 1000
    assert portfolio.cash == pytest.approx(0.0)
    assert [t.symbol for t in outcome.trades] == ["A", "B"]
    assert portfolio.weights() == {"A": pytest.approx(0.5), "B": pytest.approx(0.5)}


def test_rebalance_conserves_value_net_of_commission():
    simulator = PortfolioSimulator(commission_rate=0.001)
    portfolio = Portfolio.create(100000.0)
    prices = {"A": 37.0, "B": 91.0, "C": 13.0}
    target = TargetAllocation(weights={"A": 0.3, "B": 0.3, "C": 0.3}, ranking=["A", "B", "C"])

    outcome = simulator.rebalance(portfolio, target, prices, DAY_1)

    assert portfolio.cash >= 0
    assert portfolio.total_value == pytest.approx(100000.0 - outcome.commission)


def test_rotation_conserves_cash_across_sells_and_buys():
    """
    Scenario: Hold A/B 50/50, then rotate into B/C at new prices with
    commission, a commission floor and slippage.

    Expected: cash_after + bought = cash_before + sold - commission.
    """
    simulator = PortfolioSimulator(commission_rate=0.001, minimum_commission=1.0, slippage_bps=5.0)
    portfolio = Portfolio.create(100000.0)
    simulator.rebalance(
        portfolio, TargetAllocation({"A": 0.5, "B": 0.5}, ["A", "B"]), {"A": 40.0, "B": 80.0}, DAY_1,
    )

    outcome = simulator.rebalance(
        portfolio,
        TargetAllocation({"B": 0.3, "C": 0.6}, ["C", "B"]),
        {"A": 44.0, "B": 76.0, "C": 23.0},
        DAY_2,
    )

    sold = sum(t.notional for t in outcome.trades if t.side == OrderSide.SELL)
    bought = sum(t.notional for t in outcome.trades if t.side == OrderSide.BUY)
    assert sold > 0 and bought > 0
    assert outcome.cash_after + bought == pytest.approx(
        outcome.cash_before + sold - outcome.commission, abs=1e-6,
    )
    assert outcome.cash_after == pytest.approx(portfolio.cash)
    assert portfolio.cash >= 0
    assert portfolio.quantity("A") == 0


def test_rebalance_sells_before_buying():
    simulator = PortfolioSimulator(commission_rate=0.0)
    portfolio = Portfolio.create(10000.0)
    simulator.rebalance(portfolio, TargetAllocation({"A": 1.0}, ["A"]), {"A": 100.0}, DAY_1)

    outcome = simulator.rebalance(
        portfolio, TargetAllocation({"B": 1.0}, ["B"]), {"A": 100.0, "B": 50.0}, DAY_2,
    )

    assert [t.side for t in outcome.trades] == [OrderSide.SELL, OrderSide.BUY]
    assert portfolio.quantity("A") == 0
    assert portfolio.quantity("B") == 200


def test_symbol_without_price_is_left_untouched():
    simulator = PortfolioSimulator(commission_rate=0.0)
    portfolio = Portfolio.create(10000.0)
    simulator.rebalance(portfolio, TargetAllocation({"A": 0.5}, ["A"]), {"A": 100.0}, DAY_1)

    outcome = simulator.close_all(portfolio, {"B": 20.0}, DAY_2)

    assert outcome.trades == []
    assert portfolio.quantity("A") == 50


def test_close_all_liquidates():
    simulator = PortfolioSimulator(commission_rate=0.0)
    portfolio = Portfolio.create(10000.0)
    simulator.rebalance(portfolio, TargetAllocation({"A": 1.0}, ["A"]), {"A": 100.0}, DAY_1)

    simulator.close_all(portfolio, {"A": 120.0}, DAY_2)

    assert portfolio.positions == {}
    assert portfolio.cash == pytest.approx(12000.0)
