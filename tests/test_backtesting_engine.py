"""
Tests for the backtest runner.

This module tests:
  - Fill timing (next_open vs close) on a hand-checkable flat market.
  - A momentum rotation between two synthetic symbols.
  - Determinism of results and ids.
  - Failure modes: validation, configuration, missing data, ceilings,
    cancellation, unexpected evaluator errors.
  - Skipped rebalances when a held symbol has no bar.
  - Next-open fills that wait for every targeted symbol to have an open.
  - Benchmark comparison and the commission ceiling wired through a run.
"""

import itertools
from types import SimpleNamespace

import numpy as np
import pandas as pd
import pytest

from factorlab.analytics.synthetic_data import price_frame_from_closes
from factorlab.backtesting.engine import BacktestParams, BacktestRunner, RunStatus
from factorlab.config.settings import EngineSettings
from factorlab.data.io import read_backtest_result_json, write_backtest_result_json, write_equity_curve_csv
from factorlab.execution.paper_broker import OrderSide
from factorlab.strategies.base import (
    FactorCriterion,
    StrategyConfig,
    StrategyDefinition,
    TargetAllocation,
)
from factorlab.strategies.registry import StrategyRegistry
from factorlab.utils.errors import ConfigurationError
from factorlab.venues.in_memory_data_provider import InMemoryDataProvider


# ============================================================================
# Helper functions for test data generation
# ============================================================================

def flat_provider(n_bars: int = 10, price: float = 100.0) -> InMemoryDataProvider:
    return InMemoryDataProvider({"AAPL": price_frame_from_closes(np.full(n_bars, price), start="2024-01-02")})


def flat_params(**overrides) -> BacktestParams:
    kwargs = dict(
        strategy_id="equal_weight",
        symbols=("AAPL",),
        start_date="2024-01-02",
        end_date="2024-01-15",
        initial_capital=100000.0,
    )
    kwargs.update(overrides)
    return BacktestParams(**kwargs)


def rotation_frames():
    """
    Two symbols over 120 business days.

    A is flat at 100 for 60 bars, then doubles over the next 60.
    B climbs 30% over the first 60 bars, then halves over the next 60.
    """
    i = np.arange(120)
    a = np.where(i < 60, 100.0, 100.0 * 2.0 ** ((i - 59) / 60.0))
    b = np.where(i < 60, 100.0 * 1.3 ** (i / 59.0), 130.0 * 0.5 ** ((i - 59) / 60.0))
    return {
        "A": price_frame_from_closes(a, start="2023-01-02"),
        "B": price_frame_from_closes(b, start="2023-01-02"),
    }


class CountingEvaluator:
    """Equal-weights everything, raising `error` on call number `fail_on`."""

    def __init__(self, fail_on: int, error: Exception):
        self.fail_on = fail_on
        self.error = error
        self.calls = 0

    def evaluate(self, snapshots, config, total_equity, criteria):
        self.calls += 1
        if self.calls == self.fail_on:
            raise self.error
        symbols = sorted(snapshots)
        return TargetAllocation(weights={s: 1.0 / len(symbols) for s in symbols}, ranking=symbols)


def registry_with(evaluator) -> StrategyRegistry:
    registry = StrategyRegistry()
    registry.register(StrategyDefinition("flaky", "Fails on demand", (), evaluator))
    return registry


# ============================================================================
# Fill timing
# ============================================================================

def test_flat_market_next_open_fill():
    """
    Scenario: AAPL flat at $100, $100,000, 10 bps commission, next_open fills.

    Expected: Bar 0 decides with nothing held (equity 100,000). Bar 1 buys
              999 shares at the open for $99,900 + $99.90 commission, leaving
              $0.10 cash. Total return and max drawdown are both ~0.0999%.
    """
    result = BacktestRunner(flat_provider()).run(flat_params())

    assert result.status == RunStatus.COMPLETED
    assert len(result.trades) == 1
    trade = result.trades[0]
    assert trade.side == OrderSide.BUY
    assert trade.quantity == 999
    assert trade.timestamp == pd.Timestamp("2024-01-03")
    assert trade.commission == pytest.approx(99.9)
    assert result.equity_curve[0].equity == pytest.approx(100000.0)
    assert result.equity_curve[1].equity == pytest.approx(99900.1)
    assert result.equity_curve[1].cash == pytest.approx(0.1)
    assert result.metrics.total_return == pytest.approx(-0.0999, abs=1e-6)
    assert result.metrics.max_drawdown == pytest.approx(0.0999, abs=1e-6)
    assert result.rebalance_count == 1


def test_close_fill_trades_on_decision_bar():
    result = BacktestRunner(flat_provider()).run(flat_params(fill_timing="close"))

    assert result.trades[0].timestamp == pd.Timestamp("2024-01-02")
    assert result.equity_curve[0].equity == pytest.approx(99900.1)


def test_single_bar_next_open_run_has_no_trades():
    """A decision on the final bar has no later open to fill at."""
    result = BacktestRunner(flat_provider()).run(flat_params(end_date="2024-01-02"))

    assert result.status == RunStatus.COMPLETED
    assert len(result.equity_curve) == 1
    assert result.trades == []
    assert result.rebalance_count == 1


def test_never_rebalance_trades_once():
    config = StrategyConfig("equal_weight", rebalance_frequency="never")
    prices = np.linspace(100.0, 120.0, 30)
    provider = InMemoryDataProvider({"AAPL": price_frame_from_closes(prices, start="2024-01-02")})

    result = BacktestRunner(provider).run(flat_params(end_date="2024-03-01", config=config))

    assert result.rebalance_count == 1
    assert len(result.trades) == 1


# ============================================================================
# Strategy behaviour
# ============================================================================

def test_momentum_rotation_sells_loser_and_buys_winner():
    """
    Scenario: Daily momentum_20d with one slot. B leads at the start; A takes
              over a few bars after B peaks.

    Expected: B is bought once and sold once at a loss; A is held at the end.
    """
    frames = rotation_frames()
    timestamps = frames["A"]['timestamp']
    config = StrategyConfig(
        "momentum", max_positions=1, rebalance_frequency="daily",
        criteria=(FactorCriterion("momentum_20d"),),
    )
    params = BacktestParams(
        strategy_id="momentum", symbols=("A", "B"),
        start_date=timestamps.iloc[59], end_date=timestamps.iloc[119], config=config,
    )

    result = BacktestRunner(InMemoryDataProvider(frames)).run(params)

    assert result.status == RunStatus.COMPLETED
    b_trades = [t for t in result.trades if t.symbol == "B"]
    assert [t.side for t in b_trades] == [OrderSide.BUY, OrderSide.SELL]
    assert b_trades[0].timestamp == timestamps.iloc[60]
    assert b_trades[1].realized_pnl < 0

    held = {}
    for trade in result.trades:
        sign = 1 if trade.side == OrderSide.BUY else -1
        held[trade.symbol] = held.get(trade.symbol, 0) + sign * trade.quantity
    assert held["B"] == 0
    assert held["A"] > 0

    stamps = [point.timestamp for point in result.equity_curve]
    assert stamps[0] == timestamps.iloc[59]
    assert all(earlier < later for earlier, later in zip(stamps, stamps[1:]))
    assert 0.0 <= result.metrics.max_drawdown <= 100.0


def test_identical_inputs_give_identical_results():
    frames = rotation_frames()
    params = BacktestParams(
        strategy_id="momentum", symbols=("B", "A"),
        start_date="2023-02-01", end_date="2023-06-15",
    )

    first = BacktestRunner(InMemoryDataProvider(frames)).run(params)
    second = BacktestRunner(InMemoryDataProvider(frames)).run(params)

    assert first.id == second.id
    assert first.to_json() == second.to_json()


def test_skipped_rebalance_when_held_symbol_has_no_bar():
    """
    Scenario: A trades every day; B has no bar on day 3. Daily close fills.

    Expected: Day 3's rebalance is skipped; the other four happen.
    """
    a = price_frame_from_closes(np.full(5, 50.0), start="2024-01-02")
    b = price_frame_from_closes(np.full(5, 20.0), start="2024-01-02").drop(index=2).reset_index(drop=True)
    config = StrategyConfig("equal_weight", rebalance_frequency="daily")
    params = BacktestParams(
        strategy_id="equal_weight", symbols=("A", "B"),
        start_date="2024-01-02", end_date="2024-01-08", config=config, fill_timing="close",
    )

    result = BacktestRunner(InMemoryDataProvider({"A": a, "B": b})).run(params)

    assert result.status == RunStatus.COMPLETED
    assert result.skipped_rebalances == 1
    assert result.rebalance_count == 4
    assert len(result.equity_curve) == 5


def two_symbol_provider(b_rows_dropped) -> InMemoryDataProvider:
    """A flat at $50 and B flat at $20 over five bars, with some B bars removed."""
    a = price_frame_from_closes(np.full(5, 50.0), start="2024-01-02")
    b = price_frame_from_closes(np.full(5, 20.0), start="2024-01-02")
    b = b.drop(index=list(b_rows_dropped)).reset_index(drop=True)
    return InMemoryDataProvider({"A": a, "B": b})


def never_rebalance_params(**overrides) -> BacktestParams:
    kwargs = dict(
        strategy_id="equal_weight", symbols=("A", "B"),
        start_date="2024-01-02", end_date="2024-01-08",
        config=StrategyConfig("equal_weight", rebalance_frequency="never"),
    )
    kwargs.update(overrides)
    return BacktestParams(**kwargs)


def test_next_open_fill_waits_for_every_targeted_open():
    """
    Scenario: Bar 0 decides 50/50 in A and B; B has no bar on bar 1, the
              day the decision would fill.

    Expected: Nothing trades on bar 1; both A and B are bought together at
              bar 2's opens, and the rebalance is not counted as skipped.
    """
    result = BacktestRunner(two_symbol_provider([1])).run(never_rebalance_params())

    assert result.status == RunStatus.COMPLETED
    assert sorted(t.symbol for t in result.trades) == ["A", "B"]
    assert {t.timestamp for t in result.trades} == {pd.Timestamp("2024-01-04")}
    assert result.rebalance_count == 1
    assert result.skipped_rebalances == 0
    assert result.equity_curve[1].cash == pytest.approx(100000.0)
    assert result.equity_curve[-1].cash < 1000.0


def test_pending_target_that_never_fills_is_skipped():
    """
    Scenario: B trades only on bar 0, so the bar-0 decision never finds an
              open for B.

    Expected: No partial fill into A alone; the run ends all cash with one
              skipped rebalance.
    """
    result = BacktestRunner(two_symbol_provider([1, 2, 3, 4])).run(never_rebalance_params())

    assert result.status == RunStatus.COMPLETED
    assert result.trades == []
    assert result.rebalance_count == 1
    assert result.skipped_rebalances == 1
    assert result.metrics.final_equity == pytest.approx(100000.0)


def test_maximum_commission_reaches_the_simulator():
    result = BacktestRunner(flat_provider()).run(
        flat_params(fill_timing="close", commission_rate=0.01, maximum_commission=1.0)
    )

    assert result.trades[0].commission == pytest.approx(1.0)
    assert result.params.to_dict()["maximumCommission"] == 1.0


def test_benchmark_comparison_is_attached_to_result():
    """
    Scenario: AAPL flat at $100; benchmark SPY rises from 100 to 109.

    Expected: A comparison over all ten bars with a 9% benchmark return.
              SPY is never traded.
    """
    provider = InMemoryDataProvider({
        "AAPL": price_frame_from_closes(np.full(10, 100.0), start="2024-01-02"),
        "SPY": price_frame_from_closes(np.linspace(100.0, 109.0, 10), start="2024-01-02"),
    })

    result = BacktestRunner(provider).run(flat_params(benchmark_symbol="SPY"))

    assert result.status == RunStatus.COMPLETED
    assert result.benchmark is not None
    assert result.benchmark.aligned_days == 10
    assert result.benchmark.benchmark_return == pytest.approx(9.0)
    assert result.benchmark.excess_return < 0
    assert {t.symbol for t in result.trades} == {"AAPL"}
    assert result.to_dict()["benchmark"]["benchmarkReturn"] == pytest.approx(9.0)


def test_missing_benchmark_leaves_comparison_empty():
    result = BacktestRunner(flat_provider()).run(flat_params(benchmark_symbol="NOPE"))

    assert result.status == RunStatus.COMPLETED
    assert result.benchmark is None


# ============================================================================
# Failure modes
# ============================================================================

@pytest.mark.parametrize("overrides, reason", [
    ({"start_date": "2024-01-15", "end_date": "2024-01-02"}, "validation_error"),
    ({"symbols": ()}, "validation_error"),
    ({"strategy_id": "astrology"}, "configuration_error"),
    ({"symbols": ("NOPE", "ZZZ")}, "data_unavailable"),
    ({"start_date": "2030-01-01", "end_date": "2030-02-01"}, "data_unavailable"),
])
def test_failed_runs_report_reason(overrides, reason):
    result = BacktestRunner(flat_provider()).run(flat_params(**overrides))

    assert result.status == RunStatus.FAILED
    assert result.failure_reason == reason
    assert result.failure_message
    assert not result.succeeded


def test_bar_ceiling_fails_with_timeout_keeping_partial_curve():
    runner = BacktestRunner(flat_provider(), settings=EngineSettings(max_bars_per_run=1))

    result = runner.run(flat_params())

    assert result.failure_reason == "timeout"
    assert len(result.equity_curve) == 1
    assert result.metrics.trading_days == 1


def test_wall_clock_ceiling_fails_with_timeout(monkeypatch):
    """
    Scenario: The monotonic clock advances 10 seconds per reading and the
              run may take 15 seconds.

    Expected: Bar 0 is checked at 10s and processed; bar 1 is checked at
              20s and the run fails with "timeout", keeping one point.
    """
    ticks = itertools.count(start=0, step=10)
    monkeypatch.setattr(
        "factorlab.backtesting.engine.time", SimpleNamespace(monotonic=lambda: float(next(ticks))),
    )
    runner = BacktestRunner(flat_provider(), settings=EngineSettings(run_timeout_seconds=15.0))

    result = runner.run(flat_params())

    assert result.status == RunStatus.FAILED
    assert result.failure_reason == "timeout"
    assert "run_timeout_seconds" in result.failure_message
    assert len(result.equity_curve) == 1


def test_cancelled_run():
    runner = BacktestRunner(flat_provider())
    runner.cancel()

    result = runner.run(flat_params())

    assert result.status == RunStatus.FAILED
    assert result.failure_reason == "cancelled"
    assert result.equity_curve == []


def test_unexpected_evaluator_error_is_internal_error():
    """
    Scenario: The evaluator raises RuntimeError on its third call (bar 2).

    Expected: FAILED with "internal_error"; bars 0 and 1 stay in the curve.
    """
    evaluator = CountingEvaluator(fail_on=3, error=RuntimeError("boom"))
    config = StrategyConfig("flaky", rebalance_frequency="daily")

    result = BacktestRunner(flat_provider(), registry=registry_with(evaluator)).run(
        flat_params(strategy_id="flaky", config=config)
    )

    assert result.failure_reason == "internal_error"
    assert "boom" in result.failure_message
    assert len(result.equity_curve) == 2


def test_engine_error_from_evaluator_keeps_its_code():
    evaluator = CountingEvaluator(fail_on=1, error=ConfigurationError("bad sizing"))

    result = BacktestRunner(flat_provider(), registry=registry_with(evaluator)).run(
        flat_params(strategy_id="flaky")
    )

    assert result.failure_reason == "configuration_error"
    assert result.failure_message == "bad sizing"


# ============================================================================
# Serialization
# ============================================================================

def test_result_json_and_equity_csv(tmp_path):
    result = BacktestRunner(flat_provider()).run(flat_params())

    json_path = write_backtest_result_json(result, tmp_path / "result.json")
    csv_path = write_equity_curve_csv(result, tmp_path / "equity.csv")
    loaded = read_backtest_result_json(json_path)
    equity = pd.read_csv(csv_path)

    assert loaded["id"] == result.id
    assert loaded["status"] == "completed"
    assert loaded["trades"][0]["id"] == "T000001"
    assert loaded["params"]["symbols"] == ["AAPL"]
    assert list(equity.columns) == ["timestamp", "equity", "cash"]
    assert len(equity) == len(result.equity_curve)
