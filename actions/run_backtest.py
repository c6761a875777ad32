#!/usr/bin/env python3
"""
Run a factor strategy backtest and save the results.

**Purpose**: This script shows how the pieces fit together:
  1. Load settings (FACTORLAB_* variables, .env).
  2. Build a data provider: CSVs under data/raw/, or seeded synthetic data.
  3. Run the backtest through EngineService.
  4. Print the metrics and optionally write the result JSON and equity CSV.

**Usage**:
    From project root:
    ```bash
    python actions/run_backtest.py --strategy momentum --symbols AAA,BBB,CCC \
        --start 2022-01-03 --end 2023-12-29
    python actions/run_backtest.py --strategy low_volatility --synthetic 8 \
        --start 2022-01-03 --end 2023-12-29 --frequency weekly --sizing kelly
    python actions/run_backtest.py --strategy momentum --symbols AAA,BBB \
        --start 2022-01-03 --end 2023-12-29 --output-dir data/results
    ```

**Exit codes**:
  - 0: Backtest completed.
  - 1: Backtest ran but FAILED (timeout, no data, invariant violation, ...).
  - 2: Input or configuration rejected before running.
"""

import argparse
import sys
from pathlib import Path

import pandas as pd

# Ensure project root is on path for imports
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from factorlab.analytics.synthetic_data import generate_gbm_closes, price_frame_from_closes
from factorlab.config.settings import get_settings
from factorlab.data.io import write_backtest_result_json, write_equity_curve_csv
from factorlab.orchestration.service import EngineService
from factorlab.utils.errors import ConfigurationError, ValidationError
from factorlab.utils.logging_setup import configure_logging
from factorlab.venues.csv_data_provider import CsvDataProvider
from factorlab.venues.in_memory_data_provider import InMemoryDataProvider


def build_synthetic_provider(count: int, start: str, end: str, seed: int) -> tuple:
    """
    Seeded GBM universe covering [start - 2 years, end].

    Drifts are spread from -10% to +20% so the universe has clear winners
    and losers for the strategies to find.
    """
    first = pd.Timestamp(start) - pd.Timedelta(days=730)
    timestamps = pd.bdate_range(first, pd.Timestamp(end))
    bars = {}
    for i in range(count):
        symbol = f"SYN{i:02d}"
        drift = -0.10 + 0.30 * i / max(count - 1, 1)
        closes = generate_gbm_closes(
            initial_price=100.0,
            drift=drift,
            volatility=0.15 + 0.05 * (i % 4),
            n_steps=len(timestamps) - 1,
            seed=seed + i,
        )
        bars[symbol] = price_frame_from_closes(closes, start=timestamps[0])
    return InMemoryDataProvider(bars), sorted(bars)


def print_metrics(result) -> None:
    metrics = result.metrics
    print(f"Status:            {result.status.value}")
    if result.failure_reason:
        print(f"Failure:           {result.failure_reason}: {result.failure_message}")
    print(f"Result id:         {result.id}")
    print(f"Bars:              {len(result.equity_curve)}")
    print(f"Rebalances:        {result.rebalance_count} (skipped {result.skipped_rebalances})")
    print(f"Final equity:      {metrics.final_equity:,.2f}")
    print(f"Total return:      {metrics.total_return:.2f}%")
    print(f"CAGR:              {metrics.cagr:.2f}%")
    print(f"Volatility:        {metrics.volatility:.2f}%")
    print(f"Sharpe ratio:      {metrics.sharpe_ratio:.3f}")
    print(f"Sortino ratio:     {metrics.sortino_ratio:.3f}")
    print(f"Max drawdown:      {metrics.max_drawdown:.2f}% ({metrics.max_drawdown_duration} bars)")
    print(f"Calmar ratio:      {metrics.calmar_ratio:.3f}")
    print(f"Trades:            {metrics.total_trades}")
    print(f"Win rate:          {metrics.win_rate:.1f}% ({metrics.winning_trades}W/{metrics.losing_trades}L)")
    print(f"Profit factor:     {metrics.profit_factor:.3f}")
    if metrics.unavailable:
        print(f"Unavailable:       {', '.join(metrics.unavailable)}")
    if result.benchmark is not None:
        benchmark = result.benchmark
        print(f"Benchmark return:  {benchmark.benchmark_return:.2f}% (excess {benchmark.excess_return:.2f}%)")
        print(f"Beta / alpha:      {benchmark.beta:.3f} / {benchmark.alpha:.2f}%")
        print(f"Correlation:       {benchmark.correlation:.3f}")
        print(f"Tracking error:    {benchmark.tracking_error:.2f}%")


def main():
    parser = argparse.ArgumentParser(
        description="Run a factor strategy backtest",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--strategy", type=str, default="momentum", help="Strategy id. Default: momentum.")
    parser.add_argument("--symbols", type=str, default=None, help="Comma-separated symbols. Default: all CSVs.")
    parser.add_argument("--start", type=str, required=True, help="Start date (YYYY-MM-DD).")
    parser.add_argument("--end", type=str, required=True, help="End date (YYYY-MM-DD).")
    parser.add_argument("--capital", type=float, default=100000.0, help="Initial capital. Default: 100000.")
    parser.add_argument("--max-positions", type=int, default=None, help="Maximum holdings. Default: 10.")
    parser.add_argument(
        "--max-position-percent",
        type=float,
        default=None,
        help="Cap on any one holding, percent of equity. Default: none.",
    )
    parser.add_argument("--benchmark", type=str, default=None, help="Symbol to compare the equity curve against.")
    parser.add_argument(
        "--sizing",
        choices=["equal_weight", "percent", "fixed", "kelly"],
        default=None,
        help="Position sizing. Default: equal_weight.",
    )
    parser.add_argument(
        "--frequency",
        choices=["daily", "weekly", "monthly", "quarterly", "never"],
        default=None,
        help="Rebalance frequency. Default: monthly.",
    )
    parser.add_argument("--data-dir", type=str, default=None, help="CSV data root. Default: FACTORLAB_DATA_DIR.")
    parser.add_argument(
        "--synthetic",
        type=int,
        default=0,
        metavar="N",
        help="Use N seeded synthetic symbols instead of CSV data.",
    )
    parser.add_argument("--seed", type=int, default=42, help="Seed for --synthetic. Default: 42.")
    parser.add_argument(
        "--output-dir",
        type=str,
        default=None,
        help="Write <id>.json and <id>_equity.csv here.",
    )
    args = parser.parse_args()

    try:
        settings = get_settings()
    except ConfigurationError as e:
        print(f"ERROR: {e}")
        sys.exit(2)
    configure_logging(settings.log_level)

    if args.synthetic > 0:
        provider, default_symbols = build_synthetic_provider(args.synthetic, args.start, args.end, args.seed)
    else:
        data_dir = Path(args.data_dir) if args.data_dir else settings.data_dir
        provider = CsvDataProvider(data_dir)
        default_symbols = provider.list_symbols()

    symbols = (
        [s.strip() for s in args.symbols.split(",") if s.strip()]
        if args.symbols else default_symbols
    )

    config = {
        "max_positions": args.max_positions,
        "position_sizing": args.sizing,
        "rebalance_frequency": args.frequency,
        "max_position_percent": args.max_position_percent,
    }

    print("=" * 60)
    print(f"Backtest: {args.strategy}  {args.start} -> {args.end}")
    print(f"Universe: {', '.join(symbols) if symbols else '(empty)'}")
    print("=" * 60)

    with EngineService(provider, settings=settings) as service:
        try:
            result = service.run_backtest(
                args.strategy, symbols, args.start, args.end,
                initial_capital=args.capital, config=config, benchmark_symbol=args.benchmark,
            )
        except (ValidationError, ConfigurationError) as e:
            print(f"ERROR ({e.code}): {e.message}")
            sys.exit(2)

    print_metrics(result)

    if args.output_dir:
        output_dir = Path(args.output_dir)
        json_path = write_backtest_result_json(result, output_dir / f"{result.id[:16]}.json")
        csv_path = write_equity_curve_csv(result, output_dir / f"{result.id[:16]}_equity.csv")
        print(f"\nSaved {json_path}")
        print(f"Saved {csv_path}")

    sys.exit(0 if result.succeeded else 1)


if __name__ == "__main__":
    main()
