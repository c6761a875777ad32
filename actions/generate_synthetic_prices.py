#!/usr/bin/env python3
"""
Generate seeded synthetic daily price CSVs under data/raw/.

**Purpose**: Lets the backtest and screening scripts run end to end without
any market-data vendor. Each symbol gets its own seed (base seed + position
in the list), so the same command always writes the same files.

**Models**:
  - gbm: geometric Brownian motion (trending, drift + volatility).
  - ou:  Ornstein-Uhlenbeck on log price (mean-reverting around the start).

**Usage**:
    From project root:
    ```bash
    python actions/generate_synthetic_prices.py --symbols AAA,BBB,CCC --bars 756
    python actions/generate_synthetic_prices.py --model ou --seed 7 --output-dir /tmp/raw
    ```

**Exit codes**:
  - 0: All files written.
  - 2: Bad arguments.
"""

import argparse
import sys
from pathlib import Path

# Ensure project root is on path for imports
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from factorlab.analytics.synthetic_data import (
    generate_gbm_closes,
    generate_ou_closes,
    price_frame_from_closes,
)
from factorlab.config.settings import get_settings
from factorlab.data.io import write_price_csv
from factorlab.utils.errors import ConfigurationError
from factorlab.utils.logging_setup import configure_logging

DEFAULT_SYMBOLS = ["AAA", "BBB", "CCC", "DDD", "EEE"]


def main():
    parser = argparse.ArgumentParser(
        description="Write seeded synthetic OHLCV CSVs for backtesting and screening",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--symbols",
        type=str,
        default=",".join(DEFAULT_SYMBOLS),
        help=f"Comma-separated symbols. Default: {','.join(DEFAULT_SYMBOLS)}",
    )
    parser.add_argument("--model", choices=["gbm", "ou"], default="gbm", help="Price model. Default: gbm.")
    parser.add_argument("--bars", type=int, default=756, help="Bars per symbol. Default: 756 (~3 years).")
    parser.add_argument("--start", type=str, default="2021-01-04", help="First bar date. Default: 2021-01-04.")
    parser.add_argument("--seed", type=int, default=42, help="Base random seed. Default: 42.")
    parser.add_argument("--initial-price", type=float, default=100.0, help="Starting price. Default: 100.")
    parser.add_argument("--drift", type=float, default=0.08, help="Annual drift (gbm). Default: 0.08.")
    parser.add_argument("--volatility", type=float, default=0.25, help="Annual volatility. Default: 0.25.")
    parser.add_argument(
        "--output-dir",
        type=str,
        default=None,
        help="Destination directory. Default: <FACTORLAB_DATA_DIR>/raw.",
    )
    args = parser.parse_args()

    try:
        settings = get_settings()
    except ConfigurationError as e:
        print(f"ERROR: {e}")
        sys.exit(2)
    configure_logging(settings.log_level)

    symbols = [s.strip().upper() for s in args.symbols.split(",") if s.strip()]
    if not symbols:
        print("ERROR: No symbols specified.")
        sys.exit(2)
    if args.bars < 2:
        print(f"ERROR: --bars must be at least 2, got {args.bars}.")
        sys.exit(2)

    output_dir = Path(args.output_dir) if args.output_dir else settings.data_dir / "raw"

    print("=" * 60)
    print("Synthetic Price Generation")
    print("=" * 60)
    print(f"Model: {args.model}  Bars: {args.bars}  Start: {args.start}  Seed: {args.seed}")
    print(f"Output directory: {output_dir.absolute()}")
    print("=" * 60)

    for offset, symbol in enumerate(symbols):
        seed = args.seed + offset
        if args.model == "gbm":
            closes = generate_gbm_closes(
                initial_price=args.initial_price,
                drift=args.drift,
                volatility=args.volatility,
                n_steps=args.bars - 1,
                seed=seed,
            )
        else:
            closes = generate_ou_closes(
                initial_price=args.initial_price,
                long_term_mean=args.initial_price,
                mean_reversion_speed=5.0,
                volatility=args.volatility,
                n_steps=args.bars - 1,
                seed=seed,
            )
        frame = price_frame_from_closes(closes, start=args.start)
        path = write_price_csv(frame, output_dir / f"{symbol}.csv")
        print(f"[{symbol}] {len(frame)} bars, last close {frame['closing_price'].iloc[-1]:.2f} -> {path}")

    print("=" * 60)
    print(f"Wrote {len(symbols)} files")
    sys.exit(0)


if __name__ == "__main__":
    main()
