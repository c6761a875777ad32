#!/usr/bin/env python3
"""
Rank a CSV symbol universe by weighted factor criteria.

**Criteria syntax**: comma-separated `name:weight[:min[:max]]` items.
Leave min empty to set only a max, e.g. `rsi_14:1::40`.
Append `:low` to rank lower values first regardless of the factor default.

**Usage**:
    From project root:
    ```bash
    python actions/screen_universe.py --criteria momentum_60d:0.6,volatility_60d:0.4
    python actions/screen_universe.py --criteria rsi_14:1::40 --as-of 2023-06-30 --limit 5
    python actions/screen_universe.py --strategy quality
    ```

**Exit codes**:
  - 0: Screen ran (possibly with zero results).
  - 2: Bad criteria, symbols or limit.
"""

import argparse
import sys
from datetime import datetime, timezone
from pathlib import Path

# Ensure project root is on path for imports
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from factorlab.config.settings import get_settings
from factorlab.orchestration.service import EngineService
from factorlab.utils.errors import ConfigurationError, ValidationError
from factorlab.utils.logging_setup import configure_logging
from factorlab.utils.time import FrozenClock, RealClock
from factorlab.venues.csv_data_provider import CsvDataProvider


def parse_criteria(text: str) -> list:
    """
    Parse `name:weight[:min[:max[:low]]]` items into criterion mappings.

    Raises:
        ValidationError: If an item is malformed.
    """
    criteria = []
    for item in text.split(","):
        item = item.strip()
        if not item:
            continue
        parts = item.split(":")
        if len(parts) > 5:
            raise ValidationError(f"Malformed criterion '{item}'")
        try:
            criterion = {
                "name": parts[0],
                "weight": float(parts[1]) if len(parts) > 1 and parts[1] else 1.0,
                "min": float(parts[2]) if len(parts) > 2 and parts[2] else None,
                "max": float(parts[3]) if len(parts) > 3 and parts[3] else None,
            }
        except ValueError as e:
            raise ValidationError(f"Malformed criterion '{item}': {e}") from e
        if len(parts) > 4:
            if parts[4] != "low":
                raise ValidationError(f"Malformed criterion '{item}': expected ':low' suffix")
            criterion["higher_is_better"] = False
        criteria.append(criterion)
    return criteria


def main():
    parser = argparse.ArgumentParser(
        description="Rank symbols by weighted factor criteria",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--criteria", type=str, help="Criteria, e.g. momentum_60d:0.6,volatility_60d:0.4")
    source.add_argument("--strategy", type=str, help="Use a registered strategy's criteria.")
    parser.add_argument("--symbols", type=str, default=None, help="Comma-separated universe. Default: all CSVs.")
    parser.add_argument("--limit", type=int, default=20, help="Maximum results (1-100). Default: 20.")
    parser.add_argument("--as-of", type=str, default=None, help="Screen as of this date. Default: now.")
    parser.add_argument("--data-dir", type=str, default=None, help="CSV data root. Default: FACTORLAB_DATA_DIR.")
    args = parser.parse_args()

    try:
        settings = get_settings()
    except ConfigurationError as e:
        print(f"ERROR: {e}")
        sys.exit(2)
    configure_logging(settings.log_level)

    if args.as_of:
        try:
            as_of = datetime.strptime(args.as_of, "%Y-%m-%d").replace(tzinfo=timezone.utc)
        except ValueError:
            print(f"ERROR: Invalid --as-of date: {args.as_of}. Expected YYYY-MM-DD.")
            sys.exit(2)
        clock = FrozenClock(as_of)
    else:
        clock = RealClock()

    provider = CsvDataProvider(Path(args.data_dir) if args.data_dir else settings.data_dir)
    symbols = [s.strip() for s in args.symbols.split(",") if s.strip()] if args.symbols else None

    with EngineService(provider, settings=settings, clock=clock) as service:
        try:
            if args.strategy:
                criteria = list(service.registry.get(args.strategy).criteria)
            else:
                criteria = parse_criteria(args.criteria)
            results = service.screen(criteria, symbols=symbols, limit=args.limit)
        except (ValidationError, ConfigurationError) as e:
            print(f"ERROR ({e.code}): {e.message}")
            sys.exit(2)

    print("=" * 60)
    print(f"{'Rank':>4}  {'Symbol':<10} {'Score':>8}")
    print("-" * 60)
    for row in results:
        print(f"{row.rank:>4}  {row.symbol:<10} {row.score:>8.4f}")
    print("=" * 60)
    print(f"{len(results)} result(s)")
    sys.exit(0)


if __name__ == "__main__":
    main()
