"""
factorlab – Main entry point.

Prints the registered strategies and the active engine settings, as a quick
check that the package imports and the environment is configured.
"""

from factorlab.config.settings import get_settings
from factorlab.strategies.registry import StrategyRegistry
from factorlab.utils.logging_setup import configure_logging


def main() -> None:
    """Print settings and the strategy catalogue."""
    settings = get_settings()
    configure_logging(settings.log_level)

    print("factorlab engine")
    print(f"  data dir:        {settings.data_dir}")
    print(f"  fill timing:     {settings.fill_timing}")
    print(f"  commission rate: {settings.commission_rate}")
    print(f"  max concurrent:  {settings.max_concurrent_runs}")
    print()
    print("Strategies:")
    for entry in StrategyRegistry().describe():
        names = ", ".join(c["name"] for c in entry["criteria"]) or "(no criteria)"
        print(f"  {entry['id']:<16} {entry['description']}")
        print(f"  {'':<16} factors: {names}")


if __name__ == "__main__":
    main()
