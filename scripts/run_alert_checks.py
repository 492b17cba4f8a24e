#!/usr/bin/env python3
"""
Run one alert evaluation pass (for cron or other external schedulers).

Usage:
    python scripts/run_alert_checks.py --frequency daily
    python scripts/run_alert_checks.py            # all active rules

Exit status is 1 if any rule or player failed to evaluate.
"""

import asyncio
import sys
import argparse
import logging
from pathlib import Path

# Add the apps directory to the path so we can import huddle modules
apps_dir = Path(__file__).parent.parent / "apps"
sys.path.insert(0, str(apps_dir))

from huddle.database.models import CheckFrequency
from huddle.services.alert_evaluation_service import get_alert_engine

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")


async def run_checks(frequency: str = None) -> dict:
    """Run a pass and print a short report."""
    engine = get_alert_engine()
    summary = await engine.run_pass(check_frequency=frequency)

    print(f"Evaluated {summary['rules_evaluated']} rules over {summary['units_evaluated']} player checks")
    print(f"   Alerts created:  {len(summary['alerts_created'])}")
    print(f"   Alerts resolved: {len(summary['alerts_resolved'])}")
    print(f"   Deduplicated:    {summary['deduplicated']}")
    print(f"   Skipped:         {len(summary['skipped'])}")
    for invalid in summary["invalid_rules"]:
        print(f"   Invalid rule {invalid['rule_id']} ({invalid['name']}): {invalid['error']}")
    for error in summary["errors"]:
        print(f"   Error in rule {error['rule_id']} for player {error['player_id']}: {error['error']}")
    return summary


async def main():
    parser = argparse.ArgumentParser(description="Evaluate active alert rules against player metrics")
    parser.add_argument(
        "--frequency",
        type=str,
        help="Only evaluate rules with this check frequency",
        choices=[f.value for f in CheckFrequency],
        default=None,
    )
    args = parser.parse_args()

    summary = await run_checks(args.frequency)
    if summary["errors"]:
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
