#!/usr/bin/env python3
"""
Rule Sweep — evaluate automation rules once, for cron-driven deployments.

Usage:
    # Every minute from cron:
    * * * * * cd /srv/notifypace && python scripts/run_sweep.py

    # Submit and deliver in this process (waits for the queues to drain):
    python scripts/run_sweep.py --drain

    # Alternate config file:
    python scripts/run_sweep.py --config /etc/notifypace/settings.yaml
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def run_sweep(config_path: str = None, drain: bool = False) -> int:
    from dotenv import load_dotenv
    load_dotenv()

    from config.settings import load_settings
    settings = load_settings(config_path)

    from api.components import build_components
    components = build_components(settings)
    pipeline = components["pipeline"]

    await components["store"].connect()
    try:
        report = await components["evaluator"].sweep()
        print(f"Rules: {report.rules_total}  executed: {report.rules_matched}  "
              f"submitted: {report.submitted}  rejected: {report.rejected}  errors: {report.errors}")
        for rule_id, reason in sorted(report.skipped.items()):
            print(f"  skipped {rule_id}: {reason}")

        if drain and report.submitted:
            print("Draining queues...")
            await pipeline.wait_until_idle()
    finally:
        await pipeline.shutdown()
        await components["adapter"].shutdown()
        await components["entities"].close()
        await components["store"].close()

    return 1 if report.errors else 0


def main():
    parser = argparse.ArgumentParser(description="Run one automation rule sweep")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    parser.add_argument("--drain", action="store_true", help="Deliver submitted messages before exiting")
    args = parser.parse_args()
    sys.exit(asyncio.run(run_sweep(args.config, drain=args.drain)))


if __name__ == "__main__":
    main()
