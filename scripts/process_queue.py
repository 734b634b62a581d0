#!/usr/bin/env python3
"""
Process Queue — run one batch of due cadence schedules.

Meant for cron, as an alternative to calling the HTTP endpoint:

    */5 * * * * cd /app && python scripts/process_queue.py

Usage:
    python scripts/process_queue.py
    python scripts/process_queue.py --limit 20 --min-delay-ms 1000 --max-delay-ms 3000
    python scripts/process_queue.py --dry-run
"""
import asyncio
import json
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def run_batch(args: argparse.Namespace) -> dict:
    from dotenv import load_dotenv
    load_dotenv()

    from config.settings import load_settings
    settings = load_settings(args.config)

    from core.engine import CadenceEngine
    from database.session import close_db, init_db
    from models.schemas import ExecutionContext

    if settings.database.store_backend == "sql":
        await init_db(settings.database.url)

    engine = CadenceEngine.from_settings(settings)
    body = {
        "limit": args.limit,
        "minDelayMs": args.min_delay_ms,
        "maxDelayMs": args.max_delay_ms,
        "dryRun": args.dry_run,
    }
    ctx = ExecutionContext(token=os.environ.get("CADENCE_SERVICE_TOKEN", ""))
    try:
        report = await engine.process_queue(body, ctx)
    finally:
        await engine.shutdown()
        if settings.database.store_backend == "sql":
            await close_db()
    return report.to_api()


def main():
    parser = argparse.ArgumentParser(description="Process due cadence schedules once")
    parser.add_argument("--limit", type=int, default=None, help="Max schedules to process (≤100)")
    parser.add_argument("--min-delay-ms", type=int, default=None, help="Min pause between items")
    parser.add_argument("--max-delay-ms", type=int, default=None, help="Max pause between items")
    parser.add_argument("--dry-run", action="store_true", help="List due schedules without processing")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    args = parser.parse_args()

    try:
        result = asyncio.run(run_batch(args))
    except Exception as e:
        print(json.dumps({"success": False, "error": str(e)}, indent=2))
        sys.exit(1)

    print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    main()
