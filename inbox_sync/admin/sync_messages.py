from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).resolve().parents[2]
load_dotenv(ROOT_DIR / ".env")

from inbox_sync.api.deps import build_sync_engine  # noqa: E402
from inbox_sync.core.logging import setup_logging  # noqa: E402


async def _run(args: argparse.Namespace) -> int:
    engine = build_sync_engine()
    if args.discover_account:
        await engine.discover_instances(args.discover_account)

    if args.instance:
        reports = [await engine.sync_all(args.instance)]
    else:
        reports = await engine.sync_all_instances()

    for report in reports:
        print(json.dumps(report.model_dump(mode="json"), ensure_ascii=False))
    return 0 if all(report.clean for report in reports) else 1


def main() -> None:
    parser = argparse.ArgumentParser(description="Pull gateway message history into the store.")
    parser.add_argument(
        "--instance",
        help="Instance id or gateway instance name; all registered instances when omitted",
    )
    parser.add_argument(
        "--discover-account",
        help="Register every gateway instance under this account id before syncing",
    )
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args()

    setup_logging(args.log_level)
    raise SystemExit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
