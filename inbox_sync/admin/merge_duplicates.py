from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).resolve().parents[2]
load_dotenv(ROOT_DIR / ".env")

from inbox_sync.core.database import AsyncSessionLocal  # noqa: E402
from inbox_sync.core.logging import setup_logging  # noqa: E402
from inbox_sync.services.conversation_merge import merge_duplicate_conversations  # noqa: E402


async def _run(execute: bool) -> None:
    plans = await merge_duplicate_conversations(AsyncSessionLocal, execute=execute)
    for plan in plans:
        action = "merged" if execute else "would merge"
        print(
            f"{action}: keep #{plan.survivor_id} ({plan.canonical_key}) "
            f"<- {plan.duplicate_ids or 'rekey only'}"
        )
    if not plans:
        print("No duplicate conversations found")
    elif not execute:
        print("Dry run. Re-run with --execute to apply.")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Fold conversations that share a canonical natural key into one row."
    )
    parser.add_argument("--execute", action="store_true", help="Apply the merge")
    args = parser.parse_args()
    setup_logging()
    asyncio.run(_run(args.execute))


if __name__ == "__main__":
    main()
