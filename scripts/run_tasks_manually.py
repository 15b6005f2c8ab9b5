# run_tasks_manually.py
import asyncio
import logging
import sys
import os

# Run from the project root so `app` is importable
sys.path.append(os.getcwd())

from app.tasks_registry import run_recompute_rankings, run_consistency_check, run_monthly_reset


async def main(include_monthly_reset: bool = False):
    """
    Runs the scheduled jobs once, one after another.
    """
    print("--- Manual Task Runner ---")
    print("Starting tasks sequentially...\n")

    print("\n[1/3] Running: recompute_rankings...")
    result = await run_recompute_rankings()
    print(f"Done. Ranked {result.members_ranked} members, excluded {result.members_excluded}.")

    print("\n[2/3] Running: verify_consistency...")
    report = await run_consistency_check()
    print(f"Done. Health score {report.health_score}, discrepancies: {report.counts_by_kind or 'none'}.")

    if include_monthly_reset:
        print("\n[3/3] Running: monthly_reset...")
        ran = await run_monthly_reset()
        print("Done." if ran else "Skipped, already reset this month.")
    else:
        print("\n[3/3] Skipping monthly_reset (pass --monthly-reset to run it).")

    print("\n--- All tasks completed! ---")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, stream=sys.stdout, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    try:
        asyncio.run(main(include_monthly_reset="--monthly-reset" in sys.argv))
    except KeyboardInterrupt:
        print("\nScript interrupted by user.")
