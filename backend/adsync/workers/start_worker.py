"""Start the ARQ worker for Meta sync jobs.

USAGE (from backend/):
    python -m adsync.workers.start_worker

Runs queued syncs and the built-in cron schedule (daily at 03:00 UTC,
intraday every 15 minutes).
"""

import logging

from arq import run_worker

from adsync.utils.env import load_env_file
from adsync.workers.arq_worker import WorkerSettings

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


def main() -> None:
    load_env_file()
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
