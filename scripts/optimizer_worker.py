from __future__ import annotations

from arq import run_worker

from rateopt.core.logging import configure_logging
from rateopt.workers.optimizer_worker import WorkerSettings


def main() -> None:
    # Equivalent to `arq rateopt.workers.optimizer_worker.WorkerSettings` for environments without the arq CLI.
    configure_logging()
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
