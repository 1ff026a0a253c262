from __future__ import annotations

from arq import run_worker

from notifyrelay.core.logging import configure_logging
from notifyrelay.workers.notification_worker import WorkerSettings


def main() -> None:
    # Run the arq worker in-process so local runs do not need the arq CLI on PATH.
    configure_logging()
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
