from __future__ import annotations

from arq import run_worker

from hookrelay.core.logging import configure_logging
from hookrelay.workers.delivery_worker import WorkerSettings


def main() -> None:
    # Boot a dedicated arq worker so webhook attempts and retries run outside producer processes.
    configure_logging()
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
