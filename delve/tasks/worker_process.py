"""Delve Shadows Worker — runs enqueued research in the background.

Started by ``delve worker`` or directly::

    python -m delve.tasks.worker_process --log-level DEBUG

Picks up every run enqueued with ``delve submit``.  Shadows keys each task by
its run id, and the research workflow resumes from the persisted status, so a
worker killed mid-run simply continues that run when it is re-delivered.

Before taking work the worker reconciles every multi-provider aggregate, so
snapshots left stale by a previous crash are brought up to date.

Only one worker per machine: ``~/.delve/worker.pid`` holds the owner's PID.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

logger = logging.getLogger("delve.worker")

TASK_COLLECTION = "delve.tasks:delve_tasks"


class PidFile:
    """Single-worker guard backed by a PID file."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or Path.home() / ".delve" / "worker.pid"

    def owner(self) -> int | None:
        """PID of the live worker holding the file; stale files are removed."""
        if not self.path.exists():
            return None
        try:
            pid = int(self.path.read_text().strip())
            os.kill(pid, 0)
        except (ValueError, ProcessLookupError, PermissionError):
            self.release()
            return None
        return pid

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(str(os.getpid()))

    def release(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove PID file %s: %s", self.path, exc)


async def reconcile_aggregates() -> int:
    """Refresh every multi-provider aggregate from its child runs."""
    from delve.errors import DelveError
    from delve.research.service import ResearchService

    service = ResearchService()
    try:
        count = await service.reconcile_all()
    except DelveError as exc:
        logger.warning("Startup reconcile skipped: %s", exc)
        return 0
    finally:
        await service.close()
    logger.info("Reconciled %d multi-provider aggregate(s)", count)
    return count


async def serve(shadows_name: str, redis_url: str) -> None:
    from shadows import Shadow, Worker

    async with Shadow(name=shadows_name, url=redis_url) as shadow:
        shadow.register_collection(TASK_COLLECTION)
        async with Worker(shadow, schedule_automatic_tasks=True) as worker:
            logger.info("Serving %s on %s — tasks: %s", shadows_name, redis_url, sorted(shadow.tasks))
            await worker.run_forever()


async def run_worker(shadows_name: str, redis_url: str, pid_file: PidFile) -> None:
    pid_file.acquire()
    logger.info("Delve Worker starting (PID=%d)", os.getpid())
    try:
        await reconcile_aggregates()
        await serve(shadows_name, redis_url)
    finally:
        pid_file.release()
        logger.info("Delve Worker stopped")


def main(argv: list[str] | None = None, pid_file: PidFile | None = None) -> None:
    from delve.config import settings

    parser = argparse.ArgumentParser(description="Delve background research worker")
    parser.add_argument("--shadows-name", default=settings.shadows_name)
    parser.add_argument("--redis-url", default=settings.redis_url)
    parser.add_argument(
        "--log-level", default=settings.log_level.upper(), choices=["DEBUG", "INFO", "WARNING", "ERROR"]
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )

    pid_file = pid_file or PidFile()
    owner = pid_file.owner()
    if owner is not None:
        logger.error("Another worker is already running (PID=%d)", owner)
        sys.exit(1)

    loop = asyncio.new_event_loop()

    def _shutdown(signum, frame):  # noqa: ARG001
        logger.info("Received signal %d, stopping", signum)
        for task in asyncio.all_tasks(loop):
            task.cancel()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)
    try:
        loop.run_until_complete(run_worker(args.shadows_name, args.redis_url, pid_file))
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Worker interrupted")
    finally:
        loop.close()


if __name__ == "__main__":
    main()
