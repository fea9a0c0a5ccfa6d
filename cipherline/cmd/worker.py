from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path

from cipherline.core.store import MessageStore
from cipherline.server.backends import build_backends
from cipherline.server.config import Settings, load_settings
from cipherline.server.worker import PersistenceWorker

log = logging.getLogger("cipherline.cmd.worker")


async def _run(settings: Settings) -> None:
    backends = build_backends(settings)
    store = await MessageStore(settings.db_path).open()
    worker = PersistenceWorker(
        backends.queue,
        store,
        max_attempts=settings.worker.max_attempts,
        backoff_base=settings.worker.backoff_base_secs,
        backoff_max=settings.worker.backoff_max_secs,
        poll_timeout=settings.worker.poll_timeout_secs,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
    except NotImplementedError:
        pass

    try:
        await worker.run(stop_event)
    finally:
        failed = await backends.queue.failed()
        if failed:
            log.warning("%d job(s) on the failed list need operator attention", len(failed))
        await store.close()
        await backends.close()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="cipherline persistence worker")
    parser.add_argument("--config", help="Path to server YAML config")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        settings = load_settings(Path(args.config) if args.config else None)
    except ValueError as exc:
        parser.error(str(exc))
    if settings.in_memory:
        parser.error("a standalone worker needs redis_url; without Redis the server runs its own worker")
    asyncio.run(_run(settings))


if __name__ == "__main__":
    main()
