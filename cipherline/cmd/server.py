from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

import uvicorn

from cipherline.core.auth import TokenAuthenticator
from cipherline.core.bus import RelayBus
from cipherline.core.directory import KeyDirectory, MessageRoutes
from cipherline.core.presence import PresenceRegistry
from cipherline.core.store import MessageStore
from cipherline.server.api import create_app
from cipherline.server.backends import build_backends
from cipherline.server.config import Settings, load_settings, parse_listen
from cipherline.server.runtime import ServerRuntime
from cipherline.server.worker import PersistenceWorker

log = logging.getLogger("cipherline.cmd.server")


async def _run(settings: Settings) -> None:
    backends = build_backends(settings)
    store = await MessageStore(settings.db_path).open()
    authenticator = TokenAuthenticator(settings.auth.secret, ttl_secs=settings.auth.token_ttl_secs)
    presence = PresenceRegistry(backends.kv)
    directory = KeyDirectory(backends.kv)

    runtime = ServerRuntime(
        settings,
        authenticator=authenticator,
        presence=presence,
        directory=directory,
        routes=MessageRoutes(backends.kv, ttl_secs=settings.route_ttl_secs),
        bus=RelayBus(backends.broker, channel=settings.channel),
        queue=backends.queue,
    )
    await runtime.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
    except NotImplementedError:
        pass

    tasks: list[asyncio.Task] = []
    if settings.worker.embedded:
        worker = PersistenceWorker(
            backends.queue,
            store,
            max_attempts=settings.worker.max_attempts,
            backoff_base=settings.worker.backoff_base_secs,
            backoff_max=settings.worker.backoff_max_secs,
            poll_timeout=settings.worker.poll_timeout_secs,
        )
        tasks.append(asyncio.create_task(worker.run(stop_event), name="persistence-worker"))

    api_server: Optional[uvicorn.Server] = None
    if settings.api.enabled:
        host, port = parse_listen(settings.api.listen)
        app = create_app(
            store=store,
            presence=presence,
            directory=directory,
            authenticator=authenticator,
            allow_login=settings.api.allow_login,
        )
        api_server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="info"))
        api_task = asyncio.create_task(api_server.serve(), name="api")
        api_task.add_done_callback(lambda _task: stop_event.set())
        tasks.append(api_task)

    log.info("Relay %s running. Press Ctrl+C to stop.", settings.instance_id)
    try:
        await stop_event.wait()
    finally:
        if api_server is not None:
            api_server.should_exit = True
        await asyncio.gather(*tasks, return_exceptions=True)
        await runtime.stop()
        await store.close()
        await backends.close()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="cipherline relay server")
    parser.add_argument("--config", help="Path to server YAML config")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        settings = load_settings(Path(args.config) if args.config else None)
    except ValueError as exc:
        parser.error(str(exc))
    asyncio.run(_run(settings))


if __name__ == "__main__":
    main()
