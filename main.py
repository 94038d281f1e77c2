"""Karatapp backend entry point.

Run modes:
1. serve: HTTP API, realtime WebSocket, Prometheus exporter and system monitor
2. init: create tables and buckets, backfill missing user profiles, then exit
3. cleanup: remove leftover temporary upload folders from the image buckets, then exit
"""

import asyncio
import logging
import platform

from prometheus_client import start_http_server

from karatapp.core import initialize_application
from karatapp.core.config import RunMode
from karatapp.core.monitor import SystemMonitor
from karatapp.models.enums import ContentKind
from karatapp.services.attachments import AttachmentStore
from karatapp.utils import setup_logging

setup_logging()
log = logging.getLogger("main")


async def main(mode: RunMode = "serve"):
    container = await initialize_application(mode=mode)

    tasks: list[asyncio.Task] = []
    try:
        log.info("Starting application in %s mode.", mode)

        if mode == "serve":
            if container.api_server is None:
                raise RuntimeError("Container is not set up properly.")
            await container.api_server.start()

            server = container.config.server
            if server.metrics_port is not None:
                start_http_server(server.metrics_port)
                log.info("Metrics exporter listening on port %d", server.metrics_port)

            monitor = SystemMonitor(container, interval=server.monitor_interval_seconds)
            tasks.append(asyncio.create_task(monitor.run(), name="monitor"))
            await asyncio.gather(*tasks)

        elif mode == "cleanup":
            for kind in ContentKind:
                removed = await AttachmentStore(container, kind).cleanup_temp_folders()
                log.info("Removed %d temporary folders from the %s bucket.", len(removed), kind.value)

    except asyncio.CancelledError:
        log.info("Received cancellation in %s mode.", mode)
        raise

    except Exception as e:
        log.exception("Application failed to start or run: %s", e)

    finally:
        for t in tasks:
            if not t.done():
                t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        log.info("Shutting down application...")
        await container.teardown()


def setup_event_loop():
    if platform.system() != "Windows":
        try:
            import uvloop

            asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())

        except ImportError:
            log.warning("uvloop not installed; using default asyncio event loop.")

    else:
        log.info("Running on Windows, using the default ProactorEventLoop.")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Karatapp backend")
    parser.add_argument(
        "--mode",
        choices=["serve", "init", "cleanup"],
        default="serve",
        help="Running mode: 'serve' for the API, 'init' to prepare the stores, 'cleanup' to purge temporary uploads.",
    )
    args = parser.parse_args()

    setup_event_loop()

    try:
        asyncio.run(main(args.mode))
    except KeyboardInterrupt:
        log.info("Application stopped by user.")
