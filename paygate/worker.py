from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from paygate.bootstrap import Services, build_services
from paygate.config import settings
from paygate.db.client import apply_schema, close_pool
from paygate.logging import setup_logging

logger = logging.getLogger(__name__)


async def run_workers(services: Services) -> None:
    """Run all lane consumers until SIGINT/SIGTERM, then let in-flight jobs finish."""
    consumers = services.consumers()
    loop = asyncio.get_running_loop()

    def _shutdown() -> None:
        logger.info("shutdown requested, draining in-flight jobs")
        for consumer in consumers:
            consumer.stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _shutdown)
        except NotImplementedError:  # pragma: no cover - non-unix event loops
            signal.signal(sig, lambda *_: _shutdown())

    await asyncio.gather(*(consumer.run() for consumer in consumers))
    logger.info("all workers stopped")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run payment, refund and webhook workers")
    parser.add_argument("--init-db", action="store_true", help="create database tables before starting")
    args = parser.parse_args(argv)

    setup_logging(settings.log_level)
    try:
        if args.init_db:
            apply_schema(settings)
        services = build_services(settings)
        asyncio.run(run_workers(services))
    finally:
        close_pool()


if __name__ == "__main__":
    main()
