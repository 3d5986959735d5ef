"""Entry point for running the Hookline delivery workers as a module.

Usage:
    python -m hookline

Configuration comes from HOOKLINE_* environment variables, e.g.
HOOKLINE_QUEUE_BACKEND=qdrant HOOKLINE_WORKER_CONCURRENCY=16.
"""

import asyncio
import contextlib

from hookline.config import Settings
from hookline.engine import WebhookEngine
from hookline.logging import configure_logging, get_logger


async def run(settings: Settings) -> None:
    """Run the worker pool until cancelled."""
    logger = get_logger(__name__)
    async with WebhookEngine.create(settings) as engine:
        logger.info(
            "hookline_workers_starting",
            queue_backend=settings.queue_backend,
            concurrency=settings.worker_concurrency,
        )
        await engine.run_workers()


def main() -> None:
    """Run the delivery workers."""
    settings = Settings()
    configure_logging(level=settings.log_level, format=settings.log_format)
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(run(settings))


if __name__ == "__main__":
    main()
