"""Run the long-lived asyncio loops outside Celery.

Usage:
    python -m orchestrator.workers.runner consumer     # document event consumer
    python -m orchestrator.workers.runner watcher      # completion watcher
    python -m orchestrator.workers.runner all          # both
    python -m orchestrator.workers.runner consumer --from-start

SIGINT and SIGTERM stop the loops after their current iteration.
"""

import argparse
import asyncio
import signal
from pathlib import Path

import structlog
from dotenv import load_dotenv

from orchestrator.core.logging import configure_logging
from orchestrator.services.completion_watcher import CompletionWatcher
from orchestrator.services.document_consumer import DocumentEventConsumer

logger = structlog.get_logger(__name__)

COMPONENTS = ("consumer", "watcher", "all")


def build_components(component: str, from_start: bool = False) -> list:
    """Create the loop owners for a component name."""
    if component not in COMPONENTS:
        raise ValueError(f"Unknown component: {component}")

    components: list = []
    if component in ("consumer", "all"):
        components.append(DocumentEventConsumer(from_start=from_start))
    if component in ("watcher", "all"):
        components.append(CompletionWatcher())
    return components


async def run(components: list, stop_event: asyncio.Event) -> None:
    """Start every component, wait for the stop signal, then stop them."""
    for component in components:
        await component.start()

    await stop_event.wait()

    logger.info("runner_stopping", components=len(components))
    for component in components:
        await component.stop()


async def _main(component: str, from_start: bool) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops do not support signal handlers
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))

    logger.info("runner_starting", component=component, from_start=from_start)
    await run(build_components(component, from_start), stop_event)
    logger.info("runner_stopped", component=component)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run document orchestrator loops")
    parser.add_argument("component", choices=COMPONENTS, help="Loop(s) to run")
    parser.add_argument(
        "--from-start",
        action="store_true",
        help="Read event log shards from the oldest retained entry instead of the newest",
    )
    args = parser.parse_args(argv)

    env_file = Path.cwd() / ".env"
    if env_file.exists():
        load_dotenv(env_file)

    configure_logging()
    asyncio.run(_main(args.component, args.from_start))


if __name__ == "__main__":
    main()
