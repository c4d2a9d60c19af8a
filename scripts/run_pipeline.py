"""
Run the sync pipeline without the API.

Usage:
    python scripts/run_pipeline.py              # run until interrupted
    python scripts/run_pipeline.py --once       # bootstrap, one tick, drain, exit
    python scripts/run_pipeline.py --trigger <data_source_id> <entity_type>
"""

import argparse
import asyncio
import logging
import signal
import sys
import os

sys.path.append(os.getcwd())

from core.config import settings
from core.logging import setup_logging
from pipeline.runner import PipelineRunner, build_context

logger = logging.getLogger(__name__)


async def run_forever(runner: PipelineRunner):
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    runner.start()
    await stop.wait()
    await runner.stop()


async def run_once(runner: PipelineRunner):
    runner.start(with_scheduler=False)
    await runner.scheduler.bootstrap()
    dispatched = await runner.scheduler.poll_jobs()
    await runner.drain()
    logger.info(f"Dispatched {dispatched} jobs")
    await runner.stop()


async def trigger(runner: PipelineRunner, data_source_id: str, entity_type: str):
    job_id = await runner.scheduler.trigger_sync(data_source_id, entity_type)
    logger.info(f"Queued job {job_id}")
    await runner.context.store.close()


def main():
    parser = argparse.ArgumentParser(description="Integration sync pipeline")
    parser.add_argument("--once", action="store_true", help="Run a single scheduler tick and exit")
    parser.add_argument("--trigger", nargs=2, metavar=("DATA_SOURCE_ID", "ENTITY_TYPE"))
    args = parser.parse_args()

    setup_logging(settings)
    runner = PipelineRunner(build_context(settings))

    if args.trigger:
        asyncio.run(trigger(runner, *args.trigger))
    elif args.once:
        asyncio.run(run_once(runner))
    else:
        asyncio.run(run_forever(runner))


if __name__ == "__main__":
    main()
