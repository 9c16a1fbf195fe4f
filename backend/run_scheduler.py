#!/usr/bin/env python3
"""
Recurring credits scheduler entry point.

Runs the recurring credits job once shortly after startup and then daily
at RECURRING_CREDITS_HOUR_UTC. Use this when the API process is started
with ENABLE_CREDIT_SCHEDULER=false.

Usage:
    python run_scheduler.py
    python run_scheduler.py --once
"""

import dotenv
dotenv.load_dotenv(".env")

import argparse
import asyncio
import signal

from viraloop.context import AppContext
from viraloop.utils.config import config
from viraloop.utils.logger import logger


async def main(once: bool = False):
    logger.info("🚀 Starting recurring credits scheduler")

    ctx = AppContext.from_config(config)
    stop_event = asyncio.Event()

    try:
        await ctx.initialize()

        if once:
            summary = await ctx.recurring_job.run()
            logger.info("Recurring credits run complete", **summary.to_dict())
            return

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                signal.signal(sig, lambda s, f: stop_event.set())

        ctx.start_scheduler()
        await stop_event.wait()
        logger.info("Shutdown signal received")
    except Exception as e:
        logger.error(f"Fatal error in scheduler: {e}", exc_info=True)
        raise
    finally:
        await ctx.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Recurring credits scheduler")
    parser.add_argument("--once", action="store_true", help="Run the job once and exit")
    args = parser.parse_args()
    asyncio.run(main(once=args.once))
