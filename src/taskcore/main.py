"""Main entry point for the task core CLI."""

import asyncio
import logging
import sys

from .core.context import create_context
from .core.exceptions import StorageError
from .interfaces.cli import TaskCLI
from .config import config

logger = logging.getLogger(__name__)


async def run():
    """Build the context, run the CLI and close everything on the way out."""
    ctx = await create_context(config, start=True)
    try:
        cli = TaskCLI(ctx)
        await cli.run()
    finally:
        await ctx.close()


def cli_main():
    """Entry point for CLI."""
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        asyncio.run(run())
    except StorageError as e:
        logger.error("Storage unavailable: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    cli_main()
