#!/usr/bin/env python
"""
Start the Threadline API server.

Defaults come from ``threadline.config_secrets``; pass ``--reload`` for a
single auto-reloading development process.
"""

import argparse
import asyncio
import logging
from typing import Optional, Sequence

import uvicorn

from threadline.config_secrets import LOG_LEVEL, SERVER_HOST, SERVER_PORT, SERVER_WORKERS
from threadline.core.db import close_db, init_db

logger = logging.getLogger("threadline.run")


async def create_schema() -> None:
    """Create the database schema and release the pool again."""
    await init_db()
    await close_db()


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the Threadline API server")
    parser.add_argument("--host", default=SERVER_HOST, help="Interface to bind")
    parser.add_argument("--port", type=int, default=SERVER_PORT, help="Port to bind")
    parser.add_argument("--workers", type=int, default=SERVER_WORKERS, help="Worker processes (ignored with --reload)")
    parser.add_argument("--reload", action="store_true", help="Restart on code changes (development only)")
    parser.add_argument("--create-tables", action="store_true", help="Create database tables before serving")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.create_tables:
        asyncio.run(create_schema())
        logger.info("Database tables created")

    # uvicorn runs exactly one process when reloading
    server_options = {"reload": True} if args.reload else {"workers": args.workers}
    logger.info("Serving threadline on %s:%d with %s", args.host, args.port, server_options)
    uvicorn.run("threadline.main:app", host=args.host, port=args.port, **server_options)


if __name__ == "__main__":
    main()
