#!/usr/bin/env python3
"""Run a single line-protocol backend until interrupted."""

import argparse
import asyncio
import logging
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from balancer import ConnectionListener

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(message)s",
)


async def serve(port: int, verbose: bool):
    async with ConnectionListener(port, verbose=verbose):
        await asyncio.Event().wait()


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("port", type=int)
    parser.add_argument("--quiet", action="store_true")
    args = parser.parse_args()
    try:
        asyncio.run(serve(args.port, not args.quiet))
    except KeyboardInterrupt:
        pass
