"""Entry point: run the benchmark or mine against a stratum pool."""

from __future__ import annotations

import asyncio
import sys
from typing import Optional, Sequence

from .cli import Config, parse_config
from .mining import MiningCoordinator, benchmark
from .stratum import StratumClient

__all__ = ["run", "main"]


async def run(config: Config) -> None:
    """Run the miner described by ``config`` until it fails or is stopped."""
    if config.benchmark:
        await asyncio.to_thread(benchmark, config)
        return

    coordinator = MiningCoordinator(config)
    try:
        client = StratumClient(config, coordinator)
        try:
            await client.connect()
            await client.run()
        finally:
            await client.close()
    finally:
        await asyncio.to_thread(coordinator.shutdown)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Parse the command line and run the miner; return the exit status."""
    try:
        config = parse_config(argv)
        asyncio.run(run(config))
    except (ValueError, RuntimeError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
    return 0