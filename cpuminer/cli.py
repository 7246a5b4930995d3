"""Command-line parsing and validated miner configuration."""

from __future__ import annotations

import argparse
import math
import os
from dataclasses import dataclass
from typing import Optional, Sequence

__all__ = ["Config", "ConfigError", "build_parser", "parse_config"]

_VERSION = "0.1.0"
_CREDENTIALS_SEPARATOR = ":"


class ConfigError(ValueError):
    """Raised when the command-line options do not form a usable configuration."""


@dataclass(frozen=True)
class Config:
    """Settings the miner runs with."""

    pool_url: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    threads: int = 1
    benchmark: bool = False
    debug: bool = False
    fudge: float = 1.0


def _non_negative_int(text: str) -> int:
    try:
        value = int(text, 10)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid thread count: {text!r}") from None
    if value < 0:
        raise argparse.ArgumentTypeError(f"invalid thread count: {text!r}")
    return value


def _available_parallelism() -> int:
    if hasattr(os, "sched_getaffinity"):
        try:
            count = len(os.sched_getaffinity(0))
        except OSError:
            count = 0
        if count > 0:
            return count
    return os.cpu_count() or 1


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the miner command."""
    parser = argparse.ArgumentParser(
        prog="cpuminer",
        description="CPU miner for stratum pools.",
    )
    parser.add_argument(
        "-V", "--version", action="version", version=f"%(prog)s {_VERSION}"
    )
    parser.add_argument(
        "-o",
        "--url",
        dest="pool_url",
        metavar="URL",
        help="Stratum pool URL, e.g. stratum+tcp://localhost:3333",
    )
    parser.add_argument(
        "-O",
        "--userpass",
        dest="credentials",
        metavar="USER:PASS",
        help="Username and password in USER:PASS format",
    )
    parser.add_argument(
        "-t",
        "--threads",
        dest="threads",
        metavar="N",
        type=_non_negative_int,
        help="Number of mining threads to run",
    )
    parser.add_argument(
        "--benchmark",
        action="store_true",
        help="Run a standalone hashing benchmark instead of connecting to a pool",
    )
    parser.add_argument(
        "-D", "--debug", action="store_true", help="Enable verbose debug output"
    )
    parser.add_argument(
        "-f",
        "--fudge",
        dest="fudge",
        metavar="FACTOR",
        type=float,
        default=1.0,
        help="Divide the reported pool difficulty by this factor before submitting shares",
    )
    return parser


def parse_config(argv: Optional[Sequence[str]] = None) -> Config:
    """Parse command-line arguments into a validated :class:`Config`."""
    args = build_parser().parse_args(argv)

    threads = args.threads if args.threads else _available_parallelism()

    username: Optional[str] = None
    password: Optional[str] = None
    if args.credentials is not None:
        parts = args.credentials.partition(_CREDENTIALS_SEPARATOR)
        username = parts[0]
        password = parts[2]

    if not args.benchmark:
        if args.pool_url is None:
            raise ConfigError(
                "pool URL (-o/--url) is required unless --benchmark is set"
            )
        if username is None:
            raise ConfigError(
                "credentials (-O/--userpass) are required unless --benchmark is set"
            )

    if not math.isfinite(args.fudge) or args.fudge <= 0.0:
        raise ConfigError("fudge factor (-f/--fudge) must be positive")

    return Config(
        pool_url=args.pool_url,
        username=username,
        password=password,
        threads=threads,
        benchmark=args.benchmark,
        debug=args.debug,
        fudge=args.fudge,
    )