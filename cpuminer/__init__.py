"""CPU miner for cpunet: header hashing, share targets, worker threads and a Stratum client."""

__version__ = "0.1.0"
__all__ = ["__version__"]