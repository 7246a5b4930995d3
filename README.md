# cpuminer

A CPU miner for cpunet. It connects to a Stratum pool, subscribes and
authorizes, receives jobs, and hashes block headers with the `cpunet\0`
suffix on several worker threads. It submits the shares it finds to the
pool. There is also a standalone benchmark mode.

## Installing

    pip install .

To run the tests:

    pip install ".[test]"
    pytest

## Mining against a pool

    cpuminer -o stratum+tcp://localhost:3333 -O user:password

Options:

- `-o`, `--url URL`: Stratum pool URL. Only the `stratum+tcp` scheme is
  accepted. The port defaults to 3333.
- `-O`, `--userpass USER:PASS`: the worker name and password. Everything
  after the first colon is the password, and it may be empty.
- `-t`, `--threads N`: the number of mining threads. When this is left out or
  set to 0, the miner uses the number of CPUs available to the process.
- `-f`, `--fudge FACTOR`: scales the share target by this factor, so a
  factor above 1 makes shares easier. It must be positive and finite. The
  default is 1.0.
- `-D`, `--debug`: prints every Stratum message sent and received, every
  difficulty update, and every share found with its preimage.
- `--benchmark`: hashes for five seconds without a pool and reports khash/s.
- `-V`, `--version`: prints the version.

A pool URL and credentials are required unless `--benchmark` is given.

The command exits with status 1 and an error message when the configuration is
invalid or the pool connection fails. It exits with status 130 on Ctrl-C.

## Benchmarking

    cpuminer --benchmark -t 4

## Using it as a library

```python
from cpuminer.cli import parse_config
from cpuminer.hashing import sha256d
from cpuminer.targets import share_target_from_difficulty, hash_meets_target

config = parse_config(["--benchmark", "-t", "2"])
target = share_target_from_difficulty(2.0)
print(hash_meets_target(sha256d(b"cpunet"), target))
```

The modules:

- `cpuminer.cli`: `build_parser()`, `parse_config(argv)`, and the `Config`
  dataclass. Invalid combinations of options raise `ConfigError`.
- `cpuminer.hashing`: `sha256d`, `midstate_from_prefix` and
  `hash_from_midstate`. The last two hash an 80-byte header in two parts, a
  64-byte prefix and a 16-byte tail plus a suffix.
- `cpuminer.targets`: `target_from_compact`, `share_target_from_difficulty`,
  `apply_fudge_to_target`, `clamp_target` and `hash_meets_target`. Targets are
  plain integers capped at `MAX_TARGET`.
- `cpuminer.jobs`: `parse_job_template`, `build_coinbase`,
  `compute_merkle_root` and `serialize_header`, plus the `JobTemplate`,
  `Subscription` and `ShareSubmission` dataclasses. Malformed job data raises
  `JobError`.
- `cpuminer.mining`:
  - `MiningCoordinator` runs the worker threads. It takes new jobs, targets
    and subscriptions through `install_job`, `update_share_target` and
    `update_subscription`.
  - Found shares arrive on the queue returned by `take_share_queue()`, which
    can be taken only once.
  - `shutdown()` stops the workers. The coordinator is also a context manager.
  - `benchmark(config, duration)` returns the measured khash/s.
- `cpuminer.stratum`:
  - `StratumClient(config, coordinator)` has `connect()`, `run()` and
    `close()`, and works as an async context manager.
  - The helpers are `parse_pool_url`, `parse_subscribe_result` and
    `ensure_authorized`.
  - Connection and protocol failures raise `StratumError`.
- `cpuminer.main`: `run(config)` is a coroutine that wires the coordinator
  and the client together. `main(argv)` is what the `cpuminer` command calls.

## What it does not do

- Hashing is done in pure Python, so hash rates are far below those of a
  native miner.
- The miner does not reconnect. When the pool closes the connection or sends
  malformed data, it stops with an error.
- It talks only to a Stratum pool. It does not build or submit blocks to a
  node itself.