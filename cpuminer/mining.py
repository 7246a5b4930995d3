"""Mining workers, the coordinator that feeds them jobs, and a hashing benchmark."""

from __future__ import annotations

import itertools
import queue
import sys
import threading
import time
from dataclasses import dataclass
from typing import List, Optional

from .cli import Config
from .hashing import CPUNET_SUFFIX, Midstate, hash_from_midstate, midstate_from_prefix
from .jobs import (
    JobTemplate,
    ShareSubmission,
    Subscription,
    build_coinbase,
    compute_merkle_root,
    serialize_header,
)
from .targets import apply_fudge_to_target, hash_meets_target, share_target_from_difficulty

__all__ = [
    "WorkUnit",
    "JobContext",
    "MiningCoordinator",
    "prepare_work",
    "set_nonce",
    "benchmark",
]

_NONCE_SPACE = 1 << 32
_U64_MAX = (1 << 64) - 1
_TAIL_SIZE = 16
_EXHAUSTED_PAUSE = 0.025
_ERROR_PAUSE = 1.0


@dataclass(frozen=True)
class WorkUnit:
    """A header ready for nonce search: its midstate, tail and extranonce2."""

    midstate: Midstate
    tail: bytes
    extranonce2: bytes
    prefix: bytes


class JobContext:
    """A job bound to a subscription and share target, handing out extranonce2 values."""

    def __init__(
        self,
        template: JobTemplate,
        subscription: Subscription,
        share_target: int,
        debug: bool = False,
    ) -> None:
        self.template = template
        self.subscription = subscription
        self.share_target = share_target
        self.debug = debug
        self._counter = itertools.count()
        self._counter_lock = threading.Lock()

    def next_extranonce2(self) -> Optional[bytes]:
        """Return the next extranonce2, or None once a short one is used up."""
        size = self.subscription.extranonce2_size
        if size == 0:
            return b""
        with self._counter_lock:
            counter = next(self._counter) & _U64_MAX
        limit = _U64_MAX if size >= 8 else (1 << (size * 8)) - 1
        if size < 8 and counter > limit:
            return None
        return (counter & limit).to_bytes(size, "little")


def set_nonce(tail: bytes, nonce: int) -> bytes:
    """Return the 16-byte header tail with its last four bytes set to ``nonce``."""
    if len(tail) != _TAIL_SIZE:
        raise ValueError(f"header tail must be {_TAIL_SIZE} bytes, got {len(tail)}")
    if not 0 <= nonce < _NONCE_SPACE:
        raise ValueError(f"nonce out of range: {nonce}")
    return bytes(tail[:12]) + nonce.to_bytes(4, "little")


def prepare_work(job: JobContext, extranonce2: bytes) -> WorkUnit:
    """Build the header for ``extranonce2`` and precompute its midstate."""
    template = job.template
    coinbase = build_coinbase(template, job.subscription.extranonce1, extranonce2)
    merkle_root = compute_merkle_root(coinbase, template.merkle_branch)
    header = serialize_header(
        template.version,
        template.prevhash,
        merkle_root,
        template.ntime,
        template.compact_target,
        0,
    )
    prefix, tail = header[:64], header[64:80]
    return WorkUnit(
        midstate=midstate_from_prefix(prefix),
        tail=tail,
        extranonce2=bytes(extranonce2),
        prefix=prefix,
    )


class _SharedState:
    """State the coordinator publishes and the workers read."""

    def __init__(self, share_target: int) -> None:
        self.condition = threading.Condition()
        self.version = 0
        self.subscription: Optional[Subscription] = None
        self.share_target = share_target
        self.active_job: Optional[JobContext] = None
        self.pending_template: Optional[JobTemplate] = None
        self.shutting_down = False


def _mine_job(
    job: JobContext,
    job_version: int,
    state: _SharedState,
    shares: "queue.Queue[ShareSubmission]",
) -> None:
    template = job.template
    while True:
        if state.version != job_version:
            return
        extranonce2 = job.next_extranonce2()
        if extranonce2 is None:
            time.sleep(_EXHAUSTED_PAUSE)
            continue

        work = prepare_work(job, extranonce2)
        extranonce2_hex = work.extranonce2.hex()
        ntime_hex = f"{template.ntime:08x}"

        for nonce in range(_NONCE_SPACE):
            if state.version != job_version:
                return
            tail = set_nonce(work.tail, nonce)
            digest = hash_from_midstate(work.midstate, tail, CPUNET_SUFFIX)
            if not hash_meets_target(digest, job.share_target):
                continue
            is_block = hash_meets_target(digest, template.network_target)
            if job.debug:
                preimage = work.prefix + tail + CPUNET_SUFFIX
                print(
                    f"[debug] Found share hash: {digest.hex()} "
                    f"preimage: {preimage.hex()} block_candidate: {str(is_block).lower()}"
                )
            shares.put(
                ShareSubmission(
                    job_id=template.job_id,
                    extranonce2=extranonce2_hex,
                    ntime=ntime_hex,
                    nonce=f"{nonce:08x}",
                    hash=digest,
                    is_block_candidate=is_block,
                )
            )


def _worker_loop(
    worker_id: int,
    state: _SharedState,
    shares: "queue.Queue[ShareSubmission]",
) -> None:
    seen_version = state.version
    while True:
        with state.condition:
            while True:
                if state.shutting_down:
                    return
                job = state.active_job
                if job is not None and (
                    state.version != seen_version or job.template.clean_jobs
                ):
                    seen_version = state.version
                    job_version = seen_version
                    break
                state.condition.wait()

        try:
            _mine_job(job, job_version, state, shares)
        except Exception as exc:  # a bad job must not kill the worker
            print(f"[worker {worker_id}] mining error: {exc!r}", file=sys.stderr)
            with state.condition:
                state.condition.wait_for(lambda: state.shutting_down, timeout=_ERROR_PAUSE)


class MiningCoordinator:
    """Runs the worker threads and hands them the current job."""

    def __init__(self, config: Config) -> None:
        self._config = config
        self._state = _SharedState(
            apply_fudge_to_target(share_target_from_difficulty(1.0), config.fudge)
        )
        self._shares: "queue.Queue[ShareSubmission]" = queue.Queue()
        self._queue_taken = False
        self._lock = threading.Lock()
        self._workers: List[threading.Thread] = []
        self._spawn_workers()

    def __enter__(self) -> "MiningCoordinator":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    def _spawn_workers(self) -> None:
        with self._lock:
            if self._workers:
                return
            for worker_id in range(self._config.threads):
                thread = threading.Thread(
                    target=_worker_loop,
                    args=(worker_id, self._state, self._shares),
                    name=f"miner-{worker_id}",
                    daemon=True,
                )
                thread.start()
                self._workers.append(thread)

    def take_share_queue(self) -> "queue.Queue[ShareSubmission]":
        """Return the queue found shares arrive on; it can be taken only once."""
        with self._lock:
            if self._queue_taken:
                raise RuntimeError("share queue already taken")
            self._queue_taken = True
            return self._shares

    def _new_job(self, template: JobTemplate, subscription: Subscription, target: int) -> JobContext:
        return JobContext(template, subscription, target, self._config.debug)

    def update_subscription(self, subscription: Subscription) -> None:
        """Switch to new extranonce parameters, restarting the current job."""
        state = self._state
        with state.condition:
            state.subscription = subscription
            if state.active_job is not None:
                state.active_job = self._new_job(
                    state.active_job.template, subscription, state.share_target
                )
            elif state.pending_template is not None:
                template, state.pending_template = state.pending_template, None
                state.active_job = self._new_job(template, subscription, state.share_target)
            self._bump_version()

    def update_share_target(self, target: int) -> None:
        """Set a new share target, scaled by the configured fudge factor."""
        state = self._state
        with state.condition:
            adjusted = apply_fudge_to_target(target, self._config.fudge)
            state.share_target = adjusted
            job, state.active_job = state.active_job, None
            if job is not None and state.subscription is not None:
                state.active_job = self._new_job(job.template, state.subscription, adjusted)
            self._bump_version()

    def install_job(self, template: JobTemplate) -> None:
        """Make ``template`` the job to mine, or hold it until subscribed."""
        state = self._state
        with state.condition:
            if state.subscription is not None:
                state.active_job = self._new_job(
                    template, state.subscription, state.share_target
                )
            else:
                state.pending_template = template
            self._bump_version()

    def shutdown(self) -> None:
        """Stop every worker and wait for them to finish."""
        state = self._state
        with state.condition:
            state.shutting_down = True
            self._bump_version()
        with self._lock:
            workers, self._workers = self._workers, []
        current = threading.current_thread()
        for thread in workers:
            if thread is not current:
                thread.join()

    def _bump_version(self) -> None:
        self._state.version += 1
        self._state.condition.notify_all()


def _benchmark_worker(stop: threading.Event, counts: List[int], slot: int) -> None:
    midstate = midstate_from_prefix(bytes(64))
    tail = bytes(_TAIL_SIZE)
    for nonce in itertools.cycle(range(_NONCE_SPACE)):
        if stop.is_set():
            return
        hash_from_midstate(midstate, set_nonce(tail, nonce), CPUNET_SUFFIX)
        counts[slot] += 1


def benchmark(config: Config, duration: float = 5.0) -> float:
    """Hash on ``config.threads`` threads for ``duration`` seconds; return khash/s."""
    if duration <= 0:
        raise ValueError("benchmark duration must be positive")
    threads = config.threads
    print(f"Running benchmark on {threads} threads...")

    stop = threading.Event()
    counts = [0] * threads
    workers = [
        threading.Thread(target=_benchmark_worker, args=(stop, counts, slot), daemon=True)
        for slot in range(threads)
    ]
    for thread in workers:
        thread.start()
    time.sleep(duration)
    stop.set()
    for thread in workers:
        thread.join()

    khash = sum(counts) / (duration * 1000.0)
    print(f"Benchmark: {khash:.2f} khash/s")
    return khash