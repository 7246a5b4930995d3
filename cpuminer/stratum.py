"""Stratum client: talks to a mining pool, relaying jobs to the miner and shares back."""

from __future__ import annotations

import asyncio
import contextlib
import json
import queue
import re
import sys
import threading
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

from .cli import Config
from .jobs import ShareSubmission, Subscription, parse_job_template
from .targets import apply_fudge_to_target, share_target_from_difficulty

__all__ = [
    "SUBSCRIBE_TIMEOUT",
    "DEFAULT_PORT",
    "USER_AGENT",
    "StratumError",
    "StratumClient",
    "parse_pool_url",
    "parse_subscribe_result",
    "ensure_authorized",
]

SUBSCRIBE_TIMEOUT = 10.0
DEFAULT_PORT = 3333
USER_AGENT = "cpuminer/0.1"

_HEX_BYTES = re.compile(r"(?:[0-9a-fA-F]{2})*")
_LINE_LIMIT = 1 << 20
_POLL_INTERVAL = 0.1
_U64_LIMIT = 1 << 64


class StratumError(RuntimeError):
    """Raised when the pool connection fails or the pool misbehaves."""


def _get(message: Any, key: str) -> Any:
    return message.get(key) if isinstance(message, dict) else None


def _as_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _as_u64(value: Any) -> Optional[int]:
    if isinstance(value, int) and not isinstance(value, bool) and 0 <= value < _U64_LIMIT:
        return value
    return None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_closed(message: Any) -> bool:
    return _get(message, "type") == "closed"


def _decode_hex(text: str, what: str) -> bytes:
    if not _HEX_BYTES.fullmatch(text):
        raise StratumError(f"invalid {what} hex")
    return bytes.fromhex(text)


def parse_pool_url(url: str) -> Tuple[str, int]:
    """Return the host and port of a ``stratum+tcp://`` pool URL."""
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError as exc:
        raise StratumError(f"invalid pool URL: {exc}") from exc
    if not parts.scheme:
        raise StratumError("invalid pool URL: relative URL without a base")
    if parts.scheme != "stratum+tcp":
        raise StratumError(f"unsupported scheme {parts.scheme}")
    host = parts.hostname
    if not host:
        raise StratumError("pool URL missing host")
    return host, DEFAULT_PORT if port is None else port


def parse_subscribe_result(response: Any) -> Tuple[bytes, int]:
    """Extract extranonce1 and the extranonce2 size from a subscribe response."""
    result = _get(response, "result")
    if not isinstance(result, list):
        raise StratumError("invalid subscribe response")
    if len(result) < 3:
        raise StratumError("subscribe response missing extranonce values")
    extranonce1_hex = _as_str(result[1])
    if extranonce1_hex is None:
        raise StratumError("invalid extranonce1")
    extranonce1 = _decode_hex(extranonce1_hex, "extranonce1")
    size = _as_u64(result[2])
    if size is None:
        raise StratumError("invalid extranonce2 size")
    return extranonce1, size


def ensure_authorized(response: Any) -> None:
    """Raise unless an authorize response reports success."""
    if not isinstance(response, dict) or "result" not in response:
        raise StratumError("authorize response missing result")
    result = response["result"]
    if result is True:
        return
    if result is False:
        raise StratumError("authorization rejected by pool")
    raise StratumError(f"unexpected authorize response: {json.dumps(result)}")


class StratumClient:
    """A connection to a stratum pool feeding a mining coordinator."""

    def __init__(self, config: Config, coordinator: Any) -> None:
        if config.pool_url is None:
            raise StratumError("pool URL must be provided")
        if config.username is None:
            raise StratumError("username must be provided")
        self._config = config
        self._coordinator = coordinator
        self._username = config.username
        self._password = config.password or ""
        self._debug = config.debug
        self._fudge = config.fudge
        self._next_id = 1
        self._pending: Dict[int, ShareSubmission] = {}
        self._inbound: "asyncio.Queue[Any]" = asyncio.Queue()
        self._shares: "asyncio.Queue[ShareSubmission]" = asyncio.Queue()
        self._writer: Optional[asyncio.StreamWriter] = None
        self._reader_task: Optional["asyncio.Task[None]"] = None
        self._forwarder: Optional[threading.Thread] = None
        self._stop = threading.Event()

    async def __aenter__(self) -> "StratumClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def connect(self) -> None:
        """Open the connection and subscribe and authorize with the pool."""
        if self._writer is not None:
            raise StratumError("already connected")
        share_queue = self._coordinator.take_share_queue()
        host, port = parse_pool_url(self._config.pool_url)
        addr = f"{host}:{port}"
        try:
            reader, writer = await asyncio.open_connection(host, port, limit=_LINE_LIMIT)
        except OSError as exc:
            raise StratumError(f"failed to connect to {addr}: {exc}") from exc

        self._writer = writer
        self._reader_task = asyncio.ensure_future(self._read_messages(reader))
        self._stop.clear()
        self._forwarder = threading.Thread(
            target=self._forward_shares,
            args=(share_queue, asyncio.get_running_loop()),
            name="share-forwarder",
            daemon=True,
        )
        self._forwarder.start()

        try:
            await self._perform_handshake()
        except BaseException:
            await self.close()
            raise

    async def run(self) -> None:
        """Process pool messages and submit shares until the connection ends."""
        if self._writer is None:
            raise StratumError("not connected")
        while True:
            inbound = asyncio.ensure_future(self._inbound.get())
            shares = asyncio.ensure_future(self._shares.get())
            try:
                done, _ = await asyncio.wait(
                    {inbound, shares}, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                for task in (inbound, shares):
                    if not task.done():
                        task.cancel()
            if inbound in done:
                await self.process_message(inbound.result())
            if shares in done:
                await self.submit_share(shares.result())

    async def close(self) -> None:
        """Shut the connection and stop the background reader and forwarder."""
        self._stop.set()
        task, self._reader_task = self._reader_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        writer, self._writer = self._writer, None
        if writer is not None:
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()
        forwarder, self._forwarder = self._forwarder, None
        if forwarder is not None:
            await asyncio.to_thread(forwarder.join)

    async def process_message(self, message: Any) -> None:
        """Dispatch one message from the pool."""
        request_id = _as_u64(_get(message, "id"))
        if request_id is not None:
            pending = self._pending.pop(request_id, None)
            if pending is not None:
                self._handle_response(pending, message)
            else:
                await self.handle_notification(message)
        elif isinstance(message, dict) and "method" in message:
            await self.handle_notification(message)
        elif _is_closed(message):
            raise StratumError("stratum connection closed by remote")

    async def handle_notification(self, message: Any) -> None:
        """Apply a pool notification: difficulty, extranonce, job or target."""
        method = _as_str(_get(message, "method"))
        if method is None:
            return
        params = _get(message, "params")
        if not isinstance(params, list):
            params = []

        if method == "mining.set_difficulty":
            self._set_difficulty(params)
        elif method == "mining.set_extranonce":
            self._set_extranonce(params)
        elif method == "mining.notify":
            self._notify(params)
        elif method == "mining.set_target":
            self._set_target(params)

    async def submit_share(self, share: ShareSubmission) -> None:
        """Send a found share to the pool and remember it until answered."""
        request_id = self._next_request_id()
        params = [self._username, share.job_id, share.extranonce2, share.ntime, share.nonce]
        self._pending[request_id] = share
        await self._send_request(request_id, "mining.submit", params)

    def _set_difficulty(self, params: List[Any]) -> None:
        if not params:
            return
        value = params[0]
        difficulty = float(value) if _is_number(value) else 1.0
        target = apply_fudge_to_target(share_target_from_difficulty(difficulty), self._fudge)
        if self._debug:
            effective = difficulty / self._fudge
            print(
                f"[debug] difficulty update reported={difficulty:.4f} "
                f"effective={effective:.4f}"
            )
        self._coordinator.update_share_target(target)

    def _set_extranonce(self, params: List[Any]) -> None:
        if len(params) < 2:
            return
        extranonce1_hex = _as_str(params[0])
        if extranonce1_hex is None:
            raise StratumError("invalid extranonce1")
        extranonce1 = _decode_hex(extranonce1_hex, "extranonce1")
        size = _as_u64(params[1])
        if size is None:
            raise StratumError("invalid extranonce2 size")
        self._coordinator.update_subscription(Subscription(extranonce1, size))

    def _notify(self, params: List[Any]) -> None:
        if len(params) < 9:
            raise StratumError("invalid mining.notify params")
        job_id, prevhash, coinbase1, coinbase2 = (_as_str(p) or "" for p in params[:4])
        branch_values = params[4]
        if not isinstance(branch_values, list):
            raise StratumError("invalid merkle branch")
        merkle_branch = [_as_str(node) or "" for node in branch_values]
        version, nbits, ntime = (_as_str(p) or "" for p in params[5:8])
        clean_jobs = params[8] if isinstance(params[8], bool) else False

        template = parse_job_template(
            job_id,
            prevhash,
            coinbase1,
            coinbase2,
            merkle_branch,
            version,
            nbits,
            ntime,
            clean_jobs,
        )
        print(f"New job {job_id} (clean={str(clean_jobs).lower()})")
        self._coordinator.install_job(template)

    def _set_target(self, params: List[Any]) -> None:
        target_hex = _as_str(params[0]) if params else None
        if target_hex is None:
            return
        target_bytes = _decode_hex(target_hex, "target")
        if len(target_bytes) != 32:
            return
        target = apply_fudge_to_target(int.from_bytes(target_bytes, "big"), self._fudge)
        if self._debug:
            print("[debug] share target override received")
        self._coordinator.update_share_target(target)

    def _handle_response(self, share: ShareSubmission, message: Any) -> None:
        accepted = _get(message, "result") is True
        details = (
            f"job={share.job_id} nonce={share.nonce} "
            f"extranonce2={share.extranonce2} hash={share.hash.hex()}"
        )
        if accepted:
            if share.is_block_candidate:
                print(f"Block candidate accepted! {details}")
            else:
                print(f"Share accepted: {details}")
            return
        error = _get(message, "error")
        reason = None
        if isinstance(error, list) and len(error) > 1:
            reason = _as_str(error[1])
        print(f"Share rejected: {details} ({reason or 'unknown error'})")

    async def _perform_handshake(self) -> None:
        print(f"Connecting to pool as {self._username}")
        subscribe_id = self._next_request_id()
        await self._send_request(subscribe_id, "mining.subscribe", [USER_AGENT])
        response = await self._wait_for_response(subscribe_id)
        extranonce1, extranonce2_size = parse_subscribe_result(response)
        self._coordinator.update_subscription(Subscription(extranonce1, extranonce2_size))

        authorize_id = self._next_request_id()
        await self._send_request(
            authorize_id, "mining.authorize", [self._username, self._password]
        )
        ensure_authorized(await self._wait_for_response(authorize_id))
        print("Authorized successfully")

    async def _wait_for_response(self, request_id: int) -> Any:
        while True:
            try:
                message = await asyncio.wait_for(self._inbound.get(), SUBSCRIBE_TIMEOUT)
            except asyncio.TimeoutError:
                raise StratumError("timeout waiting for stratum response") from None
            if _is_closed(message):
                raise StratumError("stratum connection closed")
            if _as_u64(_get(message, "id")) == request_id:
                return message
            await self.handle_notification(message)

    async def _send_request(self, request_id: int, method: str, params: List[Any]) -> None:
        writer = self._writer
        if writer is None or writer.is_closing():
            raise StratumError("failed to queue stratum request")
        text = json.dumps(
            {"id": request_id, "method": method, "params": params},
            separators=(",", ":"),
            ensure_ascii=False,
        )
        if self._debug:
            print(f"[debug] -> {text}")
        try:
            writer.write(text.encode("utf-8") + b"\n")
            await writer.drain()
        except OSError as exc:
            print(f"[stratum] write error: {exc}", file=sys.stderr)
            raise StratumError("failed to queue stratum request") from exc

    async def _read_messages(self, reader: asyncio.StreamReader) -> None:
        while True:
            try:
                raw = await reader.readline()
                if not raw:
                    break
                text = raw.decode("utf-8").rstrip()
            except (OSError, ValueError) as exc:
                print(f"[stratum] read error: {exc}", file=sys.stderr)
                break
            if self._debug:
                print(f"[debug] <- {text}")
            try:
                value = json.loads(text)
            except json.JSONDecodeError as exc:
                print(f"[stratum] failed to parse message: {exc}: {text}", file=sys.stderr)
                continue
            self._inbound.put_nowait(value)
        self._inbound.put_nowait({"type": "closed"})

    def _forward_shares(
        self,
        share_queue: "queue.Queue[ShareSubmission]",
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        while not self._stop.is_set():
            try:
                share = share_queue.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            try:
                loop.call_soon_threadsafe(self._shares.put_nowait, share)
            except RuntimeError:
                return

    def _next_request_id(self) -> int:
        request_id = self._next_id
        self._next_id += 1
        return request_id