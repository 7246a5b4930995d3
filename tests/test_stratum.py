import asyncio
import contextlib
import json
import queue

import pytest

from cpuminer.cli import Config
from cpuminer.jobs import ShareSubmission, Subscription, parse_job_template
from cpuminer.stratum import (
    DEFAULT_PORT,
    StratumClient,
    StratumError,
    ensure_authorized,
    parse_pool_url,
    parse_subscribe_result,
)
from cpuminer.targets import MAX_TARGET, apply_fudge_to_target, share_target_from_difficulty

NOTIFY_PARAMS = [
    "job1",
    "00" * 32,
    "01",
    "02",
    [],
    "20000000",
    "1d00ffff",
    "66bc7272",
    True,
]


class _RecordingCoordinator:
    def __init__(self):
        self.events = []
        self.shares = queue.Queue()

    def take_share_queue(self):
        return self.shares

    def update_subscription(self, subscription):
        self.events.append(("subscription", subscription))

    def update_share_target(self, target):
        self.events.append(("target", target))

    def install_job(self, template):
        self.events.append(("job", template))


def _config(port=DEFAULT_PORT, fudge=1.0, debug=False):
    password = "password"
    return Config(
        pool_url=f"stratum+tcp://127.0.0.1:{port}",
        username="user",
        password=password,
        fudge=fudge,
        debug=debug,
    )


async def _send(writer, obj):
    writer.write(json.dumps(obj).encode() + b"\n")
    await writer.drain()


async def _handshake(reader, writer, requests, authorized=True):
    subscribe = json.loads(await reader.readline())
    requests.append(subscribe)
    await _send(writer, {"id": subscribe["id"], "result": [[], "0a0b", 4], "error": None})
    authorize = json.loads(await reader.readline())
    requests.append(authorize)
    await _send(writer, {"id": authorize["id"], "result": authorized, "error": None})


@contextlib.asynccontextmanager
async def _pool(script):
    async def handle(reader, writer):
        try:
            await script(reader, writer)
        finally:
            writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        yield port
    finally:
        server.close()
        await server.wait_closed()


def test_parse_pool_url_with_port():
    assert parse_pool_url("stratum+tcp://pool.example.com:4444") == ("pool.example.com", 4444)


def test_parse_pool_url_default_port():
    assert parse_pool_url("stratum+tcp://pool.example.com") == ("pool.example.com", 3333)


def test_parse_pool_url_rejects_other_scheme():
    with pytest.raises(StratumError, match="unsupported scheme http"):
        parse_pool_url("http://pool.example.com:3333")


def test_parse_pool_url_requires_host():
    with pytest.raises(StratumError, match="missing host"):
        parse_pool_url("stratum+tcp://:3333")


def test_parse_subscribe_result_reads_extranonce():
    response = {"id": 1, "result": [[["mining.notify", "x"]], "abcd", 4], "error": None}
    assert parse_subscribe_result(response) == (bytes.fromhex("abcd"), 4)


@pytest.mark.parametrize(
    "response, message",
    [
        ({"result": True}, "invalid subscribe response"),
        ({"result": [[], "abcd"]}, "missing extranonce values"),
        ({"result": [[], 5, 4]}, "invalid extranonce1"),
        ({"result": [[], "abc", 4]}, "invalid extranonce1 hex"),
        ({"result": [[], "abcd", -1]}, "invalid extranonce2 size"),
    ],
)
def test_parse_subscribe_result_errors(response, message):
    with pytest.raises(StratumError, match=message):
        parse_subscribe_result(response)


def test_ensure_authorized_accepts_true_and_rejects_false():
    assert ensure_authorized({"result": True}) is None
    with pytest.raises(StratumError, match="authorization rejected by pool"):
        ensure_authorized({"result": False})


@pytest.mark.parametrize(
    "response, message",
    [
        ({"result": None}, "unexpected authorize response: null"),
        ({"error": None}, "authorize response missing result"),
    ],
)
def test_ensure_authorized_errors(response, message):
    with pytest.raises(StratumError, match=message):
        ensure_authorized(response)


@pytest.mark.asyncio
async def test_set_difficulty_applies_fudge():
    coordinator = _RecordingCoordinator()
    client = StratumClient(_config(fudge=2.0), coordinator)
    await client.handle_notification({"method": "mining.set_difficulty", "params": [8]})
    expected = apply_fudge_to_target(share_target_from_difficulty(8.0), 2.0)
    assert coordinator.events == [("target", expected)]


@pytest.mark.asyncio
async def test_set_difficulty_non_number_means_one():
    coordinator = _RecordingCoordinator()
    client = StratumClient(_config(), coordinator)
    await client.handle_notification({"method": "mining.set_difficulty", "params": ["x"]})
    await client.handle_notification({"method": "mining.set_difficulty", "params": []})
    assert coordinator.events == [("target", MAX_TARGET)]


@pytest.mark.asyncio
async def test_set_difficulty_debug_output(capsys):
    client = StratumClient(_config(debug=True), _RecordingCoordinator())
    await client.handle_notification({"method": "mining.set_difficulty", "params": [4]})
    assert "[debug] difficulty update reported=4.0000 effective=4.0000" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_set_extranonce_updates_subscription():
    coordinator = _RecordingCoordinator()
    client = StratumClient(_config(), coordinator)
    await client.handle_notification({"method": "mining.set_extranonce", "params": ["0102", 4]})
    assert coordinator.events == [("subscription", Subscription(bytes.fromhex("0102"), 4))]


@pytest.mark.asyncio
async def test_set_extranonce_bad_hex():
    client = StratumClient(_config(), _RecordingCoordinator())
    with pytest.raises(StratumError, match="invalid extranonce1 hex"):
        await client.handle_notification({"method": "mining.set_extranonce", "params": ["zz", 4]})


@pytest.mark.asyncio
async def test_notify_installs_parsed_job(capsys):
    coordinator = _RecordingCoordinator()
    client = StratumClient(_config(), coordinator)
    await client.handle_notification({"method": "mining.notify", "params": NOTIFY_PARAMS})
    assert coordinator.events == [("job", parse_job_template(*NOTIFY_PARAMS))]
    assert "New job job1 (clean=true)" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_notify_with_too_few_params():
    client = StratumClient(_config(), _RecordingCoordinator())
    with pytest.raises(StratumError, match="invalid mining.notify params"):
        await client.handle_notification({"method": "mining.notify", "params": NOTIFY_PARAMS[:8]})


@pytest.mark.asyncio
async def test_set_target_uses_big_endian_value():
    coordinator = _RecordingCoordinator()
    client = StratumClient(_config(), coordinator)
    target_hex = "00000000" + "ff" * 28
    await client.handle_notification({"method": "mining.set_target", "params": [target_hex]})
    await client.handle_notification({"method": "mining.set_target", "params": ["ffff"]})
    assert coordinator.events == [("target", int(target_hex, 16))]


@pytest.mark.asyncio
async def test_unknown_messages_are_ignored():
    coordinator = _RecordingCoordinator()
    client = StratumClient(_config(), coordinator)
    await client.handle_notification({"method": "client.show_message", "params": ["hi"]})
    await client.process_message({"id": 42, "result": True})
    assert coordinator.events == []


@pytest.mark.asyncio
async def test_process_message_closed_raises():
    client = StratumClient(_config(), _RecordingCoordinator())
    with pytest.raises(StratumError, match="closed by remote"):
        await client.process_message({"type": "closed"})


@pytest.mark.asyncio
async def test_submit_share_without_connection():
    client = StratumClient(_config(), _RecordingCoordinator())
    share = ShareSubmission("job1", "00000000", "66bc7272", "00000001", bytes(32), False)
    with pytest.raises(StratumError, match="failed to queue stratum request"):
        await client.submit_share(share)


@pytest.mark.asyncio
async def test_handshake_and_run_install_job():
    requests = []

    async def script(reader, writer):
        await _send(writer, {"id": None, "method": "mining.set_difficulty", "params": [1]})
        await _handshake(reader, writer, requests)
        await _send(writer, {"id": None, "method": "mining.notify", "params": NOTIFY_PARAMS})

    coordinator = _RecordingCoordinator()
    async with _pool(script) as port:
        client = StratumClient(_config(port), coordinator)
        try:
            await client.connect()
            with pytest.raises(StratumError, match="closed by remote"):
                await client.run()
        finally:
            await client.close()

    assert [r["method"] for r in requests] == ["mining.subscribe", "mining.authorize"]
    assert [r["id"] for r in requests] == [1, 2]
    assert requests[1]["params"] == ["user", "password"]
    assert coordinator.events == [
        ("target", MAX_TARGET),
        ("subscription", Subscription(bytes.fromhex("0a0b"), 4)),
        ("job", parse_job_template(*NOTIFY_PARAMS)),
    ]


@pytest.mark.asyncio
async def test_connect_fails_when_authorization_rejected():
    async def script(reader, writer):
        await _handshake(reader, writer, [], authorized=False)

    async with _pool(script) as port:
        client = StratumClient(_config(port), _RecordingCoordinator())
        try:
            with pytest.raises(StratumError, match="authorization rejected by pool"):
                await client.connect()
        finally:
            await client.close()


@pytest.mark.parametrize(
    "response, is_block, expected",
    [
        ({"result": True, "error": None}, False, "Share accepted: "),
        ({"result": True, "error": None}, True, "Block candidate accepted! "),
        ({"result": None, "error": [23, "low difficulty", None]}, False, "Share rejected: "),
    ],
)
@pytest.mark.asyncio
async def test_share_is_submitted_and_reported(capsys, response, is_block, expected):
    requests = []

    async def script(reader, writer):
        await _handshake(reader, writer, requests)
        submit = json.loads(await reader.readline())
        requests.append(submit)
        await _send(writer, dict(response, id=submit["id"]))

    coordinator = _RecordingCoordinator()
    digest = bytes(range(32))
    coordinator.shares.put(
        ShareSubmission("job1", "00000000", "66bc7272", "00000001", digest, is_block)
    )
    async with _pool(script) as port:
        client = StratumClient(_config(port), coordinator)
        try:
            await client.connect()
            with pytest.raises(StratumError, match="closed by remote"):
                await client.run()
        finally:
            await client.close()

    assert requests[2] == {
        "id": 3,
        "method": "mining.submit",
        "params": ["user", "job1", "00000000", "66bc7272", "00000001"],
    }
    out = capsys.readouterr().out
    line = f"{expected}job=job1 nonce=00000001 extranonce2=00000000 hash={digest.hex()}"
    assert line in out
    if response["result"] is not True:
        assert "(low difficulty)" in out