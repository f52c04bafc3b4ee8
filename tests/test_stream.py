"""Tests for the streaming JSON-RPC connection."""

import asyncio
import json

import pytest

from creditsync.chain.stream import ChainStream
from creditsync.exceptions import ConfigurationError, RpcError, StreamClosedError

_CLOSED = object()


class FakeWebSocket:
    """Socket answering requests from a method -> result table."""

    def __init__(self, results=None):
        self.results = results or {}
        self.sent = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    def push(self, message):
        self._inbox.put_nowait(json.dumps(message))

    def hang_up(self):
        self._inbox.put_nowait(_CLOSED)

    async def send(self, raw):
        message = json.loads(raw)
        self.sent.append(message)
        result = self.results.get(message["method"])
        if result is None:
            return
        if isinstance(result, Exception):
            self.push({"id": message["id"], "error": {"code": -32000, "message": str(result)}})
        else:
            self.push({"id": message["id"], "result": result})

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def close(self):
        self.closed = True


def make_stream(ws, **kwargs):
    connected = {}

    async def connector(url, **options):
        connected.update(url=url, **options)
        return ws

    stream = ChainStream(url="wss://node.test", connector=connector, **kwargs)
    return stream, connected


@pytest.mark.asyncio
async def test_connect_uses_keepalive():
    ws = FakeWebSocket()
    stream, connected = make_stream(ws)

    await stream.connect()

    assert connected == {"url": "wss://node.test", "ping_interval": 20, "ping_timeout": 10}
    assert stream.is_connected
    await stream.close()
    assert ws.closed
    assert not stream.is_connected


@pytest.mark.asyncio
async def test_connect_without_url():
    stream = ChainStream(url="", connector=lambda *a, **k: None)

    with pytest.raises(ConfigurationError):
        await stream.connect()


@pytest.mark.asyncio
async def test_request_matches_response():
    ws = FakeWebSocket({"eth_blockNumber": "0x10"})
    stream, _ = make_stream(ws)
    await stream.connect()

    assert await stream.request("eth_blockNumber") == "0x10"
    await stream.close()


@pytest.mark.asyncio
async def test_request_error():
    ws = FakeWebSocket({"eth_getBlockByNumber": ValueError("bad block")})
    stream, _ = make_stream(ws)
    await stream.connect()

    with pytest.raises(RpcError, match="bad block"):
        await stream.request("eth_getBlockByNumber", ["0x1", True])
    await stream.close()


@pytest.mark.asyncio
async def test_request_timeout():
    stream, _ = make_stream(FakeWebSocket(), request_timeout=0.05)
    await stream.connect()

    with pytest.raises(RpcError, match="timed out"):
        await stream.request("eth_chainId")
    await stream.close()


@pytest.mark.asyncio
async def test_subscription_notifications_routed():
    ws = FakeWebSocket({"eth_subscribe": "0xabc"})
    stream, _ = make_stream(ws)
    await stream.connect()
    heads = []

    subscription_id = await stream.subscribe(["newHeads"], heads.append)
    ws.push({"method": "eth_subscription", "params": {"subscription": "0xabc", "result": {"number": "0x1"}}})
    ws.push({"method": "eth_subscription", "params": {"subscription": "0xother", "result": {}}})
    await asyncio.sleep(0.01)

    assert subscription_id == "0xabc"
    assert heads == [{"number": "0x1"}]
    assert stream.subscriptions == ["0xabc"]
    await stream.close()


@pytest.mark.asyncio
async def test_handler_error_does_not_stop_reader():
    ws = FakeWebSocket({"eth_subscribe": "0xabc", "eth_blockNumber": "0x2"})
    stream, _ = make_stream(ws)
    await stream.connect()

    def broken(result):
        raise ValueError("bad payload")

    await stream.subscribe(["newHeads"], broken)
    ws.push({"method": "eth_subscription", "params": {"subscription": "0xabc", "result": {}}})

    assert await stream.request("eth_blockNumber") == "0x2"
    await stream.close()


@pytest.mark.asyncio
async def test_unsubscribe_all():
    ws = FakeWebSocket({"eth_subscribe": "0xabc", "eth_unsubscribe": True})
    stream, _ = make_stream(ws)
    await stream.connect()
    await stream.subscribe(["newHeads"], lambda r: None)

    await stream.unsubscribe_all()

    assert stream.subscriptions == []
    assert ws.sent[-1]["method"] == "eth_unsubscribe"
    assert ws.sent[-1]["params"] == ["0xabc"]
    await stream.close()


@pytest.mark.asyncio
async def test_run_raises_when_remote_hangs_up():
    ws = FakeWebSocket()
    stream, _ = make_stream(ws)
    await stream.connect()

    ws.hang_up()

    with pytest.raises(StreamClosedError):
        await asyncio.wait_for(stream.run(), 1)
    await stream.close()


@pytest.mark.asyncio
async def test_pending_request_failed_on_hang_up():
    ws = FakeWebSocket()
    stream, _ = make_stream(ws, request_timeout=5)
    await stream.connect()

    pending = asyncio.create_task(stream.request("eth_chainId"))
    await asyncio.sleep(0.01)
    ws.hang_up()

    with pytest.raises(StreamClosedError):
        await asyncio.wait_for(pending, 1)
    await stream.close()
