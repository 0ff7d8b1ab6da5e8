"""
Unit tests for Web3Feed decoding and its behaviour against a local throttling endpoint.
"""

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from feewatch.core.fetch.ratelimit import DEFAULT_RETRY_DELAY_MS
from feewatch.core.fetch.retries import BackoffPolicy
from feewatch.core.source.base import DecodeError
from feewatch.core.source.event_source import EventSource
from feewatch.core.source.web3_feed import Web3Feed

CONTRACT = "0xbd6c7b0d2f68c2b7805d88388319cfb6ecb50ea9"
TOKEN = "0x2791bca1f2de4661ed88a30c99a7a9449aa84174"
INTEGRATOR = "0x1111111111111111111111111111111111111111"


def _word(value: int) -> bytes:
    return value.to_bytes(32, "big")


def _address_topic(address: str) -> bytes:
    return bytes(12) + bytes.fromhex(address[2:])


@pytest.fixture
def web3_feed():
    return Web3Feed("http://127.0.0.1:8545", CONTRACT)


def _raw_log(feed, integrator_fee=2**255, protocol_fee=42, topic=None):
    return {
        "address": feed.contract_address,
        "topics": [
            topic or bytes.fromhex(feed.event_topic[2:]),
            _address_topic(TOKEN),
            _address_topic(INTEGRATOR),
        ],
        "data": _word(integrator_fee) + _word(protocol_fee),
        "blockNumber": 61_500_000,
        "blockHash": b"\x01" * 32,
        "transactionHash": b"\xab" * 32,
        "transactionIndex": 3,
        "logIndex": 7,
        "removed": False,
    }


class TestWeb3Feed:
    def test_event_topic_is_hex_hash(self, web3_feed):
        assert web3_feed.event_topic.startswith("0x")
        assert len(web3_feed.event_topic) == 66
        int(web3_feed.event_topic, 16)

    def test_contract_address_is_checksummed(self, web3_feed):
        assert web3_feed.contract_address == "0xbD6C7B0d2f68c2b7805d88388319cfB6EcB50eA9"

    def test_decode_log(self, web3_feed):
        decoded = web3_feed.decode_log(_raw_log(web3_feed))

        assert decoded.token == TOKEN
        assert decoded.integrator == INTEGRATOR
        assert decoded.integrator_fee == 2**255
        assert decoded.protocol_fee == 42
        assert decoded.block_height == 61_500_000
        assert decoded.tx_hash == "0x" + "ab" * 32
        assert decoded.log_index == 7

    def test_decode_rejects_foreign_event(self, web3_feed):
        with pytest.raises(DecodeError):
            web3_feed.decode_log(_raw_log(web3_feed, topic=b"\x00" * 32))


@pytest.fixture
async def throttled_rpc():
    """Local JSON-RPC endpoint that answers every request with HTTP 429."""
    hits = []

    async def handle(request):
        hits.append(await request.json())
        return web.Response(status=429, text="Too Many Requests")

    app = web.Application()
    app.router.add_post("/", handle)
    server = TestServer(app)
    await server.start_server()
    yield str(server.make_url("/")), hits
    await server.close()


class TestRateLimitedEndpoint:
    @pytest.mark.asyncio
    async def test_provider_sends_a_single_request(self, throttled_rpc):
        url, hits = throttled_rpc
        feed = Web3Feed(url, CONTRACT)

        with pytest.raises(Exception):
            await feed.current_height()
        await feed.close()

        assert len(hits) == 1
        assert hits[0]["method"] == "eth_blockNumber"

    @pytest.mark.asyncio
    async def test_retries_wait_the_classified_delay(self, throttled_rpc, sleep_recorder):
        url, hits = throttled_rpc
        feed = Web3Feed(url, CONTRACT)
        source = EventSource(
            feed,
            "polygon",
            policy=BackoffPolicy(max_retries=2, base_delay_ms=1000),
            sleep=sleep_recorder,
        )

        with pytest.raises(Exception):
            await source.current_height()
        await feed.close()

        assert len(hits) == 3
        assert sleep_recorder.delays_ms == [DEFAULT_RETRY_DELAY_MS, DEFAULT_RETRY_DELAY_MS]
