import pytest

from coin_dashboard.rpc import DaemonClient
from coin_dashboard.status import StatusAggregator


@pytest.fixture
def aggregator(settings, node):
    return StatusAggregator(DaemonClient(settings.daemon_http_url, transport=node.transport()))


@pytest.mark.asyncio
async def test_recent_blocks_walks_down_from_tip(aggregator):
    blocks = await aggregator.recent_blocks()

    assert [block["height"] for block in blocks] == [4, 3, 2, 1, 0]
    assert blocks[0] == {
        "height": 4,
        "hash": "hash4",
        "timestamp": 1700000004,
        "reward": 17_000_000_000_000,
        "difficulty": 12345,
        "size": 304,
        "txs": 0,
    }


@pytest.mark.asyncio
async def test_recent_blocks_respects_limit(aggregator, node):
    node.height = 100

    blocks = await aggregator.recent_blocks(limit=3)

    assert [block["height"] for block in blocks] == [99, 98, 97]


@pytest.mark.asyncio
async def test_recent_blocks_empty_chain(aggregator, node):
    node.height = 0

    assert await aggregator.recent_blocks() == []


@pytest.mark.asyncio
async def test_recent_blocks_collapses_failures(aggregator, node):
    node.daemon_up = False
    assert await aggregator.recent_blocks() == []

    node.daemon_up = True
    node.daemon_rpc_overrides["get_block_header_by_height"] = lambda params: {
        "jsonrpc": "2.0",
        "id": "0",
        "error": {"code": -5, "message": "Requested block height too big"},
    }
    assert await aggregator.recent_blocks() == []


@pytest.mark.asyncio
async def test_get_info_passes_envelope_through(aggregator):
    envelope = await aggregator.get_info()

    assert envelope["result"]["height"] == 5
    assert envelope["jsonrpc"] == "2.0"


@pytest.mark.asyncio
async def test_block_by_height(aggregator):
    envelope = await aggregator.block(2)

    assert envelope["result"]["block_header"]["hash"] == "hash2"


@pytest.mark.asyncio
async def test_peers(aggregator):
    peers = await aggregator.peers()

    assert peers == [
        {
            "address": "10.0.0.2:18080",
            "host": "10.0.0.2",
            "port": "18080",
            "height": 4,
            "incoming": False,
            "state": "normal",
            "live_time": 60,
            "peer_id": "abc",
        }
    ]
