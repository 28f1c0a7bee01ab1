"""Read-only daemon views composed for the dashboard."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

import httpx

from .rpc import DaemonClient, JsonRpcError

logger = logging.getLogger(__name__)

RECENT_BLOCKS_LIMIT = 20


def _block_summary(header: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "height": header.get("height"),
        "hash": header.get("hash"),
        "timestamp": header.get("timestamp"),
        "reward": header.get("reward"),
        "difficulty": header.get("difficulty"),
        "size": header.get("block_size"),
        "txs": header.get("num_txes"),
    }


def _peer_summary(connection: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "address": connection.get("address"),
        "host": connection.get("host"),
        "port": connection.get("port"),
        "height": connection.get("height"),
        "incoming": bool(connection.get("incoming")),
        "state": connection.get("state"),
        "live_time": connection.get("live_time"),
        "peer_id": connection.get("peer_id"),
    }


class StatusAggregator:
    def __init__(self, daemon: DaemonClient) -> None:
        self.daemon = daemon

    async def get_info(self) -> Dict[str, Any]:
        return await self.daemon.json_rpc("get_info")

    async def last_block(self) -> Dict[str, Any]:
        return await self.daemon.json_rpc("get_last_block_header")

    async def block(self, height: int) -> Dict[str, Any]:
        return await self.daemon.json_rpc("get_block_header_by_height", {"height": height})

    async def peers(self) -> List[Dict[str, Any]]:
        result = await self.daemon.call("get_connections")
        return [_peer_summary(connection) for connection in result.get("connections") or []]

    async def recent_blocks(self, limit: int = RECENT_BLOCKS_LIMIT) -> List[Dict[str, Any]]:
        """Headers from the tip downwards, fetched one at a time.

        Returns an empty list if any lookup fails.
        """

        try:
            info = await self.daemon.call("get_info")
            height = int(info.get("height") or 0)
            blocks: List[Dict[str, Any]] = []
            for block_height in range(height - 1, -1, -1):
                if len(blocks) >= limit:
                    break
                result = await self.daemon.call("get_block_header_by_height", {"height": block_height})
                blocks.append(_block_summary(result["block_header"]))
            return blocks
        except (httpx.HTTPError, JsonRpcError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Recent blocks unavailable: %s", exc)
            return []
