"""httpx clients for the daemon and wallet RPC endpoints."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class JsonRpcError(RuntimeError):
    """The remote side answered with a JSON-RPC error envelope."""

    def __init__(self, method: str, code: Optional[int], message: str) -> None:
        super().__init__(message)
        self.method = method
        self.code = code
        self.message = message


class JsonRpcClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self, timeout: Optional[float] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(timeout if timeout is not None else self.timeout),
            transport=self._transport,
        )

    async def json_rpc(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """POST a JSON-RPC request and return the raw response envelope."""

        body = {"jsonrpc": "2.0", "id": "0", "method": method, "params": params or {}}
        async with self._client(timeout) as client:
            response = await client.post(f"{self.base_url}/json_rpc", json=body)
        response.raise_for_status()
        return response.json()

    async def call(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Like :meth:`json_rpc` but unwrap ``result`` and raise on ``error``."""

        envelope = await self.json_rpc(method, params, timeout=timeout)
        error = envelope.get("error")
        if error:
            if isinstance(error, dict):
                raise JsonRpcError(method, error.get("code"), str(error.get("message") or error))
            raise JsonRpcError(method, None, str(error))
        return envelope.get("result") or {}


class DaemonClient(JsonRpcClient):
    """JSON-RPC plus the daemon's plain HTTP endpoints."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        probe_timeout: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(base_url, timeout=timeout, transport=transport)
        self.probe_timeout = probe_timeout

    async def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        async with self._client(timeout) as client:
            response = await client.get(f"{self.base_url}{path}", params=params)
        response.raise_for_status()
        return response.json()

    async def probe(self) -> Optional[Dict[str, Any]]:
        """Return ``/get_info`` if the daemon answers within the probe timeout."""

        try:
            return await self.get("/get_info", timeout=self.probe_timeout)
        except (httpx.HTTPError, ValueError) as exc:
            logger.debug("Daemon probe failed: %s", exc)
            return None

    async def start_mining(self, address: str, threads: int) -> Dict[str, Any]:
        return await self.get(
            "/start_mining",
            params={"miner_address": address, "threads_count": threads},
        )

    async def stop_mining(self) -> Dict[str, Any]:
        return await self.get("/stop_mining")

    async def mining_status(self) -> Dict[str, Any]:
        return await self.get("/mining_status")

    async def difficulty(self) -> int:
        info = await self.get("/get_info", timeout=self.probe_timeout)
        return int(info.get("difficulty") or 0)


class WalletClient(JsonRpcClient):
    async def ping(self, timeout: float = 1.0) -> bool:
        """True when a wallet RPC server already answers on the configured port."""

        try:
            await self.json_rpc("get_version", timeout=timeout)
        except (httpx.HTTPError, ValueError):
            return False
        return True
