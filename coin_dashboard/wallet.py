"""Wallet RPC subprocess supervision and wallet session operations."""

from __future__ import annotations

import asyncio
import logging
from decimal import ROUND_DOWN, ROUND_FLOOR, Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Set, Union

from .config import WALLET_RPC_BINARY, Settings
from .errors import WalletRpcNotReady
from .process import ManagedProcess, Spawner, resolve_binary, spawn, start_background
from .rpc import WalletClient

logger = logging.getLogger(__name__)

ATOMIC_UNITS = Decimal(10) ** 12
DISPLAY_QUANTUM = Decimal("0.0001")
READY_MARKERS = ("Starting wallet RPC server",)
WALLET_EXTENSION = ".keys"

EnsureResult = Literal["running", "external", "started", "unavailable"]


def to_atomic(amount: Union[str, float, int, Decimal]) -> int:
    """Convert a display amount to atomic units, flooring any sub-atomic remainder."""

    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid amount: {amount!r}") from exc
    if not value.is_finite():
        raise ValueError(f"Invalid amount: {amount!r}")
    return int((value * ATOMIC_UNITS).to_integral_value(rounding=ROUND_FLOOR))


def to_display(atomic: Optional[Union[int, str]]) -> str:
    """Render atomic units with four decimals, truncating rather than rounding."""

    value = Decimal(int(atomic or 0)) / ATOMIC_UNITS
    return str(value.quantize(DISPLAY_QUANTUM, rounding=ROUND_DOWN))


def list_wallets(wallet_dir: Path) -> List[str]:
    try:
        entries = sorted(wallet_dir.iterdir())
    except OSError:
        return []
    return [entry.name[: -len(WALLET_EXTENSION)] for entry in entries if entry.name.endswith(WALLET_EXTENSION)]


class WalletRpcSupervisor:
    """Starts ``cocaine-wallet-rpc`` on first use and keeps at most one instance."""

    def __init__(
        self,
        settings: Settings,
        client: WalletClient,
        spawner: Spawner = spawn,
    ) -> None:
        self.settings = settings
        self.client = client
        self.handle: Optional[ManagedProcess] = None
        self._spawn = spawner
        self._lock = asyncio.Lock()
        self._tasks: Set["asyncio.Task[None]"] = set()

    def command(self, binary: str) -> List[str]:
        settings = self.settings
        return [
            binary,
            "--rpc-bind-ip",
            "127.0.0.1",
            "--rpc-bind-port",
            str(settings.wallet_rpc_port),
            "--daemon-address",
            settings.daemon_address,
            "--wallet-dir",
            str(settings.wallet_dir),
            "--disable-rpc-login",
        ]

    async def _wait_for_exit(self, handle: ManagedProcess, ready: "asyncio.Future[bool]") -> None:
        return_code = await handle.wait()
        logger.info("Wallet RPC process %s exited with %s", handle.pid, return_code)
        if not ready.done():
            ready.set_result(False)
        if handle is self.handle:
            self.handle = None

    async def ensure_started(self) -> EnsureResult:
        async with self._lock:
            if self.handle and self.handle.alive:
                return "running"
            if await self.client.ping():
                return "external"

            binary = resolve_binary(WALLET_RPC_BINARY, self.settings.bin_dir)
            if binary is None:
                logger.warning("Wallet RPC binary not found; wallet features unavailable")
                return "unavailable"

            loop = asyncio.get_running_loop()
            ready: "asyncio.Future[bool]" = loop.create_future()

            def on_line(line: str) -> None:
                if not ready.done() and any(marker in line for marker in READY_MARKERS):
                    ready.set_result(True)

            self.settings.wallet_dir.mkdir(parents=True, exist_ok=True)
            try:
                handle = await self._spawn(
                    "wallet_rpc",
                    self.command(str(binary)),
                    log_path=self.settings.wallet_log_path,
                    capture=True,
                    on_line=on_line,
                )
            except OSError as exc:
                logger.warning("Failed to start wallet RPC: %s", exc)
                return "unavailable"

            self.handle = handle
            start_background(self._tasks, self._wait_for_exit(handle, ready))

            timeout = self.settings.wallet_ready_timeout
            try:
                came_up = await asyncio.wait_for(ready, timeout=timeout)
            except asyncio.TimeoutError as exc:
                raise WalletRpcNotReady(
                    f"Wallet RPC did not report readiness within {timeout:.0f}s. "
                    f"See {self.settings.wallet_log_path}."
                ) from exc
            if not came_up:
                last_line = handle.output_tail[-1] if handle.output_tail else None
                hint = f" Last output: {last_line}" if last_line else ""
                raise WalletRpcNotReady(f"Wallet RPC exited during startup.{hint}")
            return "started"

    async def stop(self) -> None:
        """Terminate the owned child on dashboard shutdown."""

        handle = self.handle
        if handle and handle.terminate():
            logger.info("Sent termination signal to wallet RPC pid %s", handle.pid)
        self.handle = None


class WalletService:
    """Wallet operations over the wallet RPC, plus the single open-wallet slot."""

    def __init__(self, settings: Settings, client: WalletClient, supervisor: WalletRpcSupervisor) -> None:
        self.settings = settings
        self.client = client
        self.supervisor = supervisor
        self.current: Optional[str] = None

    async def _call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        await self.supervisor.ensure_started()
        return await self.client.call(method, params)

    def wallets(self) -> Dict[str, Any]:
        return {"wallets": list_wallets(self.settings.wallet_dir), "current": self.current}

    async def create(self, name: str, password: str = "") -> Dict[str, Any]:
        await self._call("create_wallet", {"filename": name, "password": password, "language": "English"})
        self.current = name
        seed = await self.client.call("query_key", {"key_type": "mnemonic"})
        address = await self.client.call("get_address")
        return {"success": True, "name": name, "address": address.get("address"), "seed": seed.get("key")}

    async def open(self, name: str, password: str = "") -> Dict[str, Any]:
        await self._call("open_wallet", {"filename": name, "password": password})
        self.current = name
        address = await self.client.call("get_address")
        return {"success": True, "name": name, "address": address.get("address")}

    async def restore(self, name: str, seed: str, password: str = "", restore_height: int = 0) -> Dict[str, Any]:
        result = await self._call(
            "restore_deterministic_wallet",
            {
                "filename": name,
                "password": password,
                "seed": seed,
                "restore_height": restore_height,
                "language": "English",
            },
        )
        self.current = name
        return {"success": True, "name": name, "address": result.get("address"), "info": result.get("info")}

    async def balance(self) -> Dict[str, Any]:
        result = await self._call("get_balance")
        balance = int(result.get("balance") or 0)
        unlocked = int(result.get("unlocked_balance") or 0)
        return {
            "balance": balance,
            "unlocked_balance": unlocked,
            "balance_display": to_display(balance),
            "unlocked_display": to_display(unlocked),
        }

    async def address(self) -> Dict[str, Any]:
        result = await self._call("get_address")
        return {"address": result.get("address"), "addresses": result.get("addresses") or []}

    async def transfers(self) -> Dict[str, Any]:
        result = await self._call("get_transfers", {"in": True, "out": True, "pending": True, "pool": True})

        def with_display(entries: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
            return [dict(entry, amount_display=to_display(entry.get("amount"))) for entry in entries or []]

        return {
            "incoming": with_display(result.get("in")),
            "outgoing": with_display(result.get("out")),
            "pending": with_display(result.get("pending")),
            "pool": with_display(result.get("pool")),
        }

    async def send(self, address: str, atomic_amount: int, payment_id: Optional[str] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "destinations": [{"address": address, "amount": atomic_amount}],
            "priority": 1,
            "ring_size": 16,
            "get_tx_key": True,
        }
        if payment_id:
            params["payment_id"] = payment_id
        result = await self._call("transfer", params)
        return {
            "success": True,
            "tx_hash": result.get("tx_hash"),
            "tx_key": result.get("tx_key"),
            "fee": int(result.get("fee") or 0) / 1e12,
        }

    async def refresh(self) -> Dict[str, Any]:
        result = await self._call("refresh")
        return {"blocks_fetched": result.get("blocks_fetched"), "received_money": result.get("received_money")}

    async def close(self) -> Dict[str, Any]:
        try:
            await self._call("close_wallet")
        finally:
            self.current = None
        return {"success": True}

    async def status(self) -> Dict[str, Any]:
        height = await self._call("get_height")
        address = await self.client.call("get_address")
        return {
            "open": bool(address.get("address")),
            "name": self.current,
            "address": address.get("address"),
            "height": height.get("height"),
        }
