"""Shared fixtures: isolated settings, fake child processes and a fake node/wallet."""

from __future__ import annotations

import asyncio
import json
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from coin_dashboard.config import Settings
from coin_dashboard.process import ManagedProcess


class FakeProcess:
    """Stands in for ``asyncio.subprocess.Process``."""

    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.returncode: Optional[int] = None
        self.terminated = 0
        self._exited: Optional[asyncio.Event] = None

    def _event(self) -> asyncio.Event:
        if self._exited is None:
            self._exited = asyncio.Event()
        return self._exited

    def terminate(self) -> None:
        self.terminated += 1
        self.exit(-15)

    def exit(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
        self._event().set()

    async def wait(self) -> int:
        await self._event().wait()
        return self.returncode


class FakeSpawner:
    def __init__(self, emit: Optional[List[str]] = None, fail_kinds: tuple = ()) -> None:
        self.emit = emit or []
        self.fail_kinds = fail_kinds
        self.calls: List[Dict[str, Any]] = []
        self.handles: List[ManagedProcess] = []

    def kinds(self) -> List[str]:
        return [call["kind"] for call in self.calls]

    async def __call__(self, kind, argv, *, log_path=None, append=True, capture=False, detach=False, on_line=None, cwd=None):
        self.calls.append(
            {"kind": kind, "argv": list(argv), "log_path": log_path, "append": append, "detach": detach}
        )
        if kind in self.fail_kinds:
            raise FileNotFoundError(argv[0])
        if log_path is not None and not append:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_path.write_text("", encoding="utf-8")
        handle = ManagedProcess(kind=kind, process=FakeProcess(1000 + len(self.calls)), argv=list(argv), log_path=log_path)
        self.handles.append(handle)
        if on_line:
            for line in self.emit:
                on_line(line)
        return handle


class FakeNode:
    """Serves the daemon (port 19081) and wallet RPC (port 19083) over httpx.MockTransport."""

    def __init__(self) -> None:
        self.daemon_up = True
        self.wallet_up = True
        self.height = 5
        self.difficulty = 12345
        self.mining_active = False
        self.mining_address: Optional[str] = None
        self.mining_threads = 0
        self.requests: List[str] = []
        self.wallet_results: Dict[str, Any] = {}
        self.wallet_errors: Dict[str, str] = {}
        self.daemon_rpc_overrides: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {}

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        if request.url.port == 19083:
            return self._wallet(request)
        return self._daemon(request)

    def _daemon(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append(path)
        if not self.daemon_up:
            raise httpx.ConnectError("connection refused", request=request)
        if path == "/get_info":
            return httpx.Response(200, json=self.info())
        if path == "/start_mining":
            self.mining_active = True
            self.mining_address = request.url.params.get("miner_address")
            self.mining_threads = int(request.url.params.get("threads_count", "0"))
            return httpx.Response(200, json={"status": "OK"})
        if path == "/stop_mining":
            self.mining_active = False
            return httpx.Response(200, json={"status": "OK"})
        if path == "/mining_status":
            return httpx.Response(
                200,
                json={
                    "status": "OK",
                    "active": self.mining_active,
                    "speed": 321 if self.mining_active else 0,
                    "threads_count": self.mining_threads,
                    "address": self.mining_address or "",
                },
            )
        if path == "/json_rpc":
            body = json.loads(request.content)
            method = body["method"]
            self.requests.append(method)
            override = self.daemon_rpc_overrides.get(method)
            if override:
                return httpx.Response(200, json=override(body.get("params") or {}))
            return httpx.Response(200, json=self._daemon_rpc(method, body.get("params") or {}))
        return httpx.Response(404, json={"error": "not found"})

    def info(self) -> Dict[str, Any]:
        return {
            "status": "OK",
            "height": self.height,
            "difficulty": self.difficulty,
            "synchronized": True,
            "outgoing_connections_count": 3,
            "incoming_connections_count": 1,
        }

    def _daemon_rpc(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        envelope: Dict[str, Any] = {"jsonrpc": "2.0", "id": "0"}
        if method == "get_info":
            envelope["result"] = self.info()
        elif method == "get_block_header_by_height":
            height = params["height"]
            envelope["result"] = {
                "block_header": {
                    "height": height,
                    "hash": f"hash{height}",
                    "timestamp": 1700000000 + height,
                    "reward": 17_000_000_000_000,
                    "difficulty": self.difficulty,
                    "block_size": 300 + height,
                    "num_txes": height % 2,
                }
            }
        elif method == "get_last_block_header":
            envelope["result"] = {"block_header": {"height": self.height - 1}}
        elif method == "get_connections":
            envelope["result"] = {
                "connections": [
                    {
                        "address": "10.0.0.2:18080",
                        "host": "10.0.0.2",
                        "port": "18080",
                        "height": 4,
                        "incoming": False,
                        "state": "normal",
                        "live_time": 60,
                        "peer_id": "abc",
                        "recv_count": 10,
                    }
                ]
            }
        else:
            envelope["error"] = {"code": -32601, "message": "Method not found"}
        return envelope

    def _wallet(self, request: httpx.Request) -> httpx.Response:
        if not self.wallet_up:
            raise httpx.ConnectError("connection refused", request=request)
        body = json.loads(request.content)
        method = body["method"]
        self.requests.append(f"wallet:{method}")
        if method in self.wallet_errors:
            return httpx.Response(
                200,
                json={"jsonrpc": "2.0", "id": "0", "error": {"code": -1, "message": self.wallet_errors[method]}},
            )
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": "0", "result": self.wallet_results.get(method, {})})


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    base = Settings().with_home(tmp_path / "home")
    return replace(
        base,
        bin_dir=tmp_path / "bin",
        daemon_settle_seconds=0.0,
        wallet_ready_timeout=1.0,
        miner_stop_grace=0.1,
        open_browser=False,
    )


@pytest.fixture
def node() -> FakeNode:
    return FakeNode()


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner(emit=["Binding on 127.0.0.1 (IPv4):19083", "Starting wallet RPC server"])


def install_binary(settings: Settings, name: str) -> Path:
    settings.bin_dir.mkdir(parents=True, exist_ok=True)
    path = settings.bin_dir / name
    path.write_text("#!/bin/sh\n", encoding="utf-8")
    path.chmod(0o755)
    return path


@pytest.fixture(autouse=True)
def no_binaries_on_path(monkeypatch: pytest.MonkeyPatch) -> None:
    """Only binaries placed in the test bin dir are visible."""

    monkeypatch.setattr("coin_dashboard.process.shutil.which", lambda name: None)
