"""Mining orchestration across the daemon's built-in miner and an external xmrig.

Only one backend is ever active. Every ``start`` tears down whatever might be
running first (including daemon-side mining the dashboard did not start), then
picks a backend with :func:`choose_backend`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Set, Union

import httpx
import psutil

from .config import XMRIG_BINARY, Settings
from .errors import MiningStartError, MissingAddress, SupervisorBusy
from .log_tail import LogTail, MiningMetrics, parse_miner_log
from .process import ManagedProcess, Spawner, resolve_binary, spawn, start_background
from .rpc import DaemonClient

logger = logging.getLogger(__name__)

POW_ALGORITHM = "rx/0"
MiningState = Literal["idle", "running_builtin", "running_external"]


def _now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def default_thread_count() -> int:
    return max(1, (psutil.cpu_count(logical=True) or 1) - 1)


@dataclass(frozen=True)
class BuiltinBackend:
    name: str = "builtin"


@dataclass(frozen=True)
class ExternalBackend:
    binary: Path
    name: str = "xmrig"


MiningBackend = Union[BuiltinBackend, ExternalBackend]


def choose_backend(prefer_builtin: bool, external_binary: Optional[Path]) -> MiningBackend:
    if not prefer_builtin and external_binary is not None:
        return ExternalBackend(binary=external_binary)
    return BuiltinBackend()


def build_xmrig_config(address: str, daemon_address: str) -> Dict[str, Any]:
    """Solo-mining xmrig config that submits work straight to the local daemon."""

    return {
        "autosave": False,
        "background": False,
        "colors": False,
        "donate-level": 0,
        "print-time": 10,
        "cpu": {
            "enabled": True,
            "huge-pages": True,
            "max-threads-hint": 100,
        },
        "opencl": False,
        "cuda": False,
        "pools": [
            {
                "url": daemon_address,
                "user": address,
                "algo": POW_ALGORITHM,
                "daemon": True,
                "daemon-poll-interval": 1000,
                "keepalive": True,
                "tls": False,
            }
        ],
    }


@dataclass
class MinerSession:
    backend: Literal["builtin", "xmrig"]
    address: str
    thread_count: int
    started_at: str = field(default_factory=_now_iso)
    handle: Optional[ManagedProcess] = None


@dataclass
class MiningStatus:
    active: bool = False
    miner: Optional[str] = None
    hashrate: float = 0.0
    threads: int = 0
    address: Optional[str] = None
    difficulty: int = 0
    accepted: int = 0
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "active": self.active,
            "running": self.active,
            "miner": self.miner,
            "speed": self.hashrate,
            "hashrate": self.hashrate,
            "threads": self.threads,
            "address": self.address,
            "difficulty": self.difficulty,
            "accepted": self.accepted,
        }
        if self.error:
            payload["error"] = self.error
        return payload


class MiningOrchestrator:
    def __init__(
        self,
        settings: Settings,
        daemon: DaemonClient,
        spawner: Spawner = spawn,
    ) -> None:
        self.settings = settings
        self.daemon = daemon
        self.session: Optional[MinerSession] = None
        self._spawn = spawner
        self._lock = asyncio.Lock()
        self._tasks: Set["asyncio.Task[None]"] = set()

    @property
    def state(self) -> MiningState:
        session = self.session
        if session is None:
            return "idle"
        return "running_external" if session.backend == "xmrig" else "running_builtin"

    def external_binary(self) -> Optional[Path]:
        return resolve_binary(XMRIG_BINARY, self.settings.bin_dir)

    def xmrig_command(self, binary: Path, threads: int) -> List[str]:
        return [
            str(binary),
            "--config",
            str(self.settings.xmrig_config_path),
            "--threads",
            str(threads),
            "--no-color",
        ]

    async def _stop_builtin(self) -> None:
        try:
            await self.daemon.stop_mining()
        except (httpx.HTTPError, ValueError) as exc:
            logger.debug("Ignoring stop_mining failure: %s", exc)

    async def _teardown(self, grace: float) -> None:
        session, self.session = self.session, None
        handle = session.handle if session else None
        if handle and handle.terminate():
            logger.info("Sent termination signal to xmrig pid %s", handle.pid)
            if grace > 0:
                try:
                    await asyncio.wait_for(handle.wait(), timeout=grace)
                except asyncio.TimeoutError:
                    logger.warning("xmrig pid %s still running %.1fs after termination", handle.pid, grace)
        await self._stop_builtin()

    async def _wait_for_exit(self, handle: ManagedProcess) -> None:
        return_code = await handle.wait()
        logger.info("xmrig pid %s exited with %s", handle.pid, return_code)
        session = self.session
        if session and session.handle is handle:
            self.session = None

    async def _start_external(self, backend: ExternalBackend, address: str, threads: int) -> Optional[MinerSession]:
        config = build_xmrig_config(address, self.settings.daemon_address)
        config_path = self.settings.xmrig_config_path
        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)
            config_path.write_text(json.dumps(config, indent=2), encoding="utf-8")
            handle = await self._spawn(
                "miner",
                self.xmrig_command(backend.binary, threads),
                log_path=self.settings.miner_log_path,
                append=False,
            )
        except OSError as exc:
            logger.warning("xmrig failed to start, falling back to built-in miner: %s", exc)
            return None

        session = MinerSession(backend="xmrig", address=address, thread_count=threads, handle=handle)
        self.session = session
        start_background(self._tasks, self._wait_for_exit(handle))
        return session

    async def _start_builtin(self, address: str, threads: int) -> MinerSession:
        try:
            response = await self.daemon.start_mining(address, threads)
        except (httpx.HTTPError, ValueError) as exc:
            raise MiningStartError(f"Daemon unreachable: {exc}") from exc
        status = str(response.get("status", ""))
        if status.upper() != "OK":
            raise MiningStartError(status or "Daemon refused to start mining")
        session = MinerSession(backend="builtin", address=address, thread_count=threads)
        self.session = session
        return session

    async def start(
        self,
        address: Optional[str],
        threads: Optional[int] = None,
        prefer_builtin: bool = False,
    ) -> MinerSession:
        address = (address or "").strip()
        if not address:
            raise MissingAddress()
        if self._lock.locked():
            raise SupervisorBusy("mining")
        async with self._lock:
            await self._teardown(self.settings.miner_stop_grace)
            thread_count = threads if threads and threads > 0 else default_thread_count()
            backend = choose_backend(prefer_builtin, self.external_binary())
            if isinstance(backend, ExternalBackend):
                session = await self._start_external(backend, address, thread_count)
                if session:
                    return session
            return await self._start_builtin(address, thread_count)

    async def stop(self) -> None:
        async with self._lock:
            await self._teardown(0)

    async def _difficulty(self) -> int:
        try:
            return await self.daemon.difficulty()
        except (httpx.HTTPError, ValueError, TypeError) as exc:
            logger.debug("Difficulty unavailable: %s", exc)
            return 0

    async def status(self) -> MiningStatus:
        session = self.session
        if session is None:
            return MiningStatus()

        if session.backend == "xmrig":
            lines = await asyncio.to_thread(LogTail(self.settings.miner_log_path).read)
            metrics: MiningMetrics = parse_miner_log(lines)
            return MiningStatus(
                active=True,
                miner="xmrig",
                hashrate=metrics.hashrate,
                threads=session.thread_count,
                address=session.address,
                difficulty=await self._difficulty(),
                accepted=metrics.accepted,
            )

        try:
            data = await self.daemon.mining_status()
        except (httpx.HTTPError, ValueError) as exc:
            return MiningStatus(
                miner="builtin",
                threads=session.thread_count,
                address=session.address,
                error=f"Daemon unreachable: {exc}",
            )
        return MiningStatus(
            active=bool(data.get("active")),
            miner="builtin",
            hashrate=float(data.get("speed") or 0),
            threads=int(data.get("threads_count") or session.thread_count),
            address=data.get("address") or session.address,
            difficulty=await self._difficulty(),
        )

    def xmrig_available(self) -> Dict[str, Any]:
        binary = self.external_binary()
        return {"available": binary is not None, "path": str(binary) if binary else None}
