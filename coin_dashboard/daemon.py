"""Lifecycle of the node daemon process.

The daemon is spawned detached so it can outlive the dashboard, and it may
already be running under another supervisor. Liveness is therefore decided
by the HTTP probe, and stopping resolves the PID from the process table
rather than relying on an owned handle.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Dict, List, Literal, Optional, Set

import psutil

from .config import DAEMON_BINARY, Settings
from .errors import DaemonError, SupervisorBusy
from .log_tail import read_tail_lines
from .process import ManagedProcess, Spawner, resolve_binary, spawn, start_background
from .rpc import DaemonClient

logger = logging.getLogger(__name__)

DaemonStartResult = Literal["started", "already_running", "failed_to_start"]
DaemonStopResult = Literal["stopped", "not_running"]


def _matches_binary(name: Optional[str], cmdline: Optional[List[str]], binary: str) -> bool:
    candidates = {binary, f"{binary}.exe"}
    if name and name in candidates:
        return True
    if cmdline:
        return os.path.basename(str(cmdline[0])) in candidates
    return False


def find_daemon_pid(binary: str = DAEMON_BINARY) -> Optional[int]:
    """Look up a running daemon by executable name."""

    try:
        for proc in psutil.process_iter(["pid", "name", "cmdline"]):
            try:
                if _matches_binary(proc.info.get("name"), proc.info.get("cmdline"), binary):
                    return proc.info["pid"]
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
    except psutil.Error:
        logger.exception("Process table scan failed")
    return None


class DaemonSupervisor:
    def __init__(
        self,
        settings: Settings,
        client: DaemonClient,
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
            "--data-dir",
            str(settings.data_dir),
            "--rpc-bind-ip",
            settings.daemon_host,
            "--rpc-bind-port",
            str(settings.daemon_rpc_port),
            "--p2p-bind-ip",
            "0.0.0.0",
            "--non-interactive",
        ]

    async def _wait_for_exit(self, handle: ManagedProcess) -> None:
        return_code = await handle.wait()
        logger.info("Daemon process %s exited with %s", handle.pid, return_code)
        async with self._lock:
            if handle is self.handle:
                self.handle = None

    async def start(self) -> DaemonStartResult:
        if self._lock.locked():
            raise SupervisorBusy("daemon")
        async with self._lock:
            if await self.client.probe() is not None:
                return "already_running"

            binary = resolve_binary(DAEMON_BINARY, self.settings.bin_dir)
            if binary is None:
                raise DaemonError(
                    f"Daemon binary '{DAEMON_BINARY}' not found in {self.settings.bin_dir} or on PATH."
                )
            self.settings.data_dir.mkdir(parents=True, exist_ok=True)
            try:
                handle = await self._spawn(
                    "daemon",
                    self.command(str(binary)),
                    log_path=self.settings.daemon_log_path,
                    append=True,
                    detach=True,
                )
            except OSError as exc:
                raise DaemonError(f"Failed to start daemon: {exc}") from exc

            self.handle = handle
            start_background(self._tasks, self._wait_for_exit(handle))

            await asyncio.sleep(self.settings.daemon_settle_seconds)
            if await self.client.probe() is not None:
                return "started"
            logger.warning(
                "Daemon did not answer within %.1fs of starting; see %s",
                self.settings.daemon_settle_seconds,
                self.settings.daemon_log_path,
            )
            return "failed_to_start"

    def find_pid(self) -> Optional[int]:
        handle = self.handle
        if handle and handle.alive:
            return handle.pid
        return find_daemon_pid()

    async def stop(self) -> DaemonStopResult:
        pid = await asyncio.to_thread(self.find_pid)
        if pid is None:
            return "not_running"
        try:
            psutil.Process(pid).terminate()
        except psutil.NoSuchProcess:
            return "not_running"
        except psutil.AccessDenied as exc:
            raise DaemonError(f"Not permitted to stop daemon process {pid}.") from exc
        logger.info("Sent termination signal to daemon pid %s", pid)
        return "stopped"

    async def status(self) -> Dict[str, Any]:
        info = await self.client.probe()
        pid = await asyncio.to_thread(self.find_pid)
        if info is None:
            return {"running": False, "pid": pid}
        return {
            "running": True,
            "pid": pid,
            "height": info.get("height"),
            "synchronized": info.get("synchronized"),
            "connections": (info.get("outgoing_connections_count") or 0)
            + (info.get("incoming_connections_count") or 0),
        }

    def logs(self, lines: int = 50) -> Optional[List[str]]:
        return read_tail_lines(self.settings.daemon_log_path, lines)
