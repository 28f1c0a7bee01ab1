"""Child process handles shared by the daemon, wallet RPC and miner supervisors."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Coroutine, Dict, List, Literal, Optional, Sequence, Set

from .config import EXE_SUFFIX

logger = logging.getLogger(__name__)

ProcessKind = Literal["daemon", "wallet_rpc", "miner"]
LineCallback = Callable[[str], None]
TAIL_LINES = 100
STREAM_LIMIT = 1024 * 1024


def _now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def resolve_binary(name: str, bin_dir: Path) -> Optional[Path]:
    """Find ``name`` in ``bin_dir`` first, then on PATH."""

    local = bin_dir / f"{name}{EXE_SUFFIX}"
    if local.is_file():
        return local
    found = shutil.which(name)
    return Path(found) if found else None


def start_background(tasks: Set["asyncio.Task[Any]"], coro: Coroutine[Any, Any, Any]) -> "asyncio.Task[Any]":
    """Schedule ``coro`` and hold a reference in ``tasks`` until it finishes."""

    task = asyncio.create_task(coro)
    tasks.add(task)
    task.add_done_callback(tasks.discard)
    return task


@dataclass
class ManagedProcess:
    kind: ProcessKind
    process: Any
    argv: List[str]
    log_path: Optional[Path] = None
    started_at: str = field(default_factory=_now_iso)
    exit_code: Optional[int] = None
    exited_at: Optional[str] = None
    output_tail: List[str] = field(default_factory=list)
    reader: Optional["asyncio.Task[None]"] = field(default=None, repr=False)

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    @property
    def alive(self) -> bool:
        return self.exit_code is None and self.process.returncode is None

    def terminate(self) -> bool:
        """Send a single termination signal. Returns False if the process was already gone."""

        if not self.alive:
            return False
        try:
            self.process.terminate()
        except ProcessLookupError:
            return False
        return True

    async def wait(self) -> int:
        return_code = await self.process.wait()
        if self.exit_code is None:
            self.exit_code = return_code
            self.exited_at = _now_iso()
        return return_code

    def record_output(self, line: str) -> None:
        timestamped = f"[{_now_iso()}] {line.rstrip()}"
        self.output_tail = (self.output_tail + [timestamped])[-TAIL_LINES:]
        if not self.log_path:
            return
        try:
            with self.log_path.open("a", encoding="utf-8") as log_file:
                log_file.write(timestamped + "\n")
        except OSError:
            logger.debug("Could not append to %s", self.log_path)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "pid": self.pid,
            "alive": self.alive,
            "started_at": self.started_at,
            "exit_code": self.exit_code,
            "exited_at": self.exited_at,
            "command": list(self.argv),
        }


async def _capture_output(handle: ManagedProcess, on_line: Optional[LineCallback]) -> None:
    async def drain(stream: Optional[asyncio.StreamReader]) -> None:
        if not stream:
            return
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                # StreamReader drops the oversized chunk before raising.
                logger.debug("Skipped %s output line longer than %d bytes", handle.kind, STREAM_LIMIT)
                continue
            if not line:
                break
            text = line.decode(errors="replace")
            handle.record_output(text)
            if on_line:
                on_line(text)

    await asyncio.gather(drain(handle.process.stdout), drain(handle.process.stderr))


async def spawn(
    kind: ProcessKind,
    argv: Sequence[str],
    *,
    log_path: Optional[Path] = None,
    append: bool = True,
    capture: bool = False,
    detach: bool = False,
    on_line: Optional[LineCallback] = None,
    cwd: Optional[Path] = None,
) -> ManagedProcess:
    """Start ``argv`` and wrap it in a :class:`ManagedProcess`.

    With ``capture`` the child's stdout/stderr are piped and drained line by
    line into ``log_path`` (timestamped) and ``on_line``. Without it the
    child writes straight into ``log_path``, which is what a detached process
    needs so it keeps logging after the dashboard exits.

    Raises ``OSError`` (typically ``FileNotFoundError``) if the binary cannot
    be executed.
    """

    argv = [str(arg) for arg in argv]
    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)

    if capture or not log_path:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE if capture else asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE if capture else asyncio.subprocess.DEVNULL,
            cwd=str(cwd) if cwd else None,
            start_new_session=detach,
            limit=STREAM_LIMIT,
        )
        handle = ManagedProcess(kind=kind, process=process, argv=argv, log_path=log_path)
        if capture:
            handle.reader = asyncio.create_task(_capture_output(handle, on_line))
    else:
        with log_path.open("ab" if append else "wb") as log_file:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=log_file,
                stderr=asyncio.subprocess.STDOUT,
                cwd=str(cwd) if cwd else None,
                start_new_session=detach,
            )
        handle = ManagedProcess(kind=kind, process=process, argv=argv, log_path=log_path)

    logger.info("Spawned %s (pid %s): %s", kind, handle.pid, " ".join(argv))
    return handle


Spawner = Callable[..., Awaitable[ManagedProcess]]
