"""Bounded log tailing and xmrig log parsing.

Metrics are re-derived from the tail on every poll. A truncated log at the
start of a mining session therefore resets the accepted-share count without
any bookkeeping here.
"""

from __future__ import annotations

import re
from collections import deque
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

ANSI_ESCAPE = re.compile(r"\x1B\[[0-?]*[ -/]*[@-~]")
SPEED_PATTERN = re.compile(
    r"speed\s+10s/60s/15m\s+(?P<samples>(?:(?:\d+(?:\.\d+)?|n/a)\s+)+)(?P<unit>[kKmMgG]?H/s)"
)
ACCEPTED_MARKER = "accepted"
DEFAULT_SCAN_LINES = 200

UNIT_MULTIPLIERS = {
    "h/s": 1.0,
    "kh/s": 1_000.0,
    "mh/s": 1_000_000.0,
    "gh/s": 1_000_000_000.0,
}


def strip_ansi_codes(text: str) -> str:
    return ANSI_ESCAPE.sub("", text)


@dataclass
class MiningMetrics:
    hashrate: float = 0.0
    accepted: int = 0
    difficulty: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def read_tail_lines(path: Path, limit: int) -> Optional[List[str]]:
    """Return the last ``limit`` lines of ``path`` or None if it does not exist."""

    if limit <= 0:
        return []
    try:
        with path.open("r", encoding="utf-8", errors="replace") as handle:
            return [line.rstrip("\r\n") for line in deque(handle, maxlen=limit)]
    except FileNotFoundError:
        return None


@dataclass(frozen=True)
class LogTail:
    path: Path
    max_lines: int = DEFAULT_SCAN_LINES

    def read(self) -> List[str]:
        return read_tail_lines(self.path, self.max_lines) or []


def parse_hashrate(line: str) -> Optional[float]:
    """Hashrate in H/s from an xmrig speed report line, or None."""

    match = SPEED_PATTERN.search(strip_ansi_codes(line))
    if not match:
        return None
    multiplier = UNIT_MULTIPLIERS.get(match.group("unit").lower(), 1.0)
    for sample in match.group("samples").split():
        if sample == "n/a":
            continue
        return float(sample) * multiplier
    return None


def count_accepted(lines: Iterable[str]) -> int:
    return sum(1 for line in lines if ACCEPTED_MARKER in line.lower())


def parse_miner_log(lines: Sequence[str], window: int = DEFAULT_SCAN_LINES) -> MiningMetrics:
    recent = list(lines)[-window:] if window > 0 else []
    hashrate = 0.0
    for line in reversed(recent):
        parsed = parse_hashrate(line)
        if parsed is not None:
            hashrate = parsed
            break
    return MiningMetrics(hashrate=hashrate, accepted=count_accepted(recent))
