"""Environment-driven settings for the dashboard service."""

from __future__ import annotations

import os
import platform
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

REPO_ROOT = Path(__file__).resolve().parents[1]
IS_WINDOWS = platform.system() == "Windows"
EXE_SUFFIX = ".exe" if IS_WINDOWS else ""

DAEMON_BINARY = "cocained"
WALLET_RPC_BINARY = "cocaine-wallet-rpc"
XMRIG_BINARY = "xmrig"


def _parse_optional_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _parse_port(value: Optional[str], default: int) -> int:
    parsed = _parse_optional_int(value)
    return parsed if parsed and 0 < parsed < 65536 else default


def _parse_float(value: Optional[str], default: float) -> float:
    if value is None:
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed >= 0 else default


def _parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_path(value: Optional[str], default: Path) -> Path:
    if not value:
        return default
    return Path(value).expanduser()


@dataclass(frozen=True)
class Settings:
    host: str = "127.0.0.1"
    port: int = 8080
    home_dir: Path = Path.home() / ".cocaine"
    wallet_dir: Path = Path.home() / ".cocaine" / "wallets"
    data_dir: Path = Path.home() / ".cocaine" / "data"
    log_dir: Path = Path.home() / ".cocaine" / "logs"
    bin_dir: Path = REPO_ROOT / "bin"
    daemon_host: str = "127.0.0.1"
    daemon_rpc_port: int = 19081
    wallet_rpc_port: int = 19083
    probe_timeout: float = 2.0
    rpc_timeout: float = 10.0
    daemon_settle_seconds: float = 5.0
    wallet_ready_timeout: float = 15.0
    miner_stop_grace: float = 2.0
    open_browser: bool = True

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        home_dir = _parse_path(env.get("DASHBOARD_HOME"), Path.home() / ".cocaine")
        return cls(
            host=env.get("DASHBOARD_HOST", "127.0.0.1"),
            port=_parse_port(env.get("DASHBOARD_PORT"), 8080),
            home_dir=home_dir,
            wallet_dir=_parse_path(env.get("DASHBOARD_WALLET_DIR"), home_dir / "wallets"),
            data_dir=_parse_path(env.get("DASHBOARD_DATA_DIR"), home_dir / "data"),
            log_dir=_parse_path(env.get("DASHBOARD_LOG_DIR"), home_dir / "logs"),
            bin_dir=_parse_path(env.get("DASHBOARD_BIN_DIR"), REPO_ROOT / "bin"),
            daemon_host=env.get("DASHBOARD_DAEMON_HOST", "127.0.0.1"),
            daemon_rpc_port=_parse_port(env.get("DASHBOARD_DAEMON_RPC_PORT"), 19081),
            wallet_rpc_port=_parse_port(env.get("DASHBOARD_WALLET_RPC_PORT"), 19083),
            probe_timeout=_parse_float(env.get("DASHBOARD_PROBE_TIMEOUT"), 2.0),
            rpc_timeout=_parse_float(env.get("DASHBOARD_RPC_TIMEOUT"), 10.0),
            daemon_settle_seconds=_parse_float(env.get("DASHBOARD_DAEMON_SETTLE_SECONDS"), 5.0),
            wallet_ready_timeout=_parse_float(env.get("DASHBOARD_WALLET_READY_TIMEOUT"), 15.0),
            miner_stop_grace=_parse_float(env.get("DASHBOARD_MINER_STOP_GRACE"), 2.0),
            open_browser=_parse_bool(env.get("DASHBOARD_OPEN_BROWSER"), True),
        )

    def with_home(self, home_dir: Path) -> "Settings":
        """Re-root every on-disk location under ``home_dir``."""

        return replace(
            self,
            home_dir=home_dir,
            wallet_dir=home_dir / "wallets",
            data_dir=home_dir / "data",
            log_dir=home_dir / "logs",
        )

    @property
    def daemon_http_url(self) -> str:
        return f"http://{self.daemon_host}:{self.daemon_rpc_port}"

    @property
    def daemon_address(self) -> str:
        return f"{self.daemon_host}:{self.daemon_rpc_port}"

    @property
    def wallet_rpc_url(self) -> str:
        return f"http://127.0.0.1:{self.wallet_rpc_port}"

    @property
    def daemon_log_path(self) -> Path:
        return self.log_dir / "daemon.log"

    @property
    def wallet_log_path(self) -> Path:
        return self.log_dir / "wallet-rpc.log"

    @property
    def miner_log_path(self) -> Path:
        return self.log_dir / "xmrig.log"

    @property
    def xmrig_config_path(self) -> Path:
        return self.home_dir / "xmrig-config.json"

    def ensure_directories(self) -> None:
        for directory in (self.wallet_dir, self.data_dir, self.log_dir):
            directory.mkdir(parents=True, exist_ok=True)
