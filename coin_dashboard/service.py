#!/usr/bin/env python3
"""ASGI service backing the coin dashboard UI.

Proxies the node daemon and wallet RPC for the browser and supervises the
local helper processes (daemon, wallet RPC, xmrig). Run with
``coin-dashboard`` or ``python -m coin_dashboard.service``.
"""

from __future__ import annotations

import argparse
import logging
import threading
import webbrowser
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

import httpx
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, Field, field_validator

try:
    import uvicorn
except ImportError as exc:  # pragma: no cover - runtime dependency hint
    raise SystemExit("uvicorn must be installed. Run `pip install -e .`.") from exc

from .config import REPO_ROOT, Settings
from .daemon import DaemonSupervisor
from .errors import (
    DaemonError,
    DashboardError,
    MiningStartError,
    MissingAddress,
    SupervisorBusy,
    WalletRpcNotReady,
)
from .mining import MiningOrchestrator
from .process import Spawner, spawn
from .rpc import DaemonClient, JsonRpcError, WalletClient
from .status import RECENT_BLOCKS_LIMIT, StatusAggregator
from .wallet import WalletRpcSupervisor, WalletService, to_atomic

logger = logging.getLogger(__name__)

STATIC_DIR = REPO_ROOT / "public"
MAX_LOG_LINES = 1000
WALLET_RPC_DOWN = "Wallet RPC not running. Start cocaine-wallet-rpc first."


def _now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


class MiningStartPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    address: Optional[str] = None
    threads: Optional[int] = None
    use_builtin: bool = Field(default=False, alias="useBuiltin")

    @field_validator("threads", mode="before")
    @classmethod
    def _blank_threads(cls, value: Any) -> Any:
        # Blank means unset; the orchestrator defaults non-positive counts.
        return None if value in (None, "") else value


class WalletPayload(BaseModel):
    name: Optional[str] = None
    filename: Optional[str] = None
    password: Optional[str] = None

    def wallet_name(self) -> str:
        return (self.name or self.filename or "").strip()


class WalletRestorePayload(WalletPayload):
    seed: Optional[str] = None
    restore_height: int = Field(default=0, ge=0)


class TransferPayload(BaseModel):
    address: Optional[str] = None
    amount: Optional[Union[float, str]] = None
    payment_id: Optional[str] = None


@dataclass
class Dashboard:
    """Every piece of mutable process-wide state, one owner per resource."""

    settings: Settings
    daemon: DaemonSupervisor
    wallet_rpc: WalletRpcSupervisor
    wallet: WalletService
    mining: MiningOrchestrator
    status: StatusAggregator
    started_at: str

    @classmethod
    def build(
        cls,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        spawner: Spawner = spawn,
    ) -> "Dashboard":
        settings = settings or Settings.from_env()
        daemon_client = DaemonClient(
            settings.daemon_http_url,
            timeout=settings.rpc_timeout,
            probe_timeout=settings.probe_timeout,
            transport=transport,
        )
        wallet_client = WalletClient(settings.wallet_rpc_url, timeout=settings.rpc_timeout, transport=transport)
        wallet_rpc = WalletRpcSupervisor(settings, wallet_client, spawner=spawner)
        return cls(
            settings=settings,
            daemon=DaemonSupervisor(settings, daemon_client, spawner=spawner),
            wallet_rpc=wallet_rpc,
            wallet=WalletService(settings, wallet_client, wallet_rpc),
            mining=MiningOrchestrator(settings, daemon_client, spawner=spawner),
            status=StatusAggregator(daemon_client),
            started_at=_now_iso(),
        )


def _validate_wallet_name(name: str) -> str:
    if not name:
        raise HTTPException(status_code=400, detail={"error": "Wallet name required"})
    if "/" in name or "\\" in name or name in (".", ".."):
        raise HTTPException(status_code=400, detail={"error": "Invalid wallet name"})
    return name


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(HTTPException)
    async def _http_error(request: Request, exc: HTTPException) -> JSONResponse:
        detail = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
        return JSONResponse(status_code=exc.status_code, content=detail)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return JSONResponse(status_code=400, content={"error": message})

    @app.exception_handler(SupervisorBusy)
    async def _busy(request: Request, exc: SupervisorBusy) -> JSONResponse:
        return JSONResponse(status_code=409, content={"status": "busy", "message": str(exc), "error": str(exc)})

    @app.exception_handler(MissingAddress)
    async def _missing_address(request: Request, exc: MissingAddress) -> JSONResponse:
        return JSONResponse(status_code=400, content={"status": "error", "error": str(exc)})

    @app.exception_handler(DaemonError)
    async def _daemon_error(request: Request, exc: DaemonError) -> JSONResponse:
        return JSONResponse(status_code=500, content={"status": "error", "message": str(exc)})

    @app.exception_handler(MiningStartError)
    async def _mining_error(request: Request, exc: MiningStartError) -> JSONResponse:
        return JSONResponse(status_code=500, content={"status": "error", "error": str(exc)})

    @app.exception_handler(WalletRpcNotReady)
    async def _wallet_not_ready(request: Request, exc: WalletRpcNotReady) -> JSONResponse:
        return JSONResponse(status_code=503, content={"success": False, "error": str(exc)})

    @app.exception_handler(DashboardError)
    async def _dashboard_error(request: Request, exc: DashboardError) -> JSONResponse:
        return JSONResponse(status_code=500, content={"error": str(exc)})

    @app.exception_handler(JsonRpcError)
    async def _upstream_error(request: Request, exc: JsonRpcError) -> JSONResponse:
        return JSONResponse(status_code=200, content={"success": False, "error": exc.message})

    @app.exception_handler(httpx.HTTPError)
    async def _dependency_down(request: Request, exc: httpx.HTTPError) -> JSONResponse:
        if request.url.path.startswith("/api/wallet"):
            return JSONResponse(status_code=503, content={"success": False, "error": WALLET_RPC_DOWN})
        return JSONResponse(status_code=503, content={"error": str(exc) or type(exc).__name__})

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(status_code=500, content={"error": str(exc) or type(exc).__name__})


def create_app(dashboard: Optional[Dashboard] = None) -> FastAPI:
    dashboard = dashboard or Dashboard.build()
    settings = dashboard.settings

    app = FastAPI(title="Coin Dashboard Service")
    app.state.dashboard = dashboard
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _install_error_handlers(app)

    @app.on_event("startup")
    async def _startup() -> None:
        settings.ensure_directories()
        logger.info("Wallet directory: %s", settings.wallet_dir)

    @app.on_event("shutdown")
    async def _shutdown_cleanup() -> None:
        if dashboard.mining.state == "running_external":
            await dashboard.mining.stop()
        await dashboard.wallet_rpc.stop()

    @app.get("/healthz")
    def healthz() -> Dict[str, str]:
        return {"status": "ok", "started_at": dashboard.started_at}

    # Daemon

    @app.get("/api/info")
    async def daemon_info() -> Any:
        try:
            return await dashboard.status.get_info()
        except httpx.HTTPError as exc:
            return JSONResponse(status_code=503, content={"error": str(exc), "daemon_running": False})

    @app.post("/api/daemon/start")
    async def daemon_start() -> Any:
        result = await dashboard.daemon.start()
        if result == "already_running":
            return {"status": "busy", "message": "Daemon is already running"}
        if result == "failed_to_start":
            return JSONResponse(
                status_code=500,
                content={
                    "status": "error",
                    "message": f"Daemon did not respond after starting. Check {settings.daemon_log_path}",
                },
            )
        return {"status": "OK", "message": "Daemon started"}

    @app.post("/api/daemon/stop")
    async def daemon_stop() -> Dict[str, Any]:
        result = await dashboard.daemon.stop()
        if result == "not_running":
            return {"status": "error", "message": "Daemon is not running"}
        return {"status": "OK", "message": "Stop signal sent to daemon"}

    @app.get("/api/daemon/status")
    async def daemon_status() -> Dict[str, Any]:
        return await dashboard.daemon.status()

    @app.get("/api/daemon/logs")
    async def daemon_logs(lines: int = Query(50)) -> Dict[str, Any]:
        lines = max(1, min(lines, MAX_LOG_LINES))
        tail = dashboard.daemon.logs(lines)
        if tail is None:
            return {"logs": [], "message": "No daemon log file found"}
        return {"logs": tail}

    @app.get("/api/last_block")
    async def last_block() -> Dict[str, Any]:
        return await dashboard.status.last_block()

    @app.get("/api/block/{height}")
    async def block_by_height(height: int) -> Dict[str, Any]:
        return await dashboard.status.block(height)

    @app.get("/api/peers")
    async def peers() -> Dict[str, Any]:
        return {"connections": await dashboard.status.peers()}

    @app.get("/api/blocks/recent")
    async def recent_blocks(limit: int = Query(RECENT_BLOCKS_LIMIT, ge=1, le=RECENT_BLOCKS_LIMIT)) -> Dict[str, Any]:
        return {"blocks": await dashboard.status.recent_blocks(limit)}

    # Mining

    @app.get("/api/miner/status")
    @app.get("/api/mining/status")
    async def mining_status() -> Dict[str, Any]:
        status = await dashboard.mining.status()
        return status.as_dict()

    @app.get("/api/mining_status")
    async def daemon_mining_status() -> Dict[str, Any]:
        return await dashboard.mining.daemon.mining_status()

    @app.post("/api/mining/start")
    async def mining_start(payload: MiningStartPayload) -> Dict[str, Any]:
        session = await dashboard.mining.start(payload.address, payload.threads, payload.use_builtin)
        return {"status": "OK", "miner": session.backend, "threads": session.thread_count}

    @app.post("/api/mining/stop")
    async def mining_stop() -> Dict[str, Any]:
        await dashboard.mining.stop()
        return {"status": "OK"}

    @app.get("/api/mining/xmrig-available")
    async def xmrig_available() -> Dict[str, Any]:
        return dashboard.mining.xmrig_available()

    # Wallet

    @app.get("/api/wallet/list")
    async def wallet_list() -> Dict[str, Any]:
        return dashboard.wallet.wallets()

    @app.post("/api/wallet/create")
    async def wallet_create(payload: WalletPayload) -> Dict[str, Any]:
        name = _validate_wallet_name(payload.wallet_name())
        return await dashboard.wallet.create(name, payload.password or "")

    @app.post("/api/wallet/open")
    async def wallet_open(payload: WalletPayload) -> Dict[str, Any]:
        name = _validate_wallet_name(payload.wallet_name())
        return await dashboard.wallet.open(name, payload.password or "")

    @app.post("/api/wallet/restore")
    async def wallet_restore(payload: WalletRestorePayload) -> Dict[str, Any]:
        name = payload.wallet_name()
        seed = (payload.seed or "").strip()
        if not name or not seed:
            raise HTTPException(status_code=400, detail={"error": "Name and seed required"})
        _validate_wallet_name(name)
        return await dashboard.wallet.restore(name, seed, payload.password or "", payload.restore_height)

    @app.get("/api/wallet/balance")
    async def wallet_balance() -> Dict[str, Any]:
        return await dashboard.wallet.balance()

    @app.get("/api/wallet/address")
    async def wallet_address() -> Dict[str, Any]:
        return await dashboard.wallet.address()

    @app.get("/api/wallet/transfers")
    async def wallet_transfers() -> Dict[str, Any]:
        return await dashboard.wallet.transfers()

    @app.post("/api/wallet/send")
    async def wallet_send(payload: TransferPayload) -> Dict[str, Any]:
        address = (payload.address or "").strip()
        if not address or payload.amount in (None, ""):
            raise HTTPException(status_code=400, detail={"error": "Address and amount required"})
        try:
            atomic_amount = to_atomic(payload.amount)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail={"error": str(exc)}) from exc
        if atomic_amount <= 0:
            raise HTTPException(status_code=400, detail={"error": "Amount must be positive"})
        return await dashboard.wallet.send(address, atomic_amount, payload.payment_id)

    @app.post("/api/wallet/refresh")
    async def wallet_refresh() -> Dict[str, Any]:
        return await dashboard.wallet.refresh()

    @app.post("/api/wallet/close")
    async def wallet_close() -> Dict[str, Any]:
        return await dashboard.wallet.close()

    @app.get("/api/wallet/status")
    async def wallet_status() -> Dict[str, Any]:
        try:
            return await dashboard.wallet.status()
        except (httpx.HTTPError, JsonRpcError, WalletRpcNotReady) as exc:
            logger.debug("Wallet status unavailable: %s", exc)
            return {"open": False, "name": dashboard.wallet.current}

    if STATIC_DIR.is_dir():
        app.mount("/", StaticFiles(directory=str(STATIC_DIR), html=True), name="ui")

    return app


app = create_app()


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--host", default=None, help="Bind address (default: DASHBOARD_HOST or 127.0.0.1).")
    parser.add_argument("--port", type=int, default=None, help="Bind port (default: DASHBOARD_PORT or 8080).")
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload (for development).",
    )
    parser.add_argument(
        "--no-browser",
        action="store_true",
        help="Do not open the dashboard in a browser on start.",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    settings = Settings.from_env()
    host = args.host or settings.host
    port = args.port or settings.port
    if settings.open_browser and not args.no_browser:
        url = f"http://{'localhost' if host in ('127.0.0.1', '0.0.0.0') else host}:{port}"
        threading.Timer(0.5, webbrowser.open, args=(url,)).start()
    uvicorn.run(
        "coin_dashboard.service:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


if __name__ == "__main__":  # pragma: no cover - manual entrypoint
    main()
