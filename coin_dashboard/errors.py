"""Exceptions raised by the supervisors and mapped to HTTP responses by the service."""

from __future__ import annotations


class DashboardError(RuntimeError):
    """Base class for dashboard failures that carry a user-facing message."""


class SupervisorBusy(DashboardError):
    def __init__(self, resource: str) -> None:
        super().__init__(f"A {resource} operation is already in progress.")
        self.resource = resource


class MissingAddress(DashboardError, ValueError):
    def __init__(self) -> None:
        super().__init__("Mining address required")


class DaemonError(DashboardError):
    pass


class WalletRpcNotReady(DashboardError):
    pass


class MiningStartError(DashboardError):
    pass
