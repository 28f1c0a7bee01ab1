"""Local dashboard backend for the node daemon, wallet RPC and miner."""

__version__ = "2.2.0"
