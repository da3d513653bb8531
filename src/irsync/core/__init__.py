"""Core async helpers shared by the sync engine and the file handler."""

from .async_utils import WorkerPool, gather_limited, run_sync

__all__ = ["WorkerPool", "gather_limited", "run_sync"]
