"""Service locator for the running orchestrator components."""

from typing import Optional

from orchestrator.runtime import StorageRuntime

_runtime: Optional[StorageRuntime] = None


def set_runtime(runtime: Optional[StorageRuntime]):
    """Set global runtime instance"""
    global _runtime
    _runtime = runtime


def get_runtime() -> StorageRuntime:
    """Get global runtime instance"""
    if _runtime is None:
        raise RuntimeError("Storage runtime has not been started")
    return _runtime
