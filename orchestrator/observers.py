"""Observer hooks for placement, health and ledger events."""

from typing import Optional


class StorageObserver:
    """
    No-op base. Subclass and override the hooks you care about, then pass
    the instance to the components that should report to it.
    """

    def on_health_changed(self, backend_name: str, healthy: bool, detail: str) -> None:
        pass

    def on_upload_progress(self, backend_name: str, key: str, parts_done: int, parts_total: int) -> None:
        pass

    def on_placement_failed(self, backend_name: str, key: str, error: str) -> None:
        pass

    def on_backup_failed(self, backend_name: str, key: str, error: str) -> None:
        pass

    def on_upload_completed(self, file_id: str, deduplicated: bool) -> None:
        pass

    def on_ledger_synced(self, file_id: str, external_ref: Optional[str], success: bool) -> None:
        pass

    def on_placement_stored(self, backend_name: str, key: str, size_bytes: int, elapsed_ms: float) -> None:
        pass

    def on_download_attempt(
        self, backend_name: str, file_id: str, size_bytes: int, elapsed_ms: float, error: Optional[str]
    ) -> None:
        pass


class CompositeObserver(StorageObserver):
    """Forwards every hook to each wrapped observer in order."""

    def __init__(self, *observers: StorageObserver):
        self.observers = [observer for observer in observers if observer is not None]

    def on_health_changed(self, backend_name, healthy, detail):
        for observer in self.observers:
            observer.on_health_changed(backend_name, healthy, detail)

    def on_upload_progress(self, backend_name, key, parts_done, parts_total):
        for observer in self.observers:
            observer.on_upload_progress(backend_name, key, parts_done, parts_total)

    def on_placement_failed(self, backend_name, key, error):
        for observer in self.observers:
            observer.on_placement_failed(backend_name, key, error)

    def on_backup_failed(self, backend_name, key, error):
        for observer in self.observers:
            observer.on_backup_failed(backend_name, key, error)

    def on_upload_completed(self, file_id, deduplicated):
        for observer in self.observers:
            observer.on_upload_completed(file_id, deduplicated)

    def on_ledger_synced(self, file_id, external_ref, success):
        for observer in self.observers:
            observer.on_ledger_synced(file_id, external_ref, success)

    def on_placement_stored(self, backend_name, key, size_bytes, elapsed_ms):
        for observer in self.observers:
            observer.on_placement_stored(backend_name, key, size_bytes, elapsed_ms)

    def on_download_attempt(self, backend_name, file_id, size_bytes, elapsed_ms, error):
        for observer in self.observers:
            observer.on_download_attempt(backend_name, file_id, size_bytes, elapsed_ms, error)
