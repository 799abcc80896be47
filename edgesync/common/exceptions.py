"""
Custom Exception Classes for EdgeSync

Hierarchical exception structure for error handling across services.
Runtime failures are caught at the unit that can retry (phase, batch,
upload) and turned into result objects; these classes carry the reason.
"""


class EdgeSyncError(Exception):
    """Base exception for all EdgeSync errors"""

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class ConfigError(EdgeSyncError):
    """Configuration-related errors (invalid cron, missing URLs)"""

    def __init__(self, message: str, recoverable: bool = False):
        super().__init__(f"Config Error: {message}", recoverable)


class RemoteUnavailableError(EdgeSyncError):
    """Remote database or upload API could not be reached"""

    def __init__(self, message: str, target: str | None = None):
        self.target = target
        super().__init__(f"Remote unavailable: {message}", recoverable=True)


class BatchInsertError(EdgeSyncError):
    """A reading batch could not be inserted after all attempts"""

    def __init__(self, message: str, batch_size: int = 0, attempts: int = 0):
        self.batch_size = batch_size
        self.attempts = attempts
        super().__init__(f"Batch insert failed: {message}", recoverable=True)


class CacheReloadError(EdgeSyncError):
    """Local cache could not be rebuilt from the local store"""

    def __init__(self, message: str):
        super().__init__(f"Cache reload failed: {message}", recoverable=True)


class UploadError(EdgeSyncError):
    """Remote API rejected an upload batch"""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(f"Upload failed: {message}", recoverable=True)
