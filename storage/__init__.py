"""
Storage Package for Crop Outbreak Alerting

This package contains the path-scoped persistence backends shared by the
report store, combo counters, prone alert feed and recovery votes.
"""

from storage.storage_manager import (
    LocalFileBackend,
    MemoryBackend,
    StorageBackend,
    StorageConfig,
    StorageError,
    create_backend,
)

__version__ = "1.0.0"
__author__ = "Outbreak Alerts Team"

__all__ = [
    "LocalFileBackend",
    "MemoryBackend",
    "StorageBackend",
    "StorageConfig",
    "StorageError",
    "create_backend",
]
