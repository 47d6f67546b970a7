"""Shared fixtures for the outbreak alerting test suite."""

import pytest

from storage.storage_manager import MemoryBackend, StorageError


class FlakyBackend(MemoryBackend):
    """Memory backend whose writes can be switched off per path"""

    def __init__(self):
        super().__init__()
        self.failing_paths = set()

    async def _write(self, path, data):
        if path in self.failing_paths:
            raise StorageError(f"{path} is unavailable")
        await super()._write(path, data)


@pytest.fixture
def flaky_backend():
    return FlakyBackend()
