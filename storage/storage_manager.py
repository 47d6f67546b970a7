"""
Storage Manager for Crop Outbreak Alerting

Implements the persistence layer shared by every outbreak component:
- Path-scoped collections (reports, combo counters, prone alerts, votes)
- Keyed writes serialized per path, so same-key writes are last-write-wins
- Atomic read-modify-write transactions for counters
- Change subscriptions delivered asynchronously to every subscriber
"""

import asyncio
import copy
import inspect
import json
import logging
import os
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

import aiofiles
import aiofiles.os

logger = logging.getLogger(__name__)

Snapshot = Dict[str, Any]
ChangeCallback = Callable[[Snapshot], Union[None, Awaitable[None]]]


class StorageError(Exception):
    """Raised when a backend cannot read or persist a collection"""


@dataclass
class StorageConfig:
    """Configuration for storage backends"""
    provider: str = "memory"  # 'memory', 'local'
    data_dir: str = "outbreak_data"


class StorageBackend(ABC):
    """Base class for path-scoped storage with change notifications

    Every collection ("path") is a flat mapping of string keys to JSON-compatible
    values. Writes to one path are serialized by a per-path lock; there is no
    lock spanning paths.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._subscribers: Dict[str, List[ChangeCallback]] = {}
        self._pending: Set[asyncio.Task] = set()
        self.processing_times: List[float] = []

    @abstractmethod
    async def _read(self, path: str) -> Snapshot:
        """Return the current collection for ``path`` (may be empty)"""

    @abstractmethod
    async def _write(self, path: str, data: Snapshot):
        """Replace the collection for ``path``"""

    def _lock(self, path: str) -> asyncio.Lock:
        if path not in self._locks:
            self._locks[path] = asyncio.Lock()
        return self._locks[path]

    async def get(self, path: str) -> Snapshot:
        """Get a snapshot copy of a whole collection"""
        return copy.deepcopy(await self._read(path))

    async def get_value(self, path: str, key: str, default: Any = None) -> Any:
        """Get a single value from a collection"""
        data = await self._read(path)
        return copy.deepcopy(data.get(key, default))

    async def set_value(self, path: str, key: str, value: Any):
        """Write a single value; the last write to a key wins"""
        start_time = time.time()
        async with self._lock(path):
            data = await self._read(path)
            data[key] = copy.deepcopy(value)
            await self._write(path, data)
            snapshot = copy.deepcopy(data)

        self.processing_times.append(time.time() - start_time)
        self._notify(path, snapshot)

    async def push(self, path: str, value: Any) -> str:
        """Append a value under a freshly generated key

        Returns:
            The generated key
        """
        key = uuid.uuid4().hex
        await self.set_value(path, key, value)
        return key

    async def transaction(self, path: str, key: str,
                          update: Callable[[Any], Any]) -> Tuple[Any, Any]:
        """Atomically apply ``update`` to the value stored under ``key``

        ``update`` receives the current value (``None`` when absent) and returns
        the new one. It may raise to abort; nothing is written in that case.
        Returning an unchanged value skips the write and the notification.

        Returns:
            Tuple of (previous value, new value)
        """
        start_time = time.time()
        async with self._lock(path):
            data = await self._read(path)
            previous = copy.deepcopy(data.get(key))
            new_value = update(copy.deepcopy(previous))
            if new_value == previous:
                return previous, new_value

            data[key] = copy.deepcopy(new_value)
            await self._write(path, data)
            snapshot = copy.deepcopy(data)

        self.processing_times.append(time.time() - start_time)
        self._notify(path, snapshot)
        return previous, new_value

    def subscribe(self, path: str, callback: ChangeCallback) -> Callable[[], None]:
        """Subscribe to changes of a collection

        The callback (plain function or coroutine function) receives the full
        snapshot of the collection after every mutation.

        Returns:
            A function that removes the subscription
        """
        self._subscribers.setdefault(path, []).append(callback)
        logger.debug(f"Subscriber added for '{path}'")

        def unsubscribe():
            callbacks = self._subscribers.get(path, [])
            if callback in callbacks:
                callbacks.remove(callback)
                logger.debug(f"Subscriber removed from '{path}'")

        return unsubscribe

    def _notify(self, path: str, snapshot: Snapshot):
        for callback in list(self._subscribers.get(path, [])):
            task = asyncio.create_task(self._deliver(path, callback, copy.deepcopy(snapshot)))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _deliver(self, path: str, callback: ChangeCallback, snapshot: Snapshot):
        try:
            result = callback(snapshot)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Change subscriber for '{path}' failed: {e}")

    async def wait_idle(self):
        """Wait until every scheduled change notification has been delivered"""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    def get_storage_metrics(self) -> Dict:
        """Get storage write metrics"""
        avg_write_time = (sum(self.processing_times) / len(self.processing_times)
                          if self.processing_times else 0)
        return {
            "total_writes": len(self.processing_times),
            "avg_write_time_ms": avg_write_time * 1000,
            "pending_notifications": len(self._pending),
            "subscribed_paths": sorted(p for p, cbs in self._subscribers.items() if cbs),
        }


class MemoryBackend(StorageBackend):
    """In-process storage, lost on restart"""

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Snapshot] = {}

    async def _read(self, path: str) -> Snapshot:
        return dict(self._data.get(path, {}))

    async def _write(self, path: str, data: Snapshot):
        self._data[path] = data


class LocalFileBackend(StorageBackend):
    """Storage persisted as one JSON document per path in a local directory"""

    def __init__(self, data_dir: str):
        super().__init__()
        self.data_dir = data_dir
        os.makedirs(data_dir, exist_ok=True)

    def _file_path(self, path: str) -> str:
        return os.path.join(self.data_dir, f"{path}.json")

    async def _read(self, path: str) -> Snapshot:
        file_path = self._file_path(path)
        if not await aiofiles.os.path.exists(file_path):
            return {}

        try:
            async with aiofiles.open(file_path, "r", encoding="utf-8") as f:
                content = await f.read()
        except OSError as e:
            raise StorageError(f"Failed to read '{path}' from {file_path}: {e}") from e

        if not content.strip():
            return {}
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise StorageError(f"Corrupt collection '{path}' in {file_path}: {e}") from e

    async def _write(self, path: str, data: Snapshot):
        file_path = self._file_path(path)
        tmp_path = f"{file_path}.tmp"
        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(data, sort_keys=True))
            await aiofiles.os.replace(tmp_path, file_path)
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Failed to write '{path}' to {file_path}: {e}") from e


def create_backend(config: Optional[StorageConfig] = None) -> StorageBackend:
    """Create the backend selected by ``config.provider``"""
    config = config or StorageConfig()
    if config.provider == "memory":
        backend = MemoryBackend()
    elif config.provider == "local":
        backend = LocalFileBackend(config.data_dir)
    else:
        raise ValueError(f"Unknown storage provider: {config.provider}")

    logger.info(f"Initialized {config.provider} storage backend")
    return backend
