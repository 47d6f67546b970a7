"""Test suite for recovery (OK) votes."""

from unittest.mock import AsyncMock

import pytest

from alert_system.recovery_tracker import DEVICE_VOTES_PATH, RecoveryTracker, VoteLedger
from storage.storage_manager import MemoryBackend, StorageError


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def tracker(backend):
    return RecoveryTracker(backend, VoteLedger(backend))


class TestRecoveryTracker:
    """Test one-vote-per-device counting"""

    @pytest.mark.asyncio
    async def test_first_vote_counts(self, tracker, backend):
        assert await tracker.vote_ok("Late Blight", "device-1") is True

        assert await tracker.ok_votes("late blight") == 1
        assert await backend.get(DEVICE_VOTES_PATH) == {"device-1|late blight": True}

    @pytest.mark.asyncio
    async def test_repeat_vote_is_ignored(self, tracker):
        await tracker.vote_ok("late blight", "device-1")

        assert await tracker.vote_ok("Late Blight ", "device-1") is False
        assert await tracker.ok_votes("late blight") == 1

    @pytest.mark.asyncio
    async def test_devices_vote_independently(self, tracker):
        await tracker.vote_ok("rust", "device-1")
        await tracker.vote_ok("rust", "device-2")
        await tracker.vote_ok("blast", "device-1")

        assert await tracker.votes() == {"rust": 2, "blast": 1}

    @pytest.mark.asyncio
    async def test_empty_identifiers_are_rejected(self, tracker):
        with pytest.raises(ValueError):
            await tracker.vote_ok("  ", "device-1")
        with pytest.raises(ValueError):
            await tracker.vote_ok("rust", "")

    @pytest.mark.asyncio
    async def test_failed_vote_leaves_device_free_to_retry(self, backend):
        ledger = VoteLedger(backend)
        tracker = RecoveryTracker(backend, ledger)
        backend.transaction = AsyncMock(side_effect=StorageError("offline"))

        with pytest.raises(StorageError):
            await tracker.vote_ok("rust", "device-1")

        assert await ledger.has_voted("device-1", "rust") is False

    @pytest.mark.asyncio
    async def test_subscribers_receive_vote_map(self, tracker, backend):
        updates = []
        tracker.subscribe(updates.append)

        await tracker.vote_ok("rust", "device-1")
        await backend.wait_idle()

        assert updates == [{"rust": 1}]
