"""Recovery Signal Tracker

Counts "crop is recovering" (OK) votes per disease. A device may vote once per
disease; the one-vote rule is a flag keyed by the device id the client sends,
which is not verified. This is a soft, game-able limit accepted for a low-stakes
advisory signal: a client that changes its device id can vote again.
"""

import logging
from typing import Callable, Dict

from outbreak_engine.models import normalize_key
from storage.storage_manager import ChangeCallback, StorageBackend

logger = logging.getLogger(__name__)

OK_VOTES_PATH = "ok_votes"
DEVICE_VOTES_PATH = "device_votes"


class VoteLedger:
    """Persistent per-device "already voted" flags"""

    def __init__(self, backend: StorageBackend):
        self.backend = backend

    @staticmethod
    def _flag_key(device_id: str, disease_key: str) -> str:
        return f"{device_id}|{disease_key}"

    async def has_voted(self, device_id: str, disease_key: str) -> bool:
        return bool(await self.backend.get_value(DEVICE_VOTES_PATH, self._flag_key(device_id, disease_key), False))

    async def mark_voted(self, device_id: str, disease_key: str):
        await self.backend.set_value(DEVICE_VOTES_PATH, self._flag_key(device_id, disease_key), True)


class RecoveryTracker:
    """Per-disease OK vote counters"""

    def __init__(self, backend: StorageBackend, ledger: VoteLedger):
        self.backend = backend
        self.ledger = ledger

    async def vote_ok(self, disease_key: str, device_id: str) -> bool:
        """Record one recovery vote from a device

        Returns:
            True when the vote was counted, False when the device already voted

        Raises:
            ValueError: when the disease key or device id is empty
            StorageError: when the backend rejects the vote
        """
        disease_key = normalize_key(disease_key)
        if not disease_key:
            raise ValueError("disease_key must not be empty")
        if not device_id:
            raise ValueError("device_id must not be empty")

        if await self.ledger.has_voted(device_id, disease_key):
            logger.debug(f"Device {device_id} already voted for {disease_key}")
            return False

        _, votes = await self.backend.transaction(
            OK_VOTES_PATH, disease_key, lambda current: int(current or 0) + 1)
        # The flag is set only once the vote is stored
        await self.ledger.mark_voted(device_id, disease_key)

        logger.info(f"OK vote for {disease_key} from {device_id} (total {votes})")
        return True

    async def ok_votes(self, disease_key: str) -> int:
        return int(await self.backend.get_value(OK_VOTES_PATH, normalize_key(disease_key), 0))

    async def votes(self) -> Dict[str, int]:
        return {key: int(value) for key, value in (await self.backend.get(OK_VOTES_PATH)).items()}

    def subscribe(self, on_change: ChangeCallback) -> Callable[[], None]:
        """Subscribe to the vote map (``{diseaseKey: votes}``)"""
        return self.backend.subscribe(OK_VOTES_PATH, on_change)
