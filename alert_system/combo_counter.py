"""Combo Counter for regional "prone area" detection

One persistent counter per normalized (region, crop, disease) combination,
incremented once per new report. Each increment runs as a storage transaction,
so every value is produced by exactly one caller and no multiple of the prone
threshold can be skipped by concurrent writers.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from outbreak_engine.models import ProneAlert, combo_key, utc_now
from storage.storage_manager import ChangeCallback, StorageBackend

logger = logging.getLogger(__name__)

COMBO_COUNTS_PATH = "combo_counts"
PRONE_ALERTS_PATH = "prone_alerts"


@dataclass
class ComboIncrement:
    """Outcome of a single counter increment"""
    key: str
    previous: int
    value: int
    prone_alert: Optional[ProneAlert] = None


class ComboCounter:
    """Persistent, monotonically non-decreasing counters keyed by combo key"""

    def __init__(self, backend: StorageBackend, prone_threshold: int = 3):
        if prone_threshold < 1:
            raise ValueError("prone_threshold must be at least 1")
        self.backend = backend
        self.prone_threshold = prone_threshold

    async def increment(self, region: str, crop: str, disease: str) -> ComboIncrement:
        """Add one report to a combination's counter

        When the new value lands exactly on a multiple of the prone threshold a
        ProneAlert record is appended to the prone alert feed.

        Raises:
            StorageError: when the backend rejects the transaction or the alert append
        """
        key = combo_key(region, crop, disease)
        previous, value = await self.backend.transaction(
            COMBO_COUNTS_PATH, key, lambda current: int(current or 0) + 1)
        previous = int(previous or 0)

        result = ComboIncrement(key=key, previous=previous, value=value)
        if value % self.prone_threshold == 0:
            alert = ProneAlert(
                combo_key=key,
                region=region,
                crop=crop,
                disease=disease,
                count=value,
                timestamp=utc_now(),
            )
            alert.id = await self.backend.push(PRONE_ALERTS_PATH, alert.model_dump(mode="json", exclude={"id"}))
            result.prone_alert = alert
            logger.warning(f"Prone area threshold reached for {key}: {value} reports")

        logger.info(f"Combo counter {key}: {previous} -> {value}")
        return result

    async def get(self, region: str, crop: str, disease: str) -> int:
        return int(await self.backend.get_value(COMBO_COUNTS_PATH, combo_key(region, crop, disease), 0))

    async def snapshot(self) -> Dict[str, int]:
        return {key: int(value) for key, value in (await self.backend.get(COMBO_COUNTS_PATH)).items()}

    async def prone_alerts(self) -> List[ProneAlert]:
        """All ProneAlert feed records, oldest first"""
        return parse_prone_alerts(await self.backend.get(PRONE_ALERTS_PATH))

    def subscribe(self, on_change: ChangeCallback) -> Callable[[], None]:
        """Subscribe to the counter map (``{comboKey: count}``)"""
        return self.backend.subscribe(COMBO_COUNTS_PATH, on_change)

    def subscribe_prone_alerts(self, on_change: ChangeCallback) -> Callable[[], None]:
        """Subscribe to the raw ProneAlert feed (``{recordId: record}``)"""
        return self.backend.subscribe(PRONE_ALERTS_PATH, on_change)


def _normalize_record(raw: Dict) -> Dict:
    # Records from the legacy feed use "state" and epoch-millisecond "ts"
    record = dict(raw)
    if "region" not in record and "state" in record:
        record["region"] = record.pop("state")
    if "timestamp" not in record and "ts" in record:
        record["timestamp"] = datetime.fromtimestamp(float(record.pop("ts")) / 1000, tz=timezone.utc)
    if "combo_key" not in record:
        record["combo_key"] = combo_key(record.get("region"), record.get("crop"), record.get("disease"))
    return record


def parse_prone_alerts(snapshot: Dict) -> List[ProneAlert]:
    alerts = []
    for record_id, raw in snapshot.items():
        try:
            alerts.append(ProneAlert.model_validate({**_normalize_record(raw), "id": record_id}))
        except (TypeError, ValueError) as e:
            logger.warning(f"Skipping unreadable prone alert {record_id}: {e}")
    alerts.sort(key=lambda a: a.timestamp)
    return alerts
