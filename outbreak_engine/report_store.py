"""Report Store for crop disease sightings

Reports are appended once, never deleted, and only ever change by being
resolved by their submitter. Every mutation is pushed to subscribers with the
full set of active reports.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from outbreak_engine.models import (
    DiagnosisEvent,
    Report,
    ReportNotFoundError,
    ReportOwnershipError,
    validate_diagnosis,
)
from storage.storage_manager import StorageBackend

logger = logging.getLogger(__name__)

REPORTS_PATH = "reports"

ReportsCallback = Callable[[List[Report]], Union[None, Awaitable[None]]]


def _parse_reports(snapshot: Dict[str, Any]) -> List[Report]:
    reports = []
    for report_id, raw in snapshot.items():
        try:
            reports.append(Report.model_validate(raw))
        except ValueError as e:
            logger.warning(f"Skipping unreadable report {report_id}: {e}")
    reports.sort(key=lambda r: r.created_at)
    return reports


class ReportStore:
    """Durable, multi-writer collection of sighting reports"""

    def __init__(self, backend: StorageBackend):
        self.backend = backend

    async def append(self, payload: Union[DiagnosisEvent, Dict[str, Any]],
                     owner_id: Optional[str] = None,
                     created_at: Optional[datetime] = None) -> Report:
        """Validate a diagnosis and persist it as a new active report

        Args:
            payload: Diagnosis event (model or raw mapping)
            owner_id: Device that submitted the report; the only one allowed to resolve it
            created_at: Override of the creation time

        Returns:
            The stored report

        Raises:
            ReportValidationError: when disease, crop, severity or region is missing or invalid
            StorageError: when the backend rejects the write
        """
        event = validate_diagnosis(payload)
        report = Report.from_event(event, uuid.uuid4().hex, owner_id=owner_id, created_at=created_at)

        await self.backend.set_value(REPORTS_PATH, report.id, report.model_dump(mode="json"))
        logger.info(f"Stored report {report.id}: {report.disease} on {report.crop} in {report.region}")
        return report

    async def resolve(self, report_id: str, requester_id: Optional[str]) -> Report:
        """Mark a report as resolved; only its submitter may do this

        Resolving an already resolved report is a no-op.

        Raises:
            ReportNotFoundError: when the report does not exist
            ReportOwnershipError: when ``requester_id`` is not the submitter
            StorageError: when the backend rejects the write
        """
        def mark_resolved(current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            if current is None:
                raise ReportNotFoundError(report_id)
            owner_id = current.get("owner_id")
            if owner_id is None or owner_id != requester_id:
                raise ReportOwnershipError(f"Report {report_id} can only be resolved by its submitter")
            if current.get("resolved"):
                return current
            return {**current, "resolved": True}

        previous, current = await self.backend.transaction(REPORTS_PATH, report_id, mark_resolved)
        if not previous.get("resolved"):
            logger.info(f"Report {report_id} resolved")
        return Report.model_validate(current)

    async def get(self, report_id: str) -> Optional[Report]:
        raw = await self.backend.get_value(REPORTS_PATH, report_id)
        return Report.model_validate(raw) if raw is not None else None

    async def list_reports(self, include_resolved: bool = True) -> List[Report]:
        """List reports ordered by creation time"""
        reports = _parse_reports(await self.backend.get(REPORTS_PATH))
        if include_resolved:
            return reports
        return [r for r in reports if r.is_active]

    async def active_reports(self) -> List[Report]:
        return await self.list_reports(include_resolved=False)

    def subscribe(self, on_change: ReportsCallback) -> Callable[[], None]:
        """Subscribe to the active-report set; called after every mutation"""
        def deliver(snapshot: Dict[str, Any]):
            return on_change([r for r in _parse_reports(snapshot) if r.is_active])

        return self.backend.subscribe(REPORTS_PATH, deliver)
