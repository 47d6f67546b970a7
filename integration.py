"""Integration Module for the Crop Outbreak Alerting System

This module connects all components of the system together, including:
- Storage backend
- Report Store and Proximity Aggregator
- Combo Counter and Recovery Signal Tracker
- Threshold Alerting and Alert Broadcast
"""

import logging
import os
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from alert_system.alert_manager import AlertConfig, AlertManager
from alert_system.broadcast import AlertBroadcaster
from alert_system.combo_counter import ComboCounter
from alert_system.recovery_tracker import RecoveryTracker, VoteLedger
from outbreak_engine.geo import CELL_PRECISION
from outbreak_engine.models import (
    DiagnosisEvent,
    GlobalTrackerEntry,
    ProneAlert,
    Report,
    ViewerLocation,
    validate_diagnosis,
)
from outbreak_engine.proximity_aggregator import NearbyCluster, ProximityAggregator
from outbreak_engine.report_store import ReportsCallback, ReportStore
from storage.storage_manager import ChangeCallback, StorageBackend, StorageConfig, StorageError, create_backend

# Configure logging
logging.basicConfig(level=logging.INFO,
                    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

ENV_PREFIX = "OUTBREAK_"


class SystemConfig(BaseModel):
    """Configuration for the integrated system"""
    storage_provider: str = Field(default="memory", description="Storage provider (memory, local)")
    data_dir: str = Field(default="outbreak_data", description="Directory for the local storage provider")
    alert_threshold: int = Field(default=2, ge=1, description="Reports in a nearby cluster that raise a local alert")
    radius_km: float = Field(default=5.0, gt=0, description="Local alert radius in km")
    prone_threshold: int = Field(default=3, ge=1, description="Regional reports that mark a prone area")
    prone_freshness_hours: float = Field(default=24.0, gt=0, description="Maximum age of prone alert feed records")
    cell_precision: int = Field(default=CELL_PRECISION, ge=0, description="Decimal places of the clustering grid")

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "SystemConfig":
        """Build a configuration from OUTBREAK_* environment variables

        Args:
            environ: Mapping to read instead of ``os.environ``
        """
        environ = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            env_name = f"{ENV_PREFIX}{name.upper()}"
            if env_name in environ:
                values[name] = environ[env_name]
        return cls(**values)

    def alert_config(self) -> AlertConfig:
        return AlertConfig(
            alert_threshold=self.alert_threshold,
            radius_km=self.radius_km,
            prone_threshold=self.prone_threshold,
            prone_freshness_hours=self.prone_freshness_hours,
        )

    def storage_config(self) -> StorageConfig:
        return StorageConfig(provider=self.storage_provider, data_dir=self.data_dir)


class OutbreakAlertSystem:
    """Integrated crop outbreak alerting system

    Storage failures during ingestion, resolution and voting are logged and
    dropped: the caller gets ``None`` or ``False`` and the system keeps running.
    """

    def __init__(self, config: Optional[SystemConfig] = None, backend: Optional[StorageBackend] = None):
        """Initialize the integrated system

        Args:
            config: System configuration
            backend: Storage backend to use instead of the configured provider
        """
        self.config = config or SystemConfig()
        self.backend = backend or create_backend(self.config.storage_config())

        self.report_store = ReportStore(self.backend)
        self.aggregator = ProximityAggregator(self.report_store, precision=self.config.cell_precision)
        self.combo_counter = ComboCounter(self.backend, prone_threshold=self.config.prone_threshold)
        self.recovery_tracker = RecoveryTracker(self.backend, VoteLedger(self.backend))
        self.alert_manager = AlertManager(self.config.alert_config())
        self.broadcaster = AlertBroadcaster(
            self.alert_manager, self.aggregator, self.combo_counter, self.recovery_tracker)

        self.is_running = False
        self.started_at: Optional[datetime] = None
        self.dropped_writes = 0

        logger.info("Outbreak alert system created")

    async def start(self):
        """Attach derived views to the store and load the current state"""
        if self.is_running:
            return
        self.aggregator.attach()
        self.broadcaster.attach()
        await self.aggregator.refresh()
        self.is_running = True
        self.started_at = datetime.now()
        logger.info("Outbreak alert system started")

    async def stop(self):
        if not self.is_running:
            return
        self.broadcaster.detach()
        self.aggregator.detach()
        await self.backend.wait_idle()
        self.is_running = False
        logger.info("Outbreak alert system stopped")

    def _drop(self, operation: str, error: StorageError):
        self.dropped_writes += 1
        logger.error(f"Storage failure during {operation}, dropping: {error}")

    async def ingest_diagnosis(self, event: Union[DiagnosisEvent, Dict[str, Any]],
                               owner_id: Optional[str] = None) -> Optional[Report]:
        """Turn a completed diagnosis into a report and count it for its region

        Args:
            event: Diagnosis with disease, crop, severity, region and optional lat/lon
            owner_id: Device submitting the report

        Returns:
            The stored report, or None when storage rejected it

        Raises:
            ReportValidationError: when the diagnosis is missing required fields
        """
        event = validate_diagnosis(event)

        try:
            report = await self.report_store.append(event, owner_id=owner_id)
        except StorageError as e:
            self._drop("report append", e)
            return None

        try:
            await self.combo_counter.increment(event.region, event.crop, event.disease)
        except StorageError as e:
            self._drop("combo counter increment", e)

        return report

    async def resolve_report(self, report_id: str, requester_id: Optional[str]) -> Optional[Report]:
        """Resolve a report on behalf of its submitter

        Raises:
            ReportNotFoundError: when the report does not exist
            ReportOwnershipError: when the requester did not submit the report
        """
        try:
            return await self.report_store.resolve(report_id, requester_id)
        except StorageError as e:
            self._drop("report resolve", e)
            return None

    async def vote_ok(self, disease_key: str, device_id: str) -> bool:
        try:
            return await self.recovery_tracker.vote_ok(disease_key, device_id)
        except StorageError as e:
            self._drop("recovery vote", e)
            return False

    async def query_nearby_clusters(self, viewer: Optional[ViewerLocation],
                                    radius_km: Optional[float] = None) -> List[NearbyCluster]:
        """Clusters around a viewer, closest first"""
        await self.aggregator.refresh()
        radius = self.config.radius_km if radius_km is None else radius_km
        return self.aggregator.query_nearby(viewer, radius)

    async def global_tracker(self) -> List[GlobalTrackerEntry]:
        await self.aggregator.refresh()
        return self.aggregator.tracker

    async def list_reports(self, include_resolved: bool = True) -> List[Report]:
        return await self.report_store.list_reports(include_resolved=include_resolved)

    async def combo_counters(self) -> Dict[str, int]:
        return await self.combo_counter.snapshot()

    async def prone_alerts(self) -> List[ProneAlert]:
        return await self.combo_counter.prone_alerts()

    async def ok_votes(self) -> Dict[str, int]:
        return await self.recovery_tracker.votes()

    def subscribe_reports(self, on_change: ReportsCallback) -> Callable[[], None]:
        return self.report_store.subscribe(on_change)

    def subscribe_combo_counters(self, on_change: ChangeCallback) -> Callable[[], None]:
        return self.combo_counter.subscribe(on_change)

    def subscribe_prone_alerts(self, on_change: ChangeCallback) -> Callable[[], None]:
        return self.combo_counter.subscribe_prone_alerts(on_change)

    def subscribe_ok_votes(self, on_change: ChangeCallback) -> Callable[[], None]:
        return self.recovery_tracker.subscribe(on_change)

    def get_system_status(self) -> Dict[str, Any]:
        return {
            "status": "running" if self.is_running else "stopped",
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "storage_provider": self.config.storage_provider,
            "clusters": len(self.aggregator.clusters),
            "dropped_writes": self.dropped_writes,
            "storage": self.backend.get_storage_metrics(),
            "alerts": self.alert_manager.get_alert_metrics(),
            "broadcast": self.broadcaster.get_broadcast_metrics(),
        }
