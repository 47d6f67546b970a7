"""Proximity Aggregator for crop disease sightings

Groups active, geotagged reports into outbreak clusters keyed by the normalized
disease plus a coarse 0.1 degree grid cell, and measures viewer-to-cluster
distance with the haversine formula. Clusters are recomputed from scratch on
every report change; at the expected volume (tens to low hundreds of active
reports per region) this is a single O(n) pass.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from outbreak_engine.geo import CELL_PRECISION, cell_of, haversine_km
from outbreak_engine.models import (
    GlobalTrackerEntry,
    OutbreakCluster,
    Report,
    ViewerLocation,
    normalize_key,
)
from outbreak_engine.report_store import ReportStore

logger = logging.getLogger(__name__)


class NearbyCluster(OutbreakCluster):
    """Outbreak cluster annotated with its distance from a viewer"""
    distance_km: float


def cluster_reports(reports: Iterable[Report], precision: int = CELL_PRECISION) -> List[OutbreakCluster]:
    """Group active, geotagged reports by disease and grid cell

    Returns:
        Clusters ordered by report count, largest first
    """
    groups: Dict[str, Dict] = {}

    for report in reports:
        if report.resolved or not report.is_geotagged:
            continue

        disease_key = report.disease_key or normalize_key(report.disease)
        cell_lat, cell_lon = cell_of(report.lat, report.lon, precision)
        key = f"{disease_key}|{cell_lat}|{cell_lon}"

        group = groups.get(key)
        if group is None:
            group = groups[key] = {
                "disease_key": disease_key,
                "disease": report.disease,
                "region": report.region,
                "crops": [],
                "lat_sum": 0.0,
                "lon_sum": 0.0,
                "severity": report.severity,
                "report_ids": [],
            }

        group["lat_sum"] += report.lat
        group["lon_sum"] += report.lon
        group["report_ids"].append(report.id)
        if report.crop not in group["crops"]:
            group["crops"].append(report.crop)
        if report.severity.rank > group["severity"].rank:
            group["severity"] = report.severity

    clusters = []
    for key, group in groups.items():
        count = len(group["report_ids"])
        clusters.append(OutbreakCluster(
            cluster_key=key,
            disease_key=group["disease_key"],
            disease=group["disease"],
            crops=group["crops"],
            region=group["region"],
            lat=group["lat_sum"] / count,
            lon=group["lon_sum"] / count,
            count=count,
            severity=group["severity"],
            report_ids=group["report_ids"],
        ))

    clusters.sort(key=lambda c: (-c.count, c.cluster_key))
    return clusters


def nearby_clusters(clusters: Iterable[OutbreakCluster], viewer: Optional[ViewerLocation],
                    radius_km: float) -> List[NearbyCluster]:
    """Clusters whose centroid lies within ``radius_km`` of the viewer, closest first

    A viewer without a known location has no nearby clusters.
    """
    if viewer is None:
        return []

    nearby = []
    for cluster in clusters:
        distance = haversine_km(viewer.lat, viewer.lon, cluster.lat, cluster.lon)
        if distance <= radius_km:
            nearby.append(NearbyCluster(**cluster.model_dump(), distance_km=distance))

    nearby.sort(key=lambda c: (c.distance_km, -c.count))
    return nearby


def global_tracker(reports: Iterable[Report]) -> List[GlobalTrackerEntry]:
    """Group every active report by disease, regardless of location"""
    groups: Dict[str, GlobalTrackerEntry] = {}
    for report in reports:
        if report.resolved:
            continue
        disease_key = report.disease_key or normalize_key(report.disease)
        entry = groups.get(disease_key)
        if entry is None:
            entry = groups[disease_key] = GlobalTrackerEntry(
                disease_key=disease_key, disease=report.disease, count=0)
        entry.count += 1
        if report.crop not in entry.crops:
            entry.crops.append(report.crop)
        if report.region not in entry.regions:
            entry.regions.append(report.region)

    return sorted(groups.values(), key=lambda e: (-e.count, e.disease_key))


class ProximityAggregator:
    """Keeps the current cluster set in step with the report store"""

    def __init__(self, report_store: ReportStore, precision: int = CELL_PRECISION):
        self.report_store = report_store
        self.precision = precision
        self.clusters: List[OutbreakCluster] = []
        self.tracker: List[GlobalTrackerEntry] = []
        self.last_update: Optional[datetime] = None
        self.recompute_count = 0
        self._unsubscribe: Optional[Callable[[], None]] = None

    def attach(self):
        """Recompute clusters whenever the report store changes"""
        if self._unsubscribe is None:
            self._unsubscribe = self.report_store.subscribe(self.recompute)
            logger.info("Proximity aggregator attached to report store")

    def detach(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def recompute(self, reports: List[Report]):
        self.clusters = cluster_reports(reports, self.precision)
        self.tracker = global_tracker(reports)
        self.last_update = datetime.now()
        self.recompute_count += 1
        logger.debug(f"Recomputed {len(self.clusters)} clusters from {len(reports)} active reports")

    async def refresh(self) -> List[OutbreakCluster]:
        """Recompute directly from the store instead of waiting for a notification"""
        self.recompute(await self.report_store.active_reports())
        return self.clusters

    def query_nearby(self, viewer: Optional[ViewerLocation], radius_km: float) -> List[NearbyCluster]:
        return nearby_clusters(self.clusters, viewer, radius_km)
