"""Alert Manager for crop outbreak threshold alerting

This module evaluates outbreak clusters and regional combo counters against two
independent thresholds:
- Local alerts: clusters near the viewer with enough active reports
- Prone area alerts: regional counters that reached the saturation threshold,
  plus fresh records from the prone alert feed
Recovery votes mute a cluster's displayed severity, and every prone alert is
shown at most once per viewing session.
"""

import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set

from pydantic import BaseModel, Field

from outbreak_engine.geo import haversine_km
from outbreak_engine.models import (
    GlobalTrackerEntry,
    OutbreakCluster,
    ProneAlert,
    Severity,
    ViewerLocation,
    utc_now,
)

# Configure logging
logging.basicConfig(level=logging.INFO,
                    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


class AlertTier(str, Enum):
    """Severity tier derived from a cluster"""
    MODERATE = "moderate"
    ALERT = "alert"
    SEVERE = "severe"


class DisplayStatus(str, Enum):
    """How a cluster is shown to viewers"""
    MODERATE = "moderate"
    ALERT = "alert"
    SEVERE = "severe"
    RECOVERING = "recovering"


class AlertConfig(BaseModel):
    """Threshold configuration for outbreak alerting"""
    alert_threshold: int = Field(default=2, ge=1, description="Reports in a nearby cluster that raise a local alert")
    radius_km: float = Field(default=5.0, gt=0, description="Local alert radius around the viewer in km")
    prone_threshold: int = Field(default=3, ge=1, description="Regional reports that mark a prone area")
    prone_freshness_hours: float = Field(default=24.0, gt=0, description="Maximum age of prone alert feed records")


class ClusterStatus(OutbreakCluster):
    """Outbreak cluster with its derived alert state for one viewer"""
    distance_km: Optional[float] = None
    tier: AlertTier
    status: DisplayStatus
    is_alert: bool = False
    ok_votes: int = 0
    calming: bool = False


class TrackerStatus(GlobalTrackerEntry):
    """Global tracker entry with its derived alert state"""
    tier: AlertTier
    status: DisplayStatus
    ok_votes: int = 0
    calming: bool = False


class AlertView(BaseModel):
    """Everything a viewer needs to render current outbreak alerts"""
    session_id: str
    generated_at: datetime = Field(default_factory=utc_now)
    viewer_location: Optional[ViewerLocation] = None
    local_alerts: List[ClusterStatus] = Field(default_factory=list)
    prone_alerts: List[ProneAlert] = Field(default_factory=list)
    clusters: List[ClusterStatus] = Field(default_factory=list)
    tracker: List[TrackerStatus] = Field(default_factory=list)


def is_calming(ok_votes: int, count: int) -> bool:
    """True when recovery votes reach half of the cluster's reports"""
    return ok_votes > 0 and ok_votes * 2 >= count


def severity_tier(count: int, severity: Severity, alert_threshold: int) -> AlertTier:
    if severity == Severity.SEVERE:
        return AlertTier.SEVERE
    if count >= alert_threshold:
        return AlertTier.ALERT
    return AlertTier.MODERATE


def _display_status(tier: AlertTier, calming: bool) -> DisplayStatus:
    if calming:
        return DisplayStatus.RECOVERING
    return DisplayStatus(tier.value)


class AlertSession:
    """One viewer's session: location and the set of alerts already shown"""

    def __init__(self, session_id: Optional[str] = None, device_id: Optional[str] = None,
                 viewer_location: Optional[ViewerLocation] = None):
        self.session_id = session_id or uuid.uuid4().hex
        self.device_id = device_id
        self.viewer_location = viewer_location
        self.started_at = utc_now()
        self.seen: Set[str] = set()
        self.shown_counts: Dict[str, int] = {}

    def has_seen(self, alert_key: str) -> bool:
        return alert_key in self.seen

    def mark_shown(self, alert_key: str) -> bool:
        """Move an alert from UNSEEN to SHOWN

        Returns:
            True if the alert had not been shown in this session yet
        """
        if alert_key in self.seen:
            return False
        self.seen.add(alert_key)
        return True

    def note_prone_count(self, combo: str, count: int):
        """Remember the highest regional count shown for a combination"""
        self.shown_counts[combo] = max(count, self.shown_counts.get(combo, 0))

    def update_location(self, lat: float, lon: float):
        self.viewer_location = ViewerLocation(lat=lat, lon=lon)


class AlertManager:
    """Derives local, regional and recovery alert state"""

    def __init__(self, config: Optional[AlertConfig] = None):
        """Initialize the alert manager

        Args:
            config: Thresholds to evaluate against
        """
        self.config = config or AlertConfig()
        self.processing_times: List[float] = []
        self.prone_alerts_shown = 0
        logger.info(f"Alert Manager initialized with {self.config.model_dump()}")

    def cluster_status(self, cluster: OutbreakCluster, ok_votes: Dict[str, int],
                       viewer: Optional[ViewerLocation] = None) -> ClusterStatus:
        votes = int(ok_votes.get(cluster.disease_key, 0))
        calming = is_calming(votes, cluster.count)
        tier = severity_tier(cluster.count, cluster.severity, self.config.alert_threshold)
        distance = (haversine_km(viewer.lat, viewer.lon, cluster.lat, cluster.lon)
                    if viewer is not None else None)

        return ClusterStatus(
            **cluster.model_dump(exclude={"distance_km"}),
            distance_km=distance,
            tier=tier,
            status=_display_status(tier, calming),
            is_alert=cluster.count >= self.config.alert_threshold,
            ok_votes=votes,
            calming=calming,
        )

    def evaluate_clusters(self, clusters: Iterable[OutbreakCluster], ok_votes: Dict[str, int],
                          viewer: Optional[ViewerLocation] = None) -> List[ClusterStatus]:
        return [self.cluster_status(cluster, ok_votes, viewer) for cluster in clusters]

    def local_alerts(self, clusters: Iterable[OutbreakCluster], viewer: Optional[ViewerLocation],
                     ok_votes: Dict[str, int]) -> List[ClusterStatus]:
        """Clusters within the alert radius that reach the alert threshold

        No viewer location means no local alerts; regional alerting is unaffected.
        """
        if viewer is None:
            return []

        alerts = [
            status for status in self.evaluate_clusters(clusters, ok_votes, viewer)
            if status.distance_km <= self.config.radius_km and status.is_alert
        ]
        alerts.sort(key=lambda s: (-s.count, s.distance_km))
        return alerts

    def evaluate_tracker(self, tracker: Iterable[GlobalTrackerEntry],
                         ok_votes: Dict[str, int]) -> List[TrackerStatus]:
        """Tracker entries are alerts only once their count is above the threshold"""
        statuses = []
        for entry in tracker:
            votes = int(ok_votes.get(entry.disease_key, 0))
            calming = is_calming(votes, entry.count)
            tier = AlertTier.ALERT if entry.count > self.config.alert_threshold else AlertTier.MODERATE
            statuses.append(TrackerStatus(
                **entry.model_dump(),
                tier=tier,
                status=_display_status(tier, calming),
                ok_votes=votes,
                calming=calming,
            ))
        return statuses

    def crossed_combos(self, combo_counts: Dict[str, int], session: AlertSession,
                       now: Optional[datetime] = None) -> List[ProneAlert]:
        """Counters at or above the prone threshold not yet shown this session"""
        now = now or utc_now()
        alerts = []
        for key in sorted(combo_counts):
            count = int(combo_counts[key])
            if count < self.config.prone_threshold:
                continue
            if not session.mark_shown(f"prone:{key}"):
                continue
            session.note_prone_count(key, count)

            parts = key.split("|")
            region = parts[0]
            crop = parts[1] if len(parts) > 1 else ""
            disease = parts[2] if len(parts) > 2 else crop
            alerts.append(ProneAlert(combo_key=key, region=region, crop=crop,
                                     disease=disease, count=count, timestamp=now))
        return alerts

    def fresh_feed_alerts(self, feed: Iterable[ProneAlert], session: AlertSession,
                          now: Optional[datetime] = None) -> List[ProneAlert]:
        """Prone alert feed records inside the freshness window not yet shown

        A record is marked as seen without being shown when a count at least
        as high was already shown for its combination this session.
        """
        now = now or utc_now()
        cutoff = now - timedelta(hours=self.config.prone_freshness_hours)
        alerts = []
        for alert in feed:
            timestamp = alert.timestamp
            if timestamp.tzinfo is None:
                timestamp = timestamp.replace(tzinfo=timezone.utc)
            if timestamp <= cutoff:
                continue
            if not session.mark_shown(f"pa:{alert.id}"):
                continue
            if alert.count <= session.shown_counts.get(alert.combo_key, 0):
                continue
            session.mark_shown(f"prone:{alert.combo_key}")
            session.note_prone_count(alert.combo_key, alert.count)
            alerts.append(alert)
        return alerts

    def build_view(self, session: AlertSession, clusters: List[OutbreakCluster],
                   tracker: List[GlobalTrackerEntry], combo_counts: Dict[str, int],
                   feed: List[ProneAlert], ok_votes: Dict[str, int],
                   now: Optional[datetime] = None) -> AlertView:
        """Build the full alert view for one session

        Prone alerts included in the view move to SHOWN for the session.
        """
        start_time = time.time()
        now = now or utc_now()
        viewer = session.viewer_location

        prone_alerts = self.crossed_combos(combo_counts, session, now)
        prone_alerts.extend(self.fresh_feed_alerts(feed, session, now))
        self.prone_alerts_shown += len(prone_alerts)

        view = AlertView(
            session_id=session.session_id,
            generated_at=now,
            viewer_location=viewer,
            local_alerts=self.local_alerts(clusters, viewer, ok_votes),
            prone_alerts=prone_alerts,
            clusters=self.evaluate_clusters(clusters, ok_votes, viewer),
            tracker=self.evaluate_tracker(tracker, ok_votes),
        )

        self.processing_times.append(time.time() - start_time)
        if view.local_alerts or prone_alerts:
            logger.info(f"Session {session.session_id}: {len(view.local_alerts)} local alerts, "
                        f"{len(prone_alerts)} new prone alerts")
        return view

    def get_alert_metrics(self) -> Dict:
        """Get metrics about alert evaluation"""
        avg_processing_time = (sum(self.processing_times) / len(self.processing_times)
                               if self.processing_times else 0)
        return {
            "views_built": len(self.processing_times),
            "prone_alerts_shown": self.prone_alerts_shown,
            "avg_processing_time_ms": avg_processing_time * 1000,
            "thresholds": self.config.model_dump(),
        }
