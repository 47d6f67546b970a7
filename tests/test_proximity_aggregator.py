"""Test suite for geographic helpers and the proximity aggregator."""

import pytest

from outbreak_engine.geo import cell_of, haversine_km, round_half_up
from outbreak_engine.models import Report, Severity, ViewerLocation
from outbreak_engine.proximity_aggregator import (
    ProximityAggregator,
    cluster_reports,
    global_tracker,
    nearby_clusters,
)
from outbreak_engine.report_store import ReportStore
from storage.storage_manager import MemoryBackend


def make_report(report_id, disease="Blast", lat=20.0, lon=75.0, crop="Rice",
                severity=Severity.MODERATE, region="Maharashtra", resolved=False):
    return Report(
        id=report_id,
        disease=disease,
        disease_key=disease.strip().lower(),
        crop=crop,
        severity=severity,
        region=region,
        lat=lat,
        lon=lon,
        resolved=resolved,
    )


class TestGeo:
    """Test distance and grid helpers"""

    def test_haversine_one_degree_latitude(self):
        assert haversine_km(0.0, 0.0, 1.0, 0.0) == pytest.approx(111.19, abs=0.01)

    def test_haversine_same_point(self):
        assert haversine_km(20.0, 75.0, 20.0, 75.0) == 0.0

    def test_haversine_is_symmetric(self):
        assert haversine_km(20.0, 75.0, 21.3, 73.9) == pytest.approx(haversine_km(21.3, 73.9, 20.0, 75.0))

    def test_round_half_up(self):
        assert round_half_up(0.25) == 0.3
        assert round_half_up(-0.25) == -0.2
        assert round_half_up(20.02) == 20.0

    def test_cell_of(self):
        assert cell_of(20.02, 75.01) == (20.0, 75.0)
        assert cell_of(20.06, 75.0) == (20.1, 75.0)


class TestClusterReports:
    """Test grouping of active, geotagged reports"""

    def test_same_disease_and_cell_share_a_cluster(self):
        clusters = cluster_reports([
            make_report("a", disease="Blast", lat=20.00, lon=75.00),
            make_report("b", disease="blast", lat=20.02, lon=75.01),
        ])

        assert len(clusters) == 1
        cluster = clusters[0]
        assert cluster.count == 2
        assert cluster.disease_key == "blast"
        assert cluster.cluster_key == "blast|20.0|75.0"
        assert cluster.lat == pytest.approx(20.01)
        assert cluster.lon == pytest.approx(75.005)
        assert cluster.report_ids == ["a", "b"]

    def test_different_diseases_do_not_merge(self):
        clusters = cluster_reports([
            make_report("a", disease="Blast"),
            make_report("b", disease="Rust"),
        ])

        assert sorted(c.disease_key for c in clusters) == ["blast", "rust"]

    def test_distant_cells_do_not_merge(self):
        clusters = cluster_reports([
            make_report("a", lat=20.0, lon=75.0),
            make_report("b", lat=21.0, lon=75.0),
        ])

        assert [c.count for c in clusters] == [1, 1]

    def test_resolved_and_unlocated_reports_are_excluded(self):
        clusters = cluster_reports([
            make_report("a"),
            make_report("b", resolved=True),
            make_report("c", lat=None, lon=None),
        ])

        assert len(clusters) == 1
        assert clusters[0].report_ids == ["a"]

    def test_cluster_takes_highest_severity(self):
        clusters = cluster_reports([
            make_report("a", severity=Severity.MILD),
            make_report("b", severity=Severity.SEVERE),
            make_report("c", severity=Severity.MODERATE),
        ])

        assert clusters[0].severity == Severity.SEVERE

    def test_largest_cluster_first(self):
        clusters = cluster_reports([
            make_report("a", disease="Rust"),
            make_report("b", disease="Blast"),
            make_report("c", disease="Blast"),
        ])

        assert [c.disease_key for c in clusters] == ["blast", "rust"]


class TestNearbyClusters:
    """Test radius queries around a viewer"""

    def test_viewer_within_radius(self):
        clusters = cluster_reports([
            make_report("a", lat=20.00, lon=75.00),
            make_report("b", lat=20.02, lon=75.01),
        ])

        nearby = nearby_clusters(clusters, ViewerLocation(lat=20.0, lon=75.0), radius_km=5.0)

        assert len(nearby) == 1
        assert nearby[0].count == 2
        assert nearby[0].distance_km < 5.0

    def test_far_clusters_are_excluded(self):
        clusters = cluster_reports([make_report("a", lat=21.0, lon=75.0)])

        assert nearby_clusters(clusters, ViewerLocation(lat=20.0, lon=75.0), radius_km=5.0) == []

    def test_sorted_by_distance(self):
        clusters = cluster_reports([
            make_report("far", disease="Rust", lat=20.03, lon=75.0),
            make_report("near", disease="Blast", lat=20.0, lon=75.0),
        ])

        nearby = nearby_clusters(clusters, ViewerLocation(lat=20.0, lon=75.0), radius_km=5.0)

        assert [c.disease_key for c in nearby] == ["blast", "rust"]

    def test_no_viewer_location(self):
        clusters = cluster_reports([make_report("a")])

        assert nearby_clusters(clusters, None, radius_km=5.0) == []


def test_global_tracker_groups_across_regions():
    tracker = global_tracker([
        make_report("a", disease="Blast", region="Maharashtra", crop="Rice"),
        make_report("b", disease="blast", region="Punjab", crop="Wheat", lat=None, lon=None),
        make_report("c", disease="Rust", region="Punjab"),
        make_report("d", disease="Rust", resolved=True),
    ])

    assert [(e.disease_key, e.count) for e in tracker] == [("blast", 2), ("rust", 1)]
    assert tracker[0].regions == ["Maharashtra", "Punjab"]
    assert tracker[0].crops == ["Rice", "Wheat"]


class TestProximityAggregator:
    """Test recomputation from the report store"""

    @pytest.fixture
    def backend(self):
        return MemoryBackend()

    @pytest.fixture
    def store(self, backend):
        return ReportStore(backend)

    @pytest.mark.asyncio
    async def test_recomputes_on_store_change(self, backend, store):
        aggregator = ProximityAggregator(store)
        aggregator.attach()

        await store.append({"disease": "Blast", "crop": "Rice", "severity": "Mild",
                            "region": "Maharashtra", "lat": 20.0, "lon": 75.0})
        await backend.wait_idle()

        assert aggregator.recompute_count == 1
        assert [c.count for c in aggregator.clusters] == [1]

        aggregator.detach()
        await store.append({"disease": "Blast", "crop": "Rice", "severity": "Mild",
                            "region": "Maharashtra", "lat": 20.0, "lon": 75.0})
        await backend.wait_idle()

        assert aggregator.recompute_count == 1

    @pytest.mark.asyncio
    async def test_resolving_only_report_removes_cluster(self, store):
        aggregator = ProximityAggregator(store)
        report = await store.append({"disease": "Blast", "crop": "Rice", "severity": "Mild",
                                     "region": "Maharashtra", "lat": 20.0, "lon": 75.0},
                                    owner_id="device-1")
        await aggregator.refresh()
        viewer = ViewerLocation(lat=20.0, lon=75.0)
        assert len(aggregator.query_nearby(viewer, 5.0)) == 1

        await store.resolve(report.id, "device-1")
        await aggregator.refresh()

        assert aggregator.query_nearby(viewer, 5.0) == []

    @pytest.mark.asyncio
    async def test_resolve_removes_exactly_one_report(self, store):
        aggregator = ProximityAggregator(store)
        reports = [
            await store.append({"disease": "Blast", "crop": "Rice", "severity": "Mild",
                                "region": "Maharashtra", "lat": 20.0 + i * 0.01, "lon": 75.0},
                               owner_id="device-1")
            for i in range(3)
        ]
        clusters = await aggregator.refresh()
        assert clusters[0].count == 3

        await store.resolve(reports[0].id, "device-1")
        assert (await aggregator.refresh())[0].count == 2

        await store.resolve(reports[0].id, "device-1")
        assert (await aggregator.refresh())[0].count == 2
