from datetime import timedelta

import pandas as pd
import pytest

from conftest import START, make_incident
from incident_core import geo
from incident_core.clustering import ClusterHeatmapGenerator, ClusterParams, HeatmapParams
from incident_core.errors import ValidationError
from incident_core.geojson_export import ExportParams, GeoJsonExporter
from incident_core.hotspots import DensityParams, HotspotAnalyzer, HotspotParams, risk_levels
from incident_core.impact_zones import ImpactZoneAnalyzer, ImpactZoneParams, impact_risk
from incident_core.predictive import PredictiveModelGenerator, PredictiveParams
from incident_core.records import PerformanceMonitor
from incident_core.temporal import StatisticsParams, TemporalParams, TemporalPatternAnalyzer, WEEKDAYS, linear_trend


def _cell(n, lat, lon, severity, start_id):
    return [make_incident(id=start_id + k, lat=lat, lon=lon, severity=severity) for k in range(n)]


class TestHotspots:
    def test_scores_sorted_and_normalized(self):
        incidents = _cell(3, 40.705, -74.005, 5, 1) + _cell(4, 40.715, -74.005, 2, 10) + _cell(1, 40.725, -74.005, 5, 20)
        spots = HotspotAnalyzer.score_cells(incidents, grid_size=100, min_incidents=3)
        assert [s["incident_count"] for s in spots] == [3, 4]
        assert spots[0]["hotspot_score"] == 15.0
        assert spots[0]["normalized_score"] == 1.0
        assert spots[1]["normalized_score"] == pytest.approx(8 / 15)
        assert all(0 < s["normalized_score"] <= 1 for s in spots)

    def test_adding_an_incident_never_lowers_a_cell(self):
        base = _cell(3, 40.705, -74.005, 3, 1)
        before = HotspotAnalyzer.score_cells(base, 100, 3)[0]["hotspot_score"]
        after = HotspotAnalyzer.score_cells(base + [make_incident(id=99, lat=40.705, lon=-74.005, severity=1)], 100, 3)
        assert after[0]["hotspot_score"] >= before

    def test_raising_severity_never_lowers_a_cell(self):
        base = _cell(3, 40.705, -74.005, 3, 1)
        before = HotspotAnalyzer.score_cells(base, 100, 3)[0]
        raised = base[:2] + [make_incident(id=3, lat=40.705, lon=-74.005, severity=5)]
        after = HotspotAnalyzer.score_cells(raised, 100, 3)[0]
        assert after["incident_count"] == before["incident_count"] == 3
        assert after["hotspot_score"] > before["hotspot_score"]

    def test_min_incidents_filters_cells(self):
        assert HotspotAnalyzer.score_cells(_cell(2, 40.7, -74.0, 5, 1), 100, 3) == []

    def test_risk_levels(self):
        assert risk_levels(pd.Series([5.0]).to_numpy()) == ["high"]
        assert risk_levels(pd.Series([1.0, 1.0, 10.0]).to_numpy()) == ["moderate", "moderate", "critical"]

    def test_generate_uses_store(self, run):
        async def scenario(env):
            for _ in range(3):
                await env.seed(40.705, -74.005, severity=4)
            await env.seed(40.705, -74.005, severity=4, created_at=START - timedelta(days=40))
            monitor = PerformanceMonitor()
            out = await HotspotAnalyzer(env.repository, monitor, clock=env.clock).generate_hotspots(
                HotspotParams.parse({"time_range": "30d"})
            )
            assert out["metadata"]["incidents_considered"] == 3
            assert out["hotspots"][0]["incident_count"] == 3
            assert monitor.summary()["hotspot_generation"]["count"] == 1
        run(scenario)


class TestDensity:
    def test_density_cells(self):
        incidents = _cell(4, 40.705, -74.005, 3, 1) + [make_incident(id=50, lat=40.755, lon=-74.005, severity=1)]
        grid = HotspotAnalyzer.density_cells(incidents, 0.01, normalize=True)
        assert grid[0]["incident_count"] == 4
        assert grid[0]["normalized_density"] == 1.0
        assert grid[0]["density_per_km2"] > 0
        assert grid[1]["severity_stddev"] == 0.0

    def test_calculate_density(self, run):
        async def scenario(env):
            await env.seed(40.705, -74.005)
            out = await HotspotAnalyzer(env.repository, clock=env.clock).calculate_density(
                DensityParams.parse({"resolution": "low"})
            )
            assert out["metadata"]["grid_size"] == 50
            assert out["grid"][0]["incident_count"] == 1
        run(scenario)


class TestImpactZones:
    def test_union_area_grows_with_radius(self, run):
        async def scenario(env):
            ids = [await env.seed(40.7 + 0.003 * i, -74.0) for i in range(3)]
            analyzer = ImpactZoneAnalyzer(env.repository, env.store, clock=env.clock)
            areas = []
            for r in (100, 300, 1000):
                out = await analyzer.generate(ImpactZoneParams.parse({"incident_ids": ids, "buffer_distance": r}))
                areas.append(out["total_area_km2"])
                assert out["total_area_km2"] <= out["metadata"]["summed_area_km2"] + 1e-9
            assert areas[0] < areas[1] < areas[2]
        run(scenario)

    def test_overlaps_and_risk(self, run):
        async def scenario(env):
            a = await env.seed(40.7, -74.0, severity=4)
            b = await env.seed(40.7005, -74.0, severity=2)
            c = await env.seed(41.5, -74.0, severity=2)
            out = await ImpactZoneAnalyzer(env.repository, env.store, clock=env.clock).generate(
                ImpactZoneParams.parse({"buffer_distance": "200"})
            )
            zones = {z["incident_id"]: z for z in out["impact_zones"]}
            assert zones[a]["overlapping_incidents"] == [b]
            assert zones[c]["overlap_count"] == 0
            assert zones[a]["impact_risk_level"] == "high"
            assert out["impact_zones"][0]["incident_id"] == a
            assert zones[a]["overlap_area_m2"] > 0
            # 200 m buffer: about pi * 200^2
            assert zones[c]["area_m2"] == pytest.approx(3.14159 * 200 ** 2, rel=0.01)
        run(scenario)

    def test_zones_across_the_antimeridian(self, run):
        async def scenario(env):
            east = await env.seed(-17.0, 179.9995)
            west = await env.seed(-17.0, -179.9995)
            out = await ImpactZoneAnalyzer(env.repository, env.store, clock=env.clock).generate(
                ImpactZoneParams.parse({"incident_ids": [east, west], "buffer_distance": 500})
            )
            zones = {z["incident_id"]: z for z in out["impact_zones"]}
            assert zones[east]["overlapping_incidents"] == [west]
            assert zones[west]["overlapping_incidents"] == [east]
            assert zones[east]["area_m2"] == pytest.approx(3.14159 * 500 ** 2, rel=0.01)
            single_km2 = zones[east]["area_m2"] / 1e6
            assert single_km2 < out["total_area_km2"] < out["metadata"]["summed_area_km2"]
        run(scenario)

    def test_risk_table(self):
        assert impact_risk(3, 4) == "critical"
        assert impact_risk(0, 4) == "high"
        assert impact_risk(1, 1) == "medium"
        assert impact_risk(0, 2) == "low"

    def test_too_many_ids(self):
        with pytest.raises(ValidationError):
            ImpactZoneParams.parse({"incident_ids": list(range(1, 502))})


class TestTemporal:
    def test_weekday_has_seven_entries_per_category(self, run):
        async def scenario(env):
            await env.seed(40.7, -74.0, created_at=START - timedelta(days=1))
            await env.seed(40.7, -74.0, created_at=START - timedelta(days=3))
            await env.seed(40.7, -74.0, type_id=env.pothole.id, severity=1, created_at=START - timedelta(days=2))
            out = await TemporalPatternAnalyzer(env.repository, clock=env.clock).analyze(
                TemporalParams.parse({"group_by": "weekday"})
            )
            patterns = out["patterns"]
            assert len(patterns) == 14
            for category in ("accident", "road"):
                rows = [p for p in patterns if p["category"] == category]
                assert [p["period"] for p in rows] == WEEKDAYS
                assert sum(p["incident_count"] for p in rows) == (2 if category == "accident" else 1)
            thursday = [p for p in patterns if p["category"] == "accident" and p["period"] == "Thursday"][0]
            assert thursday["incident_count"] == 1
            assert {t["category"] for t in out["trends"]} == {"accident", "road"}
        run(scenario)

    def test_daily_trend(self, run):
        async def scenario(env):
            for day, n in ((5, 1), (4, 2), (3, 3)):
                for _ in range(n):
                    await env.seed(40.7, -74.0, created_at=START - timedelta(days=day))
            out = await TemporalPatternAnalyzer(env.repository, clock=env.clock).analyze(
                TemporalParams.parse({"group_by": "day", "time_range": "7d"})
            )
            trend = out["trends"][0]
            assert trend["count_trend"] == 1.0
            assert trend["peak_period"] == (START - timedelta(days=3)).replace(hour=0).isoformat()
            assert trend["trend_significance"] == "insufficient-data"
        run(scenario)

    def test_linear_trend(self):
        assert linear_trend([1, 2, 3, 4]) == pytest.approx(1.0)
        assert linear_trend([5]) == 0.0


class TestClustersAndHeatmap:
    def test_clusters(self, run):
        async def scenario(env):
            for _ in range(3):
                await env.seed(40.7, -74.0, severity=4)
            for _ in range(2):
                await env.seed(34.05, -118.25, severity=2)
            out = await ClusterHeatmapGenerator(env.repository, env.store, clock=env.clock).clusters(
                ClusterParams.parse({"cluster_count": "2"})
            )
            assert [c["incident_count"] for c in out["clusters"]] == [3, 2]
            assert out["clusters"][0]["avg_severity"] == 4.0
            assert out["clusters"][0]["categories"] == ["accident"]
        run(scenario)

    def test_heatmap_intensity(self, run):
        async def scenario(env):
            await env.seed(40.705, -74.005, severity=2)
            await env.seed(40.705, -74.005, severity=4)
            await env.seed(40.705, -74.005, severity=5, created_at=START - timedelta(hours=30))
            out = await ClusterHeatmapGenerator(env.repository, env.store, clock=env.clock).heatmap(
                HeatmapParams.parse({"grid_size": "100"})
            )
            assert len(out["heatmap_points"]) == 1
            assert out["heatmap_points"][0]["intensity"] == 6.0
            assert out["max_intensity"] == 6.0
        run(scenario)


class TestPredictive:
    def test_insufficient_data(self, run):
        async def scenario(env):
            for _ in range(5):
                await env.seed(40.7, -74.0)
            out = await PredictiveModelGenerator(env.repository, env.store, min_samples=50, clock=env.clock).generate(
                PredictiveParams.parse({})
            )
            assert out["status"] == "insufficient"
            assert out["model"] == [] and out["predicted_incidents"] == []
            assert out["metadata"]["incident_count"] == 5
        run(scenario)

    def test_predictions_from_clusters(self, run):
        async def scenario(env):
            for k in range(6):
                await env.seed(40.7, -74.0, severity=4, created_at=START - timedelta(days=1 + k))
                await env.seed(34.05, -118.25, severity=2, created_at=START - timedelta(days=20 + k))
            out = await PredictiveModelGenerator(env.repository, env.store, min_samples=10, clock=env.clock).generate(
                PredictiveParams.parse({"prediction_hours": "12"})
            )
            assert out["status"] == "sufficient"
            assert len(out["model"]) == 2
            scores = [m["prediction_score"] for m in out["model"]]
            assert scores == sorted(scores, reverse=True)
            lats = sorted(m["location"]["latitude"] for m in out["model"])
            assert lats == pytest.approx([34.05, 40.7])
            assert out["predicted_incidents"][0]["predicted_timeframe"] == "Next 12 hours"
        run(scenario)

    def test_single_cluster_keeps_every_incident(self, run):
        async def scenario(env):
            for k in range(12):
                await env.seed(40.70 + 0.001 * (k % 6), -74.0, severity=3, created_at=START - timedelta(days=1 + k))
            out = await PredictiveModelGenerator(env.repository, env.store, min_samples=10, clock=env.clock).generate(
                PredictiveParams.parse({"cluster_count": "1"})
            )
            assert out["status"] == "sufficient"
            assert len(out["model"]) == 1
            assert out["model"][0]["incident_count"] == 12
            assert len(out["predicted_incidents"]) == 1
        run(scenario)


class TestGeoJson:
    def test_feature_collection(self, run):
        async def scenario(env):
            iid = await env.seed(40.7, -74.0)
            await env.seed(51.5, -0.1)
            out = await GeoJsonExporter(env.repository, env.store, clock=env.clock).export(
                ExportParams.parse({"bbox": "-75,40,-73,41", "include_buffers": "true", "buffer_distance": "100"})
            )
            assert out["type"] == "FeatureCollection"
            assert out["crs"]["properties"]["name"] == "EPSG:4326"
            assert len(out["features"]) == 1
            feature = out["features"][0]
            assert feature["properties"]["id"] == iid
            assert tuple(feature["geometry"]["coordinates"]) == (-74.0, 40.7)
            assert feature["properties"]["buffer"]["type"] == "Polygon"
        run(scenario)


class TestStatistics:
    async def _seed(self, env):
        await env.seed(40.7, -74.0, severity=4, verified=True)
        await env.seed(40.7, -74.0, severity=2)
        await env.seed(40.7, -74.0, severity=3, created_at=START - timedelta(days=3))
        await env.seed(40.7, -74.0, type_id=env.pothole.id, severity=1)
        await env.seed(40.7, -74.0, status="expired", expires_at=START - timedelta(hours=1))
        await env.seed(40.7, -74.0, created_at=START - timedelta(days=40))

    def test_daily_rows_newest_first(self, run):
        async def scenario(env):
            await self._seed(env)
            out = await TemporalPatternAnalyzer(env.repository, clock=env.clock).statistics(
                StatisticsParams.parse({})
            )
            rows = out["statistics"]
            today = START.replace(hour=0).isoformat()
            assert [(r["time_period"], r["incident_type"], r["total_incidents"]) for r in rows] == [
                (today, "Crash", 2),
                (today, "Pothole", 1),
                ((START - timedelta(days=3)).replace(hour=0).isoformat(), "Crash", 1),
            ]
            assert rows[0]["verified_incidents"] == 1
            assert rows[0]["avg_severity"] == 3.0
            assert rows[1]["category"] == "road"
            assert out["parameters"]["include_expired"] is False
        run(scenario)

    def test_include_expired_and_weekly_buckets(self, run):
        async def scenario(env):
            await self._seed(env)
            out = await TemporalPatternAnalyzer(env.repository, clock=env.clock).statistics(
                StatisticsParams.parse({"group_by": "week", "include_expired": "true"})
            )
            crash = [r for r in out["statistics"] if r["incident_type"] == "Crash"]
            assert len(crash) == 1
            # START is a Friday, its week starts on Monday the 11th
            assert crash[0]["time_period"] == "2024-03-11T00:00:00"
            assert crash[0]["total_incidents"] == 4
        run(scenario)

    def test_bad_grouping(self):
        with pytest.raises(ValidationError) as ei:
            StatisticsParams.parse({"group_by": "weekday", "time_range": "soon"})
        assert {d["field"] for d in ei.value.details} == {"group_by", "time_range"}


class TestGeometry:
    def test_one_cluster_groups_everything(self):
        points = [(40.70 + 0.01 * k, -74.0 + 0.01 * k) for k in range(6)]
        assert geo.kmeans_labels(points, 1).tolist() == [0] * 6

    def test_identical_points_share_a_label(self):
        labels = geo.kmeans_labels([(1.0, 1.0), (1.0, 1.0), (2.0, 2.0)], 3)
        assert labels[0] == labels[1] != labels[2]

    def test_buffer_on_the_antimeridian_is_valid(self):
        ring = geo.geodesic_buffer(-17.0, 180.0, 500)
        assert ring.is_valid
        assert geo.area_m2(ring) == pytest.approx(3.14159 * 500 ** 2, rel=0.01)

    def test_longitude_frame_keeps_neighbours_adjacent(self):
        lons = geo.longitude_frame([179.9, -179.9])
        assert abs(lons[1] - lons[0]) == pytest.approx(0.2)
        assert geo.longitude_frame([-74.0, -73.9]).tolist() == pytest.approx([-74.0, -73.9])
