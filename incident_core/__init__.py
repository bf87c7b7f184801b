"""
incident_core: Core modules for the Incident Analytics Service.

Submodules:
- records: typed incident records and the incident state machine.
- params: request parameter checking (ValidationError with every bad field).
- geo: geodesic buffers, distances, areas, grids and k-means on WGS84.
- repository: incident CRUD, expiry sweep and radius search.
- consensus: community verification with a quorum.
- hotspots: grid hotspot and density analysis.
- clustering: cluster summaries and heatmap points.
- impact_zones: buffer overlap and risk analysis.
- temporal: time-bucket patterns and trends.
- predictive: cluster-based incident prediction.
- geojson_export: FeatureCollection export.
- distribution: real-time channel registry and fan-out.
- lifecycle: create/update/delete/verify orchestration.

Nothing here imports the web layer; storage is reached through a store
object handed in by the caller.
"""

__all__ = [
    "records",
    "params",
    "geo",
    "repository",
    "consensus",
    "hotspots",
    "clustering",
    "impact_zones",
    "temporal",
    "predictive",
    "geojson_export",
    "distribution",
    "lifecycle",
]
