from __future__ import annotations
from typing import Dict, Iterable, List, Sequence, Tuple
import math

import numpy as np
from pyproj import Geod
from shapely.geometry import Polygon, mapping
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union
from shapely.strtree import STRtree
from sklearn.cluster import KMeans

LatLon = Tuple[float, float]

WGS84 = Geod(ellps="WGS84")
KM_PER_DEG_LAT = 111.32
BUFFER_SEGMENTS = 64


def distance_m(a: LatLon, b: LatLon) -> float:
    """Geodesic distance in meters between two (lat, lon) points."""
    _, _, d = WGS84.inv(a[1], a[0], b[1], b[0])
    return float(d)


def distances_m(origin: LatLon, lats: Sequence[float], lons: Sequence[float]) -> np.ndarray:
    n = len(lats)
    if n == 0:
        return np.zeros(0)
    _, _, d = WGS84.inv(np.full(n, origin[1]), np.full(n, origin[0]), np.asarray(lons, float), np.asarray(lats, float))
    return np.asarray(d, dtype=float)


def degree_box(lat: float, lon: float, radius_m: float) -> Tuple[float, float, float, float]:
    """Loose (south, north, west, east) box that contains the radius; used as an index prefilter."""
    d_lat = radius_m / (KM_PER_DEG_LAT * 1000.0)
    cos_lat = max(math.cos(math.radians(lat)), 1e-6)
    d_lon = min(180.0, d_lat / cos_lat)
    return (max(-90.0, lat - d_lat), min(90.0, lat + d_lat), lon - d_lon, lon + d_lon)


def geodesic_buffer(lat: float, lon: float, radius_m: float, segments: int = BUFFER_SEGMENTS) -> Polygon:
    """
    Circle of `radius_m` around the point, traced on the ellipsoid rather than
    in planar degrees, so it keeps its true size away from the equator.
    Coordinates are (lon, lat).

    The ring is kept continuous around the centre's longitude, so a circle
    that crosses the antimeridian may carry longitudes past +/-180.
    """
    az = np.linspace(0.0, 360.0, segments, endpoint=False)
    lons, lats, _ = WGS84.fwd(np.full(segments, lon), np.full(segments, lat), az, np.full(segments, float(radius_m)))
    return Polygon(zip(unwrap_longitudes(lons, lon), lats))


def unwrap_longitudes(lons, reference: float) -> np.ndarray:
    """Shift each longitude by a multiple of 360 into [reference - 180, reference + 180)."""
    lons = np.asarray(lons, dtype=float)
    return reference + np.mod(lons - reference + 180.0, 360.0) - 180.0


def longitude_frame(lons: Sequence[float]) -> np.ndarray:
    """
    Longitudes re-expressed in one continuous frame whose seam sits in the
    widest gap between the points, so points on both sides of the
    antimeridian end up next to each other.
    """
    lons = np.mod(np.asarray(lons, dtype=float) + 180.0, 360.0) - 180.0
    if lons.size < 2:
        return lons
    ordered = np.sort(lons)
    gaps = np.diff(np.append(ordered, ordered[0] + 360.0))
    widest = int(np.argmax(gaps))
    seam = ordered[widest] + gaps[widest] / 2.0
    # keep the frame's middle inside [-180, 180]
    seam -= 360.0 * round((seam + 180.0) / 360.0)
    return seam + np.mod(lons - seam, 360.0)


def _ring_area_m2(ring) -> float:
    xs, ys = ring.xy
    area, _ = WGS84.polygon_area_perimeter(list(xs), list(ys))
    return abs(float(area))


def area_m2(geom: BaseGeometry) -> float:
    """Geodesic area; ring orientation does not matter, holes are subtracted."""
    if geom.is_empty:
        return 0.0
    if hasattr(geom, "geoms"):
        return sum(area_m2(g) for g in geom.geoms)
    if not hasattr(geom, "exterior"):
        return 0.0
    return _ring_area_m2(geom.exterior) - sum(_ring_area_m2(r) for r in geom.interiors)


def union(geoms: Iterable[BaseGeometry]) -> BaseGeometry:
    return unary_union(list(geoms))


def intersecting_pairs(geoms: Sequence[BaseGeometry]) -> Dict[int, List[int]]:
    """index -> indices of other geometries it intersects."""
    tree = STRtree(list(geoms))
    out: Dict[int, List[int]] = {i: [] for i in range(len(geoms))}
    for i, g in enumerate(geoms):
        for j in tree.query(g, predicate="intersects"):
            j = int(j)
            if j != i:
                out[i].append(j)
    return out


def to_geojson(geom: BaseGeometry) -> dict:
    return mapping(geom)


def kmeans_labels(points: Sequence[LatLon], k: int, seed: int = 42) -> np.ndarray:
    """Cluster (lat, lon) points into at most k groups."""
    n = len(points)
    if n == 0:
        return np.zeros(0, dtype=int)
    k = max(1, min(int(k), n))
    if k == 1:
        return np.zeros(n, dtype=int)
    X = np.asarray(points, dtype=float)
    if len(np.unique(X, axis=0)) < k:
        # fewer distinct locations than clusters: group identical points together
        _, labels = np.unique(X, axis=0, return_inverse=True)
        return np.asarray(labels, dtype=int).ravel()
    km = KMeans(n_clusters=k, random_state=seed, n_init=10)
    return km.fit_predict(X)


# ---------- grids ----------
def snap_cells(lats: np.ndarray, lons: np.ndarray, cells_per_degree: float) -> Tuple[np.ndarray, np.ndarray]:
    """Integer (row, col) of the grid cell each point falls in. Cell side = 1/cells_per_degree degrees."""
    rows = np.floor(np.asarray(lats, float) * cells_per_degree).astype(np.int64)
    cols = np.floor(np.asarray(lons, float) * cells_per_degree).astype(np.int64)
    return rows, cols


def cell_center(row: int, col: int, cells_per_degree: float) -> LatLon:
    return ((row + 0.5) / cells_per_degree, (col + 0.5) / cells_per_degree)


def cell_area_km2(center_lat: float, side_deg: float) -> float:
    lat_km = side_deg * KM_PER_DEG_LAT
    lon_km = side_deg * KM_PER_DEG_LAT * math.cos(math.radians(center_lat))
    return lat_km * lon_km


# ---------- coarse region ids ----------
def region_id(lat: float, lon: float, precision: int = 10) -> str:
    """Coarse channel id from truncated coordinates; same cell -> same id."""
    return f"geo_{math.floor(lat * precision)}_{math.floor(lon * precision)}"


def region_ids_for_bounds(north: float, south: float, east: float, west: float, precision: int = 10) -> List[str]:
    """Every coarse cell a viewport touches."""
    r0, r1 = math.floor(south * precision), math.floor(north * precision)
    c0, c1 = math.floor(west * precision), math.floor(east * precision)
    return [f"geo_{r}_{c}" for r in range(r0, r1 + 1) for c in range(c0, c1 + 1)]


def region_cell_count(north: float, south: float, east: float, west: float, precision: int = 10) -> int:
    rows = math.floor(north * precision) - math.floor(south * precision) + 1
    cols = math.floor(east * precision) - math.floor(west * precision) + 1
    return rows * cols
