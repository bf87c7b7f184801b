"""
Parameter checking shared by every read operation.

A Checker collects all problems before raising, so a single ValidationError
names every offending field. Nothing here touches the store.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import ValidationError
from .records import Bounds

_TIME_RANGE = re.compile(r"^(\d+)([dhwmy])$")
_UNITS = {"h": "hours", "d": "days", "w": "weeks", "m": "months", "y": "years"}
# months and years are approximated, the store holds no calendar-aware interval type
_UNIT_DELTA = {
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
    "m": timedelta(days=30),
    "y": timedelta(days=365),
}


@dataclass(frozen=True)
class TimeRange:
    value: int
    unit: str
    original: str

    @property
    def delta(self) -> timedelta:
        return _UNIT_DELTA[self.original[-1]] * self.value

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.value, "unit": self.unit, "original": self.original}


def valid_coordinate(lat: Any, lon: Any) -> bool:
    if isinstance(lat, bool) or isinstance(lon, bool):
        return False
    if not isinstance(lat, (int, float)) or not isinstance(lon, (int, float)):
        return False
    if math.isnan(lat) or math.isnan(lon):
        return False
    return -90 <= lat <= 90 and -180 <= lon <= 180


class Checker:
    """Collects field errors, then raises them together."""

    def __init__(self):
        self.errors: List[Dict[str, Any]] = []

    def fail(self, field: str, message: str) -> None:
        self.errors.append({"field": field, "message": message})

    def raise_if_errors(self, message: str = "Invalid parameters") -> None:
        if self.errors:
            raise ValidationError(message, list(self.errors))

    # ---------- scalars ----------
    def integer(self, field: str, value: Any, lo: int, hi: int, default: Optional[int] = None) -> Optional[int]:
        if value is None or value == "":
            return default
        try:
            if isinstance(value, bool):
                raise ValueError
            if isinstance(value, float) and not value.is_integer():
                raise ValueError
            out = int(value)
        except (TypeError, ValueError):
            self.fail(field, f"{field} must be an integer")
            return default
        if out < lo or out > hi:
            self.fail(field, f"{field} must be between {lo} and {hi}")
            return default
        return out

    def number(self, field: str, value: Any, lo: float, hi: float, default: Optional[float] = None) -> Optional[float]:
        if value is None or value == "":
            return default
        try:
            if isinstance(value, bool):
                raise ValueError
            out = float(value)
        except (TypeError, ValueError):
            self.fail(field, f"{field} must be a number")
            return default
        if math.isnan(out) or out < lo or out > hi:
            self.fail(field, f"{field} must be between {lo} and {hi}")
            return default
        return out

    def text(self, field: str, value: Any, max_len: int, min_len: int = 0) -> Optional[str]:
        if value is None:
            return None
        if not isinstance(value, str):
            self.fail(field, f"{field} must be text")
            return None
        out = value.strip()
        if len(out) < min_len or len(out) > max_len:
            self.fail(field, f"{field} must be between {min_len} and {max_len} characters")
            return None
        if "<" in out or ">" in out:
            self.fail(field, f"{field} cannot contain HTML tags")
            return None
        return out

    def choice(self, field: str, value: Any, options: Sequence[str], default: Optional[str] = None) -> Optional[str]:
        if value is None or value == "":
            return default
        if value not in options:
            self.fail(field, f"{field} must be one of: {', '.join(options)}")
            return default
        return value

    def flag(self, field: str, value: Any, default: bool = False) -> bool:
        if value is None or value == "":
            return default
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in ("true", "1", "yes"):
            return True
        if text in ("false", "0", "no"):
            return False
        self.fail(field, f"{field} must be true or false")
        return default

    def time_range(self, field: str, value: Any, default: str = "30d") -> Optional[TimeRange]:
        raw = default if value is None or value == "" else str(value)
        m = _TIME_RANGE.match(raw)
        if not m or int(m.group(1)) <= 0:
            self.fail(field, f"{field} must look like 24h, 30d, 2w, 6m or 1y")
            return None
        return TimeRange(int(m.group(1)), _UNITS[m.group(2)], raw)

    def id_list(self, field: str, value: Any) -> Tuple[int, ...]:
        """Accepts "1,2,3", [1, 2, 3] or None."""
        if value is None or value == "" or value == []:
            return ()
        items: Iterable[Any] = value.split(",") if isinstance(value, str) else value
        out = []
        for item in items:
            try:
                if isinstance(item, bool):
                    raise ValueError
                n = int(str(item).strip())
                if n <= 0:
                    raise ValueError
                out.append(n)
            except (TypeError, ValueError):
                self.fail(field, f"{field} must be a comma-separated list of positive integer ids")
                return ()
        return tuple(dict.fromkeys(out))

    # ---------- geography ----------
    def coordinate(self, lat_field: str, lat: Any, lon_field: str, lon: Any) -> Tuple[Optional[float], Optional[float]]:
        ok = True
        try:
            lat_f = float(lat) if not isinstance(lat, bool) and lat is not None else None
        except (TypeError, ValueError):
            lat_f = None
        try:
            lon_f = float(lon) if not isinstance(lon, bool) and lon is not None else None
        except (TypeError, ValueError):
            lon_f = None
        if lat_f is None or math.isnan(lat_f) or not -90 <= lat_f <= 90:
            self.fail(lat_field, f"{lat_field} must be a number between -90 and 90")
            ok = False
        if lon_f is None or math.isnan(lon_f) or not -180 <= lon_f <= 180:
            self.fail(lon_field, f"{lon_field} must be a number between -180 and 180")
            ok = False
        return (lat_f, lon_f) if ok else (None, None)

    def bounds(self, north: Any, south: Any, east: Any, west: Any) -> Optional[Bounds]:
        """All four edges or none; partial bounds are an error."""
        given = [v for v in (north, south, east, west) if v is not None and v != ""]
        if not given:
            return None
        if len(given) != 4:
            self.fail("bounds", "north, south, east and west must be provided together")
            return None
        n = self.number("north", north, -90, 90)
        s = self.number("south", south, -90, 90)
        e = self.number("east", east, -180, 180)
        w = self.number("west", west, -180, 180)
        if None in (n, s, e, w):
            return None
        if n <= s:
            self.fail("bounds", "north must be greater than south")
            return None
        if e <= w:
            self.fail("bounds", "east must be greater than west")
            return None
        return Bounds(north=n, south=s, east=e, west=w)

    def bbox(self, field: str, value: Any) -> Optional[Bounds]:
        """`west,south,east,north` string form."""
        if value is None or value == "":
            return None
        parts = str(value).split(",")
        if len(parts) != 4:
            self.fail(field, f"{field} must be west,south,east,north")
            return None
        west, south, east, north = parts
        return self.bounds(north, south, east, west)

    def grid_guard(self, bounds: Optional[Bounds], cells_per_degree: float, ceiling: float) -> None:
        """Reject an oversized box combined with a fine grid before any work is done."""
        if bounds is None or cells_per_degree <= 0:
            return
        estimated = bounds.estimated_cells(cells_per_degree)
        if estimated > ceiling:
            self.fail(
                "bounds",
                f"oversized geographic bounds for selected grid size "
                f"(~{int(estimated)} cells, limit {int(ceiling)})",
            )
