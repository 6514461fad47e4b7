"""
trail_geometry.py — Normalize raw trail records into one canonical GeoJSON collection.

The admin API hands back trail records in three shapes:
  1. `geometry` holding a FeatureCollection   -> first feature is used
  2. `geometry` holding a single Feature      -> used as-is
  3. `path` holding [[lon, lat], ...] pairs   -> becomes a LineString

Anything else is dropped. The record's display attributes are merged over
whatever properties the pre-built feature already carried.
"""

import copy
import logging
import math
from dataclasses import dataclass, field, fields
from typing import Any, Iterable, Iterator, Mapping, Optional

logger = logging.getLogger(__name__)

GEOMETRY_TYPES = ("Point", "LineString", "MultiLineString", "Polygon")
LINE_TYPES = ("LineString", "MultiLineString")

# Record keys that may hold a pre-built feature, in lookup order.
_GEOMETRY_KEYS = ("geometry", "geojson")


# ── Attributes ───────────────────────────────────────────────────────

# Attribute field -> GeoJSON property name.
_PROPERTY_NAMES = {
    "id": "id",
    "name": "name",
    "distance": "distance",
    "duration": "duration",
    "pace": "pace",
    "description": "description",
    "start_latitude": "startLatitude",
    "start_longitude": "startLongitude",
}


@dataclass(frozen=True)
class TrailAttributes:
    """Display attributes attached to a canonical trail feature.

    Every named field is optional; ``None`` means "absent" and is never
    written out. ``extra`` keeps unrecognised properties of a pre-built
    feature so merging does not lose them.
    """

    id: Any = None
    name: Optional[str] = None
    distance: Any = None
    duration: Any = None
    pace: Any = None
    description: Optional[str] = None
    start_latitude: Any = None
    start_longitude: Any = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_properties(cls, props: Mapping[str, Any]) -> "TrailAttributes":
        """Split a GeoJSON properties bag into named fields + extras."""
        known = {prop: attr for attr, prop in _PROPERTY_NAMES.items()}
        kwargs, extra = {}, {}
        for key, value in props.items():
            if key in known:
                kwargs[known[key]] = value
            else:
                extra[key] = value
        return cls(extra=extra, **kwargs)

    def merge(self, newer: "TrailAttributes") -> "TrailAttributes":
        """Return a copy where every field set on `newer` wins over ours."""
        values = {}
        for f in fields(self):
            if f.name == "extra":
                continue
            mine, theirs = getattr(self, f.name), getattr(newer, f.name)
            values[f.name] = theirs if theirs is not None else mine
        extra = {**self.extra, **newer.extra}
        return TrailAttributes(extra=extra, **values)

    def to_properties(self) -> dict:
        props = dict(self.extra)
        for attr, prop in _PROPERTY_NAMES.items():
            value = getattr(self, attr)
            if value is not None:
                props[prop] = value
        return props


# ── Canonical model ──────────────────────────────────────────────────

@dataclass(frozen=True)
class CanonicalFeature:
    geometry: Mapping[str, Any]
    attributes: TrailAttributes

    @property
    def id(self):
        return self.attributes.id

    @property
    def geometry_type(self) -> str:
        return self.geometry["type"]

    def to_geojson(self) -> dict:
        return {
            "type": "Feature",
            "geometry": copy.deepcopy(dict(self.geometry)),
            "properties": self.attributes.to_properties(),
        }


@dataclass(frozen=True)
class CanonicalCollection:
    """Ordered, immutable set of canonical trail features."""

    features: tuple = ()

    def __len__(self) -> int:
        return len(self.features)

    def __iter__(self) -> Iterator[CanonicalFeature]:
        return iter(self.features)

    def __bool__(self) -> bool:
        return bool(self.features)

    def first_line(self) -> Optional[CanonicalFeature]:
        """First LineString / MultiLineString feature in collection order."""
        for feature in self.features:
            if feature.geometry_type in LINE_TYPES:
                return feature
        return None

    def to_geojson(self) -> dict:
        return {
            "type": "FeatureCollection",
            "features": [f.to_geojson() for f in self.features],
        }


# ── Record resolution ────────────────────────────────────────────────

def _record_attributes(record: Mapping[str, Any], full: bool) -> TrailAttributes:
    """Attributes a record contributes.

    Pre-built features only take id/name/distance/duration from the record;
    path-built lines also carry pace, description and start position.
    """
    attrs = TrailAttributes(
        id=record.get("id"),
        name=record.get("name"),
        distance=record.get("distance"),
        duration=record.get("duration"),
    )
    if not full:
        return attrs
    return attrs.merge(TrailAttributes(
        pace=record.get("pace"),
        description=record.get("description"),
        start_latitude=record.get("startLatitude"),
        start_longitude=record.get("startLongitude"),
    ))


def _valid_geometry(geometry: Any) -> bool:
    return (
        isinstance(geometry, Mapping)
        and geometry.get("type") in GEOMETRY_TYPES
        and "coordinates" in geometry
    )


def _feature_from_geojson(base: Mapping[str, Any], record: Mapping[str, Any]) -> Optional[CanonicalFeature]:
    if not isinstance(base, Mapping) or base.get("type") != "Feature":
        return None
    geometry = base.get("geometry")
    if not _valid_geometry(geometry):
        logger.debug(f"Trail {record.get('id')!r}: unsupported geometry {geometry!r:.80}")
        return None
    props = base.get("properties") or {}
    if not isinstance(props, Mapping):
        props = {}
    attrs = TrailAttributes.from_properties(props).merge(_record_attributes(record, full=False))
    return CanonicalFeature(copy.deepcopy(dict(geometry)), attrs)


def _coordinate_pair(pair: Any) -> Optional[list]:
    if isinstance(pair, (str, bytes, Mapping)):
        return None
    try:
        lon, lat = pair[0], pair[1]
    except (TypeError, IndexError, KeyError):
        return None
    if not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in (lon, lat)):
        return None
    if not (math.isfinite(lon) and math.isfinite(lat)):
        return None
    return [lon, lat]


def _feature_from_path(path: Any, record: Mapping[str, Any]) -> Optional[CanonicalFeature]:
    if isinstance(path, (str, bytes, Mapping)):
        return None
    coords = []
    for pair in path:
        coord = _coordinate_pair(pair)
        if coord is None:
            logger.debug(f"Trail {record.get('id')!r}: malformed path pair {pair!r}")
            return None
        coords.append(coord)
    geometry = {"type": "LineString", "coordinates": coords}
    return CanonicalFeature(geometry, _record_attributes(record, full=True))


def resolve_record(record: Any) -> Optional[CanonicalFeature]:
    """Turn one raw record into a canonical feature, or None if it has no geometry."""
    if not isinstance(record, Mapping):
        return None

    geojson = next((record[k] for k in _GEOMETRY_KEYS if record.get(k)), None)
    if isinstance(geojson, Mapping) and geojson.get("type") == "FeatureCollection":
        features = geojson.get("features") or []
        if not isinstance(features, (list, tuple)) or not features:
            return None
        return _feature_from_geojson(features[0], record)
    if isinstance(geojson, Mapping) and geojson.get("type") == "Feature":
        return _feature_from_geojson(geojson, record)

    path = record.get("path")
    if path:
        try:
            return _feature_from_path(path, record)
        except TypeError:
            return None
    return None


def normalize(records: Iterable[Any]) -> CanonicalCollection:
    """Build a fresh canonical collection from raw trail records.

    Never raises: records without usable geometry, without an id, or whose
    id was already seen are left out. Input order is preserved.
    """
    features = []
    seen_ids = set()
    dropped = 0
    for record in records or ():
        feature = resolve_record(record)
        if feature is None:
            dropped += 1
            continue
        try:
            if feature.id is None or feature.id in seen_ids:
                logger.debug(f"Skipping trail with missing or duplicate id {feature.id!r}")
                dropped += 1
                continue
            seen_ids.add(feature.id)
        except TypeError:
            # unhashable id
            dropped += 1
            continue
        if feature.attributes.name is None:
            feature = CanonicalFeature(
                feature.geometry,
                feature.attributes.merge(TrailAttributes(name=f"Unnamed trail {feature.id}")),
            )
        features.append(feature)

    if dropped:
        logger.debug(f"{dropped} trail records had no usable geometry and were skipped")
    return CanonicalCollection(tuple(features))
