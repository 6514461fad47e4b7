"""
map_surface.py — Map canvas abstraction used by the trail overlay.

`MapSurface` is the interface the overlay drives (sources, layers, filters,
feature queries, viewport fitting, events, popups, cursor). `StyleSurface` is
an in-memory implementation backed by a MapLibre-style document; it is what
the CLI renders into and what the tests drive.

StyleSurface uses an identity projection: a screen point is simply
[longitude, latitude].
"""

import copy
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, Sequence, runtime_checkable

from shapely.errors import GEOSException
from shapely.geometry import Point, shape

from config import HIT_TOLERANCE

logger = logging.getLogger(__name__)

Bounds = tuple  # (west, south, east, north)


@dataclass(frozen=True)
class MapEvent:
    """Pointer event delivered to `mousemove` / `click` handlers."""

    type: str
    point: Optional[tuple] = None
    lng_lat: Optional[tuple] = None


@runtime_checkable
class Popup(Protocol):
    def remove(self) -> None: ...


@runtime_checkable
class MapSurface(Protocol):
    """Capabilities the overlay needs from a map canvas."""

    def is_style_loaded(self) -> bool: ...

    def add_source(self, source_id: str, data: dict) -> None: ...

    def remove_source(self, source_id: str) -> None: ...

    def get_source(self, source_id: str) -> Optional[dict]: ...

    def add_layer(self, layer: dict) -> None: ...

    def remove_layer(self, layer_id: str) -> None: ...

    def get_layer(self, layer_id: str) -> Optional[dict]: ...

    def set_filter(self, layer_id: str, filter_expr: Optional[list]) -> None: ...

    def query_rendered_features(self, point: tuple, layers: Optional[Sequence[str]] = None) -> list: ...

    def fit_bounds(self, bounds: Bounds, padding: int = 0, max_zoom: Optional[float] = None) -> None: ...

    def on(self, event: str, handler: Callable) -> None: ...

    def off(self, event: str, handler: Callable) -> None: ...

    def once(self, event: str, handler: Callable) -> None: ...

    def open_popup(self, lng_lat: tuple, html: str) -> Popup: ...

    def set_cursor(self, cursor: str) -> None: ...


# ── Filter expressions ───────────────────────────────────────────────

# `$type` collapses multi-geometries onto their base type.
_BASE_TYPES = {
    "Point": "Point",
    "MultiPoint": "Point",
    "LineString": "LineString",
    "MultiLineString": "LineString",
    "Polygon": "Polygon",
    "MultiPolygon": "Polygon",
}

# Geometry types each layer type draws.
_LAYER_GEOMETRIES = {
    "line": {"LineString", "Polygon"},
    "circle": {"Point"},
    "fill": {"Polygon"},
}


def _operand(arg: Any, feature: dict) -> Any:
    if arg == "$type":
        return _BASE_TYPES.get((feature.get("geometry") or {}).get("type"))
    if isinstance(arg, list) and arg[:1] == ["get"]:
        return (feature.get("properties") or {}).get(arg[1])
    return arg


def evaluate_filter(expr: Optional[list], feature: dict) -> bool:
    """Evaluate the small subset of MapLibre filter syntax the overlay emits."""
    if expr is None:
        return True
    op = expr[0]
    if op == "all":
        return all(evaluate_filter(sub, feature) for sub in expr[1:])
    if op in ("==", "!="):
        left, right = _operand(expr[1], feature), _operand(expr[2], feature)
        return left == right if op == "==" else left != right
    raise ValueError(f"Unsupported filter operator: {op!r}")


# ── In-memory surface ────────────────────────────────────────────────

class StylePopup:
    """Popup opened on a StyleSurface."""

    def __init__(self, surface, lng_lat, html):
        self.surface = surface
        self.lng_lat = tuple(lng_lat)
        self.html = html

    @property
    def is_open(self) -> bool:
        return self in self.surface.popups

    def remove(self) -> None:
        if self.is_open:
            self.surface.popups.remove(self)


class StyleSurface:
    """MapLibre-like surface that keeps its state as a style document.

    Mirrors MapLibre's strictness: adding a duplicate id, removing an absent
    layer/source, or removing a source a layer still uses all raise.
    """

    def __init__(self, style_loaded: bool = True, hit_tolerance: float = HIT_TOLERANCE):
        self.style_loaded = style_loaded
        self.hit_tolerance = hit_tolerance
        self.sources = {}
        self.layers = []
        self.viewport = None
        self.fit_history = []
        self.cursor = ""
        self.popups = []
        self.subscribe_count = 0
        self.unsubscribe_count = 0
        self._listeners = {}

    # -- style ---------------------------------------------------------

    def is_style_loaded(self) -> bool:
        return self.style_loaded

    def load_style(self) -> None:
        """Mark the style as ready and fire the one-time `load` notification."""
        if self.style_loaded:
            return
        self.style_loaded = True
        self.dispatch("load")

    def to_style(self) -> dict:
        return {
            "version": 8,
            "sources": copy.deepcopy(self.sources),
            "layers": copy.deepcopy(self.layers),
            "viewport": copy.deepcopy(self.viewport),
        }

    # -- sources -------------------------------------------------------

    def add_source(self, source_id: str, data: dict) -> None:
        if source_id in self.sources:
            raise ValueError(f"There is already a source with ID \"{source_id}\"")
        self.sources[source_id] = {"type": "geojson", "data": copy.deepcopy(data)}

    def remove_source(self, source_id: str) -> None:
        if source_id not in self.sources:
            raise KeyError(source_id)
        users = [l["id"] for l in self.layers if l.get("source") == source_id]
        if users:
            raise ValueError(f"Source \"{source_id}\" cannot be removed while layers {users} use it")
        del self.sources[source_id]

    def get_source(self, source_id: str) -> Optional[dict]:
        return self.sources.get(source_id)

    # -- layers --------------------------------------------------------

    def add_layer(self, layer: dict) -> None:
        if self.get_layer(layer["id"]) is not None:
            raise ValueError(f"Layer \"{layer['id']}\" already exists")
        if layer.get("source") not in self.sources:
            raise ValueError(f"Source \"{layer.get('source')}\" not found for layer \"{layer['id']}\"")
        self.layers.append(copy.deepcopy(layer))

    def remove_layer(self, layer_id: str) -> None:
        layer = self.get_layer(layer_id)
        if layer is None:
            raise KeyError(layer_id)
        self.layers.remove(layer)

    def get_layer(self, layer_id: str) -> Optional[dict]:
        return next((l for l in self.layers if l["id"] == layer_id), None)

    def set_filter(self, layer_id: str, filter_expr: Optional[list]) -> None:
        layer = self.get_layer(layer_id)
        if layer is None:
            raise KeyError(layer_id)
        if filter_expr is None:
            layer.pop("filter", None)
        else:
            layer["filter"] = copy.deepcopy(filter_expr)

    # -- queries -------------------------------------------------------

    def _hits(self, geometry: dict, pointer) -> bool:
        try:
            geom = shape(geometry)
        except (GEOSException, ValueError, TypeError, KeyError, IndexError, AttributeError) as e:
            logger.debug(f"Cannot hit-test geometry: {e}")
            return False
        if geom.is_empty:
            return False
        if geom.geom_type in ("Polygon", "MultiPolygon"):
            # line layers draw polygon outlines only
            geom = geom.boundary
        return geom.distance(pointer) <= self.hit_tolerance

    def query_rendered_features(self, point: tuple, layers: Optional[Sequence[str]] = None) -> list:
        """Features under `point`, top-most layer first."""
        pointer = Point(point[0], point[1])
        hits = []
        for layer in reversed(self.layers):
            if layers is not None and layer["id"] not in layers:
                continue
            drawable = _LAYER_GEOMETRIES.get(layer.get("type"), set())
            data = self.sources[layer["source"]]["data"]
            for feature in data.get("features", []):
                geometry = feature.get("geometry") or {}
                if _BASE_TYPES.get(geometry.get("type")) not in drawable:
                    continue
                if not evaluate_filter(layer.get("filter"), feature):
                    continue
                if self._hits(geometry, pointer):
                    hits.append({
                        "type": "Feature",
                        "layer": layer["id"],
                        "geometry": copy.deepcopy(geometry),
                        "properties": dict(feature.get("properties") or {}),
                    })
        return hits

    # -- viewport ------------------------------------------------------

    def fit_bounds(self, bounds: Bounds, padding: int = 0, max_zoom: Optional[float] = None) -> None:
        self.viewport = {"bounds": list(bounds), "padding": padding, "max_zoom": max_zoom}
        self.fit_history.append(self.viewport)

    # -- events --------------------------------------------------------

    def on(self, event: str, handler: Callable) -> None:
        self._listeners.setdefault(event, []).append((handler, False))
        self.subscribe_count += 1

    def once(self, event: str, handler: Callable) -> None:
        self._listeners.setdefault(event, []).append((handler, True))
        self.subscribe_count += 1

    def off(self, event: str, handler: Callable) -> None:
        listeners = self._listeners.get(event, [])
        for entry in listeners:
            if entry[0] == handler:
                listeners.remove(entry)
                self.unsubscribe_count += 1
                return

    def listener_count(self, event: Optional[str] = None) -> int:
        if event is not None:
            return len(self._listeners.get(event, []))
        return sum(len(v) for v in self._listeners.values())

    def dispatch(self, event: str, point: Optional[tuple] = None, lng_lat: Optional[tuple] = None) -> None:
        """Deliver an event to every current listener."""
        if lng_lat is None:
            lng_lat = point
        payload = MapEvent(event, point, lng_lat)
        for entry in list(self._listeners.get(event, [])):
            listeners = self._listeners.get(event, [])
            # an earlier handler may have detached this one
            if entry not in listeners:
                continue
            handler, one_shot = entry
            if one_shot:
                listeners.remove(entry)
                self.unsubscribe_count += 1
            handler(payload)

    # -- popups / cursor -----------------------------------------------

    def open_popup(self, lng_lat: tuple, html: str) -> StylePopup:
        popup = StylePopup(self, lng_lat, html)
        self.popups.append(popup)
        return popup

    def set_cursor(self, cursor: str) -> None:
        self.cursor = cursor
