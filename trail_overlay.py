"""
trail_overlay.py — Keep the trail layers on a map surface in sync with the data.

Every call to `TrailOverlay.present()`:
  1. Tears down whatever the previous call installed on that surface
  2. Waits (once) for the style to load if it is not ready yet
  3. Adds the GeoJSON source + line, highlight and point layers
  4. Fits the viewport to the first trail line (or to everything)
  5. Wires hover highlighting and click popups

`teardown()` undoes all of it and is safe to call at any point, including
before a deferred install ever ran.
"""

import html
import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Optional

from shapely.errors import GEOSException
from shapely.geometry import MultiPoint

from config import (
    SOURCE_ID, LINE_LAYER_ID, HIGHLIGHT_LAYER_ID, POINT_LAYER_ID, NO_MATCH_ID,
    LINE_PAINT, HIGHLIGHT_PAINT, POINT_PAINT,
    LINE_FIT_PADDING, LINE_FIT_MAX_ZOOM, ALL_FIT_PADDING,
    CURSOR_POINTER, CURSOR_DEFAULT,
)
from trail_geometry import CanonicalCollection

logger = logging.getLogger(__name__)

# Removal order: everything that reads the source goes before the source.
_LAYER_REMOVAL_ORDER = (HIGHLIGHT_LAYER_ID, POINT_LAYER_ID, LINE_LAYER_ID)


def highlight_filter(trail_id: Any) -> list:
    return ["==", ["get", "id"], trail_id]


# ── Viewport ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ViewportFit:
    bounds: tuple  # (west, south, east, north)
    padding: int
    max_zoom: Optional[float] = None


def _feature_coordinates(feature) -> list:
    """Flatten a feature's geometry to [lon, lat] pairs (polygons: outer ring)."""
    gtype = feature.geometry.get("type")
    coords = feature.geometry.get("coordinates")
    if gtype == "Point":
        return [coords]
    if gtype == "LineString":
        return list(coords)
    if gtype == "MultiLineString":
        return [c for line in coords for c in line]
    if gtype == "Polygon":
        return list(coords[0]) if coords else []
    return []


def feature_envelope(features) -> Optional[tuple]:
    """Bounding box over all features, skipping any whose coordinates are unreadable."""
    points = []
    for feature in features:
        try:
            feature_points = [(float(c[0]), float(c[1])) for c in _feature_coordinates(feature)]
        except (TypeError, ValueError, IndexError, KeyError) as e:
            logger.debug(f"Trail {feature.id!r} left out of bounds: {e}")
            continue
        if not all(math.isfinite(v) for pt in feature_points for v in pt):
            logger.debug(f"Trail {feature.id!r} left out of bounds: non-finite coordinate")
            continue
        points.extend(feature_points)
    if not points:
        return None
    try:
        envelope = MultiPoint(points)
    except (GEOSException, ValueError) as e:
        logger.debug(f"Could not build envelope: {e}")
        return None
    if envelope.is_empty:
        return None
    return tuple(envelope.bounds)


def compute_viewport_fit(collection: CanonicalCollection) -> Optional[ViewportFit]:
    """Fit to the first trail line when there is one, else to every feature.

    Returns None for an empty collection (the viewport is left alone).
    """
    first_line = collection.first_line()
    if first_line is not None:
        bounds = feature_envelope([first_line])
        if bounds is not None:
            return ViewportFit(bounds, LINE_FIT_PADDING, LINE_FIT_MAX_ZOOM)
    bounds = feature_envelope(collection)
    if bounds is None:
        return None
    return ViewportFit(bounds, ALL_FIT_PADDING)


# ── Popup ────────────────────────────────────────────────────────────

def popup_html(props: dict) -> str:
    """Popup body for a clicked trail; missing values render as '-'."""

    def show(key):
        value = props.get(key)
        if value is None or value == "":
            return "-"
        return html.escape(str(value))

    return (
        '<div style="min-width:200px">'
        f'<div style="font-size:14px;color:#666">Name: {show("name")}</div>'
        f'<div style="font-size:12px;color:#666">Distance: {show("distance")} m</div>'
        f'<div style="font-size:12px;color:#666">Duration: {show("duration")} s</div>'
        f'<div style="font-size:12px;color:#666">Pace: {show("pace")}</div>'
        f'<div style="margin-top:6px;font-size:12px;color:#666">{show("description")}</div>'
        '</div>'
    )


# ── Overlay state ────────────────────────────────────────────────────

@dataclass(eq=False)
class OverlayState:
    """Everything one `present()` call put on a surface."""

    surface: Any
    collection: CanonicalCollection
    generation: int
    installed: bool = False
    torn_down: bool = False
    highlighted_id: Any = None
    popup: Any = None
    fit: Optional[ViewportFit] = None
    hover_handler: Optional[Callable] = None
    click_handler: Optional[Callable] = None
    pending_ready: Optional[Callable] = None

    source_id = SOURCE_ID
    layer_ids = (LINE_LAYER_ID, HIGHLIGHT_LAYER_ID, POINT_LAYER_ID)

    @property
    def pending(self) -> bool:
        return self.pending_ready is not None


class TrailOverlay:
    """Owns the trail source/layers and interaction handlers on map surfaces."""

    def __init__(self):
        self._states = {}
        self._generations = {}

    def state_for(self, surface) -> Optional[OverlayState]:
        return self._states.get(surface)

    def present(self, surface, collection: CanonicalCollection) -> OverlayState:
        """Replace whatever is on `surface` with `collection`."""
        previous = self._states.pop(surface, None)
        if previous is not None:
            self.teardown(previous)

        generation = self._generations.get(surface, 0) + 1
        self._generations[surface] = generation
        state = OverlayState(surface, collection, generation)
        self._states[surface] = state

        if surface.is_style_loaded():
            self._install(state)
            return state

        def on_style_ready(_event=None):
            state.pending_ready = None
            if self._generations.get(surface) != generation or state.torn_down:
                logger.debug(f"Ignoring stale style-ready for generation {generation}")
                return
            self._install(state)

        logger.debug(f"Style not loaded yet, deferring trail overlay (generation {generation})")
        state.pending_ready = on_style_ready
        surface.once("load", on_style_ready)
        return state

    def teardown(self, state: Optional[OverlayState]) -> None:
        """Remove handlers, popup, layers and source. Idempotent."""
        if state is None or state.torn_down:
            return
        state.torn_down = True
        surface = state.surface

        if state.pending_ready is not None:
            self._quietly(surface.off, "load", state.pending_ready)
            state.pending_ready = None
        if state.click_handler is not None:
            self._quietly(surface.off, "click", state.click_handler)
            state.click_handler = None
        if state.hover_handler is not None:
            self._quietly(surface.off, "mousemove", state.hover_handler)
            state.hover_handler = None

        self._close_popup(state)
        if state.installed:
            self._quietly(surface.set_cursor, CURSOR_DEFAULT)
        state.highlighted_id = None
        self._clear(surface)
        state.installed = False

        if self._states.get(surface) is state:
            del self._states[surface]

    def release(self, surface) -> None:
        """The surface is going away: tear down and forget it."""
        self.teardown(self._states.pop(surface, None))
        self._generations.pop(surface, None)

    # -- installation --------------------------------------------------

    def _install(self, state: OverlayState) -> None:
        if state.installed or state.torn_down:
            return
        surface = state.surface
        collection = state.collection

        # leftovers from an overlay this instance does not know about
        self._clear(surface)

        surface.add_source(SOURCE_ID, collection.to_geojson())
        # no $type filter: the line layer draws LineString, MultiLineString and polygon outlines
        surface.add_layer({
            "id": LINE_LAYER_ID,
            "type": "line",
            "source": SOURCE_ID,
            "paint": dict(LINE_PAINT),
        })
        surface.add_layer({
            "id": HIGHLIGHT_LAYER_ID,
            "type": "line",
            "source": SOURCE_ID,
            "paint": dict(HIGHLIGHT_PAINT),
            "filter": highlight_filter(NO_MATCH_ID),
        })
        surface.add_layer({
            "id": POINT_LAYER_ID,
            "type": "circle",
            "source": SOURCE_ID,
            "paint": dict(POINT_PAINT),
            "filter": ["==", "$type", "Point"],
        })
        state.installed = True

        state.fit = compute_viewport_fit(collection)
        if state.fit is not None:
            surface.fit_bounds(state.fit.bounds, padding=state.fit.padding, max_zoom=state.fit.max_zoom)

        state.click_handler = lambda event: self._handle_click(state, event)
        state.hover_handler = lambda event: self._handle_hover(state, event)
        surface.on("click", state.click_handler)
        surface.on("mousemove", state.hover_handler)
        logger.info(f"Trail overlay installed with {len(collection)} features (generation {state.generation})")

    # -- interaction ---------------------------------------------------

    def _handle_hover(self, state: OverlayState, event) -> None:
        surface = state.surface
        features = surface.query_rendered_features(event.point, layers=[LINE_LAYER_ID])
        if features:
            surface.set_cursor(CURSOR_POINTER)
            trail_id = (features[0].get("properties") or {}).get("id")
            if trail_id is not None:
                self._set_highlight(state, trail_id)
        else:
            surface.set_cursor(CURSOR_DEFAULT)
            self._set_highlight(state, None)

    def _set_highlight(self, state: OverlayState, trail_id: Any) -> None:
        surface = state.surface
        if surface.get_layer(HIGHLIGHT_LAYER_ID) is None:
            logger.debug("Highlight layer is gone, skipping hover highlight")
            state.highlighted_id = None
            return
        match = NO_MATCH_ID if trail_id is None else trail_id
        surface.set_filter(HIGHLIGHT_LAYER_ID, highlight_filter(match))
        state.highlighted_id = trail_id

    def _handle_click(self, state: OverlayState, event) -> None:
        surface = state.surface
        features = surface.query_rendered_features(event.point, layers=[LINE_LAYER_ID])
        # a click anywhere closes the open popup, like MapLibre's closeOnClick
        self._close_popup(state)
        if not features:
            return
        props = features[0].get("properties") or {}
        state.popup = surface.open_popup(event.lng_lat, popup_html(props))

    # -- helpers -------------------------------------------------------

    def _close_popup(self, state: OverlayState) -> None:
        if state.popup is not None:
            self._quietly(state.popup.remove)
            state.popup = None

    def _clear(self, surface) -> None:
        for layer_id in _LAYER_REMOVAL_ORDER:
            if surface.get_layer(layer_id) is not None:
                self._quietly(surface.remove_layer, layer_id)
        if surface.get_source(SOURCE_ID) is not None:
            self._quietly(surface.remove_source, SOURCE_ID)

    @staticmethod
    def _quietly(action, *args) -> None:
        """Run a teardown step; a target that is already gone is not an error."""
        try:
            action(*args)
        except Exception as e:
            name = getattr(action, "__name__", repr(action))
            logger.warning(f"Ignoring error during overlay teardown ({name}): {e}")
