"""Tests for trail_overlay.py"""

from unittest.mock import MagicMock

import pytest

from config import (
    SOURCE_ID, LINE_LAYER_ID, HIGHLIGHT_LAYER_ID, POINT_LAYER_ID, NO_MATCH_ID,
    LINE_FIT_PADDING, LINE_FIT_MAX_ZOOM, ALL_FIT_PADDING,
)
from map_surface import StyleSurface
from trail_geometry import normalize
from trail_overlay import (
    TrailOverlay,
    compute_viewport_fit,
    feature_envelope,
    highlight_filter,
    popup_html,
)


# --- Fixtures ------------------------------------------------------------- #

TRAILS = [
    {"id": "t1", "name": "River Loop", "distance": 1200, "duration": 600,
     "path": [[0, 0], [1, 0]]},
    {"id": "t2", "name": "Ridge Line", "path": [[0, 2], [1, 2]]},
]

OTHER_TRAILS = [
    {"id": "t9", "name": "Creek Path", "path": [[5, 5], [6, 6]]},
]


def _point_record(trail_id, lon, lat):
    return {
        "id": trail_id,
        "name": f"Point {trail_id}",
        "geometry": {
            "type": "Feature",
            "geometry": {"type": "Point", "coordinates": [lon, lat]},
            "properties": {},
        },
    }


@pytest.fixture
def surface():
    return StyleSurface()


@pytest.fixture
def overlay():
    return TrailOverlay()


# --- Installation --------------------------------------------------------- #

class TestInstall:
    def test_source_and_layers_in_order(self, surface, overlay):
        overlay.present(surface, normalize(TRAILS))
        assert list(surface.sources) == [SOURCE_ID]
        assert [l["id"] for l in surface.layers] == [LINE_LAYER_ID, HIGHLIGHT_LAYER_ID, POINT_LAYER_ID]

    def test_highlight_starts_with_sentinel(self, surface, overlay):
        overlay.present(surface, normalize(TRAILS))
        assert surface.get_layer(HIGHLIGHT_LAYER_ID)["filter"] == ["==", ["get", "id"], NO_MATCH_ID]

    def test_point_layer_filtered_to_points(self, surface, overlay):
        overlay.present(surface, normalize(TRAILS))
        assert surface.get_layer(POINT_LAYER_ID)["filter"] == ["==", "$type", "Point"]
        assert surface.get_layer(POINT_LAYER_ID)["type"] == "circle"

    def test_source_holds_collection(self, surface, overlay):
        collection = normalize(TRAILS)
        overlay.present(surface, collection)
        assert surface.get_source(SOURCE_ID)["data"] == collection.to_geojson()

    def test_state_records_installation(self, surface, overlay):
        state = overlay.present(surface, normalize(TRAILS))
        assert state.installed
        assert not state.pending
        assert state.highlighted_id is None
        assert state.popup is None
        assert overlay.state_for(surface) is state

    def test_empty_collection_installs_layers(self, surface, overlay):
        overlay.present(surface, normalize([]))
        assert len(surface.layers) == 3
        assert surface.get_source(SOURCE_ID)["data"]["features"] == []

    def test_replaces_leftover_layers(self, surface, overlay):
        TrailOverlay().present(surface, normalize(OTHER_TRAILS))
        overlay.present(surface, normalize(TRAILS))
        assert len(surface.layers) == 3
        ids = [f["properties"]["id"] for f in surface.get_source(SOURCE_ID)["data"]["features"]]
        assert ids == ["t1", "t2"]


class TestRepresent:
    def test_second_collection_replaces_first(self, surface, overlay):
        overlay.present(surface, normalize(TRAILS))
        overlay.present(surface, normalize(OTHER_TRAILS))
        assert len(surface.layers) == 3
        ids = [f["properties"]["id"] for f in surface.get_source(SOURCE_ID)["data"]["features"]]
        assert ids == ["t9"]

    def test_no_leaked_handlers(self, surface, overlay):
        overlay.present(surface, normalize(TRAILS))
        state = overlay.present(surface, normalize(OTHER_TRAILS))
        assert surface.listener_count("click") == 1
        assert surface.listener_count("mousemove") == 1

        overlay.teardown(state)
        assert surface.subscribe_count == surface.unsubscribe_count
        assert surface.listener_count() == 0

    def test_old_state_torn_down(self, surface, overlay):
        first = overlay.present(surface, normalize(TRAILS))
        second = overlay.present(surface, normalize(OTHER_TRAILS))
        assert first.torn_down
        assert first.click_handler is None
        assert second.generation == first.generation + 1

    def test_tearing_down_stale_state_keeps_current(self, surface, overlay):
        first = overlay.present(surface, normalize(TRAILS))
        overlay.present(surface, normalize(OTHER_TRAILS))
        overlay.teardown(first)
        assert len(surface.layers) == 3


# --- Teardown ------------------------------------------------------------- #

class TestTeardown:
    def test_removes_everything(self, surface, overlay):
        state = overlay.present(surface, normalize(TRAILS))
        surface.dispatch("click", point=(0.5, 0))
        overlay.teardown(state)
        assert surface.layers == []
        assert surface.sources == {}
        assert surface.popups == []
        assert surface.listener_count() == 0
        assert overlay.state_for(surface) is None

    def test_idempotent(self, surface, overlay):
        state = overlay.present(surface, normalize(TRAILS))
        overlay.teardown(state)
        overlay.teardown(state)
        overlay.teardown(None)
        assert surface.layers == []

    def test_tolerates_missing_targets(self, surface, overlay):
        state = overlay.present(surface, normalize(TRAILS))
        surface.remove_layer(HIGHLIGHT_LAYER_ID)
        surface.remove_layer(POINT_LAYER_ID)
        overlay.teardown(state)
        assert surface.layers == []
        assert surface.sources == {}

    def test_layers_removed_before_source(self, overlay):
        surface = MagicMock()
        surface.is_style_loaded.return_value = True
        surface.get_layer.return_value = None
        surface.get_source.return_value = None
        state = overlay.present(surface, normalize(TRAILS))

        surface.reset_mock()
        surface.get_layer.return_value = {"id": "present"}
        surface.get_source.return_value = {"type": "geojson"}
        overlay.teardown(state)

        removals = [c[0] for c in surface.method_calls if c[0].startswith("remove_")]
        assert removals == ["remove_layer", "remove_layer", "remove_layer", "remove_source"]

    def test_surface_errors_do_not_escape(self, overlay):
        surface = MagicMock()
        surface.is_style_loaded.return_value = True
        surface.get_layer.return_value = None
        surface.get_source.return_value = None
        state = overlay.present(surface, normalize(TRAILS))

        surface.get_layer.return_value = {"id": "present"}
        surface.get_source.return_value = {"type": "geojson"}
        surface.remove_layer.side_effect = KeyError("gone")
        surface.remove_source.side_effect = ValueError("in use")
        surface.off.side_effect = RuntimeError("map removed")
        overlay.teardown(state)
        assert state.torn_down

    def test_release_forgets_surface(self, surface, overlay):
        overlay.present(surface, normalize(TRAILS))
        overlay.release(surface)
        assert overlay.state_for(surface) is None
        assert surface.layers == []
        assert surface.listener_count() == 0


# --- Deferred install ----------------------------------------------------- #

class TestStyleReady:
    def test_waits_for_style(self, overlay):
        surface = StyleSurface(style_loaded=False)
        state = overlay.present(surface, normalize(TRAILS))
        assert state.pending
        assert surface.layers == []

        surface.load_style()
        assert state.installed
        assert not state.pending
        assert len(surface.layers) == 3

    def test_repeated_ready_does_not_double_install(self, overlay):
        surface = StyleSurface(style_loaded=False)
        overlay.present(surface, normalize(TRAILS))
        surface.load_style()
        surface.dispatch("load")
        assert len(surface.layers) == 3
        assert surface.listener_count("click") == 1

    def test_newer_present_supersedes_pending(self, overlay):
        surface = StyleSurface(style_loaded=False)
        first = overlay.present(surface, normalize(TRAILS))
        stale_callback = first.pending_ready
        second = overlay.present(surface, normalize(OTHER_TRAILS))

        assert surface.listener_count("load") == 1
        stale_callback(None)
        assert surface.layers == []

        surface.load_style()
        assert second.installed
        assert not first.installed
        ids = [f["properties"]["id"] for f in surface.get_source(SOURCE_ID)["data"]["features"]]
        assert ids == ["t9"]

    def test_teardown_cancels_pending(self, overlay):
        surface = StyleSurface(style_loaded=False)
        state = overlay.present(surface, normalize(TRAILS))
        overlay.teardown(state)
        assert surface.listener_count("load") == 0

        surface.load_style()
        assert surface.layers == []
        assert surface.subscribe_count == surface.unsubscribe_count


# --- Interaction ---------------------------------------------------------- #

class TestHover:
    def test_hover_highlights_trail(self, surface, overlay):
        state = overlay.present(surface, normalize(TRAILS))
        surface.dispatch("mousemove", point=(0.5, 0))
        assert surface.get_layer(HIGHLIGHT_LAYER_ID)["filter"] == highlight_filter("t1")
        assert surface.cursor == "pointer"
        assert state.highlighted_id == "t1"

    def test_moving_off_resets(self, surface, overlay):
        state = overlay.present(surface, normalize(TRAILS))
        surface.dispatch("mousemove", point=(0.5, 0))
        surface.dispatch("mousemove", point=(0.5, 1))
        assert surface.get_layer(HIGHLIGHT_LAYER_ID)["filter"] == ["==", ["get", "id"], NO_MATCH_ID]
        assert surface.cursor == ""
        assert state.highlighted_id is None

    def test_hover_switches_between_trails(self, surface, overlay):
        overlay.present(surface, normalize(TRAILS))
        surface.dispatch("mousemove", point=(0.5, 0))
        surface.dispatch("mousemove", point=(0.5, 2))
        assert surface.get_layer(HIGHLIGHT_LAYER_ID)["filter"] == highlight_filter("t2")

    def test_hover_without_highlight_layer_does_not_raise(self, surface, overlay):
        state = overlay.present(surface, normalize(TRAILS))
        surface.remove_layer(HIGHLIGHT_LAYER_ID)
        surface.dispatch("mousemove", point=(0.5, 0))
        assert surface.cursor == "pointer"
        assert state.highlighted_id is None
        surface.dispatch("mousemove", point=(0.5, 1))
        assert surface.cursor == ""

    def test_points_do_not_highlight(self, surface, overlay):
        overlay.present(surface, normalize([_point_record("p1", 3, 3)]))
        surface.dispatch("mousemove", point=(3, 3))
        assert surface.cursor == ""


class TestClick:
    def test_click_empty_space_opens_nothing(self, surface, overlay):
        state = overlay.present(surface, normalize(TRAILS))
        surface.dispatch("click", point=(0.5, 1))
        assert surface.popups == []
        assert state.popup is None

    def test_click_trail_opens_popup(self, surface, overlay):
        state = overlay.present(surface, normalize(TRAILS))
        surface.dispatch("click", point=(0.5, 0), lng_lat=(0.5, 0.00001))
        assert len(surface.popups) == 1
        popup = surface.popups[0]
        assert state.popup is popup
        assert popup.lng_lat == (0.5, 0.00001)
        assert "Name: River Loop" in popup.html
        assert "Distance: 1200 m" in popup.html

    def test_second_click_replaces_popup(self, surface, overlay):
        overlay.present(surface, normalize(TRAILS))
        surface.dispatch("click", point=(0.5, 0))
        first = surface.popups[0]
        surface.dispatch("click", point=(0.5, 2))
        assert len(surface.popups) == 1
        assert not first.is_open
        assert "Name: Ridge Line" in surface.popups[0].html

    def test_click_elsewhere_closes_popup(self, surface, overlay):
        state = overlay.present(surface, normalize(TRAILS))
        surface.dispatch("click", point=(0.5, 0))
        surface.dispatch("click", point=(10, 10))
        assert surface.popups == []
        assert state.popup is None

    def test_popup_closed_on_represent(self, surface, overlay):
        overlay.present(surface, normalize(TRAILS))
        surface.dispatch("click", point=(0.5, 0))
        overlay.present(surface, normalize(OTHER_TRAILS))
        assert surface.popups == []


class TestPopupHtml:
    def test_missing_values_render_dash(self):
        html = popup_html({"name": "Ridge Line"})
        assert "Distance: - m" in html
        assert "Duration: - s" in html
        assert "Pace: -" in html

    def test_values_escaped(self):
        html = popup_html({"name": "<b>Trail</b>"})
        assert "&lt;b&gt;Trail&lt;/b&gt;" in html


# --- Viewport ------------------------------------------------------------- #

class TestViewportFit:
    def test_prefers_first_line(self):
        collection = normalize([
            _point_record("far", 100, 60),
            {"id": "t1", "name": "Line", "path": [[0, 0], [1, 2]]},
            {"id": "t2", "name": "Other", "path": [[10, 10], [11, 11]]},
        ])
        fit = compute_viewport_fit(collection)
        assert fit.bounds == (0.0, 0.0, 1.0, 2.0)
        assert fit.padding == LINE_FIT_PADDING
        assert fit.max_zoom == LINE_FIT_MAX_ZOOM

    def test_points_only_fallback(self):
        collection = normalize([_point_record("a", 1, 2), _point_record("b", 3, 4)])
        fit = compute_viewport_fit(collection)
        assert fit.bounds == (1.0, 2.0, 3.0, 4.0)
        assert fit.padding == ALL_FIT_PADDING
        assert fit.max_zoom is None

    def test_multilinestring_counts_as_line(self):
        record = {
            "id": "m1",
            "name": "Split trail",
            "geometry": {
                "type": "Feature",
                "geometry": {"type": "MultiLineString", "coordinates": [[[0, 0], [1, 1]], [[2, 2], [3, 1]]]},
                "properties": {},
            },
        }
        fit = compute_viewport_fit(normalize([_point_record("p", 50, 50), record]))
        assert fit.bounds == (0.0, 0.0, 3.0, 2.0)
        assert fit.max_zoom == LINE_FIT_MAX_ZOOM

    def test_polygon_uses_outer_ring(self):
        record = {
            "id": "poly",
            "name": "Park",
            "geometry": {
                "type": "Feature",
                "geometry": {"type": "Polygon", "coordinates": [
                    [[0, 0], [4, 0], [4, 4], [0, 4], [0, 0]],
                    [[1, 1], [2, 1], [2, 2], [1, 1]],
                ]},
                "properties": {},
            },
        }
        fit = compute_viewport_fit(normalize([record]))
        assert fit.bounds == (0.0, 0.0, 4.0, 4.0)
        assert fit.padding == ALL_FIT_PADDING

    def test_empty_collection_has_no_fit(self):
        assert compute_viewport_fit(normalize([])) is None

    def test_empty_line_falls_back_to_all_features(self):
        record = {
            "id": "empty",
            "name": "No coords",
            "geometry": {
                "type": "Feature",
                "geometry": {"type": "LineString", "coordinates": []},
                "properties": {},
            },
        }
        fit = compute_viewport_fit(normalize([record, _point_record("p", 7, 8)]))
        assert fit.bounds == (7.0, 8.0, 7.0, 8.0)
        assert fit.padding == ALL_FIT_PADDING

    def test_unreadable_feature_contributes_nothing(self):
        collection = normalize([
            {
                "id": "bad",
                "name": "Bad",
                "geometry": {
                    "type": "Feature",
                    "geometry": {"type": "Point", "coordinates": None},
                    "properties": {},
                },
            },
            _point_record("good", 5, 6),
        ])
        assert feature_envelope(collection) == (5.0, 6.0, 5.0, 6.0)

    def test_partly_unreadable_line_contributes_nothing(self):
        collection = normalize([
            {
                "id": "half",
                "name": "Half parsed",
                "geometry": {
                    "type": "Feature",
                    "geometry": {"type": "LineString", "coordinates": [[0, 0], [50, 50], [1]]},
                    "properties": {},
                },
            },
            _point_record("good", 5, 6),
        ])
        assert feature_envelope(collection) == (5.0, 6.0, 5.0, 6.0)
        fit = compute_viewport_fit(collection)
        assert fit.bounds == (5.0, 6.0, 5.0, 6.0)
        assert fit.padding == ALL_FIT_PADDING
        assert fit.max_zoom is None

    def test_non_finite_feature_contributes_nothing(self):
        collection = normalize([
            {
                "id": "nan",
                "name": "Bad point",
                "geometry": {
                    "type": "Feature",
                    "geometry": {"type": "Point", "coordinates": [float("nan"), 1]},
                    "properties": {},
                },
            },
            _point_record("good", 5, 6),
        ])
        assert feature_envelope(collection) == (5.0, 6.0, 5.0, 6.0)

    def test_present_applies_fit(self, surface, overlay):
        overlay.present(surface, normalize(TRAILS))
        assert surface.viewport == {
            "bounds": [0.0, 0.0, 1.0, 0.0],
            "padding": LINE_FIT_PADDING,
            "max_zoom": LINE_FIT_MAX_ZOOM,
        }

    def test_present_empty_leaves_viewport(self, surface, overlay):
        overlay.present(surface, normalize([]))
        assert surface.viewport is None
        assert surface.fit_history == []
