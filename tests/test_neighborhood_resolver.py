"""Tests for point-to-neighborhood resolution."""

from __future__ import annotations

import json
from unittest.mock import patch

import pytest
from google.api_core.exceptions import ServiceUnavailable

from app.config.mock_firestore import MockFirestore
from app.core.exceptions import MalformedGeometry, SpatialIndexUnavailable
from app.models.neighborhood import Neighborhood
from app.services.neighborhood_resolver import NeighborhoodIndex, NeighborhoodResolver, parse_geometry
from conftest import ALFAMA_POINT, BAIXA_POINT, MUNICIPALITY_ID


def square(min_lng: float, min_lat: float, max_lng: float, max_lat: float) -> dict:
    return {
        "type": "Polygon",
        "coordinates": [[
            [min_lng, min_lat], [max_lng, min_lat], [max_lng, max_lat], [min_lng, max_lat], [min_lng, min_lat],
        ]],
    }


class TestParseGeometry:
    """Tests for parse_geometry validation."""

    def test_accepts_dict_and_json_string(self) -> None:
        geometry = square(0, 0, 1, 1)
        from_dict = parse_geometry(Neighborhood(id="n", municipality_id="m", geometry=geometry))
        from_string = parse_geometry(Neighborhood(id="n", municipality_id="m", geometry=json.dumps(geometry)))
        assert from_dict.equals(from_string)

    def test_accepts_multipolygon(self) -> None:
        geometry = {
            "type": "MultiPolygon",
            "coordinates": [square(0, 0, 1, 1)["coordinates"], square(2, 2, 3, 3)["coordinates"]],
        }
        assert parse_geometry(Neighborhood(id="n", municipality_id="m", geometry=geometry)).geom_type == "MultiPolygon"

    def test_self_intersecting_polygon_rejected(self) -> None:
        """A bow-tie polygon is invalid and must be reported, not ignored."""
        bow_tie = {"type": "Polygon", "coordinates": [[[0, 0], [1, 1], [1, 0], [0, 1], [0, 0]]]}
        with pytest.raises(MalformedGeometry) as exc_info:
            parse_geometry(Neighborhood(id="bow-tie", municipality_id="m", geometry=bow_tie))
        assert exc_info.value.neighborhood_id == "bow-tie"
        assert "Self-intersection" in exc_info.value.reason

    @pytest.mark.parametrize(
        "geometry",
        [
            "not json",
            {},
            {"type": "Point", "coordinates": [0, 0]},
            {"type": "Polygon", "coordinates": []},
            {"type": "Circle", "coordinates": [0, 0]},
        ],
    )
    def test_unusable_geometry_rejected(self, geometry) -> None:
        with pytest.raises(MalformedGeometry):
            parse_geometry(Neighborhood(id="n", municipality_id="m", geometry=geometry))


class TestNeighborhoodIndex:
    """Tests for NeighborhoodIndex containment and nearest lookups."""

    @pytest.fixture
    def index(self) -> NeighborhoodIndex:
        return NeighborhoodIndex([
            Neighborhood(id="west", municipality_id="m", geometry=square(0, 0, 1, 1)),
            Neighborhood(id="east", municipality_id="m", geometry=square(1, 0, 2, 1)),
            Neighborhood(id="far", municipality_id="m", geometry=square(10, 10, 11, 11)),
        ])

    def test_containment(self, index) -> None:
        assert index.resolve(0.5, 0.5) == "west"
        assert index.resolve(0.5, 1.5) == "east"

    def test_shared_border_goes_to_smallest_id(self, index) -> None:
        assert index.containing(0.5, 1.0) == ["east", "west"]
        assert index.resolve(0.5, 1.0) == "east"

    def test_nearest_fallback(self, index) -> None:
        assert index.resolve(0.5, -0.2) == "west"
        assert index.resolve(9.5, 10.5) == "far"

    def test_nearest_measures_to_polygon_not_centroid(self) -> None:
        """A long thin polygon is nearer than a small one with a closer centroid."""
        index = NeighborhoodIndex([
            Neighborhood(id="long", municipality_id="m", geometry=square(0, 0, 10, 0.1)),
            Neighborhood(id="small", municipality_id="m", geometry=square(8.0, 0.6, 8.4, 0.7)),
        ])
        # The small box centroid is far closer than the strip centroid (5, 0.05)
        assert index.resolve(0.2, 9.0) == "long"

    def test_nearest_tie_goes_to_smallest_id(self) -> None:
        index = NeighborhoodIndex([
            Neighborhood(id="b", municipality_id="m", geometry=square(0, 0, 1, 1)),
            Neighborhood(id="a", municipality_id="m", geometry=square(0, 2, 1, 3)),
        ])
        assert index.nearest(1.5, 0.5) == "a"

    def test_empty_index(self) -> None:
        index = NeighborhoodIndex([])
        assert len(index) == 0
        assert index.resolve(0.0, 0.0) is None


class TestNeighborhoodResolver:
    """Tests for NeighborhoodResolver against the mock store."""

    def test_resolves_containing_neighborhood(self, resolver) -> None:
        assert resolver.resolve(MUNICIPALITY_ID, BAIXA_POINT) == "baixa"
        assert resolver.resolve(MUNICIPALITY_ID, ALFAMA_POINT) == "alfama"

    def test_point_on_shared_border(self, resolver) -> None:
        assert resolver.resolve(MUNICIPALITY_ID, (38.712, -9.130)) == "alfama"

    def test_outside_all_polygons_falls_back_to_nearest(self, resolver) -> None:
        assert resolver.resolve(MUNICIPALITY_ID, (38.700, -9.137)) == "baixa"
        assert resolver.resolve(MUNICIPALITY_ID, (38.712, -9.110)) == "alfama"

    def test_municipality_without_neighborhoods_returns_none(self, resolver) -> None:
        assert resolver.resolve("porto", (41.1579, -8.6291)) is None

    def test_inactive_neighborhoods_ignored(self, db, resolver) -> None:
        db.collection("neighborhoods").document("alfama").update({"active": False})
        assert resolver.resolve(MUNICIPALITY_ID, ALFAMA_POINT) == "baixa"

    def test_index_cached_until_invalidated(self, db, resolver) -> None:
        assert resolver.resolve(MUNICIPALITY_ID, ALFAMA_POINT) == "alfama"
        db.collection("neighborhoods").document("alfama").update({"active": False})

        assert resolver.resolve(MUNICIPALITY_ID, ALFAMA_POINT) == "alfama"
        resolver.invalidate(MUNICIPALITY_ID)
        assert resolver.resolve(MUNICIPALITY_ID, ALFAMA_POINT) == "baixa"

    def test_zero_ttl_always_reloads(self, db) -> None:
        resolver = NeighborhoodResolver(db=db, ttl_seconds=0)
        assert resolver.resolve(MUNICIPALITY_ID, ALFAMA_POINT) == "alfama"
        db.collection("neighborhoods").document("alfama").update({"active": False})
        assert resolver.resolve(MUNICIPALITY_ID, ALFAMA_POINT) == "baixa"

    @pytest.mark.parametrize(
        "geometry",
        [
            {"type": "Polygon", "coordinates": [[[0, 0], [1, 1], [1, 0], [0, 1], [0, 0]]]},
            {"type": "Circle", "coordinates": [0, 0]},
            [[[0, 0], [1, 0], [1, 1], [0, 0]]],
        ],
    )
    def test_malformed_geometry_surfaces(self, db, resolver, geometry) -> None:
        """Stored geometry the index cannot use is reported against its document."""
        db.collection("neighborhoods").document("broken").set({
            "municipality_id": MUNICIPALITY_ID,
            "active": True,
            "geometry": geometry,
        })
        with pytest.raises(MalformedGeometry) as exc_info:
            resolver.resolve(MUNICIPALITY_ID, BAIXA_POINT)
        assert exc_info.value.neighborhood_id == "broken"
        assert exc_info.value.status_code == 500

    def test_store_failure_is_spatial_index_unavailable(self) -> None:
        """Store errors are transient failures, distinct from a None result."""
        resolver = NeighborhoodResolver(db=MockFirestore())
        with patch("app.config.mock_firestore.MockQuery.stream", side_effect=ServiceUnavailable("down")):
            with pytest.raises(SpatialIndexUnavailable) as exc_info:
                resolver.resolve(MUNICIPALITY_ID, BAIXA_POINT)
        assert exc_info.value.status_code == 503
        assert exc_info.value.retryable is True

    def test_list_active_sorted_by_id(self, resolver) -> None:
        assert [n.id for n in resolver.list_active(MUNICIPALITY_ID)] == ["alfama", "baixa"]
