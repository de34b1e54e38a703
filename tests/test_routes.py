"""HTTP-level tests for the incident, neighborhood and health routes."""

from __future__ import annotations

from unittest.mock import patch

from app.core.settings import settings
from conftest import ALFAMA_POINT, BAIXA_POINT, MUNICIPALITY_ID


def incident_payload(lat: float, lng: float, **overrides) -> dict:
    payload = {
        "municipality_id": MUNICIPALITY_ID,
        "category_id": "roads",
        "title": "Pothole on Rua Augusta",
        "description": "Deep pothole in the right lane near the arch.",
        "location": {"lat": lat, "lng": lng},
    }
    payload.update(overrides)
    return payload


class TestHealthRoutes:
    """Tests for /health and /."""

    def test_root(self, client) -> None:
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "running"

    def test_health(self, client) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_db_health_reports_mock(self, client) -> None:
        response = client.get("/health/db")
        assert response.status_code == 200
        body = response.json()
        assert body["database"] == "mock"
        assert body["collections_count"] >= 3


class TestIncidentRoutes:
    """Tests for /incidents."""

    def test_create_incident(self, client) -> None:
        response = client.post("/incidents", json=incident_payload(*BAIXA_POINT), headers={"X-User-ID": "ana"})

        assert response.status_code == 201
        body = response.json()
        assert body["neighborhood_id"] == "baixa"
        assert body["importance_score"] == 0.0
        assert body["created_by_user_id"] == "ana"
        assert body["vote_stats"]["total"] == 0

    def test_create_rejects_out_of_range_location(self, client) -> None:
        response = client.post("/incidents", json=incident_payload(95.0, -9.1))

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "INVALID_LOCATION"

    def test_create_rejects_missing_fields(self, client) -> None:
        response = client.post("/incidents", json={"municipality_id": MUNICIPALITY_ID})
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_get_incident(self, client) -> None:
        created = client.post("/incidents", json=incident_payload(*ALFAMA_POINT)).json()
        response = client.get(f"/incidents/{created['id']}")
        assert response.status_code == 200
        assert response.json()["neighborhood_id"] == "alfama"

    def test_get_missing_incident(self, client) -> None:
        response = client.get("/incidents/missing")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_vote_flow(self, client) -> None:
        incident_id = client.post("/incidents", json=incident_payload(*BAIXA_POINT)).json()["id"]

        response = client.post(f"/incidents/{incident_id}/vote", json={"value": 1}, headers={"X-User-ID": "ana"})
        assert response.status_code == 200
        assert response.json()["importance_score"] == 3.0

        response = client.post(f"/incidents/{incident_id}/vote", json={"value": -1}, headers={"X-User-ID": "carla"})
        assert response.json()["vote_stats"]["total"] == 2

        summary = client.get(f"/incidents/{incident_id}/votes", headers={"X-User-ID": "carla"}).json()
        assert summary["upvotes"] == 1
        assert summary["downvotes"] == 1
        assert summary["user_vote"] == -1
        assert summary["by_neighborhood"]["baixa"]["upvotes"] == 1

        response = client.delete(f"/incidents/{incident_id}/vote", headers={"X-User-ID": "carla"})
        assert response.status_code == 200
        assert response.json()["vote_stats"]["total"] == 1

        again = client.delete(f"/incidents/{incident_id}/vote", headers={"X-User-ID": "carla"})
        assert again.status_code == 200
        assert again.json()["vote_stats"] == response.json()["vote_stats"]

    def test_vote_requires_user_header(self, client) -> None:
        incident_id = client.post("/incidents", json=incident_payload(*BAIXA_POINT)).json()["id"]
        response = client.post(f"/incidents/{incident_id}/vote", json={"value": 1})
        assert response.status_code == 422

    def test_vote_rejects_unaddressable_user_id(self, client) -> None:
        incident_id = client.post("/incidents", json=incident_payload(*BAIXA_POINT)).json()["id"]
        response = client.post(f"/incidents/{incident_id}/vote", json={"value": 1}, headers={"X-User-ID": "ana/extra"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_IDENTIFIER"

    def test_vote_rejects_invalid_value(self, client) -> None:
        incident_id = client.post("/incidents", json=incident_payload(*BAIXA_POINT)).json()["id"]
        response = client.post(f"/incidents/{incident_id}/vote", json={"value": 2}, headers={"X-User-ID": "ana"})
        assert response.status_code == 422

    def test_vote_on_missing_incident(self, client) -> None:
        response = client.post("/incidents/missing/vote", json={"value": 1}, headers={"X-User-ID": "ana"})
        assert response.status_code == 404

    def test_ranked_feed(self, client) -> None:
        quiet = client.post("/incidents", json=incident_payload(*BAIXA_POINT, title="Quiet")).json()["id"]
        popular = client.post("/incidents", json=incident_payload(*ALFAMA_POINT, title="Popular")).json()["id"]
        client.post(f"/incidents/{popular}/vote", json={"value": 1}, headers={"X-User-ID": "carla"})

        response = client.get("/incidents", params={"municipality_id": MUNICIPALITY_ID})
        assert response.status_code == 200
        body = response.json()
        assert [item["id"] for item in body["items"]] == [popular, quiet]
        assert body["total"] == 2

        filtered = client.get("/incidents", params={"municipality_id": MUNICIPALITY_ID, "neighborhood_id": "baixa"})
        assert [item["id"] for item in filtered.json()["items"]] == [quiet]

    def test_feed_page_size_bounds_from_settings(self, client) -> None:
        default = client.get("/incidents", params={"municipality_id": MUNICIPALITY_ID})
        assert default.json()["page_size"] == settings.FEED_DEFAULT_PAGE_SIZE

        largest = client.get(
            "/incidents", params={"municipality_id": MUNICIPALITY_ID, "page_size": settings.FEED_MAX_PAGE_SIZE}
        )
        assert largest.status_code == 200

        too_large = client.get(
            "/incidents", params={"municipality_id": MUNICIPALITY_ID, "page_size": settings.FEED_MAX_PAGE_SIZE + 1}
        )
        assert too_large.status_code == 422

    def test_feed_requires_municipality(self, client) -> None:
        assert client.get("/incidents").status_code == 422

    def test_nearby(self, client) -> None:
        near = client.post("/incidents", json=incident_payload(*BAIXA_POINT)).json()["id"]
        client.post("/incidents", json=incident_payload(*ALFAMA_POINT))

        response = client.get(
            "/incidents",
            params={"municipality_id": MUNICIPALITY_ID, "lat": BAIXA_POINT[0], "lng": BAIXA_POINT[1], "radius": 500},
        )
        assert response.status_code == 200
        assert [item["id"] for item in response.json()] == [near]

    def test_nearby_invalid_center(self, client) -> None:
        response = client.get("/incidents", params={"municipality_id": MUNICIPALITY_ID, "lat": 100, "lng": 0})
        assert response.status_code == 400


class TestNeighborhoodRoutes:
    """Tests for /neighborhoods/resolve."""

    def test_resolve(self, client) -> None:
        response = client.get(
            "/neighborhoods/resolve",
            params={"municipality_id": MUNICIPALITY_ID, "lat": ALFAMA_POINT[0], "lng": ALFAMA_POINT[1]},
        )
        assert response.status_code == 200
        assert response.json()["neighborhood_id"] == "alfama"

    def test_resolve_without_neighborhoods(self, client) -> None:
        response = client.get("/neighborhoods/resolve", params={"municipality_id": "porto", "lat": 41.15, "lng": -8.62})
        assert response.status_code == 200
        assert response.json()["neighborhood_id"] is None

    def test_resolve_invalid_location(self, client) -> None:
        response = client.get("/neighborhoods/resolve", params={"municipality_id": MUNICIPALITY_ID, "lat": 0, "lng": 200})
        assert response.status_code == 400

    def test_store_outage_is_503(self, client, installed_services) -> None:
        from google.api_core.exceptions import ServiceUnavailable

        installed_services.resolver.invalidate()
        with patch("app.config.mock_firestore.MockQuery.stream", side_effect=ServiceUnavailable("down")):
            response = client.get(
                "/neighborhoods/resolve",
                params={"municipality_id": MUNICIPALITY_ID, "lat": BAIXA_POINT[0], "lng": BAIXA_POINT[1]},
            )
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "SPATIAL_INDEX_UNAVAILABLE"
