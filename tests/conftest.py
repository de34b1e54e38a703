"""Shared fixtures: an in-memory Firestore seeded with one municipality.

Lisboa has two adjacent rectangular neighborhoods sharing the meridian
-9.130 between latitudes 38.708 and 38.716:

    baixa   lng -9.145 .. -9.130, lat 38.706 .. 38.716
    alfama  lng -9.130 .. -9.120, lat 38.708 .. 38.716
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from app.config import firebase
from app.config.mock_firestore import MockFirestore
from app.services import incident_service as incident_service_module
from app.services import neighborhood_resolver as neighborhood_resolver_module
from app.services import vote_ledger as vote_ledger_module
from app.services.incident_service import IncidentService
from app.services.neighborhood_resolver import NeighborhoodResolver
from app.services.vote_ledger import VoteLedger

MUNICIPALITY_ID = "lisboa"

BAIXA_POINT = (38.710, -9.137)
ALFAMA_POINT = (38.712, -9.125)

BAIXA_GEOMETRY = {
    "type": "Polygon",
    "coordinates": [[[-9.145, 38.706], [-9.130, 38.706], [-9.130, 38.716], [-9.145, 38.716], [-9.145, 38.706]]],
}
ALFAMA_GEOMETRY = {
    "type": "Polygon",
    "coordinates": [[[-9.130, 38.708], [-9.120, 38.708], [-9.120, 38.716], [-9.130, 38.716], [-9.130, 38.708]]],
}


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def seed_municipality(db: MockFirestore) -> None:
    db.collection("municipalities").document(MUNICIPALITY_ID).set({
        "name": "Lisboa",
        "settings": {
            "score_weights": {
                "neighborhood_vote_weight": 2.0,
                "global_vote_weight": 1.0,
                "decay_constant_days": 30,
            }
        },
    })
    db.collection("neighborhoods").document("baixa").set({
        "municipality_id": MUNICIPALITY_ID,
        "name": "Baixa",
        "active": True,
        "geometry": BAIXA_GEOMETRY,
    })
    db.collection("neighborhoods").document("alfama").set({
        "municipality_id": MUNICIPALITY_ID,
        "name": "Alfama",
        "active": True,
        "geometry": ALFAMA_GEOMETRY,
    })
    users = {
        "ana": "baixa",
        "bruno": "baixa",
        "carla": "alfama",
        "duarte": None,
    }
    for user_id, neighborhood_id in users.items():
        db.collection("users").document(user_id).set({"name": user_id.title(), "neighborhood_id": neighborhood_id})


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def db() -> MockFirestore:
    client = MockFirestore()
    seed_municipality(client)
    return client


@pytest.fixture
def resolver(db) -> NeighborhoodResolver:
    return NeighborhoodResolver(db=db)


@pytest.fixture
def ledger(db, clock) -> VoteLedger:
    return VoteLedger(db=db, clock=clock)


@pytest.fixture
def service(db, resolver, ledger, clock) -> IncidentService:
    return IncidentService(db=db, resolver=resolver, ledger=ledger, clock=clock)


@pytest.fixture
def create_incident(service):
    """Factory: create an incident with sensible defaults."""

    def _create(location=BAIXA_POINT, category_id="roads", title="Pothole", **kwargs):
        return service.create_incident(
            municipality_id=kwargs.pop("municipality_id", MUNICIPALITY_ID),
            category_id=category_id,
            title=title,
            description=kwargs.pop("description", "Deep pothole in the right lane"),
            location=location,
            **kwargs,
        )

    return _create


@pytest.fixture
def installed_services(db, resolver, ledger, service):
    """Install the fixture services as the process-wide singletons used by the routes."""
    previous = (
        firebase.db,
        incident_service_module._incident_service,
        neighborhood_resolver_module._neighborhood_resolver,
        vote_ledger_module._vote_ledger,
    )
    firebase.set_db(db)
    incident_service_module._incident_service = service
    neighborhood_resolver_module._neighborhood_resolver = resolver
    vote_ledger_module._vote_ledger = ledger
    yield service
    (
        firebase.db,
        incident_service_module._incident_service,
        neighborhood_resolver_module._neighborhood_resolver,
        vote_ledger_module._vote_ledger,
    ) = previous


@pytest.fixture
def client(installed_services):
    from fastapi.testclient import TestClient

    from app.main import app

    with TestClient(app) as test_client:
        yield test_client
