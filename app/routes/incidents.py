"""
Incident endpoints - creation, ranked feeds, nearby queries and voting.

Engine errors (InvalidLocation, NotFound, SpatialIndexUnavailable, ...) are
raised by the service and translated to HTTP responses by the exception
handlers registered in app.main.
"""

import logging
from typing import List, Optional, Union

from fastapi import APIRouter, Header, Query, status

from app.core.settings import settings
from app.models.incident import Incident, IncidentCreate, IncidentFilters, IncidentPage
from app.models.vote import VoteRequest, VoteSummary
from app.services.incident_service import get_incident_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/incidents", tags=["Incidents"])


@router.post("", response_model=Incident, status_code=status.HTTP_201_CREATED)
def create_incident(
    incident: IncidentCreate,
    user_id: Optional[str] = Header(None, alias="X-User-ID", description="Reporter ID (optional)"),
):
    """
    Submit a new incident.

    The location is geohashed and resolved to a neighborhood; the incident
    starts with zero votes and importance score 0.
    """
    logger.info(f"POST /incidents - municipality={incident.municipality_id} category={incident.category_id}")
    return get_incident_service().create_incident(
        municipality_id=incident.municipality_id,
        category_id=incident.category_id,
        title=incident.title,
        description=incident.description,
        location=incident.location,
        media=incident.media,
        created_by_user_id=user_id,
    )


@router.get("", response_model=Union[IncidentPage, List[Incident]])
def list_incidents(
    municipality_id: str = Query(..., min_length=1, description="Municipality to list"),
    category_id: Optional[str] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    neighborhood_id: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(settings.FEED_DEFAULT_PAGE_SIZE, ge=1, le=settings.FEED_MAX_PAGE_SIZE),
    lat: Optional[float] = Query(None, description="Nearby query center latitude"),
    lng: Optional[float] = Query(None, description="Nearby query center longitude"),
    radius: Optional[float] = Query(None, gt=0, description="Nearby radius in meters"),
    limit: Optional[int] = Query(None, ge=1, le=500, description="Maximum nearby results"),
):
    """
    Ranked incidents (importance score desc, newest first on ties).

    With `lat` and `lng` this is a nearby query and returns a plain list;
    otherwise a paginated feed.
    """
    service = get_incident_service()
    if lat is not None and lng is not None:
        return service.nearby(municipality_id, (lat, lng), radius_meters=radius, limit=limit)

    filters = IncidentFilters(
        category_id=category_id,
        status=status_filter,
        neighborhood_id=neighborhood_id,
        page=page,
        page_size=page_size,
    )
    return service.ranked_feed(municipality_id, filters)


@router.get("/{incident_id}", response_model=Incident)
def get_incident(incident_id: str):
    return get_incident_service().get_incident(incident_id)


@router.post("/{incident_id}/vote", response_model=Incident)
def vote_on_incident(
    incident_id: str,
    vote: VoteRequest,
    user_id: str = Header(..., alias="X-User-ID", description="User ID"),
):
    """
    Vote on an incident (1 = upvote, -1 = downvote).

    Voting again with a different value changes the vote in place.
    """
    return get_incident_service().cast_vote(incident_id, user_id, vote.value)


@router.delete("/{incident_id}/vote", response_model=Incident)
def remove_vote(
    incident_id: str,
    user_id: str = Header(..., alias="X-User-ID", description="User ID"),
):
    """Remove the caller's vote. Removing twice is harmless."""
    return get_incident_service().remove_vote(incident_id, user_id)


@router.get("/{incident_id}/votes", response_model=VoteSummary)
def get_vote_summary(
    incident_id: str,
    user_id: Optional[str] = Header(None, alias="X-User-ID", description="User ID for personalized data"),
):
    return get_incident_service().get_vote_summary(incident_id, user_id)
