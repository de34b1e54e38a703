"""Neighborhood routes - point-to-neighborhood resolution for clients and operators."""

from fastapi import APIRouter, Query

from app.models.neighborhood import NeighborhoodResolution
from app.services.neighborhood_resolver import get_neighborhood_resolver
from app.utils.geo import validate_coordinates

router = APIRouter(prefix="/neighborhoods", tags=["Neighborhoods"])


@router.get("/resolve", response_model=NeighborhoodResolution)
def resolve_neighborhood(
    municipality_id: str = Query(..., min_length=1),
    lat: float = Query(...),
    lng: float = Query(...),
):
    """
    Containing (or nearest) active neighborhood for a point.

    `neighborhood_id` is null when the municipality has no active neighborhoods.
    """
    point = validate_coordinates(lat, lng)
    neighborhood_id = get_neighborhood_resolver().resolve(municipality_id, point)
    return NeighborhoodResolution(
        municipality_id=municipality_id,
        lat=point.lat,
        lng=point.lng,
        neighborhood_id=neighborhood_id,
    )
