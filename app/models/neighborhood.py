"""
Neighborhood models. Read-only from the engine's point of view.
"""

from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field


class Neighborhood(BaseModel):
    id: str
    municipality_id: str
    name: Optional[str] = None
    # GeoJSON Polygon/MultiPolygon, as a mapping or a JSON string
    # (Firestore cannot store the nested coordinate arrays directly)
    geometry: Union[Dict[str, Any], str]
    active: bool = True


class NeighborhoodResolution(BaseModel):
    municipality_id: str
    lat: float
    lng: float
    neighborhood_id: Optional[str] = Field(
        None, description="Containing (or nearest) active neighborhood; null when the municipality has none"
    )
