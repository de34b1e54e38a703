"""
Pydantic models for incidents and the ranking configuration.
These models handle validation for incident submission, storage mapping and responses.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from app.core.settings import settings
from app.models.vote import VoteStats
from app.utils.firestore_helpers import to_utc_datetime


class Location(BaseModel):
    """
    WGS84 coordinate pair.

    Range checks live in the engine (app.utils.geo.validate_coordinates) so
    that bad coordinates surface as InvalidLocation everywhere.
    """
    lat: float
    lng: float


class ScoreWeights(BaseModel):
    """
    Municipality-level ranking coefficients.

    `decay_constant_days` is an e-folding time: the decay factor reaches
    1/e (~0.368) at that age, not 0.5.
    """
    neighborhood_vote_weight: float = Field(..., allow_inf_nan=False)
    global_vote_weight: float = Field(..., allow_inf_nan=False)
    decay_constant_days: float = Field(..., gt=0, allow_inf_nan=False)

    @classmethod
    def defaults(cls) -> "ScoreWeights":
        return cls(
            neighborhood_vote_weight=settings.DEFAULT_NEIGHBORHOOD_VOTE_WEIGHT,
            global_vote_weight=settings.DEFAULT_GLOBAL_VOTE_WEIGHT,
            decay_constant_days=settings.DEFAULT_DECAY_CONSTANT_DAYS,
        )


class IncidentCreate(BaseModel):
    """Model for creating a new incident (incoming POST request)."""
    municipality_id: str = Field(..., min_length=1)
    category_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=5000)
    location: Location
    media: List[str] = Field(default_factory=list, description="Optional list of image/video URLs")

    class Config:
        json_schema_extra = {
            "example": {
                "municipality_id": "lisboa",
                "category_id": "roads",
                "title": "Pothole on Rua Augusta",
                "description": "Deep pothole in the right lane near the arch.",
                "location": {"lat": 38.7089, "lng": -9.1366},
                "media": ["https://example.com/photo.jpg"],
            }
        }


class Incident(BaseModel):
    """A stored incident with its derived ranking fields."""
    id: str
    municipality_id: str
    category_id: str
    title: str
    description: str = ""
    location: Location
    geohash: str
    neighborhood_id: Optional[str] = None
    status: str = "OPEN"
    created_by_user_id: Optional[str] = None
    media: List[str] = Field(default_factory=list)
    vote_stats: VoteStats = Field(default_factory=VoteStats)
    importance_score: float = Field(default=0.0, ge=0.0)
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "Incident":
        return cls(
            id=doc_id,
            municipality_id=data["municipality_id"],
            category_id=data.get("category_id", ""),
            title=data.get("title", ""),
            description=data.get("description", ""),
            location=Location(lat=data["latitude"], lng=data["longitude"]),
            geohash=data.get("geohash", ""),
            neighborhood_id=data.get("neighborhood_id"),
            status=data.get("status", "OPEN"),
            created_by_user_id=data.get("created_by_user_id"),
            media=data.get("media") or [],
            vote_stats=VoteStats.model_validate(data.get("vote_stats") or {}),
            importance_score=float(data.get("importance_score") or 0.0),
            created_at=to_utc_datetime(data.get("created_at")),
            updated_at=to_utc_datetime(data.get("updated_at")),
        )

    def to_document(self) -> Dict[str, Any]:
        """Firestore representation; coordinates are flat fields so they can be range-filtered."""
        return {
            "municipality_id": self.municipality_id,
            "category_id": self.category_id,
            "title": self.title,
            "description": self.description,
            "latitude": self.location.lat,
            "longitude": self.location.lng,
            "geohash": self.geohash,
            "neighborhood_id": self.neighborhood_id,
            "status": self.status,
            "created_by_user_id": self.created_by_user_id,
            "media": list(self.media),
            "vote_stats": self.vote_stats.model_dump(),
            "importance_score": self.importance_score,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class IncidentFilters(BaseModel):
    """Optional feed filters; all are exact matches."""
    category_id: Optional[str] = None
    status: Optional[str] = None
    neighborhood_id: Optional[str] = None
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=settings.FEED_DEFAULT_PAGE_SIZE, ge=1, le=settings.FEED_MAX_PAGE_SIZE)


class IncidentPage(BaseModel):
    items: List[Incident]
    total: int
    page: int
    page_size: int
    has_more: bool
