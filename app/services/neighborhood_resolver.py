"""
Neighborhood Resolver - map a point to an administrative neighborhood.

Algorithm:
1. Containment: active neighborhoods of the municipality whose polygon
   contains the point (a point on a shared border touches both). Ties go to
   the smallest neighborhood id.
2. Fallback: the active neighborhood whose geometry is nearest to the point,
   measured to the polygon itself rather than its centroid. Ties go to the
   smallest id.
3. No active neighborhoods: None. Callers treat None as "no neighborhood
   scoping", not as a failure.

Lookups go through a per-municipality shapely STRtree. Indexes are cached
for NEIGHBORHOOD_INDEX_TTL_SECONDS and rebuilt from the neighborhood store
after that (or after invalidate()).

Distances for the nearest fallback are planar in an equirectangular
projection: longitudes are scaled by cos(reference latitude), where the
reference is the middle of the municipality's extent.
"""

import json
import logging
import math
import threading
import time
from typing import Dict, List, Optional, Tuple

from google.api_core.exceptions import GoogleAPICallError, RetryError
from pydantic import ValidationError
from shapely import affinity
from shapely.errors import ShapelyError
from shapely.geometry import MultiPolygon, Point, Polygon, shape
from shapely.strtree import STRtree
from shapely.validation import explain_validity

from app.config.firebase import get_db
from app.core.exceptions import MalformedGeometry, SpatialIndexUnavailable
from app.core.settings import settings
from app.models.neighborhood import Neighborhood
from app.utils.firestore_helpers import where_filter

logger = logging.getLogger(__name__)

NEIGHBORHOODS_COLLECTION = "neighborhoods"


def parse_geometry(neighborhood: Neighborhood):
    """
    Build and validate a shapely geometry from stored GeoJSON.

    Raises:
        MalformedGeometry: unparsable, non-polygonal, empty or invalid
            (e.g. self-intersecting) geometry
    """
    raw = neighborhood.geometry
    try:
        if isinstance(raw, str):
            raw = json.loads(raw)
        geometry = shape(raw)
    except (ValueError, TypeError, KeyError, AttributeError, IndexError, ShapelyError) as e:
        raise MalformedGeometry(neighborhood.id, f"unparsable GeoJSON ({e})") from e

    if not isinstance(geometry, (Polygon, MultiPolygon)):
        raise MalformedGeometry(neighborhood.id, f"expected Polygon or MultiPolygon, got {geometry.geom_type}")
    if geometry.is_empty:
        raise MalformedGeometry(neighborhood.id, "geometry is empty")
    if not geometry.is_valid:
        raise MalformedGeometry(neighborhood.id, explain_validity(geometry))
    return geometry


class NeighborhoodIndex:
    """Spatial index over one municipality's active neighborhoods."""

    def __init__(self, neighborhoods: List[Neighborhood]):
        # Sorted so index position order matches the id tie-break order
        self.neighborhoods = sorted(neighborhoods, key=lambda n: n.id)
        self.ids = [n.id for n in self.neighborhoods]
        geometries = [parse_geometry(n) for n in self.neighborhoods]

        if geometries:
            min_y = min(g.bounds[1] for g in geometries)
            max_y = max(g.bounds[3] for g in geometries)
            self.x_scale = math.cos(math.radians((min_y + max_y) / 2))
        else:
            self.x_scale = 1.0

        self.geometries = [self._project(g) for g in geometries]
        self.tree = STRtree(self.geometries) if self.geometries else None
        self.built_at = time.monotonic()

    def _project(self, geometry):
        return affinity.scale(geometry, xfact=self.x_scale, yfact=1.0, origin=(0, 0))

    def __len__(self) -> int:
        return len(self.ids)

    def containing(self, lat: float, lng: float) -> List[str]:
        if self.tree is None:
            return []
        point = self._project(Point(lng, lat))
        indices = self.tree.query(point, predicate="intersects")
        return sorted(self.ids[int(i)] for i in indices)

    def nearest(self, lat: float, lng: float) -> Optional[str]:
        if self.tree is None:
            return None
        point = self._project(Point(lng, lat))
        indices = self.tree.query_nearest(point, all_matches=True)
        if len(indices) == 0:
            return None
        return min(self.ids[int(i)] for i in indices)

    def resolve(self, lat: float, lng: float) -> Optional[str]:
        contained = self.containing(lat, lng)
        if contained:
            return contained[0]
        return self.nearest(lat, lng)


class NeighborhoodResolver:
    """Resolve points to neighborhoods with cached per-municipality indexes."""

    def __init__(self, db=None, ttl_seconds: Optional[float] = None):
        self.db = db if db is not None else get_db()
        self.ttl_seconds = settings.NEIGHBORHOOD_INDEX_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._indexes: Dict[str, NeighborhoodIndex] = {}
        self._lock = threading.Lock()

    def _load_neighborhoods(self, municipality_id: str) -> List[Neighborhood]:
        query = where_filter(self.db.collection(NEIGHBORHOODS_COLLECTION), "municipality_id", "==", municipality_id)
        query = where_filter(query, "active", "==", True)
        try:
            docs = list(query.stream())
        except (GoogleAPICallError, RetryError) as e:
            logger.error(f"Neighborhood store unavailable for municipality {municipality_id}: {e}")
            raise SpatialIndexUnavailable(
                f"Neighborhood store unavailable for municipality {municipality_id}: {e}"
            ) from e

        neighborhoods = []
        for doc in docs:
            data = doc.to_dict()
            try:
                neighborhoods.append(Neighborhood(
                    id=doc.id,
                    municipality_id=data.get("municipality_id", municipality_id),
                    name=data.get("name"),
                    geometry=data.get("geometry") or {},
                    active=bool(data.get("active", True)),
                ))
            except ValidationError as e:
                raise MalformedGeometry(doc.id, f"unreadable neighborhood document ({e.error_count()} errors)") from e
        return neighborhoods

    def get_index(self, municipality_id: str) -> NeighborhoodIndex:
        with self._lock:
            index = self._indexes.get(municipality_id)
            if index is not None and time.monotonic() - index.built_at < self.ttl_seconds:
                return index

        try:
            index = NeighborhoodIndex(self._load_neighborhoods(municipality_id))
        except MalformedGeometry as e:
            logger.error(f"Cannot build neighborhood index for municipality {municipality_id}: {e.message}")
            raise

        with self._lock:
            self._indexes[municipality_id] = index
        logger.info(f"Built neighborhood index for municipality {municipality_id} ({len(index)} active)")
        return index

    def invalidate(self, municipality_id: Optional[str] = None) -> None:
        """Drop cached indexes (all of them when municipality_id is None)."""
        with self._lock:
            if municipality_id is None:
                self._indexes.clear()
            else:
                self._indexes.pop(municipality_id, None)

    def resolve(self, municipality_id: str, point: Tuple[float, float]) -> Optional[str]:
        """
        Return the containing (or nearest) active neighborhood id for a (lat, lng) point.

        Raises:
            SpatialIndexUnavailable: neighborhood store could not be read (retryable)
            MalformedGeometry: a stored polygon is invalid
        """
        lat, lng = point
        index = self.get_index(municipality_id)
        if len(index) == 0:
            logger.info(f"Municipality {municipality_id} has no active neighborhoods")
            return None

        neighborhood_id = index.resolve(lat, lng)
        logger.debug(f"Resolved ({lat}, {lng}) in {municipality_id} to neighborhood {neighborhood_id}")
        return neighborhood_id

    def list_active(self, municipality_id: str) -> List[Neighborhood]:
        return list(self.get_index(municipality_id).neighborhoods)


# Global service instance (singleton pattern)
_neighborhood_resolver = None


def get_neighborhood_resolver() -> NeighborhoodResolver:
    """
    Get or create NeighborhoodResolver singleton instance.

    Returns:
        NeighborhoodResolver: The global resolver instance
    """
    global _neighborhood_resolver
    if _neighborhood_resolver is None:
        _neighborhood_resolver = NeighborhoodResolver()
    return _neighborhood_resolver
