"""
Incident service - creation, voting and ranked reads.

Flow:
- create_incident: validate location -> geohash -> neighborhood lookup ->
  persist with zero vote stats and score 0
- cast_vote / remove_vote: one transaction that reads the incident and its
  full vote set, mutates the ledger, rebuilds VoteStats from the resulting
  vote set, rescores, and writes vote row + stats + score together
- ranked_feed / nearby: ordered by importance_score desc, created_at desc

DESIGN NOTE:
- vote_stats and importance_score are caches derived from the vote ledger;
  recompute_incident() rebuilds them from scratch at any time
- Every vote mutation writes the incident document, so two mutations on the
  same incident always conflict and one retries; different incidents never do
- Stored scores are evaluated at the time of the last mutation; run the
  recompute job periodically to refresh decay for idle incidents
"""

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError

from app.config.firebase import get_db
from app.core.exceptions import NotFound
from app.core.settings import settings
from app.models.incident import Incident, IncidentFilters, IncidentPage, Location, ScoreWeights
from app.models.vote import Vote, VoteStats, VoteSummary, VoteValue
from app.services.importance_scoring import (
    calculate_importance_score,
    recalculate_vote_stats,
    resolve_score_weights,
)
from app.services.neighborhood_resolver import NeighborhoodResolver, get_neighborhood_resolver
from app.services.vote_ledger import VoteLedger, apply_removal, apply_upsert
from app.utils.firestore_helpers import (
    ASCENDING,
    DESCENDING,
    DOCUMENT_ID,
    count_documents,
    run_in_transaction,
    utc_now,
    validate_document_id,
    where_filter,
)
from app.utils.geo import (
    bounding_box,
    distance_meters,
    encode_geohash,
    validate_coordinates,
)

logger = logging.getLogger(__name__)

INCIDENTS_COLLECTION = "incidents"
MUNICIPALITIES_COLLECTION = "municipalities"
USERS_COLLECTION = "users"

LocationInput = Union[Location, Tuple[float, float], Dict[str, float]]


def _coerce_point(location: LocationInput):
    """Accept a Location, a (lat, lng) pair or a {"lat", "lng"} mapping and validate it."""
    if isinstance(location, Location):
        lat, lng = location.lat, location.lng
    elif isinstance(location, dict):
        lat, lng = location.get("lat"), location.get("lng")
    else:
        lat, lng = location
    return validate_coordinates(lat, lng)


def rank_key(incident: Incident):
    """Sort key: importance_score desc, created_at desc (newer first), then id."""
    return (-incident.importance_score, -incident.created_at.timestamp(), incident.id)


def rank_incidents(incidents: List[Incident]) -> List[Incident]:
    return sorted(incidents, key=rank_key)


class IncidentService:
    """Orchestrates geolocation, the vote ledger and scoring for incidents."""

    def __init__(
        self,
        db=None,
        resolver: Optional[NeighborhoodResolver] = None,
        ledger: Optional[VoteLedger] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db if db is not None else get_db()
        self.resolver = resolver if resolver is not None else (
            NeighborhoodResolver(db=self.db) if db is not None else get_neighborhood_resolver()
        )
        self.ledger = ledger if ledger is not None else VoteLedger(db=self.db, clock=clock)
        self.clock = clock

    def _incident_ref(self, incident_id: str):
        return self.db.collection(INCIDENTS_COLLECTION).document(validate_document_id(incident_id, "incident_id"))

    # ------------------------------------------------------------------
    # Collaborator lookups
    # ------------------------------------------------------------------

    def get_score_weights(self, municipality_id: str) -> ScoreWeights:
        """Municipality weights, falling back to the configured defaults."""
        doc = self.db.collection(MUNICIPALITIES_COLLECTION).document(municipality_id).get()
        if not doc.exists:
            logger.debug(f"Municipality {municipality_id} has no settings document, using default weights")
            return ScoreWeights.defaults()
        return resolve_score_weights((doc.to_dict() or {}).get("settings"))

    def get_voter_neighborhood(self, user_id: str) -> Optional[str]:
        """The voter's current neighborhood, read once per vote."""
        doc = self.db.collection(USERS_COLLECTION).document(validate_document_id(user_id, "user_id")).get()
        if not doc.exists:
            return None
        return (doc.to_dict() or {}).get("neighborhood_id")

    # ------------------------------------------------------------------
    # Incident creation and reads
    # ------------------------------------------------------------------

    def create_incident(
        self,
        municipality_id: str,
        category_id: str,
        title: str,
        description: str,
        location: LocationInput,
        media: Optional[List[str]] = None,
        created_by_user_id: Optional[str] = None,
    ) -> Incident:
        """
        Create a new incident.

        Args:
            municipality_id: Owning municipality
            category_id: Incident category
            title: Short title
            description: Free text
            location: Where the incident is
            media: Optional list of media URLs
            created_by_user_id: Reporter, if known

        Returns:
            The stored incident (vote stats zero, score 0)

        Raises:
            InvalidLocation: bad coordinates; nothing is written
            SpatialIndexUnavailable: neighborhood store unreachable (retryable)
            MalformedGeometry: a neighborhood polygon is invalid
        """
        point = _coerce_point(location)
        geohash = encode_geohash(point.lat, point.lng, settings.GEOHASH_PRECISION)
        neighborhood_id = self.resolver.resolve(municipality_id, point)

        now = self.clock()
        doc_ref = self.db.collection(INCIDENTS_COLLECTION).document()
        incident = Incident(
            id=doc_ref.id,
            municipality_id=municipality_id,
            category_id=category_id,
            title=title,
            description=description,
            location=Location(lat=point.lat, lng=point.lng),
            geohash=geohash,
            neighborhood_id=neighborhood_id,
            status="OPEN",
            created_by_user_id=created_by_user_id,
            media=list(media or []),
            vote_stats=VoteStats.zero(),
            importance_score=0.0,
            created_at=now,
            updated_at=now,
        )

        try:
            doc_ref.set(incident.to_document())
        except Exception as e:
            logger.error(f"Failed to save incident to Firestore: {e}", exc_info=True)
            raise

        logger.info(
            f"Incident created: {incident.id} municipality={municipality_id} "
            f"geohash={geohash} neighborhood={neighborhood_id}"
        )
        return incident

    def get_incident(self, incident_id: str) -> Incident:
        doc = self._incident_ref(incident_id).get()
        if not doc.exists:
            raise NotFound("Incident", incident_id)
        return Incident.from_document(doc.id, doc.to_dict())

    # ------------------------------------------------------------------
    # Vote mutations
    # ------------------------------------------------------------------

    def _write_ranking(self, transaction, incident_ref, data: Dict, votes: List[Vote], weights: ScoreWeights) -> Incident:
        """Rebuild stats and score from `votes` and stage the incident update."""
        stats = recalculate_vote_stats(votes)
        now = self.clock()
        incident = Incident.from_document(incident_ref.id, data)
        score = calculate_importance_score(stats, incident.neighborhood_id, incident.created_at, weights, now)

        transaction.update(incident_ref, {
            "vote_stats": stats.model_dump(),
            "importance_score": score,
            "updated_at": now,
        })
        return incident.model_copy(update={"vote_stats": stats, "importance_score": score, "updated_at": now})

    def _read_for_update(self, transaction, incident_ref):
        snapshot = incident_ref.get(transaction=transaction)
        if not snapshot.exists:
            raise NotFound("Incident", incident_ref.id)
        return snapshot.to_dict()

    def cast_vote(self, incident_id: str, user_id: str, value: Union[VoteValue, int]) -> Incident:
        """
        Cast or change a user's vote and rescore the incident.

        The voter's neighborhood is read once here and stored on the vote row
        the first time that user votes on this incident.

        Raises:
            NotFound: the incident does not exist
            InvalidIdentifier: incident or user id cannot address a document
        """
        value = VoteValue(value)
        voter_neighborhood_id = self.get_voter_neighborhood(user_id)
        incident_ref = self._incident_ref(incident_id)

        def _cast(transaction):
            data = self._read_for_update(transaction, incident_ref)
            votes = self.ledger.snapshot(incident_id, transaction=transaction)
            existing = next((vote for vote in votes if vote.user_id == user_id), None)
            weights = self.get_score_weights(data["municipality_id"])

            vote = self.ledger.upsert_vote(
                incident_id,
                user_id,
                value,
                voter_neighborhood_id,
                transaction=transaction,
                municipality_id=data["municipality_id"],
                existing=existing,
            )
            return self._write_ranking(transaction, incident_ref, data, apply_upsert(votes, vote), weights)

        incident = run_in_transaction(self.db, _cast, max_attempts=settings.TRANSACTION_MAX_ATTEMPTS)
        logger.info(
            f"Vote cast on {incident_id} by {user_id}: value={int(value)} "
            f"score={incident.importance_score:.4f} total={incident.vote_stats.total}"
        )
        return incident

    def remove_vote(self, incident_id: str, user_id: str) -> Incident:
        """
        Remove a user's vote and rescore the incident.

        Removing a vote that does not exist is a no-op: nothing is written.

        Raises:
            NotFound: the incident does not exist
            InvalidIdentifier: incident or user id cannot address a document
        """
        incident_ref = self._incident_ref(incident_id)

        def _remove(transaction):
            data = self._read_for_update(transaction, incident_ref)
            votes = self.ledger.snapshot(incident_id, transaction=transaction)
            existing = next((vote for vote in votes if vote.user_id == user_id), None)
            if existing is None:
                return Incident.from_document(incident_id, data)

            weights = self.get_score_weights(data["municipality_id"])
            self.ledger.remove_vote(incident_id, user_id, transaction=transaction, existing=existing)
            return self._write_ranking(transaction, incident_ref, data, apply_removal(votes, user_id), weights)

        incident = run_in_transaction(self.db, _remove, max_attempts=settings.TRANSACTION_MAX_ATTEMPTS)
        logger.info(f"Vote removal on {incident_id} by {user_id}: score={incident.importance_score:.4f}")
        return incident

    def recompute_incident(self, incident_id: str) -> Incident:
        """Rebuild vote stats and score from the ledger (repair path; idempotent)."""
        incident_ref = self._incident_ref(incident_id)

        def _recompute(transaction):
            data = self._read_for_update(transaction, incident_ref)
            votes = self.ledger.snapshot(incident_id, transaction=transaction)
            weights = self.get_score_weights(data["municipality_id"])
            return self._write_ranking(transaction, incident_ref, data, votes, weights)

        return run_in_transaction(self.db, _recompute, max_attempts=settings.TRANSACTION_MAX_ATTEMPTS)

    def recompute_municipality(self, municipality_id: str) -> int:
        """
        Recompute every incident of a municipality.

        Returns:
            Number of incidents recomputed
        """
        query = where_filter(self.db.collection(INCIDENTS_COLLECTION), "municipality_id", "==", municipality_id)
        incident_ids = [doc.id for doc in query.stream()]
        for incident_id in incident_ids:
            self.recompute_incident(incident_id)
        logger.info(f"Recomputed {len(incident_ids)} incidents for municipality {municipality_id}")
        return len(incident_ids)

    def get_vote_summary(self, incident_id: str, user_id: Optional[str] = None) -> VoteSummary:
        incident = self.get_incident(incident_id)
        user_vote = None
        if user_id:
            vote = self.ledger.get_vote(incident_id, user_id)
            user_vote = vote.value if vote else None
        stats = incident.vote_stats
        return VoteSummary(
            incident_id=incident_id,
            total=stats.total,
            upvotes=stats.upvotes,
            downvotes=stats.downvotes,
            by_neighborhood=stats.by_neighborhood,
            user_vote=user_vote,
        )

    # ------------------------------------------------------------------
    # Ranked reads
    # ------------------------------------------------------------------

    def _load(self, query) -> List[Incident]:
        incidents = []
        for doc in query.stream():
            try:
                incidents.append(Incident.from_document(doc.id, doc.to_dict()))
            except (KeyError, ValidationError) as e:
                logger.warning(f"Skipping malformed incident document {doc.id}: {e}")
        return incidents

    def ranked_feed(self, municipality_id: str, filters: Optional[IncidentFilters] = None) -> IncidentPage:
        """
        Incidents of a municipality ordered by importance_score desc, created_at desc.

        Ordering and paging run in the store (composite index on
        municipality_id, importance_score desc, created_at desc, __name__;
        one per equality filter combination). Documents the model cannot
        read are skipped from the page but still counted in `total`.
        """
        filters = filters or IncidentFilters()
        query = where_filter(self.db.collection(INCIDENTS_COLLECTION), "municipality_id", "==", municipality_id)
        if filters.category_id:
            query = where_filter(query, "category_id", "==", filters.category_id)
        if filters.status:
            query = where_filter(query, "status", "==", filters.status)
        if filters.neighborhood_id:
            query = where_filter(query, "neighborhood_id", "==", filters.neighborhood_id)

        query = query.order_by("importance_score", direction=DESCENDING)
        query = query.order_by("created_at", direction=DESCENDING)
        query = query.order_by(DOCUMENT_ID, direction=ASCENDING)

        total = count_documents(query)
        start = (filters.page - 1) * filters.page_size
        items = self._load(query.offset(start).limit(filters.page_size))
        return IncidentPage(
            items=items,
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            has_more=total > filters.page * filters.page_size,
        )

    def nearby(
        self,
        municipality_id: str,
        center: LocationInput,
        radius_meters: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> List[Incident]:
        """
        Ranked incidents within `radius_meters` of `center`.

        Bounding-box pre-filter (latitude range in the query, longitude in
        process), then exact Haversine distance, then ranked ordering.
        """
        point = _coerce_point(center)
        radius_meters = settings.NEARBY_DEFAULT_RADIUS_METERS if radius_meters is None else radius_meters
        limit = settings.NEARBY_MAX_RESULTS if limit is None else limit
        if radius_meters <= 0:
            raise ValueError("radius_meters must be positive")

        box = bounding_box(point, radius_meters)
        query = where_filter(self.db.collection(INCIDENTS_COLLECTION), "municipality_id", "==", municipality_id)
        query = where_filter(query, "latitude", ">=", box.south)
        query = where_filter(query, "latitude", "<=", box.north)

        candidates = [
            incident for incident in self._load(query)
            if box.contains(incident.location.lat, incident.location.lng)
        ]
        within = [
            incident for incident in candidates
            if distance_meters(point, (incident.location.lat, incident.location.lng)) <= radius_meters
        ]
        logger.debug(
            f"Nearby ({point.lat}, {point.lng}) r={radius_meters}m: "
            f"{len(candidates)} in box, {len(within)} within radius"
        )
        return rank_incidents(within)[:limit]


# Global service instance (singleton pattern)
_incident_service = None


def get_incident_service() -> IncidentService:
    """
    Get or create IncidentService singleton instance.

    Returns:
        IncidentService: The global incident service instance
    """
    global _incident_service
    if _incident_service is None:
        _incident_service = IncidentService()
    return _incident_service
