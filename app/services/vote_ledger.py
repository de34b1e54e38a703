"""
Vote Ledger - durable one-vote-per-(incident, user) record keeping.

DESIGN PRINCIPLES:
- The ledger is the source of truth; VoteStats on the incident is a cache
- Vote document id is derived from (incident_id, user_id), so duplicates are impossible
- Re-voting overwrites the value in place; the neighborhood snapshot taken at
  first cast is never re-derived
- No history is kept; removal deletes the row

All methods accept an optional Firestore transaction. Inside a transaction
every read must happen before the first write, so callers that need the
post-mutation vote set read `snapshot()` first and then derive the result
with `apply_upsert` / `apply_removal`.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from app.config.firebase import get_db
from app.models.vote import Vote, VoteValue
from app.utils.firestore_helpers import to_utc_datetime, utc_now, validate_document_id, where_filter

logger = logging.getLogger(__name__)

VOTES_COLLECTION = "votes"


def vote_document_id(incident_id: str, user_id: str) -> str:
    """Deterministic vote id. Raises InvalidIdentifier for ids Firestore cannot address."""
    validate_document_id(incident_id, "incident_id")
    validate_document_id(user_id, "user_id")
    return validate_document_id(f"{incident_id}__{user_id}", "vote id")


def _vote_from_document(doc_id: str, data: dict) -> Vote:
    return Vote(
        id=doc_id,
        incident_id=data["incident_id"],
        user_id=data["user_id"],
        municipality_id=data.get("municipality_id"),
        neighborhood_id=data.get("neighborhood_id"),
        value=VoteValue(int(data["value"])),
        created_at=to_utc_datetime(data.get("created_at")),
        updated_at=to_utc_datetime(data.get("updated_at")),
    )


def apply_upsert(votes: List[Vote], vote: Vote) -> List[Vote]:
    """Vote set after `vote` has been written (replacing any row from the same user)."""
    return [existing for existing in votes if existing.user_id != vote.user_id] + [vote]


def apply_removal(votes: List[Vote], user_id: str) -> List[Vote]:
    return [existing for existing in votes if existing.user_id != user_id]


class VoteLedger:
    """Service for reading and mutating vote rows."""

    def __init__(self, db=None, clock: Callable[[], datetime] = utc_now):
        self.db = db if db is not None else get_db()
        self.clock = clock

    def _ref(self, incident_id: str, user_id: str):
        return self.db.collection(VOTES_COLLECTION).document(vote_document_id(incident_id, user_id))

    def get_vote(self, incident_id: str, user_id: str, transaction=None) -> Optional[Vote]:
        """Return the user's vote on an incident, or None."""
        doc = self._ref(incident_id, user_id).get(transaction=transaction)
        if not doc.exists:
            return None
        return _vote_from_document(doc.id, doc.to_dict())

    def snapshot(self, incident_id: str, transaction=None) -> List[Vote]:
        """
        Full current vote set for an incident.

        This is the only input stats recomputation may use. Sorted by vote id
        so repeated reads of the same set compare equal.
        """
        query = where_filter(self.db.collection(VOTES_COLLECTION), "incident_id", "==", incident_id)
        votes = [_vote_from_document(doc.id, doc.to_dict()) for doc in query.stream(transaction=transaction)]
        votes.sort(key=lambda vote: vote.id)
        return votes

    def upsert_vote(
        self,
        incident_id: str,
        user_id: str,
        value: VoteValue,
        neighborhood_id: Optional[str],
        transaction=None,
        municipality_id: Optional[str] = None,
        existing: Optional[Vote] = None,
    ) -> Vote:
        """
        Create or overwrite a vote.

        Args:
            incident_id: Incident being voted on
            user_id: Voter
            value: VoteValue.UPVOTE or VoteValue.DOWNVOTE
            neighborhood_id: Voter's neighborhood now; only stored on first cast
            transaction: Optional transaction to write through
            municipality_id: Stored on new rows for per-municipality queries
            existing: The current row if the caller already read it inside the
                transaction; otherwise it is read here

        Returns:
            The vote as it will be stored
        """
        value = VoteValue(value)
        ref = self._ref(incident_id, user_id)
        if existing is None:
            existing = self.get_vote(incident_id, user_id, transaction=transaction)
        now = self.clock()

        if existing is not None:
            vote = existing.model_copy(update={"value": value, "updated_at": now})
            update = {"value": int(value), "updated_at": now}
            if transaction is not None:
                transaction.update(ref, update)
            else:
                ref.update(update)
            logger.info(f"Vote updated: incident={incident_id} user={user_id} value={int(value)}")
            return vote

        vote = Vote(
            id=ref.id,
            incident_id=incident_id,
            user_id=user_id,
            municipality_id=municipality_id,
            neighborhood_id=neighborhood_id,
            value=value,
            created_at=now,
            updated_at=now,
        )
        data = {
            "incident_id": incident_id,
            "user_id": user_id,
            "municipality_id": municipality_id,
            "neighborhood_id": neighborhood_id,
            "value": int(value),
            "created_at": now,
            "updated_at": now,
        }
        if transaction is not None:
            transaction.set(ref, data)
        else:
            ref.set(data)
        logger.info(f"Vote created: incident={incident_id} user={user_id} value={int(value)} neighborhood={neighborhood_id}")
        return vote

    def remove_vote(self, incident_id: str, user_id: str, transaction=None, existing: Optional[Vote] = None) -> bool:
        """
        Delete a vote if present.

        Returns:
            True if a row was deleted, False if there was nothing to remove
        """
        if existing is None:
            existing = self.get_vote(incident_id, user_id, transaction=transaction)
        if existing is None:
            logger.info(f"No vote to remove: incident={incident_id} user={user_id}")
            return False

        ref = self._ref(incident_id, user_id)
        if transaction is not None:
            transaction.delete(ref)
        else:
            ref.delete()
        logger.info(f"Vote removed: incident={incident_id} user={user_id}")
        return True


# Global service instance
_vote_ledger = None


def get_vote_ledger() -> VoteLedger:
    """Get or create VoteLedger singleton."""
    global _vote_ledger
    if _vote_ledger is None:
        _vote_ledger = VoteLedger()
    return _vote_ledger
