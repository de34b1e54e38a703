"""
Vote models: ledger rows, the denormalized VoteStats aggregate, and vote request/response bodies.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field


class VoteValue(int, Enum):
    """A citizen's vote. Stored as +1 / -1."""
    UPVOTE = 1
    DOWNVOTE = -1


class NeighborhoodVotes(BaseModel):
    upvotes: int = Field(default=0, ge=0)
    downvotes: int = Field(default=0, ge=0)


class VoteStats(BaseModel):
    """
    Aggregate of all votes for one incident.

    A materialized view: always rebuilt from the full vote set, never
    incrementally patched. Votes cast without a neighborhood count toward
    the global totals only.
    """
    total: int = Field(default=0, ge=0)
    upvotes: int = Field(default=0, ge=0)
    downvotes: int = Field(default=0, ge=0)
    by_neighborhood: Dict[str, NeighborhoodVotes] = Field(default_factory=dict)

    @classmethod
    def zero(cls) -> "VoteStats":
        return cls()

    @property
    def net(self) -> int:
        return self.upvotes - self.downvotes


class Vote(BaseModel):
    """One row of the vote ledger. At most one per (incident_id, user_id)."""
    id: str
    incident_id: str
    user_id: str
    municipality_id: Optional[str] = None
    neighborhood_id: Optional[str] = Field(
        None, description="Voter's neighborhood when the vote was first cast; never re-derived"
    )
    value: VoteValue
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class VoteRequest(BaseModel):
    """Vote request body."""
    value: VoteValue = Field(..., description="1 for upvote, -1 for downvote")

    class Config:
        json_schema_extra = {"example": {"value": 1}}


class VoteSummary(BaseModel):
    """Vote counts for display, plus the caller's own vote when known."""
    incident_id: str
    total: int
    upvotes: int
    downvotes: int
    by_neighborhood: Dict[str, NeighborhoodVotes] = Field(default_factory=dict)
    user_vote: Optional[VoteValue] = None
