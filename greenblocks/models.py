"""Closed status enums and the allowed-transition tables for every entity.

Values are stored in Mongo as their plain string ``.value``.
"""
from enum import Enum
from typing import Dict, FrozenSet

from .errors import InvalidState


class UserRole(str, Enum):
    PROJECT_DEVELOPER = "project_developer"
    CREDIT_BUYER = "credit_buyer"
    REGULATORY_BODY = "regulatory_body"


class ProjectType(str, Enum):
    RENEWABLE_ENERGY = "renewable_energy"
    AFFORESTATION = "afforestation"
    ENERGY_EFFICIENCY = "energy_efficiency"
    WASTE_MANAGEMENT = "waste_management"
    TRANSPORTATION = "transportation"
    INDUSTRIAL = "industrial"


class ProjectStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    ACTIVE = "active"
    COMPLETED = "completed"


class ClaimStatus(str, Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    INSPECTION_SCHEDULED = "inspection_scheduled"
    INSPECTION_COMPLETED = "inspection_completed"
    APPROVED = "approved"
    REJECTED = "rejected"


class InspectionResult(str, Enum):
    NOT_STARTED = "not_started"
    PASSED = "passed"
    FAILED = "failed"
    PARTIAL = "partial"


class ListingStatus(str, Enum):
    ACTIVE = "active"
    PARTIAL = "partial"
    SOLD = "sold"
    CANCELLED = "cancelled"


class OwnershipStatus(str, Enum):
    ACTIVE = "active"
    TRANSFERRED = "transferred"


PROJECT_TRANSITIONS: Dict[ProjectStatus, FrozenSet[ProjectStatus]] = {
    ProjectStatus.DRAFT: frozenset({ProjectStatus.SUBMITTED}),
    ProjectStatus.SUBMITTED: frozenset({ProjectStatus.UNDER_REVIEW, ProjectStatus.APPROVED, ProjectStatus.REJECTED}),
    ProjectStatus.UNDER_REVIEW: frozenset({ProjectStatus.APPROVED, ProjectStatus.REJECTED}),
    ProjectStatus.APPROVED: frozenset({ProjectStatus.ACTIVE, ProjectStatus.COMPLETED}),
    ProjectStatus.ACTIVE: frozenset({ProjectStatus.COMPLETED}),
    ProjectStatus.REJECTED: frozenset(),
    ProjectStatus.COMPLETED: frozenset(),
}

CLAIM_TRANSITIONS: Dict[ClaimStatus, FrozenSet[ClaimStatus]] = {
    ClaimStatus.PENDING: frozenset({ClaimStatus.UNDER_REVIEW, ClaimStatus.INSPECTION_SCHEDULED, ClaimStatus.REJECTED}),
    ClaimStatus.UNDER_REVIEW: frozenset({ClaimStatus.INSPECTION_SCHEDULED, ClaimStatus.REJECTED}),
    ClaimStatus.INSPECTION_SCHEDULED: frozenset({ClaimStatus.INSPECTION_COMPLETED, ClaimStatus.REJECTED}),
    ClaimStatus.INSPECTION_COMPLETED: frozenset({ClaimStatus.APPROVED, ClaimStatus.REJECTED}),
    ClaimStatus.APPROVED: frozenset(),
    ClaimStatus.REJECTED: frozenset(),
}

LISTING_TRANSITIONS: Dict[ListingStatus, FrozenSet[ListingStatus]] = {
    ListingStatus.ACTIVE: frozenset({ListingStatus.PARTIAL, ListingStatus.SOLD, ListingStatus.CANCELLED}),
    ListingStatus.PARTIAL: frozenset({ListingStatus.PARTIAL, ListingStatus.SOLD, ListingStatus.CANCELLED}),
    ListingStatus.SOLD: frozenset(),
    ListingStatus.CANCELLED: frozenset(),
}

PROJECT_DELETABLE = frozenset({ProjectStatus.DRAFT, ProjectStatus.SUBMITTED, ProjectStatus.REJECTED})
PROJECT_EDITABLE = frozenset({ProjectStatus.DRAFT, ProjectStatus.SUBMITTED})

CLAIM_NON_TERMINAL = frozenset(s for s, nxt in CLAIM_TRANSITIONS.items() if nxt)
ISSUABLE_RESULTS = frozenset({InspectionResult.PASSED, InspectionResult.PARTIAL})
COMPLETED_RESULTS = frozenset({InspectionResult.PASSED, InspectionResult.FAILED, InspectionResult.PARTIAL})

LISTING_OPEN = frozenset({ListingStatus.ACTIVE, ListingStatus.PARTIAL})


def values(statuses) -> list:
    """Mongo-ready list of enum values, sorted for stable filters."""
    return sorted(s.value for s in statuses)


def check_transition(table: Dict, current, target, entity: str = "entity") -> None:
    cur, tgt = type(target)(current), target
    if tgt not in table.get(cur, frozenset()):
        raise InvalidState(f"{entity} cannot move from '{cur.value}' to '{tgt.value}'",
                           status=cur.value)


def derive_listing_status(credits_available: int, credits_listed: int, current=ListingStatus.ACTIVE) -> ListingStatus:
    """Listing status is a function of the remaining units; cancelled overrides."""
    if ListingStatus(current) == ListingStatus.CANCELLED:
        return ListingStatus.CANCELLED
    if credits_available <= 0:
        return ListingStatus.SOLD
    if credits_available < credits_listed:
        return ListingStatus.PARTIAL
    return ListingStatus.ACTIVE
