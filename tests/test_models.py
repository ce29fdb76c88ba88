import pytest

from greenblocks.errors import InvalidState
from greenblocks.models import (CLAIM_NON_TERMINAL, CLAIM_TRANSITIONS, PROJECT_TRANSITIONS, ClaimStatus,
                                ListingStatus, ProjectStatus, check_transition, derive_listing_status, values)


@pytest.mark.parametrize("available,listed,expected", [
    (100, 100, ListingStatus.ACTIVE),
    (60, 100, ListingStatus.PARTIAL),
    (1, 100, ListingStatus.PARTIAL),
    (0, 100, ListingStatus.SOLD),
])
def test_listing_status_is_function_of_remaining_units(available, listed, expected):
    assert derive_listing_status(available, listed) is expected


def test_cancelled_listing_status_is_frozen():
    assert derive_listing_status(0, 100, "cancelled") is ListingStatus.CANCELLED
    assert derive_listing_status(100, 100, ListingStatus.CANCELLED) is ListingStatus.CANCELLED


def test_claim_terminal_states_have_no_exits():
    assert CLAIM_TRANSITIONS[ClaimStatus.APPROVED] == frozenset()
    assert CLAIM_TRANSITIONS[ClaimStatus.REJECTED] == frozenset()
    assert ClaimStatus.APPROVED not in CLAIM_NON_TERMINAL
    assert ClaimStatus.REJECTED not in CLAIM_NON_TERMINAL


def test_every_non_terminal_claim_state_can_be_rejected():
    for status in CLAIM_NON_TERMINAL:
        assert ClaimStatus.REJECTED in CLAIM_TRANSITIONS[status]


def test_claim_cannot_skip_inspection():
    with pytest.raises(InvalidState) as exc:
        check_transition(CLAIM_TRANSITIONS, "pending", ClaimStatus.APPROVED, "Claim")
    assert exc.value.details["status"] == "pending"


def test_project_rejection_is_final():
    with pytest.raises(InvalidState):
        check_transition(PROJECT_TRANSITIONS, "rejected", ProjectStatus.SUBMITTED, "Project")
    check_transition(PROJECT_TRANSITIONS, "draft", ProjectStatus.SUBMITTED, "Project")


def test_values_are_sorted_strings():
    assert values({ListingStatus.PARTIAL, ListingStatus.ACTIVE}) == ["active", "partial"]
