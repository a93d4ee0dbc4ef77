"""Social stake confirmation after resolution."""

import threading

import pytest

from resolution import (
    BetType, DuplicateConfirmationError, FulfillmentNotRequiredError, FulfillmentStatus,
    InvalidStateTransitionError, NotAWinnerError, StakeType, compute_fulfillment_status,
)
from resolution.events import BetFulfillmentSubmittedEvent, LoserFulfillmentClaimedEvent


@pytest.fixture
def social_bet(coordinator, make_bet):
    """Resolved social bet: alice and bob won, carol lost."""
    bet = make_bet(
        stake_type=StakeType.SOCIAL,
        stake_amount=None,
        social_stake_description="Loser buys pizza",
        resolver_ids=["judge"],
    )
    coordinator.place_bet(bet.bet_id, "alice", chosen_option="YES")
    coordinator.place_bet(bet.bet_id, "bob", chosen_option="YES")
    coordinator.place_bet(bet.bet_id, "carol", chosen_option="NO")
    coordinator.close_bet(bet.bet_id)
    coordinator.submit_vote(bet.bet_id, "judge", outcome="YES")
    return bet


class TestComputeFulfillmentStatus:

    @pytest.mark.parametrize("winners,confirmed,expected", [
        (2, 0, FulfillmentStatus.PENDING),
        (2, 1, FulfillmentStatus.PARTIALLY_FULFILLED),
        (2, 2, FulfillmentStatus.FULFILLED),
        (0, 0, FulfillmentStatus.FULFILLED),
    ])
    def test_status_from_counts(self, winners, confirmed, expected):
        assert compute_fulfillment_status(winners, confirmed) == expected


class TestConfirmFulfillment:

    def test_resolved_social_bet_starts_pending(self, coordinator, social_bet):
        details = coordinator.get_bet_details(social_bet.bet_id)
        assert details["fulfillment_status"] == "PENDING"
        assert sorted(details["winner_ids"]) == ["alice", "bob"]

    def test_confirmations_progress_status(self, coordinator, social_bet, events):
        first = coordinator.confirm_fulfillment(social_bet.bet_id, "alice", notes="Got the pizza")
        second = coordinator.confirm_fulfillment(social_bet.bet_id, "bob")

        assert first == FulfillmentStatus.PARTIALLY_FULFILLED
        assert second == FulfillmentStatus.FULFILLED
        assert coordinator.get_bet_details(social_bet.bet_id)["fulfillment_status"] == "FULFILLED"

        submitted = [e for e in events if isinstance(e, BetFulfillmentSubmittedEvent)]
        assert [e.fulfillment_status for e in submitted] == ["PARTIALLY_FULFILLED", "FULFILLED"]

        with pytest.raises(DuplicateConfirmationError) as exc_info:
            coordinator.confirm_fulfillment(social_bet.bet_id, "alice")
        assert exc_info.value.__cause__ is None
        assert exc_info.value.__suppress_context__

    def test_concurrent_confirmations_record_once(self, coordinator, social_bet):
        barrier = threading.Barrier(2)
        outcomes = []

        def confirm():
            barrier.wait()
            try:
                outcomes.append(coordinator.confirm_fulfillment(social_bet.bet_id, "alice"))
            except DuplicateConfirmationError as e:
                outcomes.append(e)

        threads = [threading.Thread(target=confirm) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=20)

        assert not any(thread.is_alive() for thread in threads)
        assert len(outcomes) == 2
        assert sum(isinstance(o, DuplicateConfirmationError) for o in outcomes) == 1
        assert FulfillmentStatus.PARTIALLY_FULFILLED in outcomes
        assert coordinator.get_fulfillment_details(social_bet.bet_id).confirmation_count == 1

    def test_loser_cannot_confirm(self, coordinator, social_bet):
        with pytest.raises(NotAWinnerError):
            coordinator.confirm_fulfillment(social_bet.bet_id, "carol")

    def test_outsider_cannot_confirm(self, coordinator, social_bet):
        with pytest.raises(NotAWinnerError):
            coordinator.confirm_fulfillment(social_bet.bet_id, "mallory")

    def test_unresolved_bet_rejects_confirmation(self, coordinator, make_bet):
        bet = make_bet(stake_type=StakeType.SOCIAL, stake_amount=None, social_stake_description="Coffee")
        coordinator.place_bet(bet.bet_id, "alice", chosen_option="YES")

        with pytest.raises(InvalidStateTransitionError):
            coordinator.confirm_fulfillment(bet.bet_id, "alice")

    def test_credit_bet_needs_no_confirmation(self, coordinator, make_bet, funded):
        bet = make_bet(resolver_ids=["judge"])
        coordinator.place_bet(bet.bet_id, "alice", chosen_option="YES")
        coordinator.close_bet(bet.bet_id)
        coordinator.submit_vote(bet.bet_id, "judge", outcome="YES")

        assert coordinator.get_bet_details(bet.bet_id)["fulfillment_status"] == "FULFILLED"
        with pytest.raises(FulfillmentNotRequiredError):
            coordinator.confirm_fulfillment(bet.bet_id, "alice")

    def test_status_is_unset_before_resolution(self, coordinator, make_bet):
        bet = make_bet(stake_type=StakeType.SOCIAL, stake_amount=None, social_stake_description="Coffee")
        assert coordinator.get_bet_details(bet.bet_id)["fulfillment_status"] is None

    def test_social_bet_without_winners_is_fulfilled(self, coordinator, make_bet):
        bet = make_bet(
            bet_type=BetType.MULTIPLE_CHOICE,
            options=["A", "B", "C"],
            stake_type=StakeType.SOCIAL,
            stake_amount=None,
            social_stake_description="Dinner",
            resolver_ids=["judge"],
        )
        coordinator.place_bet(bet.bet_id, "alice", chosen_option="A")
        coordinator.close_bet(bet.bet_id)
        coordinator.submit_vote(bet.bet_id, "judge", outcome="C")

        assert coordinator.get_bet_details(bet.bet_id)["fulfillment_status"] == "FULFILLED"


class TestLoserClaim:

    def test_loser_claim_is_recorded(self, coordinator, social_bet, events):
        bet = coordinator.claim_loser_fulfilled(
            social_bet.bet_id, "carol",
            proof_url="https://example.com/receipt.jpg",
            proof_description="Paid at the counter",
        )

        assert bet.loser_claimed_at is not None
        assert bet.loser_proof_url == "https://example.com/receipt.jpg"
        assert coordinator.get_bet_details(social_bet.bet_id)["fulfillment_status"] == "PENDING"
        assert any(isinstance(e, LoserFulfillmentClaimedEvent) for e in events)

    def test_winner_cannot_claim_as_loser(self, coordinator, social_bet):
        with pytest.raises(NotAWinnerError):
            coordinator.claim_loser_fulfilled(social_bet.bet_id, "alice")


class TestFulfillmentDetails:

    def test_details_track_each_winner(self, coordinator, social_bet):
        coordinator.confirm_fulfillment(social_bet.bet_id, "bob")

        details = coordinator.get_fulfillment_details(social_bet.bet_id)

        assert details.status == FulfillmentStatus.PARTIALLY_FULFILLED
        assert details.total_winners == 2
        assert details.total_losers == 1
        assert details.confirmation_count == 1
        assert {w["user_id"]: w["has_confirmed"] for w in details.winners} == {"alice": False, "bob": True}
        assert details.losers == ["carol"]
        assert details.all_winners_confirmed_at is None

    def test_details_when_everyone_confirmed(self, coordinator, social_bet):
        coordinator.confirm_fulfillment(social_bet.bet_id, "alice")
        coordinator.confirm_fulfillment(social_bet.bet_id, "bob")

        details = coordinator.get_fulfillment_details(social_bet.bet_id).to_dict()

        assert details["status"] == "FULFILLED"
        assert details["all_winners_confirmed_at"] is not None
        assert details["social_stake_description"] == "Loser buys pizza"
