"""Vote counting for option and prediction bets."""

from datetime import timedelta

import pytest

from resolution import (
    Bet, BetType, ConsensusRule, IncompleteVotingError, Participation,
    ParticipationStatus, ResolutionConfig, ResolutionVote, StakeType, TallyState,
    compute_tally,
)
from resolution.models import to_money, utc_now


def _bet(bet_type=BetType.BINARY, options=None, resolvers=("r1", "r2")):
    deadline = utc_now() + timedelta(days=1)
    return Bet(
        bet_id="bet_1",
        title="test",
        creator_id="alice",
        bet_type=bet_type,
        stake_type=StakeType.CREDIT,
        resolver_ids=list(resolvers),
        deadline=deadline,
        resolution_deadline=deadline + timedelta(days=3),
        options=options if options is not None else (["YES", "NO"] if bet_type == BetType.BINARY else []),
        stake_amount=to_money(10),
    )


def _vote(resolver_id, outcome=None, winners=()):
    return ResolutionVote(
        vote_id=f"vote_{resolver_id}",
        bet_id="bet_1",
        resolver_id=resolver_id,
        outcome=outcome,
        winner_ids=list(winners),
    )


def _participation(user_id, status=ParticipationStatus.ACTIVE):
    return Participation(
        participation_id=f"part_{user_id}",
        bet_id="bet_1",
        user_id=user_id,
        stake_amount=to_money(10),
        predicted_value="42",
        status=status,
    )


class TestOutcomeTally:

    def test_majority_outcome_is_accepted(self):
        bet = _bet(resolvers=("r1", "r2", "r3"))
        votes = [_vote("r1", "YES"), _vote("r2", "YES"), _vote("r3", "NO")]

        result = compute_tally(bet, votes)

        assert result.accepted
        assert result.state == TallyState.ACCEPTED
        assert result.outcome == "YES"
        assert result.vote_counts == {"YES": 2, "NO": 1}

    def test_tie_is_not_accepted(self):
        bet = _bet()
        result = compute_tally(bet, [_vote("r1", "YES"), _vote("r2", "NO")])

        assert not result.accepted
        assert result.state == TallyState.TIED
        assert result.outcome is None

    def test_vote_counts_include_options_without_votes(self):
        bet = _bet(BetType.MULTIPLE_CHOICE, options=["A", "B", "C"], resolvers=("r1",))
        result = compute_tally(bet, [_vote("r1", "B")])
        assert result.vote_counts == {"A": 0, "B": 1, "C": 0}

    def test_pending_resolvers_raise(self):
        bet = _bet(resolvers=("r1", "r2", "r3"))

        with pytest.raises(IncompleteVotingError) as exc_info:
            compute_tally(bet, [_vote("r1", "YES")])

        assert exc_info.value.pending_resolvers == frozenset({"r2", "r3"})

    def test_votes_from_non_resolvers_are_ignored(self):
        bet = _bet(resolvers=("r1",))
        with pytest.raises(IncompleteVotingError):
            compute_tally(bet, [_vote("intruder", "YES")])

    def test_partial_tally_with_no_votes(self):
        result = compute_tally(_bet(), [], allow_partial=True)
        assert result.state == TallyState.NO_VOTES
        assert result.pending_resolvers == frozenset({"r1", "r2"})

    def test_partial_tally_counts_cast_votes(self):
        result = compute_tally(_bet(), [_vote("r1", "NO")], allow_partial=True)
        assert result.accepted
        assert result.outcome == "NO"
        assert result.pending_resolvers == frozenset({"r2"})


class TestQuorum:

    def test_quorum_allows_early_acceptance(self):
        bet = _bet(resolvers=("r1", "r2", "r3"))
        config = ResolutionConfig(quorum=2)

        result = compute_tally(bet, [_vote("r1", "YES"), _vote("r2", "YES")], config=config)

        assert result.accepted
        assert result.outcome == "YES"
        assert result.pending_resolvers == frozenset({"r3"})

    def test_quorum_not_reached_raises(self):
        bet = _bet(resolvers=("r1", "r2", "r3"))
        with pytest.raises(IncompleteVotingError):
            compute_tally(bet, [_vote("r1", "YES")], config=ResolutionConfig(quorum=2))


class TestPredictionTally:

    def test_unanimous_keeps_only_common_winners(self):
        bet = _bet(BetType.PREDICTION)
        participations = [_participation("A"), _participation("B")]
        votes = [_vote("r1", winners=["A"]), _vote("r2", winners=["A", "B"])]

        result = compute_tally(bet, votes, participations)

        assert result.accepted
        assert result.winners == frozenset({"A"})
        assert result.vote_counts == {"A": 2, "B": 1}

    def test_majority_rule(self):
        bet = _bet(BetType.PREDICTION, resolvers=("r1", "r2", "r3"))
        participations = [_participation("A"), _participation("B"), _participation("C")]
        votes = [
            _vote("r1", winners=["A"]),
            _vote("r2", winners=["A", "B"]),
            _vote("r3", winners=["B", "C"]),
        ]

        majority = compute_tally(bet, votes, participations, ResolutionConfig(prediction_rule=ConsensusRule.MAJORITY))
        unanimous = compute_tally(bet, votes, participations, ResolutionConfig(prediction_rule=ConsensusRule.UNANIMOUS))

        assert majority.winners == frozenset({"A", "B"})
        assert unanimous.winners == frozenset()

    def test_empty_winner_set_is_accepted(self):
        bet = _bet(BetType.PREDICTION, resolvers=("r1",))
        result = compute_tally(bet, [_vote("r1", winners=[])], [_participation("A")])

        assert result.accepted
        assert result.winners == frozenset()

    def test_refunded_participants_cannot_win(self):
        bet = _bet(BetType.PREDICTION, resolvers=("r1",))
        participations = [_participation("A"), _participation("B", ParticipationStatus.REFUNDED)]

        result = compute_tally(bet, [_vote("r1", winners=["A", "B"])], participations)

        assert result.winners == frozenset({"A"})
