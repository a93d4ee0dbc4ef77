"""
Vote Tally - RivalPicks

Turns the resolver votes cast on a bet into a resolution proposal.

BINARY / MULTIPLE_CHOICE: an outcome is accepted when it has strictly more
votes than every other outcome. Ties stay unresolved and are reported as
TallyState.TIED.

PREDICTION: every resolver names the participants they consider winners.
Under ConsensusRule.UNANIMOUS a participant wins only if every resolver who
voted named them; under ConsensusRule.MAJORITY more than half must have.

Unless ``allow_partial`` is set, all assigned resolvers must have voted, or
at least ``config.quorum`` of them when a quorum is configured.
"""

from collections import Counter
from typing import Iterable, List

from resolution.exceptions import IncompleteVotingError
from resolution.models import (
    Bet, BetType, ConsensusRule, Participation, ParticipationStatus,
    ResolutionConfig, ResolutionVote, TallyResult, TallyState,
)


def compute_tally(
    bet: Bet,
    votes: Iterable[ResolutionVote],
    participations: Iterable[Participation] = (),
    config: ResolutionConfig = None,
    allow_partial: bool = False,
) -> TallyResult:
    """
    Count the votes on a bet.

    Raises:
        IncompleteVotingError: resolvers are still pending and neither
            ``allow_partial`` nor a reached quorum permits an early result
    """
    config = config or ResolutionConfig()
    resolvers = set(bet.resolver_ids)

    # Only assigned resolvers count
    counted = [vote for vote in votes if vote.resolver_id in resolvers]
    pending = frozenset(resolvers - {vote.resolver_id for vote in counted})

    if pending and not allow_partial:
        if config.quorum is None or len(counted) < config.quorum:
            raise IncompleteVotingError(pending)

    if not counted:
        return TallyResult(accepted=False, state=TallyState.NO_VOTES, pending_resolvers=pending)

    if bet.bet_type == BetType.PREDICTION:
        return _tally_prediction(counted, participations, config.prediction_rule, pending)
    return _tally_outcome(bet, counted, pending)


def _tally_outcome(bet: Bet, votes: List[ResolutionVote], pending: frozenset) -> TallyResult:
    counts = Counter(vote.outcome for vote in votes)
    vote_counts = {option: counts.get(option, 0) for option in bet.options}

    top = max(counts.values())
    leaders = [outcome for outcome, count in counts.items() if count == top]
    if len(leaders) > 1:
        return TallyResult(
            accepted=False,
            state=TallyState.TIED,
            pending_resolvers=pending,
            vote_counts=vote_counts,
        )

    return TallyResult(
        accepted=True,
        state=TallyState.ACCEPTED,
        outcome=leaders[0],
        pending_resolvers=pending,
        vote_counts=vote_counts,
    )


def _tally_prediction(
    votes: List[ResolutionVote],
    participations: Iterable[Participation],
    rule: ConsensusRule,
    pending: frozenset,
) -> TallyResult:
    candidates = {
        p.user_id for p in participations
        if p.status != ParticipationStatus.REFUNDED
    }
    counts = Counter(
        winner_id
        for vote in votes
        for winner_id in set(vote.winner_ids)
        if winner_id in candidates
    )

    voters = len(votes)
    if rule == ConsensusRule.UNANIMOUS:
        winners = {user_id for user_id, count in counts.items() if count == voters}
    else:
        winners = {user_id for user_id, count in counts.items() if count * 2 > voters}

    return TallyResult(
        accepted=True,
        state=TallyState.ACCEPTED,
        winners=frozenset(winners),
        pending_resolvers=pending,
        vote_counts={user_id: counts.get(user_id, 0) for user_id in sorted(candidates)},
    )
