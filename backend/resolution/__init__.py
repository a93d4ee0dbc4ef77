"""
Bet Resolution - RivalPicks

Resolver voting, consensus resolution, stake settlement and social
stake fulfillment for friend-group bets.

State lives in SQLite; credit stakes move through an append-only ledger.
"""

from resolution.models import (
    Bet,
    BetType,
    BetStatus,
    StakeType,
    Participation,
    ParticipationStatus,
    ResolutionVote,
    Fulfillment,
    FulfillmentStatus,
    Transaction,
    TransactionType,
    ConsensusRule,
    TallyResult,
    TallyState,
    ResolutionConfig,
)

from resolution.exceptions import (
    ResolutionError,
    BetNotFoundError,
    InvalidBetError,
    InvalidStateTransitionError,
    UnauthorizedResolverError,
    DuplicateVoteError,
    InvalidVoteError,
    IncompleteVotingError,
    DuplicateParticipationError,
    NotAWinnerError,
    FulfillmentNotRequiredError,
    DuplicateConfirmationError,
    InvalidAmountError,
    InsufficientBalanceError,
)

from resolution.coordinator import (
    ResolutionCoordinator,
    build_coordinator,
)

from resolution.events import EventDispatcher, BetEvent
from resolution.fulfillment import FulfillmentTracker, compute_fulfillment_status
from resolution.ledger import LedgerWriter
from resolution.tally import compute_tally

from resolution import database

__all__ = [
    # Models
    "Bet",
    "BetType",
    "BetStatus",
    "StakeType",
    "Participation",
    "ParticipationStatus",
    "ResolutionVote",
    "Fulfillment",
    "FulfillmentStatus",
    "Transaction",
    "TransactionType",
    "ConsensusRule",
    "TallyResult",
    "TallyState",
    "ResolutionConfig",

    # Errors
    "ResolutionError",
    "BetNotFoundError",
    "InvalidBetError",
    "InvalidStateTransitionError",
    "UnauthorizedResolverError",
    "DuplicateVoteError",
    "InvalidVoteError",
    "IncompleteVotingError",
    "DuplicateParticipationError",
    "NotAWinnerError",
    "FulfillmentNotRequiredError",
    "DuplicateConfirmationError",
    "InvalidAmountError",
    "InsufficientBalanceError",

    # Components
    "ResolutionCoordinator",
    "build_coordinator",
    "EventDispatcher",
    "BetEvent",
    "FulfillmentTracker",
    "compute_fulfillment_status",
    "LedgerWriter",
    "compute_tally",
]
