"""Errors raised by the resolution workflow.

All of them are recoverable conditions for the caller to translate into a
user-facing response.
"""

from typing import Iterable


class ResolutionError(Exception):
    """Base class for bet resolution errors."""


class BetNotFoundError(ResolutionError):
    def __init__(self, bet_id: str):
        super().__init__(f"Bet not found: {bet_id}")
        self.bet_id = bet_id


class InvalidBetError(ResolutionError):
    """Bet definition is inconsistent (options, stake, resolvers)."""


class InvalidStateTransitionError(ResolutionError):
    """Operation is not allowed in the bet's current status."""


class UnauthorizedResolverError(ResolutionError):
    """User is not among the bet's assigned resolvers."""


class DuplicateVoteError(ResolutionError):
    """Resolver already voted on this bet."""


class InvalidVoteError(ResolutionError):
    """Vote selection does not fit the bet."""


class IncompleteVotingError(ResolutionError):
    """Not all resolvers have voted yet. Informational, retry later."""

    def __init__(self, pending_resolvers: Iterable[str]):
        self.pending_resolvers = frozenset(pending_resolvers)
        super().__init__(
            f"Waiting on {len(self.pending_resolvers)} resolver(s): "
            f"{', '.join(sorted(self.pending_resolvers))}"
        )


class DuplicateParticipationError(ResolutionError):
    """User already placed a bet."""


class NotAWinnerError(ResolutionError):
    """User is not a winner (or not a loser, for loser claims) of the bet."""


class FulfillmentNotRequiredError(ResolutionError):
    """Bet does not track manual stake fulfillment."""


class DuplicateConfirmationError(ResolutionError):
    """Winner already confirmed fulfillment."""


class InvalidAmountError(ResolutionError):
    """Ledger amounts must be positive."""


class InsufficientBalanceError(ResolutionError):
    """A debit would drive the balance negative."""

    def __init__(self, user_id: str, balance, amount):
        super().__init__(
            f"Insufficient balance for {user_id}: balance {balance}, required {amount}"
        )
        self.user_id = user_id
        self.balance = balance
        self.amount = amount
