"""
Resolution Data Models - RivalPicks

Data models for bet resolution and stake fulfillment.
Resolvers vote on a closed bet, the winning side is paid from the pool,
and winners of social bets confirm they received their stake.
"""

import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_DOWN
from enum import Enum
from typing import Dict, List, Optional, Any


CENT = Decimal("0.01")


# ==================== ENUMS ====================

class BetType(Enum):
    """What participants pick when they join a bet."""
    BINARY = "BINARY"                    # Two options
    MULTIPLE_CHOICE = "MULTIPLE_CHOICE"  # Two to four options
    PREDICTION = "PREDICTION"            # Free-form predicted value


class BetStatus(Enum):
    """Bet lifecycle status."""
    OPEN = "OPEN"                # Accepting participations
    CLOSED = "CLOSED"            # Betting over, resolvers voting
    RESOLVED = "RESOLVED"        # Outcome decided and stakes settled
    CANCELLED = "CANCELLED"      # Stakes refunded


class StakeType(Enum):
    """How a bet is staked."""
    CREDIT = "CREDIT"    # In-app credits, settled through the ledger
    SOCIAL = "SOCIAL"    # "Loser buys pizza", winners confirm receipt


class FulfillmentStatus(Enum):
    """Whether the winners of a resolved bet have confirmed their stake."""
    PENDING = "PENDING"
    PARTIALLY_FULFILLED = "PARTIALLY_FULFILLED"
    FULFILLED = "FULFILLED"


class ParticipationStatus(Enum):
    ACTIVE = "ACTIVE"
    WON = "WON"
    LOST = "LOST"
    REFUNDED = "REFUNDED"


class TransactionType(Enum):
    """Ledger entry types."""
    CREDIT = "CREDIT"              # Adding credits
    DEBIT = "DEBIT"                # Deducting credits
    TRANSFER_IN = "TRANSFER_IN"    # Receiving from another user
    TRANSFER_OUT = "TRANSFER_OUT"  # Sending to another user

    @property
    def is_increase(self) -> bool:
        return self in (TransactionType.CREDIT, TransactionType.TRANSFER_IN)


class ConsensusRule(Enum):
    """How per-resolver winner sets combine for prediction bets."""
    UNANIMOUS = "UNANIMOUS"    # Every resolver who voted named the participant
    MAJORITY = "MAJORITY"      # Strictly more than half of the voters named them


class TallyState(Enum):
    ACCEPTED = "ACCEPTED"
    TIED = "TIED"
    NO_VOTES = "NO_VOTES"


# Ledger reasons
REASON_BET_PLACED = "BET_PLACED"
REASON_BET_WINNINGS = "BET_WINNINGS"
REASON_BET_NO_WINNERS = "BET_NO_WINNERS"
REASON_BET_CANCELLED = "BET_CANCELLED"
REASON_DEPOSIT = "DEPOSIT"


# ==================== CONFIG ====================

def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ResolutionConfig:
    """Configuration for the resolution workflow."""
    # Voting
    prediction_rule: ConsensusRule = ConsensusRule.UNANIMOUS
    quorum: Optional[int] = None          # Votes that allow resolution before everyone voted
    allow_revote: bool = False            # Resolvers may replace their vote until resolution

    # Timing (in hours)
    resolution_window_hours: int = 72     # Resolution deadline after the betting deadline
    reminder_lead_hours: int = 24         # Remind pending resolvers this long before it

    # Bet shape
    max_options: int = 4

    @classmethod
    def from_env(cls) -> "ResolutionConfig":
        """Build a config from BET_* environment variables."""
        quorum = os.getenv("BET_QUORUM")
        return cls(
            prediction_rule=ConsensusRule(os.getenv("BET_PREDICTION_RULE", "UNANIMOUS").upper()),
            quorum=int(quorum) if quorum else None,
            allow_revote=_env_bool("BET_ALLOW_REVOTE", False),
            resolution_window_hours=int(os.getenv("BET_RESOLUTION_WINDOW_HOURS", "72")),
            reminder_lead_hours=int(os.getenv("BET_REMINDER_LEAD_HOURS", "24")),
        )


# ==================== HELPERS ====================

def generate_id(prefix: str = "") -> str:
    """Generate a unique ID."""
    return f"{prefix}{uuid.uuid4().hex[:12]}"


def generate_correlation_id() -> str:
    """Correlation id shared by all ledger rows of one settlement event."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_money(value: Any) -> Decimal:
    """Quantize an amount to cents."""
    return Decimal(str(value)).quantize(CENT)


def floor_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_DOWN)


# ==================== DATA MODELS ====================

@dataclass
class Bet:
    """A wager with its assigned resolvers."""
    bet_id: str
    title: str
    creator_id: str
    bet_type: BetType
    stake_type: StakeType
    resolver_ids: List[str]
    deadline: datetime
    resolution_deadline: datetime

    options: List[str] = field(default_factory=list)
    stake_amount: Optional[Decimal] = None
    social_stake_description: Optional[str] = None
    max_participants: Optional[int] = None

    status: BetStatus = BetStatus.OPEN
    outcome: Optional[str] = None
    resolution_reason: Optional[str] = None
    settlement_id: Optional[str] = None

    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    closed_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None

    # Optional loser claim on social bets
    loser_claimed_at: Optional[datetime] = None
    loser_proof_url: Optional[str] = None
    loser_proof_description: Optional[str] = None

    deadline_reminder_sent_at: Optional[datetime] = None

    @property
    def requires_fulfillment(self) -> bool:
        """Social stakes are handed over outside the app and need confirmation."""
        return self.stake_type == StakeType.SOCIAL

    def is_resolver(self, user_id: str) -> bool:
        return user_id in self.resolver_ids

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bet_id": self.bet_id,
            "title": self.title,
            "creator_id": self.creator_id,
            "bet_type": self.bet_type.value,
            "stake_type": self.stake_type.value,
            "stake_amount": str(self.stake_amount) if self.stake_amount is not None else None,
            "social_stake_description": self.social_stake_description,
            "options": self.options,
            "resolver_ids": self.resolver_ids,
            "max_participants": self.max_participants,
            "status": self.status.value,
            "outcome": self.outcome,
            "resolution_reason": self.resolution_reason,
            "settlement_id": self.settlement_id,
            "deadline": to_iso(self.deadline),
            "resolution_deadline": to_iso(self.resolution_deadline),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "closed_at": to_iso(self.closed_at),
            "resolved_at": to_iso(self.resolved_at),
            "cancelled_at": to_iso(self.cancelled_at),
            "cancel_reason": self.cancel_reason,
        }


@dataclass
class Participation:
    """A user's wager on a bet."""
    participation_id: str
    bet_id: str
    user_id: str
    stake_amount: Decimal
    chosen_option: Optional[str] = None
    predicted_value: Optional[str] = None
    payout: Decimal = Decimal("0.00")
    status: ParticipationStatus = ParticipationStatus.ACTIVE
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    settled_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "participation_id": self.participation_id,
            "bet_id": self.bet_id,
            "user_id": self.user_id,
            "stake_amount": str(self.stake_amount),
            "chosen_option": self.chosen_option,
            "predicted_value": self.predicted_value,
            "payout": str(self.payout),
            "status": self.status.value,
            "created_at": to_iso(self.created_at),
            "settled_at": to_iso(self.settled_at),
        }


@dataclass
class ResolutionVote:
    """One resolver's vote: an outcome, or a winner set for prediction bets."""
    vote_id: str
    bet_id: str
    resolver_id: str
    outcome: Optional[str] = None
    winner_ids: List[str] = field(default_factory=list)
    reasoning: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vote_id": self.vote_id,
            "bet_id": self.bet_id,
            "resolver_id": self.resolver_id,
            "outcome": self.outcome,
            "winner_ids": sorted(self.winner_ids),
            "reasoning": self.reasoning,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }


@dataclass
class Fulfillment:
    """A winner's confirmation that they received their stake."""
    fulfillment_id: str
    bet_id: str
    winner_id: str
    notes: Optional[str] = None
    confirmed_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fulfillment_id": self.fulfillment_id,
            "bet_id": self.bet_id,
            "winner_id": self.winner_id,
            "notes": self.notes,
            "confirmed_at": to_iso(self.confirmed_at),
        }


@dataclass
class Transaction:
    """Immutable ledger entry."""
    tx_id: str
    user_id: str
    tx_type: TransactionType
    amount: Decimal
    reason: str
    balance_before: Decimal
    balance_after: Decimal
    correlation_id: Optional[str] = None
    bet_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_id": self.tx_id,
            "user_id": self.user_id,
            "tx_type": self.tx_type.value,
            "amount": str(self.amount),
            "reason": self.reason,
            "balance_before": str(self.balance_before),
            "balance_after": str(self.balance_after),
            "correlation_id": self.correlation_id,
            "bet_id": self.bet_id,
            "created_at": to_iso(self.created_at),
        }


@dataclass
class TallyResult:
    """Outcome of counting the votes on a bet."""
    accepted: bool
    state: TallyState
    outcome: Optional[str] = None
    winners: frozenset = frozenset()
    pending_resolvers: frozenset = frozenset()
    vote_counts: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "state": self.state.value,
            "outcome": self.outcome,
            "winners": sorted(self.winners),
            "pending_resolvers": sorted(self.pending_resolvers),
            "vote_counts": self.vote_counts,
        }


def default_resolution_deadline(deadline: datetime, config: ResolutionConfig) -> datetime:
    return deadline + timedelta(hours=config.resolution_window_hours)
