"""
Fulfillment Tracker - RivalPicks

After a social bet resolves, each winner confirms they received their
stake. The bet's fulfillment status is derived from those confirmations
every time it is read:

- PENDING: no winner has confirmed
- PARTIALLY_FULFILLED: some but not all winners have confirmed
- FULFILLED: every winner has confirmed (or there is nothing to confirm)

Losers may optionally claim they handed the stake over; the claim is
informational and does not change the status.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from resolution import database as db
from resolution.database import Database
from resolution.events import (
    EventDispatcher, BetFulfillmentSubmittedEvent, LoserFulfillmentClaimedEvent,
)
from resolution.exceptions import (
    BetNotFoundError, DuplicateConfirmationError, FulfillmentNotRequiredError,
    InvalidStateTransitionError, NotAWinnerError,
)
from resolution.locks import KeyedLock, bet_key
from resolution.models import (
    Bet, BetStatus, Fulfillment, FulfillmentStatus, ParticipationStatus,
    generate_id, to_iso, utc_now,
)

logger = logging.getLogger(__name__)


def compute_fulfillment_status(winner_count: int, confirmed_count: int) -> FulfillmentStatus:
    """Fulfillment status from the number of distinct winners and confirmations."""
    if winner_count == 0 or confirmed_count >= winner_count:
        return FulfillmentStatus.FULFILLED
    if confirmed_count == 0:
        return FulfillmentStatus.PENDING
    return FulfillmentStatus.PARTIALLY_FULFILLED


def fulfillment_status_for(conn: sqlite3.Connection, bet: Bet) -> Optional[FulfillmentStatus]:
    """Derive the status of a stored bet. None until the bet is resolved."""
    if bet.status != BetStatus.RESOLVED:
        return None
    if not bet.requires_fulfillment:
        return FulfillmentStatus.FULFILLED
    winners = {p.user_id for p in db.get_participations(conn, bet.bet_id, ParticipationStatus.WON)}
    confirmed = {f.winner_id for f in db.get_fulfillments_for_bet(conn, bet.bet_id)} & winners
    return compute_fulfillment_status(len(winners), len(confirmed))


@dataclass
class FulfillmentDetails:
    """Everything a client needs to render the fulfillment state of a bet."""
    bet_id: str
    title: str
    social_stake_description: Optional[str]
    status: FulfillmentStatus
    total_winners: int
    total_losers: int
    confirmation_count: int
    winners: List[Dict[str, Any]] = field(default_factory=list)
    losers: List[str] = field(default_factory=list)
    confirmations: List[Fulfillment] = field(default_factory=list)
    loser_claimed_at: Optional[datetime] = None
    loser_proof_url: Optional[str] = None
    loser_proof_description: Optional[str] = None
    all_winners_confirmed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bet_id": self.bet_id,
            "title": self.title,
            "social_stake_description": self.social_stake_description,
            "status": self.status.value,
            "total_winners": self.total_winners,
            "total_losers": self.total_losers,
            "confirmation_count": self.confirmation_count,
            "winners": self.winners,
            "losers": self.losers,
            "confirmations": [c.to_dict() for c in self.confirmations],
            "loser_claimed_at": to_iso(self.loser_claimed_at),
            "loser_proof_url": self.loser_proof_url,
            "loser_proof_description": self.loser_proof_description,
            "all_winners_confirmed_at": to_iso(self.all_winners_confirmed_at),
        }


class FulfillmentTracker:
    """Records winner confirmations for resolved social bets."""

    def __init__(self, database: Database, dispatcher: EventDispatcher = None, locks: KeyedLock = None):
        self.database = database
        self.dispatcher = dispatcher or EventDispatcher()
        self.locks = locks or KeyedLock()

    def confirm_fulfillment(self, bet_id: str, winner_id: str, notes: Optional[str] = None) -> FulfillmentStatus:
        """
        Winner confirms they received the social stake.

        Returns the recomputed fulfillment status.
        """
        with self.locks.hold(bet_key(bet_id)):
            with self.database.atomic() as conn:
                bet = self._load_resolved_bet(conn, bet_id)

                participation = db.get_participation(conn, bet_id, winner_id)
                if participation is None or participation.status != ParticipationStatus.WON:
                    raise NotAWinnerError(f"User {winner_id} is not a winner of bet {bet_id}")

                fulfillment = Fulfillment(
                    fulfillment_id=generate_id("ful_"),
                    bet_id=bet_id,
                    winner_id=winner_id,
                    notes=notes.strip() if notes and notes.strip() else None,
                    confirmed_at=utc_now(),
                )
                try:
                    db.create_fulfillment(conn, fulfillment)
                except sqlite3.IntegrityError:
                    raise DuplicateConfirmationError(
                        f"Winner {winner_id} has already confirmed fulfillment of bet {bet_id}"
                    ) from None

                status = fulfillment_status_for(conn, bet)

        logger.info(f"Winner {winner_id} confirmed fulfillment of bet {bet_id}: {status.value}")
        self.dispatcher.publish(BetFulfillmentSubmittedEvent(
            bet_id=bet_id,
            winner_id=winner_id,
            fulfillment_status=status.value,
        ))
        return status

    def claim_loser_fulfilled(
        self,
        bet_id: str,
        loser_id: str,
        proof_url: Optional[str] = None,
        proof_description: Optional[str] = None,
    ) -> Bet:
        """Loser claims they have handed over the social stake (optional)."""
        with self.locks.hold(bet_key(bet_id)):
            with self.database.atomic() as conn:
                self._load_resolved_bet(conn, bet_id)

                participation = db.get_participation(conn, bet_id, loser_id)
                if participation is None or participation.status != ParticipationStatus.LOST:
                    raise NotAWinnerError(f"User {loser_id} is not a loser of bet {bet_id}")

                updates: Dict[str, Any] = {"loser_claimed_at": utc_now()}
                if proof_url and proof_url.strip():
                    updates["loser_proof_url"] = proof_url.strip()
                if proof_description and proof_description.strip():
                    updates["loser_proof_description"] = proof_description.strip()
                db.update_bet(conn, bet_id, updates)
                bet = db.get_bet(conn, bet_id)

        logger.info(f"Loser {loser_id} claimed fulfillment of bet {bet_id}")
        self.dispatcher.publish(LoserFulfillmentClaimedEvent(
            bet_id=bet_id,
            loser_id=loser_id,
            proof_url=bet.loser_proof_url,
        ))
        return bet

    def get_fulfillment_details(self, bet_id: str) -> FulfillmentDetails:
        with self.database.get_connection() as conn:
            bet = db.get_bet(conn, bet_id)
            if bet is None:
                raise BetNotFoundError(bet_id)
            if not bet.requires_fulfillment:
                raise FulfillmentNotRequiredError(f"Bet {bet_id} does not track stake fulfillment")

            winners = db.get_participations(conn, bet_id, ParticipationStatus.WON)
            losers = db.get_participations(conn, bet_id, ParticipationStatus.LOST)
            confirmations = db.get_fulfillments_for_bet(conn, bet_id)
            status = fulfillment_status_for(conn, bet) or FulfillmentStatus.PENDING

        confirmed_ids = {c.winner_id for c in confirmations}
        all_confirmed_at = None
        if bet.status == BetStatus.RESOLVED and status == FulfillmentStatus.FULFILLED and confirmations:
            all_confirmed_at = max(c.confirmed_at for c in confirmations)

        return FulfillmentDetails(
            bet_id=bet.bet_id,
            title=bet.title,
            social_stake_description=bet.social_stake_description,
            status=status,
            total_winners=len(winners),
            total_losers=len(losers),
            confirmation_count=len(confirmations),
            winners=[
                {"user_id": p.user_id, "has_confirmed": p.user_id in confirmed_ids}
                for p in winners
            ],
            losers=[p.user_id for p in losers],
            confirmations=confirmations,
            loser_claimed_at=bet.loser_claimed_at,
            loser_proof_url=bet.loser_proof_url,
            loser_proof_description=bet.loser_proof_description,
            all_winners_confirmed_at=all_confirmed_at,
        )

    def _load_resolved_bet(self, conn: sqlite3.Connection, bet_id: str) -> Bet:
        bet = db.get_bet(conn, bet_id)
        if bet is None:
            raise BetNotFoundError(bet_id)
        if bet.status != BetStatus.RESOLVED:
            raise InvalidStateTransitionError(
                f"Bet {bet_id} must be resolved before fulfillment can be tracked (status: {bet.status.value})"
            )
        if not bet.requires_fulfillment:
            raise FulfillmentNotRequiredError(f"Bet {bet_id} does not track stake fulfillment")
        return bet
