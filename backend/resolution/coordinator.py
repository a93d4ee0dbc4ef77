"""
Resolution Coordinator - RivalPicks

Core operations for bet resolution:
- Create bets and place stakes
- Close betting
- Collect resolver votes and resolve by consensus
- Settle stakes through the ledger
- Cancel and refund

Each bet is driven through OPEN -> CLOSED -> RESOLVED, or OPEN/CLOSED ->
CANCELLED. Every state change runs under the bet's lock inside a single
sqlite transaction, so a settlement that fails halfway leaves the bet CLOSED.
"""

import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from resolution import database as db
from resolution.database import Database
from resolution.events import (
    EventDispatcher, BetEvent, BetCancelledEvent, BetClosedEvent,
    BetResolutionDeadlineApproachingEvent, BetResolvedEvent, BetVoteSubmittedEvent, log_event,
)
from resolution.exceptions import (
    BetNotFoundError, DuplicateParticipationError, DuplicateVoteError,
    IncompleteVotingError, InvalidBetError, InvalidStateTransitionError,
    InvalidVoteError, ResolutionError, UnauthorizedResolverError,
)
from resolution.fulfillment import FulfillmentTracker, fulfillment_status_for
from resolution.ledger import LedgerWriter
from resolution.locks import KeyedLock, bet_key
from resolution.models import (
    Bet, BetStatus, BetType, StakeType,
    Participation, ParticipationStatus,
    ResolutionConfig, ResolutionVote, TallyResult, Transaction, TransactionType,
    REASON_BET_CANCELLED, REASON_BET_NO_WINNERS, REASON_BET_PLACED, REASON_BET_WINNINGS,
    default_resolution_deadline, floor_money, generate_correlation_id, generate_id,
    to_money, utc_now,
)
from resolution.tally import compute_tally

logger = logging.getLogger(__name__)

DEFAULT_BINARY_OPTIONS = ["YES", "NO"]


class ResolutionCoordinator:
    """
    Drives bets through voting, resolution and settlement.
    Construct once per process and pass it to whoever needs it.
    """

    def __init__(
        self,
        database: Database = None,
        dispatcher: EventDispatcher = None,
        config: ResolutionConfig = None,
        locks: KeyedLock = None,
    ):
        self.config = config or ResolutionConfig()
        self.database = database or Database()
        self.dispatcher = dispatcher or EventDispatcher()
        self.locks = locks or KeyedLock()

        self.ledger = LedgerWriter(self.database, self.locks)
        self.fulfillment = FulfillmentTracker(self.database, self.dispatcher, self.locks)

        # Ensure database is initialized
        self.database.init_database()

        logger.info(f"Resolution coordinator initialized with SQLite persistence at {self.database.db_path}")

    # ==================== BET OPERATIONS ====================

    def create_bet(
        self,
        title: str,
        creator_id: str,
        bet_type: BetType,
        resolver_ids: Iterable[str],
        deadline: datetime,
        stake_type: StakeType = StakeType.CREDIT,
        stake_amount=None,
        social_stake_description: Optional[str] = None,
        options: Optional[List[str]] = None,
        max_participants: Optional[int] = None,
        resolution_deadline: Optional[datetime] = None,
    ) -> Bet:
        """Create a new OPEN bet."""
        if not title or not title.strip():
            raise InvalidBetError("Title cannot be empty")

        resolvers = list(dict.fromkeys(r for r in resolver_ids if r))
        if not resolvers:
            raise InvalidBetError("At least one resolver must be assigned")

        options = self._validate_options(bet_type, options)

        if stake_type == StakeType.CREDIT:
            if stake_amount is None or to_money(stake_amount) <= 0:
                raise InvalidBetError("Credit bets require a positive stake amount")
            stake_amount = to_money(stake_amount)
        else:
            if not social_stake_description or not social_stake_description.strip():
                raise InvalidBetError("Social bets require a stake description")
            stake_amount = None

        if max_participants is not None and max_participants < 1:
            raise InvalidBetError("max_participants must be at least 1")

        deadline = _as_utc(deadline)
        resolution_deadline = (
            _as_utc(resolution_deadline) if resolution_deadline
            else default_resolution_deadline(deadline, self.config)
        )
        if resolution_deadline < deadline:
            raise InvalidBetError("Resolution deadline cannot be before the betting deadline")

        now = utc_now()
        bet = Bet(
            bet_id=generate_id("bet_"),
            title=title.strip(),
            creator_id=creator_id,
            bet_type=bet_type,
            stake_type=stake_type,
            resolver_ids=resolvers,
            deadline=deadline,
            resolution_deadline=resolution_deadline,
            options=options,
            stake_amount=stake_amount,
            social_stake_description=social_stake_description.strip() if social_stake_description else None,
            max_participants=max_participants,
            created_at=now,
            updated_at=now,
        )

        with self.database.atomic() as conn:
            db.create_bet(conn, bet)

        logger.info(f"Bet {bet.bet_id} created by {creator_id} ({bet_type.value}, {stake_type.value})")
        return bet

    def _validate_options(self, bet_type: BetType, options: Optional[List[str]]) -> List[str]:
        if bet_type == BetType.PREDICTION:
            if options:
                raise InvalidBetError("Prediction bets do not have options")
            return []

        options = [o.strip() for o in (options or []) if o and o.strip()]
        if bet_type == BetType.BINARY:
            options = options or list(DEFAULT_BINARY_OPTIONS)
            if len(options) != 2:
                raise InvalidBetError("Binary bets have exactly two options")
        elif not 2 <= len(options) <= self.config.max_options:
            raise InvalidBetError(f"Multiple choice bets need 2 to {self.config.max_options} options")

        if len(set(options)) != len(options):
            raise InvalidBetError("Options must be distinct")
        return options

    def get_bet(self, bet_id: str) -> Bet:
        """Get bet by ID."""
        with self.database.get_connection() as conn:
            return self._load_bet(conn, bet_id)

    def get_bet_details(self, bet_id: str) -> Dict[str, Any]:
        """Bet with its derived fulfillment status and settled winners."""
        with self.database.get_connection() as conn:
            bet = self._load_bet(conn, bet_id)
            status = fulfillment_status_for(conn, bet)
            winners = db.get_participations(conn, bet_id, ParticipationStatus.WON)
            participant_count = db.count_participations(conn, bet_id)

        details = bet.to_dict()
        details["fulfillment_status"] = status.value if status else None
        details["requires_fulfillment"] = bet.requires_fulfillment
        details["winner_ids"] = [p.user_id for p in winners]
        details["participant_count"] = participant_count
        return details

    def get_bets_by_status(self, status: BetStatus) -> List[Bet]:
        with self.database.get_connection() as conn:
            return db.get_bets_by_status(conn, status)

    def delete_bet(self, bet_id: str) -> Dict[str, int]:
        """Delete a bet with its participations, votes and fulfillments. Ledger rows stay."""
        with self.locks.hold(bet_key(bet_id)):
            with self.database.atomic() as conn:
                self._load_bet(conn, bet_id)
                counts = db.delete_bet_cascade(conn, bet_id)

        logger.info(f"Bet {bet_id} deleted: {counts}")
        return counts

    # ==================== PARTICIPATION ====================

    def place_bet(
        self,
        bet_id: str,
        user_id: str,
        chosen_option: Optional[str] = None,
        predicted_value: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Participation:
        """
        Join a bet. Credit bets debit the fixed stake from the user's balance.
        Reaching ``max_participants`` closes the bet.
        """
        now = _as_utc(now) if now else utc_now()
        closed_event = None

        with self.locks.hold(bet_key(bet_id)):
            with self.database.atomic() as conn:
                bet = self._load_bet(conn, bet_id)
                if bet.status != BetStatus.OPEN:
                    raise InvalidStateTransitionError(f"Bet {bet_id} is not open for betting (status: {bet.status.value})")
                if now >= bet.deadline:
                    raise InvalidStateTransitionError(f"Betting deadline for bet {bet_id} has passed")

                if bet.bet_type == BetType.PREDICTION:
                    if not predicted_value or not str(predicted_value).strip():
                        raise InvalidBetError("Prediction bets require a predicted value")
                    chosen_option, predicted_value = None, str(predicted_value).strip()
                else:
                    if chosen_option not in bet.options:
                        raise InvalidBetError(f"Invalid option '{chosen_option}', expected one of {bet.options}")
                    predicted_value = None

                if db.get_participation(conn, bet_id, user_id) is not None:
                    raise DuplicateParticipationError(f"User {user_id} has already placed a bet on {bet_id}")

                stake = bet.stake_amount if bet.stake_type == StakeType.CREDIT else Decimal("0.00")
                participation = Participation(
                    participation_id=generate_id("part_"),
                    bet_id=bet_id,
                    user_id=user_id,
                    stake_amount=stake,
                    chosen_option=chosen_option,
                    predicted_value=predicted_value,
                    created_at=now,
                    updated_at=now,
                )
                try:
                    db.create_participation(conn, participation)
                except sqlite3.IntegrityError:
                    raise DuplicateParticipationError(f"User {user_id} has already placed a bet on {bet_id}") from None

                if stake > 0:
                    self.ledger.record_transaction(
                        user_id, TransactionType.DEBIT, stake, REASON_BET_PLACED,
                        correlation_id=generate_correlation_id(), bet_id=bet_id, conn=conn,
                    )

                if bet.max_participants and db.count_participations(conn, bet_id) >= bet.max_participants:
                    closed_event = self._close(conn, bet, now)

        logger.info(f"User {user_id} joined bet {bet_id} with stake {participation.stake_amount}")
        if closed_event:
            self.dispatcher.publish(closed_event)
        return participation

    def get_participations(self, bet_id: str) -> List[Participation]:
        with self.database.get_connection() as conn:
            self._load_bet(conn, bet_id)
            return db.get_participations(conn, bet_id)

    # ==================== CLOSING ====================

    def close_bet(self, bet_id: str, now: Optional[datetime] = None) -> Bet:
        """
        Stop accepting participations and open voting.
        Closing an already CLOSED bet is a no-op.
        """
        now = _as_utc(now) if now else utc_now()
        event = None

        with self.locks.hold(bet_key(bet_id)):
            with self.database.atomic() as conn:
                bet = self._load_bet(conn, bet_id)
                if bet.status == BetStatus.CLOSED:
                    return bet
                if bet.status != BetStatus.OPEN:
                    raise InvalidStateTransitionError(f"Cannot close bet {bet_id} (status: {bet.status.value})")
                event = self._close(conn, bet, now)
                bet = self._load_bet(conn, bet_id)

        self.dispatcher.publish(event)
        return bet

    def _close(self, conn: sqlite3.Connection, bet: Bet, now: datetime) -> BetClosedEvent:
        db.update_bet(conn, bet.bet_id, {"status": BetStatus.CLOSED, "closed_at": now})
        logger.info(f"Bet {bet.bet_id} closed, awaiting {len(bet.resolver_ids)} resolver(s)")
        return BetClosedEvent(bet_id=bet.bet_id, resolver_ids=list(bet.resolver_ids))

    def close_expired_bets(self, now: Optional[datetime] = None) -> List[str]:
        """Close every OPEN bet whose betting deadline has passed."""
        now = _as_utc(now) if now else utc_now()
        closed = []
        for bet in self.get_bets_by_status(BetStatus.OPEN):
            if bet.deadline > now:
                continue
            try:
                self.close_bet(bet.bet_id, now=now)
                closed.append(bet.bet_id)
            except ResolutionError as e:
                logger.warning(f"Could not close expired bet {bet.bet_id}: {e}")
        return closed

    # ==================== VOTING OPERATIONS ====================

    def submit_vote(
        self,
        bet_id: str,
        resolver_id: str,
        outcome: Optional[str] = None,
        winner_ids: Optional[Iterable[str]] = None,
        reasoning: Optional[str] = None,
    ) -> Tuple[ResolutionVote, Optional[TallyResult]]:
        """
        Cast a resolver vote on a CLOSED bet, then attempt resolution.

        Returns: (vote, tally) where tally is None while resolvers are pending
        """
        with self.locks.hold(bet_key(bet_id)):
            with self.database.atomic() as conn:
                bet = self._load_bet(conn, bet_id)
                if bet.status != BetStatus.CLOSED:
                    raise InvalidStateTransitionError(
                        f"Voting is not open for bet {bet_id} (status: {bet.status.value})"
                    )
                if not bet.is_resolver(resolver_id):
                    logger.warning(f"User {resolver_id} tried to vote on bet {bet_id} without being a resolver")
                    raise UnauthorizedResolverError(f"User {resolver_id} is not a resolver of bet {bet_id}")

                outcome, winners = self._validate_selection(conn, bet, outcome, winner_ids)
                now = utc_now()

                existing = db.get_vote(conn, bet_id, resolver_id)
                if existing is not None:
                    if not self.config.allow_revote:
                        raise DuplicateVoteError(f"Resolver {resolver_id} has already voted on bet {bet_id}")
                    existing.outcome = outcome
                    existing.winner_ids = winners
                    existing.reasoning = reasoning
                    existing.updated_at = now
                    db.replace_vote_selection(conn, existing)
                    vote = existing
                else:
                    vote = ResolutionVote(
                        vote_id=generate_id("vote_"),
                        bet_id=bet_id,
                        resolver_id=resolver_id,
                        outcome=outcome,
                        winner_ids=winners,
                        reasoning=reasoning,
                        created_at=now,
                        updated_at=now,
                    )
                    try:
                        db.create_vote(conn, vote)
                    except sqlite3.IntegrityError:
                        raise DuplicateVoteError(f"Resolver {resolver_id} has already voted on bet {bet_id}") from None

                votes_submitted = len(db.get_votes_for_bet(conn, bet_id))

            logger.info(f"Vote {vote.vote_id} cast by {resolver_id} on bet {bet_id} ({votes_submitted}/{len(bet.resolver_ids)})")

            # Check if we can resolve
            try:
                tally, resolved_event = self._resolve(bet_id)
            except IncompleteVotingError as e:
                logger.debug(f"Bet {bet_id} not resolvable yet: {e}")
                tally, resolved_event = None, None

        self.dispatcher.publish(BetVoteSubmittedEvent(
            bet_id=bet_id,
            resolver_id=resolver_id,
            votes_submitted=votes_submitted,
            total_resolvers=len(bet.resolver_ids),
        ))
        if resolved_event is not None:
            self.dispatcher.publish(resolved_event)
        return vote, tally

    def _validate_selection(
        self,
        conn: sqlite3.Connection,
        bet: Bet,
        outcome: Optional[str],
        winner_ids: Optional[Iterable[str]],
    ) -> Tuple[Optional[str], List[str]]:
        if bet.bet_type == BetType.PREDICTION:
            if outcome is not None:
                raise InvalidVoteError("Prediction bets are resolved by naming winners, not an outcome")
            if winner_ids is None:
                raise InvalidVoteError("Prediction votes require a winner list (it may be empty)")
            winners = sorted(set(winner_ids))
            participants = {
                p.user_id for p in db.get_participations(conn, bet.bet_id)
                if p.status != ParticipationStatus.REFUNDED
            }
            unknown = [w for w in winners if w not in participants]
            if unknown:
                raise InvalidVoteError(f"Not participants of bet {bet.bet_id}: {', '.join(unknown)}")
            return None, winners

        if winner_ids:
            raise InvalidVoteError("Option bets are resolved by outcome, not a winner list")
        if outcome not in bet.options:
            raise InvalidVoteError(f"Invalid outcome '{outcome}', expected one of {bet.options}")
        return outcome, []

    def get_votes(self, bet_id: str) -> List[ResolutionVote]:
        """Get all votes for a bet."""
        with self.database.get_connection() as conn:
            self._load_bet(conn, bet_id)
            return db.get_votes_for_bet(conn, bet_id)

    def get_resolution_status(self, bet_id: str) -> Dict[str, Any]:
        """Voting progress for a bet."""
        with self.database.get_connection() as conn:
            bet = self._load_bet(conn, bet_id)
            votes = db.get_votes_for_bet(conn, bet_id)
            participations = db.get_participations(conn, bet_id)

        tally = compute_tally(bet, votes, participations, self.config, allow_partial=True)
        voted = sorted({v.resolver_id for v in votes if bet.is_resolver(v.resolver_id)})
        return {
            "bet_id": bet.bet_id,
            "bet_type": bet.bet_type.value,
            "status": bet.status.value,
            "total_resolvers": len(bet.resolver_ids),
            "resolvers_who_voted": voted,
            "pending_resolvers": sorted(tally.pending_resolvers),
            "total_participations": len(participations),
            "vote_counts": tally.vote_counts,
            "tally_state": tally.state.value,
            "resolution_deadline": bet.resolution_deadline.isoformat(),
        }

    # ==================== RESOLUTION ====================

    def try_resolve(self, bet_id: str, allow_partial: bool = False) -> TallyResult:
        """
        Tally the votes and settle the bet if an outcome is accepted.

        Raises:
            IncompleteVotingError: resolvers are still pending
            InvalidStateTransitionError: bet is not CLOSED
        """
        with self.locks.hold(bet_key(bet_id)):
            tally, event = self._resolve(bet_id, allow_partial=allow_partial)

        if event is not None:
            self.dispatcher.publish(event)
        return tally

    def _resolve(self, bet_id: str, allow_partial: bool = False) -> Tuple[TallyResult, Optional[BetResolvedEvent]]:
        """Tally and settle under the caller's bet lock. Publishing is left to the caller."""
        event = None
        with self.database.atomic() as conn:
            bet = self._load_bet(conn, bet_id)
            if bet.status != BetStatus.CLOSED:
                raise InvalidStateTransitionError(f"Bet {bet_id} is not awaiting resolution (status: {bet.status.value})")

            votes = db.get_votes_for_bet(conn, bet_id)
            participations = db.get_participations(conn, bet_id)
            tally = compute_tally(bet, votes, participations, self.config, allow_partial=allow_partial)

            if tally.accepted:
                event = self._settle(
                    conn, bet, participations,
                    outcome=tally.outcome,
                    winner_ids=tally.winners,
                    reason=f"Resolved by {len(votes)} resolver vote(s)",
                )

        if event is None:
            logger.info(f"Bet {bet_id} remains closed: tally {tally.state.value}")
        return tally, event

    def force_resolve(
        self,
        bet_id: str,
        outcome: Optional[str] = None,
        winner_ids: Optional[Iterable[str]] = None,
        reason: str = "",
    ) -> Bet:
        """Admin override for tied or stalled votes."""
        with self.locks.hold(bet_key(bet_id)):
            with self.database.atomic() as conn:
                bet = self._load_bet(conn, bet_id)
                if bet.status != BetStatus.CLOSED:
                    raise InvalidStateTransitionError(f"Bet {bet_id} cannot be force-resolved (status: {bet.status.value})")

                outcome, winners = self._validate_selection(conn, bet, outcome, winner_ids)
                participations = db.get_participations(conn, bet_id)
                event = self._settle(
                    conn, bet, participations,
                    outcome=outcome,
                    winner_ids=winners,
                    reason=reason or "Resolved by administrator",
                    forced=True,
                )
                bet = self._load_bet(conn, bet_id)

        logger.info(f"Bet {bet_id} force-resolved: {reason}")
        self.dispatcher.publish(event)
        return bet

    def _settle(
        self,
        conn: sqlite3.Connection,
        bet: Bet,
        participations: List[Participation],
        outcome: Optional[str],
        winner_ids: Iterable[str],
        reason: str,
        forced: bool = False,
    ) -> BetResolvedEvent:
        """Mark winners and losers, move the pool, and set the bet RESOLVED."""
        active = [p for p in participations if p.status == ParticipationStatus.ACTIVE]
        if bet.bet_type == BetType.PREDICTION:
            winner_set = set(winner_ids)
            winners = [p for p in active if p.user_id in winner_set]
        else:
            winners = [p for p in active if p.chosen_option == outcome]
        losers = [p for p in active if p not in winners]

        settlement_id = generate_correlation_id()
        now = utc_now()

        if not winners:
            # Nobody won: everyone gets their stake back
            for p in active:
                if p.stake_amount > 0:
                    self.ledger.record_transaction(
                        p.user_id, TransactionType.CREDIT, p.stake_amount, REASON_BET_NO_WINNERS,
                        correlation_id=settlement_id, bet_id=bet.bet_id, conn=conn,
                    )
                db.update_participation(conn, p.participation_id, {
                    "status": ParticipationStatus.REFUNDED,
                    "payout": p.stake_amount,
                    "settled_at": now,
                })
            losers = []
        else:
            payouts = calculate_pool_payouts(active, winners)
            for p in winners:
                payout = payouts[p.participation_id]
                if payout > 0:
                    self.ledger.record_transaction(
                        p.user_id, TransactionType.CREDIT, payout, REASON_BET_WINNINGS,
                        correlation_id=settlement_id, bet_id=bet.bet_id, conn=conn,
                    )
                db.update_participation(conn, p.participation_id, {
                    "status": ParticipationStatus.WON,
                    "payout": payout,
                    "settled_at": now,
                })
            for p in losers:
                db.update_participation(conn, p.participation_id, {
                    "status": ParticipationStatus.LOST,
                    "payout": Decimal("0.00"),
                    "settled_at": now,
                })

        db.update_bet(conn, bet.bet_id, {
            "status": BetStatus.RESOLVED,
            "outcome": outcome,
            "resolution_reason": reason,
            "settlement_id": settlement_id,
            "resolved_at": now,
        })

        logger.info(
            f"Bet {bet.bet_id} resolved: {len(winners)} winner(s), {len(losers)} loser(s), settlement {settlement_id}"
        )
        return BetResolvedEvent(
            bet_id=bet.bet_id,
            outcome=outcome,
            winner_ids=[p.user_id for p in winners],
            loser_ids=[p.user_id for p in losers],
            settlement_id=settlement_id,
            forced=forced,
        )

    # ==================== CANCELLATION ====================

    def cancel_bet(self, bet_id: str, reason: Optional[str] = None) -> Bet:
        """Cancel an OPEN or CLOSED bet and refund every placed stake."""
        with self.locks.hold(bet_key(bet_id)):
            with self.database.atomic() as conn:
                bet = self._load_bet(conn, bet_id)
                if bet.status not in (BetStatus.OPEN, BetStatus.CLOSED):
                    raise InvalidStateTransitionError(f"Cannot cancel bet {bet_id} (status: {bet.status.value})")

                correlation_id = generate_correlation_id()
                now = utc_now()
                refunded = []
                for p in db.get_participations(conn, bet_id, ParticipationStatus.ACTIVE):
                    if p.stake_amount > 0:
                        self.ledger.record_transaction(
                            p.user_id, TransactionType.CREDIT, p.stake_amount, REASON_BET_CANCELLED,
                            correlation_id=correlation_id, bet_id=bet_id, conn=conn,
                        )
                    db.update_participation(conn, p.participation_id, {
                        "status": ParticipationStatus.REFUNDED,
                        "payout": p.stake_amount,
                        "settled_at": now,
                    })
                    refunded.append(p.user_id)

                db.update_bet(conn, bet_id, {
                    "status": BetStatus.CANCELLED,
                    "cancelled_at": now,
                    "cancel_reason": reason.strip() if reason else None,
                    "settlement_id": correlation_id,
                })
                bet = self._load_bet(conn, bet_id)

        logger.info(f"Bet {bet_id} cancelled, refunded {len(refunded)} participant(s)")
        self.dispatcher.publish(BetCancelledEvent(bet_id=bet_id, reason=bet.cancel_reason, refunded_user_ids=refunded))
        return bet

    # ==================== MAINTENANCE ====================

    def resolve_overdue_bets(self, now: Optional[datetime] = None) -> List[Tuple[str, str]]:
        """
        Resolve CLOSED bets past their resolution deadline with the votes cast so far.
        Returns (bet_id, tally_state) for every bet that was attempted.
        """
        now = _as_utc(now) if now else utc_now()
        results = []
        for bet in self.get_bets_by_status(BetStatus.CLOSED):
            if bet.resolution_deadline > now:
                continue
            try:
                tally = self.try_resolve(bet.bet_id, allow_partial=True)
                results.append((bet.bet_id, tally.state.value))
            except ResolutionError as e:
                logger.warning(f"Could not resolve overdue bet {bet.bet_id}: {e}")
        return results

    def send_deadline_reminders(self, now: Optional[datetime] = None) -> List[str]:
        """Emit one reminder per CLOSED bet whose resolution deadline is near."""
        now = _as_utc(now) if now else utc_now()
        lead = timedelta(hours=self.config.reminder_lead_hours)
        reminded = []

        for bet in self.get_bets_by_status(BetStatus.CLOSED):
            if bet.deadline_reminder_sent_at is not None:
                continue
            if not (bet.resolution_deadline - lead <= now < bet.resolution_deadline):
                continue

            with self.locks.hold(bet_key(bet.bet_id)):
                with self.database.atomic() as conn:
                    voted = {v.resolver_id for v in db.get_votes_for_bet(conn, bet.bet_id)}
                    pending = sorted(set(bet.resolver_ids) - voted)
                    if not pending:
                        continue
                    db.update_bet(conn, bet.bet_id, {"deadline_reminder_sent_at": now})

            self.dispatcher.publish(BetResolutionDeadlineApproachingEvent(
                bet_id=bet.bet_id,
                pending_resolver_ids=pending,
                resolution_deadline=bet.resolution_deadline,
            ))
            reminded.append(bet.bet_id)
        return reminded

    # ==================== LEDGER ====================

    def deposit(self, user_id: str, amount) -> Transaction:
        return self.ledger.deposit(user_id, amount)

    def get_balance(self, user_id: str) -> Decimal:
        return self.ledger.get_balance(user_id)

    def get_transactions(self, user_id: str, limit: Optional[int] = None) -> List[Transaction]:
        return self.ledger.get_transactions(user_id=user_id, limit=limit)

    # ==================== FULFILLMENT ====================

    def confirm_fulfillment(self, bet_id: str, winner_id: str, notes: Optional[str] = None):
        return self.fulfillment.confirm_fulfillment(bet_id, winner_id, notes)

    def claim_loser_fulfilled(self, bet_id: str, loser_id: str,
                              proof_url: Optional[str] = None,
                              proof_description: Optional[str] = None) -> Bet:
        return self.fulfillment.claim_loser_fulfilled(bet_id, loser_id, proof_url, proof_description)

    def get_fulfillment_details(self, bet_id: str):
        return self.fulfillment.get_fulfillment_details(bet_id)

    def _load_bet(self, conn: sqlite3.Connection, bet_id: str) -> Bet:
        bet = db.get_bet(conn, bet_id)
        if bet is None:
            raise BetNotFoundError(bet_id)
        return bet


def calculate_pool_payouts(active: List[Participation], winners: List[Participation]) -> Dict[str, Decimal]:
    """
    Split the total pool between winners in proportion to their stakes.

    Shares are floored to the cent; the leftover cents go to the first winner
    (by user id) so the payouts always add up to the pool.
    """
    total_pool = sum((p.stake_amount for p in active), Decimal("0.00"))
    winning_stake = sum((p.stake_amount for p in winners), Decimal("0.00"))

    ordered = sorted(winners, key=lambda p: p.user_id)
    if winning_stake == 0:
        return {p.participation_id: Decimal("0.00") for p in ordered}

    payouts = {
        p.participation_id: floor_money(total_pool * p.stake_amount / winning_stake)
        for p in ordered
    }
    remainder = total_pool - sum(payouts.values(), Decimal("0.00"))
    payouts[ordered[0].participation_id] += remainder
    return payouts


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def build_coordinator(db_path: Optional[str] = None, config: Optional[ResolutionConfig] = None) -> ResolutionCoordinator:
    """Wire a coordinator with the default event log handler."""
    dispatcher = EventDispatcher()
    dispatcher.subscribe(BetEvent, log_event)
    return ResolutionCoordinator(
        database=Database(db_path),
        dispatcher=dispatcher,
        config=config or ResolutionConfig.from_env(),
    )

