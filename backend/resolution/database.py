"""
SQLite Database for bet resolution.
Provides persistent storage for bets, participations, resolution votes,
fulfillments, accounts and the transaction ledger.

CRUD helpers take an open connection so that a caller can compose several
of them into one atomic unit.
"""

import sqlite3
import json
import os
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List, Dict, Any

from resolution.models import (
    Bet, BetStatus, BetType, StakeType,
    Participation, ParticipationStatus,
    ResolutionVote, Fulfillment,
    Transaction, TransactionType,
    from_iso, to_iso, utc_now,
)

# Database file path - use environment variable or fallback to local storage
DEFAULT_DB_PATH = os.path.join(os.path.dirname(os.path.dirname(__file__)), "storage", "bets.db")

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS bets (
        bet_id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        creator_id TEXT NOT NULL,
        bet_type TEXT NOT NULL,
        stake_type TEXT NOT NULL,
        stake_amount TEXT,
        social_stake_description TEXT,
        options TEXT NOT NULL,          -- JSON array
        resolver_ids TEXT NOT NULL,     -- JSON array
        max_participants INTEGER,
        status TEXT NOT NULL DEFAULT 'OPEN',
        outcome TEXT,
        resolution_reason TEXT,
        settlement_id TEXT,
        deadline TEXT NOT NULL,
        resolution_deadline TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        closed_at TEXT,
        resolved_at TEXT,
        cancelled_at TEXT,
        cancel_reason TEXT,
        loser_claimed_at TEXT,
        loser_proof_url TEXT,
        loser_proof_description TEXT,
        deadline_reminder_sent_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS participations (
        participation_id TEXT PRIMARY KEY,
        bet_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        chosen_option TEXT,
        predicted_value TEXT,
        stake_amount TEXT NOT NULL,
        payout TEXT NOT NULL DEFAULT '0.00',
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        settled_at TEXT,
        FOREIGN KEY (bet_id) REFERENCES bets(bet_id),
        UNIQUE(bet_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS resolution_votes (
        vote_id TEXT PRIMARY KEY,
        bet_id TEXT NOT NULL,
        resolver_id TEXT NOT NULL,
        outcome TEXT,                   -- BINARY / MULTIPLE_CHOICE
        reasoning TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY (bet_id) REFERENCES bets(bet_id),
        UNIQUE(bet_id, resolver_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS resolution_vote_winners (
        vote_id TEXT NOT NULL,
        winner_id TEXT NOT NULL,        -- PREDICTION
        FOREIGN KEY (vote_id) REFERENCES resolution_votes(vote_id),
        UNIQUE(vote_id, winner_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS fulfillments (
        fulfillment_id TEXT PRIMARY KEY,
        bet_id TEXT NOT NULL,
        winner_id TEXT NOT NULL,
        notes TEXT,
        confirmed_at TEXT NOT NULL,
        FOREIGN KEY (bet_id) REFERENCES bets(bet_id),
        UNIQUE(bet_id, winner_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS accounts (
        user_id TEXT PRIMARY KEY,
        balance TEXT NOT NULL DEFAULT '0.00',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    # Append-only; bet_id is informational and never cascaded
    """
    CREATE TABLE IF NOT EXISTS transactions (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        tx_id TEXT NOT NULL UNIQUE,
        user_id TEXT NOT NULL,
        tx_type TEXT NOT NULL,
        amount TEXT NOT NULL,
        reason TEXT NOT NULL,
        balance_before TEXT NOT NULL,
        balance_after TEXT NOT NULL,
        correlation_id TEXT,
        bet_id TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_bets_status ON bets(status)",
    "CREATE INDEX IF NOT EXISTS idx_participations_bet ON participations(bet_id)",
    "CREATE INDEX IF NOT EXISTS idx_votes_bet ON resolution_votes(bet_id)",
    "CREATE INDEX IF NOT EXISTS idx_fulfillments_bet ON fulfillments(bet_id)",
    "CREATE INDEX IF NOT EXISTS idx_transactions_user ON transactions(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_transactions_correlation ON transactions(correlation_id)",
]


class Database:
    """Owns the sqlite file and hands out transactional connections."""

    def __init__(self, db_path: str = None):
        self.db_path = db_path or os.environ.get("BETS_DB_PATH", DEFAULT_DB_PATH)

    def get_db_path(self) -> str:
        """Get database path, ensuring directory exists."""
        db_dir = os.path.dirname(self.db_path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir, exist_ok=True)
        return self.db_path

    @contextmanager
    def get_connection(self, immediate: bool = False):
        """
        Context manager for a connection wrapped in one transaction.

        ``immediate`` takes the sqlite write lock up front so that concurrent
        writers serialize instead of failing on upgrade.
        """
        conn = sqlite3.connect(self.get_db_path(), timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def atomic(self):
        """Write transaction shorthand."""
        return self.get_connection(immediate=True)

    def init_database(self):
        """Initialize the database schema."""
        with self.atomic() as conn:
            for statement in SCHEMA:
                conn.execute(statement)


def _to_column(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (list, tuple)):
        return json.dumps(list(value))
    return value


def _update(conn: sqlite3.Connection, table: str, key_column: str, key: str,
            updates: Dict[str, Any]) -> bool:
    set_clause = ", ".join([f"{k} = ?" for k in updates.keys()])
    values = [_to_column(v) for v in updates.values()] + [key]
    cursor = conn.execute(f"UPDATE {table} SET {set_clause} WHERE {key_column} = ?", values)
    return cursor.rowcount > 0


def _decimal(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


# ==================== BET OPERATIONS ====================

def create_bet(conn: sqlite3.Connection, bet: Bet) -> str:
    """Insert a new bet."""
    conn.execute("""
        INSERT INTO bets (
            bet_id, title, creator_id, bet_type, stake_type, stake_amount,
            social_stake_description, options, resolver_ids, max_participants,
            status, deadline, resolution_deadline, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        bet.bet_id,
        bet.title,
        bet.creator_id,
        bet.bet_type.value,
        bet.stake_type.value,
        _to_column(bet.stake_amount),
        bet.social_stake_description,
        json.dumps(bet.options),
        json.dumps(bet.resolver_ids),
        bet.max_participants,
        bet.status.value,
        to_iso(bet.deadline),
        to_iso(bet.resolution_deadline),
        to_iso(bet.created_at),
        to_iso(bet.updated_at),
    ))
    return bet.bet_id


def get_bet(conn: sqlite3.Connection, bet_id: str) -> Optional[Bet]:
    """Get a bet by ID."""
    row = conn.execute("SELECT * FROM bets WHERE bet_id = ?", (bet_id,)).fetchone()
    if row:
        return _row_to_bet(row)
    return None


def get_bets_by_status(conn: sqlite3.Connection, status: BetStatus) -> List[Bet]:
    """Get all bets with a specific status."""
    rows = conn.execute(
        "SELECT * FROM bets WHERE status = ? ORDER BY created_at", (status.value,)
    ).fetchall()
    return [_row_to_bet(row) for row in rows]


def update_bet(conn: sqlite3.Connection, bet_id: str, updates: Dict[str, Any]) -> bool:
    """Update a bet, stamping updated_at."""
    updates["updated_at"] = utc_now()
    return _update(conn, "bets", "bet_id", bet_id, updates)


def delete_bet_cascade(conn: sqlite3.Connection, bet_id: str) -> Dict[str, int]:
    """
    Delete a bet and everything it owns.
    Ledger transactions are the permanent audit record and are kept.
    """
    counts = {}
    counts["vote_winners"] = conn.execute("""
        DELETE FROM resolution_vote_winners
        WHERE vote_id IN (SELECT vote_id FROM resolution_votes WHERE bet_id = ?)
    """, (bet_id,)).rowcount
    counts["votes"] = conn.execute(
        "DELETE FROM resolution_votes WHERE bet_id = ?", (bet_id,)
    ).rowcount
    counts["fulfillments"] = conn.execute(
        "DELETE FROM fulfillments WHERE bet_id = ?", (bet_id,)
    ).rowcount
    counts["participations"] = conn.execute(
        "DELETE FROM participations WHERE bet_id = ?", (bet_id,)
    ).rowcount
    counts["bets"] = conn.execute("DELETE FROM bets WHERE bet_id = ?", (bet_id,)).rowcount
    return counts


def _row_to_bet(row: sqlite3.Row) -> Bet:
    """Convert a database row to a Bet."""
    return Bet(
        bet_id=row["bet_id"],
        title=row["title"],
        creator_id=row["creator_id"],
        bet_type=BetType(row["bet_type"]),
        stake_type=StakeType(row["stake_type"]),
        stake_amount=_decimal(row["stake_amount"]),
        social_stake_description=row["social_stake_description"],
        options=json.loads(row["options"]),
        resolver_ids=json.loads(row["resolver_ids"]),
        max_participants=row["max_participants"],
        status=BetStatus(row["status"]),
        outcome=row["outcome"],
        resolution_reason=row["resolution_reason"],
        settlement_id=row["settlement_id"],
        deadline=from_iso(row["deadline"]),
        resolution_deadline=from_iso(row["resolution_deadline"]),
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
        closed_at=from_iso(row["closed_at"]),
        resolved_at=from_iso(row["resolved_at"]),
        cancelled_at=from_iso(row["cancelled_at"]),
        cancel_reason=row["cancel_reason"],
        loser_claimed_at=from_iso(row["loser_claimed_at"]),
        loser_proof_url=row["loser_proof_url"],
        loser_proof_description=row["loser_proof_description"],
        deadline_reminder_sent_at=from_iso(row["deadline_reminder_sent_at"]),
    )


# ==================== PARTICIPATION OPERATIONS ====================

def create_participation(conn: sqlite3.Connection, participation: Participation) -> str:
    """Insert a participation. Raises sqlite3.IntegrityError on a second one per user."""
    conn.execute("""
        INSERT INTO participations (
            participation_id, bet_id, user_id, chosen_option, predicted_value,
            stake_amount, payout, status, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        participation.participation_id,
        participation.bet_id,
        participation.user_id,
        participation.chosen_option,
        participation.predicted_value,
        str(participation.stake_amount),
        str(participation.payout),
        participation.status.value,
        to_iso(participation.created_at),
        to_iso(participation.updated_at),
    ))
    return participation.participation_id


def get_participation(conn: sqlite3.Connection, bet_id: str, user_id: str) -> Optional[Participation]:
    row = conn.execute(
        "SELECT * FROM participations WHERE bet_id = ? AND user_id = ?", (bet_id, user_id)
    ).fetchone()
    if row:
        return _row_to_participation(row)
    return None


def get_participations(conn: sqlite3.Connection, bet_id: str,
                       status: Optional[ParticipationStatus] = None) -> List[Participation]:
    """Get participations for a bet, ordered by user id."""
    if status is None:
        rows = conn.execute(
            "SELECT * FROM participations WHERE bet_id = ? ORDER BY user_id", (bet_id,)
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM participations WHERE bet_id = ? AND status = ? ORDER BY user_id",
            (bet_id, status.value)
        ).fetchall()
    return [_row_to_participation(row) for row in rows]


def count_participations(conn: sqlite3.Connection, bet_id: str) -> int:
    return conn.execute(
        "SELECT COUNT(*) FROM participations WHERE bet_id = ?", (bet_id,)
    ).fetchone()[0]


def update_participation(conn: sqlite3.Connection, participation_id: str,
                         updates: Dict[str, Any]) -> bool:
    updates["updated_at"] = utc_now()
    return _update(conn, "participations", "participation_id", participation_id, updates)


def _row_to_participation(row: sqlite3.Row) -> Participation:
    return Participation(
        participation_id=row["participation_id"],
        bet_id=row["bet_id"],
        user_id=row["user_id"],
        chosen_option=row["chosen_option"],
        predicted_value=row["predicted_value"],
        stake_amount=Decimal(row["stake_amount"]),
        payout=Decimal(row["payout"]),
        status=ParticipationStatus(row["status"]),
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
        settled_at=from_iso(row["settled_at"]),
    )


# ==================== VOTE OPERATIONS ====================

def create_vote(conn: sqlite3.Connection, vote: ResolutionVote) -> str:
    """Insert a vote and its winner rows. Raises sqlite3.IntegrityError on a repeat vote."""
    conn.execute("""
        INSERT INTO resolution_votes (vote_id, bet_id, resolver_id, outcome, reasoning, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    """, (
        vote.vote_id,
        vote.bet_id,
        vote.resolver_id,
        vote.outcome,
        vote.reasoning,
        to_iso(vote.created_at),
        to_iso(vote.updated_at),
    ))
    _insert_vote_winners(conn, vote.vote_id, vote.winner_ids)
    return vote.vote_id


def replace_vote_selection(conn: sqlite3.Connection, vote: ResolutionVote) -> bool:
    """Overwrite the selection of an existing vote (re-voting)."""
    updated = _update(conn, "resolution_votes", "vote_id", vote.vote_id, {
        "outcome": vote.outcome,
        "reasoning": vote.reasoning,
        "updated_at": vote.updated_at,
    })
    conn.execute("DELETE FROM resolution_vote_winners WHERE vote_id = ?", (vote.vote_id,))
    _insert_vote_winners(conn, vote.vote_id, vote.winner_ids)
    return updated


def _insert_vote_winners(conn: sqlite3.Connection, vote_id: str, winner_ids: List[str]):
    conn.executemany(
        "INSERT INTO resolution_vote_winners (vote_id, winner_id) VALUES (?, ?)",
        [(vote_id, winner_id) for winner_id in winner_ids]
    )


def get_vote(conn: sqlite3.Connection, bet_id: str, resolver_id: str) -> Optional[ResolutionVote]:
    row = conn.execute(
        "SELECT * FROM resolution_votes WHERE bet_id = ? AND resolver_id = ?", (bet_id, resolver_id)
    ).fetchone()
    if row:
        return _row_to_vote(conn, row)
    return None


def get_votes_for_bet(conn: sqlite3.Connection, bet_id: str) -> List[ResolutionVote]:
    """Get all votes for a bet."""
    rows = conn.execute(
        "SELECT * FROM resolution_votes WHERE bet_id = ? ORDER BY created_at", (bet_id,)
    ).fetchall()
    return [_row_to_vote(conn, row) for row in rows]


def _row_to_vote(conn: sqlite3.Connection, row: sqlite3.Row) -> ResolutionVote:
    winners = conn.execute(
        "SELECT winner_id FROM resolution_vote_winners WHERE vote_id = ? ORDER BY winner_id",
        (row["vote_id"],)
    ).fetchall()
    return ResolutionVote(
        vote_id=row["vote_id"],
        bet_id=row["bet_id"],
        resolver_id=row["resolver_id"],
        outcome=row["outcome"],
        winner_ids=[w["winner_id"] for w in winners],
        reasoning=row["reasoning"],
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
    )


# ==================== FULFILLMENT OPERATIONS ====================

def create_fulfillment(conn: sqlite3.Connection, fulfillment: Fulfillment) -> str:
    """Insert a confirmation. Raises sqlite3.IntegrityError on a repeat (bet, winner)."""
    conn.execute("""
        INSERT INTO fulfillments (fulfillment_id, bet_id, winner_id, notes, confirmed_at)
        VALUES (?, ?, ?, ?, ?)
    """, (
        fulfillment.fulfillment_id,
        fulfillment.bet_id,
        fulfillment.winner_id,
        fulfillment.notes,
        to_iso(fulfillment.confirmed_at),
    ))
    return fulfillment.fulfillment_id


def get_fulfillments_for_bet(conn: sqlite3.Connection, bet_id: str) -> List[Fulfillment]:
    rows = conn.execute(
        "SELECT * FROM fulfillments WHERE bet_id = ? ORDER BY confirmed_at", (bet_id,)
    ).fetchall()
    return [
        Fulfillment(
            fulfillment_id=row["fulfillment_id"],
            bet_id=row["bet_id"],
            winner_id=row["winner_id"],
            notes=row["notes"],
            confirmed_at=from_iso(row["confirmed_at"]),
        )
        for row in rows
    ]


# ==================== ACCOUNT / LEDGER OPERATIONS ====================

def get_balance(conn: sqlite3.Connection, user_id: str) -> Optional[Decimal]:
    row = conn.execute("SELECT balance FROM accounts WHERE user_id = ?", (user_id,)).fetchone()
    if row:
        return Decimal(row["balance"])
    return None


def ensure_account(conn: sqlite3.Connection, user_id: str) -> Decimal:
    """Return the user's balance, opening a zero-balance account if needed."""
    balance = get_balance(conn, user_id)
    if balance is not None:
        return balance
    now = to_iso(utc_now())
    conn.execute(
        "INSERT INTO accounts (user_id, balance, created_at, updated_at) VALUES (?, ?, ?, ?)",
        (user_id, "0.00", now, now)
    )
    return Decimal("0.00")


def set_balance(conn: sqlite3.Connection, user_id: str, balance: Decimal) -> bool:
    return _update(conn, "accounts", "user_id", user_id, {
        "balance": balance,
        "updated_at": utc_now(),
    })


def add_transaction(conn: sqlite3.Connection, tx: Transaction) -> str:
    """Append a ledger row."""
    conn.execute("""
        INSERT INTO transactions (
            tx_id, user_id, tx_type, amount, reason, balance_before,
            balance_after, correlation_id, bet_id, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        tx.tx_id,
        tx.user_id,
        tx.tx_type.value,
        str(tx.amount),
        tx.reason,
        str(tx.balance_before),
        str(tx.balance_after),
        tx.correlation_id,
        tx.bet_id,
        to_iso(tx.created_at),
    ))
    return tx.tx_id


def get_transactions(conn: sqlite3.Connection, user_id: Optional[str] = None,
                     correlation_id: Optional[str] = None,
                     limit: Optional[int] = None) -> List[Transaction]:
    """Ledger rows in the order they were written. With ``limit``, the most recent rows."""
    clauses = []
    params: List[Any] = []
    if user_id is not None:
        clauses.append("user_id = ?")
        params.append(user_id)
    if correlation_id is not None:
        clauses.append("correlation_id = ?")
        params.append(correlation_id)
    query = "SELECT * FROM transactions"
    if clauses:
        query += " WHERE " + " AND ".join(clauses)
    if limit is not None:
        query = f"SELECT * FROM ({query} ORDER BY seq DESC LIMIT ?)"
        params.append(limit)
    query += " ORDER BY seq"
    return [_row_to_transaction(row) for row in conn.execute(query, params).fetchall()]


def _row_to_transaction(row: sqlite3.Row) -> Transaction:
    return Transaction(
        tx_id=row["tx_id"],
        user_id=row["user_id"],
        tx_type=TransactionType(row["tx_type"]),
        amount=Decimal(row["amount"]),
        reason=row["reason"],
        balance_before=Decimal(row["balance_before"]),
        balance_after=Decimal(row["balance_after"]),
        correlation_id=row["correlation_id"],
        bet_id=row["bet_id"],
        created_at=from_iso(row["created_at"]),
    )
