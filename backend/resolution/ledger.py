"""
Ledger Writer - RivalPicks

Every credit movement updates the user's balance and appends an immutable
transaction row carrying the balance before and after, in one atomic unit.
Balances never go negative.
"""

import logging
import sqlite3
from decimal import Decimal
from typing import List, Optional, Tuple

from resolution import database as db
from resolution.database import Database
from resolution.exceptions import InsufficientBalanceError, InvalidAmountError
from resolution.locks import KeyedLock, user_key
from resolution.models import (
    Transaction, TransactionType, REASON_DEPOSIT,
    generate_correlation_id, generate_id, to_money, utc_now,
)

logger = logging.getLogger(__name__)


class LedgerWriter:
    """Applies credit movements with balance snapshots."""

    def __init__(self, database: Database, locks: KeyedLock = None):
        self.database = database
        self.locks = locks or KeyedLock()

    def record_transaction(
        self,
        user_id: str,
        tx_type: TransactionType,
        amount,
        reason: str,
        correlation_id: Optional[str] = None,
        bet_id: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Transaction:
        """
        Move ``amount`` in or out of a user's balance.

        Pass ``conn`` to make the write part of a caller's transaction (a bet
        settlement); otherwise the write commits on its own.

        Raises:
            InvalidAmountError: amount is not positive
            InsufficientBalanceError: a DEBIT/TRANSFER_OUT would go negative
        """
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidAmountError(f"Amount must be positive, got {amount}")

        # Lock order is bet lock, then the sqlite write lock, then user locks.
        if conn is None:
            with self.database.atomic() as own_conn:
                return self.record_transaction(
                    user_id, tx_type, amount, reason,
                    correlation_id=correlation_id, bet_id=bet_id, conn=own_conn,
                )
        with self.locks.hold(user_key(user_id)):
            return self._apply(conn, user_id, tx_type, amount, reason, correlation_id, bet_id)

    def _apply(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        tx_type: TransactionType,
        amount: Decimal,
        reason: str,
        correlation_id: Optional[str],
        bet_id: Optional[str],
    ) -> Transaction:
        current = db.get_balance(conn, user_id)
        balance_before = current if current is not None else Decimal("0.00")

        if tx_type.is_increase:
            balance_after = balance_before + amount
        else:
            balance_after = balance_before - amount
        if balance_after < 0:
            logger.warning(f"Rejected {tx_type.value} of {amount} for {user_id}: balance {balance_before}")
            raise InsufficientBalanceError(user_id, balance_before, amount)

        if current is None:
            db.ensure_account(conn, user_id)
        db.set_balance(conn, user_id, balance_after)

        tx = Transaction(
            tx_id=generate_id("tx_"),
            user_id=user_id,
            tx_type=tx_type,
            amount=amount,
            reason=reason,
            balance_before=balance_before,
            balance_after=balance_after,
            correlation_id=correlation_id,
            bet_id=bet_id,
            created_at=utc_now(),
        )
        db.add_transaction(conn, tx)
        logger.debug(f"{tx_type.value} {amount} for {user_id} ({reason}): {balance_before} -> {balance_after}")
        return tx

    def transfer(
        self,
        from_user_id: str,
        to_user_id: str,
        amount,
        reason: str,
        correlation_id: Optional[str] = None,
        bet_id: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Tuple[Transaction, Transaction]:
        """Move credits between two users as a TRANSFER_OUT / TRANSFER_IN pair."""
        if from_user_id == to_user_id:
            raise InvalidAmountError("Cannot transfer credits to the same user")
        correlation_id = correlation_id or generate_correlation_id()

        if conn is None:
            with self.database.atomic() as own_conn:
                return self.transfer(
                    from_user_id, to_user_id, amount, reason,
                    correlation_id=correlation_id, bet_id=bet_id, conn=own_conn,
                )
        with self.locks.hold_many([user_key(from_user_id), user_key(to_user_id)]):
            return self._transfer(conn, from_user_id, to_user_id, amount, reason, correlation_id, bet_id)

    def _transfer(self, conn, from_user_id, to_user_id, amount, reason, correlation_id, bet_id):
        out_tx = self.record_transaction(
            from_user_id, TransactionType.TRANSFER_OUT, amount, reason,
            correlation_id=correlation_id, bet_id=bet_id, conn=conn,
        )
        in_tx = self.record_transaction(
            to_user_id, TransactionType.TRANSFER_IN, amount, reason,
            correlation_id=correlation_id, bet_id=bet_id, conn=conn,
        )
        return out_tx, in_tx

    def deposit(self, user_id: str, amount, reason: str = REASON_DEPOSIT) -> Transaction:
        """Top up a user's balance."""
        tx = self.record_transaction(
            user_id, TransactionType.CREDIT, amount, reason,
            correlation_id=generate_correlation_id(),
        )
        logger.info(f"Deposited {tx.amount} for {user_id}, balance {tx.balance_after}")
        return tx

    def get_balance(self, user_id: str) -> Decimal:
        with self.database.get_connection() as conn:
            balance = db.get_balance(conn, user_id)
        return balance if balance is not None else Decimal("0.00")

    def get_transactions(
        self,
        user_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Transaction]:
        with self.database.get_connection() as conn:
            return db.get_transactions(conn, user_id=user_id, correlation_id=correlation_id, limit=limit)
