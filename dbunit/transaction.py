"""
Transaction Guard

Wraps every test in one transaction per configured connection and rolls
them all back afterwards, so nothing a test writes survives it.

State machine per test: IDLE -> ACTIVE (begin) -> IDLE (rollback).

``begin`` is all-or-nothing: if opening the transaction fails on any
connection, the connections already begun are rolled back and closed before
the error is re-raised. ``rollback`` is safe to call when nothing is active,
so teardown can always run.
"""

import time
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.engine import Connection, RootTransaction
from sqlalchemy.orm import Session

from .connection import ConnectionManager
from .exceptions import TransactionError
from .logging import LogCategory, get_logger


class TransactionState(Enum):
    """Transaction guard state"""
    IDLE = "idle"
    ACTIVE = "active"


class TransactionGuard:
    """
    Begins and rolls back one transaction per connection name.

    Args:
        manager: Connection manager resolving names to engines
        connections: Names to wrap; ``None`` stands for the default connection
    """

    def __init__(self, manager: ConnectionManager,
                 connections: Iterable[Optional[str]] = (None,)):
        self.manager = manager
        self.connections: Tuple[Optional[str], ...] = tuple(connections) or (None,)
        self.logger = get_logger('transaction')
        self.state = TransactionState.IDLE
        self._active: Dict[str, Tuple[Connection, RootTransaction]] = {}
        self._sessions: Dict[str, Session] = {}
        self._started_at: Optional[float] = None

    @property
    def is_active(self) -> bool:
        return self.state is TransactionState.ACTIVE

    @property
    def names(self) -> List[str]:
        """Resolved connection names, duplicates removed, in configured order."""
        names: List[str] = []
        for name in self.connections:
            resolved = self.manager.resolve(name)
            if resolved not in names:
                names.append(resolved)
        return names

    def begin(self) -> None:
        """
        Begin a transaction on every configured connection.

        Raises:
            TransactionError: If a transaction is already active
        """
        if self.is_active:
            raise TransactionError("database transaction already active")

        names = self.names
        try:
            for name in names:
                connection = self.manager.connect(name)
                try:
                    transaction = connection.begin()
                except Exception:
                    connection.close()
                    raise
                self._active[name] = (connection, transaction)
        except Exception as exc:
            self.logger.error(
                "Failed to begin database transaction",
                category=LogCategory.TRANSACTION.value,
                begun=list(self._active),
                error=str(exc),
            )
            self._release()
            raise

        self.state = TransactionState.ACTIVE
        self._started_at = time.time()
        self.logger.debug(
            "Database transaction started",
            category=LogCategory.TRANSACTION.value,
            connections=names,
        )

    def rollback(self) -> None:
        """
        Roll back and disconnect every active connection.

        Every connection is processed even if one of them fails; the first
        failure is re-raised once all of them have been released.
        """
        if not self.is_active and not self._active:
            self.logger.debug("No database transaction to roll back",
                              category=LogCategory.TRANSACTION.value)
            return

        names = list(self._active)
        ended = [name for name, (_, transaction) in self._active.items()
                 if not transaction.is_active]
        errors = self._release()

        duration = time.time() - self._started_at if self._started_at else 0.0
        self._started_at = None
        self.logger.debug(
            "Database transaction rolled back",
            category=LogCategory.TRANSACTION.value,
            connections=names,
            duration_seconds=round(duration, 4),
        )
        if errors:
            raise errors[0]
        if ended:
            raise TransactionError(
                f"database transaction ended outside rollback on connection: {', '.join(ended)}",
                details={'connections': ended},
            )

    def _release(self) -> List[Exception]:
        errors: List[Exception] = []

        sessions, self._sessions = self._sessions, {}
        for session in sessions.values():
            try:
                session.close()
            except Exception as exc:
                errors.append(exc)

        active, self._active = self._active, {}
        for name, (connection, transaction) in active.items():
            try:
                if transaction.is_active:
                    transaction.rollback()
            except Exception as exc:
                self.logger.error(
                    "Failed to roll back database transaction",
                    category=LogCategory.TRANSACTION.value,
                    connection=name,
                    error=str(exc),
                )
                errors.append(exc)
            finally:
                connection.close()

        self.state = TransactionState.IDLE
        return errors

    def connection(self, name: Optional[str] = None) -> Connection:
        """The connection holding the active transaction for ``name``."""
        resolved = self.manager.resolve(name)
        try:
            connection, transaction = self._active[resolved]
        except KeyError:
            raise TransactionError(
                f"no active database transaction on connection: {resolved}"
            ) from None
        if not transaction.is_active:
            raise TransactionError(
                f"database transaction ended outside rollback on connection: {resolved}",
                details={'connections': [resolved]},
            )
        return connection

    def has_connection(self, name: Optional[str] = None) -> bool:
        return self.manager.resolve(name) in self._active

    def session(self, name: Optional[str] = None) -> Session:
        """
        ORM session bound to the transactional connection.

        The session works inside a SAVEPOINT of the test transaction:
        ``commit`` releases the savepoint and ``rollback`` (including the one
        after a failed flush) returns to it. Neither ends the test transaction.
        """
        resolved = self.manager.resolve(name)
        session = self._sessions.get(resolved)
        if session is None:
            session = Session(
                bind=self.connection(resolved),
                join_transaction_mode="create_savepoint",
                expire_on_commit=False,
            )
            self._sessions[resolved] = session
        else:
            # raises once the test transaction has ended
            self.connection(resolved)
        return session
