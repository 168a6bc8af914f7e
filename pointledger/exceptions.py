"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from datetime import datetime


class PointsError(Exception):
    """Base exception for all points ledger errors."""

    pass


class InsufficientFundsError(PointsError):
    """Raised when a user's free + paid points cannot cover a spend."""

    def __init__(self, user_id: int, available: int, required: int) -> None:
        self.user_id = user_id
        self.available = available
        self.required = required
        super().__init__(
            f"Insufficient points for user {user_id}. Available: {available}, Required: {required}"
        )


class ConcurrentModificationError(PointsError):
    """Raised when the database aborts a transaction on a serialization conflict."""

    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"Concurrent modification detected for {resource}")


class LedgerIntegrityViolation(PointsError):
    """Raised when a ledger entry's balance is outside [0, amount]."""

    def __init__(self, entry_id: int, balance: int, amount: int) -> None:
        self.entry_id = entry_id
        self.balance = balance
        self.amount = amount
        super().__init__(
            f"Ledger entry {entry_id} has balance {balance} outside [0, {amount}]"
        )


class MigrationAlreadyRunError(PointsError):
    """Raised when the ledger already holds migration entries."""

    def __init__(self, existing_entry_id: int) -> None:
        self.existing_entry_id = existing_entry_id
        super().__init__(
            f"Point migration already ran (found migration entry {existing_entry_id})"
        )


class DatabaseUnavailableError(PointsError):
    """Raised when the database cannot be reached."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Database unavailable: {message}")


class AlreadyAttendedError(PointsError):
    """Raised when a user already claimed today's attendance bonus."""

    def __init__(self, user_id: int, attended_at: datetime) -> None:
        self.user_id = user_id
        self.attended_at = attended_at
        super().__init__(f"User {user_id} already attended at {attended_at.isoformat()}")


class WriteVerificationError(PointsError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(PointsError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")
