"""
Custom Exception Hierarchy

Every ledger failure maps to one exception type carrying an error code and an
HTTP status, so the service layer and the API report errors the same way.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"

    # Transaction errors (2xxx)
    TRANSACTION_NOT_FOUND = "ERR_2001"
    TRANSACTION_ALREADY_VOIDED = "ERR_2002"

    # Customer errors (3xxx)
    CUSTOMER_NOT_FOUND = "ERR_3001"

    # Inventory errors (4xxx)
    INSUFFICIENT_INVENTORY = "ERR_4001"
    INVENTORY_REVERSAL_FAILED = "ERR_4002"

    # Ledger consistency errors (5xxx)
    CONCURRENT_MODIFICATION = "ERR_5001"
    REPLAY_INCONSISTENCY = "ERR_5002"
    REPLAY_TIMEOUT = "ERR_5003"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails, before anything is written"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class CustomerNotFoundError(NotFoundException):
    def __init__(self, customer_id: int):
        super().__init__("Customer", customer_id, ErrorCode.CUSTOMER_NOT_FOUND)


class TransactionNotFoundError(NotFoundException):
    def __init__(self, transaction_id: int):
        super().__init__("Transaction", transaction_id, ErrorCode.TRANSACTION_NOT_FOUND)


class LedgerException(AppException):
    """Base exception for ledger operations that were rejected or aborted"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        status_code: int = 409,
        customer_id: int | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )
        if customer_id:
            self.details["customer_id"] = customer_id


class AlreadyVoidedError(LedgerException):
    """Raised when undo is requested for a transaction that is already voided"""

    def __init__(self, transaction_id: int, voided_at: Any = None):
        super().__init__(
            message=f"Transaction {transaction_id} is already voided",
            error_code=ErrorCode.TRANSACTION_ALREADY_VOIDED,
            details={
                "transaction_id": transaction_id,
                "voided_at": str(voided_at) if voided_at else None,
            }
        )


class InsufficientInventoryError(LedgerException):
    """Raised when the inventory collaborator cannot satisfy a posting"""

    def __init__(self, failures: list[dict[str, Any]], customer_id: int | None = None):
        super().__init__(
            message="Insufficient inventory for transaction",
            error_code=ErrorCode.INSUFFICIENT_INVENTORY,
            customer_id=customer_id,
            details={"failures": failures}
        )


class InventoryReversalFailedError(LedgerException):
    """Raised when inverse inventory transitions fail during undo"""

    def __init__(self, transaction_id: int, failures: list[dict[str, Any]]):
        super().__init__(
            message=f"Inventory reversal failed for transaction {transaction_id}",
            error_code=ErrorCode.INVENTORY_REVERSAL_FAILED,
            details={"transaction_id": transaction_id, "failures": failures}
        )


class ConcurrentModificationError(LedgerException):
    """Raised when the optimistic version check fails on write; caller retries"""

    def __init__(self, customer_id: int):
        super().__init__(
            message=f"Customer {customer_id} ledger was modified concurrently, retry the operation",
            error_code=ErrorCode.CONCURRENT_MODIFICATION,
            customer_id=customer_id
        )


class ReplayInconsistencyError(LedgerException):
    """Raised when a replayed balance diverges from a stored checkpoint.

    Never auto-corrected: the customer needs manual reconciliation.
    """

    def __init__(
        self,
        customer_id: int,
        transaction_id: int,
        stored_balance: Any,
        replayed_balance: Any
    ):
        super().__init__(
            message=(
                f"Replayed balance for customer {customer_id} diverges from "
                f"checkpoint at transaction {transaction_id}"
            ),
            error_code=ErrorCode.REPLAY_INCONSISTENCY,
            status_code=500,
            customer_id=customer_id,
            details={
                "transaction_id": transaction_id,
                "stored_balance": str(stored_balance),
                "replayed_balance": str(replayed_balance),
            }
        )


class ReplayTimeoutError(LedgerException):
    """Raised when a history replay exceeds its time budget"""

    def __init__(self, customer_id: int | None, timeout_seconds: float, folded: int):
        super().__init__(
            message=f"Ledger replay timed out after {timeout_seconds}s",
            error_code=ErrorCode.REPLAY_TIMEOUT,
            status_code=503,
            customer_id=customer_id,
            details={"timeout_seconds": timeout_seconds, "transactions_folded": folded}
        )
