"""Domain error codes for the order engine.

Pure components return typed values (availability, field errors,
reconciliation outcomes); the service layer turns the failures among them
into these errors, and the HTTP layer maps each code to one status.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCode(Enum):
    """Domain error codes."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    STOCK_EXHAUSTED = "STOCK_EXHAUSTED"
    TICKET_INACTIVE = "TICKET_INACTIVE"
    OUTSIDE_SALE_WINDOW = "OUTSIDE_SALE_WINDOW"
    DUPLICATE_IDENTITY = "DUPLICATE_IDENTITY"
    IDENTIFIER_EXHAUSTED = "IDENTIFIER_EXHAUSTED"
    INVALID_STATE_FOR_OPERATION = "INVALID_STATE_FOR_OPERATION"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    TICKET_NOT_FOUND = "TICKET_NOT_FOUND"
    GATEWAY_UNAVAILABLE = "GATEWAY_UNAVAILABLE"
    NOTIFICATION_REJECTED = "NOTIFICATION_REJECTED"


HTTP_STATUS = {
    ErrorCode.VALIDATION_ERROR: 422,
    ErrorCode.STOCK_EXHAUSTED: 409,
    ErrorCode.TICKET_INACTIVE: 400,
    ErrorCode.OUTSIDE_SALE_WINDOW: 400,
    ErrorCode.DUPLICATE_IDENTITY: 409,
    ErrorCode.IDENTIFIER_EXHAUSTED: 503,
    ErrorCode.INVALID_STATE_FOR_OPERATION: 409,
    ErrorCode.ORDER_NOT_FOUND: 404,
    ErrorCode.TICKET_NOT_FOUND: 404,
    ErrorCode.GATEWAY_UNAVAILABLE: 502,
    ErrorCode.NOTIFICATION_REJECTED: 400,
}


@dataclass(eq=False)
class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

    @property
    def http_status(self) -> int:
        return HTTP_STATUS.get(self.code, 500)

    def to_response(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.code.value,
                "message": self.message,
                "details": self.details,
            }
        }


class ValidationError(DomainError):
    """Raised when submitted form data does not satisfy the field schema."""

    def __init__(self, field_errors: dict[str, list[str]]) -> None:
        super().__init__(
            code=ErrorCode.VALIDATION_ERROR,
            message="Submitted data is invalid",
            details={"fields": field_errors},
        )
        self.field_errors = field_errors


class StockExhausted(DomainError):
    """Raised when a ticket has fewer units left than requested."""

    def __init__(self, ticket_id: int, available: int | None = None) -> None:
        details: dict[str, Any] = {"ticket_id": ticket_id}
        if available is not None:
            details["available"] = available
        super().__init__(
            code=ErrorCode.STOCK_EXHAUSTED,
            message="Ticket is sold out",
            details=details,
        )
        self.ticket_id = ticket_id


class TicketInactive(DomainError):
    def __init__(self, ticket_id: int) -> None:
        super().__init__(
            code=ErrorCode.TICKET_INACTIVE,
            message="Ticket is not available for purchase",
            details={"ticket_id": ticket_id},
        )
        self.ticket_id = ticket_id


class OutsideSaleWindow(DomainError):
    def __init__(self, ticket_id: int) -> None:
        super().__init__(
            code=ErrorCode.OUTSIDE_SALE_WINDOW,
            message="Ticket is not on sale at this time",
            details={"ticket_id": ticket_id},
        )
        self.ticket_id = ticket_id


class DuplicateIdentity(DomainError):
    """Raised when an identity value already backs a live order."""

    def __init__(self, field_name: str) -> None:
        super().__init__(
            code=ErrorCode.DUPLICATE_IDENTITY,
            message="This identity is already registered for a ticket",
            details={"field": field_name},
        )
        self.field_name = field_name


class IdentifierExhausted(DomainError):
    def __init__(self, kind: str, attempts: int) -> None:
        super().__init__(
            code=ErrorCode.IDENTIFIER_EXHAUSTED,
            message=f"Could not allocate a unique {kind}",
            details={"kind": kind, "attempts": attempts},
        )
        self.kind = kind


class InvalidStateForOperation(DomainError):
    """Raised when an operation is not allowed in the order's status."""

    def __init__(self, operation: str, status: str) -> None:
        super().__init__(
            code=ErrorCode.INVALID_STATE_FOR_OPERATION,
            message=f"Cannot {operation} while order is {status}",
            details={"operation": operation, "status": status},
        )
        self.operation = operation
        self.status = status


class OrderNotFound(DomainError):
    def __init__(self, ref: str | int) -> None:
        super().__init__(
            code=ErrorCode.ORDER_NOT_FOUND,
            message="Order not found",
        )
        self.ref = ref


class TicketNotFound(DomainError):
    def __init__(self, ticket_id: int) -> None:
        super().__init__(
            code=ErrorCode.TICKET_NOT_FOUND,
            message="Ticket not found",
        )
        self.ticket_id = ticket_id


class GatewayUnavailable(DomainError):
    """Raised for any payment gateway transport, HTTP or parse failure."""

    def __init__(self, reason: str) -> None:
        super().__init__(
            code=ErrorCode.GATEWAY_UNAVAILABLE,
            message="Payment gateway is unavailable",
        )
        self.reason = reason


class NotificationRejected(DomainError):
    """Raised when a gateway notification fails authentication."""

    def __init__(self, reason: str) -> None:
        super().__init__(
            code=ErrorCode.NOTIFICATION_REJECTED,
            message="Invalid notification",
        )
        self.reason = reason
