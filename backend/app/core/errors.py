"""
Domain error taxonomy.

Services raise these; HTTP routes and jobs translate them. Every error
carries a stable ``code`` used in API responses.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any


class DomainError(Exception):
    code = "error"
    status_code = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(DomainError):
    code = "validation_error"
    status_code = 422


class NotFoundError(DomainError):
    code = "not_found"
    status_code = 404


class InvalidStateError(DomainError):
    code = "invalid_state"
    status_code = 409


class ConfigurationError(DomainError):
    code = "configuration_error"
    status_code = 500


class RunInProgressError(DomainError):
    code = "run_in_progress"
    status_code = 409


class TransactionError(DomainError):
    code = "transaction_error"
    status_code = 500


class ReconciliationError(DomainError):
    code = "reconciliation_error"
    status_code = 422


class InsufficientStock(DomainError):
    code = "insufficient_stock"
    status_code = 409

    def __init__(self, product_id: int, requested: Decimal, available: Decimal) -> None:
        super().__init__(
            f"Insufficient stock for product {product_id} "
            f"(requested={requested}, available={available})",
            product_id=product_id,
            requested=str(requested),
            available=str(available),
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class SupplierApiError(DomainError):
    """
    Failure talking to a supplier.

    ``kind`` is one of: auth, not_found, rate_limited, server_error, network,
    unsupported, invalid_request, invalid_response, unknown. Only rate limits,
    server errors and network failures are worth retrying.
    """

    code = "supplier_api_error"
    status_code = 502

    RETRYABLE_KINDS = frozenset({"rate_limited", "server_error", "network"})

    def __init__(self, kind: str, message: str, *, status: int | None = None) -> None:
        super().__init__(message, kind=kind, status=status)
        self.kind = kind
        self.status = status

    @property
    def retryable(self) -> bool:
        return self.kind in self.RETRYABLE_KINDS
