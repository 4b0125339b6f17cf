"""
Error taxonomy shared by services, the gateway adapter and the API layer.

Each class carries the HTTP status the API renders it with; the
exception handlers in ``rentacar.api.app`` do the mapping.
"""

from __future__ import annotations


class RentalError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(RentalError):
    """Bad input shape or range, detected before any mutation."""

    status_code = 400


class ConflictError(RentalError):
    """Date overlap, maintenance, or an illegal state transition."""

    status_code = 409


class PaymentMismatchError(ConflictError):
    """Gateway reports a different order or amount than expected."""


class PaymentNotCompletedError(RentalError):
    status_code = 400


class NotFoundError(RentalError):
    status_code = 404


class TransactionError(RentalError):
    """Storage layer aborted the unit of work."""

    status_code = 500


# ── Payment gateway ───────────────────────────────────────────────────


class GatewayError(RentalError):
    status_code = 502


class GatewayNotFound(GatewayError):
    status_code = 400


class GatewayUnauthorized(GatewayError):
    status_code = 401


class GatewayExpired(GatewayError):
    status_code = 400
