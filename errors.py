"""Storefront domain exceptions.

Raised by the catalog, order and profile modules when a rule is violated.
The API layer registers handlers that turn them into JSON error responses.
"""
from typing import Dict, Optional


class StoreFrontError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(StoreFrontError):
    """Malformed input caught before any write is attempted."""

    status_code = 422

    def __init__(self, message: str, errors: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.errors = errors or {}


class Unauthenticated(StoreFrontError):
    """No identity, or an anonymous one, where a signed-in user is required."""

    status_code = 401


class PermissionDenied(StoreFrontError):
    """The caller is signed in but not allowed to do this."""

    status_code = 403


class NotFound(StoreFrontError):
    status_code = 404


class InvalidTransition(StoreFrontError):
    """The order status change is not allowed from the current status."""

    status_code = 409


class StoreError(StoreFrontError):
    """The document store failed during a read, write or subscription."""

    status_code = 503
