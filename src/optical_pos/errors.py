"""Exception hierarchy shared by every layer of the optical POS package."""

from __future__ import annotations

from typing import Sequence


class PosError(Exception):
    """Base class for all errors raised deliberately by the package."""


class ValidationError(PosError, ValueError):
    """Raised for malformed or out-of-range input that cannot be clamped."""


class MissingReferenceError(ValidationError):
    """Raised when a referenced card, order, product or request is unknown."""


class BusinessRuleViolation(PosError):
    """Raised when a requested operation breaks an order workflow rule."""


class StockInsufficientError(PosError):
    """Raised when applying stock deltas would drive any row below zero."""

    def __init__(self, shortages: Sequence[tuple[str, str, int, int]]):
        self.shortages = list(shortages)
        details = ", ".join(
            f"{product_id}@{branch} (available {available}, requested {requested})"
            for product_id, branch, available, requested in self.shortages
        )
        super().__init__(f"Insufficient stock: {details}")


class ConcurrencyConflictError(PosError):
    """Raised when a compare-and-swap write detects a concurrent writer."""


class ExternalStoreError(PosError):
    """Raised when the backing store is unreachable or rejects a write."""


__all__ = [
    "PosError",
    "ValidationError",
    "MissingReferenceError",
    "BusinessRuleViolation",
    "StockInsufficientError",
    "ConcurrencyConflictError",
    "ExternalStoreError",
]
