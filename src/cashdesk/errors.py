"""Exceptions raised by ledger transitions that refuse to apply."""

from __future__ import annotations


class BusinessRuleViolation(Exception):
    """Raised when a requested transition violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, customer, provider or sale is unknown."""


class RegisterStateError(BusinessRuleViolation):
    """Raised when the cash register is not in the state a transition needs."""


class CustomerHasDebtError(BusinessRuleViolation):
    """Raised when deleting a customer who still owes money."""


class CartError(BusinessRuleViolation):
    """Raised when a cart edit would produce an invalid line."""


class QuoteAlreadyConvertedError(BusinessRuleViolation):
    """Raised when a quote that already produced a sale is converted again."""


__all__ = [
    "BusinessRuleViolation",
    "MissingReferenceError",
    "RegisterStateError",
    "CustomerHasDebtError",
    "CartError",
    "QuoteAlreadyConvertedError",
]
