# backend/retailpos/errors.py
"""
Error taxonomy for the POS core.

Every error carries a stable ``code``, a ``category`` and the HTTP status the
routes map it to. Precondition errors are raised before any mutation; apply
phase errors cause the surrounding transaction to roll back.

Categories:
- validation: malformed input, caller's fault, never retried
- not_found: unknown product/member/sale/document
- business_rule: stock, points, discount, cash, duplicates; resubmit corrected data
- external_dependency: payment collaborator or lock acquisition failed; the caller
  may retry with a fresh attempt, the engine never replays on its own
- internal_consistency: ledger/stock divergence; fatal for the transaction
"""

from __future__ import annotations


class PosError(Exception):
    """Base class for all POS core errors."""

    code = "pos_error"
    category = "internal"
    http_status = 500

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "code": self.code,
            "category": self.category,
            "details": self.details,
        }


class ValidationError(PosError, ValueError):
    """400-level input problem."""

    code = "validation_error"
    category = "validation"
    http_status = 400


# =============================================================================
# NOT FOUND
# =============================================================================

class NotFoundError(PosError):
    code = "not_found"
    category = "not_found"
    http_status = 404


class ProductNotFoundError(NotFoundError):
    code = "product_not_found"


class MemberNotFoundError(NotFoundError):
    code = "member_not_found"


class SaleNotFoundError(NotFoundError):
    code = "sale_not_found"


class StockInNotFoundError(NotFoundError):
    code = "stock_in_not_found"


# =============================================================================
# BUSINESS RULES (409)
# =============================================================================

class BusinessRuleViolation(PosError):
    code = "business_rule_violation"
    category = "business_rule"
    http_status = 409


class OutOfStockError(BusinessRuleViolation):
    code = "out_of_stock"


class InsufficientPointsError(BusinessRuleViolation):
    code = "insufficient_points"


class InvalidDiscountError(BusinessRuleViolation):
    code = "invalid_discount"


class InsufficientCashError(BusinessRuleViolation):
    code = "insufficient_cash"


class DuplicateSaleError(BusinessRuleViolation):
    code = "duplicate_sale"


class CartChangedError(BusinessRuleViolation):
    """Prices moved between payment approval and commit."""

    code = "cart_changed"


class DuplicateMemberError(BusinessRuleViolation):
    code = "duplicate_member"


class StockInStateError(BusinessRuleViolation):
    code = "stock_in_state"


class ReturnQuantityError(BusinessRuleViolation):
    code = "return_quantity"


# =============================================================================
# EXTERNAL DEPENDENCIES
# =============================================================================

class ExternalDependencyFailure(PosError):
    code = "external_dependency_failure"
    category = "external_dependency"
    http_status = 502
    retriable = True


class PaymentDeclinedError(ExternalDependencyFailure):
    code = "payment_declined"
    http_status = 402


class PaymentTimeoutError(ExternalDependencyFailure):
    code = "payment_timeout"
    http_status = 504


class PaymentUnavailableError(ExternalDependencyFailure):
    code = "payment_unavailable"
    http_status = 502


class LockTimeoutError(ExternalDependencyFailure):
    """Row/database lock could not be acquired in time; safe to retry."""

    code = "lock_timeout"
    http_status = 503


# =============================================================================
# INTERNAL CONSISTENCY
# =============================================================================

class InternalConsistencyError(PosError):
    code = "internal_consistency_error"
    category = "internal_consistency"
    http_status = 500


class LedgerInconsistencyError(InternalConsistencyError):
    """Stock field and stock ledger disagree."""

    code = "ledger_inconsistency"
