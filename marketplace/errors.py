# marketplace/errors.py
from typing import Any, Dict, Optional


class MarketplaceError(Exception):
    """Base error rendered as ``{"success": false, "error": ..., "code": ...}``."""
    status_code = 500
    code = "internal_error"
    default_message = "An unexpected error occurred"

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or self.default_message
        self.extra: Dict[str, Any] = extra
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.message, "code": self.code, **self.extra}


class ValidationFailed(MarketplaceError):
    status_code = 400
    code = "validation_failed"
    default_message = "Validation failed"


class Unauthorized(MarketplaceError):
    status_code = 401
    code = "unauthorized"
    default_message = "Missing auth token"


class Forbidden(MarketplaceError):
    status_code = 403
    code = "forbidden"
    default_message = "Access denied"


class NotFound(MarketplaceError):
    status_code = 404
    code = "not_found"
    default_message = "Not found"


# ---------- checkout ----------
class CheckoutError(MarketplaceError):
    code = "checkout_failed"


class InsufficientCredit(CheckoutError):
    status_code = 400
    code = "insufficient_credit"
    default_message = "Insufficient available credit for this order"


class NoValidItems(CheckoutError):
    status_code = 400
    code = "no_valid_items"
    default_message = "No valid items to process"


class OrderCreateFailed(CheckoutError):
    code = "order_create_failed"
    default_message = "Error creating order"


class ItemInsertFailed(CheckoutError):
    code = "item_insert_failed"
    default_message = "Error adding order items"


class CreditUpdateFailed(CheckoutError):
    code = "credit_update_failed"
    default_message = "Error updating credit"


# ---------- accounts / identity ----------
class EmailAlreadyRegistered(MarketplaceError):
    status_code = 400
    code = "email_already_registered"


class IdentityProviderError(MarketplaceError):
    status_code = 502
    code = "identity_provider_error"
    default_message = "Authentication system error"


class IdentityAlreadyExists(IdentityProviderError):
    status_code = 409
    code = "identity_already_exists"
    default_message = "A user with this email address has already been registered"


class StaleIdentityPersists(MarketplaceError):
    status_code = 409
    code = "stale_identity_persists"
    default_message = "A previous account with this email is still being removed. Try again shortly."


class ProfileCreateFailed(MarketplaceError):
    code = "profile_create_failed"
    default_message = "Failed to create user profile"


class IdentityLookupFailed(MarketplaceError):
    status_code = 400
    code = "identity_lookup_failed"
    default_message = "Failed to look up authentication users"
