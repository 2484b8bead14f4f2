from __future__ import annotations

GENERIC_MESSAGE = "Unable to verify your purchase. Please try again."


class VerificationError(Exception):
    """Base class for every failure of the purchase verification path.

    ``user_message`` is the only text that ever reaches the caller; the
    exception message itself stays in the server logs.
    """

    user_message = GENERIC_MESSAGE
    status_code = 400
    code: str | None = None


class Unauthorized(VerificationError):
    user_message = "Please sign in again to complete your purchase."


class InvalidInput(VerificationError):
    pass


class ProviderAuthFailure(VerificationError):
    pass


class ProviderQueryFailure(VerificationError):
    pass


class SubscriptionNotActive(VerificationError):
    user_message = "This subscription is not active yet. Please wait a moment and try again."


class InvalidProduct(VerificationError):
    user_message = "This product is not available. Please contact support."


class AlreadyExpiredAtVerification(VerificationError):
    user_message = "This subscription has expired. Please purchase a new one."


class OwnershipConflict(VerificationError):
    user_message = "This purchase is already linked to another account"
    status_code = 409
    code = "PURCHASE_ALREADY_LINKED"


class AcknowledgmentFailure(VerificationError):
    pass


class StoreWriteFailure(VerificationError):
    user_message = "Purchase verified but failed to save. Please contact support."


class StoreReadFailure(VerificationError):
    pass
