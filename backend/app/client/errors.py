from __future__ import annotations


class PurchaseError(Exception):
    """Base class for everything the purchase client reports to its caller."""


class NotSignedIn(PurchaseError):
    pass


class ServiceUnavailable(PurchaseError):
    pass


class PurchaseCanceled(PurchaseError):
    pass


class PurchaseFailed(PurchaseError):
    pass


class VerificationPending(PurchaseError):
    pass


class AlreadyLinkedToAnotherAccount(PurchaseError):
    pass


class VerificationFailed(PurchaseError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)
