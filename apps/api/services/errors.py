"""Domain errors shared by the entitlement services."""

from fastapi import HTTPException


class StorageUnavailable(Exception):
    """A ledger or credit-store read/write failed; callers pick fail-open or fail-closed."""


class PaymentVerificationFailed(HTTPException):
    """Webhook/callback could not be authenticated or matched; no state was changed."""

    def __init__(self, status_code: int, detail: str):
        super().__init__(status_code=status_code, detail=detail)
