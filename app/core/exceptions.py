# app/core/exceptions.py
"""
Exception hierarchy for the campaign service.
All exceptions inherit from CampaignServiceError so the HTTP layer can map
them to responses in one place.
"""

from typing import Optional


class CampaignServiceError(Exception):
    """Base exception for all campaign service errors."""

    def __init__(
        self,
        message: str,
        error_code: str = "CAMPAIGN_SERVICE_ERROR",
        details: Optional[dict] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


# ===========================================
# Credit Exceptions
# ===========================================


class InsufficientCredit(CampaignServiceError):
    """Not enough credit of a kind; the tenant needs to buy more."""

    def __init__(self, tenant_id: str, kind: str, requested: int, available: int):
        self.tenant_id = tenant_id
        self.kind = kind
        self.requested = requested
        self.available = available
        super().__init__(
            message=f"Insufficient {kind} credits: requested {requested}, available {available}",
            error_code="INSUFFICIENT_CREDIT",
            details={
                "tenant_id": tenant_id,
                "kind": kind,
                "requested": requested,
                "available": available,
            },
        )


# ===========================================
# Storage Exceptions
# ===========================================


class StorageUnavailable(CampaignServiceError):
    """Storage layer could not be reached. Retry with backoff."""

    def __init__(self, message: str = "Storage is temporarily unavailable"):
        super().__init__(message, error_code="STORAGE_UNAVAILABLE")


class DuplicateSubscriberRace(CampaignServiceError):
    """A concurrent subscribe created the same (tenant, email) row first."""

    def __init__(self, tenant_id: str, email: str):
        self.tenant_id = tenant_id
        self.email = email
        super().__init__(
            message=f"Concurrent subscribe detected for {email}",
            error_code="DUPLICATE_SUBSCRIBER_RACE",
            details={"tenant_id": tenant_id, "email": email},
        )


# ===========================================
# Subscriber Exceptions
# ===========================================


class SubscriberNotFound(CampaignServiceError):
    def __init__(self, subscriber_id: str):
        super().__init__(
            message=f"Subscriber {subscriber_id} not found",
            error_code="SUBSCRIBER_NOT_FOUND",
            details={"subscriber_id": subscriber_id},
        )


class InvalidUnsubscribeToken(CampaignServiceError):
    """Token failed decode, signature, expiry or email match checks."""

    def __init__(self, reason: str = "invalid"):
        self.reason = reason
        super().__init__(
            message="This link is invalid or expired",
            error_code="INVALID_UNSUBSCRIBE_TOKEN",
            details={"reason": reason},
        )


# ===========================================
# Rendering Exceptions
# ===========================================


class TemplateRenderError(CampaignServiceError):
    def __init__(self, message: str, block_index: Optional[int] = None):
        self.block_index = block_index
        super().__init__(
            message,
            error_code="TEMPLATE_RENDER_ERROR",
            details={"block_index": block_index} if block_index is not None else {},
        )
