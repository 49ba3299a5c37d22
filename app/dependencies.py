# app/dependencies.py
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from app.campaigns.dispatcher import CampaignDispatcher
from app.config import Settings
from app.credits.ledger import CreditLedger
from app.emails.renderer import EmailRenderer
from app.services.email_service import EmailDelivery, EmailService, LogEmailDelivery
from app.storage import MemoryBackend, PostgresBackend, StorageBackend
from app.subscribers.service import SubscriberStore
from app.unsubscribe.tokens import UnsubscribeTokenService


@dataclass
class Services:
    settings: Settings
    storage: StorageBackend
    subscribers: SubscriberStore
    ledger: CreditLedger
    tokens: UnsubscribeTokenService
    renderer: EmailRenderer
    delivery: EmailDelivery
    dispatcher: CampaignDispatcher


def build_storage(settings: Settings) -> StorageBackend:
    if settings.storage_backend == "memory":
        return MemoryBackend()
    if settings.storage_backend == "postgres":
        return PostgresBackend()
    raise ValueError(f"Unknown storage backend: {settings.storage_backend}")


def build_delivery(settings: Settings) -> EmailDelivery:
    if settings.email_delivery == "log":
        return LogEmailDelivery()
    if settings.email_delivery == "ses":
        return EmailService(
            region=settings.aws_region,
            support_email=settings.support_email,
            configuration_set=settings.ses_configuration_set,
            max_workers=settings.dispatch_concurrency,
        )
    raise ValueError(f"Unknown email delivery: {settings.email_delivery}")


def build_services(
    settings: Settings,
    storage: Optional[StorageBackend] = None,
    delivery: Optional[EmailDelivery] = None,
) -> Services:
    """Wire every component explicitly; tests pass their own storage and delivery"""
    storage = storage or build_storage(settings)
    delivery = delivery or build_delivery(settings)

    subscribers = SubscriberStore(storage)
    ledger = CreditLedger(storage)
    tokens = UnsubscribeTokenService(
        secret=settings.unsubscribe_secret,
        base_url=settings.frontend_url,
        ttl_days=settings.unsubscribe_token_ttl_days,
    )
    renderer = EmailRenderer(
        tokens,
        company_name=settings.company_name,
        company_address=settings.company_address,
        preferences_url=settings.preferences_url,
    )
    dispatcher = CampaignDispatcher(
        storage,
        subscribers,
        ledger,
        renderer,
        delivery,
        concurrency=settings.dispatch_concurrency,
    )
    return Services(
        settings=settings,
        storage=storage,
        subscribers=subscribers,
        ledger=ledger,
        tokens=tokens,
        renderer=renderer,
        delivery=delivery,
        dispatcher=dispatcher,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_tenant_id(x_tenant_id: Optional[str] = Header(None)) -> str:
    """Tenant resolved by the upstream gateway and passed as X-Tenant-ID - REQUIRED"""
    if not x_tenant_id or not x_tenant_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing tenant"
        )
    return x_tenant_id.strip()
