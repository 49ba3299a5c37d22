# app/routes/subscribers.py
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, EmailStr
from typing import Optional
import logging

from app.dependencies import Services, get_services, get_tenant_id
from app.models.subscriber import (
    RevenueStats,
    Subscriber,
    SubscriberAttributes,
    SubscriberPage,
    SubscriberUpdate,
    TenantUsageStats,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/subscribers", tags=["subscribers"])

class SubscribeRequest(SubscriberAttributes):
    email: EmailStr
    campaign_id: Optional[str] = None

class RevenueRequest(BaseModel):
    campaign_id: str
    amount: float
    order_id: str
    currency: str = "USD"

@router.post("", response_model=Subscriber)
async def create_subscriber(
    request: SubscribeRequest,
    tenant_id: str = Depends(get_tenant_id),
    services: Services = Depends(get_services)
):
    """Subscribe an address; an unsubscribed address is reactivated"""
    attrs = SubscriberAttributes.model_validate(
        request.model_dump(exclude={"email", "campaign_id"})
    )
    return await services.subscribers.subscribe(
        tenant_id, request.email, attrs, campaign_id=request.campaign_id
    )

@router.get("", response_model=SubscriberPage)
async def list_subscribers(
    status: str = Query("all", pattern="^(all|active|unsubscribed|bounced|complained)$"),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    search: str = "",
    sort_by: str = "subscribed_at",
    sort_direction: str = Query("desc", pattern="^(asc|desc)$"),
    tenant_id: str = Depends(get_tenant_id),
    services: Services = Depends(get_services)
):
    return await services.subscribers.list(
        tenant_id,
        status=status,
        page=page,
        page_size=page_size,
        search=search,
        sort_by=sort_by,
        sort_direction=sort_direction,
    )

@router.get("/stats", response_model=TenantUsageStats)
async def get_subscriber_stats(
    tenant_id: str = Depends(get_tenant_id),
    services: Services = Depends(get_services)
):
    return await services.subscribers.get_stats(tenant_id)

@router.get("/revenue", response_model=RevenueStats)
async def get_revenue_stats(
    tenant_id: str = Depends(get_tenant_id),
    services: Services = Depends(get_services)
):
    return await services.subscribers.get_revenue_stats(tenant_id)

@router.get("/{subscriber_id}", response_model=Subscriber)
async def get_subscriber(
    subscriber_id: str,
    tenant_id: str = Depends(get_tenant_id),
    services: Services = Depends(get_services)
):
    return await services.subscribers.get(tenant_id, subscriber_id)

@router.patch("/{subscriber_id}", response_model=Subscriber)
async def update_subscriber(
    subscriber_id: str,
    fields: SubscriberUpdate,
    tenant_id: str = Depends(get_tenant_id),
    services: Services = Depends(get_services)
):
    return await services.subscribers.update(tenant_id, subscriber_id, fields)

@router.delete("/{subscriber_id}")
async def delete_subscriber(
    subscriber_id: str,
    tenant_id: str = Depends(get_tenant_id),
    services: Services = Depends(get_services)
):
    await services.subscribers.delete(tenant_id, subscriber_id)
    return {"success": True, "message": "Subscriber deleted"}

@router.post("/{subscriber_id}/revenue")
async def track_revenue(
    subscriber_id: str,
    request: RevenueRequest,
    tenant_id: str = Depends(get_tenant_id),
    services: Services = Depends(get_services)
):
    record = await services.subscribers.track_revenue(
        tenant_id,
        subscriber_id,
        request.campaign_id,
        request.amount,
        request.order_id,
        currency=request.currency,
    )
    return {"success": True, "revenue_id": record.id}
