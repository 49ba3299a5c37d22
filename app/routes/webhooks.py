# app/routes/webhooks.py - Delivery provider feedback (bounces, complaints, engagement)
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import Optional
from enum import Enum
import logging

from app.dependencies import Services, get_services, get_tenant_id
from app.models.subscriber import EventType

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

class DeliveryEventType(str, Enum):
    BOUNCE = "bounce"
    COMPLAINT = "complaint"
    OPEN = "open"
    CLICK = "click"

class DeliveryEvent(BaseModel):
    event_type: DeliveryEventType
    email: str
    campaign_id: Optional[str] = None

@router.post("/email-events")
async def receive_email_event(
    event: DeliveryEvent,
    tenant_id: str = Depends(get_tenant_id),
    services: Services = Depends(get_services)
):
    logger.info(f"📬 {event.event_type.value} event for {event.email} (tenant {tenant_id})")

    if event.event_type == DeliveryEventType.BOUNCE:
        recorded = await services.subscribers.mark_bounced(tenant_id, event.email)
    elif event.event_type == DeliveryEventType.COMPLAINT:
        recorded = await services.subscribers.mark_complained(tenant_id, event.email)
    else:
        recorded = await services.subscribers.record_engagement(
            tenant_id, event.email, EventType(event.event_type.value), event.campaign_id
        )

    return {"success": True, "recorded": recorded}
