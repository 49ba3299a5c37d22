# app/routes/campaigns.py
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from typing import List, Optional
import logging

from app.campaigns.dispatcher import content_body
from app.dependencies import Services, get_services, get_tenant_id
from app.models.campaign import (
    CampaignContent,
    CampaignSendRequest,
    DeliveryOutcome,
    DeliveryRecord,
    RecipientOutcome,
)
from app.models.subscriber import Subscriber

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/campaigns", tags=["campaigns"])

# Page size used when a send targets every active subscriber
AUDIENCE_PAGE_SIZE = 500

class SendCampaignRequest(BaseModel):
    content: CampaignContent
    subscriber_ids: Optional[List[str]] = Field(
        None, description="Recipients; every active subscriber when omitted"
    )
    from_name: Optional[str] = None
    from_email: Optional[str] = None

class SendCampaignResponse(BaseModel):
    campaign_id: str
    sent: int
    failed: int
    skipped_insufficient_credit: int
    skipped_inactive: int
    in_progress: int = 0
    unknown_subscriber_ids: List[str] = Field(default_factory=list)
    outcomes: List[RecipientOutcome]

class PreviewRequest(BaseModel):
    content: CampaignContent

async def _active_audience(services: Services, tenant_id: str) -> List[Subscriber]:
    audience: List[Subscriber] = []
    page = 1
    while True:
        result = await services.subscribers.list(
            tenant_id,
            status="active",
            page=page,
            page_size=AUDIENCE_PAGE_SIZE,
            sort_by="subscribed_at",
            sort_direction="asc",
        )
        audience.extend(result.subscribers)
        if page * AUDIENCE_PAGE_SIZE >= result.total:
            return audience
        page += 1

@router.post("/{campaign_id}/send", response_model=SendCampaignResponse)
async def send_campaign(
    campaign_id: str,
    request: SendCampaignRequest,
    tenant_id: str = Depends(get_tenant_id),
    services: Services = Depends(get_services)
):
    """Run one send pass. Calling it again resumes without re-sending."""
    unknown: List[str] = []
    if request.subscriber_ids is None:
        recipients = await _active_audience(services, tenant_id)
    else:
        recipients = []
        for subscriber_id in request.subscriber_ids:
            subscriber = await services.storage.get_subscriber(tenant_id, subscriber_id)
            if subscriber is None:
                unknown.append(subscriber_id)
            else:
                recipients.append(subscriber)
        if unknown:
            logger.warning(f"Campaign {campaign_id}: {len(unknown)} unknown subscriber ids ignored")

    report = await services.dispatcher.dispatch(
        CampaignSendRequest(
            campaign_id=campaign_id,
            tenant_id=tenant_id,
            content=request.content,
            recipients=recipients,
            from_name=request.from_name or services.settings.from_name,
            from_email=request.from_email or services.settings.from_email,
        )
    )
    return SendCampaignResponse(
        campaign_id=campaign_id,
        sent=report.count(DeliveryOutcome.SENT),
        failed=report.count(DeliveryOutcome.FAILED),
        skipped_insufficient_credit=report.count(DeliveryOutcome.SKIPPED_INSUFFICIENT_CREDIT),
        skipped_inactive=report.count(DeliveryOutcome.SKIPPED_INACTIVE),
        in_progress=report.count(DeliveryOutcome.PENDING),
        unknown_subscriber_ids=unknown,
        outcomes=report.outcomes,
    )

@router.get("/{campaign_id}/deliveries", response_model=List[DeliveryRecord])
async def list_deliveries(
    campaign_id: str,
    tenant_id: str = Depends(get_tenant_id),
    services: Services = Depends(get_services)
):
    records = await services.storage.list_deliveries(campaign_id)
    return [record for record in records if record.tenant_id == tenant_id]

@router.post("/{campaign_id}/preview")
async def preview_campaign(
    campaign_id: str,
    request: PreviewRequest,
    tenant_id: str = Depends(get_tenant_id),
    services: Services = Depends(get_services)
):
    """Render against the placeholder subscriber through the same path as a send"""
    html = services.renderer.render_preview(
        request.content.subject,
        content_body(request.content),
        tenant_id,
        campaign_id=campaign_id,
        preheader=request.content.preheader,
    )
    return {"subject": request.content.subject, "html": html}
