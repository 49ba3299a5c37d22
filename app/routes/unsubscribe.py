# app/routes/unsubscribe.py - Landing endpoints for the link in every email footer
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import Optional
import logging

from app.dependencies import Services, get_services

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/unsubscribe", tags=["unsubscribe"])

class UnsubscribeRequest(BaseModel):
    email: str
    token: str
    campaign_id: Optional[str] = None
    reason: Optional[str] = None

class UnsubscribeResponse(BaseModel):
    success: bool
    message: str

@router.get("")
async def check_unsubscribe_link(
    email: str,
    t: str,
    c: Optional[str] = None,
    services: Services = Depends(get_services)
):
    """Validate the link before the confirmation page is shown. No side effects."""
    claims = services.tokens.verify(email, t)
    return {
        "valid": True,
        "email": claims.email,
        "campaign_id": c or claims.campaign_id,
    }

@router.post("", response_model=UnsubscribeResponse)
async def unsubscribe(
    request: UnsubscribeRequest,
    services: Services = Depends(get_services)
):
    """Unsubscribe the address the token was issued for"""
    claims = services.tokens.verify(request.email, request.token)
    campaign_id = request.campaign_id or claims.campaign_id

    found = await services.subscribers.unsubscribe(
        claims.tenant_id, claims.email, campaign_id=campaign_id, reason=request.reason
    )
    if not found:
        # Same answer either way so the endpoint cannot be used to probe lists
        logger.info(f"Unsubscribe for unknown address {claims.email} (tenant {claims.tenant_id})")

    return UnsubscribeResponse(
        success=True,
        message="You have been unsubscribed and will no longer receive these emails."
    )
