# app/routes/credits.py
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
import logging

from app.dependencies import Services, get_services, get_tenant_id
from app.models.credits import (
    CreditAvailability,
    CreditBalance,
    CreditCheckResult,
    CreditKind,
    CreditLogEntry,
    SubscriptionTier,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/credits", tags=["credits"])

class CreditCheckRequest(BaseModel):
    emails: int = Field(0, ge=0)
    sms: int = Field(0, ge=0)
    leads: int = Field(0, ge=0)

class PurchaseCompleted(BaseModel):
    """Posted by the payment gateway once a credit purchase is verified"""
    kind: CreditKind
    amount: int = Field(..., gt=0)
    order_id: str
    provider: Optional[str] = None

class TierChange(BaseModel):
    tier: SubscriptionTier
    reset_period: bool = False

@router.get("", response_model=CreditAvailability)
async def get_credits(
    tenant_id: str = Depends(get_tenant_id),
    services: Services = Depends(get_services)
):
    return await services.ledger.get_available(tenant_id)

@router.post("/check", response_model=CreditCheckResult)
async def check_credits(
    request: CreditCheckRequest,
    tenant_id: str = Depends(get_tenant_id),
    services: Services = Depends(get_services)
):
    return await services.ledger.check_sufficient(
        tenant_id, emails=request.emails, sms=request.sms, leads=request.leads
    )

@router.post("/purchases/complete", response_model=CreditBalance)
async def complete_purchase(
    request: PurchaseCompleted,
    tenant_id: str = Depends(get_tenant_id),
    services: Services = Depends(get_services)
):
    metadata: Dict[str, Any] = {"order_id": request.order_id}
    if request.provider:
        metadata["provider"] = request.provider
    logger.info(f"💳 Purchase {request.order_id} completed for tenant {tenant_id}")
    return await services.ledger.add_purchased_credit(
        tenant_id, request.kind, request.amount, metadata
    )

@router.put("/tier", response_model=List[CreditBalance])
async def change_tier(
    request: TierChange,
    tenant_id: str = Depends(get_tenant_id),
    services: Services = Depends(get_services)
):
    if request.reset_period:
        balances = await services.ledger.reset_period(tenant_id, request.tier)
    else:
        balances = await services.ledger.set_tier(tenant_id, request.tier)
    return list(balances.values())

@router.get("/history", response_model=List[CreditLogEntry])
async def get_credit_history(
    limit: int = Query(10, ge=1, le=100),
    tenant_id: str = Depends(get_tenant_id),
    services: Services = Depends(get_services)
):
    return await services.ledger.get_history(tenant_id, limit)
