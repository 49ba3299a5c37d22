from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime
from enum import Enum

class CreditKind(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    LEAD = "lead"

class CreditLogType(str, Enum):
    USE = "use"
    ADD = "add"
    RESET = "reset"

class SubscriptionTier(str, Enum):
    FREE = "free"
    STARTER = "starter"
    GROWTH = "growth"
    PRO = "pro"

class CreditBalance(BaseModel):
    tenant_id: str
    kind: CreditKind
    allowance: int = 0
    purchased_extra: int = 0
    used_this_period: int = 0
    period_started_at: Optional[datetime] = None

    @property
    def available(self) -> int:
        return self.allowance + self.purchased_extra - self.used_this_period

class CreditAvailability(BaseModel):
    emails: int = 0
    sms: int = 0
    leads: int = 0

class CreditSufficiency(BaseModel):
    emails: bool
    sms: bool
    leads: bool
    all: bool

class CreditCheckResult(BaseModel):
    sufficient: CreditSufficiency
    required: CreditAvailability
    available: CreditAvailability

class ConsumeResult(BaseModel):
    success: bool
    remaining_available: int

class CreditLogEntry(BaseModel):
    id: str
    tenant_id: str
    kind: Optional[CreditKind] = None
    amount: int = 0
    type: CreditLogType
    timestamp: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)

class TierEntitlement(BaseModel):
    name: str
    price: int
    max_emails: int
    max_sms: int
    max_leads: int

    def allowance_for(self, kind: CreditKind) -> int:
        return {
            CreditKind.EMAIL: self.max_emails,
            CreditKind.SMS: self.max_sms,
            CreditKind.LEAD: self.max_leads,
        }[kind]

SUBSCRIPTION_TIERS: Dict[SubscriptionTier, TierEntitlement] = {
    SubscriptionTier.FREE: TierEntitlement(
        name="Free Trial", price=0, max_emails=10, max_sms=0, max_leads=0
    ),
    SubscriptionTier.STARTER: TierEntitlement(
        name="Starter", price=39, max_emails=5000, max_sms=500, max_leads=1000
    ),
    SubscriptionTier.GROWTH: TierEntitlement(
        name="Growth", price=99, max_emails=15000, max_sms=1000, max_leads=5000
    ),
    SubscriptionTier.PRO: TierEntitlement(
        name="Pro", price=199, max_emails=50000, max_sms=5000, max_leads=10000
    ),
}
