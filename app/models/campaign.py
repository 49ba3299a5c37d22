from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum
from app.models.subscriber import Subscriber

class DeliveryOutcome(str, Enum):
    PENDING = "pending"  # claimed by a pass that has not recorded a result
    SENT = "sent"
    FAILED = "failed"
    SKIPPED_INSUFFICIENT_CREDIT = "skipped_insufficient_credit"
    SKIPPED_INACTIVE = "skipped_inactive"

class ContentBlock(BaseModel):
    type: str
    content: Dict[str, Any] = Field(default_factory=dict)

class CampaignContent(BaseModel):
    subject: str
    html: Optional[str] = None
    blocks: List[ContentBlock] = Field(default_factory=list)
    preheader: Optional[str] = None

    @property
    def includes_sms(self) -> bool:
        return any(block.type == "sms" for block in self.blocks)

class CampaignSendRequest(BaseModel):
    campaign_id: str
    tenant_id: str
    content: CampaignContent
    recipients: List[Subscriber]
    from_name: str
    from_email: str

class EmailMessage(BaseModel):
    from_address: str
    to: str
    subject: str
    html: str
    reply_to: Optional[str] = None

class DeliveryResult(BaseModel):
    accepted: bool
    message_id: Optional[str] = None
    error: Optional[str] = None

class DeliveryRecord(BaseModel):
    campaign_id: str
    subscriber_id: str
    tenant_id: str
    email: str
    subject: str
    outcome: DeliveryOutcome
    message_id: Optional[str] = None
    error: Optional[str] = None
    recorded_at: datetime

class RecipientOutcome(BaseModel):
    subscriber_id: str
    email: str
    outcome: DeliveryOutcome
    error: Optional[str] = None
    resumed: bool = False

class DispatchReport(BaseModel):
    campaign_id: str
    outcomes: List[RecipientOutcome]

    def count(self, outcome: DeliveryOutcome) -> int:
        return sum(1 for item in self.outcomes if item.outcome == outcome)
