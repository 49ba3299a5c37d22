from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Union, Any
from datetime import datetime, date
from enum import Enum

# Typed custom field values; anything else is rejected at validation time
CustomFieldValue = Union[bool, int, float, datetime, date, str]

class SubscriberStatus(str, Enum):
    ACTIVE = "active"
    UNSUBSCRIBED = "unsubscribed"
    BOUNCED = "bounced"
    COMPLAINED = "complained"

class SubscriberSource(str, Enum):
    CAMPAIGN = "campaign"
    LANDING_PAGE = "landing_page"
    FORM = "form"
    MANUAL = "manual"
    IMPORT = "import"

class EventType(str, Enum):
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    OPEN = "open"
    CLICK = "click"
    BOUNCE = "bounce"
    COMPLAINT = "complaint"
    EMAIL_SENT = "email_sent"

class Consent(BaseModel):
    timestamp: datetime
    method: str
    ip: Optional[str] = None

class SubscriberAttributes(BaseModel):
    """Caller-supplied fields for subscribe()"""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    source: SubscriberSource = SubscriberSource.MANUAL
    tags: List[str] = Field(default_factory=list)
    custom_fields: Dict[str, CustomFieldValue] = Field(default_factory=dict)
    consent: Optional[Consent] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    ip_address: Optional[str] = None
    country: Optional[str] = None

class Subscriber(SubscriberAttributes):
    id: str
    tenant_id: str
    email: str
    status: SubscriberStatus = SubscriberStatus.ACTIVE
    campaigns: List[str] = Field(default_factory=list)
    engagement_score: Optional[float] = None
    last_engagement: Optional[datetime] = None
    subscribed_at: datetime
    unsubscribed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

class SubscriberUpdate(BaseModel):
    """Profile fields that may be changed through update().

    Status, email and tenant are owned by the lifecycle operations.
    """
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    source: Optional[SubscriberSource] = None
    tags: Optional[List[str]] = None
    custom_fields: Optional[Dict[str, CustomFieldValue]] = None
    engagement_score: Optional[float] = None
    consent: Optional[Consent] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    country: Optional[str] = None

class SubscriberEvent(BaseModel):
    id: str
    tenant_id: str
    subscriber_id: str
    type: EventType
    campaign_id: Optional[str] = None
    timestamp: datetime
    metadata: Optional[Dict[str, Any]] = None

class TenantUsageStats(BaseModel):
    tenant_id: str
    total_subscribers: int = 0
    active_subscribers: int = 0
    unsubscribed_subscribers: int = 0
    bounced_subscribers: int = 0
    complained_subscribers: int = 0
    subscriber_growth: int = 0
    total_revenue: float = 0.0
    conversions: int = 0
    updated_at: Optional[datetime] = None

class SubscriberPage(BaseModel):
    subscribers: List[Subscriber]
    total: int
    page: int
    page_size: int

class RevenueRecord(BaseModel):
    id: str
    tenant_id: str
    subscriber_id: str
    campaign_id: str
    amount: float
    currency: str = "USD"
    order_id: str
    timestamp: datetime

class CampaignRevenue(BaseModel):
    campaign_id: str
    revenue: float
    conversions: int

class RevenueStats(BaseModel):
    total: float
    last_thirty_days: float
    by_campaign: List[CampaignRevenue]

# Counter columns on TenantUsageStats, keyed by the status they count
STATUS_COUNTERS = {
    SubscriberStatus.ACTIVE: "active_subscribers",
    SubscriberStatus.UNSUBSCRIBED: "unsubscribed_subscribers",
    SubscriberStatus.BOUNCED: "bounced_subscribers",
    SubscriberStatus.COMPLAINED: "complained_subscribers",
}
