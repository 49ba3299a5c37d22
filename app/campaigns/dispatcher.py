# app/campaigns/dispatcher.py
"""
One campaign-send pass over a finite recipient list.

A pass first claims each (campaign, subscriber) pair with a pending record in
the delivery log, then moves it to exactly one of sent, failed,
skipped_insufficient_credit or skipped_inactive. Only the pass holding the
claim charges or delivers, so overlapping or repeated passes never send twice:
they report what the log holds instead. Skipped recipients were not charged
and may be claimed again. A pass that dies while holding a claim leaves the
recipient pending; it is not retried automatically.

Credits are consumed on attempt. A delivery that fails after the credit was
taken is not refunded.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from app.core.exceptions import InsufficientCredit, TemplateRenderError
from app.credits.ledger import CreditLedger
from app.emails.blocks import render_blocks
from app.emails.renderer import EmailRenderer
from app.models.campaign import (
    CampaignContent,
    CampaignSendRequest,
    DeliveryOutcome,
    DeliveryRecord,
    DispatchReport,
    EmailMessage,
    RecipientOutcome,
)
from app.models.credits import CreditKind
from app.models.subscriber import EventType, Subscriber, SubscriberStatus
from app.services.email_service import EmailDelivery
from app.storage.base import StorageBackend
from app.subscribers.service import SubscriberStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def content_body(content: CampaignContent) -> str:
    """Raw HTML wins over blocks when a campaign carries both"""
    if content.html:
        return content.html
    return render_blocks(content.blocks)


class CampaignDispatcher:
    def __init__(
        self,
        storage: StorageBackend,
        subscribers: SubscriberStore,
        ledger: CreditLedger,
        renderer: EmailRenderer,
        delivery: EmailDelivery,
        concurrency: int = 5,
        clock: Callable[[], datetime] = _utcnow,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.storage = storage
        self.subscribers = subscribers
        self.ledger = ledger
        self.renderer = renderer
        self.delivery = delivery
        self.concurrency = concurrency
        self._clock = clock

    async def dispatch(self, request: CampaignSendRequest) -> DispatchReport:
        """Run one pass and report an outcome per distinct recipient.

        Per-recipient problems end up in the report. Storage failures abort
        the pass and propagate; outcomes already written stay in the log.
        """
        recipients = self._distinct(request.recipients)
        logger.info(
            f"📤 Dispatching campaign {request.campaign_id} to {len(recipients)} recipients "
            f"(tenant {request.tenant_id})"
        )

        try:
            body = content_body(request.content)
        except TemplateRenderError as e:
            logger.error(f"Campaign {request.campaign_id} content cannot be rendered: {e.message}")
            # Nothing was charged or attempted, so nothing goes into the log
            return DispatchReport(
                campaign_id=request.campaign_id,
                outcomes=[
                    RecipientOutcome(
                        subscriber_id=s.id,
                        email=s.email,
                        outcome=DeliveryOutcome.FAILED,
                        error=e.message,
                    )
                    for s in recipients
                ],
            )

        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(subscriber: Subscriber) -> RecipientOutcome:
            async with semaphore:
                return await self._dispatch_one(request, subscriber, body)

        tasks = [asyncio.ensure_future(run(subscriber)) for subscriber in recipients]
        try:
            outcomes: List[RecipientOutcome] = list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.error(f"Campaign {request.campaign_id} dispatch aborted")
            raise

        report = DispatchReport(campaign_id=request.campaign_id, outcomes=outcomes)
        logger.info(
            f"Campaign {request.campaign_id} pass complete: "
            f"{report.count(DeliveryOutcome.SENT)} sent, "
            f"{report.count(DeliveryOutcome.FAILED)} failed, "
            f"{report.count(DeliveryOutcome.SKIPPED_INSUFFICIENT_CREDIT)} skipped for credit, "
            f"{report.count(DeliveryOutcome.SKIPPED_INACTIVE)} skipped inactive"
        )
        return report

    @staticmethod
    def _distinct(recipients: List[Subscriber]) -> List[Subscriber]:
        seen = set()
        distinct = []
        for subscriber in recipients:
            if subscriber.id not in seen:
                seen.add(subscriber.id)
                distinct.append(subscriber)
        return distinct

    def _required_credits(self, content: CampaignContent) -> Dict[CreditKind, int]:
        required = {CreditKind.EMAIL: 1}
        if content.includes_sms:
            required[CreditKind.SMS] = 1
        return required

    async def _dispatch_one(
        self, request: CampaignSendRequest, recipient: Subscriber, body: str
    ) -> RecipientOutcome:
        tenant_id = request.tenant_id
        campaign_id = request.campaign_id

        # Claim the pair before any credit moves; a concurrent or finished
        # pass holding it wins and this one only reports what it holds
        claimed = await self.storage.claim_delivery(
            self._delivery_record(request, recipient, DeliveryOutcome.PENDING)
        )
        if not claimed:
            prior = await self.storage.get_delivery(campaign_id, recipient.id)
            logger.info(
                f"Campaign {campaign_id}: {recipient.email} already "
                f"{prior.outcome.value if prior else 'claimed'}, not sending again"
            )
            return RecipientOutcome(
                subscriber_id=recipient.id,
                email=prior.email if prior else recipient.email,
                outcome=prior.outcome if prior else DeliveryOutcome.PENDING,
                error=prior.error if prior else None,
                resumed=True,
            )

        # The recipient list may be stale; status decides eligibility
        subscriber = await self.storage.get_subscriber(tenant_id, recipient.id)
        if subscriber is None or subscriber.status != SubscriberStatus.ACTIVE:
            return await self._record(request, recipient, DeliveryOutcome.SKIPPED_INACTIVE)

        required = self._required_credits(request.content)
        check = await self.ledger.check_sufficient(
            tenant_id,
            emails=required[CreditKind.EMAIL],
            sms=required.get(CreditKind.SMS, 0),
        )
        if not check.sufficient.all:
            return await self._record(request, subscriber, DeliveryOutcome.SKIPPED_INSUFFICIENT_CREDIT)

        try:
            await self.ledger.consume_many(
                tenant_id,
                required,
                metadata={"campaign_id": campaign_id, "subscriber_id": subscriber.id},
            )
        except InsufficientCredit:
            # Another send took the last credit between check and consume
            return await self._record(request, subscriber, DeliveryOutcome.SKIPPED_INSUFFICIENT_CREDIT)

        try:
            subject = self.renderer.personalize(request.content.subject, subscriber)
            html = self.renderer.compose(
                subject,
                body,
                campaign_id,
                tenant_id,
                subscriber,
                request.content.preheader,
            )
        except TemplateRenderError as e:
            logger.error(f"Render failed for {subscriber.email} in campaign {campaign_id}: {e.message}")
            return await self._record(request, subscriber, DeliveryOutcome.FAILED, error=e.message)

        message = EmailMessage(
            from_address=f"{request.from_name} <{request.from_email}>",
            to=subscriber.email,
            subject=subject,
            html=html,
        )
        try:
            result = await self.delivery.send(message)
        except Exception as e:
            logger.error(f"🚨 Delivery to {subscriber.email} raised: {e}")
            return await self._record(request, subscriber, DeliveryOutcome.FAILED, error=str(e))

        if not result.accepted:
            logger.error(f"🚨 Delivery to {subscriber.email} rejected: {result.error}")
            return await self._record(
                request, subscriber, DeliveryOutcome.FAILED, error=result.error or "Delivery rejected"
            )

        outcome = await self._record(
            request, subscriber, DeliveryOutcome.SENT, message_id=result.message_id
        )
        await self.subscribers.log_event(
            tenant_id,
            subscriber.email,
            EventType.EMAIL_SENT,
            campaign_id,
            {"message_id": result.message_id, "subject": subject},
        )
        return outcome

    def _delivery_record(
        self,
        request: CampaignSendRequest,
        subscriber: Subscriber,
        outcome: DeliveryOutcome,
        error: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> DeliveryRecord:
        return DeliveryRecord(
            campaign_id=request.campaign_id,
            subscriber_id=subscriber.id,
            tenant_id=request.tenant_id,
            email=subscriber.email,
            subject=request.content.subject,
            outcome=outcome,
            message_id=message_id,
            error=error,
            recorded_at=self._clock(),
        )

    async def _record(
        self,
        request: CampaignSendRequest,
        subscriber: Subscriber,
        outcome: DeliveryOutcome,
        error: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> RecipientOutcome:
        await self.storage.save_delivery(
            self._delivery_record(request, subscriber, outcome, error, message_id)
        )
        return RecipientOutcome(
            subscriber_id=subscriber.id,
            email=subscriber.email,
            outcome=outcome,
            error=error,
        )
