# app/credits/ledger.py
import uuid
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from app.core.exceptions import InsufficientCredit
from app.models.credits import (
    SUBSCRIPTION_TIERS,
    ConsumeResult,
    CreditAvailability,
    CreditBalance,
    CreditCheckResult,
    CreditKind,
    CreditLogEntry,
    CreditLogType,
    CreditSufficiency,
    SubscriptionTier,
)
from app.storage.base import StorageBackend

logger = logging.getLogger(__name__)

ALL_KINDS = (CreditKind.EMAIL, CreditKind.LEAD, CreditKind.SMS)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreditLedger:
    """Gates and records consumable usage per tenant and credit kind.

    available = allowance + purchased_extra - used_this_period, and consume()
    never lets it go below zero.
    """

    def __init__(self, storage: StorageBackend, clock: Callable[[], datetime] = _utcnow):
        self.storage = storage
        self._clock = clock

    def _log(
        self,
        tenant_id: str,
        log_type: CreditLogType,
        kind: Optional[CreditKind] = None,
        amount: int = 0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CreditLogEntry:
        return CreditLogEntry(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            kind=kind,
            amount=amount,
            type=log_type,
            timestamp=self._clock(),
            metadata=metadata or {},
        )

    async def get_balance(self, tenant_id: str, kind: CreditKind) -> CreditBalance:
        balances = await self.storage.get_balances(tenant_id)
        return balances.get(kind) or CreditBalance(tenant_id=tenant_id, kind=kind)

    async def get_available(self, tenant_id: str) -> CreditAvailability:
        """Available credits per kind, floored at zero for display"""
        balances = await self.storage.get_balances(tenant_id)

        def available(kind: CreditKind) -> int:
            balance = balances.get(kind)
            return max(0, balance.available) if balance else 0

        return CreditAvailability(
            emails=available(CreditKind.EMAIL),
            sms=available(CreditKind.SMS),
            leads=available(CreditKind.LEAD),
        )

    async def check_sufficient(
        self,
        tenant_id: str,
        emails: int = 0,
        sms: int = 0,
        leads: int = 0,
    ) -> CreditCheckResult:
        """Read-only check of current availability against the request"""
        available = await self.get_available(tenant_id)
        sufficient_emails = emails <= 0 or available.emails >= emails
        sufficient_sms = sms <= 0 or available.sms >= sms
        sufficient_leads = leads <= 0 or available.leads >= leads

        return CreditCheckResult(
            sufficient=CreditSufficiency(
                emails=sufficient_emails,
                sms=sufficient_sms,
                leads=sufficient_leads,
                all=sufficient_emails and sufficient_sms and sufficient_leads,
            ),
            required=CreditAvailability(emails=emails, sms=sms, leads=leads),
            available=available,
        )

    async def consume(
        self,
        tenant_id: str,
        kind: CreditKind,
        amount: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ConsumeResult:
        """Debit credits atomically; raises InsufficientCredit without mutating"""
        remaining = await self.consume_many(tenant_id, {kind: amount}, metadata)
        return ConsumeResult(success=True, remaining_available=remaining[kind])

    async def consume_many(
        self,
        tenant_id: str,
        amounts: Mapping[CreditKind, int],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[CreditKind, int]:
        """Debit several kinds as one unit: either all succeed or none do"""
        amounts = {CreditKind(kind): amount for kind, amount in amounts.items()}
        if not amounts:
            raise ValueError("Nothing to consume")
        for kind, amount in amounts.items():
            if amount <= 0:
                raise ValueError(f"Credit amount must be positive, got {amount} for {kind.value}")

        async with self.storage.credit_transaction(tenant_id, list(amounts)) as tx:
            balances = {kind: await tx.get_balance(kind) for kind in amounts}

            for kind, amount in amounts.items():
                balance = balances[kind]
                if balance.used_this_period + amount > balance.allowance + balance.purchased_extra:
                    logger.warning(
                        f"Insufficient {kind.value} credits for tenant {tenant_id}: "
                        f"requested {amount}, available {max(0, balance.available)}"
                    )
                    raise InsufficientCredit(tenant_id, kind.value, amount, max(0, balance.available))

            remaining = {}
            for kind, amount in amounts.items():
                balance = balances[kind]
                balance.used_this_period += amount
                await tx.save_balance(balance)
                await tx.append_log(self._log(tenant_id, CreditLogType.USE, kind, amount, metadata))
                remaining[kind] = balance.available
        return remaining

    async def add_purchased_credit(
        self,
        tenant_id: str,
        kind: CreditKind,
        amount: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CreditBalance:
        """Called after a credit purchase completes with the payment gateway"""
        if amount <= 0:
            raise ValueError("Purchased credit amount must be positive")
        async with self.storage.credit_transaction(tenant_id, [kind]) as tx:
            balance = await tx.get_balance(kind)
            balance.purchased_extra += amount
            await tx.save_balance(balance)
            await tx.append_log(self._log(tenant_id, CreditLogType.ADD, kind, amount, metadata))
        logger.info(f"Added {amount} purchased {kind.value} credits for tenant {tenant_id}")
        return balance

    async def set_tier(self, tenant_id: str, tier: SubscriptionTier) -> Dict[CreditKind, CreditBalance]:
        """Set every kind's allowance from the tenant's subscription tier"""
        entitlement = SUBSCRIPTION_TIERS[SubscriptionTier(tier)]
        updated = {}
        async with self.storage.credit_transaction(tenant_id, ALL_KINDS) as tx:
            for kind in ALL_KINDS:
                balance = await tx.get_balance(kind)
                balance.allowance = entitlement.allowance_for(kind)
                if balance.period_started_at is None:
                    balance.period_started_at = self._clock()
                await tx.save_balance(balance)
                updated[kind] = balance
        logger.info(f"Applied {entitlement.name} allowances for tenant {tenant_id}")
        return updated

    async def reset_period(
        self, tenant_id: str, tier: Optional[SubscriptionTier] = None
    ) -> Dict[CreditKind, CreditBalance]:
        """Billing-period rollover: usage zeroed, purchased extras expire"""
        entitlement = SUBSCRIPTION_TIERS[SubscriptionTier(tier)] if tier else None
        now = self._clock()
        updated = {}
        async with self.storage.credit_transaction(tenant_id, ALL_KINDS) as tx:
            for kind in ALL_KINDS:
                balance = await tx.get_balance(kind)
                balance.used_this_period = 0
                balance.purchased_extra = 0
                balance.period_started_at = now
                if entitlement:
                    balance.allowance = entitlement.allowance_for(kind)
                await tx.save_balance(balance)
                updated[kind] = balance
            await tx.append_log(self._log(tenant_id, CreditLogType.RESET))
        logger.info(f"Credit period reset for tenant {tenant_id}")
        return updated

    async def get_history(self, tenant_id: str, limit: int = 10) -> List[CreditLogEntry]:
        return await self.storage.list_credit_logs(tenant_id, limit)
