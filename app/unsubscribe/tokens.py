# app/unsubscribe/tokens.py
"""
Signed unsubscribe links.

Token layout: ``base64url(json claims) "." base64url(HMAC-SHA256(claims))``.
Claims carry the email, tenant, optional campaign and the issue time in
epoch milliseconds. The secret never leaves the server, so a token cannot be
minted for an address without it.
"""

import base64
import binascii
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from urllib.parse import quote, urlencode

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac
from pydantic import BaseModel, ValidationError

from app.core.exceptions import InvalidUnsubscribeToken

logger = logging.getLogger(__name__)

# Tolerated drift for tokens issued by a node whose clock runs ahead
CLOCK_SKEW = timedelta(minutes=5)


class UnsubscribeClaims(BaseModel):
    email: str
    tenant_id: str
    campaign_id: Optional[str] = None
    issued_at: datetime


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UnsubscribeTokenService:
    def __init__(
        self,
        secret: str,
        base_url: str,
        ttl_days: int = 30,
        clock: Callable[[], datetime] = _utcnow,
    ):
        if not secret:
            raise ValueError("Unsubscribe secret must not be empty")
        self._key = secret.encode("utf-8")
        self.base_url = base_url.rstrip("/")
        self.ttl = timedelta(days=ttl_days)
        self._clock = clock

    def _sign(self, payload: bytes) -> bytes:
        mac = hmac.HMAC(self._key, hashes.SHA256())
        mac.update(payload)
        return mac.finalize()

    def create_token(self, email: str, tenant_id: str, campaign_id: Optional[str] = None) -> str:
        issued_at = int(self._clock().timestamp() * 1000)
        claims = {"e": email, "u": tenant_id, "iat": issued_at}
        if campaign_id:
            claims["c"] = campaign_id
        payload = json.dumps(claims, separators=(",", ":"), sort_keys=True).encode("utf-8")
        return f"{_b64encode(payload)}.{_b64encode(self._sign(payload))}"

    def generate(self, email: str, tenant_id: str, campaign_id: Optional[str] = None) -> str:
        """Build the unsubscribe URL embedded in outbound email."""
        token = self.create_token(email, tenant_id, campaign_id)
        query = urlencode({"email": email, "t": token, "c": campaign_id or ""}, quote_via=quote)
        return f"{self.base_url}/unsubscribe?{query}"

    def decode(self, token: str) -> UnsubscribeClaims:
        """Verify signature and age; raises InvalidUnsubscribeToken."""
        try:
            encoded_payload, encoded_signature = token.split(".")
            payload = _b64decode(encoded_payload)
            signature = _b64decode(encoded_signature)
        except (ValueError, binascii.Error, AttributeError):
            raise InvalidUnsubscribeToken("malformed")

        mac = hmac.HMAC(self._key, hashes.SHA256())
        mac.update(payload)
        try:
            mac.verify(signature)
        except InvalidSignature:
            logger.warning(f"Unsubscribe token signature mismatch: {token[:8]}...")
            raise InvalidUnsubscribeToken("signature")

        try:
            raw = json.loads(payload)
            claims = UnsubscribeClaims(
                email=raw["e"],
                tenant_id=raw["u"],
                campaign_id=raw.get("c"),
                issued_at=datetime.fromtimestamp(raw["iat"] / 1000, tz=timezone.utc),
            )
        except (ValueError, KeyError, TypeError, ValidationError, OverflowError, OSError):
            raise InvalidUnsubscribeToken("malformed")

        now = self._clock()
        if now - claims.issued_at > self.ttl:
            raise InvalidUnsubscribeToken("expired")
        if claims.issued_at - now > CLOCK_SKEW:
            raise InvalidUnsubscribeToken("not_yet_valid")
        return claims

    def validate(self, email: str, token: str) -> bool:
        try:
            claims = self.decode(token)
        except InvalidUnsubscribeToken as e:
            logger.info(f"Rejected unsubscribe token ({e.reason}): {str(token)[:8]}...")
            return False
        return claims.email == email

    def verify(self, email: str, token: str) -> UnsubscribeClaims:
        """Like validate() but returns the claims, for the unsubscribe endpoint."""
        claims = self.decode(token)
        if claims.email != email:
            raise InvalidUnsubscribeToken("email_mismatch")
        return claims
