"""
Tests for UnsubscribeTokenService: round trip, expiry, tampering and the
link embedded in outbound email.
"""

from urllib.parse import parse_qs, urlparse

import pytest

from app.core.exceptions import InvalidUnsubscribeToken
from app.unsubscribe.tokens import UnsubscribeTokenService
from tests.conftest import FRONTEND_URL, TENANT


def test_token_validates_right_after_generation(tokens):
    token = tokens.create_token("ada@x.com", TENANT, "camp_1")

    assert tokens.validate("ada@x.com", token) is True


def test_token_expires_after_thirty_days(tokens, clock):
    token = tokens.create_token("ada@x.com", TENANT)

    clock.advance(days=29, hours=23)
    assert tokens.validate("ada@x.com", token) is True

    clock.advance(hours=2)
    assert tokens.validate("ada@x.com", token) is False
    with pytest.raises(InvalidUnsubscribeToken) as exc_info:
        tokens.decode(token)
    assert exc_info.value.reason == "expired"


def test_token_rejects_different_email(tokens):
    token = tokens.create_token("ada@x.com", TENANT)

    assert tokens.validate("eve@x.com", token) is False
    with pytest.raises(InvalidUnsubscribeToken) as exc_info:
        tokens.verify("eve@x.com", token)
    assert exc_info.value.reason == "email_mismatch"


def test_token_from_other_secret_is_rejected(tokens, clock):
    forger = UnsubscribeTokenService("not-the-secret", FRONTEND_URL, clock=clock)
    forged = forger.create_token("ada@x.com", TENANT)

    with pytest.raises(InvalidUnsubscribeToken) as exc_info:
        tokens.decode(forged)
    assert exc_info.value.reason == "signature"


def test_tampered_payload_is_rejected(tokens, clock):
    genuine = tokens.create_token("ada@x.com", TENANT)
    other = tokens.create_token("eve@x.com", TENANT)

    # Eve's claims with Ada's signature
    spliced = f"{other.split('.')[0]}.{genuine.split('.')[1]}"

    assert tokens.validate("eve@x.com", spliced) is False


@pytest.mark.parametrize("token", ["", "abc", "a.b.c", "!!!.???", "e30.e30"])
def test_malformed_tokens_never_raise_from_validate(tokens, token):
    assert tokens.validate("ada@x.com", token) is False


def test_token_issued_in_the_future_is_rejected(tokens, clock):
    clock.advance(hours=1)
    token = tokens.create_token("ada@x.com", TENANT)
    clock.advance(hours=-1)

    with pytest.raises(InvalidUnsubscribeToken) as exc_info:
        tokens.decode(token)
    assert exc_info.value.reason == "not_yet_valid"


def test_decode_returns_claims(tokens, clock):
    claims = tokens.decode(tokens.create_token("ada@x.com", TENANT, "camp_1"))

    assert claims.email == "ada@x.com"
    assert claims.tenant_id == TENANT
    assert claims.campaign_id == "camp_1"
    assert claims.issued_at == clock()


def test_generate_builds_percent_encoded_link(tokens):
    url = tokens.generate("ada+news@x.com", TENANT, "camp_1")

    assert url.startswith(f"{FRONTEND_URL}/unsubscribe?")
    assert "email=ada%2Bnews%40x.com" in url
    query = parse_qs(urlparse(url).query)
    assert query["email"] == ["ada+news@x.com"]
    assert query["c"] == ["camp_1"]
    assert tokens.validate("ada+news@x.com", query["t"][0]) is True


def test_empty_secret_is_refused():
    with pytest.raises(ValueError):
        UnsubscribeTokenService("", FRONTEND_URL)
