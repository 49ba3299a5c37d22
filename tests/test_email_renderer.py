"""
Tests for EmailRenderer and the content block renderer.
"""

from datetime import date
from urllib.parse import parse_qs, urlparse
import re

import pytest

from app.core.exceptions import TemplateRenderError
from app.emails.blocks import render_blocks
from app.emails.renderer import PREVIEW_EMAIL
from app.models.campaign import ContentBlock
from app.models.subscriber import Subscriber, SubscriberSource
from tests.conftest import TENANT


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _subscriber(clock, **overrides):
    fields = {
        "id": "sub_1",
        "tenant_id": TENANT,
        "email": "ada@x.com",
        "first_name": "Ada",
        "subscribed_at": clock(),
    }
    fields.update(overrides)
    return Subscriber(**fields)


def _unsubscribe_href(document: str) -> str:
    match = re.search(r'<a href="([^"]+)"[^>]*>Unsubscribe</a>', document)
    assert match, "rendered email has no unsubscribe link"
    return match.group(1)


# ---------------------------------------------------------------------------
# personalize
# ---------------------------------------------------------------------------

def test_personalize_fills_known_placeholders(renderer, clock):
    subscriber = _subscriber(clock)

    result = renderer.personalize("Hi {{firstName}} {{lastName}}, {{email}}", subscriber)

    assert result == "Hi Ada , ada@x.com"


def test_personalize_falls_back_for_missing_first_name(renderer, clock):
    subscriber = _subscriber(clock, first_name=None)

    assert renderer.personalize("Dear {{firstName}}", subscriber) == "Dear Valued Customer"


def test_personalize_uses_custom_fields_and_year(renderer, clock):
    subscriber = _subscriber(
        clock, custom_fields={"plan": "gold", "orders": 3, "renewal": date(2024, 6, 1)}
    )

    result = renderer.personalize(
        "{{plan}} x{{orders}} until {{renewal}} - {{currentYear}}", subscriber
    )

    assert result == "gold x3 until 2024-06-01 - 2024"


def test_personalize_leaves_unknown_placeholders(renderer, clock):
    subscriber = _subscriber(clock)

    assert renderer.personalize("{{coupon}} for {{firstName}}", subscriber) == "{{coupon}} for Ada"


# ---------------------------------------------------------------------------
# render / compose / preview
# ---------------------------------------------------------------------------

def test_render_always_includes_unsubscribe_link(renderer, tokens, clock):
    # Arrange
    subscriber = _subscriber(clock, email="ada+shop@x.com")

    # Act
    document = renderer.render("Spring sale", "<p>Hello</p>", "camp_1", TENANT, subscriber)

    # Assert
    href = _unsubscribe_href(document)
    assert "email=ada%2Bshop%40x.com" in href
    query = parse_qs(urlparse(href).query)
    assert query["t"][0]
    assert tokens.validate("ada+shop@x.com", query["t"][0])
    assert "<p>Hello</p>" in document


def test_render_includes_escaped_title_and_hidden_preheader(renderer, clock):
    document = renderer.render(
        "Deals <today>", "<p>Body</p>", "camp_1", TENANT, _subscriber(clock), preheader="50% off"
    )

    assert "<title>Deals &lt;today&gt;</title>" in document
    assert '<meta name="description" content="50% off">' in document
    assert '<div style="display: none; max-height: 0px; overflow: hidden;">50% off</div>' in document


def test_render_without_preheader_has_no_hidden_div(renderer, clock):
    document = renderer.render("Hi", "<p>Body</p>", "camp_1", TENANT, _subscriber(clock))

    assert 'name="description"' not in document
    assert "display: none" not in document


def test_footer_carries_company_details(renderer, clock):
    document = renderer.render("Hi", "<p>Body</p>", None, TENANT, _subscriber(clock))

    assert "&copy; 2024 Acme Shop" in document
    assert "1 Market St, Springfield" in document
    assert "https://app.example.com/preferences" in document


def test_compose_personalizes_before_wrapping(renderer, clock):
    document = renderer.compose("Hi", "<p>Hello {{firstName}}</p>", "camp_1", TENANT, _subscriber(clock))

    assert "<p>Hello Ada</p>" in document


def test_compose_escapes_subscriber_values_in_body(renderer, clock):
    # Arrange
    subscriber = _subscriber(
        clock,
        first_name="<img src=x onerror=alert(1)>",
        custom_fields={"company": 'Acme "R&D"'},
    )

    # Act
    document = renderer.compose(
        "Hi", "<p>Hi {{firstName}} from {{company}}</p>", "camp_1", TENANT, subscriber
    )

    # Assert
    assert "<img src=x" not in document
    assert "<p>Hi &lt;img src=x onerror=alert(1)&gt; from Acme &quot;R&amp;D&quot;</p>" in document


def test_personalize_keeps_plain_text_unescaped(renderer, clock):
    subscriber = _subscriber(clock, last_name="O'Brien & Sons")

    assert renderer.personalize("Dear {{lastName}}", subscriber) == "Dear O'Brien & Sons"


def test_preview_title_is_personalized(renderer):
    preview = renderer.render_preview("Hi {{firstName}}", "<p>Body</p>", TENANT, "camp_1")

    assert "<title>Hi Test</title>" in preview
    assert "{{firstName}}" not in preview


def test_preview_matches_real_send_structure(renderer, clock):
    """Preview goes through the same path as a send to the placeholder subscriber."""
    # Arrange
    placeholder = Subscriber(
        id="test-id",
        tenant_id=TENANT,
        email=PREVIEW_EMAIL,
        first_name="Test",
        last_name="User",
        source=SubscriberSource.MANUAL,
        subscribed_at=clock(),
    )

    # Act
    preview = renderer.render_preview("Hi", "<p>Hello {{firstName}}</p>", TENANT, "camp_1", "Sale")
    sent = renderer.compose("Hi", "<p>Hello {{firstName}}</p>", "camp_1", TENANT, placeholder, "Sale")

    # Assert
    assert preview == sent
    assert "<p>Hello Test</p>" in preview
    assert "email=test%40example.com" in _unsubscribe_href(preview)


# ---------------------------------------------------------------------------
# content blocks
# ---------------------------------------------------------------------------

def test_render_blocks_escapes_text_and_builds_button():
    html = render_blocks([
        ContentBlock(type="header", content={"title": "Big <sale>", "align": "center"}),
        ContentBlock(type="text", content={"text": "Hi {{firstName}} & friends"}),
        ContentBlock(type="button", content={"text": "Shop", "url": "https://shop.test/?a=1&b=2"}),
        ContentBlock(type="divider"),
    ])

    assert '<h1 style="text-align: center;">Big &lt;sale&gt;</h1>' in html
    assert "Hi {{firstName}} &amp; friends" in html
    assert 'href="https://shop.test/?a=1&amp;b=2"' in html
    assert "<hr" in html


def test_sms_block_adds_nothing_to_email_body():
    html = render_blocks([
        ContentBlock(type="text", content={"text": "Hello"}),
        ContentBlock(type="sms", content={"text": "Flash sale today"}),
    ])

    assert "Flash sale today" not in html


def test_unknown_block_type_reports_its_index():
    with pytest.raises(TemplateRenderError) as exc_info:
        render_blocks([
            ContentBlock(type="text", content={"text": "ok"}),
            ContentBlock(type="carousel", content={}),
        ])

    assert exc_info.value.block_index == 1


@pytest.mark.parametrize(
    "block",
    [
        ContentBlock(type="text", content={}),
        ContentBlock(type="button", content={"text": "Go"}),
        ContentBlock(type="image", content={"imageUrl": "https://x.test/a.png", "align": "middle"}),
        ContentBlock(type="spacer", content={"height": "tall"}),
        ContentBlock(type="product", content={"name": "Mug", "imageUrl": 42}),
    ],
)
def test_malformed_blocks_raise_render_error(block):
    with pytest.raises(TemplateRenderError) as exc_info:
        render_blocks([block])

    assert exc_info.value.block_index == 0
