# app/emails/renderer.py
import html
import logging
from datetime import date, datetime, timezone
from typing import Callable, Dict, Optional

from app.models.subscriber import Subscriber, SubscriberSource
from app.unsubscribe.tokens import UnsubscribeTokenService

logger = logging.getLogger(__name__)

PREVIEW_EMAIL = "test@example.com"


def _format_value(value) -> str:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


class EmailRenderer:
    """Builds the final email document for a subscriber.

    Every document carries the compliance footer with a signed unsubscribe
    link; campaign content only fills the body slot.
    """

    def __init__(
        self,
        tokens: UnsubscribeTokenService,
        company_name: str,
        company_address: str,
        preferences_url: str,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.tokens = tokens
        self.company_name = company_name
        self.company_address = company_address
        self.preferences_url = preferences_url
        self._clock = clock

    def personalize(self, template: str, subscriber: Subscriber, escape_html: bool = False) -> str:
        """Replace template variables with subscriber data.

        With escape_html the substituted values are HTML-escaped, for templates
        that end up in a document body. Subjects stay plain text.
        """
        replacements: Dict[str, str] = {
            "{{firstName}}": subscriber.first_name or "Valued Customer",
            "{{lastName}}": subscriber.last_name or "",
            "{{email}}": subscriber.email,
            "{{currentYear}}": str(self._clock().year),
        }
        for key, value in (subscriber.custom_fields or {}).items():
            replacements["{{" + key + "}}"] = _format_value(value)

        content = template
        for placeholder, value in replacements.items():
            if escape_html:
                value = html.escape(value, quote=True)
            content = content.replace(placeholder, value)
        return content

    def render(
        self,
        subject: str,
        content_html: str,
        campaign_id: Optional[str],
        tenant_id: str,
        subscriber: Subscriber,
        preheader: Optional[str] = None,
    ) -> str:
        """Wrap content in the standard document shell and compliance footer"""
        unsubscribe_url = self.tokens.generate(subscriber.email, tenant_id, campaign_id)
        footer_html = self._footer_html(unsubscribe_url)

        title = html.escape(subject)
        preheader_meta = ""
        preheader_div = ""
        if preheader:
            escaped = html.escape(preheader, quote=True)
            preheader_meta = f'<meta name="description" content="{escaped}">'
            preheader_div = f'<div style="display: none; max-height: 0px; overflow: hidden;">{escaped}</div>'

        return f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{title}</title>
    {preheader_meta}
    <style>
        body {{
            font-family: Arial, sans-serif;
            line-height: 1.6;
            color: #333333;
            margin: 0;
            padding: 0;
        }}
        .container {{
            max-width: 600px;
            margin: 0 auto;
            padding: 20px;
        }}
        a {{
            color: #4F46E5;
            text-decoration: none;
        }}
        img {{
            max-width: 100%;
            height: auto;
        }}
        @media screen and (max-width: 600px) {{
            .container {{
                width: 100% !important;
                padding: 10px !important;
            }}
        }}
    </style>
</head>
<body>
    <div class="container">
        {preheader_div}
        {content_html}
        {footer_html}
    </div>
</body>
</html>
"""

    def compose(
        self,
        subject: str,
        content_html: str,
        campaign_id: Optional[str],
        tenant_id: str,
        subscriber: Subscriber,
        preheader: Optional[str] = None,
    ) -> str:
        """personalize() then render(); the path used for both sends and previews.

        The subject is used as given; callers personalize it for the Subject
        header and pass the same text here for the document title.
        """
        personalized = self.personalize(content_html, subscriber, escape_html=True)
        return self.render(subject, personalized, campaign_id, tenant_id, subscriber, preheader)

    def render_preview(
        self,
        subject: str,
        content_html: str,
        tenant_id: str,
        campaign_id: Optional[str] = None,
        preheader: Optional[str] = None,
    ) -> str:
        preview_subscriber = Subscriber(
            id="test-id",
            tenant_id=tenant_id,
            email=PREVIEW_EMAIL,
            first_name="Test",
            last_name="User",
            source=SubscriberSource.MANUAL,
            campaigns=[campaign_id or "test-campaign"],
            subscribed_at=self._clock(),
        )
        return self.compose(
            self.personalize(subject, preview_subscriber),
            content_html,
            campaign_id,
            tenant_id,
            preview_subscriber,
            preheader,
        )

    def _footer_html(self, unsubscribe_url: str) -> str:
        company = html.escape(self.company_name)
        return f"""<div style="margin: 20px 0 0; padding: 20px; border-top: 1px solid #eaeaea; color: #666666; font-size: 12px; font-family: Arial, sans-serif; text-align: center;">
            <p style="margin: 10px 0;">You received this email because you signed up for {company} updates or made a purchase. We respect your privacy.</p>
            <p style="margin: 10px 0;">
                <a href="{unsubscribe_url}" style="color: #4F46E5; text-decoration: underline;" target="_blank" rel="noopener noreferrer">Unsubscribe</a>
                or
                <a href="{html.escape(self.preferences_url, quote=True)}" style="color: #4F46E5; text-decoration: underline;" target="_blank" rel="noopener noreferrer">manage your email preferences</a>
            </p>
            <p style="margin: 10px 0;">&copy; {self._clock().year} {company}. All rights reserved.</p>
            <p style="margin: 10px 0;">{html.escape(self.company_address)}</p>
        </div>"""
