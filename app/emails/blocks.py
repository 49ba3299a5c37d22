# app/emails/blocks.py
"""Turns campaign content blocks into the HTML fragment placed in the email body."""

import html
from typing import Any, Callable, Dict, List

from app.core.exceptions import TemplateRenderError
from app.models.campaign import ContentBlock


def _require(content: Dict[str, Any], key: str, block_type: str) -> str:
    value = content.get(key)
    if not isinstance(value, str) or not value.strip():
        raise TemplateRenderError(f"{block_type} block requires a non-empty '{key}'")
    return value


def _align(content: Dict[str, Any], default: str = "left") -> str:
    align = content.get("align", default)
    if align not in ("left", "center", "right"):
        raise TemplateRenderError(f"Unsupported alignment: {align!r}")
    return align


def _text(content: Dict[str, Any]) -> str:
    text = _require(content, "text", "text")
    return f'<p style="text-align: {_align(content)};">{html.escape(text)}</p>'


def _header(content: Dict[str, Any]) -> str:
    title = _require(content, "title", "header")
    subtitle = content.get("subtitle")
    parts = [f'<h1 style="text-align: {_align(content)};">{html.escape(title)}</h1>']
    if subtitle:
        parts.append(f'<p style="text-align: {_align(content)}; color: #666666;">{html.escape(subtitle)}</p>')
    return "\n".join(parts)


def _image(content: Dict[str, Any]) -> str:
    url = _require(content, "imageUrl", "image")
    alt = html.escape(content.get("alt", ""), quote=True)
    img = f'<img src="{html.escape(url, quote=True)}" alt="{alt}">'
    link = content.get("link")
    if link:
        img = f'<a href="{html.escape(link, quote=True)}">{img}</a>'
    return f'<div style="text-align: {_align(content)};">{img}</div>'


def _button(content: Dict[str, Any]) -> str:
    text = _require(content, "text", "button")
    url = _require(content, "url", "button")
    color = html.escape(content.get("backgroundColor", "#4F46E5"), quote=True)
    return (
        f'<div style="text-align: {_align(content, "center")}; margin: 20px 0;">'
        f'<a href="{html.escape(url, quote=True)}" style="background-color: {color}; color: #ffffff; '
        f'padding: 12px 24px; border-radius: 4px; display: inline-block;">{html.escape(text)}</a>'
        f'</div>'
    )


def _product(content: Dict[str, Any]) -> str:
    name = _require(content, "name", "product")
    price = content.get("price", "")
    description = content.get("description", "")
    parts = ['<div class="product" style="border: 1px solid #eaeaea; padding: 15px; margin: 15px 0;">']
    if content.get("imageUrl"):
        parts.append(f'<img src="{html.escape(content["imageUrl"], quote=True)}" alt="{html.escape(name, quote=True)}">')
    parts.append(f'<h3>{html.escape(name)}</h3>')
    if description:
        parts.append(f'<p>{html.escape(str(description))}</p>')
    if price != "":
        parts.append(f'<p style="font-weight: bold;">{html.escape(str(price))}</p>')
    if content.get("url"):
        parts.append(f'<a href="{html.escape(content["url"], quote=True)}">Shop now</a>')
    parts.append('</div>')
    return "\n".join(parts)


def _divider(content: Dict[str, Any]) -> str:
    return '<hr style="border: none; border-top: 1px solid #eaeaea; margin: 20px 0;">'


def _spacer(content: Dict[str, Any]) -> str:
    height = content.get("height", 20)
    if not isinstance(height, int) or isinstance(height, bool) or height < 0:
        raise TemplateRenderError("spacer block height must be a non-negative integer")
    return f'<div style="height: {height}px; line-height: {height}px;">&nbsp;</div>'


def _raw_html(content: Dict[str, Any]) -> str:
    return _require(content, "html", "html")


def _sms(content: Dict[str, Any]) -> str:
    # Delivered over SMS, nothing goes in the email body
    _require(content, "text", "sms")
    return ""


BLOCK_RENDERERS: Dict[str, Callable[[Dict[str, Any]], str]] = {
    "text": _text,
    "header": _header,
    "image": _image,
    "button": _button,
    "product": _product,
    "divider": _divider,
    "spacer": _spacer,
    "html": _raw_html,
    "sms": _sms,
}


def render_blocks(blocks: List[ContentBlock]) -> str:
    fragments = []
    for index, block in enumerate(blocks):
        renderer = BLOCK_RENDERERS.get(block.type)
        if renderer is None:
            raise TemplateRenderError(f"Unknown block type: {block.type!r}", block_index=index)
        try:
            fragment = renderer(block.content)
        except TemplateRenderError as e:
            raise TemplateRenderError(e.message, block_index=index)
        except (TypeError, AttributeError) as e:
            raise TemplateRenderError(f"Malformed {block.type} block: {e}", block_index=index)
        if fragment:
            fragments.append(fragment)
    return "\n".join(fragments)
