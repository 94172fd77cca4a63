# /cartresq/services/email_renderer.py

"""
Email rendering for reminder, discount-offer and campaign emails.

Everything here is a pure function of its arguments: no database access and no
clock reads unless a timestamp is passed in. Cart items come straight from the
store integrations, so every field lookup falls back through the names the
WooCommerce and Shopify payloads use.
"""

import html
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import quote, urlencode
from pydantic import BaseModel

from cartresq.config import strings
from cartresq.models.cart import AbandonedCart, Platform
from cartresq.models.campaign import CampaignContent

ACCENT_COLOR = "#4CAF50"
OFFER_COLOR = "#e63946"


class RenderedEmail(BaseModel):
    subject: str
    html: str


# --- Cart data helpers ---

def _first_present(item: Dict[str, Any], keys: Iterable[str], default):
    for key in keys:
        value = item.get(key)
        if value not in (None, ""):
            return value
    return default


def item_fields(item: Dict[str, Any]) -> Tuple[str, int, float]:
    """(name, quantity, unit price) with 'Product' / 1 / 0.0 defaults."""
    name = str(_first_present(item, ("product_name", "name", "title"), "Product"))
    try:
        quantity = int(_first_present(item, ("quantity", "qty"), 1))
    except (TypeError, ValueError):
        quantity = 1
    try:
        price = float(_first_present(item, ("price", "unit_price", "line_price"), 0))
    except (TypeError, ValueError):
        price = 0.0
    return name, quantity, price


def build_recovery_link(cart: Optional[AbandonedCart], store_url: str, timestamp_ms: Optional[int] = None) -> str:
    """
    WooCommerce: {store}/cart/?add-to-cart=ID[&variation_id=V]&quantity=Q[&attr=val]...&_t=ts
    Shopify:     {store}/checkout/{cart_id}
    Anything else (or no cart) links to the store itself.
    """
    base = (store_url or "").rstrip("/")
    if cart is None or not cart.cart_id:
        return base

    if cart.platform == Platform.WOOCOMMERCE.value:
        params: List[str] = []
        for item in cart.items:
            product_id = _first_present(item, ("product_id", "id"), None)
            if product_id is None:
                continue
            _, quantity, _ = item_fields(item)
            part = f"add-to-cart={quote(str(product_id))}"
            if item.get("variation_id"):
                part += f"&variation_id={quote(str(item['variation_id']))}"
            part += f"&quantity={quantity}"
            variation = item.get("variation")
            if isinstance(variation, dict) and variation:
                part += "&" + urlencode({str(k): str(v) for k, v in variation.items()})
            params.append(part)
        if timestamp_ms is not None:
            params.append(f"_t={timestamp_ms}")
        return f"{base}/cart/?{'&'.join(params)}"

    if cart.platform == Platform.SHOPIFY.value:
        return f"{base}/checkout/{quote(cart.cart_id)}"

    return base


def build_unsubscribe_link(store_url: str, email: Optional[str]) -> str:
    return f"{(store_url or '').rstrip('/')}/unsubscribe?email={quote(email or '', safe='')}"


def render_items_table(items: List[Dict[str, Any]]) -> str:
    """Line-item table, or an empty-state paragraph for carts without items."""
    if not items:
        return f'<p style="color: #666; font-style: italic;">{strings.EMPTY_CART_MESSAGE}</p>'

    rows = []
    for item in items:
        name, quantity, price = item_fields(item)
        rows.append(
            '<tr style="border-bottom: 1px solid #eee;">'
            f'<td style="padding: 12px; text-align: left;">{html.escape(name)}</td>'
            f'<td style="padding: 12px; text-align: center;">{quantity}</td>'
            f'<td style="padding: 12px; text-align: right;">${price:.2f}</td>'
            f'<td style="padding: 12px; text-align: right; font-weight: bold;">${price * quantity:.2f}</td>'
            '</tr>'
        )
    header_cells = "".join(
        f'<th style="padding: 12px; text-align: {align}; border-bottom: 2px solid #e0e0e0;">{label}</th>'
        for label, align in (("Product", "left"), ("Quantity", "center"), ("Price", "right"), ("Total", "right"))
    )
    return (
        '<div class="cart-items" style="margin: 25px 0;">'
        f'<h3 style="color: #333; margin-bottom: 15px; font-size: 18px;">{strings.CART_ITEMS_HEADING}</h3>'
        '<table style="width: 100%; border-collapse: collapse; background: #f9f9f9;">'
        f'<thead><tr style="background: #f5f5f5;">{header_cells}</tr></thead>'
        f'<tbody>{"".join(rows)}</tbody>'
        '</table></div>'
    )


# --- Layout ---

def _button(href: str, label: str, color: str = ACCENT_COLOR) -> str:
    return (
        '<div style="text-align: center; margin: 30px 0;">'
        f'<a href="{html.escape(href, quote=True)}" style="display: inline-block; padding: 15px 30px; '
        f'background-color: {color}; color: #ffffff; text-decoration: none; border-radius: 6px; '
        f'font-weight: bold; font-size: 16px;">{label}</a></div>'
    )


def _footer(notice: str, prompt: str, unsubscribe_link: str, recipient: Optional[str]) -> str:
    sent_to = (
        f'<p style="margin: 0;">This email was sent to {html.escape(recipient)}</p>' if recipient else ""
    )
    return (
        '<div style="margin-top: 30px; padding: 20px; background: #f8f9fa; border-radius: 6px;">'
        f'<p style="margin: 0 0 10px 0; color: #666; font-size: 14px;">{notice}</p>'
        f'<p style="margin: 0; color: #666; font-size: 14px;">{prompt} '
        f'<a href="{html.escape(unsubscribe_link, quote=True)}" style="color: #666; text-decoration: underline;">Unsubscribe</a></p>'
        '</div>'
        '<div style="margin-top: 20px; padding-top: 20px; border-top: 1px solid #eee; text-align: center; color: #999; font-size: 12px;">'
        f'{sent_to}<p style="margin: 5px 0 0 0;">{strings.COPYRIGHT_LINE}</p></div>'
    )


def _document(title: str, body: str) -> str:
    return (
        '<!DOCTYPE html><html lang="en"><head><meta charset="UTF-8">'
        '<meta name="viewport" content="width=device-width, initial-scale=1.0">'
        f'<title>{html.escape(title)}</title></head>'
        '<body style="margin: 0; padding: 0; background-color: #f4f4f4; font-family: Arial, sans-serif;">'
        '<div style="max-width: 600px; margin: 20px auto; background: #ffffff; padding: 30px; border-radius: 8px;">'
        f'{body}</div></body></html>'
    )


def _headline(text: str) -> str:
    return (
        '<div style="text-align: center; margin-bottom: 30px;">'
        f'<h1 style="color: #333333; font-size: 28px; margin: 0;">{text}</h1></div>'
    )


# --- Email kinds ---

def render_reminder(
    cart: AbandonedCart, reminder_type: str, store_url: str, timestamp_ms: Optional[int] = None
) -> RenderedEmail:
    message = strings.REMINDER_MESSAGES.get(reminder_type, strings.REMINDER_MESSAGES["manual"])
    subject = strings.REMINDER_SUBJECTS.get(reminder_type, strings.REMINDER_SUBJECTS["manual"])
    recovery_link = build_recovery_link(cart, store_url, timestamp_ms)

    body = (
        _headline(strings.REMINDER_HEADLINE)
        + '<div style="margin-bottom: 25px; color: #333333; font-size: 16px; line-height: 1.5;">'
        + f'<p>{message}</p><p>{strings.REMINDER_SUBLINE}</p></div>'
        + render_items_table(cart.items)
        + _button(recovery_link, strings.CHECKOUT_BUTTON_LABEL)
        + _footer(strings.CART_SAVED_NOTICE, strings.UNSUBSCRIBE_PROMPT,
                  build_unsubscribe_link(store_url, cart.customer_email), cart.customer_email)
    )
    return RenderedEmail(subject=subject, html=_document(strings.CAMPAIGN_DEFAULT_SUBJECT, body))


def format_discount(amount: float, coupon_type: str) -> str:
    shown = f"{amount:g}"
    return f"{shown}%" if coupon_type == "percentage" else f"${shown}"


def render_discount_offer(
    cart: AbandonedCart, store_url: str, coupon_code: str, coupon_amount: float,
    coupon_type: str = "percentage", timestamp_ms: Optional[int] = None,
) -> RenderedEmail:
    recovery_link = build_recovery_link(cart, store_url, timestamp_ms)
    offer = (
        '<div style="text-align: center; margin: 25px 0;">'
        '<p style="font-size: 18px; margin-bottom: 10px;">Use Code: '
        f'<strong style="background: #f8f9fa; padding: 5px 10px; border-radius: 4px;">{html.escape(coupon_code)}</strong></p>'
        f'<p style="font-size: 20px; color: {OFFER_COLOR}; margin: 10px 0;">'
        f'Get {format_discount(coupon_amount, coupon_type)} OFF your purchase!</p>'
        f'<p style="color: #666; font-style: italic; margin-top: 10px;">{strings.DISCOUNT_URGENCY}</p></div>'
    )
    body = (
        _headline(strings.DISCOUNT_HEADLINE)
        + '<div style="margin-bottom: 25px; color: #333333; font-size: 16px; line-height: 1.5;">'
        + f'<p>{strings.DISCOUNT_INTRO}</p><p>{strings.DISCOUNT_LEAD_IN}</p></div>'
        + offer
        + (render_items_table(cart.items) if cart.items else "")
        + _button(recovery_link, strings.DISCOUNT_BUTTON_LABEL, color=OFFER_COLOR)
        + _footer(strings.DISCOUNT_EXCLUSIVE_NOTICE, strings.DISCOUNT_UNSUBSCRIBE_PROMPT,
                  build_unsubscribe_link(store_url, cart.customer_email), cart.customer_email)
    )
    return RenderedEmail(subject=strings.DISCOUNT_SUBJECT, html=_document(strings.DISCOUNT_SUBJECT, body))


_CTA_PATTERN = "|".join(re.escape(f"[{phrase}]") for phrase in strings.CTA_PHRASES)
_TOKEN_RE = re.compile(r"\{customer_name\}|\{cart_items\}|\{checkout_link\}|" + _CTA_PATTERN)


def substitute_tokens(text: str, customer_name: str, items_html: str, recovery_link: str) -> str:
    """
    Replaces {customer_name}, {cart_items}, {checkout_link} and bracketed CTA phrases
    in a single pass, so substituted values are never scanned again.
    """
    link = (
        f'<a href="{html.escape(recovery_link, quote=True)}" style="color: {ACCENT_COLOR}; '
        f'text-decoration: underline;">{strings.CHECKOUT_BUTTON_LABEL}</a>'
    )

    def replace(match: re.Match) -> str:
        token = match.group(0)
        if token == "{customer_name}":
            return html.escape(customer_name)
        if token == "{cart_items}":
            return items_html
        if token == "{checkout_link}":
            return recovery_link
        return link

    return _TOKEN_RE.sub(replace, text)


def soften_subject(subject: str) -> str:
    """Rewrites the first occurrence of spam-trigger phrases."""
    for phrase, replacement in strings.SPAM_SUBJECT_REWRITES:
        subject = re.sub(re.escape(phrase), replacement, subject, count=1, flags=re.IGNORECASE)
    return subject


def render_campaign_subject(subject: Optional[str], cart: Optional[AbandonedCart], recovery_link: str) -> str:
    customer_name = cart.display_name if cart else ""
    text = subject or strings.CAMPAIGN_DEFAULT_SUBJECT
    text = text.replace("{customer_name}", customer_name).replace("{checkout_link}", recovery_link)
    return soften_subject(text)


def render_campaign(
    content: CampaignContent, cart: Optional[AbandonedCart], store_url: str,
    recipient_email: Optional[str] = None, timestamp_ms: Optional[int] = None,
) -> RenderedEmail:
    """
    Campaign body with placeholder substitution. The items table is appended only
    when the author did not place {cart_items} in the template themselves.
    """
    template = content.body or content.template or ""
    recovery_link = build_recovery_link(cart, store_url, timestamp_ms)
    customer_name = cart.display_name if cart else ""
    items_html = render_items_table(cart.items) if cart and cart.items else ""
    recipient = recipient_email or (cart.customer_email if cart else None)

    body_text = substitute_tokens(template, customer_name, items_html, recovery_link)
    body = (
        '<div style="margin-bottom: 25px; color: #333333; font-size: 16px; line-height: 1.6;">'
        + body_text.replace("\n", "<br>")
        + '</div>'
        + ("" if "{cart_items}" in template else items_html)
        + _button(recovery_link, strings.CHECKOUT_BUTTON_LABEL)
        + _footer(strings.CART_SAVED_NOTICE, strings.UNSUBSCRIBE_PROMPT,
                  build_unsubscribe_link(store_url, recipient), recipient)
    )
    subject = render_campaign_subject(content.subject, cart, recovery_link)
    return RenderedEmail(subject=subject, html=_document(strings.CAMPAIGN_DEFAULT_SUBJECT, body))


def render(kind: str, cart: Optional[AbandonedCart], store_url: str, **options) -> RenderedEmail:
    """
    Single entry point used by the job executors.
    kind: first | second | final | manual (or manual-reminder) | discount-offer | campaign
    """
    if kind == "manual-reminder":
        kind = "manual"
    if kind in strings.REMINDER_SUBJECTS:
        return render_reminder(cart, kind, store_url, timestamp_ms=options.get("timestamp_ms"))
    if kind == "discount-offer":
        return render_discount_offer(
            cart, store_url,
            coupon_code=options["coupon_code"],
            coupon_amount=options["coupon_amount"],
            coupon_type=options.get("coupon_type", "percentage"),
            timestamp_ms=options.get("timestamp_ms"),
        )
    if kind == "campaign":
        return render_campaign(
            options["content"], cart, store_url,
            recipient_email=options.get("recipient_email"),
            timestamp_ms=options.get("timestamp_ms"),
        )
    raise ValueError(f"Unknown email kind: {kind}")


_BLOCK_END_RE = re.compile(r"<\s*(br\s*/?|/p|/div|/tr|/h[1-6]|/li)\s*>", re.IGNORECASE)
_DROP_RE = re.compile(r"<(style|script|head)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")


def html_to_text(markup: str) -> str:
    """Plain-text fallback for the multipart message."""
    text = _DROP_RE.sub("", markup)
    text = _BLOCK_END_RE.sub("\n", text)
    text = html.unescape(_TAG_RE.sub(" ", text))
    lines = [re.sub(r"[ \t]+", " ", line).strip() for line in text.splitlines()]
    return "\n".join(line for line in lines if line)
