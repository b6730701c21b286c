"""
Payment links and tariff catalogue.

A payment link is the pay form URL with our order parameters appended. Each
link persists an Order, so the webhook can reconcile either by the signed
token in order_num or by our order_id, and marks that order paid.

This is the library side of the buy flow: the bot menus that show tariffs and
hand out these links live outside this service, so nothing in the webhook
process calls create_payment_link or create_tariff_links itself.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional
from urllib.parse import quote_plus

import database
from app.services.payments.exceptions import PaymentLinkError
from app.services.payments.link_token import build_order_token
from app.services.payments.reconciler import parse_price

logger = logging.getLogger(__name__)

DEFAULT_PAY_BASE_URL = "https://soulway.payform.ru/"

# Price at the end of a tariff label: "1 МЕС • 1299 ₽" -> "1299"
_LABEL_PRICE_RE = re.compile(r"([0-9][0-9\s.,]*)\s*(?:₽|руб\.?|RUB)?\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class Tariff:
    label: str
    days: int
    price: int
    url: str
    product_name: str


@dataclass(frozen=True)
class PaymentLink:
    url: str
    order_id: str
    token: str


def extract_price(label: Optional[str], default: Optional[int] = None) -> Optional[int]:
    """
    Take the price from the end of a tariff label.

    "1 МЕС • 1299 ₽" -> 1299, "12 МЕС • 12 900 руб" -> 12900.
    Returns default when the label does not end in a number.
    """
    if not label:
        return default
    match = _LABEL_PRICE_RE.search(label.strip())
    if not match:
        return default
    price = parse_price(match.group(1))
    return price if price is not None else default


def load_tariffs(settings) -> List[Tariff]:
    """Tariff catalogue from settings; label price wins over the configured table."""
    tariffs = []
    for item in settings.tariffs:
        price = extract_price(item["label"])
        if price is None:
            logger.warning("TARIFF_PRICE_MISSING label=%s", item["label"])
            continue
        tariffs.append(Tariff(
            label=item["label"],
            days=int(item["days"]),
            price=price,
            url=item.get("url") or settings.pay_base_url,
            product_name=item["product_name"],
        ))
    return tariffs


def append_params(base_url: str, params: List[tuple]) -> str:
    """Append query params; keys are kept as-is ("products[0][name]"), values are encoded."""
    parts = [base_url]
    has_query = "?" in base_url
    for key, value in params:
        parts.append("&" if has_query else "?")
        has_query = True
        parts.append(f"{key}={quote_plus(str(value))}")
    return "".join(parts)


async def create_payment_link(
    telegram_id: int,
    days: int,
    price: int,
    product_name: str,
    link_secret: str,
    base_url: Optional[str] = None,
    plan: Optional[str] = None,
    now: Optional[datetime] = None,
    conn=None,
) -> PaymentLink:
    """
    Persist an Order and build the pay form URL for it.

    Args:
        telegram_id: Telegram user ID
        days: Subscription period in days
        price: Price in whole currency units
        product_name: Product name shown on the pay form
        link_secret: Secret for the order token
        base_url: Pay form URL (defaults to DEFAULT_PAY_BASE_URL)
        plan: Plan label stored with the order (defaults to product_name)
        now: Order creation time
        conn: Optional DB connection

    Returns:
        PaymentLink with URL, order id and token

    Raises:
        PaymentLinkError: non-positive user/days/price or missing secret
    """
    if telegram_id <= 0 or days <= 0 or price <= 0:
        raise PaymentLinkError(f"Invalid payment link: user={telegram_id}, days={days}, price={price}")
    try:
        token = build_order_token(telegram_id, days, link_secret)
    except ValueError as e:
        raise PaymentLinkError(str(e)) from e

    order_id = uuid.uuid4().hex
    await database.create_order(
        order_id=order_id,
        telegram_id=telegram_id,
        plan=plan or product_name,
        days=days,
        price=price,
        created_at=now,
        conn=conn,
    )

    url = append_params((base_url or DEFAULT_PAY_BASE_URL).strip(), [
        ("do", "pay"),
        ("order_num", token),
        ("order_id", order_id),
        ("customer_extra", telegram_id),
        ("products[0][price]", price),
        ("products[0][quantity]", 1),
        ("products[0][name]", product_name),
        ("sum", price),
    ])
    logger.info("PAYMENT_LINK_CREATED user=%s days=%s price=%s order_id=%s", telegram_id, days, price, order_id)
    return PaymentLink(url=url, order_id=order_id, token=token)


async def create_tariff_links(telegram_id: int, settings) -> List[tuple]:
    """(Tariff, PaymentLink) for every tariff of the catalogue."""
    links = []
    for tariff in load_tariffs(settings):
        link = await create_payment_link(
            telegram_id=telegram_id,
            days=tariff.days,
            price=tariff.price,
            product_name=tariff.product_name,
            link_secret=settings.link_secret,
            base_url=tariff.url,
            plan=tariff.label,
        )
        links.append((tariff, link))
    return links
