"""
Order reconciliation: derive a trusted (telegram_id, days) pair from an
untrusted webhook field map.

Strategies run in fixed priority order and the first match wins:

1. TokenMatch          - signed order token in order_num / order_id (plus our order id when it agrees)
2. PersistedOrderMatch - our own order id, user and days read from the orders table
3. DirectFieldMatch    - customer_extra + days
4. PriceInference      - price -> days table, user from customer_extra
5. NameInference       - "3 месяца" in the product name, user from customer_extra

Each strategy is a small class with an async ``resolve`` so it can be tested
on its own. Storage errors in PersistedOrderMatch propagate; everything else
fails soft and lets the next strategy try.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence, Tuple

import database
from app.services.payments.link_token import looks_like_order_token, parse_order_token

logger = logging.getLogger(__name__)

STATUS_FIELDS = ("payment_status", "status")
USER_FIELD = "customer_extra"


# ====================================================================================
# Result Types
# ====================================================================================

@dataclass(frozen=True)
class Resolution:
    """Trusted grant parameters and the strategy that produced them"""
    telegram_id: int
    days: int
    strategy: str
    order_id: Optional[str] = None


@dataclass
class ReconcileContext:
    """Everything a strategy may consult besides the field map"""
    link_secret: str
    price_days: Mapping[int, int] = field(default_factory=dict)
    name_unit_days: Mapping[str, int] = field(default_factory=dict)
    conn: Any = None


# ====================================================================================
# Field helpers
# ====================================================================================

def first_value(fields: Mapping[str, str], names: Sequence[str]) -> Optional[str]:
    """Return first non-empty (stripped) value among names."""
    for name in names:
        value = fields.get(name)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def parse_positive_int(value: Optional[str]) -> Optional[int]:
    """Strict positive integer parse: ASCII digits only."""
    if value is None:
        return None
    value = str(value).strip()
    if not value or not value.isascii() or not value.isdigit():
        return None
    number = int(value)
    return number if number > 0 else None


_PRICE_RE = re.compile(r"\d[\d\s  .,]*")


def parse_price(value: Optional[str]) -> Optional[int]:
    """
    Parse price into whole currency units.

    "1299" -> 1299, "1299.00" -> 1299, "1 299,00 ₽" -> 1299, "12.900" -> 12900.
    A trailing separator followed by one or two digits is treated as the
    fractional part and dropped; all other non-digit characters are stripped.
    """
    if not value:
        return None
    match = _PRICE_RE.search(str(value))
    if not match:
        return None
    number = match.group(0).rstrip("   .,")
    fraction = re.search(r"[.,](\d{1,2})$", number)
    if fraction:
        number = number[:fraction.start()]
    digits = re.sub(r"\D", "", number)
    if not digits:
        return None
    price = int(digits)
    return price if price > 0 else None


def build_unit_pattern(name_unit_days: Mapping[str, int]) -> Optional["re.Pattern"]:
    """Compile "<count> <word>" matcher; the word must start with a configured unit."""
    if not name_unit_days:
        return None
    units = sorted(name_unit_days, key=len, reverse=True)
    alternatives = "|".join(re.escape(unit) for unit in units)
    return re.compile(rf"(\d+)\s*-?\s*((?:{alternatives})[^\W\d_]*)", re.IGNORECASE)


# Longest inflection accepted after a unit prefix ("месяц" + "ев", "week" + "s")
MAX_UNIT_SUFFIX = 3
DAYS_PER_MONTH = 30
DAYS_PER_YEAR = 365


def _unit_days(word: str, name_unit_days: Mapping[str, int]) -> Optional[int]:
    word = word.lower()
    for unit in sorted(name_unit_days, key=len, reverse=True):
        if word.startswith(unit) and len(word) - len(unit) <= MAX_UNIT_SUFFIX:
            return name_unit_days[unit]
    return None


def _period_days(count: int, unit_days: int) -> int:
    # Whole years of months count as years: "12 месяцев" is 365 days, not 360
    if unit_days == DAYS_PER_MONTH:
        years, months = divmod(count, 12)
        return years * DAYS_PER_YEAR + months * DAYS_PER_MONTH
    return count * unit_days


def parse_period_days(name: Optional[str], name_unit_days: Mapping[str, int]) -> Optional[int]:
    """
    Extract subscription period from a free-text product name.

    "Доступ к клубу срок 3 месяца" -> 90 with {"месяц": 30}; "12 месяцев" -> 365.
    The unit must be a whole word: "5 monkeys" does not match "mon".
    """
    if not name:
        return None
    pattern = build_unit_pattern(name_unit_days)
    if pattern is None:
        return None
    for match in pattern.finditer(name):
        count = int(match.group(1))
        unit_days = _unit_days(match.group(2), name_unit_days)
        if count > 0 and unit_days:
            return _period_days(count, unit_days)
    return None


def get_payment_status(fields: Mapping[str, str]) -> str:
    """Status field value ("" when absent)."""
    return first_value(fields, STATUS_FIELDS) or ""


def is_success_status(fields: Mapping[str, str], success_value: str) -> bool:
    """Case-insensitive comparison with the configured success value."""
    status = get_payment_status(fields)
    return bool(status) and status.lower() == success_value.strip().lower()


# ====================================================================================
# Strategies
# ====================================================================================

class ReconcileStrategy:
    """Base strategy: resolve() returns a Resolution or None."""
    name = "base"

    async def resolve(self, fields: Mapping[str, str], context: ReconcileContext) -> Optional[Resolution]:
        raise NotImplementedError


class TokenMatch(ReconcileStrategy):
    """
    Signed order token; the token alone decides user and days.

    Our payment links carry our order id next to the token. That order is
    attached to the resolution (so it is marked paid) only when the stored
    user and days agree with the token.
    """
    name = "token"

    def __init__(
        self,
        token_fields: Sequence[str] = ("order_num", "order_id"),
        order_fields: Sequence[str] = ("order_id", "order_num"),
    ):
        self.token_fields = tuple(token_fields)
        self.order_fields = tuple(order_fields)

    async def _linked_order_id(self, fields, context, telegram_id: int, days: int) -> Optional[str]:
        for name in self.order_fields:
            order_id = first_value(fields, (name,))
            if not order_id or looks_like_order_token(order_id):
                continue
            order = await database.get_order(order_id, conn=context.conn)
            if order and order.get("telegram_id") == telegram_id and order.get("days") == days:
                return order["order_id"]
            logger.warning("ORDER_TOKEN_ORDER_MISMATCH field=%s order_id=%s", name, order_id)
        return None

    async def resolve(self, fields, context):
        for name in self.token_fields:
            value = fields.get(name)
            if not value:
                continue
            parsed = parse_order_token(value, context.link_secret)
            if parsed is not None:
                telegram_id, days = parsed
                order_id = await self._linked_order_id(fields, context, telegram_id, days)
                return Resolution(telegram_id=telegram_id, days=days, strategy=self.name, order_id=order_id)
            if looks_like_order_token(value):
                logger.warning("ORDER_TOKEN_INVALID field=%s", name)
        return None


class PersistedOrderMatch(ReconcileStrategy):
    """Our own order id; user and days come from the stored order, not the payload."""
    name = "persisted_order"

    def __init__(self, order_fields: Sequence[str] = ("order_id", "order_num")):
        self.order_fields = tuple(order_fields)

    async def resolve(self, fields, context):
        for name in self.order_fields:
            order_id = first_value(fields, (name,))
            if not order_id or looks_like_order_token(order_id):
                continue
            order = await database.get_order(order_id, conn=context.conn)
            if not order:
                logger.debug("PERSISTED_ORDER_NOT_FOUND field=%s order_id=%s", name, order_id)
                continue
            telegram_id = order.get("telegram_id") or 0
            days = order.get("days") or 0
            if telegram_id <= 0 or days <= 0:
                logger.warning("PERSISTED_ORDER_INVALID order_id=%s user=%s days=%s", order_id, telegram_id, days)
                continue
            return Resolution(
                telegram_id=telegram_id,
                days=days,
                strategy=self.name,
                order_id=order["order_id"],
            )
        return None


class DirectFieldMatch(ReconcileStrategy):
    """customer_extra as user id plus explicit days field."""
    name = "direct_fields"

    def __init__(self, user_field: str = USER_FIELD, days_field: str = "days"):
        self.user_field = user_field
        self.days_field = days_field

    async def resolve(self, fields, context):
        telegram_id = parse_positive_int(fields.get(self.user_field))
        days = parse_positive_int(fields.get(self.days_field))
        if telegram_id is None or days is None:
            return None
        return Resolution(telegram_id=telegram_id, days=days, strategy=self.name)


class PriceInference(ReconcileStrategy):
    """Paid amount looked up in the configured price -> days table."""
    name = "price"

    def __init__(
        self,
        price_fields: Sequence[str] = ("products.0.price", "sum", "amount"),
        user_field: str = USER_FIELD,
    ):
        self.price_fields = tuple(price_fields)
        self.user_field = user_field

    async def resolve(self, fields, context):
        telegram_id = parse_positive_int(fields.get(self.user_field))
        if telegram_id is None or not context.price_days:
            return None
        for name in self.price_fields:
            price = parse_price(fields.get(name))
            if price is None:
                continue
            days = context.price_days.get(price)
            if days:
                return Resolution(telegram_id=telegram_id, days=days, strategy=self.name)
        return None


class NameInference(ReconcileStrategy):
    """Period parsed from the product name ("12 месяцев")."""
    name = "product_name"

    def __init__(
        self,
        name_fields: Sequence[str] = ("products.0.name", "product_name", "name"),
        user_field: str = USER_FIELD,
    ):
        self.name_fields = tuple(name_fields)
        self.user_field = user_field

    async def resolve(self, fields, context):
        telegram_id = parse_positive_int(fields.get(self.user_field))
        if telegram_id is None:
            return None
        for name in self.name_fields:
            days = parse_period_days(fields.get(name), context.name_unit_days)
            if days:
                return Resolution(telegram_id=telegram_id, days=days, strategy=self.name)
        return None


DEFAULT_STRATEGIES: Tuple[ReconcileStrategy, ...] = (
    TokenMatch(),
    PersistedOrderMatch(),
    DirectFieldMatch(),
    PriceInference(),
    NameInference(),
)


async def reconcile(
    fields: Mapping[str, str],
    context: ReconcileContext,
    strategies: Sequence[ReconcileStrategy] = DEFAULT_STRATEGIES,
) -> Optional[Resolution]:
    """
    Run strategies in order and return the first resolution.

    Args:
        fields: Flat payload field map
        context: Secrets, inference tables and optional DB connection
        strategies: Strategy chain (defaults to the fixed priority order)

    Returns:
        Resolution or None when no strategy matched
    """
    for strategy in strategies:
        resolution = await strategy.resolve(fields, context)
        if resolution is not None:
            logger.info(
                "RECONCILED strategy=%s user=%s days=%s",
                resolution.strategy, resolution.telegram_id, resolution.days
            )
            return resolution
    return None
