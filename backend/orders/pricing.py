"""
Pricing - server-side total recomputation.

Client-submitted totals are never trusted: line totals and the order total are
recomputed from unit prices and quantities, and the submitted total is only
used to detect tampering or stale carts.
"""

from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional, Protocol

import structlog

from errors import ValidationError
from orders.models import Amounts, LineItem, money

logger = structlog.get_logger().bind(component="pricing")

# Half a cent: absorbs float noise from clients, never a real price difference.
AMOUNT_EPSILON = Decimal("0.005")


class PricedItem(Protocol):
    product_ref: str
    name: str
    unit_price: Decimal
    quantity: int


def _non_negative(label: str, value) -> Decimal:
    try:
        amount = money(value or 0)
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{label} is not a valid amount")
    if amount < 0:
        raise ValidationError(f"{label} cannot be negative")
    return amount


def build_line_items(items: Iterable[PricedItem]) -> list[LineItem]:
    """Validate cart lines and compute each ``line_total``."""
    items = list(items or [])
    if not items:
        raise ValidationError("Order items are required")

    lines = []
    for index, item in enumerate(items, start=1):
        if not item.product_ref or not item.name:
            raise ValidationError(f"Item {index} is missing product_ref or name")
        if not isinstance(item.quantity, int) or item.quantity <= 0:
            raise ValidationError(f"Item {index} has an invalid quantity")
        unit_price = _non_negative(f"Item {index} unit_price", item.unit_price)
        lines.append(LineItem(
            product_ref=item.product_ref,
            name=item.name[:127],
            unit_price=unit_price,
            quantity=item.quantity,
            line_total=money(unit_price * item.quantity),
        ))
    return lines


def recompute_amounts(
    line_items: list[LineItem],
    shipping=0,
    tax=0,
    discount=0,
) -> Amounts:
    subtotal = money(sum((line.line_total for line in line_items), Decimal("0")))
    shipping = _non_negative("shipping", shipping)
    tax = _non_negative("tax", tax)
    discount = _non_negative("discount", discount)
    if discount > subtotal + shipping + tax:
        raise ValidationError("discount exceeds the order value")
    return Amounts(
        subtotal=subtotal,
        shipping=shipping,
        tax=tax,
        discount=discount,
        total=money(subtotal + shipping + tax - discount),
    )


def deviates(recomputed: Decimal, submitted: Decimal) -> bool:
    return abs(money(recomputed) - money(submitted)) > AMOUNT_EPSILON


def price_checkout(
    items: Iterable[PricedItem],
    submitted_total,
    shipping=0,
    tax=0,
    discount=0,
) -> tuple[list[LineItem], Amounts]:
    """
    Recompute a checkout and compare against the client's declared total.

    Raises:
        ValidationError: on empty/malformed items or a total mismatch.
    """
    line_items = build_line_items(items)
    amounts = recompute_amounts(line_items, shipping, tax, discount)
    submitted = _non_negative("total", submitted_total)

    if deviates(amounts.total, submitted):
        logger.warning("checkout_total_mismatch",
                       recomputed=str(amounts.total),
                       submitted=str(submitted))
        raise ValidationError(
            f"Submitted total {submitted} does not match computed total {amounts.total}",
            computed_total=str(amounts.total),
        )
    return line_items, amounts


def revalidate(line_items: list[LineItem], amounts: Amounts) -> Optional[Amounts]:
    """
    Re-check a stored breakdown before provider submission.

    Returns ``None`` when consistent, otherwise the recomputed ``Amounts``.
    """
    recomputed = recompute_amounts(line_items, amounts.shipping, amounts.tax, amounts.discount)
    if recomputed.total == money(amounts.total) and amounts.is_consistent():
        return None
    return recomputed
