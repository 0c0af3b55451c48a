"""Order persistence and the order status state machine.

    pending --> completed --> refunded
       |
       +------> cancelled

``cancelled`` and ``refunded`` absorb every later event. All transitions go
through ``transition``, a conditional UPDATE on the current status, so two
writers racing on the same order cannot both win.
"""
import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from ..errors import (
    AuthorizationError, IntegrityError, NotFoundError, UpstreamError,
    ValidationError,
)
from ..helpers import new_id, to_iso, utcnow
from ..money import D, ZERO, as_float, round_money
from .catalog import PricedLine, subtotal_of
from .coupons import CouponEvaluation
from .db import Order, OrderItem

logger = logging.getLogger(__name__)

PENDING = "pending"
COMPLETED = "completed"
CANCELLED = "cancelled"
REFUNDED = "refunded"

ORDER_STATUSES = (PENDING, COMPLETED, CANCELLED, REFUNDED)

ALLOWED_TRANSITIONS = {
    PENDING: frozenset({COMPLETED, CANCELLED}),
    COMPLETED: frozenset({REFUNDED}),
    CANCELLED: frozenset(),
    REFUNDED: frozenset(),
}

PAYMENT_PAID = "paid"
PAYMENT_PENDING = "pending"
PAYMENT_CANCELLED = "cancelled"
PAYMENT_REFUNDED = "refunded"
PAYMENT_FAILED = "failed"

# provider status -> (order status, payment status)
_PROVIDER_STATUS = {
    # success
    "approved": (COMPLETED, PAYMENT_PAID),
    "paid": (COMPLETED, PAYMENT_PAID),
    "authorized": (COMPLETED, PAYMENT_PAID),
    "succeeded": (COMPLETED, PAYMENT_PAID),
    # still in flight
    "pending": (PENDING, PAYMENT_PENDING),
    "in_process": (PENDING, PAYMENT_PENDING),
    "in_mediation": (PENDING, PAYMENT_PENDING),
    "processing": (PENDING, PAYMENT_PENDING),
    # dead
    "cancelled": (CANCELLED, PAYMENT_CANCELLED),
    "canceled": (CANCELLED, PAYMENT_CANCELLED),
    "rejected": (CANCELLED, PAYMENT_CANCELLED),
    "expired": (CANCELLED, PAYMENT_CANCELLED),
    "charged_back": (CANCELLED, PAYMENT_CANCELLED),
    "refunded": (REFUNDED, PAYMENT_REFUNDED),
}

SUCCESS_PAYMENT_STATUSES = frozenset({"paid", "succeeded", "approved"})

# absolute tolerance between order total and the amount the provider reports
AMOUNT_TOLERANCE = D("0.01")


def map_provider_status(status: Optional[str]) -> Tuple[str, str]:
    """Single mapping from any provider status to (order, payment) status.

    Total: anything unknown is treated as still pending.
    """
    key = (status or "").strip().lower()
    mapped = _PROVIDER_STATUS.get(key)
    if mapped is not None:
        return mapped
    if key.startswith("requires_"):
        # requires_payment_method, requires_action, requires_confirmation...
        return (PENDING, PAYMENT_PENDING)
    logger.warning("unknown provider status %r, treating as pending", status)
    return (PENDING, PAYMENT_PENDING)


def is_paid(order: Order) -> bool:
    return order.status == COMPLETED or (
        (order.payment_status or "").lower() in SUCCESS_PAYMENT_STATUSES
    )


def check_paid_amount(order: Order, paid) -> None:
    paid = round_money(paid)
    total = round_money(order.total)
    if abs(total - paid) > AMOUNT_TOLERANCE:
        logger.error(
            "amount mismatch on order %s: stored total=%s paid=%s "
            "(manual review required)", order.id, total, paid,
        )
        raise IntegrityError(
            f"paid amount {paid} does not match order total {total}"
        )


# ----------------------------
# Reads
# ----------------------------
async def get_order(
    db: AsyncSession, order_id: str, fresh: bool = False
) -> Optional[Order]:
    q = select(Order).where(Order.id == order_id)
    if fresh:
        q = q.execution_options(populate_existing=True)
    result = await db.execute(q)
    return result.scalars().first()


async def find_by_payment_id(
    db: AsyncSession, payment_id: str
) -> Optional[Order]:
    if not payment_id:
        return None
    result = await db.execute(
        select(Order).where(Order.payment_id == payment_id)
    )
    return result.scalars().first()


async def find_order(db: AsyncSession, ref: str) -> Optional[Order]:
    """Look up by internal id, falling back to the provider payment id."""
    order = await get_order(db, ref)
    if order is None:
        order = await find_by_payment_id(db, ref)
    return order


async def find_by_idempotency_key(
    db: AsyncSession, key: str
) -> Optional[Order]:
    result = await db.execute(
        select(Order).where(Order.idempotency_key == key)
    )
    return result.scalars().first()


async def list_orders(
    db: AsyncSession,
    user_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 100,
) -> List[Order]:
    q = select(Order).order_by(Order.created_at.desc())
    if user_id is not None:
        q = q.where(Order.user_id == user_id)
    if status is not None:
        q = q.where(Order.status == status)
    result = await db.execute(q.limit(max(1, min(limit, 500))))
    return list(result.scalars().all())


# ----------------------------
# Writes
# ----------------------------
def build_order(
    *,
    lines: List[PricedLine],
    evaluation: Optional[CouponEvaluation],
    provider: str,
    email: str,
    user_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    order_id: Optional[str] = None,
    payment_id: Optional[str] = None,
) -> Order:
    subtotal = subtotal_of(lines)
    discount = ZERO
    coupon_code = None
    if evaluation is not None and evaluation.ok:
        discount = evaluation.discount
        coupon_code = evaluation.coupon.code
    total = max(ZERO, subtotal - discount)
    # keep total == subtotal - discount exact
    discount = subtotal - total

    order = Order(
        id=order_id or new_id(),
        user_id=user_id,
        email=email or "",
        subtotal=subtotal,
        discount_amount=discount,
        total=total,
        currency="BRL",
        status=PENDING,
        payment_provider=provider,
        payment_id=payment_id,
        payment_status=PAYMENT_PENDING,
        coupon_code=coupon_code,
        idempotency_key=idempotency_key,
    )
    order.items = [
        OrderItem(
            position=pos,
            product_id=line.product_id,
            variation_id=line.variation_id,
            name=line.name,
            price=line.unit_price,
            quantity=line.quantity,
            total=line.total,
            download_count=0,
        )
        for pos, line in enumerate(lines)
    ]
    return order


async def attach_payment(
    db: AsyncSession, order: Order, payment_id: str
) -> None:
    """Record the provider id on a pending order. A webhook may have beaten
    us to it, in which case the stored id wins."""
    result = await db.execute(
        update(Order)
        .where(Order.id == order.id, Order.payment_id.is_(None))
        .values(payment_id=payment_id, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        set_committed_value(order, "payment_id", payment_id)


async def replace_payment(
    db: AsyncSession, order: Order, payment_id: str, payment_status: str
) -> None:
    now = utcnow()
    await db.execute(
        update(Order)
        .where(Order.id == order.id)
        .values(
            payment_id=payment_id,
            payment_status=payment_status,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    set_committed_value(order, "payment_id", payment_id)
    set_committed_value(order, "payment_status", payment_status)
    set_committed_value(order, "updated_at", now)


async def transition(
    db: AsyncSession,
    order: Order,
    target: str,
    payment_status: str,
    paid_amount=None,
    now: Optional[datetime] = None,
) -> bool:
    """Move ``order`` to ``target`` if allowed. Returns True only for the
    writer whose UPDATE changed the row; that writer owns the side effects.
    Raises ``IntegrityError`` on an amount mismatch into completed."""
    current = order.status
    if target == current:
        return False
    if target not in ALLOWED_TRANSITIONS.get(current, ()):
        logger.warning(
            "ignoring transition %s -> %s for order %s",
            current, target, order.id,
        )
        return False
    if target == COMPLETED and paid_amount is not None:
        check_paid_amount(order, paid_amount)

    now = now or utcnow()
    values = {
        "status": target,
        "payment_status": payment_status,
        "updated_at": now,
    }
    if target == COMPLETED:
        values["paid_at"] = now

    result = await db.execute(
        update(Order)
        .where(Order.id == order.id, Order.status == current)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info(
            "order %s was no longer %s; %s -> %s lost the race",
            order.id, current, current, target,
        )
        return False

    for key, value in values.items():
        set_committed_value(order, key, value)
    logger.info("order %s: %s -> %s (payment %s)",
                order.id, current, target, payment_status)
    return True


async def _cancel_intent_upstream(card, order: Order) -> None:
    try:
        intent = await card.retrieve_intent(order.payment_id)
    except UpstreamError as e:
        logger.warning("could not look up intent %s for order %s: %s",
                       order.payment_id, order.id, e.message)
        return
    if intent["status"] == "succeeded":
        # the customer has paid; the webhook will complete the order
        logger.info("refusing to cancel order %s: intent %s succeeded",
                    order.id, order.payment_id)
        raise ValidationError("Payment already confirmed; the order can no "
                              "longer be cancelled")
    if intent["status"] == "canceled":
        return
    try:
        await card.cancel_intent(order.payment_id)
    except UpstreamError as e:
        logger.warning(
            "could not cancel intent %s upstream for order %s: %s",
            order.payment_id, order.id, e.message,
        )


async def cancel_order(
    db: AsyncSession, order_id: str, card, requester_id: Optional[str]
) -> str:
    """Cancel a pending order. Returns a message; idempotent for orders
    already cancelled."""
    order = await get_order(db, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    if order.user_id and order.user_id != requester_id:
        raise AuthorizationError("You cannot cancel this order")

    if order.status == CANCELLED:
        return "Order was already cancelled"
    if order.status == COMPLETED:
        raise ValidationError("Order has already been paid and cannot be "
                              "cancelled")
    if order.status != PENDING:
        raise ValidationError(
            f"Only pending orders can be cancelled (status: {order.status})"
        )

    if order.payment_provider == "card" and order.payment_id:
        await _cancel_intent_upstream(card, order)

    changed = await transition(db, order, CANCELLED, PAYMENT_CANCELLED)
    await db.commit()
    if changed:
        return "Order cancelled"

    order = await get_order(db, order_id, fresh=True)
    if order.status == CANCELLED:
        return "Order was already cancelled"
    raise ValidationError(
        f"Order can no longer be cancelled (status: {order.status})"
    )


def order_as_api(order: Order, with_items: bool = True) -> dict:
    out = {
        "id": order.id,
        "status": order.status,
        "paymentStatus": order.payment_status,
        "paymentProvider": order.payment_provider,
        "paymentId": order.payment_id,
        "email": order.email,
        "subtotal": as_float(order.subtotal),
        "discountAmount": as_float(order.discount_amount),
        "total": as_float(order.total),
        "currency": order.currency,
        "couponCode": order.coupon_code,
        "createdAt": to_iso(order.created_at),
        "paidAt": to_iso(order.paid_at),
    }
    if with_items:
        out["items"] = [
            {
                "id": item.id,
                "productId": item.product_id,
                "variationId": item.variation_id,
                "name": item.name,
                "price": as_float(item.price),
                "quantity": item.quantity,
                "total": as_float(item.total),
                "downloadCount": item.download_count,
            }
            for item in order.items
        ]
    return out
