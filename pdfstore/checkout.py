"""Payment-intent creation for card and PIX checkouts.

The pending order is committed before the gateway is called, and the order
id travels in the gateway metadata, so a webhook that arrives before we
store the provider id can still find the order.
"""
import json
import logging
from typing import List, Optional, Tuple

from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import SessionUser
from .errors import (
    AuthorizationError, NotFoundError, UpstreamError, ValidationError,
)
from .gateways import CardGateway, PixGateway
from .helpers import is_valid_email, new_id, normalize_email
from .model.catalog import (
    PricedLine, parse_cart_items, price_lines, subtotal_of,
)
from .model.coupons import CouponEvaluation, evaluate
from .model.db import Order
from .model.orders import (
    CANCELLED, PAYMENT_FAILED, PAYMENT_PENDING, PENDING, attach_payment,
    build_order, find_by_idempotency_key, get_order, replace_payment,
    transition,
)
from .money import ZERO, as_float, round_money, to_minor

logger = logging.getLogger(__name__)


async def price_cart(
    db: AsyncSession, raw_items, coupon_code: Optional[str],
    user_id: Optional[str],
) -> Tuple[List[PricedLine], Optional[CouponEvaluation]]:
    lines = await price_lines(db, parse_cart_items(raw_items))
    evaluation = None
    if coupon_code and coupon_code.strip():
        evaluation = await evaluate(
            db, coupon_code, lines, subtotal_of(lines), user_id=user_id
        )
        if not evaluation.ok:
            raise ValidationError(evaluation.error, evaluation.error_code)
    return lines, evaluation


def _metadata(order: Order, lines: List[PricedLine]) -> dict:
    return {
        "order_id": order.id,
        "user_id": order.user_id or "",
        "email": order.email,
        "items": json.dumps(
            [line.as_metadata() for line in lines], separators=(",", ":")
        ),
        "coupon_code": order.coupon_code or "",
    }


def _check_minimum(total, minimum) -> None:
    if total < minimum:
        raise ValidationError(
            f"Order total R$ {round_money(total)} is below the minimum of "
            f"R$ {round_money(minimum)} for this payment method"
        )


async def _insert_pending(db: AsyncSession, order: Order) -> Order:
    db.add(order)
    try:
        await db.commit()
    except sa_exc.IntegrityError:
        # same idempotency key committed by a concurrent request
        await db.rollback()
        existing = await find_by_idempotency_key(db, order.idempotency_key)
        if existing is None:
            raise
        return existing
    logger.info("pending %s order %s created: subtotal=%s discount=%s "
                "total=%s coupon=%s", order.payment_provider, order.id,
                order.subtotal, order.discount_amount, order.total,
                order.coupon_code)
    return order


async def _fail_order(db: AsyncSession, order: Order, err: UpstreamError):
    logger.error("gateway call for order %s failed: %s", order.id,
                 err.message)
    await transition(db, order, CANCELLED, PAYMENT_FAILED)
    await db.commit()


def _card_response(order: Order, intent) -> dict:
    return {
        "clientSecret": intent["client_secret"],
        "orderId": order.id,
        "paymentIntentId": intent["id"],
        "amount": as_float(order.total),
    }


async def create_card_intent(
    db: AsyncSession,
    gateway: CardGateway,
    *,
    items,
    coupon_code: Optional[str] = None,
    user: Optional[SessionUser] = None,
    email: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> dict:
    if idempotency_key:
        existing = await find_by_idempotency_key(db, idempotency_key)
        if existing is not None:
            return await _replay_card(gateway, existing)

    email = normalize_email(email or (user.email if user else ""))
    if email and not is_valid_email(email):
        raise ValidationError("email must be a valid email address")

    user_id = user.id if user else None
    lines, evaluation = await price_cart(db, items, coupon_code, user_id)
    order = build_order(
        lines=lines, evaluation=evaluation, provider=gateway.provider,
        email=email, user_id=user_id,
        idempotency_key=idempotency_key or new_id(),
    )
    _check_minimum(order.total, gateway.min_amount)

    order = await _insert_pending(db, order)
    if order.payment_id:
        # lost the idempotency race to an identical request
        return await _replay_card(gateway, order)

    try:
        intent = await gateway.create_intent(
            to_minor(order.total), "brl", _metadata(order, lines),
            idempotency_key=order.idempotency_key,
            receipt_email=order.email or None,
        )
    except UpstreamError as e:
        await _fail_order(db, order, e)
        raise

    await attach_payment(db, order, intent["id"])
    await db.commit()
    logger.info("card intent %s for order %s (%d minor units)",
                intent["id"], order.id, to_minor(order.total))
    return _card_response(order, intent)


async def _replay_card(gateway: CardGateway, order: Order) -> dict:
    if not order.payment_id:
        raise ValidationError(
            "A payment for this request is still being created"
        )
    logger.info("idempotent replay for order %s", order.id)
    intent = await gateway.retrieve_intent(order.payment_id)
    return _card_response(order, intent)


async def resume_card_payment(
    db: AsyncSession, gateway: CardGateway, order_id: str,
    user: Optional[SessionUser] = None,
) -> dict:
    order = await get_order(db, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    if order.user_id and (user is None or user.id != order.user_id):
        raise AuthorizationError("You cannot access this order")
    if order.status != PENDING:
        raise ValidationError(
            f"Order is not awaiting payment (status: {order.status})"
        )
    if order.payment_provider != gateway.provider or not order.payment_id:
        raise ValidationError("Order has no card payment to resume")

    intent = await gateway.retrieve_intent(order.payment_id)
    if intent["status"] == "succeeded":
        raise ValidationError("Payment already confirmed, awaiting "
                              "processing")
    if intent["status"] == "canceled":
        raise ValidationError("Payment was cancelled; start a new checkout")
    return {
        "clientSecret": intent["client_secret"],
        "amount": as_float(order.total),
        "paymentIntentId": intent["id"],
        "orderId": order.id,
        "email": order.email,
    }


def _pix_response(order: Order, payment) -> dict:
    return {
        "qr_code": payment["qr_code"],
        "qr_code_base64": payment["qr_code_base64"],
        "payment_id": payment["id"],
        "order_id": order.id,
    }


async def create_pix_payment(
    db: AsyncSession,
    gateway: PixGateway,
    *,
    items,
    user: SessionUser,
    description: Optional[str] = None,
    coupon_code: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> dict:
    if not is_valid_email(user.email):
        raise ValidationError("Your account needs a valid email for PIX")

    if idempotency_key:
        existing = await find_by_idempotency_key(db, idempotency_key)
        if existing is not None:
            if not existing.payment_id:
                raise ValidationError(
                    "A payment for this request is still being created"
                )
            payment = await gateway.get_payment(existing.payment_id)
            return _pix_response(existing, payment)

    lines, evaluation = await price_cart(db, items, coupon_code, user.id)
    order = build_order(
        lines=lines, evaluation=evaluation, provider=gateway.provider,
        email=normalize_email(user.email), user_id=user.id,
        idempotency_key=idempotency_key or new_id(),
    )
    _check_minimum(order.total, gateway.min_amount)
    order = await _insert_pending(db, order)

    description = (description or "").strip() or (
        ", ".join(line.name for line in lines)[:200]
    )
    try:
        payment = await gateway.create_payment(
            order.total, description, order.email, order.idempotency_key,
            _metadata(order, lines),
        )
        if payment["status"] != "pending":
            raise UpstreamError(
                f"PIX payment was not created (status: {payment['status']})"
            )
    except UpstreamError as e:
        await _fail_order(db, order, e)
        raise

    await attach_payment(db, order, payment["id"])
    await db.commit()
    logger.info("PIX payment %s for order %s (R$ %s)",
                payment["id"], order.id, order.total)
    return _pix_response(order, payment)


async def regenerate_pix(
    db: AsyncSession, gateway: PixGateway, order_id: str, user: SessionUser,
) -> dict:
    order = await get_order(db, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    if order.user_id != user.id:
        raise AuthorizationError("You cannot access this order")
    if order.status != PENDING:
        raise ValidationError(
            f"Order is not awaiting payment (status: {order.status})"
        )
    if order.payment_provider != gateway.provider:
        raise ValidationError("Order was not placed with PIX")
    if not order.items:
        raise NotFoundError("Order has no items")
    if round_money(order.total) <= ZERO:
        raise ValidationError("Order total must be positive")

    metadata = {
        "order_id": order.id,
        "user_id": order.user_id or "",
        "email": order.email,
        "items": json.dumps([
            {"productId": i.product_id, "variationId": i.variation_id,
             "quantity": i.quantity}
            for i in order.items
        ], separators=(",", ":")),
        "coupon_code": order.coupon_code or "",
    }
    payment = await gateway.create_payment(
        order.total, f"Pedido #{order.id[:8].upper()}", order.email,
        new_id(), metadata,
    )
    previous = order.payment_id
    await replace_payment(db, order, payment["id"], PAYMENT_PENDING)
    await db.commit()
    logger.info("regenerated PIX for order %s: %s -> %s",
                order.id, previous, payment["id"])
    return _pix_response(order, payment)
