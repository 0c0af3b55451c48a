"""Apply provider payment events to orders.

Webhooks can arrive more than once, out of order and concurrently with the
synchronous checkout path. What keeps this safe:

- the event id is recorded in ``webhook_events_seen`` inside the same
  transaction as the order change, so an exact replay is a no-op and a
  failed attempt leaves no mark;
- ``orders.transition`` only lets one writer move an order out of a given
  status, and only that writer redeems the coupon and sends the email;
- terminal statuses absorb everything after them.
"""
import json
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from sqlalchemy import exc as sa_exc
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import IntegrityError, StoreError, UpstreamError
from .gateways import CardGateway, PaymentEvent, PixGateway
from .helpers import utcnow
from .model.catalog import parse_cart_items, price_lines, subtotal_of
from .model.coupons import evaluate, redeem
from .model.db import Order, User
from .model.orders import (
    COMPLETED, PENDING, build_order, find_by_payment_id,
    get_order, map_provider_status, transition,
)
from .notify import Notifier, send_order_confirmation
from .storage import SignedUrlProvider

logger = logging.getLogger(__name__)


@dataclass
class ReconcileOutcome:
    order_id: Optional[str] = None
    status: Optional[str] = None
    transitioned: bool = False
    created: bool = False
    replay: bool = False


async def mark_event_seen(db: AsyncSession, key: str) -> bool:
    """True the first time ``key`` is seen in a committed transaction."""
    result = await db.execute(
        text("""
            INSERT INTO webhook_events_seen (idempotency_key, created_at)
            VALUES (:k, :ts)
            ON CONFLICT (idempotency_key) DO NOTHING
            RETURNING idempotency_key
        """),
        {"k": key, "ts": utcnow()},
    )
    return result.first() is not None


async def locate_order(
    db: AsyncSession, event: PaymentEvent, order_status: str
) -> Tuple[Optional[Order], bool]:
    """Returns (order, superseded). ``superseded`` is True when the event is
    about a payment the order has since replaced and must not be applied."""
    order = await find_by_payment_id(db, event.payment_id)
    if order is not None:
        return order, False

    order_id = event.metadata.get("order_id")
    if not order_id:
        return None, False
    order = await get_order(db, order_id)
    if order is None or order.payment_provider != event.provider:
        return None, False
    if order.payment_id and order.payment_id != event.payment_id:
        # a regenerated PIX code; only a paid old code may take over
        if order_status != COMPLETED:
            logger.info("order %s holds payment %s; dropping %s event for "
                        "superseded payment %s", order.id, order.payment_id,
                        event.status, event.payment_id)
            return order, True
    if order.payment_id != event.payment_id:
        logger.info("order %s: payment id %s -> %s from event metadata",
                    order.id, order.payment_id, event.payment_id)
        order.payment_id = event.payment_id
        order.updated_at = utcnow()
        await db.flush()
    return order, False


async def create_order_from_event(
    db: AsyncSession, event: PaymentEvent
) -> Optional[Order]:
    """Rebuild a missing order from gateway metadata, priced from the
    catalog. Returns None when the metadata is not enough."""
    meta = event.metadata
    raw = meta.get("items")
    if not raw:
        logger.warning("payment %s: no order and no items in metadata",
                       event.payment_id)
        return None
    try:
        items = json.loads(raw) if isinstance(raw, str) else raw
        lines = await price_lines(db, parse_cart_items(items))
    except (ValueError, StoreError) as e:
        logger.warning("payment %s: cannot rebuild order from metadata: %s",
                       event.payment_id, e)
        return None

    user_id = meta.get("user_id") or None
    if user_id and await db.get(User, user_id) is None:
        user_id = None

    evaluation = None
    if meta.get("coupon_code"):
        evaluation = await evaluate(
            db, meta["coupon_code"], lines, subtotal_of(lines),
            user_id=user_id,
        )
        if not evaluation.ok:
            logger.warning("payment %s: coupon %s no longer valid (%s)",
                           event.payment_id, meta["coupon_code"],
                           evaluation.error_code)

    order = build_order(
        lines=lines,
        evaluation=evaluation,
        provider=event.provider,
        email=meta.get("email") or "",
        user_id=user_id,
        order_id=meta.get("order_id") or None,
        payment_id=event.payment_id,
    )
    db.add(order)
    await db.flush()
    logger.warning("order %s created from %s webhook metadata for "
                   "payment %s", order.id, event.provider, event.payment_id)
    return order


async def _apply(db: AsyncSession, event: PaymentEvent) -> ReconcileOutcome:
    order_status, payment_status = map_provider_status(event.status)
    logger.info("%s event %s: payment %s status %s (-> %s) amount %s",
                event.provider, event.event_id, event.payment_id,
                event.status, order_status, event.amount)

    if event.event_id:
        key = f"{event.provider}:{event.event_id}"
        if not await mark_event_seen(db, key):
            await db.rollback()
            logger.info("event %s already applied", key)
            return ReconcileOutcome(replay=True)

    order, superseded = await locate_order(db, event, order_status)
    if superseded:
        await db.commit()
        return ReconcileOutcome(order_id=order.id, status=order.status)
    created = False
    if order is None:
        if order_status not in (PENDING, COMPLETED):
            logger.info("payment %s is %s and has no order; nothing to do",
                        event.payment_id, event.status)
            await db.commit()
            return ReconcileOutcome()
        order = await create_order_from_event(db, event)
        if order is None:
            await db.commit()
            return ReconcileOutcome()
        created = True

    # raises IntegrityError on amount mismatch; caller rolls back
    changed = await transition(
        db, order, order_status, payment_status, paid_amount=event.amount
    )
    if changed and order_status == COMPLETED and order.coupon_code:
        await redeem(db, order.coupon_code, order.id, order.user_id,
                     order.discount_amount)
    await db.commit()
    return ReconcileOutcome(
        order_id=order.id, status=order.status, transitioned=changed,
        created=created,
    )


async def notify_completed(
    db: AsyncSession, order_id: str, notifier: Notifier,
    storage: SignedUrlProvider,
) -> bool:
    try:
        order = await get_order(db, order_id, fresh=True)
        return await send_order_confirmation(db, order, storage, notifier)
    except Exception:
        # a paid order stays paid; the customer can ask for a resend
        logger.exception("confirmation email for order %s failed", order_id)
        return False


async def reconcile(
    db: AsyncSession,
    event: PaymentEvent,
    *,
    notifier: Notifier,
    storage: SignedUrlProvider,
) -> ReconcileOutcome:
    for attempt in (1, 2):
        try:
            outcome = await _apply(db, event)
            break
        except IntegrityError:
            await db.rollback()
            raise
        except sa_exc.IntegrityError:
            # fallback creation raced the checkout path on a unique key;
            # the second pass finds the order the other writer committed
            await db.rollback()
            if attempt == 2:
                raise
            logger.info("unique race while reconciling payment %s, retrying",
                        event.payment_id)

    if outcome.transitioned and outcome.status == COMPLETED:
        await notify_completed(db, outcome.order_id, notifier, storage)
    return outcome


async def refresh_from_provider(
    db: AsyncSession,
    order: Order,
    *,
    card: CardGateway,
    pix: PixGateway,
    notifier: Notifier,
    storage: SignedUrlProvider,
) -> Order:
    """Polling path: ask the provider about a pending order and apply the
    answer through the same reconciler the webhooks use."""
    if order.status != PENDING or not order.payment_id:
        return order
    try:
        if order.payment_provider == pix.provider:
            event = pix.payment_event(await pix.get_payment(order.payment_id))
        else:
            event = card.intent_event(
                await card.retrieve_intent(order.payment_id)
            )
        await reconcile(db, event, notifier=notifier, storage=storage)
    except UpstreamError as e:
        logger.warning("status refresh for order %s failed: %s",
                       order.id, e.message)
    except IntegrityError:
        # logged by the state machine; the order stays pending
        pass
    return await get_order(db, order.id, fresh=True)
