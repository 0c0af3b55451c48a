"""Short-lived download links for purchased files."""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import SessionUser
from .errors import (
    AuthorizationError, DownloadLimitError, ExpiredError, NotFoundError,
)
from .helpers import normalize_email, utcnow
from .model.db import Download, File, Order, OrderItem
from .model.orders import find_order, get_order, is_paid
from .storage import SignedUrlProvider

logger = logging.getLogger(__name__)

DOWNLOAD_WINDOW = timedelta(days=30)
LINK_TTL_SECONDS = 15 * 60
MAX_DOWNLOADS = 5


def owns(order: Order, requester: SessionUser) -> bool:
    if order.user_id:
        return order.user_id == requester.id
    # guest order: bound to the purchase email
    return bool(requester.email) and (
        normalize_email(order.email) == normalize_email(requester.email)
    )


def check_window(order: Order, now: datetime) -> None:
    started = order.paid_at or order.created_at
    if now - started > DOWNLOAD_WINDOW:
        raise ExpiredError(
            "Download period has expired (30 days after purchase)"
        )


async def resolve_file(db: AsyncSession, item: OrderItem) -> Optional[File]:
    """Variation file first, then the product's file."""
    if item.variation_id:
        result = await db.execute(
            select(File).where(File.variation_id == item.variation_id)
            .order_by(File.created_at)
        )
        f = result.scalars().first()
        if f is not None:
            return f
    result = await db.execute(
        select(File).where(
            File.product_id == item.product_id, File.variation_id.is_(None)
        ).order_by(File.created_at)
    )
    return result.scalars().first()


async def issue_link(
    db: AsyncSession,
    storage: SignedUrlProvider,
    *,
    item_id: str,
    requester: SessionUser,
    order_ref: Optional[str] = None,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    now = now or utcnow()

    item = await db.get(OrderItem, item_id)
    if item is None:
        raise NotFoundError("Order item not found")
    if order_ref:
        order = await find_order(db, order_ref)
        if order is None or order.id != item.order_id:
            raise NotFoundError("Order not found")
    else:
        order = await get_order(db, item.order_id)
        if order is None:
            raise NotFoundError("Order not found")

    if not owns(order, requester):
        raise AuthorizationError("You do not have access to this order")
    if not is_paid(order):
        raise AuthorizationError("Payment has not been confirmed")
    check_window(order, now)

    f = await resolve_file(db, item)
    if f is None:
        logger.error("no file for item %s (product %s, variation %s)",
                     item.id, item.product_id, item.variation_id)
        raise NotFoundError("File not found for this product")

    result = await db.execute(
        update(OrderItem)
        .where(OrderItem.id == item.id,
               OrderItem.download_count < MAX_DOWNLOADS)
        .values(download_count=OrderItem.download_count + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        raise DownloadLimitError(
            f"Download limit of {MAX_DOWNLOADS} reached for this item"
        )
    db.add(Download(
        user_id=requester.id,
        order_id=order.id,
        order_item_id=item.id,
        file_id=f.id,
        ip_address=ip,
        user_agent=user_agent,
        downloaded_at=now,
    ))

    try:
        url = await storage.signed_url(f.path, LINK_TTL_SECONDS)
    except Exception:
        await db.rollback()
        raise
    await db.commit()

    count = await db.scalar(
        select(OrderItem.download_count).where(OrderItem.id == item.id)
    )
    logger.info("download link for item %s of order %s (%d/%d)",
                item.id, order.id, count, MAX_DOWNLOADS)
    return {
        "downloadUrl": url,
        "expiresIn": LINK_TTL_SECONDS,
        "downloadCount": count,
        "maxDownloads": MAX_DOWNLOADS,
        "remaining": max(0, MAX_DOWNLOADS - count),
    }
