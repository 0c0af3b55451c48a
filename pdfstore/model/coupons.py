"""Coupon evaluation, redemption bookkeeping and the admin CRUD helpers.

``evaluate`` is read-only: it is safe to call from the cart preview, from
payment-intent creation and again from webhook fallback creation. The only
writes happen in ``redeem`` (on the pending -> completed transition) and in
the admin helpers.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import NotFoundError, ValidationError
from ..helpers import parse_iso8601, to_iso, utcnow
from ..money import D, Money, ZERO, as_float, round_money
from .catalog import PricedLine
from .db import Coupon, CouponProduct, CouponRedemption, CouponVariation

logger = logging.getLogger(__name__)

PERCENT = "percent"
FIXED = "fixed"
COUPON_TYPES = (PERCENT, FIXED)
SCOPES = ("all", "products", "variations")

# error codes
NOT_FOUND = "NOT_FOUND"
INACTIVE = "INACTIVE"
NOT_STARTED = "NOT_STARTED"
EXPIRED = "EXPIRED"
MAX_USES_REACHED = "MAX_USES_REACHED"
USER_LIMIT_REACHED = "USER_LIMIT_REACHED"
MIN_SUBTOTAL = "MIN_SUBTOTAL"
NOT_APPLICABLE = "NOT_APPLICABLE"


@dataclass
class CouponEvaluation:
    coupon: Optional[Coupon] = None
    discount: Money = ZERO
    eligible_subtotal: Money = ZERO
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failed(cls, code: str, message: str,
               coupon: Optional[Coupon] = None) -> "CouponEvaluation":
        return cls(coupon=coupon, error=message, error_code=code)


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def compute_discount(ctype: str, value, eligible) -> Money:
    """Discount over ``eligible``, always within ``[0, eligible]``."""
    eligible = round_money(eligible)
    if eligible <= 0:
        return ZERO
    value = D(value)
    if ctype == PERCENT:
        discount = round_money(eligible * value / Decimal(100))
    elif ctype == FIXED:
        discount = round_money(value)
    else:
        raise ValueError(f"unknown coupon type {ctype!r}")
    return max(ZERO, min(discount, eligible))


def eligible_subtotal(
    coupon: Coupon, lines: Iterable[PricedLine], subtotal
) -> Money:
    if coupon.applies_to == "all":
        return round_money(subtotal)
    product_ids = coupon.product_ids
    variation_ids = coupon.variation_ids
    total = ZERO
    for line in lines:
        if line.product_id in product_ids or (
            line.variation_id and line.variation_id in variation_ids
        ):
            total += line.total
    return round_money(total)


async def get_coupon_by_code(
    db: AsyncSession, code: str
) -> Optional[Coupon]:
    result = await db.execute(
        select(Coupon).where(Coupon.code == normalize_code(code))
    )
    return result.scalars().first()


async def count_user_redemptions(
    db: AsyncSession, coupon_id: str, user_id: str
) -> int:
    n = await db.scalar(
        select(func.count(CouponRedemption.id)).where(
            CouponRedemption.coupon_id == coupon_id,
            CouponRedemption.user_id == user_id,
        )
    )
    return int(n or 0)


async def evaluate(
    db: AsyncSession,
    code: str,
    lines: List[PricedLine],
    subtotal,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CouponEvaluation:
    now = now or utcnow()
    subtotal = round_money(subtotal)

    coupon = await get_coupon_by_code(db, code)
    if coupon is None:
        return CouponEvaluation.failed(NOT_FOUND, "Coupon not found")
    if not coupon.is_active:
        return CouponEvaluation.failed(
            INACTIVE, "This coupon is no longer active", coupon
        )
    if coupon.starts_at and coupon.starts_at > now:
        return CouponEvaluation.failed(
            NOT_STARTED, "This coupon is not valid yet", coupon
        )
    if coupon.ends_at and coupon.ends_at < now:
        return CouponEvaluation.failed(
            EXPIRED, "This coupon has expired", coupon
        )
    if coupon.max_uses is not None and coupon.used_count >= coupon.max_uses:
        return CouponEvaluation.failed(
            MAX_USES_REACHED, "This coupon has reached its usage limit",
            coupon,
        )
    if user_id and coupon.max_uses_per_user is not None:
        used = await count_user_redemptions(db, coupon.id, user_id)
        if used >= coupon.max_uses_per_user:
            return CouponEvaluation.failed(
                USER_LIMIT_REACHED, "You have already used this coupon",
                coupon,
            )
    if coupon.min_subtotal is not None and subtotal < coupon.min_subtotal:
        return CouponEvaluation.failed(
            MIN_SUBTOTAL,
            f"Minimum order value of R$ {round_money(coupon.min_subtotal)} "
            f"required",
            coupon,
        )

    eligible = eligible_subtotal(coupon, lines, subtotal)
    if eligible <= 0:
        return CouponEvaluation.failed(
            NOT_APPLICABLE,
            "This coupon does not apply to any item in the cart",
            coupon,
        )

    discount = compute_discount(coupon.ctype, coupon.value, eligible)
    logger.debug(
        "coupon %s: eligible=%s discount=%s", coupon.code, eligible, discount
    )
    return CouponEvaluation(
        coupon=coupon, discount=discount, eligible_subtotal=eligible
    )


async def redeem(
    db: AsyncSession, coupon_code: str, order_id: str,
    user_id: Optional[str], amount_discounted,
) -> bool:
    """Atomic ``used_count + 1`` plus the redemption row. Runs inside the
    caller's transaction; the caller commits."""
    code = normalize_code(coupon_code)
    result = await db.execute(
        update(Coupon)
        .where(Coupon.code == code)
        .values(used_count=Coupon.used_count + 1, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning(
            "coupon %s vanished before redemption of order %s", code, order_id
        )
        return False

    coupon_id = await db.scalar(select(Coupon.id).where(Coupon.code == code))
    db.add(CouponRedemption(
        coupon_id=coupon_id,
        user_id=user_id,
        order_id=order_id,
        amount_discounted=round_money(amount_discounted),
    ))
    logger.info("coupon %s redeemed by order %s", code, order_id)
    return True


# ----------------------------
# Admin
# ----------------------------
def _opt_money(data: dict, key: str):
    raw = data.get(key)
    if raw is None or raw == "":
        return None
    try:
        value = round_money(raw)
    except ValueError:
        raise ValidationError(f"{key} must be numeric")
    if value < 0:
        raise ValidationError(f"{key} must be >= 0")
    return value


def _opt_int(data: dict, key: str):
    raw = data.get(key)
    if raw is None or raw == "":
        return None
    if isinstance(raw, bool) or not isinstance(raw, int) or raw < 0:
        raise ValidationError(f"{key} must be a non-negative integer")
    return raw


def _opt_datetime(data: dict, key: str):
    raw = data.get(key)
    if not raw:
        return None
    try:
        return parse_iso8601(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid datetime format for {key}")


def _id_list(data: dict, key: str) -> Optional[List[str]]:
    raw = data.get(key)
    if raw is None:
        return None
    if not isinstance(raw, list) or not all(isinstance(x, str) for x in raw):
        raise ValidationError(f"{key} must be a list of ids")
    return list(dict.fromkeys(raw))


def coupon_fields_from_payload(data: dict, partial: bool = False) -> dict:
    """Validate an admin payload into column values. With ``partial`` only
    the keys present in the payload are returned."""
    fields = {}

    if "code" in data or not partial:
        code = normalize_code(data.get("code"))
        if not code:
            raise ValidationError("code is required")
        fields["code"] = code

    if "type" in data or not partial:
        ctype = (data.get("type") or PERCENT).lower().strip()
        if ctype not in COUPON_TYPES:
            raise ValidationError("type must be 'percent' or 'fixed'")
        fields["ctype"] = ctype

    if "value" in data or not partial:
        value = _opt_money(data, "value")
        if value is None or value <= 0:
            raise ValidationError("value must be > 0")
        fields["value"] = value

    ctype = fields.get("ctype")
    if ctype == PERCENT and fields.get("value", ZERO) > 100:
        raise ValidationError("percent value must be <= 100")

    if "appliesTo" in data or not partial:
        scope = (data.get("appliesTo") or "all").lower().strip()
        if scope not in SCOPES:
            raise ValidationError(
                "appliesTo must be one of: " + ", ".join(SCOPES)
            )
        fields["applies_to"] = scope

    mapping = {
        "minSubtotal": ("min_subtotal", _opt_money),
        "maxUses": ("max_uses", _opt_int),
        "maxUsesPerUser": ("max_uses_per_user", _opt_int),
        "startsAt": ("starts_at", _opt_datetime),
        "endsAt": ("ends_at", _opt_datetime),
    }
    for key, (column, parse) in mapping.items():
        if key in data:
            fields[column] = parse(data, key)
        elif not partial:
            fields[column] = 1 if column == "max_uses_per_user" else None

    for key, column, default in (
        ("stackable", "stackable", False),
        ("isActive", "is_active", True),
    ):
        if key in data:
            fields[column] = bool(data.get(key))
        elif not partial:
            fields[column] = default

    starts_at, ends_at = fields.get("starts_at"), fields.get("ends_at")
    if starts_at and ends_at and ends_at < starts_at:
        raise ValidationError("endsAt must be after startsAt")
    return fields


def _apply_scope(coupon: Coupon, data: dict) -> None:
    # rows that stay are reused; the unit of work inserts before it deletes
    product_ids = _id_list(data, "productIds")
    if product_ids is not None:
        kept = {cp.product_id: cp for cp in coupon.products}
        coupon.products = [
            kept.get(p) or CouponProduct(product_id=p) for p in product_ids
        ]
    variation_ids = _id_list(data, "variationIds")
    if variation_ids is not None:
        kept = {cv.variation_id: cv for cv in coupon.variations}
        coupon.variations = [
            kept.get(v) or CouponVariation(variation_id=v)
            for v in variation_ids
        ]


async def get_coupon(db: AsyncSession, coupon_id: str) -> Coupon:
    coupon = await db.get(Coupon, coupon_id)
    if coupon is None:
        raise NotFoundError("Coupon not found")
    return coupon


async def list_coupons(
    db: AsyncSession, active: Optional[bool] = None
) -> List[Coupon]:
    q = select(Coupon).order_by(Coupon.created_at.desc())
    if active is not None:
        q = q.where(Coupon.is_active.is_(active))
    result = await db.execute(q)
    return list(result.scalars().all())


async def create_coupon(db: AsyncSession, data: dict) -> Coupon:
    fields = coupon_fields_from_payload(data)
    if await get_coupon_by_code(db, fields["code"]) is not None:
        raise ValidationError("Coupon code already exists")
    coupon = Coupon(products=[], variations=[], **fields)
    _apply_scope(coupon, data)
    db.add(coupon)
    await db.commit()
    logger.info("coupon %s created", coupon.code)
    return coupon


async def update_coupon(
    db: AsyncSession, coupon_id: str, data: dict
) -> Coupon:
    coupon = await get_coupon(db, coupon_id)
    fields = coupon_fields_from_payload(data, partial=True)
    # the payload may change only one of type and value
    ctype = fields.get("ctype", coupon.ctype)
    if ctype == PERCENT and fields.get("value", coupon.value) > 100:
        raise ValidationError("percent value must be <= 100")
    if "code" in fields and fields["code"] != coupon.code:
        if await get_coupon_by_code(db, fields["code"]) is not None:
            raise ValidationError("Coupon code already exists")
    for column, value in fields.items():
        setattr(coupon, column, value)
    _apply_scope(coupon, data)
    coupon.updated_at = utcnow()
    await db.commit()
    logger.info("coupon %s updated", coupon.code)
    return coupon


async def delete_coupon(db: AsyncSession, coupon_id: str) -> None:
    coupon = await get_coupon(db, coupon_id)
    redeemed = await db.scalar(
        select(func.count(CouponRedemption.id))
        .where(CouponRedemption.coupon_id == coupon.id)
    )
    if redeemed:
        # redemptions are append-only history; deactivate instead
        raise ValidationError(
            "Coupon has redemptions; deactivate it instead of deleting"
        )
    await db.delete(coupon)
    await db.commit()
    logger.info("coupon %s deleted", coupon.code)


def coupon_as_api(c: Coupon) -> dict:
    return {
        "id": c.id,
        "code": c.code,
        "type": c.ctype,
        "value": as_float(c.value),
        "minSubtotal": (
            as_float(c.min_subtotal) if c.min_subtotal is not None else None
        ),
        "maxUses": c.max_uses,
        "maxUsesPerUser": c.max_uses_per_user,
        "usedCount": c.used_count,
        "appliesTo": c.applies_to,
        "productIds": sorted(c.product_ids),
        "variationIds": sorted(c.variation_ids),
        "stackable": c.stackable,
        "isActive": c.is_active,
        "startsAt": to_iso(c.starts_at),
        "endsAt": to_iso(c.ends_at),
    }
