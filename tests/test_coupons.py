from datetime import timedelta
from decimal import Decimal

import pytest

from pdfstore.helpers import utcnow
from pdfstore.model import coupons
from pdfstore.model.catalog import CartLine, price_lines, subtotal_of
from pdfstore.model.db import Coupon, CouponRedemption


# ===============================================================================
# DISCOUNT ARITHMETIC
# ===============================================================================

@pytest.mark.parametrize("eligible,value,expected", [
    ("100.00", "10", "10.00"),
    ("33.33", "10", "3.33"),
    ("0.05", "10", "0.01"),      # 0.005 rounds half-up
    ("19.90", "12.5", "2.49"),   # 2.4875
    ("80.00", "100", "80.00"),
])
def test_percent_discount_rounds_half_up(eligible, value, expected):
    got = coupons.compute_discount("percent", value, Decimal(eligible))
    assert got == Decimal(expected)


@pytest.mark.parametrize("eligible,value,expected", [
    ("100.00", "30", "30.00"),
    ("20.00", "30", "20.00"),
    ("20.00", "20", "20.00"),
])
def test_fixed_discount_is_capped_at_eligible(eligible, value, expected):
    got = coupons.compute_discount("fixed", value, Decimal(eligible))
    assert got == Decimal(expected)


def test_discount_never_leaves_zero_to_eligible():
    for eligible in ("0.01", "0.99", "10.00", "149.99"):
        e = Decimal(eligible)
        for pct in ("0", "1", "33.3", "99.99", "100", "250"):
            d = coupons.compute_discount("percent", pct, e)
            assert Decimal("0") <= d <= e
        for fixed in ("0.01", "5", "1000"):
            d = coupons.compute_discount("fixed", fixed, e)
            assert d == min(Decimal(fixed), e)


def test_zero_eligible_gives_zero_discount():
    assert coupons.compute_discount("fixed", "10", Decimal("0")) == 0


# ===============================================================================
# EVALUATION ORDER
# ===============================================================================

async def _guide_cart(db, qty=1):
    lines = await price_lines(db, [CartLine("p-guide", None, qty)])
    return lines, subtotal_of(lines)


async def test_unknown_code(db, catalog):
    lines, subtotal = await _guide_cart(db)
    ev = await coupons.evaluate(db, "NOPE", lines, subtotal)
    assert not ev.ok
    assert ev.error_code == coupons.NOT_FOUND


async def test_code_lookup_is_case_insensitive(db, save10):
    lines, subtotal = await _guide_cart(db)
    ev = await coupons.evaluate(db, "  save10 ", lines, subtotal)
    assert ev.ok
    assert ev.discount == Decimal("10.00")


@pytest.mark.parametrize("fields,code", [
    ({"is_active": False}, coupons.INACTIVE),
    ({"starts_at": utcnow() + timedelta(days=1)}, coupons.NOT_STARTED),
    ({"ends_at": utcnow() - timedelta(seconds=1)}, coupons.EXPIRED),
    ({"max_uses": 5, "used_count": 5}, coupons.MAX_USES_REACHED),
    ({"min_subtotal": Decimal("100.01")}, coupons.MIN_SUBTOTAL),
])
async def test_failure_reasons(db, catalog, fields, code):
    db.add(Coupon(code="X", ctype="percent", value=Decimal("10"), **fields))
    await db.commit()
    lines, subtotal = await _guide_cart(db)
    ev = await coupons.evaluate(db, "X", lines, subtotal)
    assert ev.error_code == code
    assert ev.discount == 0


async def test_inactive_checked_before_expiry(db, catalog):
    db.add(Coupon(code="OLD", ctype="percent", value=Decimal("10"),
                  is_active=False, ends_at=utcnow() - timedelta(days=3)))
    await db.commit()
    lines, subtotal = await _guide_cart(db)
    ev = await coupons.evaluate(db, "OLD", lines, subtotal)
    assert ev.error_code == coupons.INACTIVE


async def test_min_subtotal_boundary_is_inclusive(db, catalog):
    db.add(Coupon(code="MIN100", ctype="fixed", value=Decimal("5"),
                  min_subtotal=Decimal("100.00")))
    await db.commit()
    lines, subtotal = await _guide_cart(db)
    ev = await coupons.evaluate(db, "MIN100", lines, subtotal)
    assert ev.ok
    assert ev.discount == Decimal("5.00")


async def test_per_user_limit_only_with_known_user(db, save10, customer):
    db.add(CouponRedemption(coupon_id=save10.id, user_id=customer.id,
                            order_id="o-previous",
                            amount_discounted=Decimal("10.00")))
    await db.commit()
    lines, subtotal = await _guide_cart(db)

    ev = await coupons.evaluate(db, "SAVE10", lines, subtotal,
                                user_id=customer.id)
    assert ev.error_code == coupons.USER_LIMIT_REACHED

    anonymous = await coupons.evaluate(db, "SAVE10", lines, subtotal)
    assert anonymous.ok


async def test_scope_restricts_eligible_subtotal(db, scoped_coupon):
    await scoped_coupon("PLANNER20", ["p-planner"])
    lines = await price_lines(db, [
        CartLine("p-guide", None, 1),
        CartLine("p-planner", None, 2),
    ])
    subtotal = subtotal_of(lines)
    assert subtotal == Decimal("200.00")

    ev = await coupons.evaluate(db, "PLANNER20", lines, subtotal)
    assert ev.ok
    assert ev.eligible_subtotal == Decimal("100.00")
    assert ev.discount == Decimal("20.00")


async def test_scope_without_matching_lines_is_not_applicable(
        db, scoped_coupon):
    await scoped_coupon("PLANNER20", ["p-planner"])
    lines, subtotal = await _guide_cart(db)
    ev = await coupons.evaluate(db, "PLANNER20", lines, subtotal)
    assert ev.error_code == coupons.NOT_APPLICABLE


async def test_evaluate_has_no_side_effects(db, save10):
    lines, subtotal = await _guide_cart(db)
    for _ in range(3):
        assert (await coupons.evaluate(db, "SAVE10", lines, subtotal)).ok
    await db.refresh(save10)
    assert save10.used_count == 0


# ===============================================================================
# HTTP PREVIEW
# ===============================================================================

async def test_validate_prices_from_catalog(client, save10):
    r = await client.post("/coupon/validate", json={
        "code": "SAVE10",
        "cartItems": [{"productId": "p-guide", "quantity": 1, "price": 1}],
        "cartTotal": 1,
    })
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["discount"] == 10.0
    assert body["newTotal"] == 90.0
    assert body["originalTotal"] == 100.0
    assert body["coupon"]["code"] == "SAVE10"
    assert body["coupon"]["type"] == "percent"


async def test_validate_unknown_code_is_404(client, catalog):
    r = await client.post("/coupon/validate", json={
        "code": "NOPE",
        "cartItems": [{"productId": "p-guide", "quantity": 1}],
    })
    assert r.status_code == 404
    assert r.json() == {"error": "Coupon not found"}


async def test_validate_rejects_expired_with_400(client, db, catalog):
    db.add(Coupon(code="GONE", ctype="fixed", value=Decimal("5"),
                  ends_at=utcnow() - timedelta(days=1)))
    await db.commit()
    r = await client.post("/coupon/validate", json={
        "code": "GONE",
        "cartItems": [{"productId": "p-guide", "quantity": 1}],
    })
    assert r.status_code == 400
    assert "expired" in r.json()["error"]


async def test_single_use_coupon_is_spent_by_a_paid_order(
        client, db, services, catalog, customer, other_customer, login):
    once = Coupon(code="ONCE", ctype="fixed", value=Decimal("5"),
                  max_uses=1, used_count=0, max_uses_per_user=1)
    db.add(once)
    await db.commit()

    login(customer)
    r = await client.post("/payment-intent", json={
        "items": [{"productId": "p-guide", "quantity": 1}],
        "couponCode": "ONCE",
    })
    assert r.status_code == 200, r.text
    assert r.json()["amount"] == 95.0
    payload, headers = services.card.emit(r.json()["paymentIntentId"])
    r = await client.post("/payment-webhook", content=payload,
                          headers=headers)
    assert r.status_code == 200, r.text

    login(other_customer)
    r = await client.post("/coupon/validate", json={
        "code": "ONCE",
        "cartItems": [{"productId": "p-guide", "quantity": 1}],
    })
    assert r.status_code == 400
    assert r.json()["error"] == "This coupon has reached its usage limit"

    await db.refresh(once)
    assert once.used_count == 1
    lines, subtotal = await _guide_cart(db)
    ev = await coupons.evaluate(db, "ONCE", lines, subtotal,
                                user_id=other_customer.id)
    assert ev.error_code == coupons.MAX_USES_REACHED


async def test_validate_requires_code_and_items(client, catalog):
    r = await client.post("/coupon/validate", json={"code": "SAVE10"})
    assert r.status_code == 400
