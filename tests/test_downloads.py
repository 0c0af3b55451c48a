from datetime import datetime, timedelta
from urllib.parse import parse_qs, urlparse

import pytest
from sqlalchemy import func, select

from pdfstore.auth import SessionUser
from pdfstore.downloads import MAX_DOWNLOADS, issue_link, owns
from pdfstore.errors import (
    AuthorizationError, DownloadLimitError, ExpiredError, NotFoundError,
)
from pdfstore.helpers import utcnow
from pdfstore.model.catalog import CartLine, price_lines
from pdfstore.model.db import Download, Product
from pdfstore.model.orders import build_order


PAID_AT = datetime(2026, 3, 1, 12, 0, 0)


async def _order(db, lines, *, user=None, email="ana@example.com",
                 paid=True, paid_at=PAID_AT):
    priced = await price_lines(db, lines)
    order = build_order(lines=priced, evaluation=None, provider="card",
                        email=email, user_id=user.id if user else None)
    if paid:
        order.status = "completed"
        order.payment_status = "paid"
        order.paid_at = paid_at
    db.add(order)
    await db.commit()
    return order


def _as_session(user) -> SessionUser:
    return SessionUser(id=user.id, email=user.email)


# ===============================================================================
# ACCESS
# ===============================================================================

async def test_issues_link_for_owner(db, services, catalog, customer):
    order = await _order(db, [CartLine("p-guide", None, 1)], user=customer)
    item = order.items[0]

    out = await issue_link(db, services.storage, item_id=item.id,
                           requester=_as_session(customer),
                           ip="10.0.0.1", user_agent="pytest",
                           now=PAID_AT + timedelta(days=1))
    assert out["downloadUrl"].startswith(
        "https://files.test/products/guia.pdf?token="
    )
    assert out["expiresIn"] == 900
    assert out["downloadCount"] == 1
    assert out["maxDownloads"] == MAX_DOWNLOADS
    assert out["remaining"] == MAX_DOWNLOADS - 1

    log = (await db.execute(select(Download))).scalars().one()
    assert log.order_item_id == item.id
    assert log.file_id == "f-guide"
    assert log.ip_address == "10.0.0.1"


async def test_signed_token_names_the_file(db, services, catalog, customer):
    order = await _order(db, [CartLine("p-guide", None, 1)], user=customer)
    out = await issue_link(db, services.storage, item_id=order.items[0].id,
                           requester=_as_session(customer),
                           now=PAID_AT + timedelta(days=1))
    token = parse_qs(urlparse(out["downloadUrl"]).query)["token"][0]
    signed = services.storage.serializer.loads(token, max_age=900)
    assert signed == {"key": "products/guia.pdf", "ttl": 900}


async def test_variation_file_is_preferred(db, services, catalog, customer):
    order = await _order(db, [CartLine("p-guide", "v-premium", 1)],
                         user=customer)
    out = await issue_link(db, services.storage, item_id=order.items[0].id,
                           requester=_as_session(customer),
                           now=PAID_AT + timedelta(days=1))
    assert "/products/guia-premium.pdf?" in out["downloadUrl"]


async def test_unknown_item(db, services, catalog, customer):
    with pytest.raises(NotFoundError):
        await issue_link(db, services.storage, item_id="missing",
                         requester=_as_session(customer))


async def test_item_must_belong_to_given_order(db, services, catalog,
                                               customer):
    first = await _order(db, [CartLine("p-guide", None, 1)], user=customer)
    second = await _order(db, [CartLine("p-planner", None, 1)],
                          user=customer)
    with pytest.raises(NotFoundError):
        await issue_link(db, services.storage, item_id=first.items[0].id,
                         order_ref=second.id,
                         requester=_as_session(customer),
                         now=PAID_AT + timedelta(days=1))


async def test_not_owner(db, services, catalog, customer, other_customer):
    order = await _order(db, [CartLine("p-guide", None, 1)], user=customer)
    with pytest.raises(AuthorizationError):
        await issue_link(db, services.storage, item_id=order.items[0].id,
                         requester=_as_session(other_customer),
                         now=PAID_AT + timedelta(days=1))


async def test_guest_order_is_owned_by_purchase_email(db, catalog, customer,
                                                      other_customer):
    order = await _order(db, [CartLine("p-guide", None, 1)],
                         email="ANA@example.com")
    assert owns(order, _as_session(customer))
    assert not owns(order, _as_session(other_customer))


async def test_unpaid_order(db, services, catalog, customer):
    order = await _order(db, [CartLine("p-guide", None, 1)], user=customer,
                         paid=False)
    with pytest.raises(AuthorizationError):
        await issue_link(db, services.storage, item_id=order.items[0].id,
                         requester=_as_session(customer))


async def test_missing_file(db, services, catalog, customer):
    db.add(Product(id="p-empty", name="Sem arquivo", slug="sem-arquivo",
                   price=10))
    await db.commit()
    order = await _order(db, [CartLine("p-empty", None, 1)], user=customer)
    with pytest.raises(NotFoundError):
        await issue_link(db, services.storage, item_id=order.items[0].id,
                         requester=_as_session(customer),
                         now=PAID_AT + timedelta(days=1))


# ===============================================================================
# WINDOW & CAP
# ===============================================================================

@pytest.mark.parametrize("elapsed,allowed", [
    (timedelta(days=29, hours=23, minutes=59), True),
    (timedelta(days=30), True),
    (timedelta(days=30, seconds=1), False),
    (timedelta(days=90), False),
])
async def test_download_window(db, services, catalog, customer, elapsed,
                               allowed):
    order = await _order(db, [CartLine("p-guide", None, 1)], user=customer)
    kwargs = dict(item_id=order.items[0].id,
                  requester=_as_session(customer), now=PAID_AT + elapsed)
    if allowed:
        out = await issue_link(db, services.storage, **kwargs)
        assert out["downloadCount"] == 1
    else:
        with pytest.raises(ExpiredError):
            await issue_link(db, services.storage, **kwargs)


async def test_download_cap(db, services, catalog, customer):
    order = await _order(db, [CartLine("p-guide", None, 1)], user=customer)
    kwargs = dict(item_id=order.items[0].id,
                  requester=_as_session(customer),
                  now=PAID_AT + timedelta(days=1))
    for n in range(1, MAX_DOWNLOADS + 1):
        out = await issue_link(db, services.storage, **kwargs)
        assert out["downloadCount"] == n

    with pytest.raises(DownloadLimitError):
        await issue_link(db, services.storage, **kwargs)
    assert await db.scalar(select(func.count(Download.id))) == MAX_DOWNLOADS


# ===============================================================================
# HTTP
# ===============================================================================

async def test_generate_link_route(client, db, catalog, customer, login):
    order = await _order(db, [CartLine("p-planner", None, 1)],
                         user=customer, paid_at=utcnow())
    login(customer)
    r = await client.post("/download/generate-link", json={
        "orderItemId": order.items[0].id, "orderId": order.id,
    })
    assert r.status_code == 200, r.text
    assert "/products/planner.pdf?token=" in r.json()["downloadUrl"]
    assert r.json()["remaining"] == MAX_DOWNLOADS - 1


async def test_generate_link_expired_is_410(client, db, catalog, customer,
                                            login):
    order = await _order(db, [CartLine("p-planner", None, 1)],
                         user=customer,
                         paid_at=utcnow() - timedelta(days=31))
    login(customer)
    r = await client.post("/download/generate-link", json={
        "orderItemId": order.items[0].id,
    })
    assert r.status_code == 410
    assert "expired" in r.json()["error"]


async def test_generate_link_requires_login(client, catalog):
    r = await client.post("/download/generate-link",
                          json={"orderItemId": "x"})
    assert r.status_code == 401
