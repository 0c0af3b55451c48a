import os
import tempfile
from decimal import Decimal
from types import SimpleNamespace

# configure before pdfstore.server reads the environment
_DB_DIR = tempfile.mkdtemp(prefix="pdfstore-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR}/test.db"
os.environ["CARD_BACKEND"] = "mock"
os.environ["PIX_BACKEND"] = "mock"
os.environ["STORAGE_BACKEND"] = "static"
os.environ["EMAIL_BACKEND"] = "log"
os.environ["RATE_LIMIT_BACKEND"] = "memory"
os.environ["SESSION_SECRET"] = "test-secret"
os.environ["ADMIN_USERNAME"] = "admin"
os.environ["ADMIN_PASSWORD"] = "admin-pass"

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from pdfstore import server  # noqa: E402
from pdfstore.auth import SessionUser  # noqa: E402
from pdfstore.gateways import MockCardGateway, MockPixGateway  # noqa: E402
from pdfstore.infra.ratelimit import MemoryRateLimiter  # noqa: E402
from pdfstore.model.db import (  # noqa: E402
    Base, Coupon, CouponProduct, File, Product, ProductVariation, User,
)
from pdfstore.notify import LogNotifier  # noqa: E402
from pdfstore.storage import StaticUrlStorage  # noqa: E402


# ===============================================================================
# DATABASE
# ===============================================================================

@pytest_asyncio.fixture
async def schema():
    async with server.engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # pooled aiosqlite connections belong to this test's event loop
    await server.engine.dispose()


@pytest_asyncio.fixture
async def db(schema):
    async with server.SessionAsync() as session:
        yield session


@pytest_asyncio.fixture
async def other_db(schema):
    """A second, independent session for interleaving tests."""
    async with server.SessionAsync() as session:
        yield session


# ===============================================================================
# COLLABORATORS
# ===============================================================================

@pytest.fixture
def services():
    svc = SimpleNamespace(
        card=MockCardGateway(secret="test-mock-secret"),
        pix=MockPixGateway(secret="test-mock-secret"),
        notifier=LogNotifier(),
        storage=StaticUrlStorage("https://files.test", "test-secret"),
        limiter=MemoryRateLimiter(),
    )
    # ASGITransport does not run startup events
    server.app.state.card = svc.card
    server.app.state.pix = svc.pix
    server.app.state.notifier = svc.notifier
    server.app.state.storage = svc.storage
    server.app.state.limiter = svc.limiter
    return svc


@pytest_asyncio.fixture
async def client(schema, services):
    transport = ASGITransport(app=server.app)
    async with AsyncClient(transport=transport,
                           base_url="http://test") as c:
        yield c
    server.app.dependency_overrides.clear()


@pytest.fixture
def login():
    """login(user) makes every request run as that user."""
    def _login(user):
        su = SessionUser(id=user.id, email=user.email, role=user.role)
        server.app.dependency_overrides[server.optional_user] = lambda: su
        return su
    yield _login
    server.app.dependency_overrides.pop(server.optional_user, None)


# ===============================================================================
# FIXTURE DATA
# ===============================================================================

@pytest_asyncio.fixture
async def catalog(db):
    """Two products. ``guide`` has a variation with its own file."""
    guide = Product(id="p-guide", name="Guia de Receitas", slug="guia",
                    price=Decimal("100.00"))
    planner = Product(id="p-planner", name="Planner", slug="planner",
                      price=Decimal("50.00"))
    premium = ProductVariation(id="v-premium", product_id="p-guide",
                               name="Premium", price=Decimal("150.00"))
    db.add_all([guide, planner])
    await db.flush()
    db.add(premium)
    await db.flush()
    db.add_all([
        File(id="f-guide", product_id="p-guide", name="guia.pdf",
             path="products/guia.pdf"),
        File(id="f-premium", product_id="p-guide", variation_id="v-premium",
             name="guia-premium.pdf", path="products/guia-premium.pdf"),
        File(id="f-planner", product_id="p-planner", name="planner.pdf",
             path="products/planner.pdf"),
    ])
    await db.commit()
    return SimpleNamespace(guide=guide, planner=planner, premium=premium)


@pytest_asyncio.fixture
async def customer(db):
    user = User(id="u-ana", email="ana@example.com", name="Ana",
                password_hash="x")
    db.add(user)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def other_customer(db):
    user = User(id="u-bia", email="bia@example.com", name="Bia",
                password_hash="x")
    db.add(user)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def save10(db, catalog):
    coupon = Coupon(code="SAVE10", ctype="percent", value=Decimal("10"),
                    max_uses=100, used_count=0, max_uses_per_user=1)
    db.add(coupon)
    await db.commit()
    return coupon


@pytest.fixture
def scoped_coupon(db, catalog):
    async def _make(code, product_ids, ctype="percent", value="20"):
        coupon = Coupon(code=code, ctype=ctype, value=Decimal(value),
                        applies_to="products", max_uses_per_user=None)
        coupon.products = [
            CouponProduct(product_id=p) for p in product_ids
        ]
        db.add(coupon)
        await db.commit()
        return coupon
    return _make
