from decimal import Decimal

from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
)

from ..helpers import new_id, utcnow


Base = declarative_base()

MONEY = Numeric(10, 2, asdecimal=True)


# ----------------------------
# Accounts & catalog
# ----------------------------
class User(Base):
    __tablename__ = "users"
    id = Column(String(32), primary_key=True, default=new_id)
    email = Column(String(255), nullable=False, unique=True, index=True)
    name = Column(String(255), nullable=False, default="")
    password_hash = Column(String(255), nullable=False)
    # customer | admin
    role = Column(String(20), nullable=False, default="customer")
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Product(Base):
    __tablename__ = "products"
    id = Column(String(32), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=False, unique=True)
    price = Column(MONEY, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    variations = relationship(
        "ProductVariation", back_populates="product", lazy="selectin",
        order_by="ProductVariation.name",
    )


class ProductVariation(Base):
    __tablename__ = "product_variations"
    id = Column(String(32), primary_key=True, default=new_id)
    product_id = Column(
        String(32), ForeignKey("products.id"), nullable=False, index=True
    )
    name = Column(String(255), nullable=False)
    price = Column(MONEY, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    product = relationship("Product", back_populates="variations")


class File(Base):
    __tablename__ = "files"
    id = Column(String(32), primary_key=True, default=new_id)
    product_id = Column(
        String(32), ForeignKey("products.id"), nullable=True, index=True
    )
    variation_id = Column(
        String(32), ForeignKey("product_variations.id"), nullable=True,
        index=True,
    )
    name = Column(String(255), nullable=False)
    # object storage key
    path = Column(String(1024), nullable=False)
    mime_type = Column(String(100), nullable=False, default="application/pdf")
    size = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


# ----------------------------
# Orders
# ----------------------------
class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("discount_amount >= 0", name="ck_orders_discount"),
        CheckConstraint("total >= 0", name="ck_orders_total"),
    )
    id = Column(String(32), primary_key=True, default=new_id)
    user_id = Column(
        String(32), ForeignKey("users.id"), nullable=True, index=True
    )
    email = Column(String(255), nullable=False, default="")
    subtotal = Column(MONEY, nullable=False)
    discount_amount = Column(MONEY, nullable=False, default=Decimal("0.00"))
    total = Column(MONEY, nullable=False)
    currency = Column(String(3), nullable=False, default="BRL")

    # pending | completed | cancelled | refunded
    status = Column(String(20), nullable=False, default="pending", index=True)
    # card | pix
    payment_provider = Column(String(20), nullable=False)
    payment_id = Column(String(255), nullable=True, unique=True)
    payment_status = Column(String(50), nullable=True)
    coupon_code = Column(String(50), nullable=True)
    idempotency_key = Column(String(255), nullable=True, unique=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    paid_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    items = relationship(
        "OrderItem", back_populates="order", lazy="selectin",
        order_by="OrderItem.position", cascade="all, delete-orphan",
    )

    def check_balance(self) -> None:
        subtotal = Decimal(self.subtotal)
        discount = Decimal(self.discount_amount or 0)
        total = Decimal(self.total)
        if discount < 0 or total < 0 or subtotal - discount != total:
            raise ValueError(
                f"order {self.id} out of balance: subtotal={subtotal} "
                f"discount={discount} total={total}"
            )


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(String(32), primary_key=True, default=new_id)
    order_id = Column(
        String(32), ForeignKey("orders.id"), nullable=False, index=True
    )
    position = Column(Integer, nullable=False, default=0)
    product_id = Column(String(32), ForeignKey("products.id"), nullable=False)
    variation_id = Column(
        String(32), ForeignKey("product_variations.id"), nullable=True
    )
    # snapshot at purchase time
    name = Column(String(255), nullable=False)
    price = Column(MONEY, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    total = Column(MONEY, nullable=False)
    download_count = Column(Integer, nullable=False, default=0)

    order = relationship("Order", back_populates="items")


@event.listens_for(Order, "before_insert")
@event.listens_for(Order, "before_update")
def _order_balance(mapper, connection, target: Order):
    target.check_balance()


# ----------------------------
# Coupons
# ----------------------------
class Coupon(Base):
    __tablename__ = "coupons"
    id = Column(String(32), primary_key=True, default=new_id)
    code = Column(String(50), nullable=False, unique=True, index=True)
    # percent | fixed
    ctype = Column("type", String(20), nullable=False)
    value = Column(MONEY, nullable=False)
    min_subtotal = Column(MONEY, nullable=True)
    max_uses = Column(Integer, nullable=True)
    max_uses_per_user = Column(Integer, nullable=True, default=1)
    used_count = Column(Integer, nullable=False, default=0)
    # all | products | variations
    applies_to = Column(String(20), nullable=False, default="all")
    stackable = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    starts_at = Column(DateTime, nullable=True)
    ends_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    products = relationship(
        "CouponProduct", lazy="selectin", cascade="all, delete-orphan"
    )
    variations = relationship(
        "CouponVariation", lazy="selectin", cascade="all, delete-orphan"
    )

    @property
    def product_ids(self) -> set:
        return {p.product_id for p in self.products}

    @property
    def variation_ids(self) -> set:
        return {v.variation_id for v in self.variations}


class CouponProduct(Base):
    __tablename__ = "coupon_products"
    __table_args__ = (UniqueConstraint("coupon_id", "product_id"),)
    id = Column(Integer, primary_key=True, autoincrement=True)
    coupon_id = Column(String(32), ForeignKey("coupons.id"), nullable=False)
    product_id = Column(String(32), nullable=False)


class CouponVariation(Base):
    __tablename__ = "coupon_variations"
    __table_args__ = (UniqueConstraint("coupon_id", "variation_id"),)
    id = Column(Integer, primary_key=True, autoincrement=True)
    coupon_id = Column(String(32), ForeignKey("coupons.id"), nullable=False)
    variation_id = Column(String(32), nullable=False)


class CouponRedemption(Base):
    __tablename__ = "coupon_redemptions"
    __table_args__ = (UniqueConstraint("coupon_id", "order_id"),)
    id = Column(String(32), primary_key=True, default=new_id)
    coupon_id = Column(
        String(32), ForeignKey("coupons.id"), nullable=False, index=True
    )
    user_id = Column(String(32), nullable=True, index=True)
    order_id = Column(String(32), ForeignKey("orders.id"), nullable=False)
    amount_discounted = Column(MONEY, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


# ----------------------------
# Audit / idempotency
# ----------------------------
class Download(Base):
    __tablename__ = "downloads"
    id = Column(String(32), primary_key=True, default=new_id)
    user_id = Column(String(32), nullable=True, index=True)
    order_id = Column(String(32), ForeignKey("orders.id"), nullable=False)
    order_item_id = Column(
        String(32), ForeignKey("order_items.id"), nullable=False, index=True
    )
    file_id = Column(String(32), ForeignKey("files.id"), nullable=False)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    downloaded_at = Column(DateTime, nullable=False, default=utcnow)


class WebhookEventSeen(Base):
    __tablename__ = "webhook_events_seen"
    # provider:event_id
    idempotency_key = Column(String(255), primary_key=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
