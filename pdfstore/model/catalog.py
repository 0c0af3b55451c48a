"""Catalog lookups and server-side cart pricing.

Client carts only ever say *what* and *how many*; prices always come from
the products and variations tables.
"""
from dataclasses import dataclass
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ValidationError
from ..money import Money, ZERO, as_float, round_money
from .db import Product, ProductVariation

MAX_QUANTITY = 100


@dataclass
class CartLine:
    product_id: str
    variation_id: Optional[str]
    quantity: int


@dataclass
class PricedLine:
    product_id: str
    variation_id: Optional[str]
    name: str
    unit_price: Money
    quantity: int

    @property
    def total(self) -> Money:
        return round_money(self.unit_price * self.quantity)

    def as_metadata(self) -> dict:
        return {
            "productId": self.product_id,
            "variationId": self.variation_id,
            "quantity": self.quantity,
        }


def parse_cart_items(raw) -> List[CartLine]:
    """Validate a JSON cart. Accepts camelCase and snake_case keys; any
    client-side price is ignored."""
    if not isinstance(raw, list) or not raw:
        raise ValidationError("items must be a non-empty list")

    lines: List[CartLine] = []
    for idx, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ValidationError(f"items[{idx}] must be an object")
        product_id = item.get("productId") or item.get("product_id")
        if not product_id or not isinstance(product_id, str):
            raise ValidationError(f"items[{idx}].productId is required")
        variation_id = item.get("variationId") or item.get("variation_id")
        if variation_id is not None and not isinstance(variation_id, str):
            raise ValidationError(f"items[{idx}].variationId must be a string")
        quantity = item.get("quantity", 1)
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise ValidationError(f"items[{idx}].quantity must be an integer")
        if quantity < 1 or quantity > MAX_QUANTITY:
            raise ValidationError(
                f"items[{idx}].quantity must be between 1 and {MAX_QUANTITY}"
            )
        lines.append(CartLine(product_id, variation_id or None, quantity))
    return lines


async def get_product(db: AsyncSession, product_id: str) -> Optional[Product]:
    return await db.get(Product, product_id)


async def get_variation(
    db: AsyncSession, variation_id: str
) -> Optional[ProductVariation]:
    return await db.get(ProductVariation, variation_id)


async def price_lines(
    db: AsyncSession, lines: Iterable[CartLine]
) -> List[PricedLine]:
    priced: List[PricedLine] = []
    for line in lines:
        product = await get_product(db, line.product_id)
        if product is None or not product.is_active:
            raise ValidationError(f"product {line.product_id} not found")

        if line.variation_id:
            variation = await get_variation(db, line.variation_id)
            if variation is None or not variation.is_active:
                raise ValidationError(
                    f"variation {line.variation_id} not found"
                )
            if variation.product_id != product.id:
                raise ValidationError(
                    f"variation {variation.id} does not belong to "
                    f"product {product.id}"
                )
            name = f"{product.name} ({variation.name})"
            price = round_money(variation.price)
        else:
            name = product.name
            price = round_money(product.price)

        priced.append(PricedLine(
            product_id=product.id,
            variation_id=line.variation_id,
            name=name,
            unit_price=price,
            quantity=line.quantity,
        ))
    return priced


def subtotal_of(lines: Iterable[PricedLine]) -> Money:
    total = ZERO
    for line in lines:
        total += line.total
    return round_money(total)


async def list_catalog(db: AsyncSession) -> List[dict]:
    result = await db.execute(
        select(Product).where(Product.is_active.is_(True))
        .order_by(Product.name)
    )
    out = []
    for p in result.scalars().all():
        out.append({
            "id": p.id,
            "name": p.name,
            "slug": p.slug,
            "price": as_float(p.price),
            "variations": [
                {"id": v.id, "name": v.name, "price": as_float(v.price)}
                for v in p.variations if v.is_active
            ],
        })
    return out
