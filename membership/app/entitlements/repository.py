"""PostgreSQL storage for products and their linked provider prices."""
from __future__ import annotations

from typing import Dict, List, Optional, Sequence

from psycopg2.extensions import connection as PgConnection

from ..billing.repository import dict_cursor
from .models import Product, ProductPrice, ProductSelector, ProductType


def _row_to_price(row: dict) -> ProductPrice:
    return ProductPrice(
        external_price_id=row["stripe_price_id"],
        external_product_id=row["stripe_product_id"],
        nickname=row.get("nickname"),
        currency=row.get("currency") or "usd",
        amount=int(row.get("amount") or 0),
        interval=row.get("interval"),
        active=bool(row.get("active", True)),
        type=row.get("type") or "recurring",
    )


def _row_to_product(row: dict, prices: Sequence[ProductPrice]) -> Product:
    return Product(
        id=row["id"],
        name=row["name"],
        type=ProductType(row["type"]),
        active=bool(row["active"]),
        external_product_id=row.get("stripe_product_id"),
        prices=tuple(prices),
        created_at=row["created_at"],
    )


class PostgresProductRepository:
    """Concrete product repository backed by PostgreSQL."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    def get(self, selector: ProductSelector) -> Optional[Product]:
        if selector.id:
            where, value = "p.id = %s", selector.id
        elif selector.external_product_id:
            where, value = "p.stripe_product_id = %s", selector.external_product_id
        else:
            where = "p.id = (SELECT product_id FROM stripe_prices WHERE stripe_price_id = %s)"
            value = selector.external_price_id

        with dict_cursor(self._conn) as cursor:
            cursor.execute(
                f"""
                SELECT p.*
                FROM products AS p
                WHERE {where}
                LIMIT 1
                """,
                (value,),
            )
            row = cursor.fetchone()
            if not row:
                return None
            prices = self._prices_for(cursor, [row["id"]])
            return _row_to_product(row, prices.get(row["id"], []))

    def list(self, *, product_type: Optional[ProductType] = None, limit: int = 50) -> List[Product]:
        with dict_cursor(self._conn) as cursor:
            if product_type is None:
                cursor.execute(
                    """
                    SELECT *
                    FROM products
                    ORDER BY created_at ASC
                    LIMIT %s
                    """,
                    (limit,),
                )
            else:
                cursor.execute(
                    """
                    SELECT *
                    FROM products
                    WHERE type = %s
                    ORDER BY created_at ASC
                    LIMIT %s
                    """,
                    (product_type.value, limit),
                )
            rows = cursor.fetchall() or []
            prices = self._prices_for(cursor, [row["id"] for row in rows])
            return [_row_to_product(row, prices.get(row["id"], [])) for row in rows]

    def update(self, product_id: str, *, prices: Sequence[ProductPrice]) -> Product:
        with dict_cursor(self._conn) as cursor:
            for price in prices:
                cursor.execute(
                    """
                    INSERT INTO stripe_prices (
                        stripe_price_id,
                        stripe_product_id,
                        product_id,
                        nickname,
                        currency,
                        amount,
                        interval,
                        active,
                        type
                    )
                    VALUES (%(stripe_price_id)s, %(stripe_product_id)s, %(product_id)s, %(nickname)s,
                            %(currency)s, %(amount)s, %(interval)s, %(active)s, %(type)s)
                    ON CONFLICT (stripe_price_id) DO UPDATE SET
                        nickname = EXCLUDED.nickname,
                        active = EXCLUDED.active,
                        updated_at = NOW()
                    """,
                    {
                        "stripe_price_id": price.external_price_id,
                        "stripe_product_id": price.external_product_id,
                        "product_id": product_id,
                        "nickname": price.nickname,
                        "currency": price.currency,
                        "amount": price.amount,
                        "interval": price.interval,
                        "active": price.active,
                        "type": price.type,
                    },
                )
            cursor.execute(
                """
                UPDATE products
                SET stripe_product_id = COALESCE(stripe_product_id, %s),
                    updated_at = NOW()
                WHERE id = %s
                RETURNING *
                """,
                (prices[0].external_product_id if prices else None, product_id),
            )
            row = cursor.fetchone()
            if not row:
                raise LookupError(f"Product {product_id} not found")
            linked = self._prices_for(cursor, [product_id])
            return _row_to_product(row, linked.get(product_id, []))

    def _prices_for(self, cursor, product_ids: Sequence[str]) -> Dict[str, List[ProductPrice]]:
        if not product_ids:
            return {}
        cursor.execute(
            """
            SELECT *
            FROM stripe_prices
            WHERE product_id = ANY(%s)
            ORDER BY created_at ASC
            """,
            (list(product_ids),),
        )
        grouped: Dict[str, List[ProductPrice]] = {}
        for row in cursor.fetchall() or []:
            grouped.setdefault(row["product_id"], []).append(_row_to_price(row))
        return grouped


__all__ = ["PostgresProductRepository"]
