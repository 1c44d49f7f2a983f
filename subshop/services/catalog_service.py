"""商品目录服务：只读查询 get_product，以及管理员维护目录。"""

import json
import logging
import sqlite3
from datetime import datetime
from decimal import InvalidOperation

from subshop.database import get_db
from subshop.models.schemas import (
    PRODUCT_KINDS,
    MonthlyPrice,
    Product,
    from_cents,
    to_cents,
)
from subshop.services.errors import InvalidParameter, ProductNotFound

logger = logging.getLogger(__name__)


def row_to_product(row: sqlite3.Row) -> Product:
    monthly = json.loads(row["monthly_pricing"]) if row["monthly_pricing"] else []
    months = json.loads(row["available_months"]) if row["available_months"] else []
    return Product(
        id=row["id"],
        name=row["name"],
        kind=row["kind"],
        category=row["category"],
        price=from_cents(row["price_cents"]),
        wholesale_price=from_cents(row["wholesale_price_cents"]),
        monthly_pricing=[
            MonthlyPrice(
                months=int(m["months"]),
                price=from_cents(m["price_cents"]),
                wholesale_price=from_cents(m["wholesale_price_cents"]),
            )
            for m in monthly
        ],
        available_months=[int(m) for m in months],
        value=from_cents(row["value_cents"]) if row["value_cents"] is not None else None,
        min_quantity=row["min_quantity"] or 1,
        requires_id=bool(row["requires_id"]),
        active=row["active"],
    )


def product_to_dict(product: Product) -> dict:
    return {
        "id": product.id,
        "name": product.name,
        "category": product.category or "",
        "kind": product.kind,
        "price": str(product.price),
        "wholesale_price": str(product.wholesale_price),
        "monthly_pricing": [
            {
                "months": m.months,
                "price": str(m.price),
                "wholesale_price": str(m.wholesale_price),
            }
            for m in product.monthly_pricing
        ],
        "available_months": product.available_months,
        "value": str(product.value) if product.value is not None else None,
        "min_quantity": product.min_quantity,
        "requires_id": product.requires_id,
        "active": product.active,
    }


class CatalogService:
    """商品目录：查询与维护。"""

    def get_product(
        self, product_id: str, conn: sqlite3.Connection | None = None
    ) -> Product:
        """
        按 id 查询上架商品。

        Raises:
            ProductNotFound: 商品不存在或已下架。
        """
        db = conn or get_db()
        try:
            row = db.execute(
                "SELECT * FROM products WHERE id = ?", (product_id,)
            ).fetchone()
        finally:
            if conn is None:
                db.close()

        if not row or row["active"] != 1:
            raise ProductNotFound(f"商品 {product_id} 不存在")
        return row_to_product(row)

    def list_products(self, include_inactive: bool = False) -> list[Product]:
        db = get_db()
        try:
            if include_inactive:
                rows = db.execute("SELECT * FROM products ORDER BY id ASC").fetchall()
            else:
                rows = db.execute(
                    "SELECT * FROM products WHERE active = 1 ORDER BY id ASC"
                ).fetchall()
            return [row_to_product(r) for r in rows]
        finally:
            db.close()

    def save_product(self, data: dict) -> Product:
        """
        新增或更新商品（按 id upsert）。

        data 字段：id, name, kind, price, wholesale_price, category,
        monthly_pricing[{months, price, wholesale_price}], available_months,
        value, min_quantity, requires_id, active。

        Raises:
            InvalidParameter: 字段缺失或格式无效。
        """
        product_id = (data.get("id") or "").strip()
        name = (data.get("name") or "").strip()
        kind = data.get("kind") or "subscription"
        if not product_id or not name:
            raise InvalidParameter("商品 id 和名称不能为空")
        if kind not in PRODUCT_KINDS:
            raise InvalidParameter(f"无效的商品类型: {kind}")

        try:
            price_cents = to_cents(data.get("price"))
            wholesale_cents = to_cents(data.get("wholesale_price", data.get("price")))
            monthly = [
                {
                    "months": int(m["months"]),
                    "price_cents": to_cents(m["price"]),
                    "wholesale_price_cents": to_cents(
                        m.get("wholesale_price", m["price"])
                    ),
                }
                for m in (data.get("monthly_pricing") or [])
            ]
            months = sorted({int(m) for m in (data.get("available_months") or [])})
            value = data.get("value")
            value_cents = to_cents(value) if value is not None else None
            min_quantity = int(data.get("min_quantity") or 1)
        except (InvalidOperation, KeyError, TypeError, ValueError):
            raise InvalidParameter("商品价格或时长格式无效")

        if price_cents < 0 or wholesale_cents < 0:
            raise InvalidParameter("商品价格不能为负数")
        if any(m["months"] < 1 for m in monthly) or any(m < 1 for m in months):
            raise InvalidParameter("时长必须至少为 1 个月")

        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            db.execute(
                """INSERT INTO products
                   (id, name, category, kind, price_cents, wholesale_price_cents,
                    monthly_pricing, available_months, value_cents,
                    min_quantity, requires_id, active, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       name = excluded.name,
                       category = excluded.category,
                       kind = excluded.kind,
                       price_cents = excluded.price_cents,
                       wholesale_price_cents = excluded.wholesale_price_cents,
                       monthly_pricing = excluded.monthly_pricing,
                       available_months = excluded.available_months,
                       value_cents = excluded.value_cents,
                       min_quantity = excluded.min_quantity,
                       requires_id = excluded.requires_id,
                       active = excluded.active,
                       updated_at = excluded.updated_at""",
                (
                    product_id, name, data.get("category"), kind,
                    price_cents, wholesale_cents,
                    json.dumps(monthly) if monthly else None,
                    json.dumps(months) if months else None,
                    value_cents, min_quantity,
                    1 if data.get("requires_id") else 0,
                    0 if data.get("active") in (0, False) else 1,
                    now, now,
                ),
            )
            db.commit()
        finally:
            db.close()

        logger.info("商品已保存: id=%s, kind=%s", product_id, kind)
        return Product(
            id=product_id,
            name=name,
            kind=kind,
            category=data.get("category"),
            price=from_cents(price_cents),
            wholesale_price=from_cents(wholesale_cents),
            monthly_pricing=[
                MonthlyPrice(
                    m["months"],
                    from_cents(m["price_cents"]),
                    from_cents(m["wholesale_price_cents"]),
                )
                for m in monthly
            ],
            available_months=months,
            value=from_cents(value_cents) if value_cents is not None else None,
            min_quantity=min_quantity,
            requires_id=bool(data.get("requires_id")),
            active=0 if data.get("active") in (0, False) else 1,
        )
