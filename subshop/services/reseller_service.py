"""
批发商服务：客户管理、代客下单、即将结束的订阅和销售汇总。

批发商可见的客户恰好是 wholesaler_id 等于其账户 id 的账户；代客下单时
扣批发商的余额，订阅归客户持有。
"""

import logging
from datetime import datetime

from subshop.database import get_db
from subshop.models.schemas import (
    ORDER_FULFILLED,
    ROLE_CUSTOMER,
    ROLE_WHOLESALE,
    SUB_CANCELLED,
    SUB_EXPIRED,
    SUB_EXPIRING_SOON,
    Account,
    Order,
    Subscription,
    SubscriptionState,
    from_cents,
)
from subshop.services.account_service import AccountService, row_to_account
from subshop.services.errors import CustomerNotFound, InvalidParameter
from subshop.services.order_service import OrderService
from subshop.services.subscription_service import row_to_subscription, state_of
from subshop.services.subscription_status import RESELLER_ENDING_SOON_DAYS

logger = logging.getLogger(__name__)


class ResellerService:
    """批发商视角的客户、订阅与订单。"""

    def __init__(self):
        self.accounts = AccountService()
        self.orders = OrderService()

    def _require_wholesaler(self, wholesaler_id: int) -> Account:
        account = self.accounts.get_account(wholesaler_id)
        if account.role != ROLE_WHOLESALE:
            raise InvalidParameter("当前账户不是批发商")
        return account

    # ── 客户 ──────────────────────────────────────────────

    def add_customer(
        self,
        wholesaler_id: int,
        name: str,
        email: str | None = None,
        phone: str | None = None,
        notes: str | None = None,
    ) -> Account:
        self._require_wholesaler(wholesaler_id)
        customer = self.accounts.create_account(
            name,
            email=email,
            role=ROLE_CUSTOMER,
            phone=phone,
            wholesaler_id=wholesaler_id,
            notes=notes,
        )
        logger.info("批发商新增客户: wholesaler_id=%s, customer_id=%s", wholesaler_id, customer.id)
        return customer

    def get_customer(self, wholesaler_id: int, customer_id: int) -> Account:
        """
        Raises:
            CustomerNotFound: 客户不存在或不属于该批发商。
        """
        db = get_db()
        try:
            row = db.execute(
                "SELECT * FROM accounts WHERE id = ? AND wholesaler_id = ?",
                (customer_id, wholesaler_id),
            ).fetchone()
        finally:
            db.close()
        if not row:
            raise CustomerNotFound(f"客户 id={customer_id} 不存在")
        return row_to_account(row)

    def update_customer(self, wholesaler_id: int, customer_id: int, data: dict) -> Account:
        """更新客户资料（name / email / phone / notes），未传的字段保持不变。"""
        customer = self.get_customer(wholesaler_id, customer_id)
        name = data.get("name", customer.name)
        if not (name or "").strip():
            raise InvalidParameter("客户名称不能为空")

        customer.name = name.strip()
        customer.email = data.get("email", customer.email)
        customer.phone = data.get("phone", customer.phone)
        customer.notes = data.get("notes", customer.notes)
        customer.updated_at = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        db = get_db()
        try:
            db.execute(
                """UPDATE accounts
                   SET name = ?, email = ?, phone = ?, notes = ?, updated_at = ?
                   WHERE id = ? AND wholesaler_id = ?""",
                (
                    customer.name, customer.email, customer.phone, customer.notes,
                    customer.updated_at, customer_id, wholesaler_id,
                ),
            )
            db.commit()
        finally:
            db.close()
        return customer

    def list_customers(self, wholesaler_id: int, search: str | None = None) -> list[Account]:
        """列出批发商名下客户，可按名称 / 邮箱 / 电话模糊搜索。"""
        sql = "SELECT * FROM accounts WHERE wholesaler_id = ?"
        params: list = [wholesaler_id]
        if search:
            sql += " AND (name LIKE ? OR email LIKE ? OR phone LIKE ?)"
            pattern = f"%{search.strip()}%"
            params += [pattern, pattern, pattern]
        sql += " ORDER BY id ASC"

        db = get_db()
        try:
            rows = db.execute(sql, params).fetchall()
            return [row_to_account(r) for r in rows]
        finally:
            db.close()

    def list_customer_subscriptions(
        self,
        wholesaler_id: int,
        customer_id: int,
        now: datetime | None = None,
    ) -> list[tuple[Subscription, SubscriptionState]]:
        self.get_customer(wholesaler_id, customer_id)
        db = get_db()
        try:
            rows = db.execute(
                "SELECT * FROM subscriptions WHERE owner_id = ? ORDER BY end_date ASC",
                (customer_id,),
            ).fetchall()
        finally:
            db.close()
        now = now or datetime.now()
        subs = [row_to_subscription(r) for r in rows]
        return [(s, state_of(s, now, RESELLER_ENDING_SOON_DAYS)) for s in subs]

    # ── 代客下单 ──────────────────────────────────────────

    def purchase_for_customer(
        self,
        wholesaler_id: int,
        customer_id: int,
        product_id: str,
        params: dict | None = None,
    ) -> Order:
        """以批发商为付款方、客户为持有人下单。"""
        params = dict(params or {})
        params["customer_id"] = customer_id
        return self.orders.place_order(wholesaler_id, product_id, params)

    # ── 视图 ──────────────────────────────────────────────

    def ending_soon(
        self,
        wholesaler_id: int,
        threshold_days: int = RESELLER_ENDING_SOON_DAYS,
        now: datetime | None = None,
    ) -> list[tuple[Subscription, SubscriptionState]]:
        """名下客户中即将结束（或刚刚过期）的订阅，按结束时间升序。"""
        db = get_db()
        try:
            rows = db.execute(
                """SELECT s.* FROM subscriptions s
                   JOIN accounts a ON a.id = s.owner_id
                   WHERE a.wholesaler_id = ? AND s.status != ?
                   ORDER BY s.end_date ASC""",
                (wholesaler_id, SUB_CANCELLED),
            ).fetchall()
        finally:
            db.close()

        now = now or datetime.now()
        result = []
        for row in rows:
            sub = row_to_subscription(row)
            state = state_of(sub, now, threshold_days)
            if state.status in (SUB_EXPIRING_SOON, SUB_EXPIRED):
                result.append((sub, state))
        return result

    def list_orders(self, wholesaler_id: int, page: int = 1, page_size: int = 20):
        return self.orders.list_orders(buyer_id=wholesaler_id, page=page, page_size=page_size)

    def sales_summary(self, wholesaler_id: int) -> dict:
        """汇总：客户数、订单数、总消费、当前余额。"""
        wholesaler = self._require_wholesaler(wholesaler_id)
        db = get_db()
        try:
            customers = db.execute(
                "SELECT COUNT(*) AS cnt FROM accounts WHERE wholesaler_id = ?",
                (wholesaler_id,),
            ).fetchone()["cnt"]
            row = db.execute(
                """SELECT COUNT(*) AS cnt, COALESCE(SUM(total_cents), 0) AS total
                   FROM orders WHERE buyer_id = ? AND status = ?""",
                (wholesaler_id, ORDER_FULFILLED),
            ).fetchone()
        finally:
            db.close()

        return {
            "customer_count": customers,
            "order_count": row["cnt"],
            "total_spent": str(from_cents(row["total"])),
            "balance": str(wholesaler.balance),
        }
