"""
订单服务模块：校验购买请求、计价、扣款、分配凭证、创建订单和订阅。

扣款、领取凭证、写订单、写订阅在同一个 BEGIN IMMEDIATE 事务中完成，
任一步骤硬失败（如凭证冲突）时整体回滚，余额随之恢复。库存为空不是错误，
订单照常完成并登记补货请求。事件在事务提交后发布。
"""

import logging
import random
import sqlite3
from datetime import datetime

from subshop.database import get_db, transaction
from subshop.models.schemas import (
    CREDENTIAL_PENDING,
    KIND_RECHARGE,
    KIND_SUBSCRIPTION,
    ORDER_FULFILLED,
    ROLE_WHOLESALE,
    Account,
    Credential,
    Order,
    Product,
    from_cents,
    to_cents,
)
from subshop.services.account_service import AccountService
from subshop.services.assignment_service import AssignmentService
from subshop.services.catalog_service import CatalogService
from subshop.services.credential_pool import decrypt_credential, encrypt_credential
from subshop.services.errors import (
    AccountNotFound,
    CustomerNotFound,
    EngineError,
    InvalidParameter,
    MissingRequiredField,
)
from subshop.services.events import CredentialPending, OrderFulfilled, event_bus
from subshop.services.pricing import price, tier_for
from subshop.services.subscription_service import SubscriptionService
from subshop.services.wallet_service import WalletService

logger = logging.getLogger(__name__)


class OrderCreateError(EngineError):
    """订单创建失败通用异常（如无法生成唯一订单号）。"""
    code = "OrderCreateError"


def row_to_order(row: sqlite3.Row) -> Order:
    return Order(
        id=row["id"],
        order_no=row["order_no"],
        buyer_id=row["buyer_id"],
        owner_id=row["owner_id"],
        product_id=row["product_id"],
        kind=row["kind"],
        total_price=from_cents(row["total_cents"]),
        tier=row["tier"],
        quantity=row["quantity"],
        duration_months=row["duration_months"],
        status=row["status"],
        credential_status=row["credential_status"],
        credential=decrypt_credential(row["credential"]),
        stock_id=row["stock_id"],
        client_order_no=row["client_order_no"],
        account_ref=row["account_ref"],
        customer_name=row["customer_name"],
        notes=row["notes"],
        subscription_id=row["subscription_id"],
        created_at=row["created_at"],
        fulfilled_at=row["fulfilled_at"],
        cancelled_at=row["cancelled_at"],
    )


def order_to_dict(order: Order, with_credential: bool = True) -> dict:
    data = {
        "id": order.id,
        "order_no": order.order_no,
        "client_order_no": order.client_order_no or "",
        "buyer_id": order.buyer_id,
        "owner_id": order.owner_id,
        "product_id": order.product_id,
        "kind": order.kind,
        "tier": order.tier,
        "quantity": order.quantity,
        "duration_months": order.duration_months,
        "total_price": str(order.total_price),
        "status": order.status,
        "credential_status": order.credential_status,
        "account_ref": order.account_ref or "",
        "customer_name": order.customer_name or "",
        "subscription_id": order.subscription_id,
        "created_at": order.created_at,
        "fulfilled_at": order.fulfilled_at,
    }
    if with_credential:
        data["credential"] = order.credential.to_dict() if order.credential else None
    return data


_SELECT_ORDER = """
    SELECT o.*, s.id AS subscription_id
    FROM orders o
    LEFT JOIN subscriptions s ON s.order_id = o.id
"""


def _to_int(value, name: str) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidParameter(f"{name} 必须为整数")


class OrderService:
    """订单服务：下单、查询。"""

    def __init__(self):
        self.accounts = AccountService()
        self.catalog = CatalogService()
        self.wallet = WalletService()
        self.assignment = AssignmentService()
        self.subscriptions = SubscriptionService()

    def generate_order_no(self, db: sqlite3.Connection) -> str:
        """
        生成唯一订单号：时间戳 + 随机数。
        格式：YYYYMMDDHHMMSSffffff + 6位随机数字。
        """
        for _ in range(10):
            ts = datetime.now().strftime("%Y%m%d%H%M%S%f")
            order_no = ts + f"{random.randint(0, 999999):06d}"
            row = db.execute(
                "SELECT 1 FROM orders WHERE order_no = ?", (order_no,)
            ).fetchone()
            if not row:
                return order_no
        raise OrderCreateError("无法生成唯一订单号，请重试")

    # ── 校验 ──────────────────────────────────────────────

    def _resolve_owner(
        self, buyer: Account, params: dict
    ) -> tuple[int, str | None]:
        """确定订阅持有人。批发商必须指定客户，返回 (owner_id, customer_name)。"""
        customer_id = _to_int(params.get("customer_id"), "customer_id")
        customer_name = (params.get("customer_name") or "").strip() or None

        if customer_id is not None:
            if buyer.role != ROLE_WHOLESALE:
                raise CustomerNotFound("只有批发商可以为客户下单")
            try:
                customer = self.accounts.get_account(customer_id)
            except AccountNotFound:
                raise CustomerNotFound(f"客户 id={customer_id} 不存在")
            if customer.wholesaler_id != buyer.id:
                raise CustomerNotFound(f"客户 id={customer_id} 不存在")
            return customer.id, customer_name or customer.name

        if buyer.role == ROLE_WHOLESALE and not customer_name:
            raise MissingRequiredField("customer_name", "批发下单需要填写客户名称")
        return buyer.id, customer_name

    @staticmethod
    def _resolve_credential(product: Product, raw) -> Credential | None:
        if raw is None:
            return None
        credential = raw if isinstance(raw, Credential) else Credential.from_dict(raw)
        if credential is None:
            return None
        if product.kind != KIND_SUBSCRIPTION:
            raise InvalidParameter("只有订阅类商品支持自带凭证")
        if not credential.has_login():
            raise MissingRequiredField("credential", "凭证需要填写用户名或邮箱，以及密码")
        return credential

    @staticmethod
    def _resolve_size(product: Product, params: dict) -> tuple[int | None, int | None]:
        """返回 (duration_months, quantity)，两者按商品类型互斥。"""
        if product.kind == KIND_SUBSCRIPTION:
            months = _to_int(params.get("duration_months"), "duration_months")
            if months is None:
                months = product.available_months[0] if product.available_months else 1
            if months < 1:
                raise InvalidParameter("订阅时长至少为 1 个月")
            if product.available_months and months not in product.available_months:
                raise InvalidParameter(
                    f"该商品不提供 {months} 个月的时长，可选: {product.available_months}"
                )
            return months, None

        quantity = _to_int(params.get("quantity"), "quantity")
        if quantity is None:
            quantity = max(product.min_quantity, 1)
        if quantity < max(product.min_quantity, 1):
            raise InvalidParameter(f"购买数量至少为 {max(product.min_quantity, 1)}")
        return None, quantity

    # ── 下单 ──────────────────────────────────────────────

    def place_order(self, buyer_id: int, product_id: str, params: dict | None = None) -> Order:
        """
        下单。

        Args:
            buyer_id: 付款账户 ID。
            product_id: 商品 ID。
            params: duration_months / quantity / credential / account_ref /
                customer_id / customer_name / client_order_no / notes。

        Returns:
            已完成的订单；凭证可能为待交付。

        Raises:
            AccountNotFound / ProductNotFound / CustomerNotFound /
            MissingRequiredField / InvalidParameter / InsufficientFunds /
            CredentialConflict
        """
        params = params or {}

        # 1. 买家与商品
        buyer = self.accounts.get_account(buyer_id)
        if buyer.active != 1:
            raise AccountNotFound("账户已被封禁")
        product = self.catalog.get_product(product_id)

        # 2. 必填字段与参数
        account_ref = (params.get("account_ref") or "").strip() or None
        if (product.kind == KIND_RECHARGE or product.requires_id) and not account_ref:
            raise MissingRequiredField("account_ref", "该商品需要填写充值账号")
        owner_id, customer_name = self._resolve_owner(buyer, params)
        credential = self._resolve_credential(product, params.get("credential"))
        duration_months, quantity = self._resolve_size(product, params)

        # 3. 计价
        tier = tier_for(buyer)
        amount = price(product, duration_months=duration_months, quantity=quantity, tier=tier)
        client_order_no = (params.get("client_order_no") or "").strip() or None

        sub = None
        request_id = None
        now = datetime.now().replace(microsecond=0)
        now_str = now.strftime("%Y-%m-%d %H:%M:%S")

        with transaction() as db:
            if client_order_no:
                existing = db.execute(
                    _SELECT_ORDER + " WHERE o.buyer_id = ? AND o.client_order_no = ?",
                    (buyer.id, client_order_no),
                ).fetchone()
                if existing:
                    logger.info(
                        "重复的下单请求，返回已有订单: buyer_id=%s, client_order_no=%s",
                        buyer.id, client_order_no,
                    )
                    return row_to_order(existing)

            order_no = self.generate_order_no(db)

            # 4. 扣款
            if amount > 0:
                self.wallet.debit(
                    buyer.id, amount,
                    reference_type="order",
                    reference_id=order_no,
                    reason=f"购买 {product.name}",
                    conn=db,
                )

            # 5. 分配凭证
            assignment = self.assignment.assign(db, product, buyer.id, credential)

            # 6. 订单
            cursor = db.execute(
                """INSERT INTO orders
                   (order_no, client_order_no, buyer_id, owner_id, product_id,
                    kind, tier, quantity, duration_months, total_cents, status,
                    credential_status, credential, stock_id, account_ref,
                    customer_name, notes, created_at, fulfilled_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    order_no, client_order_no, buyer.id, owner_id, product.id,
                    product.kind, tier, quantity, duration_months, to_cents(amount),
                    ORDER_FULFILLED, assignment.credential_status,
                    encrypt_credential(assignment.credential), assignment.stock_id,
                    account_ref, customer_name, params.get("notes"),
                    now_str, now_str,
                ),
            )
            order_id = cursor.lastrowid

            # 7. 订阅
            if product.kind == KIND_SUBSCRIPTION:
                sub = self.subscriptions.create_from_order(
                    db,
                    order_id=order_id,
                    owner_id=owner_id,
                    buyer_id=buyer.id,
                    product_id=product.id,
                    duration_months=duration_months,
                    credential=assignment.credential,
                    stock_id=assignment.stock_id,
                    now=now,
                )

            if assignment.stock_id is not None:
                self.assignment.pool.bind(
                    db, assignment.stock_id, order_id, sub.id if sub else None
                )
            if assignment.credential_status == CREDENTIAL_PENDING:
                request_id = self.assignment.create_stock_request(
                    db, buyer.id, product.id, order_id, sub.id if sub else None
                )

        order = Order(
            id=order_id,
            order_no=order_no,
            buyer_id=buyer.id,
            owner_id=owner_id,
            product_id=product.id,
            kind=product.kind,
            total_price=amount,
            tier=tier,
            quantity=quantity,
            duration_months=duration_months,
            status=ORDER_FULFILLED,
            credential_status=assignment.credential_status,
            credential=assignment.credential,
            stock_id=assignment.stock_id,
            client_order_no=client_order_no,
            account_ref=account_ref,
            customer_name=customer_name,
            notes=params.get("notes"),
            subscription_id=sub.id if sub else None,
            created_at=now_str,
            fulfilled_at=now_str,
        )
        logger.info(
            "订单已完成: order_no=%s, buyer_id=%s, owner_id=%s, product_id=%s, "
            "amount=%s, credential_status=%s",
            order_no, buyer.id, owner_id, product.id, amount,
            assignment.credential_status,
        )

        event_bus.publish(
            OrderFulfilled(
                order_id=order.id,
                order_no=order.order_no,
                buyer_id=order.buyer_id,
                owner_id=order.owner_id,
                product_id=order.product_id,
                total_price=order.total_price,
                credential_status=order.credential_status,
            )
        )
        if sub is not None:
            self.subscriptions.publish_created(sub)
        if request_id is not None:
            event_bus.publish(
                CredentialPending(
                    product_id=product.id,
                    account_id=buyer.id,
                    order_id=order.id,
                    subscription_id=order.subscription_id,
                    request_id=request_id,
                )
            )
        return order

    # ── 查询 ──────────────────────────────────────────────

    def get_order(self, order_no: str, account_id: int | None = None) -> Order | None:
        """按订单号查询；传入 account_id 时只返回该账户付款或持有的订单。"""
        db = get_db()
        try:
            row = db.execute(
                _SELECT_ORDER + " WHERE o.order_no = ?", (order_no,)
            ).fetchone()
        finally:
            db.close()
        if not row:
            return None
        order = row_to_order(row)
        if account_id is not None and account_id not in (order.buyer_id, order.owner_id):
            return None
        return order

    def list_orders(
        self,
        buyer_id: int | None = None,
        owner_id: int | None = None,
        status: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[Order], int]:
        """分页查询订单，按创建时间倒序，返回 (订单列表, 总数)。"""
        conditions = []
        params: list = []
        if buyer_id is not None:
            conditions.append("o.buyer_id = ?")
            params.append(buyer_id)
        if owner_id is not None:
            conditions.append("o.owner_id = ?")
            params.append(owner_id)
        if status:
            conditions.append("o.status = ?")
            params.append(status)
        where_clause = " AND ".join(conditions) if conditions else "1=1"

        db = get_db()
        try:
            total = db.execute(
                f"SELECT COUNT(*) AS cnt FROM orders o WHERE {where_clause}", params
            ).fetchone()["cnt"]
            offset = (max(page, 1) - 1) * page_size
            rows = db.execute(
                _SELECT_ORDER + f" WHERE {where_clause} ORDER BY o.id DESC LIMIT ? OFFSET ?",
                params + [page_size, offset],
            ).fetchall()
            return [row_to_order(r) for r in rows], total
        finally:
            db.close()
