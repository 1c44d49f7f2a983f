"""
凭证分配服务：为订单 / 订阅绑定凭证，或登记为待补货。

- 充值类商品不需要凭证
- 买家自带凭证时直接使用，不查库存
- 否则从凭证库存领取最早入库的一条；库存为空不报错，订单照常完成，
  同时登记一条补货请求，由后台补货后调用 fulfill_stock_request 交付
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from subshop.database import get_db, transaction
from subshop.models.schemas import (
    CREDENTIAL_ASSIGNED,
    CREDENTIAL_NOT_REQUIRED,
    CREDENTIAL_PENDING,
    CREDENTIAL_SELF_SUPPLIED,
    KIND_RECHARGE,
    REQUEST_CANCELLED,
    REQUEST_FULFILLED,
    REQUEST_PENDING,
    SUB_ACTIVE,
    SUB_PENDING,
    Credential,
    Product,
    StockRequest,
)
from subshop.services.credential_pool import CredentialPool, encrypt_credential
from subshop.services.errors import InvalidParameter, StockRequestNotFound

logger = logging.getLogger(__name__)


@dataclass
class Assignment:
    """一次分配的结果。"""
    credential_status: str
    credential: Optional[Credential] = None
    stock_id: Optional[int] = None

    @property
    def pending(self) -> bool:
        return self.credential_status == CREDENTIAL_PENDING


def _row_to_request(row: sqlite3.Row) -> StockRequest:
    return StockRequest(
        id=row["id"],
        account_id=row["account_id"],
        product_id=row["product_id"],
        order_id=row["order_id"],
        subscription_id=row["subscription_id"],
        status=row["status"],
        notes=row["notes"],
        created_at=row["created_at"],
        resolved_at=row["resolved_at"],
    )


class AssignmentService:
    """凭证分配与补货请求处理。"""

    def __init__(self, pool: CredentialPool | None = None):
        self.pool = pool or CredentialPool()

    def assign(
        self,
        db: sqlite3.Connection,
        product: Product,
        account_id: int,
        credential: Credential | None = None,
    ) -> Assignment:
        """
        在调用方事务中为一笔购买确定凭证。

        Raises:
            CredentialConflict: 库存条目被并发领取。
        """
        if product.kind == KIND_RECHARGE:
            return Assignment(CREDENTIAL_NOT_REQUIRED)

        if credential is not None:
            return Assignment(CREDENTIAL_SELF_SUPPLIED, credential=credential)

        stock = self.pool.claim(db, product.id, account_id)
        if stock is None:
            logger.info("凭证库存为空，订单待交付: product_id=%s", product.id)
            return Assignment(CREDENTIAL_PENDING)

        return Assignment(CREDENTIAL_ASSIGNED, credential=stock.credential, stock_id=stock.id)

    def create_stock_request(
        self,
        db: sqlite3.Connection,
        account_id: int,
        product_id: str,
        order_id: int | None = None,
        subscription_id: int | None = None,
    ) -> int:
        """登记补货请求，返回请求 id。"""
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        cursor = db.execute(
            """INSERT INTO stock_requests
               (account_id, product_id, order_id, subscription_id, status, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (account_id, product_id, order_id, subscription_id, REQUEST_PENDING, now),
        )
        return cursor.lastrowid

    def list_stock_requests(self, status: str | None = REQUEST_PENDING) -> list[StockRequest]:
        db = get_db()
        try:
            if status:
                rows = db.execute(
                    "SELECT * FROM stock_requests WHERE status = ? ORDER BY id ASC",
                    (status,),
                ).fetchall()
            else:
                rows = db.execute(
                    "SELECT * FROM stock_requests ORDER BY id ASC"
                ).fetchall()
            return [_row_to_request(r) for r in rows]
        finally:
            db.close()

    def fulfill_stock_request(
        self, request_id: int, credential: Credential | None = None
    ) -> StockRequest:
        """
        交付待补货的凭证。

        未传入凭证时从该商品的库存中领取一条。凭证写入对应订单和订阅，
        订阅状态置为 active，请求标记为已完成。

        Raises:
            StockRequestNotFound: 请求不存在或已处理。
            InvalidParameter: 未传凭证且库存仍为空。
            CredentialConflict: 库存条目被并发领取。
        """
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        with transaction() as db:
            row = db.execute(
                "SELECT * FROM stock_requests WHERE id = ? AND status = ?",
                (request_id, REQUEST_PENDING),
            ).fetchone()
            if not row:
                raise StockRequestNotFound(f"补货请求 id={request_id} 不存在或已处理")

            stock_id = None
            if credential is None:
                stock = self.pool.claim(db, row["product_id"], row["account_id"])
                if stock is None:
                    raise InvalidParameter("该商品暂无可用库存，请先入库或手动填写凭证")
                credential, stock_id = stock.credential, stock.id
                self.pool.bind(db, stock_id, row["order_id"], row["subscription_id"])

            ciphertext = encrypt_credential(credential)
            if row["order_id"]:
                db.execute(
                    """UPDATE orders
                       SET credential = ?, credential_status = ?, stock_id = ?
                       WHERE id = ?""",
                    (ciphertext, CREDENTIAL_ASSIGNED, stock_id, row["order_id"]),
                )
            if row["subscription_id"]:
                db.execute(
                    """UPDATE subscriptions
                       SET credential = ?, stock_id = ?, updated_at = ?,
                           status = CASE WHEN status = ? THEN ? ELSE status END
                       WHERE id = ?""",
                    (
                        ciphertext, stock_id, now,
                        SUB_PENDING, SUB_ACTIVE,
                        row["subscription_id"],
                    ),
                )
            db.execute(
                "UPDATE stock_requests SET status = ?, resolved_at = ? WHERE id = ?",
                (REQUEST_FULFILLED, now, request_id),
            )

        logger.info(
            "补货请求已交付: request_id=%s, order_id=%s, subscription_id=%s",
            request_id, row["order_id"], row["subscription_id"],
        )
        request = _row_to_request(row)
        request.status = REQUEST_FULFILLED
        request.resolved_at = now
        return request

    def cancel_stock_request(self, request_id: int, notes: str | None = None) -> None:
        """
        Raises:
            StockRequestNotFound: 请求不存在或已处理。
        """
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            cursor = db.execute(
                """UPDATE stock_requests
                   SET status = ?, notes = ?, resolved_at = ?
                   WHERE id = ? AND status = ?""",
                (REQUEST_CANCELLED, notes, now, request_id, REQUEST_PENDING),
            )
            db.commit()
            if cursor.rowcount == 0:
                raise StockRequestNotFound(f"补货请求 id={request_id} 不存在或已处理")
        finally:
            db.close()
        logger.info("补货请求已取消: request_id=%s", request_id)
