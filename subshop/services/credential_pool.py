"""
凭证库存服务：按商品管理可分配的账号凭证。

凭证以 JSON 序列化后使用 Fernet 对称加密保存，密钥由 JWT_SECRET 通过 PBKDF2
派生。领取库存时先查最早的可用条目，再以 status='available' 为条件更新，
必须在调用方的写事务中执行，确保同一凭证不会被两个订单领取。
"""

import base64
import json
import logging
import os
import sqlite3
from datetime import datetime
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from subshop.database import get_db, transaction
from subshop.models.schemas import (
    STOCK_ASSIGNED,
    STOCK_AVAILABLE,
    Credential,
    CredentialStock,
)
from subshop.services.catalog_service import CatalogService
from subshop.services.errors import (
    CredentialConflict,
    CredentialUnreadable,
    InvalidParameter,
)

logger = logging.getLogger(__name__)


@lru_cache(maxsize=4)
def _fernet_for(secret: str) -> Fernet:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"subshop-salt",
        iterations=100_000,
    )
    key = base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))
    return Fernet(key)


def _get_fernet() -> Fernet:
    """从 JWT_SECRET 环境变量派生 Fernet 加密密钥。"""
    return _fernet_for(os.getenv("JWT_SECRET", "default-secret-key"))


def encrypt_credential(credential: Credential | None) -> str | None:
    """加密凭证，返回密文；None 原样返回。"""
    if credential is None:
        return None
    payload = json.dumps(credential.to_dict(), ensure_ascii=False)
    return _get_fernet().encrypt(payload.encode("utf-8")).decode("utf-8")


def decrypt_credential(ciphertext: str | None) -> Credential | None:
    """解密凭证密文。密钥不匹配时记录错误并返回 None。"""
    if not ciphertext:
        return None
    try:
        plaintext = _get_fernet().decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken:
        logger.error("解密凭证失败")
        return None
    return Credential.from_dict(json.loads(plaintext))


def _row_to_stock(row: sqlite3.Row) -> CredentialStock:
    return CredentialStock(
        id=row["id"],
        product_id=row["product_id"],
        credential=decrypt_credential(row["credential"]),
        status=row["status"],
        order_id=row["order_id"],
        subscription_id=row["subscription_id"],
        account_id=row["account_id"],
        created_at=row["created_at"],
        assigned_at=row["assigned_at"],
    )


class CredentialPool:
    """凭证库存：入库、查询可用性、原子领取。"""

    def add_credential(self, product_id: str, credential: Credential) -> CredentialStock:
        """
        凭证入库。

        Raises:
            ProductNotFound: 商品不存在。
            InvalidParameter: 凭证为空。
        """
        return self.add_credentials_bulk(product_id, [credential])[0]

    def add_credentials_bulk(
        self, product_id: str, credentials: list[Credential]
    ) -> list[CredentialStock]:
        """批量入库（如 CSV 导入），全部成功或全部失败。"""
        if not credentials or any(c is None or not c.to_dict() for c in credentials):
            raise InvalidParameter("凭证内容不能为空")

        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        created = []
        with transaction() as db:
            CatalogService().get_product(product_id, conn=db)
            for credential in credentials:
                cursor = db.execute(
                    """INSERT INTO credential_stock
                       (product_id, credential, status, created_at)
                       VALUES (?, ?, ?, ?)""",
                    (product_id, encrypt_credential(credential), STOCK_AVAILABLE, now),
                )
                created.append(
                    CredentialStock(
                        id=cursor.lastrowid,
                        product_id=product_id,
                        credential=credential,
                        status=STOCK_AVAILABLE,
                        created_at=now,
                    )
                )

        logger.info("凭证入库: product_id=%s, count=%d", product_id, len(created))
        return created

    def check_availability(self, product_id: str) -> dict:
        """
        查询商品是否有可用库存。

        Returns:
            {"available": bool, "count": int, "credential": Credential | None}
            credential 为下一条将被分配的凭证（仅供内部使用，不对外展示）。
        """
        db = get_db()
        try:
            count = db.execute(
                """SELECT COUNT(*) AS cnt FROM credential_stock
                   WHERE product_id = ? AND status = ?""",
                (product_id, STOCK_AVAILABLE),
            ).fetchone()["cnt"]
            row = db.execute(
                """SELECT credential FROM credential_stock
                   WHERE product_id = ? AND status = ?
                   ORDER BY id ASC LIMIT 1""",
                (product_id, STOCK_AVAILABLE),
            ).fetchone()
        finally:
            db.close()

        return {
            "available": count > 0,
            "count": count,
            "credential": decrypt_credential(row["credential"]) if row else None,
        }

    def claim(
        self, db: sqlite3.Connection, product_id: str, account_id: int
    ) -> CredentialStock | None:
        """
        在调用方事务中领取最早入库的可用凭证。

        Returns:
            领取到的库存条目；无库存时返回 None。

        Raises:
            CredentialConflict: 条目已被其他订单领取。
            CredentialUnreadable: 条目密文无法解密，调用方事务应整体回滚。
        """
        row = db.execute(
            """SELECT * FROM credential_stock
               WHERE product_id = ? AND status = ?
               ORDER BY id ASC LIMIT 1""",
            (product_id, STOCK_AVAILABLE),
        ).fetchone()
        if not row:
            return None

        stock = _row_to_stock(row)
        if stock.credential is None:
            raise CredentialUnreadable(f"库存凭证 id={row['id']} 无法解密")

        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        cursor = db.execute(
            """UPDATE credential_stock
               SET status = ?, account_id = ?, assigned_at = ?
               WHERE id = ? AND status = ?""",
            (STOCK_ASSIGNED, account_id, now, row["id"], STOCK_AVAILABLE),
        )
        if cursor.rowcount == 0:
            raise CredentialConflict(f"库存凭证 id={row['id']} 已被领取")

        stock.status = STOCK_ASSIGNED
        stock.account_id = account_id
        stock.assigned_at = now
        return stock

    def bind(
        self,
        db: sqlite3.Connection,
        stock_id: int,
        order_id: int | None,
        subscription_id: int | None,
    ) -> None:
        """把已领取的库存条目关联到订单 / 订阅。"""
        cursor = db.execute(
            """UPDATE credential_stock
               SET order_id = ?, subscription_id = ?
               WHERE id = ? AND status = ?
                 AND (order_id IS NULL OR order_id = ?)""",
            (order_id, subscription_id, stock_id, STOCK_ASSIGNED, order_id),
        )
        if cursor.rowcount == 0:
            raise CredentialConflict(f"库存凭证 id={stock_id} 已绑定其他订单")

    def list_stock(
        self, product_id: str | None = None, status: str | None = None
    ) -> list[CredentialStock]:
        conditions = []
        params: list = []
        if product_id:
            conditions.append("product_id = ?")
            params.append(product_id)
        if status:
            conditions.append("status = ?")
            params.append(status)
        where_clause = " AND ".join(conditions) if conditions else "1=1"

        db = get_db()
        try:
            rows = db.execute(
                f"SELECT * FROM credential_stock WHERE {where_clause} ORDER BY id ASC",
                params,
            ).fetchall()
            return [_row_to_stock(r) for r in rows]
        finally:
            db.close()

    def delete_available(self, stock_id: int) -> bool:
        """删除未分配的库存条目；已分配的条目保留用于追溯。"""
        db = get_db()
        try:
            cursor = db.execute(
                "DELETE FROM credential_stock WHERE id = ? AND status = ?",
                (stock_id, STOCK_AVAILABLE),
            )
            db.commit()
            return cursor.rowcount > 0
        finally:
            db.close()
