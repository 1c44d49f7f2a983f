"""账户管理服务模块：零售客户、批发商及批发商名下客户。"""

import secrets
import sqlite3
from datetime import datetime

from subshop.database import get_db
from subshop.models.schemas import (
    Account,
    ROLE_CUSTOMER,
    ROLE_WHOLESALE,
    from_cents,
)
from subshop.services.errors import AccountNotFound, InvalidParameter


def row_to_account(row: sqlite3.Row) -> Account:
    return Account(
        id=row["id"],
        name=row["name"],
        key=row["key"],
        role=row["role"],
        email=row["email"],
        phone=row["phone"],
        wholesaler_id=row["wholesaler_id"],
        balance=from_cents(row["balance_cents"]),
        version=row["version"],
        active=row["active"],
        notes=row["notes"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def account_to_dict(account: Account, with_key: bool = False) -> dict:
    data = {
        "id": account.id,
        "name": account.name,
        "email": account.email or "",
        "phone": account.phone or "",
        "role": account.role,
        "wholesaler_id": account.wholesaler_id,
        "balance": str(account.balance),
        "active": account.active,
        "notes": account.notes or "",
        "created_at": account.created_at,
    }
    if with_key:
        data["key"] = account.key
    return data


class AccountService:
    """账户服务：创建、封禁/解封、重置密钥、查询、密钥校验。"""

    @staticmethod
    def _generate_key() -> str:
        """生成 32 位随机十六进制密钥。"""
        return secrets.token_hex(16)

    def create_account(
        self,
        name: str,
        email: str | None = None,
        role: str = ROLE_CUSTOMER,
        phone: str | None = None,
        wholesaler_id: int | None = None,
        notes: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> Account:
        """
        创建账户，分配自增 id 和 32 位随机 KEY，初始余额为 0。

        Raises:
            InvalidParameter: 名称为空或角色无效。
            AccountNotFound: 指定的批发商不存在。
        """
        if not (name or "").strip():
            raise InvalidParameter("账户名称不能为空")
        if role not in (ROLE_CUSTOMER, ROLE_WHOLESALE):
            raise InvalidParameter(f"无效的账户角色: {role}")

        key = self._generate_key()
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        db = conn or get_db()
        try:
            if wholesaler_id is not None:
                parent = db.execute(
                    "SELECT id FROM accounts WHERE id = ? AND role = ?",
                    (wholesaler_id, ROLE_WHOLESALE),
                ).fetchone()
                if not parent:
                    raise AccountNotFound(f"批发商 id={wholesaler_id} 不存在")

            cursor = db.execute(
                """INSERT INTO accounts
                   (name, email, phone, role, wholesaler_id, key, notes,
                    created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (name.strip(), email, phone, role, wholesaler_id, key, notes, now, now),
            )
            if conn is None:
                db.commit()
            account_id = cursor.lastrowid
        finally:
            if conn is None:
                db.close()

        return Account(
            id=account_id,
            name=name.strip(),
            key=key,
            role=role,
            email=email,
            phone=phone,
            wholesaler_id=wholesaler_id,
            notes=notes,
            created_at=now,
            updated_at=now,
        )

    def get_account(
        self, account_id: int, conn: sqlite3.Connection | None = None
    ) -> Account:
        """
        Raises:
            AccountNotFound: 账户不存在。
        """
        db = conn or get_db()
        try:
            row = db.execute(
                "SELECT * FROM accounts WHERE id = ?", (account_id,)
            ).fetchone()
        finally:
            if conn is None:
                db.close()
        if not row:
            raise AccountNotFound(f"账户 id={account_id} 不存在")
        return row_to_account(row)

    def authenticate(self, account_id, key: str | None) -> Account:
        """
        校验账户 id 与密钥。

        Raises:
            AccountNotFound: 账户不存在、密钥错误或已封禁。
        """
        try:
            account_id = int(account_id)
        except (TypeError, ValueError):
            raise AccountNotFound("账户ID无效")

        account = self.get_account(account_id)
        if not key or not secrets.compare_digest(account.key, key):
            raise AccountNotFound("账户密钥错误")
        if account.active != 1:
            raise AccountNotFound("账户已被封禁")
        return account

    def toggle_status(self, account_id: int, active: bool) -> None:
        """
        封禁或解封账户。

        Raises:
            AccountNotFound: 账户不存在。
        """
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            cursor = db.execute(
                "UPDATE accounts SET active = ?, updated_at = ? WHERE id = ?",
                (1 if active else 0, now, account_id),
            )
            db.commit()
            if cursor.rowcount == 0:
                raise AccountNotFound(f"账户 id={account_id} 不存在")
        finally:
            db.close()

    def reset_key(self, account_id: int) -> str:
        """
        重置账户密钥，生成新 KEY 并立即生效。

        Raises:
            AccountNotFound: 账户不存在。
        """
        new_key = self._generate_key()
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            cursor = db.execute(
                "UPDATE accounts SET key = ?, updated_at = ? WHERE id = ?",
                (new_key, now, account_id),
            )
            db.commit()
            if cursor.rowcount == 0:
                raise AccountNotFound(f"账户 id={account_id} 不存在")
            return new_key
        finally:
            db.close()

    def list_accounts(self, role: str | None = None) -> list[Account]:
        """按 id 升序列出账户，可按角色过滤。"""
        db = get_db()
        try:
            if role:
                rows = db.execute(
                    "SELECT * FROM accounts WHERE role = ? ORDER BY id ASC", (role,)
                ).fetchall()
            else:
                rows = db.execute("SELECT * FROM accounts ORDER BY id ASC").fetchall()
            return [row_to_account(r) for r in rows]
        finally:
            db.close()
