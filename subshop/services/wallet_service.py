"""
钱包账本服务：账户余额的原子扣款 / 入账、余额查询和流水记录。

余额以整数分保存在 accounts.balance_cents，扣款使用带条件的 UPDATE
（balance_cents >= 扣款额）做比较交换，在 BEGIN IMMEDIATE 事务中执行，
并发扣款不会让余额变为负数。每次变动递增 version 并写入 wallet_entries。
"""

import logging
import sqlite3
from datetime import datetime
from decimal import Decimal, InvalidOperation

from subshop.database import get_db, transaction
from subshop.models.schemas import WalletEntry, from_cents, to_cents
from subshop.services.errors import AccountNotFound, InsufficientFunds, InvalidAmount

logger = logging.getLogger(__name__)

ENTRY_TOPUP = "topup"
ENTRY_DEBIT = "debit"
ENTRY_REFUND = "refund"
ENTRY_ADJUSTMENT = "adjustment"


class WalletService:
    """钱包服务：debit / credit / get_balance。"""

    @staticmethod
    def _validate_amount(amount) -> int:
        try:
            cents = to_cents(amount)
        except (InvalidOperation, TypeError, ValueError):
            raise InvalidAmount("金额格式无效")
        if cents <= 0:
            raise InvalidAmount("金额必须大于 0")
        return cents

    @staticmethod
    def _log_entry(
        db: sqlite3.Connection,
        account_id: int,
        entry_type: str,
        amount_cents: int,
        balance_after_cents: int,
        reference_type: str | None,
        reference_id,
        reason: str | None,
    ) -> None:
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db.execute(
            """INSERT INTO wallet_entries
               (account_id, entry_type, amount_cents, balance_after_cents,
                reference_type, reference_id, reason, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                account_id, entry_type, amount_cents, balance_after_cents,
                reference_type,
                str(reference_id) if reference_id is not None else None,
                reason, now,
            ),
        )

    @staticmethod
    def _current_cents(db: sqlite3.Connection, account_id: int) -> int:
        row = db.execute(
            "SELECT balance_cents FROM accounts WHERE id = ?", (account_id,)
        ).fetchone()
        if not row:
            raise AccountNotFound(f"账户 id={account_id} 不存在")
        return row["balance_cents"]

    def debit(
        self,
        account_id: int,
        amount,
        *,
        reference_type: str | None = None,
        reference_id=None,
        reason: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> Decimal:
        """
        从账户扣款。

        Args:
            account_id: 账户 ID。
            amount: 扣款金额（>0）。
            conn: 外层事务连接；传入时扣款并入该事务，由外层提交。

        Returns:
            扣款后的余额。

        Raises:
            InvalidAmount: 金额 <= 0。
            AccountNotFound: 账户不存在。
            InsufficientFunds: 余额不足，余额不变。
        """
        cents = self._validate_amount(amount)
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        with transaction(conn) as db:
            cursor = db.execute(
                """UPDATE accounts
                   SET balance_cents = balance_cents - ?,
                       version = version + 1,
                       updated_at = ?
                   WHERE id = ? AND balance_cents >= ?""",
                (cents, now, account_id, cents),
            )
            if cursor.rowcount == 0:
                available = self._current_cents(db, account_id)
                logger.info(
                    "余额不足: account_id=%s, required=%s, available=%s",
                    account_id, from_cents(cents), from_cents(available),
                )
                raise InsufficientFunds(
                    "余额不足，请先充值",
                    required=from_cents(cents),
                    available=from_cents(available),
                )

            balance_cents = self._current_cents(db, account_id)
            self._log_entry(
                db, account_id, ENTRY_DEBIT, -cents, balance_cents,
                reference_type, reference_id, reason,
            )

        logger.info(
            "扣款成功: account_id=%s, amount=%s, balance=%s",
            account_id, from_cents(cents), from_cents(balance_cents),
        )
        return from_cents(balance_cents)

    def credit(
        self,
        account_id: int,
        amount,
        *,
        entry_type: str = ENTRY_REFUND,
        reference_type: str | None = None,
        reference_id=None,
        reason: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> Decimal:
        """
        向账户入账（充值、退款、调整）。

        Raises:
            InvalidAmount: 金额 <= 0。
            AccountNotFound: 账户不存在。
        """
        cents = self._validate_amount(amount)
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        with transaction(conn) as db:
            cursor = db.execute(
                """UPDATE accounts
                   SET balance_cents = balance_cents + ?,
                       version = version + 1,
                       updated_at = ?
                   WHERE id = ?""",
                (cents, now, account_id),
            )
            if cursor.rowcount == 0:
                raise AccountNotFound(f"账户 id={account_id} 不存在")

            balance_cents = self._current_cents(db, account_id)
            self._log_entry(
                db, account_id, entry_type, cents, balance_cents,
                reference_type, reference_id, reason,
            )

        logger.info(
            "入账成功: account_id=%s, type=%s, amount=%s, balance=%s",
            account_id, entry_type, from_cents(cents), from_cents(balance_cents),
        )
        return from_cents(balance_cents)

    def top_up(self, account_id: int, amount, reason: str | None = None) -> Decimal:
        """管理员为账户充值。"""
        return self.credit(
            account_id, amount, entry_type=ENTRY_TOPUP,
            reason=reason or "管理员充值",
        )

    def get_balance(
        self, account_id: int, conn: sqlite3.Connection | None = None
    ) -> Decimal:
        """
        读取当前余额（每次直接读库，不做缓存）。

        Raises:
            AccountNotFound: 账户不存在。
        """
        db = conn or get_db()
        try:
            return from_cents(self._current_cents(db, account_id))
        finally:
            if conn is None:
                db.close()

    def list_entries(self, account_id: int, limit: int = 30) -> list[WalletEntry]:
        """最近的资金流水，按时间倒序。"""
        db = get_db()
        try:
            rows = db.execute(
                """SELECT * FROM wallet_entries
                   WHERE account_id = ?
                   ORDER BY id DESC
                   LIMIT ?""",
                (account_id, limit),
            ).fetchall()
        finally:
            db.close()

        return [
            WalletEntry(
                id=r["id"],
                account_id=r["account_id"],
                entry_type=r["entry_type"],
                amount=from_cents(r["amount_cents"]),
                balance_after=from_cents(r["balance_after_cents"]),
                reference_type=r["reference_type"],
                reference_id=r["reference_id"],
                reason=r["reason"],
                created_at=r["created_at"],
            )
            for r in rows
        ]
