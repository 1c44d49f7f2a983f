"""
订阅生命周期服务：由订单创建订阅、续费 / 重新激活、批量续费、取消、
状态查询和过期清扫。
"""

import logging
import sqlite3
from datetime import datetime

from subshop.database import format_time, get_db, parse_time, transaction
from subshop.models.schemas import (
    SUB_ACTIVE,
    SUB_CANCELLED,
    SUB_EXPIRED,
    SUB_PENDING,
    Credential,
    Subscription,
    SubscriptionState,
)
from subshop.services.account_service import AccountService
from subshop.services.catalog_service import CatalogService
from subshop.services.credential_pool import decrypt_credential, encrypt_credential
from subshop.services.errors import (
    AccountNotFound,
    EngineError,
    InvalidParameter,
    MissingRequiredField,
    SubscriptionNotFound,
    SubscriptionNotRenewable,
)
from subshop.services.events import (
    SubscriptionCreated,
    SubscriptionExpired,
    SubscriptionRenewed,
    event_bus,
)
from subshop.services.pricing import price, tier_for
from subshop.services.subscription_status import (
    EXPIRING_SOON_DAYS,
    add_months,
    derive_status,
)
from subshop.services.wallet_service import WalletService

logger = logging.getLogger(__name__)


def row_to_subscription(row: sqlite3.Row) -> Subscription:
    return Subscription(
        id=row["id"],
        owner_id=row["owner_id"],
        buyer_id=row["buyer_id"],
        product_id=row["product_id"],
        start_date=parse_time(row["start_date"]),
        end_date=parse_time(row["end_date"]),
        duration_months=row["duration_months"],
        status=row["status"],
        credential=decrypt_credential(row["credential"]),
        order_id=row["order_id"],
        stock_id=row["stock_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        cancelled_at=row["cancelled_at"],
    )


def state_of(
    sub: Subscription,
    now: datetime | None = None,
    threshold_days: int = EXPIRING_SOON_DAYS,
) -> SubscriptionState:
    """对订阅调用 derive_status 的便捷函数。"""
    return derive_status(
        sub.status,
        sub.start_date,
        sub.end_date,
        now or datetime.now(),
        has_credential=sub.credential is not None,
        threshold_days=threshold_days,
    )


def subscription_to_dict(
    sub: Subscription,
    state: SubscriptionState,
    with_credential: bool = True,
) -> dict:
    data = {
        "id": sub.id,
        "owner_id": sub.owner_id,
        "buyer_id": sub.buyer_id,
        "product_id": sub.product_id,
        "order_id": sub.order_id,
        "start_date": format_time(sub.start_date),
        "end_date": format_time(sub.end_date),
        "duration_months": sub.duration_months,
        "stored_status": sub.status,
        "status": state.status,
        "days_left": state.days_left,
        "progress": state.progress,
        "label": state.label,
        "created_at": sub.created_at,
    }
    if with_credential:
        data["credential"] = sub.credential.to_dict() if sub.credential else None
    return data


class SubscriptionService:
    """订阅服务。"""

    def __init__(self):
        self.wallet = WalletService()
        self.catalog = CatalogService()
        self.accounts = AccountService()

    # ── 查询 ──────────────────────────────────────────────

    def _load(self, db: sqlite3.Connection, subscription_id: int) -> Subscription:
        row = db.execute(
            "SELECT * FROM subscriptions WHERE id = ?", (subscription_id,)
        ).fetchone()
        if not row:
            raise SubscriptionNotFound(f"订阅 id={subscription_id} 不存在")
        return row_to_subscription(row)

    def _check_visible(
        self, db: sqlite3.Connection, sub: Subscription, viewer_id: int
    ) -> None:
        """订阅只对持有人本人及持有人所属的批发商可见。"""
        if sub.owner_id == viewer_id:
            return
        row = db.execute(
            "SELECT wholesaler_id FROM accounts WHERE id = ?", (sub.owner_id,)
        ).fetchone()
        if not row or row["wholesaler_id"] != viewer_id:
            raise SubscriptionNotFound(f"订阅 id={sub.id} 不存在")

    def get_subscription(
        self, subscription_id: int, viewer_id: int | None = None
    ) -> Subscription:
        """
        Raises:
            SubscriptionNotFound: 订阅不存在或对 viewer 不可见。
        """
        db = get_db()
        try:
            sub = self._load(db, subscription_id)
            if viewer_id is not None:
                self._check_visible(db, sub, viewer_id)
            return sub
        finally:
            db.close()

    def get_status(
        self,
        subscription_id: int,
        now: datetime | None = None,
        threshold_days: int = EXPIRING_SOON_DAYS,
        viewer_id: int | None = None,
    ) -> tuple[Subscription, SubscriptionState]:
        sub = self.get_subscription(subscription_id, viewer_id=viewer_id)
        return sub, state_of(sub, now, threshold_days)

    def list_for_owner(self, owner_id: int) -> list[Subscription]:
        db = get_db()
        try:
            rows = db.execute(
                "SELECT * FROM subscriptions WHERE owner_id = ? ORDER BY end_date ASC",
                (owner_id,),
            ).fetchall()
            return [row_to_subscription(r) for r in rows]
        finally:
            db.close()

    # ── 创建 ──────────────────────────────────────────────

    def create_from_order(
        self,
        db: sqlite3.Connection,
        *,
        order_id: int,
        owner_id: int,
        buyer_id: int,
        product_id: str,
        duration_months: int,
        credential: Credential | None,
        stock_id: int | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        """在下单事务中创建订阅：起始为 now，结束为 now + 自然月数。"""
        start = (now or datetime.now()).replace(microsecond=0)
        end = add_months(start, duration_months)
        status = SUB_ACTIVE if credential is not None else SUB_PENDING
        created = format_time(start)

        cursor = db.execute(
            """INSERT INTO subscriptions
               (owner_id, buyer_id, product_id, order_id, start_date, end_date,
                duration_months, status, credential, stock_id,
                created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                owner_id, buyer_id, product_id, order_id,
                format_time(start), format_time(end),
                duration_months, status, encrypt_credential(credential), stock_id,
                created, created,
            ),
        )
        return Subscription(
            id=cursor.lastrowid,
            owner_id=owner_id,
            buyer_id=buyer_id,
            product_id=product_id,
            start_date=start,
            end_date=end,
            duration_months=duration_months,
            status=status,
            credential=credential,
            order_id=order_id,
            stock_id=stock_id,
            created_at=created,
            updated_at=created,
        )

    @staticmethod
    def publish_created(sub: Subscription) -> None:
        event_bus.publish(
            SubscriptionCreated(
                subscription_id=sub.id,
                owner_id=sub.owner_id,
                product_id=sub.product_id,
                end_date=format_time(sub.end_date),
                status=sub.status,
            )
        )

    # ── 续费 ──────────────────────────────────────────────

    def renew(
        self,
        subscription_id: int,
        buyer_id: int,
        duration_months: int | None = None,
        credential: Credential | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        """
        续费订阅。

        按当前目录价格和买家档位重新计价（默认沿用原时长），扣款成功后：
        未过期的订阅从原 end_date 顺延，已过期的订阅从 now 起算（重新激活，
        start_date 重置为 now）。扣款失败时订阅保持不变。

        Raises:
            AccountNotFound: 买家不存在或已被封禁。
            SubscriptionNotFound: 订阅不存在或买家无权续费。
            SubscriptionNotRenewable: 订阅已取消。
            InvalidParameter: 时长小于 1。
            MissingRequiredField: 替换的凭证缺少账号或密码。
            InsufficientFunds: 余额不足。
        """
        now = (now or datetime.now()).replace(microsecond=0)
        if duration_months is not None and duration_months < 1:
            raise InvalidParameter("续费时长至少为 1 个月")
        if credential is not None and not credential.has_login():
            raise MissingRequiredField("credential", "凭证需要填写用户名或邮箱，以及密码")

        with transaction() as db:
            sub = self._load(db, subscription_id)
            self._check_visible(db, sub, buyer_id)
            if sub.status == SUB_CANCELLED:
                raise SubscriptionNotRenewable(f"订阅 id={sub.id} 已取消，不能续费")

            buyer = self.accounts.get_account(buyer_id, conn=db)
            if buyer.active != 1:
                raise AccountNotFound("账户已被封禁")
            product = self.catalog.get_product(sub.product_id, conn=db)
            months = duration_months or sub.duration_months
            amount = price(product, duration_months=months, tier=tier_for(buyer))

            if amount > 0:
                self.wallet.debit(
                    buyer_id, amount,
                    reference_type="subscription",
                    reference_id=sub.id,
                    reason=f"续费 {product.name} {months} 个月",
                    conn=db,
                )

            previous_end = sub.end_date
            reactivated = now >= sub.end_date
            if reactivated:
                sub.start_date = now
                sub.end_date = add_months(now, months)
            else:
                sub.end_date = add_months(sub.end_date, months)
            sub.duration_months = months

            # 凭证列只在替换时写入；解密失败的旧密文原样保留
            if credential is not None:
                sub.credential = credential
                sub.stock_id = None
                db.execute(
                    "UPDATE subscriptions SET credential = ?, stock_id = NULL WHERE id = ?",
                    (encrypt_credential(credential), sub.id),
                )
            has_credential = db.execute(
                "SELECT credential IS NOT NULL AS has FROM subscriptions WHERE id = ?",
                (sub.id,),
            ).fetchone()["has"]
            sub.status = SUB_ACTIVE if has_credential else SUB_PENDING
            sub.updated_at = format_time(now)

            db.execute(
                """UPDATE subscriptions
                   SET start_date = ?, end_date = ?, duration_months = ?,
                       status = ?, updated_at = ?
                   WHERE id = ?""",
                (
                    format_time(sub.start_date), format_time(sub.end_date),
                    months, sub.status, sub.updated_at, sub.id,
                ),
            )

        logger.info(
            "订阅续费成功: id=%s, buyer_id=%s, amount=%s, end_date=%s, reactivated=%s",
            sub.id, buyer_id, amount, format_time(sub.end_date), reactivated,
        )
        event_bus.publish(
            SubscriptionRenewed(
                subscription_id=sub.id,
                buyer_id=buyer_id,
                owner_id=sub.owner_id,
                previous_end_date=format_time(previous_end),
                end_date=format_time(sub.end_date),
                charged=amount,
                reactivated=reactivated,
            )
        )
        return sub

    def bulk_renew(
        self,
        subscription_ids: list[int],
        buyer_id: int,
        now: datetime | None = None,
    ) -> list[dict]:
        """
        依次续费多个订阅，每个订阅单独成事务。

        某一项失败不会回滚此前已成功的续费，返回每一项的结果。
        """
        results = []
        for subscription_id in subscription_ids:
            try:
                sub = self.renew(subscription_id, buyer_id, now=now)
            except EngineError as e:
                logger.info(
                    "批量续费单项失败: id=%s, error=%s, msg=%s",
                    subscription_id, e.code, e.msg,
                )
                results.append(
                    {"subscription_id": subscription_id, "ok": False, **e.to_dict()}
                )
                continue
            results.append({
                "subscription_id": subscription_id,
                "ok": True,
                "end_date": format_time(sub.end_date),
            })
        return results

    # ── 取消 / 过期 ───────────────────────────────────────

    def cancel(self, subscription_id: int, reason: str | None = None) -> Subscription:
        """
        取消订阅（终态）。凭证保留在订阅上以便追溯，不退回库存。

        Raises:
            SubscriptionNotFound: 订阅不存在。
        """
        now = format_time(datetime.now())
        with transaction() as db:
            sub = self._load(db, subscription_id)
            if sub.status != SUB_CANCELLED:
                db.execute(
                    """UPDATE subscriptions
                       SET status = ?, cancelled_at = ?, updated_at = ?
                       WHERE id = ?""",
                    (SUB_CANCELLED, now, now, subscription_id),
                )
                sub.status = SUB_CANCELLED
                sub.cancelled_at = now
                sub.updated_at = now

        logger.info("订阅已取消: id=%s, reason=%s", subscription_id, reason or "")
        return sub

    def expire_subscriptions(self, now: datetime | None = None) -> int:
        """
        将已过结束时间、存储状态仍为 active/pending 的订阅标记为 expired。

        Returns:
            本次标记的订阅数量。
        """
        cutoff = format_time(now or datetime.now())
        with transaction() as db:
            rows = db.execute(
                """SELECT id, owner_id, end_date FROM subscriptions
                   WHERE status IN (?, ?) AND end_date <= ?""",
                (SUB_ACTIVE, SUB_PENDING, cutoff),
            ).fetchall()
            if rows:
                db.executemany(
                    "UPDATE subscriptions SET status = ?, updated_at = ? WHERE id = ?",
                    [(SUB_EXPIRED, cutoff, r["id"]) for r in rows],
                )

        if rows:
            logger.info("已标记 %d 个订阅为过期", len(rows))
        for r in rows:
            event_bus.publish(
                SubscriptionExpired(
                    subscription_id=r["id"],
                    owner_id=r["owner_id"],
                    end_date=r["end_date"],
                )
            )
        return len(rows)
