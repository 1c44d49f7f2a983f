"""
订阅状态推导：根据存储状态、起止时间和当前时间计算展示状态。

存储的 status 只是提示，除 cancelled 外一律以日期推导结果为准：
1. 存储为 cancelled → cancelled（终态，忽略日期）
2. now >= end_date → expired
3. 没有凭证 → pending（准备中）
4. 0 <= 剩余天数 <= 阈值 → expiring-soon
5. 其余 → active

本模块只做纯计算，不读写数据库，可被任意调用方并发调用。
"""

import math
import os
from datetime import datetime

from dateutil.relativedelta import relativedelta
from dotenv import load_dotenv

from subshop.models.schemas import (
    SUB_ACTIVE,
    SUB_CANCELLED,
    SUB_EXPIRED,
    SUB_EXPIRING_SOON,
    SUB_PENDING,
    SubscriptionState,
)

load_dotenv()

# 零售跟踪视图的“即将到期”阈值（天）
EXPIRING_SOON_DAYS = int(os.getenv("EXPIRING_SOON_DAYS", "30"))
# 批发商“即将结束”视图的阈值（天）
RESELLER_ENDING_SOON_DAYS = int(os.getenv("RESELLER_ENDING_SOON_DAYS", "7"))

_SECONDS_PER_DAY = 86400


def add_months(start: datetime, months: int) -> datetime:
    """按自然月加月数（1 月 31 日 + 1 个月 = 2 月最后一天）。"""
    return start + relativedelta(months=months)


def days_left(end_date: datetime, now: datetime) -> int:
    """剩余天数，向上取整；已过期时为负数或 0。"""
    return math.ceil((end_date - now).total_seconds() / _SECONDS_PER_DAY)


def progress(start_date: datetime, end_date: datetime, now: datetime) -> float:
    """已用时长百分比，范围 [0, 100]，保留一位小数。"""
    if now > end_date:
        return 100.0
    total = (end_date - start_date).total_seconds()
    if total <= 0:
        return 100.0
    elapsed = (now - start_date).total_seconds()
    return round(min(max(elapsed / total * 100, 0.0), 100.0), 1)


def label(status: str, remaining: int) -> str:
    if status == SUB_CANCELLED:
        return "已取消"
    if status == SUB_EXPIRED:
        return "已过期"
    if status == SUB_PENDING:
        return "准备中"
    return f"剩余 {max(remaining, 0)} 天"


def derive_status(
    stored_status: str,
    start_date: datetime,
    end_date: datetime,
    now: datetime,
    has_credential: bool = True,
    threshold_days: int = EXPIRING_SOON_DAYS,
) -> SubscriptionState:
    """
    推导订阅的权威状态。

    Args:
        stored_status: 库中保存的状态（仅 cancelled 有约束力）。
        start_date: 开始时间。
        end_date: 结束时间。
        now: 当前时间，由调用方传入。
        has_credential: 是否已交付凭证。
        threshold_days: 即将到期阈值，零售视图 30，批发商视图 7。

    Returns:
        SubscriptionState(status, days_left, progress, label)
    """
    remaining = days_left(end_date, now)
    pct = progress(start_date, end_date, now)

    if stored_status == SUB_CANCELLED:
        status = SUB_CANCELLED
    elif now >= end_date:
        status = SUB_EXPIRED
    elif not has_credential:
        status = SUB_PENDING
    elif 0 <= remaining <= threshold_days:
        status = SUB_EXPIRING_SOON
    else:
        status = SUB_ACTIVE

    return SubscriptionState(
        status=status,
        days_left=max(remaining, 0),
        progress=pct,
        label=label(status, remaining),
    )
