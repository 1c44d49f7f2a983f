"""订阅状态推导单元测试。"""

from datetime import datetime, timedelta

from subshop.models.schemas import (
    SUB_ACTIVE,
    SUB_CANCELLED,
    SUB_EXPIRED,
    SUB_EXPIRING_SOON,
    SUB_PENDING,
)
from subshop.services.subscription_status import (
    EXPIRING_SOON_DAYS,
    RESELLER_ENDING_SOON_DAYS,
    add_months,
    days_left,
    derive_status,
    progress,
)

NOW = datetime(2026, 3, 15, 12, 0, 0)


class TestDeriveStatus:
    """状态推导测试。"""

    def test_expiring_soon_scenario(self):
        """开始于 40 天前、5 天后结束、阈值 30 → expiring-soon，剩余 5 天，进度约 89%。"""
        state = derive_status(
            SUB_ACTIVE, NOW - timedelta(days=40), NOW + timedelta(days=5), NOW,
            has_credential=True, threshold_days=30,
        )
        assert state.status == SUB_EXPIRING_SOON
        assert state.days_left == 5
        assert 88.5 < state.progress < 89.5

    def test_active_beyond_threshold(self):
        state = derive_status(
            SUB_ACTIVE, NOW - timedelta(days=1), NOW + timedelta(days=60), NOW,
        )
        assert state.status == SUB_ACTIVE
        assert state.label == "剩余 60 天"

    def test_stored_active_but_past_end_is_expired(self):
        """存储状态仍为 active，但已过结束时间 → expired。"""
        state = derive_status(
            SUB_ACTIVE, NOW - timedelta(days=30), NOW - timedelta(seconds=1), NOW,
        )
        assert state.status == SUB_EXPIRED
        assert state.progress == 100.0
        assert state.days_left == 0

    def test_end_equal_now_is_expired(self):
        state = derive_status(SUB_ACTIVE, NOW - timedelta(days=30), NOW, NOW)
        assert state.status == SUB_EXPIRED

    def test_cancelled_overrides_dates(self):
        state = derive_status(
            SUB_CANCELLED, NOW - timedelta(days=1), NOW + timedelta(days=100), NOW,
        )
        assert state.status == SUB_CANCELLED

    def test_cancelled_even_when_expired(self):
        state = derive_status(
            SUB_CANCELLED, NOW - timedelta(days=60), NOW - timedelta(days=30), NOW,
        )
        assert state.status == SUB_CANCELLED

    def test_pending_without_credential(self):
        state = derive_status(
            SUB_ACTIVE, NOW, NOW + timedelta(days=30), NOW, has_credential=False,
        )
        assert state.status == SUB_PENDING
        assert state.label == "准备中"

    def test_stored_expired_but_renewed_dates_active(self):
        """存储状态只是提示，日期推导优先。"""
        state = derive_status(
            SUB_EXPIRED, NOW - timedelta(days=1), NOW + timedelta(days=90), NOW,
        )
        assert state.status == SUB_ACTIVE

    def test_threshold_is_caller_supplied(self):
        start, end = NOW - timedelta(days=20), NOW + timedelta(days=10)
        assert derive_status(SUB_ACTIVE, start, end, NOW, threshold_days=30).status == SUB_EXPIRING_SOON
        assert derive_status(
            SUB_ACTIVE, start, end, NOW, threshold_days=RESELLER_ENDING_SOON_DAYS
        ).status == SUB_ACTIVE

    def test_default_thresholds(self):
        assert EXPIRING_SOON_DAYS == 30
        assert RESELLER_ENDING_SOON_DAYS == 7

    def test_pure_and_idempotent(self):
        """相同输入两次调用结果相同，不修改入参。"""
        start, end = NOW - timedelta(days=3), NOW + timedelta(days=27)
        first = derive_status(SUB_ACTIVE, start, end, NOW)
        second = derive_status(SUB_ACTIVE, start, end, NOW)
        assert first == second
        assert start == NOW - timedelta(days=3)
        assert end == NOW + timedelta(days=27)


class TestHelpers:
    """辅助函数测试。"""

    def test_days_left_rounds_up(self):
        assert days_left(NOW + timedelta(hours=1), NOW) == 1
        assert days_left(NOW + timedelta(days=2, hours=1), NOW) == 3

    def test_days_left_negative_when_expired(self):
        assert days_left(NOW - timedelta(days=2), NOW) == -2

    def test_progress_clamped(self):
        assert progress(NOW + timedelta(days=1), NOW + timedelta(days=10), NOW) == 0.0
        assert progress(NOW - timedelta(days=10), NOW - timedelta(days=1), NOW) == 100.0

    def test_progress_zero_length(self):
        assert progress(NOW, NOW, NOW) == 100.0

    def test_add_months_calendar(self):
        """自然月：1 月 31 日 + 1 个月为 2 月最后一天。"""
        assert add_months(datetime(2026, 1, 31), 1) == datetime(2026, 2, 28)
        assert add_months(datetime(2026, 1, 15, 8, 30), 12) == datetime(2027, 1, 15, 8, 30)
