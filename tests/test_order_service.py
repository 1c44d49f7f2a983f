"""订单服务单元测试。"""

import os
import sqlite3
import tempfile
import threading
from decimal import Decimal
from unittest.mock import patch

import pytest

# 在导入 subshop 模块之前设置测试数据库路径
_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="order_svc_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name
os.environ["JWT_SECRET"] = "test-secret-key-for-order-tests"

import subshop.database as _db_mod
from subshop.database import get_db, init_db
from subshop.models.schemas import (
    CREDENTIAL_ASSIGNED,
    CREDENTIAL_NOT_REQUIRED,
    CREDENTIAL_PENDING,
    CREDENTIAL_SELF_SUPPLIED,
    ORDER_FULFILLED,
    ROLE_WHOLESALE,
    SUB_ACTIVE,
    SUB_PENDING,
    Credential,
)
from subshop.services.account_service import AccountService
from subshop.services.catalog_service import CatalogService
from subshop.services.credential_pool import CredentialPool
from subshop.services.errors import (
    AccountNotFound,
    CredentialConflict,
    CredentialUnreadable,
    CustomerNotFound,
    InsufficientFunds,
    InvalidParameter,
    MissingRequiredField,
    ProductNotFound,
)
from subshop.services.events import (
    CredentialPending,
    Event,
    OrderFulfilled,
    SubscriptionCreated,
    event_bus,
)
from subshop.services.order_service import OrderService
from subshop.services.subscription_service import SubscriptionService
from subshop.services.wallet_service import WalletService


@pytest.fixture(autouse=True)
def _setup_db():
    """每个测试前重建数据库。"""
    os.environ["DB_PATH"] = _tmp.name
    _db_mod.DB_PATH = _tmp.name
    conn = sqlite3.connect(_tmp.name)
    conn.executescript("""
        DROP TABLE IF EXISTS stock_requests;
        DROP TABLE IF EXISTS wallet_entries;
        DROP TABLE IF EXISTS credential_stock;
        DROP TABLE IF EXISTS subscriptions;
        DROP TABLE IF EXISTS orders;
        DROP TABLE IF EXISTS products;
        DROP TABLE IF EXISTS accounts;
        DROP TABLE IF EXISTS admin;
    """)
    conn.close()
    init_db()
    event_bus.clear()
    yield
    event_bus.clear()


@pytest.fixture
def svc():
    return OrderService()


@pytest.fixture
def events():
    received = []
    event_bus.subscribe(Event, received.append)
    return received


@pytest.fixture
def catalog():
    cat = CatalogService()
    cat.save_product({
        "id": "P1", "name": "Netflix 高级版", "kind": "subscription",
        "price": "9.99", "wholesale_price": "20",
    })
    cat.save_product({
        "id": "P3", "name": "Spotify", "kind": "subscription",
        "price": "5", "wholesale_price": "4", "available_months": [1, 3, 12],
        "monthly_pricing": [{"months": 12, "price": "50", "wholesale_price": "40"}],
    })
    cat.save_product({
        "id": "R1", "name": "游戏充值", "kind": "recharge",
        "price": "1", "wholesale_price": "0.9", "min_quantity": 5,
    })
    cat.save_product({
        "id": "G1", "name": "礼品卡", "kind": "giftcard",
        "price": "25", "wholesale_price": "22", "value": "25", "requires_id": True,
    })
    return cat


def _buyer(balance="100"):
    account = AccountService().create_account("retail_buyer", "r@example.com")
    WalletService().top_up(account.id, balance)
    return account


def _wholesaler(balance="50"):
    account = AccountService().create_account("reseller", role=ROLE_WHOLESALE)
    WalletService().top_up(account.id, balance)
    return account


def _balance(account_id):
    return WalletService().get_balance(account_id)


class TestPlaceOrderScenarios:
    """下单核心场景。"""

    def test_insufficient_funds_no_side_effects(self, svc, catalog):
        """余额 15，购买 9.99 × 3 = 29.97 → InsufficientFunds，余额保持 15。"""
        buyer = _buyer("15.00")
        CredentialPool().add_credential("P1", Credential(email="a@b.com", password="x"))

        with pytest.raises(InsufficientFunds):
            svc.place_order(buyer.id, "P1", {"duration_months": 3})

        assert _balance(buyer.id) == Decimal("15.00")
        assert CredentialPool().check_availability("P1")["count"] == 1
        orders, total = svc.list_orders(buyer_id=buyer.id)
        assert total == 0

    def test_wholesaler_purchases_for_customer(self, svc, catalog):
        """批发商余额 50 为客户购买批发价 20 的商品：余额变为 30，订阅归客户。"""
        wholesaler = _wholesaler("50")
        customer = AccountService().create_account("customer", wholesaler_id=wholesaler.id)

        order = svc.place_order(wholesaler.id, "P1", {"customer_id": customer.id})

        assert order.buyer_id == wholesaler.id
        assert order.owner_id == customer.id
        assert order.total_price == Decimal("20.00")
        assert _balance(wholesaler.id) == Decimal("30.00")
        assert _balance(customer.id) == Decimal("0.00")

        sub = SubscriptionService().get_subscription(order.subscription_id)
        assert sub.owner_id == customer.id
        assert sub.buyer_id == wholesaler.id

    def test_pool_credential_assigned(self, svc, catalog):
        buyer = _buyer()
        CredentialPool().add_credential("P1", Credential(email="a@b.com", password="x"))

        order = svc.place_order(buyer.id, "P1", {"duration_months": 1})

        assert order.status == ORDER_FULFILLED
        assert order.credential_status == CREDENTIAL_ASSIGNED
        assert order.credential.email == "a@b.com"
        sub = SubscriptionService().get_subscription(order.subscription_id)
        assert sub.status == SUB_ACTIVE
        assert sub.credential.email == "a@b.com"

        stock = CredentialPool().list_stock("P1")[0]
        assert stock.order_id == order.id
        assert stock.subscription_id == sub.id

    def test_empty_pool_fulfilled_pending(self, svc, catalog, events):
        """库存为空：订单照常完成，订阅为准备中，登记补货请求。"""
        buyer = _buyer()
        order = svc.place_order(buyer.id, "P1")

        assert order.status == ORDER_FULFILLED
        assert order.credential_status == CREDENTIAL_PENDING
        assert order.credential is None
        sub = SubscriptionService().get_subscription(order.subscription_id)
        assert sub.status == SUB_PENDING

        pending = [e for e in events if isinstance(e, CredentialPending)]
        assert len(pending) == 1
        assert pending[0].order_id == order.id

    def test_concurrent_orders_single_credential(self, catalog):
        """库存仅 1 条凭证时两个并发下单：只有一个订单拿到凭证，另一个为待交付。"""
        buyer = _buyer("100")
        CredentialPool().add_credential("P1", Credential(email="a@b.com", password="x"))
        results, errors = [], []

        def worker():
            try:
                results.append(OrderService().place_order(buyer.id, "P1"))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        statuses = sorted(o.credential_status for o in results)
        assert statuses == [CREDENTIAL_ASSIGNED, CREDENTIAL_PENDING]
        assigned = [o for o in results if o.credential is not None]
        assert len(assigned) == 1
        assert assigned[0].credential.email == "a@b.com"
        assert _balance(buyer.id) == Decimal("80.02")


class TestPlaceOrderValidation:
    """下单参数校验。"""

    def test_unknown_product(self, svc, catalog):
        buyer = _buyer()
        with pytest.raises(ProductNotFound):
            svc.place_order(buyer.id, "NOPE")

    def test_inactive_product(self, svc, catalog):
        catalog.save_product({"id": "OFF", "name": "下架", "price": "1", "active": False})
        buyer = _buyer()
        with pytest.raises(ProductNotFound):
            svc.place_order(buyer.id, "OFF")

    def test_unknown_buyer(self, svc, catalog):
        with pytest.raises(AccountNotFound):
            svc.place_order(9999, "P1")

    def test_disabled_buyer(self, svc, catalog):
        buyer = _buyer()
        AccountService().toggle_status(buyer.id, False)
        with pytest.raises(AccountNotFound):
            svc.place_order(buyer.id, "P1")

    def test_recharge_requires_account_ref(self, svc, catalog):
        buyer = _buyer()
        with pytest.raises(MissingRequiredField) as exc:
            svc.place_order(buyer.id, "R1", {"quantity": 5})
        assert exc.value.field == "account_ref"
        assert _balance(buyer.id) == Decimal("100.00")

    def test_requires_id_product(self, svc, catalog):
        buyer = _buyer()
        with pytest.raises(MissingRequiredField):
            svc.place_order(buyer.id, "G1", {"account_ref": "   "})

    def test_wholesale_requires_customer(self, svc, catalog):
        wholesaler = _wholesaler()
        with pytest.raises(MissingRequiredField) as exc:
            svc.place_order(wholesaler.id, "P1")
        assert exc.value.field == "customer_name"

    def test_wholesale_with_customer_name_only(self, svc, catalog):
        wholesaler = _wholesaler()
        order = svc.place_order(wholesaler.id, "P1", {"customer_name": "张三"})
        assert order.owner_id == wholesaler.id
        assert order.customer_name == "张三"

    def test_foreign_customer_rejected(self, svc, catalog):
        wholesaler = _wholesaler()
        other = AccountService().create_account("other", role=ROLE_WHOLESALE)
        stranger = AccountService().create_account("stranger", wholesaler_id=other.id)
        with pytest.raises(CustomerNotFound):
            svc.place_order(wholesaler.id, "P1", {"customer_id": stranger.id})
        assert _balance(wholesaler.id) == Decimal("50.00")

    def test_retail_buyer_cannot_target_customer(self, svc, catalog):
        buyer = _buyer()
        with pytest.raises(CustomerNotFound):
            svc.place_order(buyer.id, "P1", {"customer_id": buyer.id})

    def test_self_supplied_credential_needs_password(self, svc, catalog):
        buyer = _buyer()
        with pytest.raises(MissingRequiredField):
            svc.place_order(buyer.id, "P1", {"credential": {"email": "me@x.com"}})

    def test_self_supplied_credential_attached(self, svc, catalog):
        buyer = _buyer()
        CredentialPool().add_credential("P1", Credential(email="pool@x.com", password="x"))
        order = svc.place_order(
            buyer.id, "P1", {"credential": {"username": "me", "password": "pw"}}
        )
        assert order.credential_status == CREDENTIAL_SELF_SUPPLIED
        assert order.credential.username == "me"
        assert CredentialPool().check_availability("P1")["count"] == 1

    def test_credential_extra_must_be_mapping(self, svc, catalog):
        buyer = _buyer()
        with pytest.raises(InvalidParameter):
            svc.place_order(
                buyer.id, "P1",
                {"credential": {"email": "me@x.com", "password": "pw", "extra": "oops"}},
            )
        assert _balance(buyer.id) == Decimal("100.00")

    def test_credential_on_non_subscription_rejected(self, svc, catalog):
        buyer = _buyer()
        with pytest.raises(InvalidParameter):
            svc.place_order(
                buyer.id, "G1",
                {"account_ref": "x", "credential": {"username": "u", "password": "p"}},
            )

    def test_duration_outside_available_months(self, svc, catalog):
        buyer = _buyer()
        with pytest.raises(InvalidParameter):
            svc.place_order(buyer.id, "P3", {"duration_months": 2})

    def test_zero_duration(self, svc, catalog):
        buyer = _buyer()
        with pytest.raises(InvalidParameter):
            svc.place_order(buyer.id, "P1", {"duration_months": 0})

    def test_quantity_below_minimum(self, svc, catalog):
        buyer = _buyer()
        with pytest.raises(InvalidParameter):
            svc.place_order(buyer.id, "R1", {"quantity": 2, "account_ref": "game-1"})

    def test_non_integer_duration(self, svc, catalog):
        buyer = _buyer()
        with pytest.raises(InvalidParameter):
            svc.place_order(buyer.id, "P1", {"duration_months": "three"})


class TestPlaceOrderKinds:
    """不同商品类型。"""

    def test_recharge_order(self, svc, catalog):
        buyer = _buyer()
        order = svc.place_order(buyer.id, "R1", {"account_ref": "player-42"})
        assert order.quantity == 5
        assert order.duration_months is None
        assert order.total_price == Decimal("5.00")
        assert order.credential_status == CREDENTIAL_NOT_REQUIRED
        assert order.subscription_id is None

    def test_monthly_pricing_used(self, svc, catalog):
        buyer = _buyer()
        order = svc.place_order(buyer.id, "P3", {"duration_months": 12})
        assert order.total_price == Decimal("50.00")
        assert _balance(buyer.id) == Decimal("50.00")

    def test_default_duration_first_available(self, svc, catalog):
        buyer = _buyer()
        order = svc.place_order(buyer.id, "P3")
        assert order.duration_months == 1

    def test_giftcard_gets_pool_credential(self, svc, catalog):
        buyer = _buyer()
        CredentialPool().add_credential("G1", Credential(extra={"code": "GIFT-001"}))
        order = svc.place_order(buyer.id, "G1", {"account_ref": "me@x.com"})
        assert order.credential.extra == {"code": "GIFT-001"}
        assert order.subscription_id is None


class TestIdempotencyAndRollback:
    """幂等与回滚。"""

    def test_client_order_no_idempotent(self, svc, catalog):
        """相同 client_order_no 重复提交只扣一次款。"""
        buyer = _buyer()
        first = svc.place_order(buyer.id, "P1", {"client_order_no": "intent-1"})
        second = svc.place_order(buyer.id, "P1", {"client_order_no": "intent-1"})
        assert first.order_no == second.order_no
        assert _balance(buyer.id) == Decimal("90.01")
        assert svc.list_orders(buyer_id=buyer.id)[1] == 1

    def test_hard_failure_rolls_back_debit(self, svc, catalog):
        """分配阶段硬失败时，扣款随事务回滚。"""
        buyer = _buyer()
        with patch.object(
            svc.assignment, "assign", side_effect=CredentialConflict("库存凭证已被领取")
        ):
            with pytest.raises(CredentialConflict):
                svc.place_order(buyer.id, "P1")
        assert _balance(buyer.id) == Decimal("100.00")
        assert svc.list_orders(buyer_id=buyer.id)[1] == 0
        assert WalletService().list_entries(buyer.id)[0].entry_type == "topup"

    def test_unreadable_pool_credential_rolls_back(self, svc, catalog, monkeypatch):
        """库存密文无法解密时整单回滚，库存条目保持可用。"""
        buyer = _buyer()
        CredentialPool().add_credential("P1", Credential(email="pool@x.com", password="x"))
        monkeypatch.setenv("JWT_SECRET", "rotated-secret")

        with pytest.raises(CredentialUnreadable):
            svc.place_order(buyer.id, "P1")
        assert _balance(buyer.id) == Decimal("100.00")
        assert svc.list_orders(buyer_id=buyer.id)[1] == 0

        monkeypatch.undo()
        assert CredentialPool().check_availability("P1")["count"] == 1


class TestEventsAndQueries:
    """事件发布与订单查询。"""

    def test_events_published_after_commit(self, svc, catalog, events):
        buyer = _buyer()
        CredentialPool().add_credential("P1", Credential(email="a@b.com", password="x"))
        order = svc.place_order(buyer.id, "P1")

        kinds = [type(e) for e in events]
        assert kinds == [OrderFulfilled, SubscriptionCreated]
        assert events[0].order_no == order.order_no
        assert events[1].subscription_id == order.subscription_id

    def test_no_events_on_failure(self, svc, catalog, events):
        buyer = _buyer("1")
        with pytest.raises(InsufficientFunds):
            svc.place_order(buyer.id, "P1")
        assert events == []

    def test_get_order_visibility(self, svc, catalog):
        wholesaler = _wholesaler()
        customer = AccountService().create_account("c", wholesaler_id=wholesaler.id)
        stranger = _buyer()
        order = svc.place_order(wholesaler.id, "P1", {"customer_id": customer.id})

        assert svc.get_order(order.order_no, account_id=wholesaler.id) is not None
        assert svc.get_order(order.order_no, account_id=customer.id) is not None
        assert svc.get_order(order.order_no, account_id=stranger.id) is None
        assert svc.get_order("missing") is None

    def test_list_orders_paginated(self, svc, catalog):
        buyer = _buyer()
        for _ in range(3):
            svc.place_order(buyer.id, "P1")
        orders, total = svc.list_orders(buyer_id=buyer.id, page=1, page_size=2)
        assert total == 3
        assert len(orders) == 2
        assert orders[0].id > orders[1].id

    def test_credential_encrypted_in_orders_table(self, svc, catalog):
        buyer = _buyer()
        svc.place_order(buyer.id, "P1", {"credential": {"username": "me", "password": "hunter2"}})
        conn = get_db()
        try:
            raw = conn.execute("SELECT credential FROM orders").fetchone()["credential"]
        finally:
            conn.close()
        assert "hunter2" not in raw
