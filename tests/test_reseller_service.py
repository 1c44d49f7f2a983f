"""批发商服务单元测试。"""

import os
import sqlite3
import tempfile
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

# 在导入 subshop 模块之前设置测试数据库路径
_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="reseller_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name
os.environ["JWT_SECRET"] = "test-secret-key-for-reseller-tests"

import subshop.database as _db_mod
from subshop.database import format_time, get_db, init_db
from subshop.models.schemas import ROLE_WHOLESALE, SUB_EXPIRED, SUB_EXPIRING_SOON, Credential
from subshop.services.account_service import AccountService
from subshop.services.catalog_service import CatalogService
from subshop.services.errors import CustomerNotFound, InvalidParameter
from subshop.services.reseller_service import ResellerService
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
    CatalogService().save_product({
        "id": "P1", "name": "Disney+", "kind": "subscription",
        "price": "25", "wholesale_price": "20",
    })
    yield


@pytest.fixture
def svc():
    return ResellerService()


@pytest.fixture
def wholesaler():
    account = AccountService().create_account("reseller", role=ROLE_WHOLESALE)
    WalletService().top_up(account.id, "50")
    return account


def _shift(subscription_id, start, end):
    conn = get_db()
    try:
        conn.execute(
            "UPDATE subscriptions SET start_date = ?, end_date = ? WHERE id = ?",
            (format_time(start), format_time(end), subscription_id),
        )
        conn.commit()
    finally:
        conn.close()


class TestCustomers:
    """客户管理测试。"""

    def test_add_and_list(self, svc, wholesaler):
        svc.add_customer(wholesaler.id, "张三", email="zs@example.com")
        svc.add_customer(wholesaler.id, "李四", phone="13800000000")
        names = [c.name for c in svc.list_customers(wholesaler.id)]
        assert names == ["张三", "李四"]

    def test_visibility_scoped_to_wholesaler(self, svc, wholesaler):
        other = AccountService().create_account("other", role=ROLE_WHOLESALE)
        mine = svc.add_customer(wholesaler.id, "mine")
        theirs = svc.add_customer(other.id, "theirs")

        assert [c.id for c in svc.list_customers(wholesaler.id)] == [mine.id]
        with pytest.raises(CustomerNotFound):
            svc.get_customer(wholesaler.id, theirs.id)

    def test_search(self, svc, wholesaler):
        svc.add_customer(wholesaler.id, "Alice", email="alice@example.com")
        svc.add_customer(wholesaler.id, "Bob", email="bob@example.com")
        assert [c.name for c in svc.list_customers(wholesaler.id, "alice")] == ["Alice"]

    def test_update_customer(self, svc, wholesaler):
        customer = svc.add_customer(wholesaler.id, "old")
        updated = svc.update_customer(wholesaler.id, customer.id, {"name": "new", "notes": "VIP"})
        assert updated.name == "new"
        assert svc.get_customer(wholesaler.id, customer.id).notes == "VIP"

    def test_update_rejects_empty_name(self, svc, wholesaler):
        customer = svc.add_customer(wholesaler.id, "x")
        with pytest.raises(InvalidParameter):
            svc.update_customer(wholesaler.id, customer.id, {"name": "  "})

    def test_non_wholesaler_cannot_add(self, svc):
        retail = AccountService().create_account("retail")
        with pytest.raises(InvalidParameter):
            svc.add_customer(retail.id, "c")


class TestPurchaseForCustomer:
    """代客下单测试。"""

    def test_payer_and_owner_split(self, svc, wholesaler):
        customer = svc.add_customer(wholesaler.id, "C")
        order = svc.purchase_for_customer(wholesaler.id, customer.id, "P1")

        assert order.buyer_id == wholesaler.id
        assert order.owner_id == customer.id
        assert order.customer_name == "C"
        assert WalletService().get_balance(wholesaler.id) == Decimal("30.00")
        assert WalletService().get_balance(customer.id) == Decimal("0.00")

        items = svc.list_customer_subscriptions(wholesaler.id, customer.id)
        assert len(items) == 1
        assert items[0][0].owner_id == customer.id

    def test_foreign_customer(self, svc, wholesaler):
        other = AccountService().create_account("other", role=ROLE_WHOLESALE)
        theirs = svc.add_customer(other.id, "theirs")
        with pytest.raises(CustomerNotFound):
            svc.purchase_for_customer(wholesaler.id, theirs.id, "P1")


class TestViews:
    """即将结束与汇总视图。"""

    def test_ending_soon_uses_reseller_threshold(self, svc, wholesaler):
        WalletService().top_up(wholesaler.id, "100")
        customer = svc.add_customer(wholesaler.id, "C")
        params = {"credential": Credential(username="u", password="p")}
        soon = svc.purchase_for_customer(wholesaler.id, customer.id, "P1", params)
        later = svc.purchase_for_customer(wholesaler.id, customer.id, "P1", params)
        gone = svc.purchase_for_customer(wholesaler.id, customer.id, "P1", params)

        now = datetime.now().replace(microsecond=0)
        _shift(soon.subscription_id, now - timedelta(days=20), now + timedelta(days=3))
        _shift(later.subscription_id, now - timedelta(days=5), now + timedelta(days=20))
        _shift(gone.subscription_id, now - timedelta(days=40), now - timedelta(days=1))

        items = svc.ending_soon(wholesaler.id, now=now)
        assert [(s.id, st.status) for s, st in items] == [
            (gone.subscription_id, SUB_EXPIRED),
            (soon.subscription_id, SUB_EXPIRING_SOON),
        ]

    def test_sales_summary(self, svc, wholesaler):
        customer = svc.add_customer(wholesaler.id, "C")
        svc.purchase_for_customer(wholesaler.id, customer.id, "P1")
        summary = svc.sales_summary(wholesaler.id)
        assert summary == {
            "customer_count": 1,
            "order_count": 1,
            "total_spent": "20.00",
            "balance": "30.00",
        }

    def test_list_orders(self, svc, wholesaler):
        customer = svc.add_customer(wholesaler.id, "C")
        svc.purchase_for_customer(wholesaler.id, customer.id, "P1")
        orders, total = svc.list_orders(wholesaler.id)
        assert total == 1
        assert orders[0].owner_id == customer.id
