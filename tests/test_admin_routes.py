"""管理后台路由测试：账户、充值、商品、库存、补货请求、订阅取消、订单。"""

import os
import sqlite3
import tempfile

import pytest
from fastapi.testclient import TestClient

# 在导入 subshop 模块之前设置测试数据库路径
_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="admin_routes_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name
os.environ["JWT_SECRET"] = "test-secret-key-for-admin-routes"
os.environ["ADMIN_USERNAME"] = "admin"
os.environ["ADMIN_PASSWORD"] = "admin123"

import subshop.database as _db_mod
from subshop.database import init_db
from subshop.main import app
from subshop.services.account_service import AccountService
from subshop.services.credential_pool import CredentialPool
from subshop.services.errors import SubscriptionNotRenewable
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
    yield


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def auth(client):
    token = client.post("/v1/admin/auth/login", json={
        "username": "admin", "password": "admin123",
    }).json()["token"]
    return {"Authorization": f"Bearer {token}"}


def _create_product(client, auth, **overrides):
    body = {"id": "P1", "name": "Netflix", "kind": "subscription", "price": "9.99"}
    body.update(overrides)
    return client.post("/v1/admin/products", json=body, headers=auth).json()


class TestAdminAuthRequired:
    """未认证访问返回 401。"""

    @pytest.mark.parametrize("method,path", [
        ("get", "/v1/admin/accounts"),
        ("post", "/v1/admin/accounts/1/top-up"),
        ("get", "/v1/admin/stock"),
        ("get", "/v1/admin/stock-requests"),
        ("get", "/v1/admin/orders"),
    ])
    def test_requires_token(self, client, method, path):
        resp = getattr(client, method)(path)
        assert resp.status_code == 401


class TestAccountRoutes:
    """账户管理路由测试。"""

    def test_create_and_list(self, client, auth):
        data = client.post(
            "/v1/admin/accounts", json={"name": "shop", "role": "wholesale"}, headers=auth
        ).json()
        assert data["code"] == 1
        assert len(data["account"]["key"]) == 32

        listing = client.get("/v1/admin/accounts?role=wholesale", headers=auth).json()
        assert [a["name"] for a in listing["accounts"]] == ["shop"]

    def test_invalid_role(self, client, auth):
        data = client.post(
            "/v1/admin/accounts", json={"name": "x", "role": "root"}, headers=auth
        ).json()
        assert data["error"] == "InvalidParameter"

    def test_toggle_and_reset_key(self, client, auth):
        account = AccountService().create_account("buyer")
        resp = client.put(
            f"/v1/admin/accounts/{account.id}", json={"action": "toggle", "active": 0}, headers=auth
        ).json()
        assert resp["code"] == 1
        assert AccountService().get_account(account.id).active == 0

        resp = client.put(
            f"/v1/admin/accounts/{account.id}", json={"action": "reset_key"}, headers=auth
        ).json()
        assert resp["key"] != account.key

    def test_unknown_action(self, client, auth):
        account = AccountService().create_account("buyer")
        resp = client.put(
            f"/v1/admin/accounts/{account.id}", json={"action": "explode"}, headers=auth
        ).json()
        assert resp["code"] == -1

    def test_top_up(self, client, auth):
        account = AccountService().create_account("buyer")
        data = client.post(
            f"/v1/admin/accounts/{account.id}/top-up", json={"amount": "25.50"}, headers=auth
        ).json()
        assert data["balance"] == "25.50"

    def test_top_up_invalid_amount(self, client, auth):
        account = AccountService().create_account("buyer")
        data = client.post(
            f"/v1/admin/accounts/{account.id}/top-up", json={"amount": "-5"}, headers=auth
        ).json()
        assert data["error"] == "InvalidAmount"

    def test_top_up_unknown_account(self, client, auth):
        data = client.post(
            "/v1/admin/accounts/999/top-up", json={"amount": "5"}, headers=auth
        ).json()
        assert data["error"] == "AccountNotFound"


class TestProductRoutes:
    """商品目录路由测试。"""

    def test_upsert(self, client, auth):
        data = _create_product(
            client, auth,
            monthly_pricing=[{"months": 3, "price": "25"}],
            available_months=[1, 3],
        )
        assert data["code"] == 1
        assert data["product"]["monthly_pricing"][0]["wholesale_price"] == "25.00"

        data = _create_product(client, auth, name="Netflix 4K", price="12")
        assert data["product"]["name"] == "Netflix 4K"
        products = client.get("/v1/admin/products", headers=auth).json()["products"]
        assert len(products) == 1
        assert products[0]["price"] == "12.00"

    def test_invalid_kind(self, client, auth):
        assert _create_product(client, auth, kind="bundle")["error"] == "InvalidParameter"

    def test_inactive_hidden_from_shop(self, client, auth):
        _create_product(client, auth, active=False)
        assert client.get("/v1/products").json()["products"] == []
        assert len(client.get("/v1/admin/products", headers=auth).json()["products"]) == 1


class TestStockRoutes:
    """凭证库存路由测试。"""

    def test_add_list_delete(self, client, auth):
        _create_product(client, auth)
        data = client.post("/v1/admin/stock", json={
            "product_id": "P1",
            "credentials": [
                {"email": "a@b.com", "password": "x"},
                {"username": "u2", "password": "y", "pin": "0000"},
            ],
        }, headers=auth).json()
        assert data["count"] == 2

        stock = client.get("/v1/admin/stock?product_id=P1", headers=auth).json()["stock"]
        assert stock[1]["credential"]["pin"] == "0000"

        assert client.delete(f"/v1/admin/stock/{stock[0]['id']}", headers=auth).json()["code"] == 1
        assert client.delete(f"/v1/admin/stock/{stock[0]['id']}", headers=auth).json()["code"] == -1

    def test_add_unknown_product(self, client, auth):
        data = client.post("/v1/admin/stock", json={
            "product_id": "NOPE", "credentials": [{"email": "a@b.com", "password": "x"}],
        }, headers=auth).json()
        assert data["error"] == "ProductNotFound"

    def test_csv_import(self, client, auth):
        _create_product(client, auth)
        csv_text = "email,password,profile\na@b.com,x,Kids\nc@d.com,y,\n"
        data = client.post(
            "/v1/admin/stock/import",
            data={"product_id": "P1"},
            files={"file": ("stock.csv", csv_text.encode("utf-8"), "text/csv")},
            headers=auth,
        ).json()
        assert data["count"] == 2
        stock = CredentialPool().list_stock("P1")
        assert stock[0].credential.extra == {"profile": "Kids"}
        assert stock[1].credential.extra == {}


class TestStockRequestRoutes:
    """补货请求路由测试。"""

    def _pending_order(self, client, auth):
        _create_product(client, auth)
        buyer = AccountService().create_account("buyer")
        WalletService().top_up(buyer.id, "20")
        return OrderService().place_order(buyer.id, "P1")

    def test_fulfill_with_credential(self, client, auth):
        order = self._pending_order(client, auth)
        requests = client.get("/v1/admin/stock-requests", headers=auth).json()["requests"]
        assert requests[0]["order_id"] == order.id

        data = client.post(
            f"/v1/admin/stock-requests/{requests[0]['id']}/fulfill",
            json={"credential": {"email": "late@x.com", "password": "pw"}},
            headers=auth,
        ).json()
        assert data["code"] == 1
        sub = SubscriptionService().get_subscription(order.subscription_id)
        assert sub.credential.email == "late@x.com"
        assert client.get("/v1/admin/stock-requests", headers=auth).json()["requests"] == []

    def test_fulfill_from_pool(self, client, auth):
        order = self._pending_order(client, auth)
        client.post("/v1/admin/stock", json={
            "product_id": "P1", "credentials": [{"email": "pool@x.com", "password": "x"}],
        }, headers=auth)
        request_id = client.get("/v1/admin/stock-requests", headers=auth).json()["requests"][0]["id"]

        data = client.post(f"/v1/admin/stock-requests/{request_id}/fulfill", headers=auth).json()
        assert data["code"] == 1
        assert OrderService().get_order(order.order_no).credential.email == "pool@x.com"

    def test_cancel(self, client, auth):
        self._pending_order(client, auth)
        request_id = client.get("/v1/admin/stock-requests", headers=auth).json()["requests"][0]["id"]
        data = client.post(
            f"/v1/admin/stock-requests/{request_id}/cancel", json={"reason": "停售"}, headers=auth
        ).json()
        assert data["code"] == 1
        again = client.post(f"/v1/admin/stock-requests/{request_id}/cancel", headers=auth).json()
        assert again["error"] == "StockRequestNotFound"


class TestSubscriptionAndOrderRoutes:
    """订阅取消与订单列表路由测试。"""

    def test_cancel_subscription(self, client, auth):
        _create_product(client, auth)
        buyer = AccountService().create_account("buyer")
        WalletService().top_up(buyer.id, "20")
        order = OrderService().place_order(buyer.id, "P1")

        data = client.post(
            f"/v1/admin/subscriptions/{order.subscription_id}/cancel",
            json={"reason": "退款"}, headers=auth,
        ).json()
        assert data["subscription"]["status"] == "cancelled"

        with pytest.raises(SubscriptionNotRenewable):
            SubscriptionService().renew(order.subscription_id, buyer.id)

    def test_cancel_unknown_subscription(self, client, auth):
        data = client.post("/v1/admin/subscriptions/999/cancel", headers=auth).json()
        assert data["error"] == "SubscriptionNotFound"

    def test_order_list(self, client, auth):
        _create_product(client, auth)
        buyer = AccountService().create_account("buyer")
        WalletService().top_up(buyer.id, "20")
        OrderService().place_order(buyer.id, "P1")

        data = client.get(f"/v1/admin/orders?buyer_id={buyer.id}", headers=auth).json()
        assert data["total"] == 1
        assert "credential" not in data["orders"][0]
