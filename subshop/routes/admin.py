"""
管理后台路由：登录、账户管理与充值、商品目录、凭证库存、补货请求、
订阅取消、订单查询。
"""

import csv
import io
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from subshop.models.schemas import Credential
from subshop.routes.shop import CredentialBody, error_response, to_credential
from subshop.services.account_service import AccountService, account_to_dict
from subshop.services.assignment_service import AssignmentService
from subshop.services.auth import authenticate, get_current_admin
from subshop.services.catalog_service import CatalogService, product_to_dict
from subshop.services.credential_pool import CredentialPool
from subshop.services.errors import EngineError
from subshop.services.order_service import OrderService, order_to_dict
from subshop.services.subscription_service import (
    SubscriptionService,
    state_of,
    subscription_to_dict,
)
from subshop.services.wallet_service import WalletService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/admin")


class LoginRequest(BaseModel):
    username: str
    password: str


class CreateAccountRequest(BaseModel):
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    role: str = "customer"
    wholesaler_id: Optional[int] = None
    notes: Optional[str] = None


class UpdateAccountRequest(BaseModel):
    action: str  # "toggle" | "reset_key"
    active: Optional[int] = None


class TopUpRequest(BaseModel):
    amount: str
    reason: Optional[str] = None


class MonthlyPriceBody(BaseModel):
    months: int
    price: str
    wholesale_price: Optional[str] = None


class ProductRequest(BaseModel):
    id: str
    name: str
    kind: str = "subscription"
    price: str
    wholesale_price: Optional[str] = None
    category: Optional[str] = None
    monthly_pricing: list[MonthlyPriceBody] = []
    available_months: list[int] = []
    value: Optional[str] = None
    min_quantity: int = 1
    requires_id: bool = False
    active: bool = True


class StockRequestBody(BaseModel):
    product_id: str
    credentials: list[CredentialBody]


class FulfillRequest(BaseModel):
    credential: Optional[CredentialBody] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


@router.post("/auth/login")
async def login(body: LoginRequest):
    """
    管理员登录。

    成功返回 {code: 1, token: "..."}，失败返回 {code: -1, msg: "..."}。
    """
    try:
        return JSONResponse(content=authenticate(body.username, body.password))
    except ValueError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})


# ── 账户管理 ──────────────────────────────────────────────

@router.get("/accounts")
async def account_list(
    role: Optional[str] = Query(None),
    admin: dict = Depends(get_current_admin),
):
    accounts = AccountService().list_accounts(role)
    return JSONResponse(content={
        "code": 1,
        "accounts": [account_to_dict(a, with_key=True) for a in accounts],
    })


@router.post("/accounts")
async def create_account(body: CreateAccountRequest, admin: dict = Depends(get_current_admin)):
    try:
        account = AccountService().create_account(
            body.name,
            email=body.email,
            role=body.role,
            phone=body.phone,
            wholesaler_id=body.wholesaler_id,
            notes=body.notes,
        )
    except EngineError as e:
        return error_response(e)
    logger.info("管理员创建账户: id=%s, role=%s", account.id, account.role)
    return JSONResponse(content={"code": 1, "account": account_to_dict(account, with_key=True)})


@router.put("/accounts/{account_id}")
async def update_account(
    account_id: int,
    body: UpdateAccountRequest,
    admin: dict = Depends(get_current_admin),
):
    """更新账户：封禁/解封 或 重置密钥。"""
    svc = AccountService()
    try:
        if body.action == "toggle":
            if body.active is None:
                return JSONResponse(content={"code": -1, "msg": "缺少 active 参数"})
            svc.toggle_status(account_id, bool(body.active))
            status_text = "解封" if body.active else "封禁"
            return JSONResponse(content={"code": 1, "msg": f"账户已{status_text}"})
        elif body.action == "reset_key":
            new_key = svc.reset_key(account_id)
            return JSONResponse(content={"code": 1, "msg": "密钥已重置", "key": new_key})
        else:
            return JSONResponse(content={"code": -1, "msg": f"未知操作: {body.action}"})
    except EngineError as e:
        return error_response(e)


@router.post("/accounts/{account_id}/top-up")
async def top_up(account_id: int, body: TopUpRequest, admin: dict = Depends(get_current_admin)):
    try:
        balance = WalletService().top_up(account_id, body.amount, reason=body.reason)
    except EngineError as e:
        return error_response(e)
    logger.info("管理员充值: account_id=%s, amount=%s, by=%s", account_id, body.amount, admin["sub"])
    return JSONResponse(content={"code": 1, "balance": str(balance)})


# ── 商品目录 ──────────────────────────────────────────────

@router.get("/products")
async def product_list(admin: dict = Depends(get_current_admin)):
    products = CatalogService().list_products(include_inactive=True)
    return JSONResponse(content={"code": 1, "products": [product_to_dict(p) for p in products]})


@router.post("/products")
async def save_product(body: ProductRequest, admin: dict = Depends(get_current_admin)):
    """新增或更新商品。"""
    try:
        product = CatalogService().save_product(body.model_dump(exclude_none=True))
    except EngineError as e:
        return error_response(e)
    return JSONResponse(content={"code": 1, "product": product_to_dict(product)})


# ── 凭证库存 ──────────────────────────────────────────────

def _stock_to_dict(stock) -> dict:
    return {
        "id": stock.id,
        "product_id": stock.product_id,
        "status": stock.status,
        "credential": stock.credential.to_dict() if stock.credential else None,
        "order_id": stock.order_id,
        "subscription_id": stock.subscription_id,
        "account_id": stock.account_id,
        "created_at": stock.created_at,
        "assigned_at": stock.assigned_at,
    }


@router.get("/stock")
async def stock_list(
    product_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    admin: dict = Depends(get_current_admin),
):
    items = CredentialPool().list_stock(product_id, status)
    return JSONResponse(content={"code": 1, "stock": [_stock_to_dict(s) for s in items]})


@router.post("/stock")
async def add_stock(body: StockRequestBody, admin: dict = Depends(get_current_admin)):
    try:
        created = CredentialPool().add_credentials_bulk(
            body.product_id, [to_credential(c) for c in body.credentials]
        )
    except EngineError as e:
        return error_response(e)
    return JSONResponse(content={"code": 1, "count": len(created), "ids": [s.id for s in created]})


@router.post("/stock/import")
async def import_stock(
    product_id: str = Form(...),
    file: UploadFile = File(...),
    admin: dict = Depends(get_current_admin),
):
    """CSV 导入凭证，首行为表头（email, username, password, pin, notes, 其他列进入 extra）。"""
    content = await file.read()
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError:
        return JSONResponse(content={"code": -1, "msg": "文件编码必须为 UTF-8"})

    reader = csv.DictReader(io.StringIO(text))
    try:
        credentials = [
            Credential.from_dict({k.strip(): v.strip() for k, v in row.items() if k and v and v.strip()})
            for row in reader
        ]
        created = CredentialPool().add_credentials_bulk(product_id, credentials)
    except EngineError as e:
        return error_response(e)
    return JSONResponse(content={"code": 1, "count": len(created)})


@router.delete("/stock/{stock_id}")
async def delete_stock(stock_id: int, admin: dict = Depends(get_current_admin)):
    if not CredentialPool().delete_available(stock_id):
        return JSONResponse(content={"code": -1, "msg": "库存不存在或已分配"})
    return JSONResponse(content={"code": 1, "msg": "已删除"})


# ── 补货请求 ──────────────────────────────────────────────

@router.get("/stock-requests")
async def stock_request_list(
    status: Optional[str] = Query("pending"),
    admin: dict = Depends(get_current_admin),
):
    requests = AssignmentService().list_stock_requests(status or None)
    return JSONResponse(content={
        "code": 1,
        "requests": [
            {
                "id": r.id,
                "account_id": r.account_id,
                "product_id": r.product_id,
                "order_id": r.order_id,
                "subscription_id": r.subscription_id,
                "status": r.status,
                "notes": r.notes or "",
                "created_at": r.created_at,
                "resolved_at": r.resolved_at,
            }
            for r in requests
        ],
    })


@router.post("/stock-requests/{request_id}/fulfill")
async def fulfill_stock_request(
    request_id: int,
    body: Optional[FulfillRequest] = None,
    admin: dict = Depends(get_current_admin),
):
    """交付补货请求；未填写凭证时从库存领取。"""
    credential = to_credential(body.credential) if body else None
    try:
        AssignmentService().fulfill_stock_request(request_id, credential)
    except EngineError as e:
        return error_response(e)
    return JSONResponse(content={"code": 1, "msg": "凭证已交付"})


@router.post("/stock-requests/{request_id}/cancel")
async def cancel_stock_request(
    request_id: int,
    body: Optional[CancelRequest] = None,
    admin: dict = Depends(get_current_admin),
):
    try:
        AssignmentService().cancel_stock_request(request_id, body.reason if body else None)
    except EngineError as e:
        return error_response(e)
    return JSONResponse(content={"code": 1, "msg": "补货请求已取消"})


# ── 订阅与订单 ────────────────────────────────────────────

@router.post("/subscriptions/{subscription_id}/cancel")
async def cancel_subscription(
    subscription_id: int,
    body: Optional[CancelRequest] = None,
    admin: dict = Depends(get_current_admin),
):
    try:
        sub = SubscriptionService().cancel(subscription_id, body.reason if body else None)
    except EngineError as e:
        return error_response(e)
    return JSONResponse(content={
        "code": 1,
        "subscription": subscription_to_dict(sub, state_of(sub), with_credential=False),
    })


@router.get("/orders")
async def order_list(
    buyer_id: Optional[int] = Query(None),
    owner_id: Optional[int] = Query(None),
    status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    admin: dict = Depends(get_current_admin),
):
    orders, total = OrderService().list_orders(
        buyer_id=buyer_id, owner_id=owner_id, status=status,
        page=page, page_size=page_size,
    )
    return JSONResponse(content={
        "code": 1,
        "total": total,
        "page": page,
        "orders": [order_to_dict(o, with_credential=False) for o in orders],
    })
