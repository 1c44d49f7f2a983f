"""
买家接口路由：下单、订单查询、续费、订阅状态、商品与库存、钱包。

认证：请求头 X-Account-Id / X-Account-Key。
业务错误统一返回 {"code": -1, "error": <标签>, "msg": ...}。
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict

from subshop.models.schemas import Account, Credential
from subshop.services.account_service import account_to_dict
from subshop.services.auth import get_current_account
from subshop.services.catalog_service import CatalogService, product_to_dict
from subshop.services.credential_pool import CredentialPool
from subshop.services.errors import EngineError
from subshop.services.order_service import OrderService, order_to_dict
from subshop.services.subscription_service import (
    SubscriptionService,
    state_of,
    subscription_to_dict,
)
from subshop.services.subscription_status import EXPIRING_SOON_DAYS
from subshop.services.wallet_service import WalletService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")


class CredentialBody(BaseModel):
    """凭证：常用字段具名，其余键原样保留到 extra。"""
    model_config = ConfigDict(extra="allow")

    email: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    pin: Optional[str] = None
    notes: Optional[str] = None
    extra: Optional[dict[str, str]] = None


class PlaceOrderRequest(BaseModel):
    product_id: str
    duration_months: Optional[int] = None
    quantity: Optional[int] = None
    credential: Optional[CredentialBody] = None
    account_ref: Optional[str] = None
    customer_id: Optional[int] = None
    customer_name: Optional[str] = None
    client_order_no: Optional[str] = None
    notes: Optional[str] = None


class RenewRequest(BaseModel):
    duration_months: Optional[int] = None
    credential: Optional[CredentialBody] = None


class BulkRenewRequest(BaseModel):
    subscription_ids: list[int]


def to_credential(body: Optional[CredentialBody]) -> Optional[Credential]:
    if body is None:
        return None
    return Credential.from_dict(body.model_dump(exclude_none=True))


def order_params(body: PlaceOrderRequest) -> dict:
    params = body.model_dump(exclude={"product_id", "credential"}, exclude_none=True)
    credential = to_credential(body.credential)
    if credential is not None:
        params["credential"] = credential
    return params


def error_response(e: EngineError) -> JSONResponse:
    return JSONResponse(content=e.to_dict())


# ── 订单 ──────────────────────────────────────────────────

@router.post("/orders")
async def place_order(body: PlaceOrderRequest, account: Account = Depends(get_current_account)):
    """下单：扣款、分配凭证、创建订单（订阅类同时创建订阅）。"""
    try:
        order = OrderService().place_order(account.id, body.product_id, order_params(body))
    except EngineError as e:
        return error_response(e)
    return JSONResponse(content={"code": 1, "order": order_to_dict(order)})


@router.get("/orders")
async def list_orders(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    account: Account = Depends(get_current_account),
):
    orders, total = OrderService().list_orders(
        buyer_id=account.id, page=page, page_size=page_size
    )
    return JSONResponse(content={
        "code": 1,
        "total": total,
        "page": page,
        "orders": [order_to_dict(o) for o in orders],
    })


@router.get("/orders/{order_no}")
async def get_order(order_no: str, account: Account = Depends(get_current_account)):
    order = OrderService().get_order(order_no, account_id=account.id)
    if order is None:
        return JSONResponse(status_code=404, content={"code": -1, "msg": "订单不存在"})
    return JSONResponse(content={"code": 1, "order": order_to_dict(order)})


# ── 订阅 ──────────────────────────────────────────────────

@router.get("/subscriptions")
async def list_subscriptions(account: Account = Depends(get_current_account)):
    subs = SubscriptionService().list_for_owner(account.id)
    return JSONResponse(content={
        "code": 1,
        "subscriptions": [subscription_to_dict(s, state_of(s)) for s in subs],
    })


@router.get("/subscriptions/{subscription_id}/status")
async def subscription_status(
    subscription_id: int,
    threshold_days: int = Query(EXPIRING_SOON_DAYS, ge=0),
    account: Account = Depends(get_current_account),
):
    """订阅的推导状态、剩余天数与进度。"""
    try:
        sub, state = SubscriptionService().get_status(
            subscription_id, threshold_days=threshold_days, viewer_id=account.id
        )
    except EngineError as e:
        return error_response(e)
    return JSONResponse(content={"code": 1, "subscription": subscription_to_dict(sub, state)})


@router.post("/subscriptions/bulk-renew")
async def bulk_renew(body: BulkRenewRequest, account: Account = Depends(get_current_account)):
    """批量续费，每一项单独结算，返回逐项结果。"""
    results = SubscriptionService().bulk_renew(body.subscription_ids, account.id)
    succeeded = sum(1 for r in results if r["ok"])
    return JSONResponse(content={
        "code": 1,
        "succeeded": succeeded,
        "failed": len(results) - succeeded,
        "results": results,
    })


@router.post("/subscriptions/{subscription_id}/renew")
async def renew(
    subscription_id: int,
    body: Optional[RenewRequest] = None,
    account: Account = Depends(get_current_account),
):
    body = body or RenewRequest()
    svc = SubscriptionService()
    try:
        sub = svc.renew(
            subscription_id,
            account.id,
            duration_months=body.duration_months,
            credential=to_credential(body.credential),
        )
    except EngineError as e:
        return error_response(e)
    return JSONResponse(content={"code": 1, "subscription": subscription_to_dict(sub, state_of(sub))})


# ── 商品 ──────────────────────────────────────────────────

@router.get("/products")
async def list_products():
    products = CatalogService().list_products()
    return JSONResponse(content={"code": 1, "products": [product_to_dict(p) for p in products]})


@router.get("/products/{product_id}/availability")
async def product_availability(product_id: str):
    """是否有可直接交付的库存凭证（不返回凭证内容）。"""
    try:
        CatalogService().get_product(product_id)
    except EngineError as e:
        return error_response(e)
    result = CredentialPool().check_availability(product_id)
    return JSONResponse(content={
        "code": 1,
        "available": result["available"],
        "count": result["count"],
    })


# ── 钱包 ──────────────────────────────────────────────────

@router.get("/wallet")
async def wallet(account: Account = Depends(get_current_account)):
    data = account_to_dict(account)
    return JSONResponse(content={"code": 1, "account": data, "balance": data["balance"]})


@router.get("/wallet/entries")
async def wallet_entries(
    limit: int = Query(30, ge=1, le=200),
    account: Account = Depends(get_current_account),
):
    entries = WalletService().list_entries(account.id, limit=limit)
    return JSONResponse(content={
        "code": 1,
        "entries": [
            {
                "id": e.id,
                "type": e.entry_type,
                "amount": str(e.amount),
                "balance_after": str(e.balance_after),
                "reference_type": e.reference_type or "",
                "reference_id": e.reference_id or "",
                "reason": e.reason or "",
                "created_at": e.created_at,
            }
            for e in entries
        ],
    })
