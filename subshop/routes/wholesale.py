"""
批发商接口路由：客户管理、代客下单、即将结束的订阅、销售汇总。

仅批发商账户可以访问，其他账户返回 403。
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from subshop.models.schemas import ROLE_WHOLESALE, Account
from subshop.routes.shop import PlaceOrderRequest, error_response, order_params
from subshop.services.account_service import account_to_dict
from subshop.services.auth import get_current_account
from subshop.services.errors import EngineError
from subshop.services.order_service import order_to_dict
from subshop.services.reseller_service import ResellerService
from subshop.services.subscription_service import subscription_to_dict
from subshop.services.subscription_status import RESELLER_ENDING_SOON_DAYS

router = APIRouter(prefix="/v1/wholesale")


def get_current_wholesaler(account: Account = Depends(get_current_account)) -> Account:
    if account.role != ROLE_WHOLESALE:
        raise HTTPException(status_code=403, detail="仅批发商可访问")
    return account


class CustomerRequest(BaseModel):
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    notes: Optional[str] = None


class UpdateCustomerRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    notes: Optional[str] = None


class CustomerOrderRequest(PlaceOrderRequest):
    pass


@router.get("/customers")
async def list_customers(
    search: Optional[str] = Query(None),
    wholesaler: Account = Depends(get_current_wholesaler),
):
    customers = ResellerService().list_customers(wholesaler.id, search)
    return JSONResponse(content={
        "code": 1,
        "customers": [account_to_dict(c) for c in customers],
    })


@router.post("/customers")
async def add_customer(body: CustomerRequest, wholesaler: Account = Depends(get_current_wholesaler)):
    try:
        customer = ResellerService().add_customer(
            wholesaler.id, body.name, email=body.email, phone=body.phone, notes=body.notes
        )
    except EngineError as e:
        return error_response(e)
    return JSONResponse(content={"code": 1, "customer": account_to_dict(customer)})


@router.put("/customers/{customer_id}")
async def update_customer(
    customer_id: int,
    body: UpdateCustomerRequest,
    wholesaler: Account = Depends(get_current_wholesaler),
):
    try:
        customer = ResellerService().update_customer(
            wholesaler.id, customer_id, body.model_dump(exclude_none=True)
        )
    except EngineError as e:
        return error_response(e)
    return JSONResponse(content={"code": 1, "customer": account_to_dict(customer)})


@router.get("/customers/{customer_id}/subscriptions")
async def customer_subscriptions(
    customer_id: int,
    wholesaler: Account = Depends(get_current_wholesaler),
):
    try:
        items = ResellerService().list_customer_subscriptions(wholesaler.id, customer_id)
    except EngineError as e:
        return error_response(e)
    return JSONResponse(content={
        "code": 1,
        "subscriptions": [subscription_to_dict(s, st) for s, st in items],
    })


@router.post("/customers/{customer_id}/orders")
async def purchase_for_customer(
    customer_id: int,
    body: CustomerOrderRequest,
    wholesaler: Account = Depends(get_current_wholesaler),
):
    """代客下单：扣批发商余额，订阅归客户所有。"""
    try:
        order = ResellerService().purchase_for_customer(
            wholesaler.id, customer_id, body.product_id, order_params(body)
        )
    except EngineError as e:
        return error_response(e)
    return JSONResponse(content={"code": 1, "order": order_to_dict(order)})


@router.get("/ending-soon")
async def ending_soon(
    threshold_days: int = Query(RESELLER_ENDING_SOON_DAYS, ge=0),
    wholesaler: Account = Depends(get_current_wholesaler),
):
    items = ResellerService().ending_soon(wholesaler.id, threshold_days=threshold_days)
    return JSONResponse(content={
        "code": 1,
        "subscriptions": [subscription_to_dict(s, st, with_credential=False) for s, st in items],
    })


@router.get("/summary")
async def summary(wholesaler: Account = Depends(get_current_wholesaler)):
    return JSONResponse(content={"code": 1, **ResellerService().sales_summary(wholesaler.id)})


@router.get("/orders")
async def list_orders(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    wholesaler: Account = Depends(get_current_wholesaler),
):
    orders, total = ResellerService().list_orders(wholesaler.id, page=page, page_size=page_size)
    return JSONResponse(content={
        "code": 1,
        "total": total,
        "page": page,
        "orders": [order_to_dict(o) for o in orders],
    })
