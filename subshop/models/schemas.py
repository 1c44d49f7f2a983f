"""
数据模型 / 类型定义，供各模块引用。
使用 dataclass 保持轻量，不引入 ORM。金额在库中以整数分存储，对外为 Decimal。
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from subshop.services.errors import InvalidParameter

# 商品类型
KIND_SUBSCRIPTION = "subscription"
KIND_RECHARGE = "recharge"
KIND_GIFTCARD = "giftcard"
KIND_ONE_TIME = "one-time"
PRODUCT_KINDS = (KIND_SUBSCRIPTION, KIND_RECHARGE, KIND_GIFTCARD, KIND_ONE_TIME)

# 账户角色 / 价格档位
ROLE_CUSTOMER = "customer"
ROLE_WHOLESALE = "wholesale"
TIER_RETAIL = "retail"
TIER_WHOLESALE = "wholesale"

# 订单状态（只能 pending → fulfilled 或 pending → cancelled）
ORDER_PENDING = "pending"
ORDER_FULFILLED = "fulfilled"
ORDER_CANCELLED = "cancelled"

# 订单凭证交付状态
CREDENTIAL_ASSIGNED = "assigned"
CREDENTIAL_SELF_SUPPLIED = "self_supplied"
CREDENTIAL_PENDING = "pending"
CREDENTIAL_NOT_REQUIRED = "not_required"

# 订阅状态（存储值仅作提示，展示以 derive_status 为准）
SUB_PENDING = "pending"
SUB_ACTIVE = "active"
SUB_EXPIRING_SOON = "expiring-soon"
SUB_EXPIRED = "expired"
SUB_CANCELLED = "cancelled"

# 库存凭证状态
STOCK_AVAILABLE = "available"
STOCK_ASSIGNED = "assigned"

# 补货请求状态
REQUEST_PENDING = "pending"
REQUEST_FULFILLED = "fulfilled"
REQUEST_CANCELLED = "cancelled"

_CENT = Decimal("0.01")


def to_cents(amount) -> int:
    """Decimal/str/int 金额转整数分（四舍五入到分）。"""
    value = Decimal(str(amount)).quantize(_CENT, rounding=ROUND_HALF_UP)
    return int(value * 100)


def from_cents(cents: int) -> Decimal:
    return (Decimal(int(cents)) / 100).quantize(_CENT)


@dataclass
class Credential:
    """账号凭证：常用字段具名，其余键值放入 extra。"""
    email: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    pin: Optional[str] = None
    notes: Optional[str] = None
    extra: dict[str, str] = field(default_factory=dict)

    _NAMED = ("email", "username", "password", "pin", "notes")

    @classmethod
    def from_dict(cls, data: dict | None) -> Optional["Credential"]:
        if not data:
            return None
        data = dict(data)
        # 兼容前端旧字段名 pinCode
        if "pinCode" in data and "pin" not in data:
            data["pin"] = data.pop("pinCode")
        named = {k: data.pop(k) for k in cls._NAMED if k in data}
        extra = data.pop("extra", None) or {}
        if not isinstance(extra, dict):
            raise InvalidParameter("凭证 extra 必须是键值对象")
        extra = {k: str(v) for k, v in extra.items() if v is not None}
        extra.update({k: str(v) for k, v in data.items() if v is not None})
        return cls(
            **{k: (str(v) if v is not None else None) for k, v in named.items()},
            extra=extra,
        )

    def to_dict(self) -> dict:
        result = {k: getattr(self, k) for k in self._NAMED if getattr(self, k)}
        if self.extra:
            result["extra"] = dict(self.extra)
        return result

    def has_login(self) -> bool:
        """用户名或邮箱 + 密码均非空。"""
        login = (self.username or "").strip() or (self.email or "").strip()
        return bool(login) and bool((self.password or "").strip())


@dataclass
class Admin:
    id: int
    username: str
    password_hash: str
    login_fail_count: int = 0
    locked_until: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass
class Account:
    id: int
    name: str
    key: str
    role: str = ROLE_CUSTOMER
    email: Optional[str] = None
    phone: Optional[str] = None
    wholesaler_id: Optional[int] = None
    balance: Decimal = Decimal("0.00")
    version: int = 0
    active: int = 1
    notes: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def tier(self) -> str:
        return TIER_WHOLESALE if self.role == ROLE_WHOLESALE else TIER_RETAIL


@dataclass
class MonthlyPrice:
    months: int
    price: Decimal
    wholesale_price: Decimal


@dataclass
class Product:
    id: str
    name: str
    kind: str
    price: Decimal
    wholesale_price: Decimal
    category: Optional[str] = None
    monthly_pricing: list[MonthlyPrice] = field(default_factory=list)
    available_months: list[int] = field(default_factory=list)
    value: Optional[Decimal] = None
    min_quantity: int = 1
    requires_id: bool = False
    active: int = 1

    def tier_price(self, tier: str) -> Decimal:
        return self.wholesale_price if tier == TIER_WHOLESALE else self.price


@dataclass
class CredentialStock:
    id: int
    product_id: str
    credential: Credential
    status: str = STOCK_AVAILABLE
    order_id: Optional[int] = None
    subscription_id: Optional[int] = None
    account_id: Optional[int] = None
    created_at: Optional[str] = None
    assigned_at: Optional[str] = None


@dataclass
class Order:
    id: int
    order_no: str
    buyer_id: int
    owner_id: int
    product_id: str
    kind: str
    total_price: Decimal
    tier: str = TIER_RETAIL
    quantity: Optional[int] = None
    duration_months: Optional[int] = None
    status: str = ORDER_PENDING
    credential_status: str = CREDENTIAL_PENDING
    credential: Optional[Credential] = None
    stock_id: Optional[int] = None
    client_order_no: Optional[str] = None
    account_ref: Optional[str] = None
    customer_name: Optional[str] = None
    notes: Optional[str] = None
    subscription_id: Optional[int] = None
    created_at: Optional[str] = None
    fulfilled_at: Optional[str] = None
    cancelled_at: Optional[str] = None


@dataclass
class Subscription:
    id: int
    owner_id: int
    buyer_id: int
    product_id: str
    start_date: datetime
    end_date: datetime
    duration_months: int
    status: str = SUB_PENDING
    credential: Optional[Credential] = None
    order_id: Optional[int] = None
    stock_id: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    cancelled_at: Optional[str] = None


@dataclass
class SubscriptionState:
    """derive_status 的计算结果。"""
    status: str
    days_left: int
    progress: float
    label: str


@dataclass
class WalletEntry:
    id: int
    account_id: int
    entry_type: str
    amount: Decimal
    balance_after: Decimal
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    reason: Optional[str] = None
    created_at: Optional[str] = None


@dataclass
class StockRequest:
    id: int
    account_id: int
    product_id: str
    order_id: Optional[int] = None
    subscription_id: Optional[int] = None
    status: str = REQUEST_PENDING
    notes: Optional[str] = None
    created_at: Optional[str] = None
    resolved_at: Optional[str] = None
