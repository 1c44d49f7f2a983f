"""
价格计算：根据商品、时长/数量和价格档位（零售 / 批发）计算应付金额。

规则：
1. monthly_pricing 中存在与时长完全匹配的条目时，直接使用该条目的档位价格
   （该时长的打包价，不再乘月数），即使按月折算更便宜也以目录为准
2. 否则订阅类商品 = 档位月价 × 月数
3. 其他类型（充值、礼品卡、一次性）= 档位单价 × 数量（默认 1）
"""

from decimal import Decimal, ROUND_HALF_UP

from subshop.models.schemas import (
    KIND_SUBSCRIPTION,
    TIER_RETAIL,
    TIER_WHOLESALE,
    Account,
    Product,
)
from subshop.services.errors import InvalidParameter

_CENT = Decimal("0.01")


def tier_for(account: Account) -> str:
    """批发商账户使用批发价，其余使用零售价。"""
    return account.tier


def price(
    product: Product,
    duration_months: int | None = None,
    quantity: int | None = None,
    tier: str = TIER_RETAIL,
) -> Decimal:
    """
    计算订单金额。

    Raises:
        InvalidParameter: 档位未知，或时长 / 数量小于 1。
    """
    if tier not in (TIER_RETAIL, TIER_WHOLESALE):
        raise InvalidParameter(f"未知的价格档位: {tier}")

    if duration_months is not None:
        if duration_months < 1:
            raise InvalidParameter("订阅时长至少为 1 个月")
        for entry in product.monthly_pricing:
            if entry.months == duration_months:
                flat = entry.wholesale_price if tier == TIER_WHOLESALE else entry.price
                return flat.quantize(_CENT, rounding=ROUND_HALF_UP)

    unit = product.tier_price(tier)

    if product.kind == KIND_SUBSCRIPTION:
        months = duration_months if duration_months is not None else 1
        total = unit * months
    else:
        qty = quantity if quantity is not None else 1
        if qty < 1:
            raise InvalidParameter("购买数量至少为 1")
        total = unit * qty

    return total.quantize(_CENT, rounding=ROUND_HALF_UP)
