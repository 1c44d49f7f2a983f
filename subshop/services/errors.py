"""引擎错误类型：每个异常带稳定的 code 标签，路由层据此返回给调用方。"""


class EngineError(Exception):
    """引擎业务异常基类。"""

    code = "EngineError"

    def __init__(self, msg: str = ""):
        super().__init__(msg or self.code)
        self.msg = msg or self.code

    def to_dict(self) -> dict:
        return {"code": -1, "error": self.code, "msg": self.msg}


class ProductNotFound(EngineError):
    """商品不存在或已下架。"""
    code = "ProductNotFound"


class AccountNotFound(EngineError):
    """账户不存在或已停用。"""
    code = "AccountNotFound"


class CustomerNotFound(EngineError):
    """客户不存在，或不属于当前批发商。"""
    code = "CustomerNotFound"


class InvalidAmount(EngineError):
    """金额必须大于 0。"""
    code = "InvalidAmount"


class InsufficientFunds(EngineError):
    """余额不足，调用方应引导充值。"""
    code = "InsufficientFunds"

    def __init__(self, msg: str = "", *, required=None, available=None):
        super().__init__(msg or "余额不足")
        self.required = required
        self.available = available

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.required is not None:
            data["required"] = str(self.required)
        if self.available is not None:
            data["available"] = str(self.available)
        return data


class MissingRequiredField(EngineError):
    """缺少必填字段（充值账号、客户名称、订阅凭证）。"""
    code = "MissingRequiredField"

    def __init__(self, field: str, msg: str = ""):
        super().__init__(msg or f"缺少必填字段: {field}")
        self.field = field

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["field"] = self.field
        return data


class InvalidParameter(EngineError):
    """时长、数量等参数不合法。"""
    code = "InvalidParameter"


class CredentialConflict(EngineError):
    """同一库存凭证被重复领取。"""
    code = "CredentialConflict"


class SubscriptionNotFound(EngineError):
    """订阅不存在，或对当前账户不可见。"""
    code = "SubscriptionNotFound"


class SubscriptionNotRenewable(EngineError):
    """已取消的订阅不可续费。"""
    code = "SubscriptionNotRenewable"


class StockRequestNotFound(EngineError):
    """补货请求不存在或已处理。"""
    code = "StockRequestNotFound"


class CredentialUnreadable(EngineError):
    """库存或订阅中的凭证密文无法解密（JWT_SECRET 已更换）。"""
    code = "CredentialUnreadable"
