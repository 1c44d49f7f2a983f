"""
变更通知：带类型载荷的发布/订阅。

引擎在事务提交后发布事件（order.fulfilled、subscription.created、
subscription.renewed、subscription.expired-transition、credential.pending），
供下游刷新界面。投递为尽力而为，订阅方异常只记录日志，不影响业务结果。
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    name = "event"


@dataclass(frozen=True)
class OrderFulfilled(Event):
    order_id: int
    order_no: str
    buyer_id: int
    owner_id: int
    product_id: str
    total_price: Decimal
    credential_status: str

    name = "order.fulfilled"


@dataclass(frozen=True)
class SubscriptionCreated(Event):
    subscription_id: int
    owner_id: int
    product_id: str
    end_date: str
    status: str

    name = "subscription.created"


@dataclass(frozen=True)
class SubscriptionRenewed(Event):
    subscription_id: int
    buyer_id: int
    owner_id: int
    previous_end_date: str
    end_date: str
    charged: Decimal
    reactivated: bool

    name = "subscription.renewed"


@dataclass(frozen=True)
class SubscriptionExpired(Event):
    subscription_id: int
    owner_id: int
    end_date: str

    name = "subscription.expired-transition"


@dataclass(frozen=True)
class CredentialPending(Event):
    product_id: str
    account_id: int
    order_id: Optional[int]
    subscription_id: Optional[int]
    request_id: int

    name = "credential.pending"


Handler = Callable[[Event], None]


class EventBus:
    """进程内事件总线，按事件类型分发。"""

    def __init__(self):
        self._handlers: dict[type, list[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_type: type, handler: Handler) -> Callable[[], None]:
        """注册处理函数，返回取消订阅的回调。"""
        with self._lock:
            self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers[event_type]:
                    self._handlers[event_type].remove(handler)

        return unsubscribe

    def publish(self, event: Event) -> None:
        with self._lock:
            handlers = [
                h
                for event_type, hs in self._handlers.items()
                if isinstance(event, event_type)
                for h in hs
            ]
        logger.debug("发布事件 %s: %s", event.name, event)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("事件处理失败: %s", event.name)

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()


event_bus = EventBus()
