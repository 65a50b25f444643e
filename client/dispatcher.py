"""
Packet dispatcher: routes each payload variant to its handler
"""

import logging
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Type

from core.messages import Envelope, PAYLOAD_TYPES

logger = logging.getLogger(__name__)

Handler = Callable[[object, float], None]
Subscriber = Callable[[Envelope], None]


class PacketDispatcher:
    """
    包分发器

    负载类型互斥，所以分发是一次按类型的字典查找，而不是逐个判断。
    处理表必须覆盖 PAYLOAD_TYPES 中的每一种类型，
    新增负载类型时如果忘了加处理函数，构造时就会报错。

    处理函数之后，再通知订阅者（按类型订阅或订阅全部）。
    """

    def __init__(self, handlers: Dict[Type, Handler]):
        """
        初始化分发器

        Args:
            handlers: {负载类型: handler(payload, now)}

        Raises:
            ValueError: 处理表缺少或多出负载类型
        """
        known = set(PAYLOAD_TYPES.values())
        missing = known - set(handlers)
        if missing:
            names = sorted(cls.__name__ for cls in missing)
            raise ValueError(f"No handler registered for: {', '.join(names)}")

        extra = set(handlers) - known
        if extra:
            names = sorted(cls.__name__ for cls in extra)
            raise ValueError(f"Handlers for unknown payload types: {', '.join(names)}")

        self._handlers: Dict[Type, Handler] = dict(handlers)
        self._subscribers: Dict[Optional[Type], List[Subscriber]] = defaultdict(list)

        # 统计
        self.dispatched_count = 0
        self.ignored_count = 0

    def subscribe(self, callback: Subscriber, payload_type: Optional[Type] = None):
        """
        订阅收到的包

        Args:
            callback: callback(envelope)
            payload_type: 只订阅某种负载；None 表示全部
        """
        if payload_type is not None and payload_type not in self._handlers:
            raise ValueError(f"Unknown payload type: {payload_type!r}")
        self._subscribers[payload_type].append(callback)

    def unsubscribe(self, callback: Subscriber, payload_type: Optional[Type] = None):
        """取消订阅；未订阅时忽略"""
        subscribers = self._subscribers.get(payload_type)
        if subscribers and callback in subscribers:
            subscribers.remove(callback)

    def dispatch(self, envelope: Envelope, now: float) -> bool:
        """
        分发一个信封

        先调用处理函数，再通知按类型的订阅者，最后通知订阅全部的订阅者。
        订阅者看到的是处理函数执行之后的状态（例如收到最终握手响应时已是 CONNECTED）。

        Args:
            envelope: 解码后的信封
            now: 当前时间

        Returns:
            True 如果找到了处理函数
        """
        handler = self._handlers.get(envelope.payload_type)
        if handler is None:
            self.ignored_count += 1
            return False

        handler(envelope.payload, now)
        self.dispatched_count += 1

        for callback in self._subscribers.get(envelope.payload_type, []) + self._subscribers.get(None, []):
            try:
                callback(envelope)
            except Exception as e:
                logger.error(f"Subscriber error for {envelope.payload_name}: {e}")

        return True
