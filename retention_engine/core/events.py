"""
事件通道

每类事件一个强类型通道，订阅者拿到显式的退订句柄：
- subscribe(handler) -> Subscription，handler 可以是普通函数或协程函数
- stream() 以异步迭代器方式消费事件
- 订阅者抛出的异常只记录日志，不会影响发布方
"""

import asyncio
import inspect
from typing import Any, AsyncIterator, Callable, Generic, List, Set, TypeVar

from retention_engine.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Handler = Callable[[T], Any]


class Subscription:
    """订阅句柄，调用 unsubscribe() 取消订阅（可重复调用）"""

    def __init__(self, channel: "EventChannel", handler: Callable[[Any], Any]):
        self._channel = channel
        self._handler = handler
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._channel._remove(self._handler)


class EventChannel(Generic[T]):
    """
    强类型事件通道

    Args:
        name: 通道名称，用于日志
    """

    def __init__(self, name: str):
        self.name = name
        self._handlers: List[Callable[[T], Any]] = []
        self._queues: List[asyncio.Queue] = []
        self._pending: Set[asyncio.Task] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers) + len(self._queues)

    def subscribe(self, handler: Handler) -> Subscription:
        """
        注册事件处理函数

        Args:
            handler: 接收单个事件参数的函数或协程函数

        Returns:
            Subscription: 退订句柄
        """
        self._handlers.append(handler)
        return Subscription(self, handler)

    def _remove(self, handler: Callable[[T], Any]) -> None:
        try:
            self._handlers.remove(handler)
        except ValueError:
            pass

    def publish(self, event: T) -> None:
        """
        发布事件

        同步处理函数立即执行；协程处理函数在当前事件循环中调度执行。

        Args:
            event: 事件对象
        """
        for handler in list(self._handlers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    self._schedule(result)
            except Exception as e:
                logger.error(f"事件处理失败: {self.name}", error=str(e))

        for queue in list(self._queues):
            queue.put_nowait(event)

    def _schedule(self, awaitable) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"没有运行中的事件循环，丢弃异步处理函数: {self.name}")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        task = loop.create_task(self._run_handler(awaitable))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _run_handler(self, awaitable) -> None:
        try:
            await awaitable
        except Exception as e:
            logger.error(f"异步事件处理失败: {self.name}", error=str(e))

    async def drain(self) -> None:
        """等待所有已调度的异步处理函数执行完毕"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def stream(self) -> AsyncIterator[T]:
        """以异步迭代器方式消费事件，直到消费方停止迭代"""
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._queues.remove(queue)
