"""
变更通道

发布方（同步，进度存储提交后调用）和订阅方（异步，ChangeNotifier 使用）两端：

- RedisChangePublisher / RedisChangeFeed: 通过 Redis pub/sub 在多个进程之间广播，
  每张表一个频道 "<prefix>:<table>"。
- LocalChangeFeed: 单进程内分发，同时实现发布和订阅，开发和测试时使用。

订阅方在连接断开或超时时抛出 TransientFeedError，由调用方决定是否重连。
"""
import asyncio
import logging
import threading
from typing import AsyncIterator, Dict, Optional, Protocol, Set

from pydantic import ValidationError
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

from questflow.core.errors import TransientFeedError
from questflow.schemas.change_event import ChangeEvent

logger = logging.getLogger(__name__)


def channel_name(prefix: str, table: str) -> str:
    return f"{prefix}:{table}"


class FeedSubscription(Protocol):
    def events(self) -> AsyncIterator[ChangeEvent]:
        ...

    async def close(self) -> None:
        ...


class ChangeFeed(Protocol):
    async def subscribe(self, table: str) -> FeedSubscription:
        ...


# --- Redis ---

class RedisChangePublisher:
    """使用同步 Redis 客户端发布变更"""

    def __init__(self, redis_client, channel_prefix: str):
        self.redis_client = redis_client
        self.channel_prefix = channel_prefix

    def publish(self, event: ChangeEvent) -> None:
        channel = channel_name(self.channel_prefix, event.table)
        self.redis_client.publish(channel, event.model_dump_json())
        logger.debug(f"已发布变更 {event.event_type} 到 {channel}")


class RedisSubscription:
    def __init__(self, pubsub, channel: str):
        self.pubsub = pubsub
        self.channel = channel

    async def events(self) -> AsyncIterator[ChangeEvent]:
        try:
            async for message in self.pubsub.listen():
                # 只处理普通频道消息，忽略订阅确认
                if message["type"] != "message":
                    continue
                raw_data = message["data"]
                if isinstance(raw_data, bytes):
                    raw_data = raw_data.decode()
                try:
                    yield ChangeEvent.model_validate_json(raw_data)
                except ValidationError:
                    logger.warning(f"收到无法解析的变更消息: {raw_data} (channel={self.channel})")
        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            raise TransientFeedError(f"变更通道断开: {e}") from e

    async def close(self) -> None:
        try:
            await self.pubsub.unsubscribe(self.channel)
        finally:
            await self.pubsub.aclose()


class RedisChangeFeed:
    """使用 redis.asyncio 客户端订阅变更"""

    def __init__(self, redis_client, channel_prefix: str):
        self.redis_client = redis_client
        self.channel_prefix = channel_prefix

    async def subscribe(self, table: str) -> RedisSubscription:
        channel = channel_name(self.channel_prefix, table)
        pubsub = self.redis_client.pubsub()
        try:
            await pubsub.subscribe(channel)
        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            await pubsub.aclose()
            raise TransientFeedError(f"订阅 {channel} 失败: {e}") from e
        logger.info(f"已订阅 {channel}")
        return RedisSubscription(pubsub, channel)


# --- 单进程 ---

_CLOSED = object()


class LocalSubscription:
    def __init__(self, feed: "LocalChangeFeed", table: str, loop: asyncio.AbstractEventLoop):
        self.feed = feed
        self.table = table
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue()

    def push(self, item) -> None:
        # 发布方可能在线程池中，统一交回订阅方所在的事件循环
        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._queue.put_nowait, item)

    async def events(self) -> AsyncIterator[ChangeEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def close(self) -> None:
        self.feed._remove(self)
        self.push(_CLOSED)


class LocalChangeFeed:
    """单进程内的变更通道，同时充当发布者和订阅源"""

    def __init__(self):
        self._subscribers: Dict[str, Set[LocalSubscription]] = {}
        self._lock = threading.Lock()

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers.get(event.table, ()))
        for subscription in subscribers:
            subscription.push(event)

    async def subscribe(self, table: str) -> LocalSubscription:
        subscription = LocalSubscription(self, table, asyncio.get_running_loop())
        with self._lock:
            self._subscribers.setdefault(table, set()).add(subscription)
        return subscription

    def interrupt(self, table: Optional[str] = None) -> None:
        """让订阅方收到一次 TransientFeedError（模拟连接中断）"""
        with self._lock:
            if table is None:
                targets = [s for subs in self._subscribers.values() for s in subs]
            else:
                targets = list(self._subscribers.get(table, ()))
        for subscription in targets:
            subscription.push(TransientFeedError("变更通道中断"))

    def subscriber_count(self, table: str) -> int:
        with self._lock:
            return len(self._subscribers.get(table, ()))

    def _remove(self, subscription: LocalSubscription) -> None:
        with self._lock:
            subs = self._subscribers.get(subscription.table)
            if subs is not None:
                subs.discard(subscription)
