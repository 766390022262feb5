import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

import redis
import redis.asyncio as aioredis
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from questflow.core.config import Settings
from questflow.core.websocket_manager import WebSocketManager
from questflow.db.database import create_db_engine, create_session_factory
from questflow.db.store import ChangePublisher, ProgressStore
from questflow.services.approval_workflow import ApprovalWorkflow
from questflow.services.change_feed import ChangeFeed, LocalChangeFeed, RedisChangeFeed, RedisChangePublisher
from questflow.services.change_notifier import ChangeNotifier
from questflow.services.identity import ReviewerDirectory, SessionIdentity
from questflow.services.notification_sink import NotificationSink
from questflow.services.progress_cache import ProgressCache
from questflow.services.quest_actions import QuestActions
from questflow.services.stats_aggregator import StatisticsAggregator

logger = logging.getLogger(__name__)


@dataclass
class PipelineContext:
    """
    审批流程的运行上下文

    显式构造并传给各组件，不使用模块级单例，
    这样测试中可以同时存在多个相互隔离的实例。
    """
    settings: Settings
    store: ProgressStore
    stats: StatisticsAggregator
    workflow: ApprovalWorkflow
    directory: ReviewerDirectory
    feed: ChangeFeed
    ws_manager: WebSocketManager = field(default_factory=WebSocketManager)
    engine: Optional[Engine] = None
    redis_client: Optional[redis.Redis] = None
    # 在线审核员会话的通知投递通道
    sinks: Dict[str, NotificationSink] = field(default_factory=dict)

    def actions_for(self, user_id: Optional[str]) -> QuestActions:
        """为一次请求构造调用方操作对象"""
        return QuestActions(
            workflow=self.workflow,
            stats=self.stats,
            identity=SessionIdentity(user_id, self.directory),
            directory=self.directory,
            sink=self.sinks.get(user_id) if user_id else None,
            max_bulk_items=self.settings.MAX_BULK_ITEMS,
        )

    def create_notifier(self, reviewer_id: str, sink=None, on_data_changed=None, on_connection_change=None) -> ChangeNotifier:
        s = self.settings
        return ChangeNotifier(
            feed=self.feed,
            reviewer_id=reviewer_id,
            resolve_name=self.directory.display_name,
            sink=sink,
            on_data_changed=on_data_changed,
            on_connection_change=on_connection_change,
            max_notifications=s.MAX_NOTIFICATIONS,
            reconnect_delay=s.RECONNECT_DELAY_SECONDS,
            max_reconnect_delay=s.RECONNECT_MAX_DELAY_SECONDS,
            backoff_factor=s.RECONNECT_BACKOFF_FACTOR,
        )

    def create_cache(self, session_id: str) -> ProgressCache:
        return ProgressCache(
            session_id,
            redis_client=self.redis_client,
            key_prefix=self.settings.CACHE_KEY_PREFIX,
            ttl_seconds=self.settings.CACHE_TTL_SECONDS,
        )


def build_context(
    settings: Settings,
    session_factory: Optional[sessionmaker] = None,
    redis_client: Optional[redis.Redis] = None,
) -> PipelineContext:
    """
    根据配置组装上下文

    CHANGE_FEED_BACKEND 为 "local" 时使用进程内变更通道，否则使用 Redis pub/sub。
    """
    engine = None
    if session_factory is None:
        engine = create_db_engine(settings.DATABASE_URL)
        session_factory = create_session_factory(engine)

    publisher: ChangePublisher
    if settings.CHANGE_FEED_BACKEND == "local":
        local_feed = LocalChangeFeed()
        publisher, feed = local_feed, local_feed
    else:
        if redis_client is None:
            redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
        publisher = RedisChangePublisher(redis_client, settings.CHANGE_FEED_CHANNEL_PREFIX)
        feed = RedisChangeFeed(
            aioredis.from_url(settings.REDIS_URL, decode_responses=True),
            settings.CHANGE_FEED_CHANNEL_PREFIX,
        )
    logger.info(f"使用变更通道: {settings.CHANGE_FEED_BACKEND}")

    store = ProgressStore(session_factory, publisher)
    stats = StatisticsAggregator(store, experience_per_quest=settings.EXPERIENCE_PER_QUEST)
    return PipelineContext(
        settings=settings,
        store=store,
        stats=stats,
        workflow=ApprovalWorkflow(store, stats),
        directory=ReviewerDirectory(store),
        feed=feed,
        engine=engine,
        redis_client=redis_client,
    )
