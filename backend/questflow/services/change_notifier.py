import asyncio
import logging
import uuid
from collections import deque
from datetime import datetime, UTC
from typing import Any, Callable, Deque, Dict, List, Optional

from questflow.core.errors import TransientFeedError
from questflow.schemas.change_event import ChangeEvent
from questflow.schemas.notification import Notification, NotificationType
from questflow.schemas.quest_progress import StageStatus
from questflow.services.change_feed import ChangeFeed
from questflow.services.identity import UNKNOWN_USER_NAME
from questflow.services.notification_sink import NotificationSink

logger = logging.getLogger(__name__)

PROGRESS_TABLE = "quest_progress"

_TITLES = {
    NotificationType.NEW_PENDING: "新的待审批",
    NotificationType.APPROVED_BY_OTHER: "其他审核员已批准",
    NotificationType.REJECTED_BY_OTHER: "其他审核员已驳回",
}

_MESSAGES = {
    NotificationType.NEW_PENDING: "{name} 提交了阶段{stage_id}",
    NotificationType.APPROVED_BY_OTHER: "{name} 的阶段{stage_id}已被批准",
    NotificationType.REJECTED_BY_OTHER: "{name} 的阶段{stage_id}已被驳回",
}


class ChangeNotifier:
    """
    变更通知器

    为一个审核员会话订阅 quest_progress 表的变更，把其他人引起的变化
    转换成可读的通知，并对每一条变更发出"数据已变化"信号，供缓存刷新。

    状态机:
        INSERT/UPDATE 进入 pending_approval          -> new_pending
        UPDATE 为 completed 且 approved_by 不是本人  -> approved_by_other
        UPDATE 由驳回回到 current 且 rejected_by 不是本人 -> rejected_by_other
        其他                                          -> 只发出数据变化信号

    订阅出错或超时后按退避间隔无限重试；会话结束时必须调用 stop() 取消订阅。
    """

    def __init__(
        self,
        feed: ChangeFeed,
        reviewer_id: Optional[str],
        resolve_name: Callable[[str], str],
        sink: Optional[NotificationSink] = None,
        on_data_changed: Optional[Callable[[ChangeEvent], Any]] = None,
        on_connection_change: Optional[Callable[[bool], Any]] = None,
        table: str = PROGRESS_TABLE,
        max_notifications: int = 50,
        reconnect_delay: float = 5.0,
        max_reconnect_delay: float = 60.0,
        backoff_factor: float = 2.0,
    ):
        self.feed = feed
        self.reviewer_id = reviewer_id
        self.resolve_name = resolve_name
        self.sink = sink
        self.on_data_changed = on_data_changed
        self.on_connection_change = on_connection_change
        self.table = table
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.backoff_factor = backoff_factor

        self._notifications: Deque[Notification] = deque(maxlen=max_notifications)
        self.is_connected = False
        self.reconnect_attempts = 0
        self._task: Optional[asyncio.Task] = None
        self._subscription = None
        self._stopped = True

    # --- 生命周期 ---

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stopped = False
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        self._stopped = True
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._close_subscription()
        self._set_connected(False)

    async def reconnect(self) -> None:
        """强制重新订阅"""
        await self.stop()
        self.start()

    def next_delay(self, current: float) -> float:
        return min(current * self.backoff_factor, self.max_reconnect_delay)

    async def _run(self) -> None:
        delay = self.reconnect_delay
        while not self._stopped:
            try:
                self._subscription = await self.feed.subscribe(self.table)
                self._set_connected(True)
                delay = self.reconnect_delay
                self.reconnect_attempts = 0
                async for event in self._subscription.events():
                    await self.handle_event(event)
            except TransientFeedError as e:
                logger.warning(f"ChangeNotifier: 变更通道断开: {e}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"ChangeNotifier: 订阅异常: {e}", exc_info=True)
            finally:
                await self._close_subscription()
                self._set_connected(False)

            if self._stopped:
                break
            self.reconnect_attempts += 1
            logger.info(f"ChangeNotifier: {delay:.1f} 秒后第 {self.reconnect_attempts} 次重连")
            await asyncio.sleep(delay)
            delay = self.next_delay(delay)

    async def _close_subscription(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is None:
            return
        try:
            await subscription.close()
        except Exception as e:
            logger.warning(f"ChangeNotifier: 关闭订阅失败: {e}")

    def _set_connected(self, connected: bool) -> None:
        if self.is_connected == connected:
            return
        self.is_connected = connected
        if self.on_connection_change is not None:
            try:
                self.on_connection_change(connected)
            except Exception as e:
                logger.warning(f"ChangeNotifier: 连接状态回调失败: {e}")

    # --- 事件处理 ---

    def classify(self, event: ChangeEvent) -> Optional[NotificationType]:
        new = event.new or {}
        old = event.old or {}
        status = new.get("status")
        old_status = old.get("status")

        if status == StageStatus.PENDING_APPROVAL.value:
            if event.event_type == "INSERT" or old_status not in (None, StageStatus.PENDING_APPROVAL.value):
                return NotificationType.NEW_PENDING
            return None
        if event.event_type != "UPDATE":
            return None
        if status == StageStatus.COMPLETED.value and new.get("approved_by") != self.reviewer_id:
            return NotificationType.APPROVED_BY_OTHER
        if status == StageStatus.CURRENT.value and self._is_rejection(new, old_status):
            if new.get("rejected_by") != self.reviewer_id:
                return NotificationType.REJECTED_BY_OTHER
        return None

    @staticmethod
    def _is_rejection(new: Dict[str, Any], old_status: Optional[str]) -> bool:
        # locked -> current 是解锁，不是驳回
        if old_status is not None:
            return old_status == StageStatus.PENDING_APPROVAL.value
        return new.get("rejected_by") is not None

    async def handle_event(self, event: ChangeEvent) -> None:
        try:
            if event.table != self.table or event.record is None:
                return
            notification_type = self.classify(event)
            if notification_type is not None:
                record = event.record
                name = await self._display_name(record.get("user_id"))
                self._add(notification_type, name, record.get("user_id"), record.get("stage_id"))
            await self._signal_data_changed(event)
        except Exception as e:
            logger.error(f"ChangeNotifier: 处理变更事件出错: {e}", exc_info=True)

    async def _display_name(self, user_id: Optional[str]) -> str:
        if not user_id:
            return UNKNOWN_USER_NAME
        try:
            return await asyncio.to_thread(self.resolve_name, user_id) or UNKNOWN_USER_NAME
        except Exception as e:
            logger.warning(f"ChangeNotifier: 查询用户 {user_id} 名称失败: {e}")
            return UNKNOWN_USER_NAME

    async def _signal_data_changed(self, event: ChangeEvent) -> None:
        if self.on_data_changed is None:
            return
        result = self.on_data_changed(event)
        if asyncio.iscoroutine(result):
            await result

    def _add(self, notification_type: NotificationType, name: str, user_id: str, stage_id: int) -> Notification:
        title = _TITLES[notification_type]
        message = _MESSAGES[notification_type].format(name=name, stage_id=stage_id)
        notification = Notification(
            id=uuid.uuid4().hex,
            type=notification_type,
            title=title,
            message=message,
            user_id=user_id,
            stage_id=stage_id,
            timestamp=datetime.now(UTC),
            read=False,
        )
        # 最新的在前，超过上限时丢弃最旧的
        self._notifications.appendleft(notification)

        if self.sink is not None:
            severity = "info" if notification_type == NotificationType.NEW_PENDING else "success"
            try:
                self.sink.deliver(severity, title, message)
            except Exception as e:
                logger.warning(f"ChangeNotifier: 投递通知失败: {e}")
        return notification

    # --- 通知列表 ---

    @property
    def notifications(self) -> List[Notification]:
        return list(self._notifications)

    @property
    def unread_count(self) -> int:
        return sum(1 for n in self._notifications if not n.read)

    def mark_read(self, notification_id: str) -> bool:
        for notification in self._notifications:
            if notification.id == notification_id:
                notification.read = True
                return True
        return False

    def mark_all_read(self) -> None:
        for notification in self._notifications:
            notification.read = True

    def clear(self) -> None:
        self._notifications.clear()
