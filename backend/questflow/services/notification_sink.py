import asyncio
import logging
from typing import Protocol, Set

from questflow.schemas.notification import NotificationMessage, Severity

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    """通知投递接口，不关心通知如何展示"""

    def deliver(self, severity: Severity, title: str, message: str) -> None:
        ...


class LoggingNotificationSink:
    """没有在线会话时的默认投递方式：写日志"""

    def deliver(self, severity: Severity, title: str, message: str) -> None:
        logger.info(f"[{severity}] {title}: {message}")


class WebSocketNotificationSink:
    """
    把通知推送到审核员的 WebSocket 连接

    指定 websocket 时只推送到该会话，否则推送到该审核员的所有会话。
    deliver 可能在线程池中被调用（同步端点），
    因此通过 call_soon_threadsafe 把发送任务交回事件循环。
    """

    def __init__(self, ws_manager, reviewer_id: str, loop: asyncio.AbstractEventLoop, websocket=None):
        self.ws_manager = ws_manager
        self.reviewer_id = reviewer_id
        self.websocket = websocket
        self._loop = loop
        # 事件循环只弱引用任务，发送完成前在这里持有
        self._tasks: Set[asyncio.Task] = set()

    def deliver(self, severity: Severity, title: str, message: str) -> None:
        payload = NotificationMessage(type="notification", severity=severity, title=title, message=message)
        self.send(payload)

    def send(self, payload: NotificationMessage) -> None:
        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._schedule, payload)

    @property
    def pending_sends(self) -> int:
        return len(self._tasks)

    def _schedule(self, payload: NotificationMessage) -> None:
        task = self._loop.create_task(self.ws_manager.send_json(self.reviewer_id, payload, self.websocket))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
