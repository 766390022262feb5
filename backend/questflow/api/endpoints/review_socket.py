import asyncio
import json
import logging
import uuid
from typing import Optional, Set

from fastapi import APIRouter, Header, Query, WebSocket, WebSocketDisconnect

from questflow.schemas.change_event import ChangeEvent
from questflow.schemas.notification import NotificationMessage
from questflow.services.notification_sink import WebSocketNotificationSink
from questflow.services.progress_cache import ProgressCache

logger = logging.getLogger(__name__)

router = APIRouter()

# 会话缓存中保留的待审批记录上限
PENDING_PAGE_SIZE = 200


def _notification_list(notifier, cache: ProgressCache) -> dict:
    pending = cache.pending_queue()
    return {
        "type": "notifications",
        "unread_count": notifier.unread_count,
        "items": [n.model_dump(mode="json") for n in notifier.notifications],
        "pending_total": len(pending),
        "pending": [r.model_dump(mode="json") for r in pending],
    }


async def _load_pending(ctx, cache: ProgressCache) -> None:
    """用权威的待审批列表重新填充会话缓存"""
    _, items = await asyncio.to_thread(ctx.workflow.list_pending, 0, PENDING_PAGE_SIZE)
    cache.load(items)
    await asyncio.to_thread(cache.save)


@router.websocket("/reviewers/{reviewer_id}")
async def reviewer_socket(
    websocket: WebSocket,
    reviewer_id: str,
    x_user_id: Optional[str] = Header(None),
    user_id: Optional[str] = Query(None),
):
    """
    审核员实时通道

    会话身份取自 X-User-Id 请求头或 user_id 查询参数，必须与路径中的审核员一致。
    同一审核员可以同时打开多个会话，每个会话有自己的通知列表和待审批缓存。

    服务端推送:
        {"type": "notification", ...}   其他人引起的进度变化
        {"type": "data_changed", ...}   任何一条 quest_progress 变更，会话缓存已据此更新
        {"type": "connection", ...}     变更订阅的连接状态
    客户端消息:
        {"action": "list" | "mark_read" | "mark_all_read" | "clear" | "reconnect" | "ping"}
    """
    ctx = websocket.app.state.context
    session_user = x_user_id or user_id
    if session_user != reviewer_id:
        logger.warning(f"拒绝 WebSocket 连接: 会话用户 {session_user!r} 与审核员 {reviewer_id} 不一致")
        await websocket.close(code=1008)
        return
    try:
        is_reviewer = await asyncio.to_thread(ctx.directory.is_active_reviewer, reviewer_id)
    except Exception as e:
        logger.error(f"审核员 {reviewer_id} 校验失败: {e}", exc_info=True)
        is_reviewer = False
    if not is_reviewer:
        await websocket.close(code=1008)
        return

    ws_manager = ctx.ws_manager
    loop = asyncio.get_running_loop()
    await ws_manager.connect(reviewer_id, websocket)

    # 操作结果发给该审核员的所有会话；变更通知只发给本会话
    broadcast_sink = ctx.sinks.setdefault(reviewer_id, WebSocketNotificationSink(ws_manager, reviewer_id, loop))
    session_sink = WebSocketNotificationSink(ws_manager, reviewer_id, loop, websocket=websocket)

    cache = ctx.create_cache(f"{reviewer_id}:ws:{uuid.uuid4().hex}")
    await _load_pending(ctx, cache)

    async def send(message):
        await ws_manager.send_json(reviewer_id, message, websocket)

    async def on_data_changed(event: ChangeEvent):
        record = cache.apply_change(event)
        await asyncio.to_thread(cache.save)
        await send({
            "type": "data_changed",
            "event": event.model_dump(mode="json"),
            "record": record.model_dump(mode="json") if record is not None else None,
            "pending_total": len(cache.pending_queue()),
        })

    refresh_tasks: Set[asyncio.Task] = set()
    connected_once = False

    def on_connection_change(connected: bool):
        nonlocal connected_once
        if connected:
            message = NotificationMessage(type="connection", severity="success", title="实时通知", message="已连接")
            # 断线期间的变更可能已经丢失，重连后重新加载
            if connected_once:
                task = loop.create_task(_load_pending(ctx, cache))
                refresh_tasks.add(task)
                task.add_done_callback(refresh_tasks.discard)
            connected_once = True
        else:
            message = NotificationMessage(type="connection", severity="error", title="实时通知", message="连接已断开，正在重连")
        session_sink.send(message)

    notifier = ctx.create_notifier(
        reviewer_id,
        sink=session_sink,
        on_data_changed=on_data_changed,
        on_connection_change=on_connection_change,
    )
    notifier.start()

    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
                action = message.get("action")
            except (ValueError, AttributeError):
                await send({"type": "error", "message": "无法解析的消息"})
                continue

            if action == "ping":
                await send({"type": "pong"})
            elif action == "list":
                await send(_notification_list(notifier, cache))
            elif action == "mark_read":
                notifier.mark_read(str(message.get("id")))
                await send(_notification_list(notifier, cache))
            elif action == "mark_all_read":
                notifier.mark_all_read()
                await send(_notification_list(notifier, cache))
            elif action == "clear":
                notifier.clear()
                await send(_notification_list(notifier, cache))
            elif action == "reconnect":
                await notifier.reconnect()
            else:
                await send({"type": "error", "message": f"未知操作: {action}"})
    except WebSocketDisconnect:
        logger.info(f"审核员 {reviewer_id} 的一个会话主动断开")
    finally:
        await ws_manager.disconnect(reviewer_id, websocket)
        if not ws_manager.is_connected(reviewer_id) and ctx.sinks.get(reviewer_id) is broadcast_sink:
            ctx.sinks.pop(reviewer_id, None)
        for task in list(refresh_tasks):
            task.cancel()
        await notifier.stop()
        try:
            await asyncio.to_thread(cache.clear)
        except Exception as e:
            logger.warning(f"清理会话缓存失败: {e}")
