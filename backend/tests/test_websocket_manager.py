"""
WebSocket 连接管理和通知投递测试

验证同一审核员的多个会话互不影响、定向发送和广播、
发送失败时移除会话，以及跨线程投递的通知在发送完成前被持有。
"""

import asyncio
import json
import pytest
from unittest.mock import AsyncMock, MagicMock

from questflow.core.websocket_manager import WebSocketManager
from questflow.services.notification_sink import WebSocketNotificationSink


def make_socket():
    websocket = MagicMock()
    websocket.accept = AsyncMock()
    websocket.send_text = AsyncMock()
    return websocket


@pytest.mark.asyncio
async def test_disconnect_keeps_other_sessions():
    manager = WebSocketManager()
    first, second = make_socket(), make_socket()
    await manager.connect("reviewer-a", first)
    await manager.connect("reviewer-a", second)
    assert manager.session_count("reviewer-a") == 2

    await manager.disconnect("reviewer-a", first)

    assert manager.is_connected("reviewer-a")
    await manager.send_json("reviewer-a", {"type": "pong"})
    second.send_text.assert_awaited_once_with(json.dumps({"type": "pong"}))
    first.send_text.assert_not_awaited()


@pytest.mark.asyncio
async def test_last_disconnect_removes_reviewer():
    manager = WebSocketManager()
    websocket = make_socket()
    await manager.connect("reviewer-a", websocket)

    await manager.disconnect("reviewer-a", websocket)
    # 重复断开不报错
    await manager.disconnect("reviewer-a", websocket)

    assert not manager.is_connected("reviewer-a")
    assert "reviewer-a" not in manager.active_connections


@pytest.mark.asyncio
async def test_send_to_one_session():
    manager = WebSocketManager()
    first, second = make_socket(), make_socket()
    await manager.connect("reviewer-a", first)
    await manager.connect("reviewer-a", second)

    await manager.send_json("reviewer-a", {"type": "pong"}, second)

    second.send_text.assert_awaited_once()
    first.send_text.assert_not_awaited()


@pytest.mark.asyncio
async def test_send_to_unknown_session_is_ignored():
    manager = WebSocketManager()
    first, stranger = make_socket(), make_socket()
    await manager.connect("reviewer-a", first)

    await manager.send_json("reviewer-a", {"type": "pong"}, stranger)

    first.send_text.assert_not_awaited()
    stranger.send_text.assert_not_awaited()


@pytest.mark.asyncio
async def test_failing_session_is_removed():
    manager = WebSocketManager()
    broken, healthy = make_socket(), make_socket()
    broken.send_text.side_effect = RuntimeError("closed")
    await manager.connect("reviewer-a", broken)
    await manager.connect("reviewer-a", healthy)

    await manager.send_json("reviewer-a", {"type": "pong"})

    healthy.send_text.assert_awaited_once()
    assert manager.session_count("reviewer-a") == 1
    assert broken not in manager.active_connections["reviewer-a"]


@pytest.mark.asyncio
async def test_sink_holds_send_until_done():
    loop = asyncio.get_running_loop()
    release = asyncio.Event()
    ws_manager = MagicMock()

    async def slow_send(*args):
        await release.wait()

    ws_manager.send_json = AsyncMock(side_effect=slow_send)
    websocket = make_socket()
    sink = WebSocketNotificationSink(ws_manager, "reviewer-a", loop, websocket=websocket)

    sink.deliver("success", "批准", "已批准阶段1")
    await asyncio.sleep(0.01)
    assert sink.pending_sends == 1

    release.set()
    for _ in range(100):
        if sink.pending_sends == 0:
            break
        await asyncio.sleep(0.005)

    assert sink.pending_sends == 0
    reviewer_id, payload, target = ws_manager.send_json.await_args.args
    assert reviewer_id == "reviewer-a"
    assert payload.title == "批准"
    assert target is websocket


@pytest.mark.asyncio
async def test_sink_from_worker_thread():
    loop = asyncio.get_running_loop()
    ws_manager = MagicMock()
    ws_manager.send_json = AsyncMock()
    sink = WebSocketNotificationSink(ws_manager, "reviewer-a", loop)

    await asyncio.to_thread(sink.deliver, "error", "驳回", "记录不存在")
    for _ in range(100):
        if ws_manager.send_json.await_count:
            break
        await asyncio.sleep(0.005)

    ws_manager.send_json.assert_awaited_once()
    assert ws_manager.send_json.await_args.args[2] is None
