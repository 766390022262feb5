import asyncio
import json
import logging
from typing import Dict, Optional, Set, Union

from fastapi import WebSocket
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class WebSocketManager:
    """审核员 WebSocket 连接管理，一个审核员可以同时打开多个会话"""

    def __init__(self):
        self.active_connections: Dict[str, Set[WebSocket]] = {}
        self._lock = asyncio.Lock() # 并发锁

    async def connect(self, reviewer_id: str, websocket: WebSocket):
        await websocket.accept()
        async with self._lock: # 获取锁
            self.active_connections.setdefault(reviewer_id, set()).add(websocket)
        logger.info(f"审核员 {reviewer_id} 已连接。当前会话数: {self.session_count(reviewer_id)}")

    async def disconnect(self, reviewer_id: str, websocket: WebSocket):
        """只移除指定的会话，同一审核员的其他会话不受影响"""
        async with self._lock: # 获取锁
            sockets = self.active_connections.get(reviewer_id)
            if sockets is not None:
                sockets.discard(websocket)
                if not sockets:
                    del self.active_connections[reviewer_id]
        logger.info(f"审核员 {reviewer_id} 的一个会话已断开。剩余会话数: {self.session_count(reviewer_id)}")

    def is_connected(self, reviewer_id: str) -> bool:
        return bool(self.active_connections.get(reviewer_id))

    def session_count(self, reviewer_id: str) -> int:
        return len(self.active_connections.get(reviewer_id, ()))

    async def send_json(
        self,
        reviewer_id: str,
        message: Union[dict, BaseModel],
        websocket: Optional[WebSocket] = None,
    ):
        """发送 JSON 消息；指定 websocket 时只发给该会话，否则发给该审核员的所有会话"""
        if isinstance(message, BaseModel):
            text = message.model_dump_json()
        else:
            text = json.dumps(message, default=str)
        await self.send_text(reviewer_id, text, websocket)

    async def send_text(self, reviewer_id: str, message: str, websocket: Optional[WebSocket] = None):
        sockets = set(self.active_connections.get(reviewer_id, ()))
        if websocket is not None:
            sockets &= {websocket}
        for ws in sockets:
            try:
                await ws.send_text(message)
            except Exception as e:
                logger.warning(f"向审核员 {reviewer_id} 发送消息失败，移除该会话: {e}")
                await self.disconnect(reviewer_id, ws)
