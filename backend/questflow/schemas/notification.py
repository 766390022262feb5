from pydantic import BaseModel, Field
from typing import Literal
from datetime import datetime
from enum import Enum


class NotificationType(str, Enum):
    NEW_PENDING = "new_pending"
    APPROVED_BY_OTHER = "approved_by_other"
    REJECTED_BY_OTHER = "rejected_by_other"


Severity = Literal["success", "error", "info"]


class Notification(BaseModel):
    """推送给审核员会话的通知

    Attributes:
        id: 唯一ID
        type: 通知类型
        title: 标题
        message: 可读的消息内容
        user_id: 相关学习者
        stage_id: 相关阶段
        timestamp: 生成时间
        read: 是否已读
    """
    id: str
    type: NotificationType
    title: str
    message: str
    user_id: str
    stage_id: int
    timestamp: datetime
    read: bool = False


class NotificationMessage(BaseModel):
    """通过 WebSocket 发给审核员的消息"""
    type: Literal["notification", "data_changed", "connection"] = Field(..., description="消息类型")
    severity: Severity = "info"
    title: str = ""
    message: str = ""
