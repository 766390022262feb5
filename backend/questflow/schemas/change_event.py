from pydantic import BaseModel, Field
from typing import Any, Dict, Literal, Optional
from datetime import datetime, UTC


class ChangeEvent(BaseModel):
    """变更通道中的一条事件

    Attributes:
        event_type: INSERT 或 UPDATE（记录从不删除）
        table: 表名，订阅方按表过滤
        new: 变更后的行快照
        old: 变更前的行快照；条件更新只知道被比较的列，因此可能只包含部分字段
        commit_timestamp: 提交时间
    """
    event_type: Literal["INSERT", "UPDATE"] = Field(..., description="事件类型")
    table: str = Field(..., description="表名")
    new: Optional[Dict[str, Any]] = Field(None, description="变更后的行")
    old: Optional[Dict[str, Any]] = Field(None, description="变更前的行")
    commit_timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def record(self) -> Optional[Dict[str, Any]]:
        return self.new or self.old
