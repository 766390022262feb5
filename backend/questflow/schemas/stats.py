from pydantic import BaseModel, ConfigDict, Field
from typing import Annotated, Literal, Optional, Union
from datetime import date


class QuestCompletedEvent(BaseModel):
    """阶段通过审批"""
    kind: Literal["quest_completed"] = "quest_completed"


class LoginEvent(BaseModel):
    """用户登录"""
    kind: Literal["login"] = "login"


# 统计事件的标签联合类型，按 kind 字段区分
StatsEvent = Annotated[Union[QuestCompletedEvent, LoginEvent], Field(discriminator="kind")]


class UserStatsRead(BaseModel):
    """用户统计响应模型，不存在的统计按零处理"""
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    login_count: int = 0
    last_login_date: Optional[date] = None
    quest_clear_count: int = 0
    total_experience: int = 0
