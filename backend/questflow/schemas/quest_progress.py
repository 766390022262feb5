from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional
from datetime import datetime
from enum import Enum


# 阶段总数，阶段编号为 1..TOTAL_STAGES
TOTAL_STAGES = 6


class StageStatus(str, Enum):
    """阶段状态枚举

    locked -> current -> pending_approval -> completed
    驳回会把 pending_approval 退回 current。
    """
    LOCKED = "locked"
    CURRENT = "current"
    PENDING_APPROVAL = "pending_approval"
    COMPLETED = "completed"


# 同一用户同一时间最多只能有一个处于这些状态的阶段
ACTIVE_STATUSES = (StageStatus.CURRENT, StageStatus.PENDING_APPROVAL)


class StageKey(BaseModel):
    """(user_id, stage_id) 对，用于批量审批的输入

    stage_id 在这里不做范围校验，越界的条目由审批引擎逐条拒绝，
    这样批量结果中才能看到具体的失败原因。
    """
    user_id: str = Field(..., min_length=1, description="学习者ID")
    stage_id: int = Field(..., description="阶段编号")


class ProgressRecord(BaseModel):
    """阶段进度记录

    Attributes:
        user_id: 学习者ID
        stage_id: 阶段编号（1..6）
        status: 阶段状态
        form_submitted: 表单提交标记
        submitted_at / approved_at / approved_by / rejected_at / rejected_by: 审批审计字段
        created_at / updated_at: 创建与更新时间
    """
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    stage_id: int = Field(..., ge=1, le=TOTAL_STAGES)
    status: StageStatus
    form_submitted: bool = False
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def key(self):
        return self.user_id, self.stage_id


class QuestProgressCreate(BaseModel):
    """创建进度记录的输入模型"""
    user_id: str
    stage_id: int = Field(..., ge=1, le=TOTAL_STAGES)
    status: StageStatus = StageStatus.LOCKED


class UserProgressResponse(BaseModel):
    """单个用户的全部阶段进度"""
    user_id: str
    records: List[ProgressRecord]


class PendingListResponse(BaseModel):
    """待审批列表（分页）"""
    total: int
    items: List[ProgressRecord]


class SubmitRequest(BaseModel):
    form_submitted: bool = Field(False, description="学习者是否已提交表单")


class BulkApproveRequest(BaseModel):
    items: List[StageKey] = Field(..., description="待批准的 (user_id, stage_id) 列表，按顺序处理")


class RecordListResponse(BaseModel):
    """按状态/阶段筛选的记录列表（分页，最新提交在前）"""
    total: int
    items: List[ProgressRecord]


class ReviewSummary(BaseModel):
    """审核员首页的汇总数字

    Attributes:
        pending_count: 待审批记录数
        completed_count: 已完成记录数
        active_users: 最近 active_days 天内有过进度变化的用户数
        active_days: 活跃窗口天数
    """
    pending_count: int = 0
    completed_count: int = 0
    active_users: int = 0
    active_days: int = 30
