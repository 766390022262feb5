from datetime import datetime, UTC

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    String,
    UniqueConstraint,
)

from questflow.db.base_class import Base


def _utcnow():
    return datetime.now(UTC)


class QuestProgress(Base):
    """用户阶段进度模型

    每个用户在每个阶段最多一条记录，是审批流程唯一的事实来源。
    记录从不物理删除，所有状态变化都是更新。

    Attributes:
        id: 自增ID
        user_id: 学习者ID
        stage_id: 阶段编号，1..6
        status: locked / current / pending_approval / completed
        form_submitted: 学习者是否提交了表单，驳回时清除
        submitted_at: 提交审批时间
        approved_at / approved_by: 批准时间与审核员
        rejected_at / rejected_by: 驳回时间与审核员（审计记录，驳回后保留）
        created_at / updated_at: 创建与更新时间
    """
    __tablename__ = "quest_progress"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, index=True, nullable=False)
    stage_id = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="locked")
    form_submitted = Column(Boolean, nullable=False, default=False)

    submitted_at = Column(DateTime, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    approved_by = Column(String, nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    rejected_by = Column(String, nullable=True)

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "stage_id", name="uq_quest_progress_user_stage"),
        CheckConstraint("stage_id BETWEEN 1 AND 6", name="ck_quest_progress_stage_range"),
        CheckConstraint(
            "status IN ('locked', 'current', 'pending_approval', 'completed')",
            name="ck_quest_progress_status",
        ),
    )
