import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, UTC
from typing import List, Optional

from sqlalchemy.orm import Session

from questflow.core.errors import InvalidArgument, InvalidTransition, NotFound
from questflow.crud.crud_progress import progress as crud_progress
from questflow.db.store import ProgressStore
from questflow.schemas.quest_progress import ProgressRecord, ReviewSummary, StageStatus, TOTAL_STAGES
from questflow.schemas.stats import QuestCompletedEvent
from questflow.services.stats_aggregator import StatisticsAggregator

logger = logging.getLogger(__name__)

# 汇总中"活跃用户"的统计窗口（天）
ACTIVE_USER_DAYS = 30


def validate_stage_id(stage_id) -> int:
    """阶段编号必须是 1..6 的整数"""
    if isinstance(stage_id, bool) or not isinstance(stage_id, int):
        raise InvalidArgument(f"无效的阶段ID: {stage_id}")
    if stage_id < 1 or stage_id > TOTAL_STAGES:
        raise InvalidArgument(f"无效的阶段ID: {stage_id}")
    return stage_id


def validate_user_id(user_id) -> str:
    if not isinstance(user_id, str) or not user_id.strip():
        raise InvalidArgument("未指定用户ID")
    return user_id


@dataclass
class ApprovalOutcome:
    record: ProgressRecord
    next_stage_unlocked: bool


class ApprovalWorkflow:
    """
    审批流程引擎

    在进度存储上执行 submit / approve / reject 状态转换。
    所有转换都是一条带状态条件的 UPDATE（比较并转换），
    不会先读取再写入，因此两个审核员同时批准同一条记录时只有一个会成功。
    """

    def __init__(self, store: ProgressStore, stats: StatisticsAggregator):
        self.store = store
        self.stats = stats

    def provision_user(self, user_id: str) -> Optional[ProgressRecord]:
        """
        为新用户创建第1阶段（current）记录。

        用户已经有任何进度记录时不做任何事并返回 None。
        """
        validate_user_id(user_id)
        with self.store.unit_of_work() as db:
            if crud_progress.get_count(db, filter_conditions={"user_id": user_id}) > 0:
                return None
            db_obj = crud_progress.insert(db, user_id=user_id, stage_id=1, status=StageStatus.CURRENT)
            record = ProgressRecord.model_validate(db_obj)
        logger.info(f"ApprovalWorkflow: 用户 {user_id} 初始化完成，第1阶段已开放")
        return record

    def submit(self, user_id: str, stage_id: int, form_submitted: bool = False) -> ProgressRecord:
        """
        学习者提交阶段：current -> pending_approval

        Raises:
            InvalidArgument: 参数不合法
            InvalidTransition: 记录不存在或不处于 current
        """
        validate_user_id(user_id)
        validate_stage_id(stage_id)
        now = datetime.now(UTC)
        with self.store.unit_of_work() as db:
            db_obj = crud_progress.transition(
                db,
                user_id=user_id,
                stage_id=stage_id,
                expected=StageStatus.CURRENT,
                values={
                    "status": StageStatus.PENDING_APPROVAL.value,
                    "submitted_at": now,
                    "form_submitted": form_submitted,
                },
            )
            if db_obj is None:
                raise InvalidTransition(f"阶段{stage_id}当前不可提交")
            record = ProgressRecord.model_validate(db_obj)
        logger.info(f"ApprovalWorkflow: 用户 {user_id} 提交了阶段 {stage_id}")
        return record

    def approve(self, reviewer_id: str, user_id: str, stage_id: int) -> ApprovalOutcome:
        """
        批准阶段：pending_approval -> completed，并解锁下一阶段

        下一阶段不存在时插入 current；存在且为 locked 时改为 current；
        已经是 current 或更靠后的状态时不做改动。
        最后在同一个工作单元中记录 QuestCompletedEvent 统计。

        Raises:
            InvalidArgument: 参数不合法
            NotFound: 没有处于 pending_approval 的记录（已被处理或从未提交）
        """
        validate_user_id(user_id)
        validate_stage_id(stage_id)
        now = datetime.now(UTC)
        with self.store.unit_of_work() as db:
            db_obj = crud_progress.transition(
                db,
                user_id=user_id,
                stage_id=stage_id,
                expected=StageStatus.PENDING_APPROVAL,
                values={
                    "status": StageStatus.COMPLETED.value,
                    "approved_at": now,
                    "approved_by": reviewer_id,
                },
            )
            if db_obj is None:
                raise NotFound("找不到待审批的阶段")
            record = ProgressRecord.model_validate(db_obj)

            unlocked = False
            if stage_id < TOTAL_STAGES:
                unlocked = self._unlock_successor(db, user_id, stage_id + 1)

            self.stats.record_event(user_id, QuestCompletedEvent(), db=db)

        logger.info(
            f"ApprovalWorkflow: 审核员 {reviewer_id} 批准了用户 {user_id} 的阶段 {stage_id}"
            f"（下一阶段解锁: {unlocked}）"
        )
        return ApprovalOutcome(record=record, next_stage_unlocked=unlocked)

    def _unlock_successor(self, db: Session, user_id: str, next_stage_id: int) -> bool:
        flipped = crud_progress.transition(
            db,
            user_id=user_id,
            stage_id=next_stage_id,
            expected=StageStatus.LOCKED,
            values={"status": StageStatus.CURRENT.value},
        )
        if flipped is not None:
            return True
        if crud_progress.get_by_key(db, user_id=user_id, stage_id=next_stage_id) is None:
            crud_progress.insert(db, user_id=user_id, stage_id=next_stage_id, status=StageStatus.CURRENT)
            return True
        return False

    def reject(self, reviewer_id: str, user_id: str, stage_id: int) -> ProgressRecord:
        """
        驳回阶段：pending_approval -> current

        清除 approved_at / approved_by / form_submitted，
        保留 rejected_at / rejected_by 作为审计记录，学习者可以重新提交。

        Raises:
            InvalidArgument: 参数不合法
            NotFound: 没有处于 pending_approval 的记录
        """
        validate_user_id(user_id)
        validate_stage_id(stage_id)
        now = datetime.now(UTC)
        with self.store.unit_of_work() as db:
            db_obj = crud_progress.transition(
                db,
                user_id=user_id,
                stage_id=stage_id,
                expected=StageStatus.PENDING_APPROVAL,
                values={
                    "status": StageStatus.CURRENT.value,
                    "rejected_at": now,
                    "rejected_by": reviewer_id,
                    "approved_at": None,
                    "approved_by": None,
                    "form_submitted": False,
                },
            )
            if db_obj is None:
                raise NotFound("找不到待审批的阶段")
            record = ProgressRecord.model_validate(db_obj)
        logger.info(f"ApprovalWorkflow: 审核员 {reviewer_id} 驳回了用户 {user_id} 的阶段 {stage_id}")
        return record

    def get_progress(self, user_id: str) -> List[ProgressRecord]:
        validate_user_id(user_id)
        with self.store.reader() as db:
            return [ProgressRecord.model_validate(r) for r in crud_progress.list_for_user(db, user_id=user_id)]

    def list_pending(self, skip: int = 0, limit: int = 100, stage_id: Optional[int] = None):
        """
        分页获取待审批记录

        Returns:
            (总数, 当前页记录)
        """
        if stage_id is not None:
            validate_stage_id(stage_id)
        with self.store.reader() as db:
            total = crud_progress.count_by_status(db, status=StageStatus.PENDING_APPROVAL, stage_id=stage_id)
            rows = crud_progress.list_by_status(
                db, status=StageStatus.PENDING_APPROVAL, stage_id=stage_id, skip=skip, limit=limit
            )
            return total, [ProgressRecord.model_validate(r) for r in rows]

    def list_records(
        self,
        status: Optional[StageStatus] = None,
        stage_id: Optional[int] = None,
        skip: int = 0,
        limit: int = 100,
    ):
        """
        按状态和阶段筛选记录，最新提交的在前

        Returns:
            (总数, 当前页记录)
        """
        if stage_id is not None:
            validate_stage_id(stage_id)
        with self.store.reader() as db:
            total = crud_progress.count_by_status(db, status=status, stage_id=stage_id)
            rows = crud_progress.list_by_status(
                db, status=status, stage_id=stage_id, skip=skip, limit=limit, newest_first=True
            )
            return total, [ProgressRecord.model_validate(r) for r in rows]

    def summary(self, active_days: int = ACTIVE_USER_DAYS, now: Optional[datetime] = None) -> ReviewSummary:
        """待审批数、已完成数以及最近 active_days 天内的活跃用户数"""
        since = (now or datetime.now(UTC)) - timedelta(days=active_days)
        with self.store.reader() as db:
            return ReviewSummary(
                pending_count=crud_progress.count_by_status(db, status=StageStatus.PENDING_APPROVAL),
                completed_count=crud_progress.count_by_status(db, status=StageStatus.COMPLETED),
                active_users=crud_progress.count_active_users(db, since=since),
                active_days=active_days,
            )
