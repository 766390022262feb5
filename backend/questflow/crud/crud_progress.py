import logging
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional

from sqlalchemy import distinct, func, select, update
from sqlalchemy.orm import Session

from questflow.crud.base import CRUDBase, SortDirection
from questflow.models.quest_progress import QuestProgress
from questflow.schemas.change_event import ChangeEvent
from questflow.schemas.quest_progress import ProgressRecord, QuestProgressCreate, StageStatus

logger = logging.getLogger(__name__)

# 会话级的待发布变更列表，存放在 Session.info 中，提交后由 ProgressStore 统一发布
PENDING_CHANGES_KEY = "questflow.pending_changes"


def snapshot(db_obj: QuestProgress) -> Dict[str, Any]:
    """把ORM对象转换成可JSON序列化的行快照"""
    return ProgressRecord.model_validate(db_obj).model_dump(mode="json")


def record_change(db: Session, event: ChangeEvent) -> None:
    db.info.setdefault(PENDING_CHANGES_KEY, []).append(event)


def _status_filters(status: Optional[StageStatus], stage_id: Optional[int]) -> Dict[str, Any]:
    filters: Dict[str, Any] = {}
    if status is not None:
        filters["status"] = StageStatus(status).value
    if stage_id is not None:
        filters["stage_id"] = stage_id
    return filters


class CRUDProgress(CRUDBase[QuestProgress, QuestProgressCreate]):

    def get_by_key(self, db: Session, *, user_id: str, stage_id: int) -> Optional[QuestProgress]:
        stmt = (
            select(QuestProgress)
            .where(QuestProgress.user_id == user_id, QuestProgress.stage_id == stage_id)
            .execution_options(populate_existing=True)
        )
        return db.execute(stmt).scalar_one_or_none()

    def list_for_user(self, db: Session, *, user_id: str) -> List[QuestProgress]:
        """
        查询指定用户的全部阶段记录，按阶段升序
        """
        return self.get_multi(
            db,
            filter_conditions={"user_id": user_id},
            sort_by="stage_id",
        )

    def list_by_status(
        self,
        db: Session,
        *,
        status: Optional[StageStatus] = None,
        stage_id: Optional[int] = None,
        skip: int = 0,
        limit: int = 100,
        newest_first: bool = False,
    ) -> List[QuestProgress]:
        """
        按状态和阶段筛选记录，按 submitted_at 排序（默认从早到晚）
        """
        direction = SortDirection.DESC if newest_first else SortDirection.ASC
        return self.get_multi(
            db,
            skip=skip,
            limit=limit,
            filter_conditions=_status_filters(status, stage_id),
            sort_by=[("submitted_at", direction), ("id", direction)],
        )

    def count_by_status(
        self, db: Session, *, status: Optional[StageStatus] = None, stage_id: Optional[int] = None
    ) -> int:
        return self.get_count(db, filter_conditions=_status_filters(status, stage_id))

    def count_active_users(self, db: Session, *, since: datetime) -> int:
        """since 之后有过进度变化的用户数"""
        stmt = (
            select(func.count(distinct(QuestProgress.user_id)))
            .where(QuestProgress.updated_at >= since)
        )
        return db.execute(stmt).scalar_one()

    def insert(self, db: Session, *, user_id: str, stage_id: int, status: StageStatus) -> QuestProgress:
        """插入新记录并登记 INSERT 变更"""
        db_obj = self.create(
            db, obj_in=QuestProgressCreate(user_id=user_id, stage_id=stage_id, status=status)
        )
        record_change(db, ChangeEvent(
            event_type="INSERT",
            table=QuestProgress.__tablename__,
            new=snapshot(db_obj),
        ))
        return db_obj

    def transition(
        self,
        db: Session,
        *,
        user_id: str,
        stage_id: int,
        expected: StageStatus,
        values: Dict[str, Any],
    ) -> Optional[QuestProgress]:
        """
        比较并转换：只有当记录当前状态等于 expected 时才更新。

        状态检查和写入在同一条 UPDATE 语句中完成，
        并发的另一个审核员如果已经处理过该记录，这里影响行数为0并返回 None。

        Args:
            db: 数据库会话
            user_id: 学习者ID
            stage_id: 阶段编号
            expected: 期望的当前状态
            values: 要写入的列

        Returns:
            Optional[QuestProgress]: 更新后的记录；前置状态不满足时返回 None
        """
        values = dict(values)
        values.setdefault("updated_at", datetime.now(UTC))
        stmt = (
            update(QuestProgress)
            .where(
                QuestProgress.user_id == user_id,
                QuestProgress.stage_id == stage_id,
                QuestProgress.status == expected.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = db.execute(stmt)
        if result.rowcount == 0:
            return None

        db_obj = self.get_by_key(db, user_id=user_id, stage_id=stage_id)
        record_change(db, ChangeEvent(
            event_type="UPDATE",
            table=QuestProgress.__tablename__,
            new=snapshot(db_obj),
            old={"user_id": user_id, "stage_id": stage_id, "status": expected.value},
        ))
        return db_obj


# 实例化并暴露给服务层使用
progress = CRUDProgress(QuestProgress)
