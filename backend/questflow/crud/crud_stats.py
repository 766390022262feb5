import logging
from datetime import datetime, UTC
from typing import Any, Dict

from pydantic import BaseModel
from sqlalchemy import update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from questflow.crud.base import CRUDBase
from questflow.models.user_stats import UserStats

logger = logging.getLogger(__name__)

# 支持 INSERT ... ON CONFLICT DO UPDATE 的方言
_UPSERT_INSERTS = {
    "sqlite": sqlite_insert,
    "postgresql": pg_insert,
}


class CRUDStats(CRUDBase[UserStats, BaseModel]):

    def apply_delta(
        self,
        db: Session,
        *,
        user_id: str,
        increments: Dict[str, int],
        assignments: Dict[str, Any],
    ) -> None:
        """
        以 user_id 为键原子地累加计数器。

        increments 中的列在数据库端执行 col = col + n，
        不存在统计行时按零处理（直接插入 n）。
        assignments 中的列直接覆盖。

        Args:
            db: 数据库会话
            user_id: 用户ID
            increments: 列名 -> 增量
            assignments: 列名 -> 新值
        """
        now = datetime.now(UTC)
        insert_fn = _UPSERT_INSERTS.get(db.get_bind().dialect.name)

        if insert_fn is not None:
            stmt = insert_fn(UserStats).values(
                user_id=user_id, updated_at=now, **increments, **assignments
            )
            set_ = {col: getattr(UserStats, col) + delta for col, delta in increments.items()}
            set_.update(assignments)
            set_["updated_at"] = now
            db.execute(stmt.on_conflict_do_update(index_elements=[UserStats.user_id], set_=set_))
            return

        # 其他数据库：先做原子累加，没有命中再插入
        stmt = (
            update(UserStats)
            .where(UserStats.user_id == user_id)
            .values(
                updated_at=now,
                **{col: getattr(UserStats, col) + delta for col, delta in increments.items()},
                **assignments,
            )
            .execution_options(synchronize_session=False)
        )
        if db.execute(stmt).rowcount == 0:
            db.add(UserStats(user_id=user_id, updated_at=now, **increments, **assignments))
            db.flush()


# 实例化并暴露给服务层使用
stats = CRUDStats(UserStats)
