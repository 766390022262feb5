import logging
from datetime import date
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from questflow.crud.crud_stats import stats as crud_stats
from questflow.db.store import ProgressStore
from questflow.schemas.stats import LoginEvent, QuestCompletedEvent, StatsEvent, UserStatsRead

logger = logging.getLogger(__name__)

EXPERIENCE_PER_QUEST = 100

# (累加列, 覆盖列)
StatsDelta = Tuple[Dict[str, int], Dict[str, Any]]


class StatisticsAggregator:
    """
    统计聚合器

    根据进度事件更新用户的经验值、通关数和登录次数。
    每种事件对应一个独立的构建函数，未知事件直接拒绝。
    """

    def __init__(
        self,
        store: ProgressStore,
        experience_per_quest: int = EXPERIENCE_PER_QUEST,
        today: Callable[[], date] = date.today,
    ):
        self.store = store
        self.experience_per_quest = experience_per_quest
        self._today = today
        self._builders: Dict[type, Callable[[Any], StatsDelta]] = {
            QuestCompletedEvent: self._build_quest_completed,
            LoginEvent: self._build_login,
        }

    def _build_quest_completed(self, event: QuestCompletedEvent) -> StatsDelta:
        return {"quest_clear_count": 1, "total_experience": self.experience_per_quest}, {}

    def _build_login(self, event: LoginEvent) -> StatsDelta:
        # 只保留日期，不保留具体时间
        return {"login_count": 1}, {"last_login_date": self._today()}

    def build_delta(self, event: StatsEvent) -> StatsDelta:
        builder = self._builders.get(type(event))
        if builder is None:
            raise TypeError(f"未知的统计事件类型: {type(event).__name__}")
        return builder(event)

    def record_event(self, user_id: str, event: StatsEvent, db: Optional[Session] = None) -> None:
        """
        记录一次统计事件

        Args:
            user_id: 用户ID
            event: QuestCompletedEvent 或 LoginEvent
            db: 可选的会话；传入时在调用方的工作单元中执行，否则自行提交
        """
        increments, assignments = self.build_delta(event)
        if db is not None:
            crud_stats.apply_delta(db, user_id=user_id, increments=increments, assignments=assignments)
        else:
            with self.store.unit_of_work() as own_db:
                crud_stats.apply_delta(own_db, user_id=user_id, increments=increments, assignments=assignments)
        logger.info(f"StatisticsAggregator: 用户 {user_id} 记录事件 {event.kind} {increments}")

    def get_stats(self, user_id: str) -> UserStatsRead:
        """读取用户统计，不存在时返回全零"""
        with self.store.reader() as db:
            row = crud_stats.get(db, user_id)
            if row is None:
                return UserStatsRead(user_id=user_id)
            return UserStatsRead.model_validate(row)
