import json
import logging
from datetime import datetime, UTC
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ValidationError

from questflow.schemas.change_event import ChangeEvent
from questflow.schemas.quest_progress import ACTIVE_STATUSES, ProgressRecord, StageStatus, TOTAL_STAGES

logger = logging.getLogger(__name__)

RecordKey = Tuple[str, int]


class QuestStatistics(BaseModel):
    """单个用户的进度概览"""
    total_stages: int = TOTAL_STAGES
    completed_stages: int = 0
    current_stage: Optional[int] = None
    progress_percentage: int = 0
    last_completed_stage: Optional[int] = None


class ProgressOverview(BaseModel):
    """学习者进度页需要的全部数据"""
    user_id: str
    stages: Dict[int, StageStatus]
    statistics: QuestStatistics
    next_available_stage: Optional[int] = None


def _sort_time(value: Optional[datetime]) -> float:
    if value is None:
        return 0.0
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.timestamp()


def _coerce_record(entry: Any) -> Optional[ProgressRecord]:
    """把任意条目转换成 ProgressRecord，无法转换时返回 None"""
    if entry is None:
        return None
    if isinstance(entry, ProgressRecord):
        return entry
    try:
        return ProgressRecord.model_validate(entry)
    except ValidationError:
        logger.warning(f"ProgressCache: 丢弃损坏的记录: {entry!r}")
        return None


class ProgressCache:
    """
    客户端进度缓存

    每个会话一份，按 (user_id, stage_id) 保存权威记录的镜像。
    submit 可以先在本地乐观地应用，之后由服务端结果或变更推送替换。
    快照以 JSON 形式保存在 Redis 中，损坏或缺失的条目会被过滤掉，不影响渲染。
    """

    def __init__(
        self,
        session_id: str,
        redis_client=None,
        key_prefix: str = "questflow:cache",
        ttl_seconds: Optional[int] = None,
    ):
        self.session_id = session_id
        self.redis_client = redis_client
        self.key_prefix = key_prefix
        self.ttl_seconds = ttl_seconds
        self._records: Dict[RecordKey, ProgressRecord] = {}
        # 乐观更新之前的记录，用于回滚；None 表示之前没有记录
        self._optimistic: Dict[RecordKey, Optional[ProgressRecord]] = {}

    @property
    def redis_key(self) -> str:
        return f"{self.key_prefix}:{self.session_id}"

    # --- 读取 ---

    def get(self, user_id: str, stage_id: int) -> Optional[ProgressRecord]:
        return self._records.get((user_id, stage_id))

    def records(self, user_id: Optional[str] = None, status: Optional[StageStatus] = None) -> List[ProgressRecord]:
        items = [
            r for r in self._records.values()
            if (user_id is None or r.user_id == user_id) and (status is None or r.status == status)
        ]
        return sorted(items, key=lambda r: (r.user_id, r.stage_id))

    def pending_queue(self) -> List[ProgressRecord]:
        """待审批记录，按提交时间从早到晚"""
        pending = self.records(status=StageStatus.PENDING_APPROVAL)
        return sorted(pending, key=lambda r: (r.submitted_at is None, _sort_time(r.submitted_at), r.user_id, r.stage_id))

    def is_optimistic(self, user_id: str, stage_id: int) -> bool:
        return (user_id, stage_id) in self._optimistic

    # --- 写入 ---

    def load(self, entries: Iterable[Any]) -> None:
        """用权威记录整体替换缓存内容"""
        self._records = {}
        self._optimistic = {}
        for entry in entries or ():
            record = _coerce_record(entry)
            if record is not None:
                self._records[record.key] = record

    def reconcile(self, entry: Any) -> Optional[ProgressRecord]:
        """用权威记录替换同键的条目（包括乐观条目）"""
        record = _coerce_record(entry)
        if record is None:
            return None
        self._records[record.key] = record
        self._optimistic.pop(record.key, None)
        return record

    def apply_change(self, event: ChangeEvent) -> Optional[ProgressRecord]:
        """根据变更推送刷新缓存；条件更新的 old 快照不完整，只使用 new"""
        if event.new is None:
            return None
        return self.reconcile(event.new)

    def apply_optimistic_submit(self, user_id: str, stage_id: int) -> ProgressRecord:
        key = (user_id, stage_id)
        previous = self._records.get(key)
        if key not in self._optimistic:
            self._optimistic[key] = previous
        if previous is not None:
            record = previous.model_copy(update={"status": StageStatus.PENDING_APPROVAL})
        else:
            record = ProgressRecord(user_id=user_id, stage_id=stage_id, status=StageStatus.PENDING_APPROVAL)
        self._records[key] = record
        return record

    def rollback(self, user_id: str, stage_id: int) -> Optional[ProgressRecord]:
        """服务端否定了乐观更新时，恢复到之前的记录"""
        key = (user_id, stage_id)
        if key not in self._optimistic:
            return self._records.get(key)
        previous = self._optimistic.pop(key)
        if previous is None:
            self._records.pop(key, None)
        else:
            self._records[key] = previous
        return previous

    # --- 视图 ---

    def stage_map(self, user_id: str) -> Dict[int, StageStatus]:
        """
        补全六个阶段的状态

        缺失的阶段视为 locked；如果没有任何进行中的阶段，
        则把最后一个已完成阶段的下一阶段（没有已完成时为第1阶段）视为 current。
        """
        stages = {stage_id: StageStatus.LOCKED for stage_id in range(1, TOTAL_STAGES + 1)}
        for record in self.records(user_id):
            stages[record.stage_id] = record.status

        if not any(status in ACTIVE_STATUSES for status in stages.values()):
            completed = [s for s, status in stages.items() if status == StageStatus.COMPLETED]
            last_completed = max(completed) if completed else 0
            if last_completed < TOTAL_STAGES:
                stages[last_completed + 1] = StageStatus.CURRENT
        return stages

    def statistics(self, user_id: str) -> QuestStatistics:
        stages = self.stage_map(user_id)
        completed = [s for s, status in stages.items() if status == StageStatus.COMPLETED]
        active = [s for s, status in stages.items() if status in ACTIVE_STATUSES]
        return QuestStatistics(
            completed_stages=len(completed),
            current_stage=active[-1] if active else None,
            progress_percentage=round(len(completed) / TOTAL_STAGES * 100),
            last_completed_stage=max(completed) if completed else None,
        )

    def overview(self, user_id: str) -> ProgressOverview:
        return ProgressOverview(
            user_id=user_id,
            stages=self.stage_map(user_id),
            statistics=self.statistics(user_id),
            next_available_stage=self.next_available_stage(user_id),
        )

    def next_available_stage(self, user_id: str) -> Optional[int]:
        for stage_id, status in sorted(self.stage_map(user_id).items()):
            if status in ACTIVE_STATUSES:
                return stage_id
        return None

    def can_access_stage(self, user_id: str, stage_id: int) -> bool:
        if stage_id < 1 or stage_id > TOTAL_STAGES:
            return False
        return self.stage_map(user_id)[stage_id] != StageStatus.LOCKED

    # --- 持久化 ---

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "records": [r.model_dump(mode="json") for r in self.records()],
        }

    def save(self) -> None:
        if self.redis_client is None:
            return
        payload = json.dumps(self.to_dict())
        if self.ttl_seconds:
            self.redis_client.set(self.redis_key, payload, ex=self.ttl_seconds)
        else:
            self.redis_client.set(self.redis_key, payload)

    def restore(self) -> bool:
        """
        从 Redis 恢复快照

        Returns:
            bool: 是否恢复到了快照；快照缺失或损坏时返回 False 并保持空缓存
        """
        if self.redis_client is None:
            return False
        raw = self.redis_client.get(self.redis_key)
        if raw is None:
            return False
        try:
            data = json.loads(raw)
            entries = data.get("records") or []
        except (ValueError, AttributeError, TypeError):
            logger.warning(f"ProgressCache: 会话 {self.session_id} 的快照已损坏，忽略")
            self.load([])
            return False
        self.load(entries if isinstance(entries, list) else [])
        return True

    def clear(self) -> None:
        self.load([])
        if self.redis_client is not None:
            self.redis_client.delete(self.redis_key)
