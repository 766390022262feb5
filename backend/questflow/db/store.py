import logging
from contextlib import contextmanager
from typing import Iterator, List, Optional, Protocol

from sqlalchemy.orm import Session, sessionmaker

from questflow.crud.crud_progress import PENDING_CHANGES_KEY
from questflow.schemas.change_event import ChangeEvent

logger = logging.getLogger(__name__)


class ChangePublisher(Protocol):
    def publish(self, event: ChangeEvent) -> None:
        ...


class ProgressStore:
    """
    进度存储

    包装 Session 工厂和变更发布者：每个工作单元结束并成功提交后，
    把会话中登记的 INSERT/UPDATE 事件依次发布到变更通道；回滚时丢弃。
    """

    def __init__(self, session_factory: sessionmaker, publisher: Optional[ChangePublisher] = None):
        self.session_factory = session_factory
        self.publisher = publisher

    @contextmanager
    def unit_of_work(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        else:
            self._publish(db.info.pop(PENDING_CHANGES_KEY, []))
        finally:
            db.info.pop(PENDING_CHANGES_KEY, None)
            db.close()

    @contextmanager
    def reader(self) -> Iterator[Session]:
        """只读会话"""
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    def _publish(self, events: List[ChangeEvent]) -> None:
        if self.publisher is None:
            return
        for event in events:
            try:
                self.publisher.publish(event)
            except Exception as e:
                # 数据已经提交，这里只记录日志
                logger.error(f"ProgressStore: 发布变更失败 table={event.table}: {e}", exc_info=True)
