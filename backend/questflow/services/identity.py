import logging
from typing import Optional, Protocol

from questflow.crud.crud_reviewer import reviewer as crud_reviewer, user_profile as crud_user_profile
from questflow.db.store import ProgressStore
from questflow.schemas.response import ReviewerInfo

logger = logging.getLogger(__name__)

UNKNOWN_USER_NAME = "Unknown"


class IdentityProvider(Protocol):
    """身份/授权协作方需要提供的两个能力"""

    def current_user_id(self) -> Optional[str]:
        ...

    def is_active_reviewer(self, user_id: str) -> bool:
        ...


class ReviewerDirectory:
    """
    审核员目录

    从 reviewers 表读取审核员信息，每次调用都重新查询，不做缓存。
    """

    def __init__(self, store: ProgressStore):
        self.store = store

    def get_reviewer(self, user_id: str) -> Optional[ReviewerInfo]:
        with self.store.reader() as db:
            row = crud_reviewer.get_active(db, user_id=user_id)
            if row is None:
                return None
            return ReviewerInfo(user_id=row.user_id, email=row.email, is_active=row.is_active)

    def is_active_reviewer(self, user_id: str) -> bool:
        return self.get_reviewer(user_id) is not None

    def display_name(self, user_id: str) -> str:
        """昵称 -> 邮箱@前的部分 -> Unknown"""
        with self.store.reader() as db:
            profile = crud_user_profile.get(db, user_id)
            if profile is None:
                return UNKNOWN_USER_NAME
            if profile.nickname:
                return profile.nickname
            if profile.email:
                return profile.email.split("@")[0]
            return UNKNOWN_USER_NAME


class SessionIdentity:
    """单次请求的身份：会话用户ID + 审核员目录"""

    def __init__(self, user_id: Optional[str], directory: ReviewerDirectory):
        self._user_id = user_id
        self.directory = directory

    def current_user_id(self) -> Optional[str]:
        return self._user_id or None

    def is_active_reviewer(self, user_id: str) -> bool:
        return self.directory.is_active_reviewer(user_id)
