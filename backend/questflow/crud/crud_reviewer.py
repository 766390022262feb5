from typing import Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from questflow.crud.base import CRUDBase
from questflow.models.reviewer import Reviewer
from questflow.models.user_profile import UserProfile


class CRUDReviewer(CRUDBase[Reviewer, BaseModel]):
    def get_active(self, db: Session, *, user_id: str) -> Optional[Reviewer]:
        """只返回 is_active 的审核员"""
        reviewer = self.get(db, user_id)
        if reviewer is None or not reviewer.is_active:
            return None
        return reviewer


class CRUDUserProfile(CRUDBase[UserProfile, BaseModel]):
    pass


reviewer = CRUDReviewer(Reviewer)
user_profile = CRUDUserProfile(UserProfile)
