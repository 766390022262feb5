from datetime import datetime, UTC

from sqlalchemy import Boolean, Column, DateTime, String

from questflow.db.base_class import Base


class Reviewer(Base):
    """审核员目录，身份协作方只读访问"""
    __tablename__ = "reviewers"

    user_id = Column(String, primary_key=True)
    email = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=lambda: datetime.now(UTC))
