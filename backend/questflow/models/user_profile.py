from sqlalchemy import Column, String

from questflow.db.base_class import Base


class UserProfile(Base):
    """用户资料，通知里展示昵称时使用"""
    __tablename__ = "users_profile"

    id = Column(String, primary_key=True)
    nickname = Column(String, nullable=True)
    email = Column(String, nullable=True)
