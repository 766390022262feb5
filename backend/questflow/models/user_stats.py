from sqlalchemy import Column, Date, DateTime, Integer, String

from questflow.db.base_class import Base


class UserStats(Base):
    """用户统计模型

    只由 StatisticsAggregator 写入，以 user_id 为键做幂等的 upsert。

    Attributes:
        user_id: 用户ID（主键）
        login_count: 登录次数
        last_login_date: 最近登录日期（只保留日期）
        quest_clear_count: 通过审批的阶段数
        total_experience: 累计经验值
        updated_at: 更新时间
    """
    __tablename__ = "user_stats"

    user_id = Column(String, primary_key=True)
    login_count = Column(Integer, nullable=False, default=0)
    last_login_date = Column(Date, nullable=True)
    quest_clear_count = Column(Integer, nullable=False, default=0)
    total_experience = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=True)
