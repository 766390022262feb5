"""
测试公共夹具

每个测试使用 tmp_path 下独立的 SQLite 文件和进程内变更通道，
互不影响，也不需要 Redis。
"""

import sys
import os
import pytest
from typing import Generator

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from questflow.config.dependency_injection import PipelineContext, build_context
from questflow.core.config import Settings
from questflow.db.init_db import init_db
from questflow.models.reviewer import Reviewer
from questflow.models.user_profile import UserProfile
from questflow.schemas.quest_progress import StageStatus
from questflow.crud.crud_progress import progress as crud_progress


@pytest.fixture(scope="function")
def settings(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'questflow_test.db'}",
        CHANGE_FEED_BACKEND="local",
        RECONNECT_DELAY_SECONDS=0.01,
        RECONNECT_MAX_DELAY_SECONDS=0.05,
        ENABLE_ASYNC_STATS=False,
    )


@pytest.fixture(scope="function")
def context(settings) -> Generator[PipelineContext, None, None]:
    """组装好的上下文，数据表已创建"""
    ctx = build_context(settings)
    init_db(ctx.engine)
    try:
        yield ctx
    finally:
        ctx.engine.dispose()


def add_reviewer(ctx: PipelineContext, user_id: str, email: str = None, is_active: bool = True) -> None:
    with ctx.store.unit_of_work() as db:
        db.add(Reviewer(user_id=user_id, email=email or f"{user_id}@example.com", is_active=is_active))


def add_profile(ctx: PipelineContext, user_id: str, nickname: str = None, email: str = None) -> None:
    with ctx.store.unit_of_work() as db:
        db.add(UserProfile(id=user_id, nickname=nickname, email=email))


def seed_stage(ctx: PipelineContext, user_id: str, stage_id: int, status: StageStatus) -> None:
    """直接写入一条指定状态的记录"""
    with ctx.store.unit_of_work() as db:
        crud_progress.insert(db, user_id=user_id, stage_id=stage_id, status=status)


@pytest.fixture
def reviewer_a(context) -> str:
    add_reviewer(context, "reviewer-a")
    return "reviewer-a"


@pytest.fixture
def reviewer_b(context) -> str:
    add_reviewer(context, "reviewer-b")
    return "reviewer-b"
