#!/usr/bin/env python3
"""
数据库初始化脚本

这个脚本用于创建所有数据库表。
"""

import logging

from sqlalchemy.engine import Engine

from questflow.db.base_class import Base
# 导入所有模型，确保它们注册到 Base.metadata
from questflow import models  # noqa: F401

logger = logging.getLogger(__name__)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)
    logger.info("数据库表创建完成")


if __name__ == "__main__":
    from dotenv import load_dotenv
    from questflow.core.config import get_settings
    from questflow.db.database import create_db_engine

    load_dotenv()
    logging.basicConfig(level=logging.INFO)
    init_db(create_db_engine(get_settings().DATABASE_URL))
