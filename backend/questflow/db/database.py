from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker


def create_db_engine(database_url: str) -> Engine:
    """
    创建数据库引擎

    connect_args 是SQLite特有的，用于允许多线程访问
    （FastAPI 会在线程池中执行同步端点）。
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    return create_engine(database_url, connect_args=connect_args)


def create_session_factory(engine: Engine) -> sessionmaker:
    """创建一个Session工厂"""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
