from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    """
    应用程序配置设置类，从环境变量或.env文件加载所有配置项。
    使用Pydantic进行数据验证和类型检查。

    包含服务器配置、数据库连接、Redis变更通道、重连策略以及审批流程的数值常量。
    与旧版本不同，这里不再创建全局实例，由 build_context() 显式构造并注入各组件。
    """
    # Server
    BACKEND_PORT: int = 8000

    # Model configuration tells Pydantic where to find the .env file.
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding='utf-8',
        extra='ignore',
        case_sensitive=True
    )

    PROJECT_NAME: str = "Quest Approval Pipeline"
    API_V1_STR: str = "/api/v1"

    BACKEND_CORS_ORIGINS: List[str] = ["*"]

    DATABASE_URL: str = "sqlite:///./questflow.db"
    REDIS_URL: str = "redis://localhost:6379/0"

    # 变更通道: "redis" 跨进程广播, "local" 仅在单进程内分发
    CHANGE_FEED_BACKEND: str = "redis"
    CHANGE_FEED_CHANNEL_PREFIX: str = "questflow:changes"

    # 变更订阅断开后的重连策略（秒）
    RECONNECT_DELAY_SECONDS: float = 5.0
    RECONNECT_MAX_DELAY_SECONDS: float = 60.0
    RECONNECT_BACKOFF_FACTOR: float = 2.0

    # 审批流程
    EXPERIENCE_PER_QUEST: int = 100
    MAX_BULK_ITEMS: int = 50
    MAX_NOTIFICATIONS: int = 50

    # 客户端进度缓存
    CACHE_KEY_PREFIX: str = "questflow:cache"
    CACHE_TTL_SECONDS: int = 60 * 60 * 24

    # 登录统计交给 Celery 的 db_writer_queue 异步写入
    ENABLE_ASYNC_STATS: bool = False

    LOG_LEVEL: str = "INFO"


def get_settings() -> Settings:
    """读取当前环境的配置（每次调用都会重新解析环境变量）"""
    return Settings()
