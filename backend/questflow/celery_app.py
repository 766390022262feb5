import logging
import os

from celery import Celery, signals

from questflow.core.config import get_settings

# 配置日志记录器
logger = logging.getLogger(__name__)

_settings = get_settings()

# 创建 Celery 应用实例
celery_app = Celery(
    "questflow",
    broker=_settings.REDIS_URL,
    backend=_settings.REDIS_URL,
    include=[
        "questflow.tasks.stats_tasks",
    ]
)

# Worker 进程内的上下文，在进程启动时构造
_pipeline_context = None


@signals.worker_process_init.connect
def init_worker_process(sender=None, **kwargs):
    """在 Worker 进程启动时初始化审批流程上下文"""
    global _pipeline_context
    if _pipeline_context is None:
        logger.info(f"Initializing PipelineContext for Worker (PID: {os.getpid()})...")
        _pipeline_context = _build_worker_context()
        logger.info("PipelineContext initialized.")


def _build_worker_context():
    from questflow.config.dependency_injection import build_context
    return build_context(get_settings())


def set_pipeline_context(context) -> None:
    global _pipeline_context
    _pipeline_context = context


def get_pipeline_context():
    """
    在 Celery 任务中获取上下文；未通过信号初始化时（例如 eager 模式）按需构造。
    """
    global _pipeline_context
    if _pipeline_context is None:
        _pipeline_context = _build_worker_context()
    return _pipeline_context


# Celery 配置
celery_app.conf.update(
    # 任务序列化格式
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    timezone="UTC",
    enable_utc=True,

    # 队列配置
    task_routes={
        'questflow.tasks.stats_tasks.record_login_task': {'queue': 'db_writer_queue'},
    },
    task_default_queue='default',
)
