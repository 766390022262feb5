import logging

from questflow.celery_app import celery_app, get_pipeline_context
from questflow.schemas.stats import LoginEvent

logger = logging.getLogger(__name__)


@celery_app.task(name='questflow.tasks.stats_tasks.record_login_task')
def record_login_task(user_id: str):
    """一个专门用于记录登录统计的轻量级任务"""
    context = get_pipeline_context()
    try:
        context.stats.record_event(user_id, LoginEvent())
        logger.info(f"Stats Task: Recorded login for user {user_id}")
    except Exception as e:
        logger.error(f"Stats Task: Error recording login for user {user_id}: {e}")
        raise
