# This file makes the tasks directory a Python package
# Import all task modules to ensure they are registered with Celery

from . import stats_tasks

# Explicitly import the tasks to register them
from .stats_tasks import record_login_task

__all__ = [
    'record_login_task',
]
