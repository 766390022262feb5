from .crud_progress import progress
from .crud_stats import stats
from .crud_reviewer import reviewer, user_profile
