# This file makes the 'models' directory a Python package.

from .quest_progress import QuestProgress
from .user_stats import UserStats
from .reviewer import Reviewer
from .user_profile import UserProfile
