"""
统计聚合器测试
"""

import pytest
from datetime import date

from questflow.schemas.stats import LoginEvent, QuestCompletedEvent
from questflow.services.stats_aggregator import StatisticsAggregator


@pytest.fixture
def aggregator(context):
    return StatisticsAggregator(context.store, experience_per_quest=100, today=lambda: date(2026, 3, 14))


def test_absent_stats_read_as_zero(aggregator):
    stats = aggregator.get_stats("nobody")

    assert stats.login_count == 0
    assert stats.quest_clear_count == 0
    assert stats.total_experience == 0
    assert stats.last_login_date is None


def test_login_event_counts_and_keeps_date_only(aggregator):
    aggregator.record_event("user-1", LoginEvent())
    aggregator.record_event("user-1", LoginEvent())

    stats = aggregator.get_stats("user-1")
    assert stats.login_count == 2
    assert stats.last_login_date == date(2026, 3, 14)
    assert stats.total_experience == 0


def test_quest_completed_adds_fixed_experience(aggregator):
    for _ in range(3):
        aggregator.record_event("user-1", QuestCompletedEvent())

    stats = aggregator.get_stats("user-1")
    assert stats.quest_clear_count == 3
    assert stats.total_experience == 300


def test_unknown_event_is_rejected(aggregator):
    with pytest.raises(TypeError):
        aggregator.record_event("user-1", object())


def test_build_delta():
    aggregator = StatisticsAggregator(store=None, experience_per_quest=50, today=lambda: date(2026, 1, 1))

    assert aggregator.build_delta(QuestCompletedEvent()) == ({"quest_clear_count": 1, "total_experience": 50}, {})
    assert aggregator.build_delta(LoginEvent()) == ({"login_count": 1}, {"last_login_date": date(2026, 1, 1)})
