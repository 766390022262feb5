"""
客户端进度缓存测试
"""

import json
import pytest
from unittest.mock import MagicMock
from pydantic import ValidationError

from questflow.core.errors import InvalidArgument
from questflow.schemas.change_event import ChangeEvent
from questflow.schemas.quest_progress import ProgressRecord, StageStatus, TOTAL_STAGES
from questflow.services.approval_workflow import validate_stage_id
from questflow.services.progress_cache import ProgressCache


def row(stage_id, status, user_id="u1", **fields):
    return {"user_id": user_id, "stage_id": stage_id, "status": status, **fields}


@pytest.fixture
def cache():
    return ProgressCache("session-1")


def test_load_skips_corrupted_entries(cache):
    cache.load([
        row(1, "completed"),
        None,
        {"user_id": "u1", "stage_id": 9, "status": "completed"},
        {"user_id": "u1", "stage_id": 2, "status": "exploded"},
        "garbage",
        row(2, "current"),
    ])

    assert [(r.stage_id, r.status) for r in cache.records("u1")] == [
        (1, StageStatus.COMPLETED),
        (2, StageStatus.CURRENT),
    ]


def test_stage_map_fills_missing_stages(cache):
    cache.load([row(1, "completed"), row(2, "pending_approval")])

    stages = cache.stage_map("u1")

    assert stages == {
        1: StageStatus.COMPLETED,
        2: StageStatus.PENDING_APPROVAL,
        3: StageStatus.LOCKED,
        4: StageStatus.LOCKED,
        5: StageStatus.LOCKED,
        6: StageStatus.LOCKED,
    }


def test_stage_map_derives_current_when_none_active(cache):
    assert cache.stage_map("new-user")[1] == StageStatus.CURRENT

    cache.load([row(1, "completed"), row(2, "completed")])
    assert cache.stage_map("u1")[3] == StageStatus.CURRENT
    assert cache.next_available_stage("u1") == 3


def test_all_completed_has_no_next_stage(cache):
    cache.load([row(s, "completed") for s in range(1, 7)])

    assert cache.next_available_stage("u1") is None
    stats = cache.statistics("u1")
    assert stats.completed_stages == 6
    assert stats.progress_percentage == 100
    assert stats.current_stage is None
    assert stats.last_completed_stage == 6


def test_statistics(cache):
    cache.load([row(1, "completed"), row(2, "completed"), row(3, "current")])

    stats = cache.statistics("u1")

    assert stats.completed_stages == 2
    assert stats.current_stage == 3
    assert stats.progress_percentage == 33
    assert stats.last_completed_stage == 2


def test_can_access_stage(cache):
    cache.load([row(1, "completed"), row(2, "current")])

    assert cache.can_access_stage("u1", 1) is True
    assert cache.can_access_stage("u1", 2) is True
    assert cache.can_access_stage("u1", 3) is False
    assert cache.can_access_stage("u1", 0) is False
    assert cache.can_access_stage("u1", 7) is False


def test_optimistic_submit_then_reconcile(cache):
    cache.load([row(1, "current")])

    optimistic = cache.apply_optimistic_submit("u1", 1)

    assert optimistic.status == StageStatus.PENDING_APPROVAL
    assert cache.is_optimistic("u1", 1)

    cache.reconcile(row(1, "pending_approval", submitted_at="2026-01-01T00:00:00Z"))

    assert not cache.is_optimistic("u1", 1)
    assert cache.get("u1", 1).submitted_at is not None


def test_optimistic_submit_rollback(cache):
    cache.load([row(1, "current")])
    cache.apply_optimistic_submit("u1", 1)
    cache.apply_optimistic_submit("u1", 1)

    restored = cache.rollback("u1", 1)

    assert restored.status == StageStatus.CURRENT
    assert cache.get("u1", 1).status == StageStatus.CURRENT
    assert not cache.is_optimistic("u1", 1)


def test_rollback_of_optimistic_insert_removes_entry(cache):
    cache.apply_optimistic_submit("u1", 1)

    assert cache.rollback("u1", 1) is None
    assert cache.get("u1", 1) is None


def test_apply_change_replaces_optimistic_entry(cache):
    cache.load([row(1, "current")])
    cache.apply_optimistic_submit("u1", 1)
    event = ChangeEvent(
        event_type="UPDATE",
        table="quest_progress",
        new=row(1, "current", rejected_by="reviewer-b"),
        old={"user_id": "u1", "stage_id": 1, "status": "pending_approval"},
    )

    cache.apply_change(event)

    assert cache.get("u1", 1).status == StageStatus.CURRENT
    assert cache.get("u1", 1).rejected_by == "reviewer-b"
    assert not cache.is_optimistic("u1", 1)


def test_save_and_restore_through_redis():
    store = {}
    redis_client = MagicMock()
    redis_client.set.side_effect = lambda key, value, ex=None: store.__setitem__(key, value)
    redis_client.get.side_effect = lambda key: store.get(key)

    cache = ProgressCache("session-1", redis_client=redis_client, key_prefix="test:cache", ttl_seconds=60)
    cache.load([row(1, "completed"), row(2, "current")])
    cache.save()

    redis_client.set.assert_called_once()
    assert redis_client.set.call_args.kwargs["ex"] == 60
    assert json.loads(store["test:cache:session-1"])["session_id"] == "session-1"

    restored = ProgressCache("session-1", redis_client=redis_client, key_prefix="test:cache")
    assert restored.restore() is True
    assert restored.stage_map("u1")[2] == StageStatus.CURRENT


def test_restore_corrupted_snapshot():
    redis_client = MagicMock()
    redis_client.get.return_value = "{not json"
    cache = ProgressCache("session-1", redis_client=redis_client)

    assert cache.restore() is False
    assert cache.records() == []


def test_restore_filters_bad_records():
    redis_client = MagicMock()
    redis_client.get.return_value = json.dumps({"records": [row(1, "completed"), {"stage_id": "x"}]})
    cache = ProgressCache("session-1", redis_client=redis_client)

    assert cache.restore() is True
    assert len(cache.records()) == 1


def test_clear_deletes_snapshot():
    redis_client = MagicMock()
    cache = ProgressCache("session-1", redis_client=redis_client)
    cache.load([row(1, "current")])

    cache.clear()

    assert cache.records() == []
    redis_client.delete.assert_called_once_with(cache.redis_key)


def test_cache_from_context_uses_settings(context):
    cache = context.create_cache("abc")

    assert cache.redis_key == "questflow:cache:abc"
    assert cache.redis_client is None
    assert cache.restore() is False


def test_pending_queue_is_oldest_first(cache):
    cache.load([
        row(1, "pending_approval", user_id="u2", submitted_at="2026-03-02T10:00:00Z"),
        row(1, "completed", user_id="u1"),
        row(2, "pending_approval", user_id="u1", submitted_at="2026-03-01T10:00:00Z"),
        row(1, "pending_approval", user_id="u3"),
    ])

    assert [(r.user_id, r.stage_id) for r in cache.pending_queue()] == [("u1", 2), ("u2", 1), ("u3", 1)]
    assert [r.user_id for r in cache.records(status=StageStatus.COMPLETED)] == ["u1"]


def test_pending_queue_follows_changes(cache):
    cache.load([row(1, "pending_approval")])

    cache.apply_change(ChangeEvent(
        event_type="UPDATE",
        table="quest_progress",
        new=row(1, "completed", approved_by="reviewer-b"),
        old={"user_id": "u1", "stage_id": 1, "status": "pending_approval"},
    ))

    assert cache.pending_queue() == []


def test_overview(cache):
    cache.load([row(1, "completed"), row(2, "current"), row(1, "current", user_id="u2")])

    overview = cache.overview("u1")

    assert overview.user_id == "u1"
    assert overview.stages[1] == StageStatus.COMPLETED
    assert overview.stages[2] == StageStatus.CURRENT
    assert overview.stages[6] == StageStatus.LOCKED
    assert overview.next_available_stage == 2
    assert overview.statistics.completed_stages == 1


def test_stage_bounds_share_one_constant():
    assert ProgressCache("session-1").statistics("u1").total_stages == TOTAL_STAGES
    validate_stage_id(TOTAL_STAGES)
    with pytest.raises(InvalidArgument):
        validate_stage_id(TOTAL_STAGES + 1)
    with pytest.raises(ValidationError):
        ProgressRecord(user_id="u1", stage_id=TOTAL_STAGES + 1, status="current")
