"""
审批流程引擎测试

覆盖 submit / approve / reject 的状态转换、下一阶段解锁、
阶段ID校验、并发批准以及批准带来的统计副作用。
"""

import threading
from datetime import datetime, timedelta, UTC
import pytest
from unittest.mock import MagicMock

from questflow.core.errors import InvalidArgument, InvalidTransition, NotFound
from questflow.schemas.quest_progress import StageStatus
from questflow.schemas.stats import LoginEvent

from conftest import seed_stage


def _status_map(context, user_id):
    return {r.stage_id: r.status for r in context.workflow.get_progress(user_id)}


def _pending(context, user_id, stage_id=1):
    """把指定阶段推进到 pending_approval"""
    seed_stage(context, user_id, stage_id, StageStatus.CURRENT)
    context.workflow.submit(user_id, stage_id)


def test_provision_user_creates_first_stage(context):
    record = context.workflow.provision_user("user-1")

    assert record is not None
    assert record.stage_id == 1
    assert record.status == StageStatus.CURRENT
    # 第二次调用不做任何事
    assert context.workflow.provision_user("user-1") is None
    assert _status_map(context, "user-1") == {1: StageStatus.CURRENT}


def test_submit_moves_current_to_pending(context):
    context.workflow.provision_user("user-1")

    record = context.workflow.submit("user-1", 1, form_submitted=True)

    assert record.status == StageStatus.PENDING_APPROVAL
    assert record.submitted_at is not None
    assert record.form_submitted is True


def test_submit_requires_current_stage(context):
    context.workflow.provision_user("user-1")
    context.workflow.submit("user-1", 1)

    with pytest.raises(InvalidTransition):
        context.workflow.submit("user-1", 1)
    with pytest.raises(InvalidTransition):
        context.workflow.submit("user-1", 2)


@pytest.mark.parametrize("stage_id", [0, 7, -1, "1", 1.0, True, None])
def test_invalid_stage_id_is_rejected_without_mutation(context, stage_id):
    _pending(context, "user-1")
    before = _status_map(context, "user-1")

    with pytest.raises(InvalidArgument):
        context.workflow.approve("reviewer-a", "user-1", stage_id)
    with pytest.raises(InvalidArgument):
        context.workflow.reject("reviewer-a", "user-1", stage_id)
    with pytest.raises(InvalidArgument):
        context.workflow.submit("user-1", stage_id)

    assert _status_map(context, "user-1") == before
    assert context.stats.get_stats("user-1").quest_clear_count == 0


def test_approve_completes_stage_and_creates_successor(context):
    _pending(context, "user-1")

    outcome = context.workflow.approve("reviewer-a", "user-1", 1)

    assert outcome.next_stage_unlocked is True
    assert outcome.record.status == StageStatus.COMPLETED
    assert outcome.record.approved_by == "reviewer-a"
    assert outcome.record.approved_at is not None
    assert _status_map(context, "user-1") == {1: StageStatus.COMPLETED, 2: StageStatus.CURRENT}

    stats = context.stats.get_stats("user-1")
    assert stats.quest_clear_count == 1
    assert stats.total_experience == 100


def test_second_approval_reports_not_found(context):
    _pending(context, "user-1")
    context.workflow.approve("reviewer-a", "user-1", 1)

    with pytest.raises(NotFound):
        context.workflow.approve("reviewer-b", "user-1", 1)

    # 统计只增加一次
    assert context.stats.get_stats("user-1").quest_clear_count == 1
    assert _status_map(context, "user-1")[2] == StageStatus.CURRENT


def test_concurrent_approvals_only_one_succeeds(context):
    _pending(context, "user-1")
    barrier = threading.Barrier(2)
    results = []
    lock = threading.Lock()

    def approve(reviewer_id):
        barrier.wait()
        try:
            context.workflow.approve(reviewer_id, "user-1", 1)
            outcome = "ok"
        except NotFound:
            outcome = "not_found"
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=approve, args=(r,)) for r in ("reviewer-a", "reviewer-b")]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert sorted(results) == ["not_found", "ok"]
    stats = context.stats.get_stats("user-1")
    assert stats.quest_clear_count == 1
    assert stats.total_experience == 100


def test_approve_flips_locked_successor(context):
    _pending(context, "user-1")
    seed_stage(context, "user-1", 2, StageStatus.LOCKED)

    outcome = context.workflow.approve("reviewer-a", "user-1", 1)

    assert outcome.next_stage_unlocked is True
    assert _status_map(context, "user-1")[2] == StageStatus.CURRENT


@pytest.mark.parametrize("successor_status", [StageStatus.CURRENT, StageStatus.PENDING_APPROVAL, StageStatus.COMPLETED])
def test_approve_leaves_advanced_successor_untouched(context, successor_status):
    _pending(context, "user-1")
    seed_stage(context, "user-1", 2, successor_status)

    outcome = context.workflow.approve("reviewer-a", "user-1", 1)

    assert outcome.next_stage_unlocked is False
    assert _status_map(context, "user-1")[2] == successor_status


def test_approve_final_stage_has_no_successor(context):
    _pending(context, "user-1", stage_id=6)

    outcome = context.workflow.approve("reviewer-a", "user-1", 6)

    assert outcome.next_stage_unlocked is False
    assert _status_map(context, "user-1") == {6: StageStatus.COMPLETED}
    assert context.stats.get_stats("user-1").total_experience == 100


def test_approve_increments_existing_stats(context):
    context.stats.record_event("user-1", LoginEvent())
    _pending(context, "user-1", stage_id=2)

    context.workflow.approve("reviewer-a", "user-1", 2)

    stats = context.stats.get_stats("user-1")
    assert stats.login_count == 1
    assert stats.quest_clear_count == 1
    assert stats.total_experience == 100


def test_reject_returns_stage_to_current(context):
    context.workflow.provision_user("user-1")
    context.workflow.submit("user-1", 1, form_submitted=True)

    record = context.workflow.reject("reviewer-a", "user-1", 1)

    assert record.status == StageStatus.CURRENT
    assert record.rejected_by == "reviewer-a"
    assert record.rejected_at is not None
    assert record.approved_by is None
    assert record.approved_at is None
    assert record.form_submitted is False
    # 驳回后可以重新提交
    assert context.workflow.submit("user-1", 1).status == StageStatus.PENDING_APPROVAL


def test_reject_requires_pending_stage(context):
    context.workflow.provision_user("user-1")

    with pytest.raises(NotFound):
        context.workflow.reject("reviewer-a", "user-1", 1)
    with pytest.raises(NotFound):
        context.workflow.reject("reviewer-a", "user-1", 3)


def test_list_pending_is_ordered_and_counted(context):
    for user_id in ("user-1", "user-2", "user-3"):
        _pending(context, user_id)
    _pending(context, "user-4", stage_id=2)

    total, items = context.workflow.list_pending()
    assert total == 4
    assert [r.user_id for r in items] == ["user-1", "user-2", "user-3", "user-4"]

    total, items = context.workflow.list_pending(skip=1, limit=2)
    assert total == 4
    assert [r.user_id for r in items] == ["user-2", "user-3"]

    total, items = context.workflow.list_pending(stage_id=2)
    assert total == 1
    assert items[0].user_id == "user-4"


def test_changes_are_published_after_commit(context):
    _pending(context, "user-1")
    publisher = MagicMock()
    context.store.publisher = publisher

    context.workflow.approve("reviewer-a", "user-1", 1)

    events = [c.args[0] for c in publisher.publish.call_args_list]
    assert [(e.event_type, e.new["stage_id"], e.new["status"]) for e in events] == [
        ("UPDATE", 1, "completed"),
        ("INSERT", 2, "current"),
    ]
    assert events[0].old["status"] == "pending_approval"


def test_failed_transition_publishes_nothing(context):
    context.workflow.provision_user("user-1")
    publisher = MagicMock()
    context.store.publisher = publisher

    with pytest.raises(NotFound):
        context.workflow.approve("reviewer-a", "user-1", 1)

    publisher.publish.assert_not_called()


def test_list_records_by_status_newest_first(context):
    for user_id in ("user-1", "user-2", "user-3"):
        _pending(context, user_id)
    context.workflow.approve("reviewer-a", "user-1", 1)
    context.workflow.approve("reviewer-a", "user-2", 1)

    total, items = context.workflow.list_records(status=StageStatus.COMPLETED)
    assert total == 2
    assert [r.user_id for r in items] == ["user-2", "user-1"]

    total, items = context.workflow.list_records(status=StageStatus.PENDING_APPROVAL)
    assert [r.user_id for r in items] == ["user-3"]

    total, items = context.workflow.list_records()
    assert total == 5

    total, items = context.workflow.list_records(stage_id=2, limit=1)
    assert total == 2
    assert len(items) == 1

    with pytest.raises(InvalidArgument):
        context.workflow.list_records(stage_id=0)


def test_summary_counts(context):
    _pending(context, "user-1")
    _pending(context, "user-2")
    context.workflow.approve("reviewer-a", "user-2", 1)

    summary = context.workflow.summary()
    assert summary.pending_count == 1
    assert summary.completed_count == 1
    assert summary.active_users == 2
    assert summary.active_days == 30

    # 以 31 天后为当前时间，没有活跃用户
    later = datetime.now(UTC) + timedelta(days=31)
    assert context.workflow.summary(now=later).active_users == 0
