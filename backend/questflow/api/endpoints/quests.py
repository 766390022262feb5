from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from questflow.api.deps import (
    get_actions,
    get_context,
    get_session_id,
    get_session_user,
    load_session_cache,
    require_reviewer,
    to_response,
)
from questflow.config.dependency_injection import PipelineContext
from questflow.core.errors import InvalidArgument
from questflow.schemas.quest_progress import (
    BulkApproveRequest,
    PendingListResponse,
    RecordListResponse,
    ReviewSummary,
    StageStatus,
    SubmitRequest,
    UserProgressResponse,
)
from questflow.schemas.response import ActionResult, BulkApproveResult, StandardResponse
from questflow.schemas.stats import UserStatsRead
from questflow.services.progress_cache import ProgressOverview
from questflow.services.quest_actions import QuestActions
from questflow.tasks.stats_tasks import record_login_task

router = APIRouter()


@router.post("/provision", response_model=StandardResponse[ActionResult])
def provision(actions: QuestActions = Depends(get_actions)):
    return to_response(actions.provision())


@router.post("/login", response_model=StandardResponse[ActionResult])
def record_login(
    context: PipelineContext = Depends(get_context),
    user_id: Optional[str] = Depends(get_session_user),
    actions: QuestActions = Depends(get_actions),
):
    if context.settings.ENABLE_ASYNC_STATS and user_id:
        record_login_task.delay(user_id)
        return StandardResponse(data=ActionResult(success=True, message="登录统计已排队"))
    return to_response(actions.record_login())


@router.post("/{user_id}/stages/{stage_id}/submit", response_model=StandardResponse[ActionResult])
def submit_stage(
    user_id: str,
    stage_id: int,
    body: Optional[SubmitRequest] = None,
    session_user: Optional[str] = Depends(get_session_user),
    session_id: Optional[str] = Depends(get_session_id),
    context: PipelineContext = Depends(get_context),
    actions: QuestActions = Depends(get_actions),
):
    # 只能提交自己的阶段
    if session_user and session_user != user_id:
        raise HTTPException(status_code=403, detail="Forbidden")
    form_submitted = body.form_submitted if body else False
    cache = None
    if session_id and session_user:
        cache = load_session_cache(context, session_user, session_id, restore=True)
    result = actions.submit_stage(stage_id, form_submitted=form_submitted, cache=cache)
    if cache is not None:
        cache.save()
    return to_response(result)


@router.post("/{user_id}/stages/{stage_id}/approve", response_model=StandardResponse[ActionResult])
def approve_quest(user_id: str, stage_id: int, actions: QuestActions = Depends(get_actions)):
    return to_response(actions.approve_quest(user_id, stage_id))


@router.post("/{user_id}/stages/{stage_id}/reject", response_model=StandardResponse[ActionResult])
def reject_quest(user_id: str, stage_id: int, actions: QuestActions = Depends(get_actions)):
    return to_response(actions.reject_quest(user_id, stage_id))


@router.post("/bulk-approve", response_model=StandardResponse[BulkApproveResult])
def bulk_approve(body: BulkApproveRequest, actions: QuestActions = Depends(get_actions)):
    result = actions.bulk_approve(body.items)
    # 批次已执行但全部失败时仍返回逐条结果
    if not result.success and result.error_code is None:
        return StandardResponse(data=result, message=result.message or "")
    return to_response(result)


@router.get("/pending", response_model=StandardResponse[PendingListResponse])
def list_pending(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    stage_id: Optional[int] = Query(None),
    reviewer_id: str = Depends(require_reviewer),
    context: PipelineContext = Depends(get_context),
):
    try:
        total, items = context.workflow.list_pending(skip=skip, limit=limit, stage_id=stage_id)
    except InvalidArgument as e:
        raise HTTPException(status_code=400, detail=e.message)
    return StandardResponse(data=PendingListResponse(total=total, items=items))


def _require_self_or_reviewer(context: PipelineContext, session_user: Optional[str], user_id: str) -> None:
    if not session_user:
        raise HTTPException(status_code=401, detail="Not authenticated")
    if session_user == user_id:
        return
    try:
        allowed = context.directory.is_active_reviewer(session_user)
    except Exception:
        allowed = False
    if not allowed:
        raise HTTPException(status_code=403, detail="Forbidden")


@router.get("/{user_id}/progress", response_model=StandardResponse[UserProgressResponse])
def get_user_progress(
    user_id: str,
    session_user: Optional[str] = Depends(get_session_user),
    context: PipelineContext = Depends(get_context),
):
    _require_self_or_reviewer(context, session_user, user_id)
    records = context.workflow.get_progress(user_id)
    return StandardResponse(data=UserProgressResponse(user_id=user_id, records=records))


@router.get("/{user_id}/stats", response_model=StandardResponse[UserStatsRead])
def get_user_stats(
    user_id: str,
    session_user: Optional[str] = Depends(get_session_user),
    context: PipelineContext = Depends(get_context),
):
    _require_self_or_reviewer(context, session_user, user_id)
    return StandardResponse(data=context.stats.get_stats(user_id))


@router.get("/{user_id}/overview", response_model=StandardResponse[ProgressOverview])
def get_user_overview(
    user_id: str,
    session_user: Optional[str] = Depends(get_session_user),
    session_id: Optional[str] = Depends(get_session_id),
    context: PipelineContext = Depends(get_context),
):
    """进度页视图：六个阶段的状态、统计和下一个可进入的阶段"""
    _require_self_or_reviewer(context, session_user, user_id)
    cache = load_session_cache(context, user_id, session_id or "anonymous", restore=False)
    if session_id:
        cache.save()
    return StandardResponse(data=cache.overview(user_id))


@router.get("/summary", response_model=StandardResponse[ReviewSummary])
def get_review_summary(
    active_days: int = Query(30, ge=1, le=365),
    reviewer_id: str = Depends(require_reviewer),
    context: PipelineContext = Depends(get_context),
):
    return StandardResponse(data=context.workflow.summary(active_days=active_days))


@router.get("/records", response_model=StandardResponse[RecordListResponse])
def list_records(
    status: Optional[StageStatus] = Query(None),
    stage_id: Optional[int] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    reviewer_id: str = Depends(require_reviewer),
    context: PipelineContext = Depends(get_context),
):
    try:
        total, items = context.workflow.list_records(status=status, stage_id=stage_id, skip=skip, limit=limit)
    except InvalidArgument as e:
        raise HTTPException(status_code=400, detail=e.message)
    return StandardResponse(data=RecordListResponse(total=total, items=items))
