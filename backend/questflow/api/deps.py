import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from questflow.config.dependency_injection import PipelineContext
from questflow.schemas.response import ActionResult, StandardResponse
from questflow.services.progress_cache import ProgressCache
from questflow.services.quest_actions import QuestActions

logger = logging.getLogger(__name__)

# ActionResult.error_code -> HTTP 状态码
ERROR_STATUS_CODES = {
    "unauthorized": 403,
    "invalid_argument": 400,
    "payload_too_large": 413,
    "not_found": 404,
    "invalid_transition": 409,
    "internal_error": 500,
}


def get_context(request: Request) -> PipelineContext:
    return request.app.state.context


def get_session_user(x_user_id: Optional[str] = Header(None)) -> Optional[str]:
    """会话身份由上游认证层通过 X-User-Id 请求头传入"""
    return x_user_id or None


def get_session_id(x_session_id: Optional[str] = Header(None)) -> Optional[str]:
    """客户端会话ID，用于定位该会话的进度缓存快照"""
    return x_session_id or None


def load_session_cache(context: PipelineContext, user_id: str, session_id: str, restore: bool = True) -> ProgressCache:
    """
    取得某个用户会话的进度缓存

    restore=True 时优先使用 Redis 中的快照，没有快照时才读取权威记录；
    restore=False 时总是用权威记录重新加载。
    """
    cache = context.create_cache(f"{user_id}:{session_id}")
    if not (restore and cache.restore()):
        cache.load(context.workflow.get_progress(user_id))
    return cache


def get_actions(
    context: PipelineContext = Depends(get_context),
    user_id: Optional[str] = Depends(get_session_user),
) -> QuestActions:
    return context.actions_for(user_id)


def require_reviewer(
    context: PipelineContext = Depends(get_context),
    user_id: Optional[str] = Depends(get_session_user),
) -> str:
    if not user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        is_reviewer = context.directory.is_active_reviewer(user_id)
    except Exception as e:
        logger.error(f"审核员校验失败: {e}", exc_info=True)
        is_reviewer = False
    if not is_reviewer:
        raise HTTPException(status_code=403, detail="Reviewer access required")
    return user_id


def to_response(result: ActionResult) -> StandardResponse:
    """成功结果包装为 StandardResponse，失败结果转换为对应状态码的 HTTPException"""
    if result.success:
        return StandardResponse(data=result, message=result.message or "success")
    status_code = ERROR_STATUS_CODES.get(result.error_code or "", 400)
    raise HTTPException(status_code=status_code, detail=result.model_dump())
