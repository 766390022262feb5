# backend/questflow/schemas/response.py
from pydantic import BaseModel
from typing import Generic, List, Optional, TypeVar

T = TypeVar('T')
class StandardResponse(BaseModel, Generic[T]):
    """标准响应模型

    统一的API响应格式，包含状态码、消息和数据载荷。

    Attributes:
        code: 状态码，默认200表示成功
        message: 响应消息，默认'success'表示成功
        data: 数据载荷，泛型类型，可选字段
    """
    code: int = 200
    message: str = 'success'
    data: Optional[T] = None


class ActionResult(BaseModel):
    """面向调用方的操作结果

    任何操作都不会把异常抛给调用方，失败统一转换为 success=False 的结果。

    Attributes:
        success: 是否成功
        message: 成功时的可读消息
        error: 失败时的可读原因
        error_code: 失败时的错误码（对应 core/errors.py 中的 code）
        next_stage_unlocked: 批准操作是否新解锁了下一阶段
    """
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    next_stage_unlocked: Optional[bool] = None


class BulkApproveResult(ActionResult):
    """批量批准结果"""
    success_count: int = 0
    failure_count: int = 0
    total_count: int = 0
    errors: List[str] = []


class ReviewerInfo(BaseModel):
    user_id: str
    email: str
    is_active: bool
