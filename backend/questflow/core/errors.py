"""
审批流程的错误类型

所有领域错误都继承自 PipelineError，并携带一个稳定的 code，
面向调用方的操作（services/quest_actions.py）会把它们转换为结果对象，
API 层再根据 code 映射 HTTP 状态码。
"""


class PipelineError(Exception):
    code = "pipeline_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class Unauthorized(PipelineError):
    """没有会话，或当前用户不是有效的审核员"""
    code = "unauthorized"


class InvalidArgument(PipelineError):
    """参数不合法：阶段ID越界、空批次等"""
    code = "invalid_argument"


class PayloadTooLarge(InvalidArgument):
    code = "payload_too_large"


class NotFound(PipelineError):
    """找不到满足前置状态的记录（包括被其他审核员抢先处理的情况）"""
    code = "not_found"


class InvalidTransition(PipelineError):
    code = "invalid_transition"


class ConflictDuringBatch(PipelineError):
    """批量操作中单个条目的失败，只记录不中断批次"""
    code = "conflict_during_batch"

    def __init__(self, user_id: str, stage_id, reason: str):
        super().__init__(f"user {user_id} stage {stage_id}: {reason}")
        self.user_id = user_id
        self.stage_id = stage_id
        self.reason = reason


class TransientFeedError(PipelineError):
    """变更通道断开或超时，由 ChangeNotifier 自动重连"""
    code = "transient_feed_error"
