import logging
from typing import Any, Callable, Optional, Sequence

from pydantic import ValidationError

from questflow.core.errors import InvalidArgument, PayloadTooLarge, PipelineError, Unauthorized
from questflow.schemas.quest_progress import StageKey
from questflow.schemas.response import ActionResult, BulkApproveResult, ReviewerInfo
from questflow.schemas.stats import LoginEvent
from questflow.services.approval_workflow import ApprovalWorkflow, validate_stage_id
from questflow.services.bulk_approval import BulkApprovalCoordinator, MAX_BULK_ITEMS
from questflow.services.identity import IdentityProvider, ReviewerDirectory
from questflow.services.notification_sink import LoggingNotificationSink, NotificationSink
from questflow.services.progress_cache import ProgressCache
from questflow.services.stats_aggregator import StatisticsAggregator

logger = logging.getLogger(__name__)


def failure_result(error: PipelineError, result_cls=ActionResult):
    return result_cls(success=False, error=error.message, error_code=error.code)


class QuestActions:
    """
    面向调用方的操作

    每次特权操作都重新向身份协作方确认会话和审核员身份，协作方出错时按未授权处理。
    所有异常都在这里转换成 ActionResult，不会抛给调用方。
    """

    def __init__(
        self,
        workflow: ApprovalWorkflow,
        stats: StatisticsAggregator,
        identity: IdentityProvider,
        directory: Optional[ReviewerDirectory] = None,
        sink: Optional[NotificationSink] = None,
        max_bulk_items: int = MAX_BULK_ITEMS,
    ):
        self.workflow = workflow
        self.stats = stats
        self.identity = identity
        self.directory = directory
        self.sink = sink or LoggingNotificationSink()
        self.max_bulk_items = max_bulk_items

    # --- 身份校验 ---

    def _require_session(self) -> str:
        try:
            user_id = self.identity.current_user_id()
        except Exception as e:
            logger.error(f"QuestActions: 获取会话失败: {e}", exc_info=True)
            raise Unauthorized("身份校验失败") from e
        if not user_id:
            raise Unauthorized("需要登录")
        return user_id

    def _require_reviewer(self) -> str:
        user_id = self._require_session()
        try:
            is_reviewer = self.identity.is_active_reviewer(user_id)
        except Exception as e:
            logger.error(f"QuestActions: 审核员校验失败: {e}", exc_info=True)
            raise Unauthorized("权限校验失败") from e
        if not is_reviewer:
            raise Unauthorized("没有审核员权限")
        return user_id

    def _guard(self, action: str, fn: Callable[[], Any], result_cls=ActionResult):
        try:
            return fn()
        except Unauthorized as e:
            logger.warning(f"QuestActions: {action} 被拒绝: {e.message}")
            return failure_result(e, result_cls)
        except PipelineError as e:
            logger.info(f"QuestActions: {action} 失败: {e.message}")
            return failure_result(e, result_cls)
        except Exception as e:
            logger.error(f"QuestActions: {action} 出现未预期的错误: {e}", exc_info=True)
            return result_cls(success=False, error=f"{action}处理失败", error_code="internal_error")

    def _notify(self, result: ActionResult, title: str) -> ActionResult:
        try:
            if result.success:
                self.sink.deliver("success", title, result.message or "")
            else:
                self.sink.deliver("error", title, result.error or "")
        except Exception as e:
            logger.warning(f"QuestActions: 投递通知失败: {e}")
        return result

    # --- 学习者操作 ---

    def provision(self) -> ActionResult:
        def run():
            user_id = self._require_session()
            created = self.workflow.provision_user(user_id)
            if created is None:
                return ActionResult(success=True, message="进度已存在")
            return ActionResult(success=True, message="第1阶段已开放")
        return self._guard("初始化", run)

    def submit_stage(
        self,
        stage_id: int,
        form_submitted: bool = False,
        cache: Optional[ProgressCache] = None,
    ) -> ActionResult:
        """
        提交阶段

        传入会话缓存时，先在缓存中乐观地标记为 pending_approval，
        成功后用服务端记录替换，失败则回滚。
        """
        def run():
            user_id = self._require_session()
            validate_stage_id(stage_id)
            if cache is not None:
                cache.apply_optimistic_submit(user_id, stage_id)
            try:
                record = self.workflow.submit(user_id, stage_id, form_submitted=form_submitted)
            except Exception:
                if cache is not None:
                    cache.rollback(user_id, stage_id)
                raise
            if cache is not None:
                cache.reconcile(record)
            return ActionResult(success=True, message=f"阶段{stage_id}已提交，等待审批")
        return self._guard("提交", run)

    def record_login(self) -> ActionResult:
        def run():
            user_id = self._require_session()
            self.stats.record_event(user_id, LoginEvent())
            return ActionResult(success=True, message="登录已记录")
        return self._guard("登录统计", run)

    # --- 审核员操作 ---

    def approve_quest(self, user_id: str, stage_id: int) -> ActionResult:
        return self._notify(self._approve_silently(user_id, stage_id), "批准")

    def reject_quest(self, user_id: str, stage_id: int) -> ActionResult:
        def run():
            reviewer_id = self._require_reviewer()
            self.workflow.reject(reviewer_id, user_id, stage_id)
            return ActionResult(success=True, message=f"已驳回阶段{stage_id}，用户可以重新提交")
        return self._notify(self._guard("驳回", run), "驳回")

    def bulk_approve(self, items: Sequence[Any]) -> BulkApproveResult:
        def run():
            self._require_reviewer()
            items_list = list(items or [])
            if len(items_list) > self.max_bulk_items:
                raise PayloadTooLarge(f"一次最多只能批准{self.max_bulk_items}条")
            try:
                keys = [StageKey.model_validate(item) for item in items_list]
            except ValidationError as e:
                raise InvalidArgument(f"批量批准的条目格式不正确: {e.error_count()}处错误") from e
            # 单条批准内部会再次校验身份
            coordinator = BulkApprovalCoordinator(self._approve_silently, max_items=self.max_bulk_items)
            return coordinator.run(keys)
        return self._notify(self._guard("批量批准", run, BulkApproveResult), "批量批准")

    def _approve_silently(self, user_id: str, stage_id: int) -> ActionResult:
        def run():
            reviewer_id = self._require_reviewer()
            outcome = self.workflow.approve(reviewer_id, user_id, stage_id)
            return ActionResult(
                success=True,
                message=f"已批准阶段{stage_id}",
                next_stage_unlocked=outcome.next_stage_unlocked,
            )
        return self._guard("批准", run)

    def get_reviewer_info(self) -> Optional[ReviewerInfo]:
        """返回当前审核员信息；未授权时返回 None"""
        try:
            reviewer_id = self._require_reviewer()
        except Unauthorized:
            return None
        if self.directory is None:
            return None
        return self.directory.get_reviewer(reviewer_id)
