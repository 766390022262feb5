import logging
from typing import Callable, List, Sequence

from questflow.core.errors import ConflictDuringBatch, InvalidArgument, PayloadTooLarge
from questflow.schemas.quest_progress import StageKey
from questflow.schemas.response import ActionResult, BulkApproveResult

logger = logging.getLogger(__name__)

MAX_BULK_ITEMS = 50


class BulkApprovalCoordinator:
    """
    批量批准协调器

    按顺序逐条调用单条批准操作，
    每一条的失败单独记录，不会中断整个批次。
    """

    def __init__(self, approve_item: Callable[[str, int], ActionResult], max_items: int = MAX_BULK_ITEMS):
        self.approve_item = approve_item
        self.max_items = max_items

    def run(self, items: Sequence[StageKey]) -> BulkApproveResult:
        """
        Args:
            items: 有序的 (user_id, stage_id) 列表

        Raises:
            InvalidArgument: 列表为空
            PayloadTooLarge: 超过上限，不执行任何批准
        """
        if not items:
            raise InvalidArgument("没有选择要批准的条目")
        if len(items) > self.max_items:
            raise PayloadTooLarge(f"一次最多只能批准{self.max_items}条")

        success_count = 0
        errors: List[str] = []
        for item in items:
            try:
                result = self.approve_item(item.user_id, item.stage_id)
                if result.success:
                    success_count += 1
                    continue
                failure = ConflictDuringBatch(item.user_id, item.stage_id, result.error or "未知错误")
            except Exception as e:
                logger.error(f"BulkApprovalCoordinator: 条目处理异常 {item}: {e}", exc_info=True)
                failure = ConflictDuringBatch(item.user_id, item.stage_id, str(e) or "未知错误")
            errors.append(failure.message)

        total = len(items)
        failure_count = total - success_count
        logger.info(f"BulkApprovalCoordinator: 批量批准完成 成功={success_count} 失败={failure_count}")
        return BulkApproveResult(
            success=success_count > 0,
            success_count=success_count,
            failure_count=failure_count,
            total_count=total,
            errors=errors,
            message=f"成功批准{success_count}条，失败{failure_count}条",
        )
