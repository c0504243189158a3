"""
人工审核门 (Review Gate)
在流水线的关键阶段提交检查点等待人工审核，并管理故事圣经的锁定状态。
"""
from __future__ import annotations
import asyncio
import copy
import inspect
import itertools
import logging
import time
from dataclasses import fields, replace
from typing import Any, Callable, Dict, List, Optional

from core.exceptions import ReviewTimeoutError, StoryBibleLockedError, ValidationError
from core.schemas import (
    BatchReviewResult, Checkpoint, ReviewGateConfig, ReviewReport, StoryBible,
    STAGE_STORY_BIBLE, STATUS_APPROVED, STATUS_AWAITING_REVIEW, STATUS_MODIFIED, STATUS_REJECTED
)
from core.tokens import now_ms

logger = logging.getLogger(__name__)

DECISION_APPROVE = "approve"
DECISION_REJECT = "reject"
DECISION_MODIFY = "modify"
AUTO_APPROVED_NOTE = "Auto-approved (review gate disabled)"

class HumanInTheLoop:
    """
    人工审核门。

    notifier 为可选的通知回调，签名为 notifier(checkpoint, priority, description)，
    可以是普通函数也可以是协程函数；通知失败只记录日志，不影响提交。
    """

    def __init__(self, config: Optional[ReviewGateConfig] = None,
                 notifier: Optional[Callable[..., Any]] = None):
        self.config = copy.deepcopy(config) if config else ReviewGateConfig()
        self.notifier = notifier
        self._checkpoints: Dict[str, Checkpoint] = {}
        self._story_bible: Optional[StoryBible] = None
        self._review_events: Dict[str, asyncio.Event] = {}
        self._waiter_counts: Dict[str, int] = {}
        self._sequence = itertools.count(1)

    @classmethod
    def from_config(cls, full_config: dict, notifier: Optional[Callable[..., Any]] = None) -> "HumanInTheLoop":
        """根据 config.yaml 的 'review_gate' 段构建审核门"""
        section = full_config.get("review_gate") or {}
        known = {f.name for f in fields(ReviewGateConfig)}
        return cls(config=ReviewGateConfig(**{k: v for k, v in section.items() if k in known}), notifier=notifier)

    def _new_checkpoint_id(self, stage: str, suffix: str = "") -> str:
        # 同一毫秒内多次提交也必须得到不同 ID
        return f"{stage}_{now_ms()}_{next(self._sequence)}{suffix}"

    # --- 提交与审核 ---

    async def submit_for_review(self, stage: str, data: Any, priority: Optional[str] = None,
                                description: Optional[str] = None) -> Checkpoint:
        """提交检查点等待审核。审核门关闭时直接自动通过。"""
        if not self.config.enabled:
            return self._auto_approve(stage, data)

        checkpoint = Checkpoint(
            id=self._new_checkpoint_id(stage),
            stage=stage,
            status=STATUS_AWAITING_REVIEW,
            data=data,
            submitted_at=now_ms(),
        )
        self._checkpoints[checkpoint.id] = checkpoint
        logger.info(f"已提交阶段 '{stage}' 等待审核: {checkpoint.id}")

        await self._notify_reviewers(checkpoint, priority, description)
        return checkpoint

    def _auto_approve(self, stage: str, data: Any) -> Checkpoint:
        bible = self._build_story_bible(data) if stage == STAGE_STORY_BIBLE else None
        now = now_ms()
        checkpoint = Checkpoint(
            id=self._new_checkpoint_id(stage, suffix="_auto"),
            stage=stage,
            status=STATUS_APPROVED,
            data=data,
            submitted_at=now,
            reviewed_at=now,
            reviewer_notes=AUTO_APPROVED_NOTE,
        )
        self._checkpoints[checkpoint.id] = checkpoint

        if bible is not None:
            self._lock(bible)

        logger.info(f"审核门已关闭，阶段 '{stage}' 自动通过: {checkpoint.id}")
        return checkpoint

    async def _notify_reviewers(self, checkpoint: Checkpoint, priority: Optional[str], description: Optional[str]):
        if self.notifier is None:
            logger.debug(f"检查点 {checkpoint.id} 无通知回调 ({priority or 'normal'} priority)")
            return
        try:
            result = self.notifier(checkpoint, priority, description)
            if inspect.isawaitable(result):
                await result
            logger.info(f"已发送检查点 {checkpoint.id} 的审核通知 ({priority or 'normal'} priority)")
        except Exception as e:
            logger.error(f"发送检查点 {checkpoint.id} 的审核通知失败: {e}", exc_info=True)

    def review(self, checkpoint_id: str, decision: str, notes: Optional[str] = None,
               modifications: Optional[dict] = None) -> Checkpoint:
        """
        审核检查点。

        Args:
            decision: 'approve' / 'reject' / 'modify'
            modifications: 仅 'modify' 使用，对字典数据做浅合并，其他类型的数据被整体替换。
        """
        checkpoint = self._checkpoints.get(checkpoint_id)
        if checkpoint is None:
            raise ValidationError(f"Checkpoint {checkpoint_id} not found")
        if checkpoint.status != STATUS_AWAITING_REVIEW:
            raise ValidationError(f"Checkpoint {checkpoint_id} is not awaiting review")
        if decision not in (DECISION_APPROVE, DECISION_REJECT, DECISION_MODIFY):
            raise ValidationError(f"Unknown review decision: {decision}")

        # 先算出结果并校验，校验失败时检查点保持原状
        data = checkpoint.data
        if decision == DECISION_MODIFY:
            if isinstance(data, dict) and isinstance(modifications, dict):
                data = {**data, **modifications}
            elif modifications is not None:
                data = modifications

        bible = None
        if checkpoint.stage == STAGE_STORY_BIBLE and decision != DECISION_REJECT:
            bible = self._build_story_bible(data)

        checkpoint.reviewed_at = now_ms()
        checkpoint.reviewer_notes = notes

        if decision == DECISION_APPROVE:
            checkpoint.status = STATUS_APPROVED
            if bible is not None and self.config.auto_lock_after_approval:
                self._lock(bible)
        elif decision == DECISION_REJECT:
            checkpoint.status = STATUS_REJECTED
        else:
            checkpoint.status = STATUS_MODIFIED
            checkpoint.modifications = modifications
            checkpoint.data = data

        logger.info(f"检查点 {checkpoint_id} 审核结果: {decision}")
        self._wake_waiters(checkpoint_id)
        return checkpoint

    def batch_review(self, checkpoint_ids: List[str], decision: str,
                     notes: Optional[str] = None) -> BatchReviewResult:
        """批量审核。单个失败只记录在 failed 中，不中断其余条目。"""
        result = BatchReviewResult()
        for checkpoint_id in checkpoint_ids:
            try:
                result.reviewed.append(self.review(checkpoint_id, decision, notes=notes))
            except Exception as e:
                logger.error(f"批量审核 {checkpoint_id} 失败: {e}", exc_info=not isinstance(e, ValidationError))
                result.failed[checkpoint_id] = str(e)
        return result

    # --- 等待 ---

    def _wake_waiters(self, checkpoint_id: str):
        event = self._review_events.get(checkpoint_id)
        if event is not None:
            event.set()

    async def wait_for_review(self, checkpoint_id: str, timeout_ms: int = 5 * 60 * 1000,
                              poll_interval: float = 1.0) -> Checkpoint:
        """
        等待检查点离开 awaiting_review 状态。
        review() 会立即唤醒等待者，否则每隔 poll_interval 秒检查一次。
        同一检查点可以有多个等待者，它们共用一个事件。
        """
        start = time.monotonic()
        event = self._review_events.setdefault(checkpoint_id, asyncio.Event())
        self._waiter_counts[checkpoint_id] = self._waiter_counts.get(checkpoint_id, 0) + 1
        try:
            while True:
                checkpoint = self._checkpoints.get(checkpoint_id)
                if checkpoint is None:
                    raise ValidationError(f"Checkpoint {checkpoint_id} not found")
                if checkpoint.status != STATUS_AWAITING_REVIEW:
                    return checkpoint

                remaining = timeout_ms / 1000 - (time.monotonic() - start)
                if remaining <= 0:
                    raise ReviewTimeoutError(f"Timeout waiting for review of {checkpoint_id}")

                event.clear()
                try:
                    await asyncio.wait_for(event.wait(), timeout=min(poll_interval, remaining))
                except asyncio.TimeoutError:
                    pass
        finally:
            self._waiter_counts[checkpoint_id] -= 1
            if self._waiter_counts[checkpoint_id] == 0:
                del self._waiter_counts[checkpoint_id]
                self._review_events.pop(checkpoint_id, None)

    # --- 故事圣经 ---

    @staticmethod
    def _build_story_bible(data: Any) -> StoryBible:
        if data is not None and not isinstance(data, (dict, StoryBible)):
            raise ValidationError(f"Story bible data must be an object, got {type(data).__name__}")
        return StoryBible.from_data(copy.deepcopy(data))

    def _lock(self, bible: StoryBible):
        bible.locked = True
        bible.locked_at = now_ms()
        self._story_bible = bible
        logger.info("故事圣经已锁定。")

    def lock_story_bible(self, data: Any):
        """锁定故事圣经，存储一份独立副本。数据不是对象时抛出 ValidationError。"""
        self._lock(self._build_story_bible(data))

    def unlock_story_bible(self, reason: str):
        """
        解锁故事圣经。
        在 lock_timeout 之前解锁只会记录警告，仍然会解锁。
        """
        if self._story_bible is None or not self._story_bible.locked:
            return

        if self._story_bible.locked_at is not None:
            elapsed = now_ms() - self._story_bible.locked_at
            if elapsed < self.config.lock_timeout:
                logger.warning(f"在锁定超时之前解锁故事圣经: {reason}")

        self._story_bible.locked = False
        logger.info(f"故事圣经已解锁: {reason}")

    def is_story_bible_locked(self) -> bool:
        return self._story_bible is not None and self._story_bible.locked

    def get_locked_story_bible(self) -> Optional[StoryBible]:
        """返回故事圣经的副本，调用方对副本的修改不会影响已锁定的数据"""
        return copy.deepcopy(self._story_bible)

    def update_story_bible(self, changes: dict) -> StoryBible:
        """修改故事圣经。锁定期间抛出 StoryBibleLockedError，必须先显式解锁。"""
        if self.is_story_bible_locked():
            raise StoryBibleLockedError("Story bible is locked; unlock it before making changes")

        current = self._story_bible.to_dict() if self._story_bible else {}
        self._story_bible = StoryBible.from_data({**current, **changes})
        logger.info(f"故事圣经已更新字段: {', '.join(changes.keys())}")
        return copy.deepcopy(self._story_bible)

    # --- 查询 ---

    def get_checkpoint(self, checkpoint_id: str) -> Optional[Checkpoint]:
        return self._checkpoints.get(checkpoint_id)

    def get_all_checkpoints(self) -> List[Checkpoint]:
        return list(self._checkpoints.values())

    def get_pending_checkpoints(self) -> List[Checkpoint]:
        return [cp for cp in self._checkpoints.values() if cp.status == STATUS_AWAITING_REVIEW]

    def is_stage_required(self, stage: str) -> bool:
        return stage in self.config.required_stages

    def generate_report(self) -> ReviewReport:
        """生成审核报告，平均审核时间单位为毫秒"""
        checkpoints = self.get_all_checkpoints()
        reviewed = [cp for cp in checkpoints if cp.reviewed_at is not None]
        total_review_time = sum(cp.reviewed_at - cp.submitted_at for cp in reviewed)

        return ReviewReport(
            total_checkpoints=len(checkpoints),
            pending_count=sum(1 for cp in checkpoints if cp.status == STATUS_AWAITING_REVIEW),
            approved_count=sum(1 for cp in checkpoints if cp.status == STATUS_APPROVED),
            rejected_count=sum(1 for cp in checkpoints if cp.status == STATUS_REJECTED),
            modified_count=sum(1 for cp in checkpoints if cp.status == STATUS_MODIFIED),
            average_review_time=total_review_time / len(reviewed) if reviewed else 0.0,
        )

    # --- 配置与清理 ---

    def update_config(self, **changes):
        self.config = replace(self.config, **changes)

    def get_config(self) -> ReviewGateConfig:
        return copy.deepcopy(self.config)

    def remove_checkpoint(self, checkpoint_id: str) -> bool:
        removed = self._checkpoints.pop(checkpoint_id, None) is not None
        # 让等待者立即发现检查点已不存在
        self._wake_waiters(checkpoint_id)
        return removed

    def clear(self):
        """清除所有检查点与故事圣经"""
        checkpoint_ids = list(self._checkpoints.keys())
        self._checkpoints.clear()
        self._story_bible = None
        for checkpoint_id in checkpoint_ids:
            self._wake_waiters(checkpoint_id)
