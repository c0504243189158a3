"""
流水线编排 (Pipeline Orchestrator)
把分块、检索、模型路由与人工审核串成四个阶段：
故事圣经 -> 角色设计 -> 场景大纲 -> 分镜脚本。
每个阶段产出后按配置送审，被驳回或出错时在该阶段停止，之前的阶段结果保持有效。
启用持久化时可以从已保存的阶段产出断点续跑。
"""
from __future__ import annotations
import hashlib
import inspect
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.exceptions import OutputParseError, PipelineError, StageRejectedError, ValidationError
from core.schemas import (
    Chunk, PipelineRun, RAGContext, RouteResult, StageOutcome, StoryBible,
    REVIEW_STAGES, STAGE_CHARACTER_DESIGN, STAGE_SCENE_OUTLINE, STAGE_SHOT_LIST, STAGE_STORY_BIBLE,
    STATUS_ACCEPTED, STATUS_APPROVED, STATUS_AWAITING_REVIEW, STATUS_MODIFIED, STATUS_REJECTED
)
from infra.llm.embeddings import get_embedding_model
from infra.llm.factory import TextGenerator
from infra.storage.sql_db import SQLStore
from infra.utils.json_repair import repair_and_parse
from infra.utils.parse_cache import ParseCache
from infra.utils.text_splitters import SemanticChunker, get_text_splitter
from prompts.manager import get_prompt_template
from services.model_router import ModelRouter
from services.retrieval_service import RAGRetrieval, truncate_by_tokens
from services.review_gate import HumanInTheLoop

logger = logging.getLogger(__name__)

STAGE_TASK_TYPES = {
    STAGE_STORY_BIBLE: "global_summary",
    STAGE_CHARACTER_DESIGN: "character_analysis",
    STAGE_SCENE_OUTLINE: "scene_analysis",
    STAGE_SHOT_LIST: "shot_generation",
}

# 各阶段在整体进度中所占的百分比区间
STAGE_PROGRESS = {
    STAGE_STORY_BIBLE: (0, 25),
    STAGE_CHARACTER_DESIGN: (25, 50),
    STAGE_SCENE_OUTLINE: (50, 70),
    STAGE_SHOT_LIST: (70, 95),
}
PROGRESS_COMPLETED = "completed"
PROGRESS_ERROR = "error"

# 可以作为续跑起点的已保存状态
RESUMABLE_STATUSES = (STATUS_APPROVED, STATUS_MODIFIED, STATUS_ACCEPTED)

STORY_BIBLE_QUERY = "主要角色 人物身份 主要场景 故事背景 整体基调 核心冲突"

DEFAULT_RAG_OPTIONS = {
    "top_k": 8,
    "min_score": 0.3,
    "max_tokens": 6000,
    "max_context_length": 8000,
}

def _item_name(item: Any) -> str:
    if isinstance(item, dict):
        return str(item.get("name", "")).strip()
    return str(item).strip()

def _bible_text(bible: StoryBible) -> str:
    payload = bible.to_dict()
    payload.pop("locked", None)
    payload.pop("locked_at", None)
    return json.dumps(payload, ensure_ascii=False, indent=2)

def _source_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()

def _expect_object(stage: str, name: str):
    def validate(data: Any) -> dict:
        if not isinstance(data, dict):
            raise OutputParseError(f"{stage} output for {name} must be a JSON object")
        data.setdefault("name", name)
        return data
    return validate

def _expect_shots(name: str):
    def validate(data: Any) -> list:
        if isinstance(data, dict):
            data = data.get("shots", [data])
        if not isinstance(data, list):
            raise OutputParseError(f"Shot list for {name} must be a JSON array")
        return data
    return validate

class PipelineOrchestrator:
    """
    流水线编排器。
    一组组件实例同一时间只支持一次运行；每次运行应使用独立构建的编排器。

    progress 为可选的进度回调，签名为 progress(stage, percent, message)，
    可以是普通函数也可以是协程函数；回调失败只记录日志。
    """

    def __init__(self, chunker: SemanticChunker, retrieval: RAGRetrieval, router: ModelRouter,
                 review_gate: HumanInTheLoop, store: Optional[SQLStore] = None,
                 rag_options: Optional[dict] = None, review_timeout_ms: int = 5 * 60 * 1000,
                 poll_interval: float = 1.0, cache: Optional[ParseCache] = None,
                 progress: Optional[Callable[..., Any]] = None):
        self.chunker = chunker
        self.retrieval = retrieval
        self.router = router
        self.review_gate = review_gate
        self.store = store
        self.rag_options = {**DEFAULT_RAG_OPTIONS, **(rag_options or {})}
        self.review_timeout_ms = review_timeout_ms
        self.poll_interval = poll_interval
        self.cache = cache
        self.progress = progress

        self.chunks: List[Chunk] = []
        self.source_hash: Optional[str] = None
        self.current_run = PipelineRun()
        self._accepted: Dict[str, Any] = {}

    @classmethod
    def from_config(cls, full_config: dict, text_generator: Optional[TextGenerator] = None,
                    notifier: Optional[Callable[..., Any]] = None,
                    progress: Optional[Callable[..., Any]] = None) -> "PipelineOrchestrator":
        """根据完整配置组装所有组件"""
        review_section = full_config.get("review_gate") or {}
        return cls(
            chunker=get_text_splitter(full_config),
            retrieval=RAGRetrieval(get_embedding_model(full_config)),
            router=ModelRouter.from_config(full_config, text_generator=text_generator),
            review_gate=HumanInTheLoop.from_config(full_config, notifier=notifier),
            store=SQLStore.from_config(full_config),
            rag_options=full_config.get("rag"),
            review_timeout_ms=int(review_section.get("wait_timeout", 5 * 60 * 1000)),
            poll_interval=float(review_section.get("poll_interval", 1.0)),
            cache=ParseCache.from_config(full_config),
            progress=progress,
        )

    # --- 准备 ---

    async def prepare(self, text: str) -> List[Chunk]:
        """分块并重建检索索引，同时重置运行状态"""
        chunks = self.chunker.chunk(text)
        if not chunks:
            raise ValidationError("Input text is empty, nothing to analyse")

        await self.retrieval.build_from_chunks(chunks)
        self.chunks = chunks
        self.source_hash = _source_hash(text)
        self.current_run = PipelineRun()
        self._accepted = {}
        logger.info(f"原文已切分为 {len(chunks)} 个分块并建立索引。")
        return chunks

    async def run(self, text: str, resume: bool = False) -> PipelineRun:
        """
        完整运行四个阶段。
        某阶段被驳回或出错时抛出对应的 PipelineError，current_run 中保留之前阶段的结果与 halted_stage。

        Args:
            resume: 从持久化存储中恢复同一原文已通过的阶段，只执行其后的阶段。
        """
        await self.prepare(text)
        restored = self._restore_saved_stages() if resume else []
        for stage in REVIEW_STAGES:
            if stage in restored:
                await self._report(stage, STAGE_PROGRESS[stage][1], f"阶段 {stage} 已从保存的产出恢复，跳过")
                continue
            await self.run_stage(stage)

        await self._report(PROGRESS_COMPLETED, 100, "解析完成")
        logger.info(f"流水线运行完成，总成本: ${self.current_run.total_cost:.4f}")
        return self.current_run

    def _restore_saved_stages(self) -> List[str]:
        """按阶段顺序恢复已保存的产出，遇到第一个缺失的阶段即停止"""
        if self.store is None:
            logger.warning("未启用持久化，无法断点续跑，将从头运行。")
            return []

        restored = []
        for stage in REVIEW_STAGES:
            record = self.store.get_latest_stage_output(stage, self.source_hash)
            if record is None or record["status"] not in RESUMABLE_STATUSES:
                break

            outcome = StageOutcome(stage=stage, data=record["data"], resumed=True)
            self._accepted[stage] = outcome.data
            self.current_run.stages[stage] = outcome
            self.current_run.cost_breakdown[stage] = 0.0
            if stage == STAGE_STORY_BIBLE:
                self._relock_story_bible(outcome.data)
            restored.append(stage)

        if restored:
            logger.info(f"已从保存的产出恢复阶段: {', '.join(restored)}")
        return restored

    def _relock_story_bible(self, data: Any):
        gate = self.review_gate
        if gate.is_story_bible_locked():
            return
        if gate.config.auto_lock_after_approval or not gate.config.enabled:
            gate.lock_story_bible(data)

    async def run_stage(self, stage: str) -> StageOutcome:
        """运行单个阶段（逐步模式）"""
        handlers = {
            STAGE_STORY_BIBLE: self._run_story_bible,
            STAGE_CHARACTER_DESIGN: self._run_character_design,
            STAGE_SCENE_OUTLINE: self._run_scene_outline,
            STAGE_SHOT_LIST: self._run_shot_list,
        }
        handler = handlers.get(stage)
        if handler is None:
            raise ValidationError(f"Unknown stage: {stage}")
        if self.retrieval.vector_store.size() == 0:
            raise ValidationError("No indexed text; call prepare() first")

        logger.info(f"开始执行阶段: {stage}")
        start, end = STAGE_PROGRESS[stage]
        await self._report(stage, start, f"开始执行阶段: {stage}")

        try:
            data, route_results = await handler()
            outcome = StageOutcome(stage=stage, data=data, route_results=route_results)
            self.current_run.cost_breakdown[stage] = outcome.cost
            outcome.checkpoint = await self._pass_review_gate(stage, data)
        except PipelineError as e:
            self.current_run.halted_stage = stage
            logger.error(f"阶段 {stage} 停止: {e}")
            await self._report(PROGRESS_ERROR, start, f"阶段 {stage} 失败: {e}")
            raise

        if outcome.checkpoint is not None:
            outcome.data = outcome.checkpoint.data
        self._accepted[stage] = outcome.data
        self.current_run.stages[stage] = outcome
        if self.current_run.halted_stage == stage:
            self.current_run.halted_stage = None
        self._persist(outcome)
        await self._report(stage, end, f"阶段 {stage} 完成")
        logger.info(f"阶段 {stage} 完成，成本: ${outcome.cost:.4f}")
        return outcome

    # --- 进度 ---

    async def _report(self, stage: str, percent: float, message: str):
        if self.progress is None:
            return
        try:
            result = self.progress(stage, percent, message)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"进度回调失败 ({stage} {percent:.0f}%): {e}", exc_info=True)

    async def _report_item(self, stage: str, index: int, total: int, message: str):
        start, end = STAGE_PROGRESS[stage]
        await self._report(stage, start + (index / total) * (end - start), message)

    # --- 审核 ---

    async def _pass_review_gate(self, stage: str, data: Any):
        gate = self.review_gate
        if not (gate.is_stage_required(stage) or not gate.config.enabled):
            return None

        checkpoint = await gate.submit_for_review(stage, data, description=f"{stage} 阶段产出")
        if checkpoint.status == STATUS_AWAITING_REVIEW:
            checkpoint = await gate.wait_for_review(
                checkpoint.id, timeout_ms=self.review_timeout_ms, poll_interval=self.poll_interval
            )

        if checkpoint.status == STATUS_REJECTED:
            logger.warning(f"阶段 {stage} 被驳回: {checkpoint.reviewer_notes}")
            raise StageRejectedError(stage, checkpoint.id, checkpoint.reviewer_notes)

        # 修改后通过的故事圣经同样需要锁定，后续阶段才能读取
        if (stage == STAGE_STORY_BIBLE and checkpoint.status == STATUS_MODIFIED
                and gate.config.auto_lock_after_approval and not gate.is_story_bible_locked()):
            gate.lock_story_bible(checkpoint.data)
        return checkpoint

    def _persist(self, outcome: StageOutcome):
        if self.store is None:
            return
        status = outcome.checkpoint.status if outcome.checkpoint else STATUS_ACCEPTED
        checkpoint_id = outcome.checkpoint.id if outcome.checkpoint else None
        self.store.save_stage_output(
            outcome.stage, outcome.data, status, checkpoint_id, outcome.cost, self.source_hash
        )
        if outcome.stage == STAGE_STORY_BIBLE and self.review_gate.is_story_bible_locked():
            self.store.save_story_bible(self.review_gate.get_locked_story_bible())

    # --- 阶段实现 ---

    def _story_bible(self) -> StoryBible:
        """已锁定时读取锁定副本，否则读取本次运行已接受的故事圣经"""
        locked = self.review_gate.get_locked_story_bible()
        if locked is not None and locked.locked:
            return locked
        if STAGE_STORY_BIBLE in self._accepted:
            return StoryBible.from_data(self._accepted[STAGE_STORY_BIBLE])
        raise ValidationError("Story bible is not available; run the story_bible stage first")

    def _augment(self, base_prompt: str, context: RAGContext) -> str:
        return self.retrieval.generate_augmented_prompt(
            base_prompt, context, max_context_length=self.rag_options["max_context_length"]
        )

    def _retrieval_kwargs(self) -> dict:
        return {
            "top_k": self.rag_options["top_k"],
            "min_score": self.rag_options["min_score"],
            "max_tokens": self.rag_options["max_tokens"],
        }

    async def _execute(self, stage: str, prompt: str) -> Tuple[Any, RouteResult]:
        system_prompt = get_prompt_template("system_prompt").format()
        result = await self.router.route_and_execute(STAGE_TASK_TYPES[stage], prompt, system_prompt=system_prompt)
        logger.debug(f"阶段 {stage} 由模型 {result.model_used} 生成，耗时 {result.latency}ms")
        return repair_and_parse(result.content), result

    async def _execute_item(self, stage: str, name: str, prompt: str,
                            validate: Callable[[Any], Any]) -> Tuple[Any, Optional[RouteResult]]:
        """
        执行单个条目（角色 / 场景 / 分镜）。
        相同阶段、名称与提示词的结果从缓存读取，此时不产生模型调用，RouteResult 为 None。
        """
        key = ParseCache.make_key(stage, name, prompt)
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                logger.info(f"命中解析缓存: {stage} / {name}")
                return cached, None

        data, result = await self._execute(stage, prompt)
        data = validate(data)
        if self.cache is not None:
            self.cache.set(key, data)
        return data, result

    async def _broad_context(self) -> RAGContext:
        """全局检索；相似度过滤后为空时按原文顺序取前若干分块"""
        context = await self.retrieval.retrieve(STORY_BIBLE_QUERY, **self._retrieval_kwargs())
        if context.relevant_chunks:
            return context

        docs = truncate_by_tokens(self.retrieval.vector_store.get_all(), self.rag_options["max_tokens"])
        logger.info(f"全局检索无命中，改用原文前 {len(docs)} 个分块。")
        return RAGContext(query=STORY_BIBLE_QUERY, relevant_chunks=docs)

    async def _run_story_bible(self):
        context = await self._broad_context()
        base_prompt = get_prompt_template("story_bible").format()
        data, result = await self._execute(STAGE_STORY_BIBLE, self._augment(base_prompt, context))
        if not isinstance(data, dict):
            raise OutputParseError(f"Story bible output must be a JSON object, got {type(data).__name__}")

        bible = StoryBible.from_data(data).to_dict()
        bible.pop("locked", None)
        bible.pop("locked_at", None)
        return bible, [result]

    async def _run_character_design(self):
        bible = self._story_bible()
        bible_text = _bible_text(bible)
        names = [n for n in (_item_name(item) for item in bible.characters) if n]
        characters, results = [], []

        for index, name in enumerate(names):
            await self._report_item(STAGE_CHARACTER_DESIGN, index, len(names), f"正在分析角色: {name}")
            context = await self.retrieval.retrieve_for_character(name, **self._retrieval_kwargs())
            base_prompt = get_prompt_template("character_design").format(story_bible=bible_text, character_name=name)
            data, result = await self._execute_item(
                STAGE_CHARACTER_DESIGN, name, self._augment(base_prompt, context),
                _expect_object(STAGE_CHARACTER_DESIGN, name),
            )
            characters.append(data)
            if result is not None:
                results.append(result)

        return characters, results

    async def _run_scene_outline(self):
        bible = self._story_bible()
        bible_text = _bible_text(bible)
        items = [item for item in bible.scenes if _item_name(item)]
        scenes, results = [], []

        for index, item in enumerate(items):
            name = _item_name(item)
            await self._report_item(STAGE_SCENE_OUTLINE, index, len(items), f"正在分析场景: {name}")
            description = item.get("description", "") if isinstance(item, dict) else ""
            context = await self.retrieval.retrieve_for_scene(description or name, **self._retrieval_kwargs())
            base_prompt = get_prompt_template("scene_outline").format(story_bible=bible_text, scene_name=name)
            data, result = await self._execute_item(
                STAGE_SCENE_OUTLINE, name, self._augment(base_prompt, context),
                _expect_object(STAGE_SCENE_OUTLINE, name),
            )
            scenes.append(data)
            if result is not None:
                results.append(result)

        return scenes, results

    async def _run_shot_list(self):
        scenes = self._accepted.get(STAGE_SCENE_OUTLINE)
        if scenes is None:
            raise ValidationError("Scene outline is not available; run the scene_outline stage first")

        shot_lists, results = [], []
        for index, scene in enumerate(scenes):
            name = _item_name(scene)
            await self._report_item(STAGE_SHOT_LIST, index, len(scenes), f"正在生成分镜: {name}")
            description = scene.get("description", "") if isinstance(scene, dict) else ""
            characters = scene.get("characters", []) if isinstance(scene, dict) else []

            context = await self.retrieval.retrieve_for_scene(description or name, **self._retrieval_kwargs())
            base_prompt = get_prompt_template("shot_list").format(
                scene_name=name,
                scene_description=description,
                characters="、".join(str(c) for c in characters) or "无",
            )
            data, result = await self._execute_item(
                STAGE_SHOT_LIST, name, self._augment(base_prompt, context), _expect_shots(name)
            )
            shot_lists.append({"scene": name, "shots": data})
            if result is not None:
                results.append(result)

        return shot_lists, results
