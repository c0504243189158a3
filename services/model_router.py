"""
模型路由 (Model Router)
根据任务类型在已注册模型中选择得分最高者：
上下文窗口与必需能力是硬性门槛，永远不会因为价格而放宽；价格与上下文窗口只作为软性加分项。
"""
from __future__ import annotations
import copy
import logging
import time
from dataclasses import fields, replace
from typing import Dict, List, Optional

from core.exceptions import NoSuitableModelError, PipelineError, ProviderError, ValidationError
from core.schemas import (
    ModelRuntimeEntry, RouteResult, RoutingAlternative, RoutingDecision, TaskRequirement
)
from core.tokens import estimate_tokens
from infra.llm.factory import LangChainTextGenerator, TextGenerator

logger = logging.getLogger(__name__)

# 用户未配置价格时使用的默认值（美元 / 1K tokens）
DEFAULT_COST_PER_1K_INPUT = 0.01
DEFAULT_COST_PER_1K_OUTPUT = 0.03
DEFAULT_CONTEXT_WINDOW = 32000
DEFAULT_MAX_TOKENS = 4000
DEFAULT_RATE_LIMIT = 10
DEFAULT_ESTIMATED_TIME = 3000

LONG_CONTEXT_THRESHOLD = 100000
CHEAP_THRESHOLD = 0.005
ACCURATE_THRESHOLD = 0.02
CHINESE_PROVIDERS = ("aliyun", "moonshot", "baidu", "volcengine", "modelscope", "deepseek", "zhipu")

DEFAULT_TASK_REQUIREMENTS: Dict[str, TaskRequirement] = {
    "global_summary": TaskRequirement(
        required_capabilities=["long_context"],
        preferred_capabilities=["chinese", "creative"],
        min_context_window=100000,
        description="需要处理长文本，生成长摘要",
    ),
    "entity_extraction": TaskRequirement(
        required_capabilities=["json_mode"],
        preferred_capabilities=["cheap", "fast", "accurate"],
        min_context_window=8000,
        description="结构化提取，需要JSON输出",
    ),
    "character_analysis": TaskRequirement(
        required_capabilities=["creative"],
        preferred_capabilities=["accurate", "chinese"],
        min_context_window=16000,
        description="创意分析，需要深度理解",
    ),
    "scene_analysis": TaskRequirement(
        required_capabilities=["creative"],
        preferred_capabilities=["accurate", "chinese"],
        min_context_window=16000,
        description="场景分析，视觉描述",
    ),
    "shot_generation": TaskRequirement(
        required_capabilities=["creative"],
        preferred_capabilities=["accurate"],
        min_context_window=8000,
        description="分镜生成，创意输出",
    ),
    "validation": TaskRequirement(
        required_capabilities=["accurate"],
        preferred_capabilities=["cheap", "fast"],
        min_context_window=4000,
        description="验证检查，需要准确",
    ),
}

def infer_capabilities(config: dict, context_window: int, average_cost: float) -> set:
    """根据上下文窗口、平均价格、提供商与声明的 JSON 支持推断能力标签"""
    declared = config.get("capabilities") or {}
    caps = set()

    if context_window >= LONG_CONTEXT_THRESHOLD:
        caps.add("long_context")
    if average_cost < CHEAP_THRESHOLD:
        caps.add("cheap")
    if average_cost > ACCURATE_THRESHOLD:
        caps.add("accurate")
    if declared.get("supports_json_mode"):
        caps.add("json_mode")
    if declared.get("supports_fast"):
        caps.add("fast")
    if config.get("provider") in CHINESE_PROVIDERS:
        caps.add("chinese")
    if config.get("type", "llm") == "llm":
        caps.add("creative")
    caps.update(declared.get("extra_capabilities") or [])

    return caps

class ModelRouter:
    """
    能力与成本感知的模型路由器。
    每次流水线运行应持有独立的实例。
    """

    def __init__(self, text_generator: Optional[TextGenerator] = None,
                 task_requirements: Optional[Dict[str, TaskRequirement]] = None):
        self.text_generator = text_generator or LangChainTextGenerator()
        self._models: Dict[str, ModelRuntimeEntry] = {}
        source = task_requirements if task_requirements is not None else DEFAULT_TASK_REQUIREMENTS
        self.task_requirements: Dict[str, TaskRequirement] = copy.deepcopy(source)

    @classmethod
    def from_config(cls, full_config: dict, text_generator: Optional[TextGenerator] = None) -> "ModelRouter":
        """根据 config.yaml 的 'task_requirements' 与 'models' 段构建路由器"""
        router = cls(text_generator=text_generator)
        for task_type, requirement in (full_config.get("task_requirements") or {}).items():
            if task_type in router.task_requirements:
                router.update_task_requirement(task_type, **requirement)
            else:
                router.add_task_type(task_type, TaskRequirement(**requirement))
        router.register_models_from_config(full_config)
        return router

    # --- 注册 ---

    def register_model(self, model_id: str, config: dict):
        """注册模型（同一 ID 重复注册会整体替换，能力标签重新推断）"""
        cost_in = config.get("cost_per_1k_input")
        cost_out = config.get("cost_per_1k_output")
        cost_in = DEFAULT_COST_PER_1K_INPUT if cost_in is None else float(cost_in)
        cost_out = DEFAULT_COST_PER_1K_OUTPUT if cost_out is None else float(cost_out)

        declared = config.get("capabilities") or {}
        context_window = int(declared.get("max_context_length", DEFAULT_CONTEXT_WINDOW))
        max_tokens = int(declared.get("max_tokens", DEFAULT_MAX_TOKENS))

        entry = ModelRuntimeEntry(
            id=model_id,
            name=config.get("name", model_id),
            provider=config.get("provider", "unknown"),
            max_tokens=max_tokens,
            context_window=context_window,
            cost_per_1k_input=cost_in,
            cost_per_1k_output=cost_out,
            capabilities=infer_capabilities(config, context_window, (cost_in + cost_out) / 2),
            rate_limit=int(config.get("rate_limit", DEFAULT_RATE_LIMIT)),
            raw_config=dict(config),
        )
        if model_id in self._models:
            logger.info(f"模型 '{model_id}' 已存在，将被替换。")
            del self._models[model_id]
        self._models[model_id] = entry
        logger.info(f"已注册模型 '{model_id}'，能力: {sorted(entry.capabilities)}")

    def register_models_from_config(self, full_config: dict):
        for model_id, model_config in (full_config.get("models") or {}).items():
            if model_config.get("enabled", True):
                self.register_model(model_id, model_config)

    def unregister_model(self, model_id: str):
        if self._models.pop(model_id, None) is not None:
            logger.info(f"已注销模型 '{model_id}'。")

    def get_available_models(self) -> List[str]:
        return list(self._models.keys())

    def get_model_runtime_info(self, model_id: str) -> Optional[ModelRuntimeEntry]:
        return self._models.get(model_id)

    # --- 任务需求 ---

    def update_task_requirement(self, task_type: str, **changes):
        if task_type not in self.task_requirements:
            raise ValidationError(f"Unknown task type: {task_type}")
        known = {f.name for f in fields(TaskRequirement)}
        unknown = set(changes) - known
        if unknown:
            raise ValidationError(f"Unknown task requirement fields: {', '.join(sorted(unknown))}")
        self.task_requirements[task_type] = replace(self.task_requirements[task_type], **changes)

    def add_task_type(self, task_type: str, requirement: TaskRequirement):
        self.task_requirements[task_type] = requirement

    def _get_requirement(self, task_type: str) -> TaskRequirement:
        requirement = self.task_requirements.get(task_type)
        if requirement is None:
            raise ValidationError(f"Unknown task type: {task_type}")
        return requirement

    # --- 路由 ---

    def _score_models(self, requirement: TaskRequirement) -> List[dict]:
        """
        对满足硬性门槛的模型打分并按分数降序排列（同分保持注册顺序）。
        """
        scored = []
        for model_id, info in self._models.items():
            if info.context_window < requirement.min_context_window:
                continue
            if any(cap not in info.capabilities for cap in requirement.required_capabilities):
                continue

            matched = list(requirement.required_capabilities)
            score = 10.0 * len(matched)

            for cap in requirement.preferred_capabilities:
                if cap in info.capabilities:
                    score += 5
                    matched.append(cap)

            # 成本越低分越高，但即使很贵也能用（只是分数低）
            score += max(0.0, 5 - info.average_cost * 100)
            score += min(5.0, info.context_window / 50000)

            scored.append({"model": model_id, "score": score, "matched": matched, "info": info})

        # sorted 是稳定排序
        return sorted(scored, key=lambda m: m["score"], reverse=True)

    def _missing_capabilities(self, requirement: TaskRequirement) -> List[str]:
        """在满足上下文窗口的模型中，没有任何模型具备的必需能力"""
        eligible = [m for m in self._models.values() if m.context_window >= requirement.min_context_window]
        missing = [
            cap for cap in requirement.required_capabilities
            if not any(cap in m.capabilities for m in eligible)
        ]
        return missing or list(requirement.required_capabilities)

    def estimate_cost(self, model_id: str, input_length: int, output_length: Optional[int] = None) -> float:
        """
        估算成本：输入长度按字符数近似 token 数，未给出输出长度时按 max_tokens 的一半估算。
        """
        info = self._models.get(model_id)
        if info is None:
            return 0.0
        output_tokens = output_length if output_length is not None else info.max_tokens * 0.5
        return (input_length / 1000) * info.cost_per_1k_input + (output_tokens / 1000) * info.cost_per_1k_output

    def get_routing_decision(self, task_type: str, prompt_length: int,
                             preferred_model: Optional[str] = None) -> RoutingDecision:
        """
        获取路由决策（基于能力匹配，成本作为提示）。
        指定了已注册的 preferred_model 时直接使用，不计算备选方案。
        """
        if preferred_model and preferred_model in self._models:
            return RoutingDecision(
                model=preferred_model,
                estimated_cost=self.estimate_cost(preferred_model, prompt_length),
                estimated_time=DEFAULT_ESTIMATED_TIME,
                reason="用户指定 (user override)",
                alternatives=[],
            )
        if preferred_model:
            logger.warning(f"指定的模型 '{preferred_model}' 未注册，改为按能力匹配。")

        requirement = self._get_requirement(task_type)
        scored = self._score_models(requirement)
        if not scored:
            missing = self._missing_capabilities(requirement)
            logger.error(f"任务 '{task_type}' 没有可用模型，缺少能力: {missing}")
            raise NoSuitableModelError(task_type, missing)

        best = scored[0]
        info = best["info"]
        alternatives = [
            RoutingAlternative(
                model=m["model"],
                estimated_cost=self.estimate_cost(m["model"], prompt_length),
                reason=f"匹配度: {m['score']:.1f}分, 成本: ${m['info'].average_cost}/1K",
            )
            for m in scored[1:4]
        ]

        return RoutingDecision(
            model=best["model"],
            estimated_cost=self.estimate_cost(best["model"], prompt_length),
            estimated_time=DEFAULT_ESTIMATED_TIME,
            reason=(
                f"匹配能力: {', '.join(best['matched'])}, "
                f"成本: ${info.average_cost}/1K tokens "
                f"(输入${info.cost_per_1k_input}/1K, 输出${info.cost_per_1k_output}/1K)"
            ),
            alternatives=alternatives,
        )

    # --- 执行 ---

    async def route_and_execute(self, task_type: str, prompt: str,
                                system_prompt: Optional[str] = None,
                                preferred_model: Optional[str] = None,
                                max_tokens: Optional[int] = None,
                                temperature: Optional[float] = None) -> RouteResult:
        """
        路由并执行任务。调用失败以 ProviderError 抛出，本层不做重试。
        """
        start_time = time.perf_counter()
        decision = self.get_routing_decision(task_type, len(prompt), preferred_model)
        info = self._models[decision.model]

        model_config = copy.deepcopy(info.raw_config)
        model_config.setdefault("name", info.name)
        if max_tokens is not None:
            model_config.setdefault("capabilities", {})["max_tokens"] = max_tokens
        if temperature is not None:
            model_config["temperature"] = temperature

        try:
            result = await self.text_generator.generate_text(prompt, model_config, system_prompt)
        except PipelineError:
            raise
        except Exception as e:
            logger.error(f"模型 {decision.model} 调用异常: {e}", exc_info=True)
            raise ProviderError(f"Model {decision.model} failed: {e}") from e

        if not result.success:
            logger.error(f"模型 {decision.model} 调用失败: {result.error}")
            raise ProviderError(f"Model {decision.model} failed: {result.error or 'Unknown error'}")

        content = result.data or ""
        input_tokens = estimate_tokens(prompt)
        output_tokens = estimate_tokens(content)
        actual_cost = (input_tokens / 1000) * info.cost_per_1k_input + \
                      (output_tokens / 1000) * info.cost_per_1k_output

        return RouteResult(
            content=content,
            model_used=decision.model,
            tokens_used={"input": input_tokens, "output": output_tokens},
            cost=actual_cost,
            latency=int((time.perf_counter() - start_time) * 1000),
        )

    async def route_and_execute_batch(self, task_type: str, prompts: List[str], **options) -> List[RouteResult]:
        """
        顺序执行一批提示词。单条失败返回零成本的空内容占位结果（error 字段记录原因），不会中断整批。
        """
        results = []
        for i, prompt in enumerate(prompts):
            try:
                results.append(await self.route_and_execute(task_type, prompt, **options))
            except Exception as e:
                logger.warning(f"批量执行第 {i} 条失败: {e}")
                results.append(RouteResult(content="", model_used="none", error=str(e)))
        return results
