"""
模型路由测试
"""
from unittest.mock import AsyncMock

import pytest

from core.exceptions import NoSuitableModelError, ProviderError, ValidationError
from core.schemas import TaskRequirement, TextGenerationResult
from core.tokens import estimate_tokens
from services.model_router import DEFAULT_TASK_REQUIREMENTS, ModelRouter
from tests.helpers import make_model_config


@pytest.fixture
def router(text_generator):
    return ModelRouter(text_generator=text_generator)


class TestRegistration:
    """模型注册与能力推断"""

    def test_defaults_are_applied(self, router):
        router.register_model("bare", {"provider": "openai"})

        info = router.get_model_runtime_info("bare")
        assert info.cost_per_1k_input == 0.01
        assert info.cost_per_1k_output == 0.03
        assert info.context_window == 32000
        assert info.max_tokens == 4000
        assert info.rate_limit == 10

    def test_capability_inference(self, router):
        # Arrange
        config = make_model_config(
            cost_in=0.001, cost_out=0.003, context=128000, json_mode=True,
            provider="deepseek", capabilities={"supports_fast": True},
        )

        # Act
        router.register_model("ds", config)

        # Assert
        assert router.get_model_runtime_info("ds").capabilities == {
            "long_context", "cheap", "json_mode", "chinese", "creative", "fast"
        }

    def test_expensive_model_is_accurate(self, router):
        router.register_model("big", make_model_config(cost_in=0.1, cost_out=0.3))

        caps = router.get_model_runtime_info("big").capabilities
        assert "accurate" in caps
        assert "cheap" not in caps

    def test_extra_capabilities_are_merged(self, router):
        router.register_model("m", make_model_config(capabilities={"extra_capabilities": ["vision"]}))

        assert "vision" in router.get_model_runtime_info("m").capabilities

    def test_non_llm_is_not_creative(self, router):
        router.register_model("emb", make_model_config(type="embedding"))

        assert "creative" not in router.get_model_runtime_info("emb").capabilities

    def test_reregistering_replaces(self, router):
        router.register_model("m", make_model_config(context=32000))
        router.register_model("m", make_model_config(context=200000))

        assert router.get_available_models() == ["m"]
        assert "long_context" in router.get_model_runtime_info("m").capabilities

    def test_unregister(self, router):
        router.register_model("m", make_model_config())

        router.unregister_model("m")
        router.unregister_model("missing")

        assert router.get_available_models() == []
        assert router.get_model_runtime_info("m") is None

    def test_register_from_config_skips_disabled(self, router):
        router.register_models_from_config({"models": {
            "on": make_model_config(),
            "off": make_model_config(enabled=False),
        }})

        assert router.get_available_models() == ["on"]


class TestRoutingDecision:
    """路由决策"""

    def test_cheap_then_expensive_scenario(self, router):
        """仅需 json_mode 的任务选便宜模型；注销便宜模型后退回昂贵模型"""
        # Arrange
        router.register_model("cheap", make_model_config(0.001, 0.003, context=32000, json_mode=True))
        router.register_model("expensive", make_model_config(0.1, 0.3, context=128000, json_mode=True))

        # Act
        first = router.get_routing_decision("entity_extraction", 1000)
        router.unregister_model("cheap")
        second = router.get_routing_decision("entity_extraction", 1000)

        # Assert
        assert first.model == "cheap"
        assert [a.model for a in first.alternatives] == ["expensive"]
        assert second.model == "expensive"

    def test_identical_capabilities_prefers_cheaper(self, router):
        router.register_model("a", make_model_config(0.006, 0.018))
        router.register_model("b", make_model_config(0.005, 0.015))

        assert router.get_routing_decision("shot_generation", 1000).model == "b"

    def test_selected_model_satisfies_hard_gates(self, router):
        """每个可路由任务选出的模型都满足必需能力与最小上下文"""
        router.register_model("small", make_model_config(0.001, 0.002, context=8000, json_mode=True))
        router.register_model("long", make_model_config(0.002, 0.004, context=200000, provider="aliyun"))
        router.register_model("smart", make_model_config(0.03, 0.06, context=128000, json_mode=True))

        for task_type, requirement in DEFAULT_TASK_REQUIREMENTS.items():
            decision = router.get_routing_decision(task_type, 1000)
            info = router.get_model_runtime_info(decision.model)
            assert set(requirement.required_capabilities) <= info.capabilities
            assert info.context_window >= requirement.min_context_window

    def test_ties_keep_registration_order(self, router):
        router.register_model("first", make_model_config())
        router.register_model("second", make_model_config())

        assert router.get_routing_decision("shot_generation", 100).model == "first"

    def test_alternatives_are_capped_at_three(self, router):
        for i in range(6):
            router.register_model(f"m{i}", make_model_config(0.001 * (i + 1), 0.002 * (i + 1)))

        decision = router.get_routing_decision("shot_generation", 100)

        assert decision.model == "m0"
        assert [a.model for a in decision.alternatives] == ["m1", "m2", "m3"]

    def test_user_override(self, router):
        router.register_model("cheap", make_model_config(0.001, 0.003))
        router.register_model("chosen", make_model_config(0.1, 0.3))

        decision = router.get_routing_decision("shot_generation", 1000, preferred_model="chosen")

        assert decision.model == "chosen"
        assert "user override" in decision.reason
        assert decision.alternatives == []

    def test_unknown_preferred_model_falls_back_to_scoring(self, router):
        router.register_model("cheap", make_model_config(0.001, 0.003))

        decision = router.get_routing_decision("shot_generation", 1000, preferred_model="ghost")

        assert decision.model == "cheap"

    def test_no_suitable_model_names_missing_capability(self, router):
        router.register_model("short", make_model_config(context=32000))

        with pytest.raises(NoSuitableModelError) as exc_info:
            router.get_routing_decision("global_summary", 1000)

        assert exc_info.value.missing_capabilities == ["long_context"]
        assert "long_context" in str(exc_info.value)

    def test_no_models_registered(self, router):
        with pytest.raises(NoSuitableModelError):
            router.get_routing_decision("validation", 10)

    def test_unknown_task_type(self, router):
        router.register_model("m", make_model_config())

        with pytest.raises(ValidationError):
            router.get_routing_decision("poetry", 10)

    def test_estimated_cost(self, router):
        """输入按字符数估算，输出按 max_tokens 的一半估算"""
        router.register_model("m", make_model_config(0.01, 0.03))

        decision = router.get_routing_decision("shot_generation", 2000)

        # 2000/1000*0.01 + 2000/1000*0.03
        assert decision.estimated_cost == pytest.approx(0.08)
        assert decision.estimated_time == 3000


class TestTaskRequirements:

    def test_update_task_requirement(self, router):
        router.update_task_requirement("shot_generation", required_capabilities=["json_mode"])
        router.register_model("plain", make_model_config())

        with pytest.raises(NoSuitableModelError):
            router.get_routing_decision("shot_generation", 10)

    def test_update_unknown_task_fails(self, router):
        with pytest.raises(ValidationError):
            router.update_task_requirement("poetry", min_context_window=10)

    def test_overrides_do_not_leak_between_instances(self, text_generator):
        first = ModelRouter(text_generator=text_generator)
        first.update_task_requirement("validation", min_context_window=999999)

        second = ModelRouter(text_generator=text_generator)

        assert second.task_requirements["validation"].min_context_window == 4000

    def test_add_task_type(self, router):
        router.add_task_type("poetry", TaskRequirement(required_capabilities=["creative"], min_context_window=1000))
        router.register_model("m", make_model_config())

        assert router.get_routing_decision("poetry", 10).model == "m"

    def test_from_config(self, text_generator):
        config = {
            "models": {"m": make_model_config(json_mode=True)},
            "task_requirements": {
                "validation": {"required_capabilities": ["json_mode"]},
                "poetry": {"required_capabilities": ["creative"], "min_context_window": 1000},
            },
        }

        router = ModelRouter.from_config(config, text_generator=text_generator)

        assert router.get_routing_decision("validation", 10).model == "m"
        assert router.get_routing_decision("poetry", 10).model == "m"


class TestExecution:
    """路由执行"""

    @pytest.mark.asyncio
    async def test_route_and_execute(self, router, text_generator):
        # Arrange
        router.register_model("m", make_model_config(0.01, 0.03))
        prompt = "请分析这个角色"

        # Act
        result = await router.route_and_execute("character_analysis", prompt, system_prompt="系统")

        # Assert
        input_tokens = estimate_tokens(prompt)
        output_tokens = estimate_tokens("生成的内容")
        assert result.content == "生成的内容"
        assert result.model_used == "m"
        assert result.tokens_used == {"input": input_tokens, "output": output_tokens}
        assert result.cost == pytest.approx(input_tokens / 1000 * 0.01 + output_tokens / 1000 * 0.03)
        assert result.success
        call = text_generator.generate_text.await_args
        assert call.args[0] == prompt
        assert call.args[2] == "系统"

    @pytest.mark.asyncio
    async def test_options_are_passed_to_model_config(self, router, text_generator):
        router.register_model("m", make_model_config())

        await router.route_and_execute("shot_generation", "提示", max_tokens=123, temperature=0.9)

        model_config = text_generator.generate_text.await_args.args[1]
        assert model_config["capabilities"]["max_tokens"] == 123
        assert model_config["temperature"] == 0.9
        # 注册时的配置不被修改
        assert router.get_model_runtime_info("m").raw_config["capabilities"]["max_tokens"] == 4000

    @pytest.mark.asyncio
    async def test_failure_raises_provider_error(self, router, text_generator):
        router.register_model("m", make_model_config())
        text_generator.generate_text.return_value = TextGenerationResult(success=False, error="rate limited")

        with pytest.raises(ProviderError, match="rate limited"):
            await router.route_and_execute("shot_generation", "提示")

        assert text_generator.generate_text.await_count == 1

    @pytest.mark.asyncio
    async def test_generator_exception_is_wrapped(self, router, text_generator):
        router.register_model("m", make_model_config())
        text_generator.generate_text.side_effect = RuntimeError("connection reset")

        with pytest.raises(ProviderError):
            await router.route_and_execute("shot_generation", "提示")

    @pytest.mark.asyncio
    async def test_batch_isolates_failures(self):
        """单条失败返回带错误信息的占位结果，不影响其余条目"""
        # Arrange
        generator = AsyncMock()
        generator.generate_text.side_effect = [
            TextGenerationResult(success=True, data="一"),
            TextGenerationResult(success=False, error="boom"),
            TextGenerationResult(success=True, data="三"),
        ]
        router = ModelRouter(text_generator=generator)
        router.register_model("m", make_model_config())

        # Act
        results = await router.route_and_execute_batch("shot_generation", ["a", "b", "c"])

        # Assert
        assert [r.content for r in results] == ["一", "", "三"]
        failed = results[1]
        assert failed.model_used == "none"
        assert failed.cost == 0
        assert "boom" in failed.error
        assert not failed.success
        assert results[0].success and results[2].success
