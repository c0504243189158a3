"""
测试辅助数据与构造器
"""

SAMPLE_NOVEL = (
    "【第一章】\n"
    "林风站在青云山的山门前，抬头望着云雾缭绕的山峰。\n"
    "\"你终于来了。\"苏雪说道，她从石阶上缓步走下。\n"
    "林风握紧手中的长剑，心中的秘密从未告诉任何人。\n"
    "\n"
    "【第二章】\n"
    "夜色笼罩着藏经阁，烛火在风中摇曳。\n"
    "林风推开沉重的木门，走进阁中。\n"
    "\"这里藏着宗门的真相。\"苏雪低声说道。\n"
)


def make_model_config(cost_in=0.01, cost_out=0.03, context=32000, json_mode=False,
                      provider="openai", **extra):
    """构造一个注册模型用的配置字典"""
    config = {
        "name": extra.pop("name", "test-model"),
        "provider": provider,
        "type": "llm",
        "template": "openai_compatible",
        "cost_per_1k_input": cost_in,
        "cost_per_1k_output": cost_out,
        "capabilities": {
            "max_tokens": 4000,
            "max_context_length": context,
            "supports_json_mode": json_mode,
        },
    }
    config["capabilities"].update(extra.pop("capabilities", {}))
    config.update(extra)
    return config
