"""
文本生成能力 (Text Generation)
根据模型配置与 providers.yaml 中的提供商模板实例化 LangChain 聊天模型，并执行一次文本生成。
调用失败不在此层重试，而是以 success=False 的结果返回给调用方。
"""
import os
import importlib
import logging
from typing import Optional, Protocol

from langchain_core.messages import HumanMessage, SystemMessage

from config.loader import load_provider_templates
from core.schemas import TextGenerationResult

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "你是一个专业的剧本分析助手。"

class TextGenerator(Protocol):
    async def generate_text(self, prompt: str, model_config: dict,
                            system_prompt: Optional[str] = None) -> TextGenerationResult:
        ...

def get_class_from_path(class_path: str):
    """根据字符串路径动态导入类。"""
    try:
        module_path, class_name = class_path.rsplit(".", 1)
        module = importlib.import_module(module_path)
        return getattr(module, class_name)
    except (ImportError, AttributeError) as e:
        logger.error(f"无法从路径 '{class_path}' 动态导入类: {e}", exc_info=True)
        raise ImportError(f"无法从路径 '{class_path}' 动态导入类: {e}")

def get_llm(model_config: dict, templates: dict, temperature: float = 0.3, max_tokens: int = None):
    """
    根据模型配置实例化一个 LangChain 聊天模型。

    Args:
        model_config (dict): 模型的用户配置（含 'template' 及模板声明的参数）。
        templates (dict): 提供商模板。
        temperature (float): 控制模型创造力的参数。
        max_tokens (int): 单次输出的 token 上限。

    Returns:
        A LangChain chat model instance.
    """
    model_name = model_config.get("name", "<unnamed>")

    template_id = model_config.get("template")
    if not template_id:
        logger.error(f"模型 '{model_name}' 的配置中缺少 'template' 字段。")
        raise ValueError(f"错误: 模型 '{model_name}' 的配置中缺少 'template' 字段。")

    provider_template = templates.get(template_id)
    if not provider_template:
        logger.error(f"在提供商模板中找不到模板ID '{template_id}'。")
        raise ValueError(f"错误: 在 providers.yaml 中找不到模板ID '{template_id}'。")

    class_path = provider_template.get("class")
    if not class_path:
        logger.error(f"提供商模板 '{template_id}' 中缺少 'class' 路径。")
        raise ValueError(f"错误: 提供商模板 '{template_id}' 中缺少 'class' 路径。")

    LLMClass = get_class_from_path(class_path)

    constructor_params = {"temperature": temperature}
    if max_tokens:
        constructor_params["max_tokens"] = max_tokens

    for param_name, param_type in (provider_template.get("params") or {}).items():
        user_value = model_config.get(param_name)
        if user_value is None:
            continue
        if param_type == "string":
            constructor_params[param_name] = user_value
        elif param_type in ("secret_env", "url_env"):
            env_var_value = os.getenv(user_value)
            if not env_var_value:
                logger.error(f"模型 '{model_name}' 需要设置环境变量 '{user_value}'，但它未被设置。")
                raise ValueError(f"错误: 需要为模型 '{model_name}' 设置环境变量 '{user_value}'，但它未被设置。")
            # 例如 'api_key_env' -> 'api_key'
            constructor_params[param_name.replace("_env", "")] = env_var_value

    logger.info(f"正在实例化模型: {model_name} (类: {LLMClass.__name__})")

    try:
        return LLMClass(**constructor_params)
    except Exception as e:
        logger.error(f"实例化模型 '{model_name}' 失败: {e}", exc_info=True)
        raise ValueError(f"实例化模型 '{model_name}' 失败: {e}")

class LangChainTextGenerator:
    """通过 LangChain 聊天模型执行文本生成的默认实现"""

    def __init__(self, templates: dict = None, temperature: float = 0.3):
        self._templates = templates
        self.temperature = temperature

    @property
    def templates(self) -> dict:
        if self._templates is None:
            self._templates = load_provider_templates().get("llms", {})
        return self._templates

    async def generate_text(self, prompt: str, model_config: dict,
                            system_prompt: Optional[str] = None) -> TextGenerationResult:
        try:
            llm = get_llm(
                model_config,
                self.templates,
                temperature=model_config.get("temperature", self.temperature),
                max_tokens=(model_config.get("capabilities") or {}).get("max_tokens"),
            )
            messages = [
                SystemMessage(content=system_prompt or DEFAULT_SYSTEM_PROMPT),
                HumanMessage(content=prompt),
            ]
            response = await llm.ainvoke(messages)
            return TextGenerationResult(success=True, data=response.content)
        except Exception as e:
            logger.error(f"模型 '{model_config.get('name')}' 文本生成失败: {e}", exc_info=True)
            return TextGenerationResult(success=False, error=str(e))
