"""
Embedding Provider
负责根据配置动态创建和提供LangChain的Embedding模型实例。
检索层只依赖 LangChain 的 Embeddings 接口，替换为真实的嵌入模型无需改动检索逻辑。
"""
import os
import logging
from typing import List

import numpy as np
from langchain_core.embeddings import Embeddings

from config.loader import load_provider_templates
from infra.llm.factory import get_class_from_path

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_DIM = 384

class HashingEmbeddings(Embeddings):
    """
    基于字符频率的确定性占位向量（不具备语义）。
    仅用于离线运行与测试，生产环境必须在配置中指定真实的嵌入模型。
    """

    def __init__(self, dimension: int = DEFAULT_EMBEDDING_DIM):
        self.dimension = int(dimension)

    def _embed(self, text: str) -> List[float]:
        vector = np.zeros(self.dimension, dtype=float)
        for char in text:
            vector[ord(char) % self.dimension] += 1
        norm = np.linalg.norm(vector)
        if norm > 0:
            vector /= norm
        return vector.tolist()

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        return [self._embed(t) for t in texts]

    def embed_query(self, text: str) -> List[float]:
        return self._embed(text)

    async def aembed_documents(self, texts: List[str]) -> List[List[float]]:
        return self.embed_documents(texts)

    async def aembed_query(self, text: str) -> List[float]:
        return self.embed_query(text)

def get_embedding_model(full_config: dict, templates: dict = None) -> Embeddings:
    """
    根据配置文件中的 'active_embedding_model' 获取并实例化一个Embedding模型。
    未配置时回退到占位的 HashingEmbeddings。
    """
    active_model_id = full_config.get("active_embedding_model")
    if not active_model_id:
        logger.warning("在配置中未指定 'active_embedding_model'，使用占位嵌入（不具备语义）。")
        return HashingEmbeddings()

    user_model_config = (full_config.get("embeddings") or {}).get(active_model_id)
    if not user_model_config:
        logger.error(f"在配置的 'embeddings' 部分找不到模型ID '{active_model_id}'。")
        raise ValueError(f"错误: 在 config.yaml 的 'embeddings' 部分找不到模型ID '{active_model_id}'。")

    template_id = user_model_config.get("template")
    if not template_id:
        logger.error(f"Embedding模型 '{active_model_id}' 的配置中缺少 'template' 字段。")
        raise ValueError(f"错误: Embedding模型 '{active_model_id}' 的配置中缺少 'template' 字段。")

    if templates is None:
        templates = load_provider_templates().get("embeddings", {})
    provider_template = templates.get(template_id)
    if not provider_template:
        logger.error(f"在 'embeddings' 模板中找不到模板ID '{template_id}'。")
        raise ValueError(f"错误: 在 providers.yaml 的 'embeddings' 部分找不到模板ID '{template_id}'。")

    EmbeddingClass = get_class_from_path(provider_template["class"])

    constructor_params = {}
    for param_name, param_type in (provider_template.get("params") or {}).items():
        user_value = user_model_config.get(param_name)
        if user_value is None:
            continue
        if param_type in ["secret_env", "url_env"]:
            env_var_value = os.getenv(user_value)
            if not env_var_value:
                logger.error(f"Embedding模型 '{active_model_id}' 需要设置环境变量 '{user_value}'。")
                raise ValueError(f"错误: 需要为Embedding模型 '{active_model_id}' 设置环境变量 '{user_value}'。")
            constructor_params[param_name.replace("_env", "")] = env_var_value
        elif param_type == "int":
            constructor_params[param_name] = int(user_value)
        else:
            constructor_params[param_name] = user_value

    logger.info(f"正在实例化Embedding模型: {active_model_id} (类: {EmbeddingClass.__name__})")

    try:
        return EmbeddingClass(**constructor_params)
    except Exception as e:
        logger.error(f"实例化Embedding模型 '{active_model_id}' 失败: {e}\n使用的参数: {constructor_params}", exc_info=True)
        raise ValueError(f"实例化Embedding模型 '{active_model_id}' 失败: {e}")
