import yaml
import os
import sys
import logging

logger = logging.getLogger(__name__)

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

def get_resource_path(relative_path: str) -> str:
    """
    获取资源的正确路径
    """
    try:
        base_path = sys._MEIPASS
    except Exception:
        base_path = BASE_DIR

    return os.path.join(base_path, relative_path)

CONFIG_PATH = get_resource_path("config.yaml")
USER_CONFIG_PATH = get_resource_path("user_config.yaml")
PROVIDER_TEMPLATES_PATH = get_resource_path(os.path.join("config", "templates", "providers.yaml"))

# 按字典整体合并的配置段
MERGEABLE_SECTIONS = (
    "models", "task_requirements", "review_gate", "chunker", "rag", "embeddings", "persistence", "cache"
)

def _merge_configs(base_config: dict, user_config: dict) -> dict:
    """
    合并基础配置和用户配置。
    用户配置中的字典段会覆盖或扩展基础配置，其余顶层键直接覆盖。
    """
    merged_config = dict(base_config)

    for key, value in user_config.items():
        if key in MERGEABLE_SECTIONS and isinstance(value, dict):
            section = dict(merged_config.get(key) or {})
            section.update(value)
            merged_config[key] = section
        else:
            merged_config[key] = value

    return merged_config

def _load_yaml(file_path: str) -> dict:
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return data if data else {}
    except yaml.YAMLError as e:
        logger.error(f"解析 {file_path} 文件失败: {e}", exc_info=True)
        raise ValueError(f"错误: 解析 {file_path} 文件失败: {e}")

def load_user_config(user_config_path: str = None) -> dict:
    """
    加载并解析 user_config.yaml 文件。
    """
    path = user_config_path or USER_CONFIG_PATH
    if not os.path.exists(path):
        return {}
    return _load_yaml(path)

def load_config(config_path: str = None, user_config_path: str = None) -> dict:
    """
    加载并解析 config.yaml 和 user_config.yaml 文件，并进行合并。
    """
    path = config_path or CONFIG_PATH
    if not os.path.exists(path):
        logger.warning(f"配置文件 {path} 未找到，返回默认空配置。")
        return {"models": {}, "task_requirements": {}}

    base_config = _load_yaml(path)
    user_config = load_user_config(user_config_path)
    return _merge_configs(base_config, user_config)

def load_provider_templates(templates_path: str = None) -> dict:
    """
    加载并解析 providers.yaml 模板文件。
    """
    path = templates_path or PROVIDER_TEMPLATES_PATH
    if not os.path.exists(path):
        logger.warning(f"提供商模板文件 {path} 未找到，返回空模板。")
        return {}
    return _load_yaml(path)

def save_user_config(user_config_data: dict, user_config_path: str = None):
    """
    将用户配置字典写回到 user_config.yaml 文件。

    Args:
        user_config_data (dict): 要保存的用户配置数据（例如 models 和 review_gate）。
    """
    path = user_config_path or USER_CONFIG_PATH
    try:
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(user_config_data, f, allow_unicode=True, sort_keys=False)
        logger.info(f"用户配置已成功保存到 {path}。")
    except Exception as e:
        logger.error(f"写入 {path} 文件失败: {e}", exc_info=True)
        raise IOError(f"错误: 写入 {path} 文件失败: {e}")

def set_user_config_value(key_path: str, value, user_config_path: str = None) -> dict:
    """
    在 user_config.yaml 中设置一个配置项并写回文件。

    Args:
        key_path (str): 以点分隔的键路径，例如 'review_gate.enabled'。
        value: 要写入的值。

    Returns:
        dict: 更新后的完整用户配置。
    """
    keys = [k for k in key_path.split(".") if k]
    if not keys:
        raise ValueError("配置键不能为空")

    user_config = load_user_config(user_config_path)
    node = user_config
    for key in keys[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    node[keys[-1]] = value

    save_user_config(user_config, user_config_path)
    return user_config
