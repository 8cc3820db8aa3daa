"""
管理和提供不同LLM（大语言模型）的实例。
这个模块完全由 config.yaml 和 provider_templates.yaml 文件驱动。
"""
import os
import copy
import importlib
from functools import lru_cache
from config.loader import load_config, load_provider_templates
from core.exceptions import ConfigurationError
import logging

logger = logging.getLogger(__name__)

@lru_cache(maxsize=1)
def get_provider_templates():
    """缓存提供商模板以避免重复读取文件。"""
    return load_provider_templates()

def _get_class_from_path(class_path: str):
    """根据字符串路径动态导入类。"""
    try:
        module_path, class_name = class_path.rsplit(".", 1)
        module = importlib.import_module(module_path)
        return getattr(module, class_name)
    except (ImportError, AttributeError, ValueError) as e:
        logger.error(f"无法从路径 '{class_path}' 动态导入类: {e}", exc_info=True)
        raise ConfigurationError(f"无法从路径 '{class_path}' 动态导入类: {e}")

def _resolve_model(alias: str, config: dict, templates: dict):
    """步骤别名 -> (模型ID, 模型用户配置, 提供商模板)"""
    model_id = config.get("steps", {}).get(alias)
    if not model_id:
        raise ConfigurationError(f"错误: 在 config.yaml 的 'steps' 部分找不到别名 '{alias}'。")

    user_model_config = config.get("models", {}).get(model_id)
    if not user_model_config:
        raise ConfigurationError(f"错误: 在 config.yaml 的 'models' 部分找不到模型ID '{model_id}'。")

    template_id = user_model_config.get("template")
    if not template_id:
        raise ConfigurationError(f"错误: 模型 '{model_id}' 的配置中缺少 'template' 字段。")

    provider_template = templates.get(template_id)
    if not provider_template:
        raise ConfigurationError(f"错误: 在 provider_templates.yaml 中找不到模板ID '{template_id}'。")
    return model_id, user_model_config, provider_template

def has_credentials(alias: str) -> bool:
    """
    判断某个步骤的模型是否已配置好所需的密钥（不实例化模型）。
    """
    try:
        _, user_model_config, provider_template = _resolve_model(alias, load_config(), get_provider_templates())
    except ConfigurationError as e:
        logger.debug(f"步骤 '{alias}' 未配置: {e}")
        return False
    for param_name, param_type in (provider_template.get("params") or {}).items():
        if param_type == "secret_env":
            env_name = user_model_config.get(param_name)
            if not env_name or not os.getenv(env_name):
                return False
    return True

def get_llm(alias: str, temperature: float = 0.7, json_mode: bool = False):
    """
    根据别名从配置文件获取并实例化一个 LangChain 聊天模型实例。

    Args:
        alias (str): 步骤的别名 (e.g., "stage_suggestion", "full_draft")。
        temperature (float): 控制模型创造力的参数。
        json_mode (bool): 是否请求严格 JSON 输出（追加模板中的 json_mode_params）。

    Returns:
        A LangChain chat model instance.
    """
    # config每次都重新加载，以反映运行时修改
    config = load_config()
    templates = get_provider_templates()
    model_id, user_model_config, provider_template = _resolve_model(alias, config, templates)

    class_path = provider_template.get("class")
    if not class_path:
        raise ConfigurationError(f"错误: 提供商模板 '{user_model_config.get('template')}' 中缺少 'class' 路径。")

    LLMClass = _get_class_from_path(class_path)

    constructor_params = {"temperature": temperature}
    template_params = provider_template.get("params", {})

    for param_name, param_type in template_params.items():
        user_value = user_model_config.get(param_name)
        if user_value is None:
            continue
        if param_type == "string":
            constructor_params[param_name] = user_value
        elif param_type == "float":
            constructor_params[param_name] = float(user_value)
        elif param_type == "int":
            constructor_params[param_name] = int(user_value)
        elif param_type == "secret_env" or param_type == "url_env":
            env_var_value = os.getenv(user_value)
            if not env_var_value:
                logger.error(f"模型 '{model_id}' 需要设置环境变量 '{user_value}'，但它未被设置。")
                raise ConfigurationError(f"错误: 需要为模型 '{model_id}' 设置环境变量 '{user_value}'，但它未被设置。")
            # 例如 'api_key_env' -> 'api_key'
            mapped_param_name = param_name.replace("_env", "")
            constructor_params[mapped_param_name] = env_var_value

    if json_mode:
        constructor_params.update(copy.deepcopy(provider_template.get("json_mode_params") or {}))

    logger.info(f"正在实例化模型: {model_id} (类: {LLMClass.__name__}, 步骤: {alias}, json={json_mode})")

    try:
        return LLMClass(**constructor_params)
    except Exception as e:
        safe_params = {k: v for k, v in constructor_params.items() if "key" not in k}
        logger.error(f"实例化模型 '{model_id}' 失败: {e}\n使用的参数: {safe_params}", exc_info=True)
        raise ConfigurationError(f"实例化模型 '{model_id}' 失败: {e}")
