"""
配置加载器 (Config Loader)
负责读取 config.yaml / user_config.yaml / provider_templates.yaml 并合并为运行时配置。
"""
import yaml
import os
import sys
import logging

logger = logging.getLogger(__name__)

def get_resource_path(relative_path: str) -> str:
    """
    获取资源的正确路径
    """
    try:
        base_path = sys._MEIPASS
    except Exception:
        base_path = os.path.abspath(".")

    return os.path.join(base_path, relative_path)

CONFIG_PATH = get_resource_path("config.yaml")
USER_CONFIG_PATH = get_resource_path("user_config.yaml")
PROVIDER_TEMPLATES_PATH = get_resource_path("provider_templates.yaml")

DEFAULT_DATABASE_URL = "sqlite:///data/storygen.db"
DEFAULT_STATE_DIR = "data/local_state"
DEFAULT_MAX_VERSIONS = 15

# 用户配置中按 section 合并（浅层 update）的部分
_MERGEABLE_SECTIONS = ("models", "steps", "storage", "versions")

def _merge_configs(base_config: dict, user_config: dict) -> dict:
    """
    合并基础配置和用户配置。
    用户配置中的 'models'、'steps'、'storage'、'versions' 会覆盖或扩展基础配置。
    """
    merged_config = base_config.copy()

    for section in _MERGEABLE_SECTIONS:
        if section in user_config:
            merged_config[section] = dict(merged_config.get(section) or {})
            merged_config[section].update(user_config[section] or {})

    return merged_config

def load_user_config() -> dict:
    """
    加载并解析 user_config.yaml 文件。
    """
    try:
        if not os.path.exists(USER_CONFIG_PATH):
            return {}
        with open(USER_CONFIG_PATH, "r", encoding="utf-8") as f:
            user_config = yaml.safe_load(f)
        return user_config if user_config else {}
    except yaml.YAMLError as e:
        logger.error(f"解析 {USER_CONFIG_PATH} 文件失败: {e}", exc_info=True)
        raise ValueError(f"错误: 解析 {USER_CONFIG_PATH} 文件失败: {e}")

def load_config() -> dict:
    """
    加载并解析 config.yaml 和 user_config.yaml 文件，并进行合并。
    """
    try:
        if not os.path.exists(CONFIG_PATH):
            return {"models": {}, "steps": {}} # 基础配置不存在，返回空
        with open(CONFIG_PATH, "r", encoding="utf-8") as f:
            base_config = yaml.safe_load(f) or {}

        user_config = load_user_config()
        return _merge_configs(base_config, user_config)
    except FileNotFoundError:
        logger.warning(f"配置文件 {CONFIG_PATH} 未找到，返回默认空配置。")
        return {"models": {}, "steps": {}}
    except yaml.YAMLError as e:
        logger.error(f"解析 {CONFIG_PATH} 文件失败: {e}", exc_info=True)
        raise ValueError(f"错误: 解析 {CONFIG_PATH} 文件失败: {e}")

def load_provider_templates() -> dict:
    """
    加载并解析 provider_templates.yaml 文件。
    """
    try:
        if not os.path.exists(PROVIDER_TEMPLATES_PATH):
            logger.warning(f"提供商模板文件 {PROVIDER_TEMPLATES_PATH} 未找到，返回空模板。")
            return {}
        with open(PROVIDER_TEMPLATES_PATH, "r", encoding="utf-8") as f:
            templates = yaml.safe_load(f)
        return templates if templates else {}
    except yaml.YAMLError as e:
        logger.error(f"解析 {PROVIDER_TEMPLATES_PATH} 文件失败: {e}", exc_info=True)
        raise ValueError(f"错误: 解析 {PROVIDER_TEMPLATES_PATH} 文件失败: {e}")

def get_storage_settings(config: dict = None) -> dict:
    """返回存储相关配置，缺省值兜底。环境变量 STORYGEN_DATABASE_URL 优先。"""
    config = config if config is not None else load_config()
    storage = config.get("storage") or {}
    return {
        "database_url": os.getenv("STORYGEN_DATABASE_URL") or storage.get("database_url", DEFAULT_DATABASE_URL),
        "state_dir": storage.get("state_dir", DEFAULT_STATE_DIR),
    }

def get_max_versions(config: dict = None) -> int:
    """每个项目保留的历史版本上限"""
    config = config if config is not None else load_config()
    value = (config.get("versions") or {}).get("max_versions", DEFAULT_MAX_VERSIONS)
    try:
        value = int(value)
    except (TypeError, ValueError):
        logger.warning(f"versions.max_versions 配置无效 ({value!r})，使用默认值 {DEFAULT_MAX_VERSIONS}。")
        return DEFAULT_MAX_VERSIONS
    return value if value > 0 else DEFAULT_MAX_VERSIONS
