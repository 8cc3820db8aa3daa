"""
Prompt Manager
动态加载并管理 config/prompts.yaml 中的所有 Prompt 模板。
支持运行时热重载。
"""
import yaml
import os
import logging
from langchain_core.prompts import ChatPromptTemplate

logger = logging.getLogger(__name__)

PROMPTS_PATH = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "config", "prompts.yaml")

# --- 热重载缓存层 ---
class PromptCache:
    def __init__(self, path: str = PROMPTS_PATH):
        self.path = path
        self._cache = {}
        self._last_modified_time = 0

    def get_prompts(self) -> dict:
        """获取 Prompts，如果文件被修改则重新加载。"""
        try:
            current_mtime = os.path.getmtime(self.path)
            if current_mtime > self._last_modified_time:
                logger.info("检测到 prompts.yaml 文件变更，正在热重载...")
                with open(self.path, 'r', encoding='utf-8') as f:
                    self._cache = yaml.safe_load(f) or {}
                self._last_modified_time = current_mtime
                logger.info("热重载完成！")
        except FileNotFoundError:
            logger.error(f"未找到 Prompts 文件: {self.path}")
            self._cache = {}
        except (OSError, yaml.YAMLError) as e:
            # 保留旧缓存
            logger.error(f"加载或重载 Prompts 失败: {e}")

        return self._cache

    def invalidate(self):
        self._last_modified_time = 0

# 全局缓存实例
_prompt_cache = PromptCache()


def get_prompt_template(prompt_key: str) -> ChatPromptTemplate:
    """
    根据 Key 获取一个 LangChain ChatPromptTemplate 对象 (支持热重载)。

    Args:
        prompt_key (str): 在 prompts.yaml 中定义的键，其下需包含 system / human 两段文本。

    Returns:
        ChatPromptTemplate: 由 system + human 两条消息组成的模板。
    """
    prompts = _prompt_cache.get_prompts()
    entry = prompts.get(prompt_key)

    if not entry or not isinstance(entry, dict) or "system" not in entry or "human" not in entry:
        raise ValueError(f"Prompt key '{prompt_key}' not found in {PROMPTS_PATH}")

    return ChatPromptTemplate.from_messages([
        ("system", entry["system"]),
        ("human", entry["human"]),
    ])


def get_prompt_fragment(section: str, key: str) -> str:
    """读取 prompts.yaml 中非模板的文本片段，例如 mode_tasks.full_draft.creative"""
    prompts = _prompt_cache.get_prompts()
    value = (prompts.get(section) or {})
    for part in key.split("."):
        value = value.get(part) if isinstance(value, dict) else None
    if not isinstance(value, str):
        raise ValueError(f"Prompt fragment '{section}.{key}' not found in {PROMPTS_PATH}")
    return value.strip()


def force_reload_prompts():
    """手动强制重载 Prompts"""
    _prompt_cache.invalidate()  # 下次调用就会强制刷新
    logger.info("已请求手动重载 Prompts。")
