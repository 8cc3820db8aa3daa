"""
叙事框架目录 (Framework Catalog)
从 config/frameworks.yaml 加载只读的框架列表。
"""
import os
import logging
from functools import lru_cache
from typing import Dict, List, Optional

import yaml

from core.exceptions import ConfigurationError
from core.schemas import Framework, Stage

logger = logging.getLogger(__name__)

FRAMEWORKS_PATH = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "config", "frameworks.yaml")


def _parse_framework(raw: dict) -> Framework:
    stages = tuple(
        Stage(id=str(s["id"]), name=s["name"], description=s.get("description", ""))
        for s in raw.get("stages") or []
    )
    stage_ids = [s.id for s in stages]
    if len(stage_ids) != len(set(stage_ids)):
        raise ConfigurationError(f"框架 '{raw.get('id')}' 中存在重复的阶段 id。")
    return Framework(id=str(raw["id"]), name=raw["name"], description=raw.get("description", ""), stages=stages)


@lru_cache(maxsize=1)
def load_frameworks(path: str = FRAMEWORKS_PATH) -> tuple:
    """加载并缓存框架目录（进程内只读取一次）。"""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            raw_list = yaml.safe_load(f) or []
    except FileNotFoundError:
        logger.error(f"未找到框架目录文件: {path}")
        raise ConfigurationError(f"未找到框架目录文件: {path}")
    except yaml.YAMLError as e:
        logger.error(f"解析框架目录失败: {e}", exc_info=True)
        raise ConfigurationError(f"解析框架目录失败: {e}")

    try:
        frameworks = tuple(_parse_framework(item) for item in raw_list)
    except (KeyError, TypeError) as e:
        raise ConfigurationError(f"框架目录格式错误: {e}")

    ids = [fw.id for fw in frameworks]
    if len(ids) != len(set(ids)):
        raise ConfigurationError("框架目录中存在重复的框架 id。")
    logger.info(f"已加载 {len(frameworks)} 个叙事框架。")
    return frameworks


def list_frameworks() -> List[Framework]:
    return list(load_frameworks())


def get_framework(framework_id: str) -> Optional[Framework]:
    return next((fw for fw in load_frameworks() if fw.id == framework_id), None)


def empty_stages_content(framework: Framework) -> Dict[str, str]:
    return {stage.id: "" for stage in framework.stages}
