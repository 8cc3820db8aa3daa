"""
本地设备存储 (Local State Store)
以 JSON 文件保存少量可丢失的本地状态：最近打开的项目 id、未保存的灵感草稿。
所有读写均为尽力而为，失败只记录日志。
"""
import os
import json
import logging
import re

logger = logging.getLogger(__name__)

# 本地状态存储目录
LOCAL_STATE_DIR = "data/local_state"

RAW_IDEA_DRAFT_KEY = "raw_idea_draft"

def last_active_project_key(user_id: str) -> str:
    return f"last_active_project_id_{user_id}"

def _path_for(key: str, state_dir: str) -> str:
    safe_key = re.sub(r"[^A-Za-z0-9_.-]", "_", key)
    return os.path.join(state_dir, f"{safe_key}.json")

def save_value(key: str, value, state_dir: str = LOCAL_STATE_DIR) -> bool:
    """
    将一个值保存到本地 JSON 文件。

    Args:
        key (str): 存储键。
        value: 可 JSON 序列化的值。
        state_dir (str): 存储目录。
    """
    path = _path_for(key, state_dir)
    try:
        os.makedirs(state_dir, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump({"value": value}, f, ensure_ascii=False, indent=4)
        logger.debug(f"本地状态已保存: {key}")
        return True
    except (OSError, TypeError, ValueError) as e:
        logger.error(f"保存本地状态失败 ({key}): {e}", exc_info=True)
        return False

def load_value(key: str, default=None, state_dir: str = LOCAL_STATE_DIR):
    """
    读取本地保存的值，不存在或损坏时返回 default。
    """
    path = _path_for(key, state_dir)
    if not os.path.exists(path):
        return default
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f).get("value", default)
    except (OSError, ValueError, AttributeError) as e:
        logger.error(f"加载本地状态失败 ({key}): {e}", exc_info=True)
        return default

def remove_value(key: str, state_dir: str = LOCAL_STATE_DIR) -> bool:
    path = _path_for(key, state_dir)
    try:
        if os.path.exists(path):
            os.remove(path)
        return True
    except OSError as e:
        logger.error(f"删除本地状态失败 ({key}): {e}", exc_info=True)
        return False
