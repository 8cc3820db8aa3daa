"""
会话状态迁移 (State Transitions)
对 AppState 的本地修改均为纯函数：接收旧状态，返回新状态。
远程调用由 services.workflow 执行。
"""
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Optional, Tuple, TypeVar

from core.exceptions import NotFoundError, PersistenceError
from core.schemas import AppState, Notification, Project, SubscriptionTier

logger = logging.getLogger(__name__)

T = TypeVar("T")

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def sort_projects(projects: Iterable[Project]) -> Tuple[Project, ...]:
    """按 last_modified 倒序排列（最新的在前）"""
    return tuple(sorted(projects, key=lambda p: p.last_modified or _EPOCH, reverse=True))


def upsert_project(state: AppState, project: Project, make_active: bool = False) -> AppState:
    """替换（或插入）缓存列表中的项目并保持排序；若它是当前项目则同步更新。"""
    others = [p for p in state.projects if p.id != project.id]
    active = state.active_project
    if make_active or (active is not None and active.id == project.id):
        active = project
    return replace(state, projects=sort_projects(others + [project]), active_project=active)


def remove_project(state: AppState, project_id: str) -> AppState:
    active = state.active_project
    if active is not None and active.id == project_id:
        active = None
    return replace(
        state,
        projects=tuple(p for p in state.projects if p.id != project_id),
        active_project=active,
    )


def with_stage_content(project: Project, stage_id: str, content: str, now: Optional[datetime] = None) -> Project:
    contents = dict(project.stages_content)
    contents[stage_id] = content
    return replace(project, stages_content=contents, last_modified=now or utcnow())


def with_all_stages_content(project: Project, contents: Dict[str, str], raw_story_idea=None,
                            now: Optional[datetime] = None, replace_idea: bool = False) -> Project:
    updated = replace(project, stages_content=dict(contents), last_modified=now or utcnow())
    if replace_idea:
        updated = replace(updated, raw_story_idea=raw_story_idea)
    return updated


def notify(state: AppState, message: str, kind: str = "info") -> AppState:
    return replace(state, notifications=state.notifications + (Notification(message=message, kind=kind),))


def request_upgrade(state: AppState, source: str) -> AppState:
    return replace(state, upgrade_prompt=source)


def reset_new_story(state: AppState) -> AppState:
    """回到“新建故事”初始状态，保留用户、档位与项目列表。"""
    return replace(
        state,
        active_project=None,
        versions=(),
        raw_idea="",
        selected_framework_id=None,
        pending_project=None,
        awaiting_title=False,
        loading_mapping=False,
        generating_all_stages=False,
        reverting_version_id=None,
        project_to_delete=None,
        history_open=False,
        assist=None,
        error=None,
    )


def logged_out_state() -> AppState:
    """登出后的完整重置，不保留任何会话数据。"""
    return AppState(tier=SubscriptionTier.FREE)


def with_optimistic_update(current_value: T, mutate: Callable[[T], T],
                           commit: Callable[[T], None], publish: Callable[[T], None]) -> T:
    """
    乐观更新：先发布本地修改，再提交远程写入；失败时恢复原值并抛出。

    Args:
        current_value: 修改前的值（失败时原样恢复）。
        mutate: 生成新值的纯函数。
        commit: 远程写入，失败时抛出 PersistenceError / NotFoundError。
        publish: 将值发布到会话状态。

    Returns:
        提交成功后的新值。不会自动重试。
    """
    updated = mutate(current_value)
    publish(updated)
    try:
        commit(updated)
    except (PersistenceError, NotFoundError) as e:
        logger.warning(f"远程写入失败，回滚本地修改: {e}")
        publish(current_value)
        raise
    return updated
