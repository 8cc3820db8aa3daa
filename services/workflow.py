"""
工作流协调中心 (Story Workflow)
系统的 Facade 层：持有显式的会话状态 AppState，调用配额、仓储、版本与 AI 服务。
与任何 UI 框架解耦，可由宿主界面或测试直接驱动。

所有调用同步执行；进行中标记在调用期间置位，重入调用会被拒绝而不是排队。
"""
from __future__ import annotations
import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from core.exceptions import ExportError, NotFoundError, PersistenceError, ProviderError
from core.frameworks import empty_stages_content, get_framework
from core.schemas import (
    AppState, AssistSession, ExportOptions, OutputMode, PendingProject,
    Project, ProjectDraft, ProjectVersion, QAPair, SubscriptionTier, UsageKind,
)
from core.state import (
    logged_out_state, notify, remove_project, request_upgrade, reset_new_story,
    upsert_project, utcnow, with_all_stages_content, with_optimistic_update,
    with_stage_content,
)
from core.tiers import FEATURE_EXPORT, FEATURE_FULL_STORY_AI, can_create_project, is_feature_enabled
from core.usage_tracker import UsageTracker, utc_today
from infra.llm.factory import has_credentials
from infra.storage import state_store
from infra.storage.profile_store import ProfileStore
from infra.storage.project_store import ProjectRepository
from infra.storage.version_store import VersionStore
from services import export_service
from services.assist_service import AssistService

logger = logging.getLogger(__name__)

ALL_STAGES_TARGET = "all"

# 升级提示来源
UPGRADE_SOURCE_PROJECT_LIMIT = "project_limit"
UPGRADE_SOURCE_FULL_STORY = FEATURE_FULL_STORY_AI
UPGRADE_SOURCE_EXPORT = FEATURE_EXPORT


class StoryWorkflow:
    def __init__(self, projects: ProjectRepository, versions: VersionStore, profiles: ProfileStore,
                 state_dir: str = state_store.LOCAL_STATE_DIR,
                 today: Callable[[], str] = utc_today,
                 clock: Callable[[], datetime] = utcnow,
                 provider_available: Optional[Callable[[], bool]] = None):
        self.projects = projects
        self.versions = versions
        self.profiles = profiles
        self.state_dir = state_dir
        self.clock = clock
        self.provider_available = provider_available or (lambda: has_credentials("idea_mapping"))
        self.state = AppState()
        self.usage = UsageTracker(tier=SubscriptionTier.FREE, today=today, on_limit=self._on_usage_limit)

    # ------------------------------------------------------------------ #
    # 内部工具
    # ------------------------------------------------------------------ #
    def _on_usage_limit(self, source: str):
        self.state = request_upgrade(self.state, source)

    def _set(self, **changes):
        self.state = replace(self.state, **changes)

    def _notify(self, message: str, kind: str = "info"):
        self.state = notify(self.state, message, kind)

    def _busy(self) -> bool:
        s = self.state
        return s.bulk_operation_in_progress or s.processing_delete or s.loading_mapping

    def _active(self):
        """返回 (当前项目, 框架)；没有当前项目时返回 (None, None)。"""
        project = self.state.active_project
        if project is None:
            return None, None
        framework = get_framework(project.framework_id)
        if framework is None:
            logger.error(f"项目 {project.id} 引用了未知框架 '{project.framework_id}'")
            self._set(error=f"Unknown story framework: '{project.framework_id}'.")
            return None, None
        return project, framework

    def _resolve_stage(self, stage_id: str):
        project, framework = self._active()
        if project is None:
            return None, None, None
        stage = framework.get_stage(stage_id)
        if stage is None:
            self._set(error=f"Stage '{stage_id}' does not belong to framework '{framework.name}'.")
            return None, None, None
        return project, framework, stage

    def _remember_active(self, project_id: Optional[str]):
        key = state_store.last_active_project_key(self.state.user_id)
        if project_id:
            state_store.save_value(key, project_id, self.state_dir)
        else:
            state_store.remove_value(key, self.state_dir)

    def _forget_project(self, project: Project, message: str, kind: str = "warning"):
        """服务端已不存在的项目：从本地列表移除；若为当前项目则回到新建故事。"""
        was_active = self.state.active_project is not None and self.state.active_project.id == project.id
        self.state = remove_project(self.state, project.id)
        if was_active:
            self.state = reset_new_story(self.state)
            self._remember_active(None)
        self._notify(message, kind)

    def _optimistic_project_update(self, project: Project, mutate: Callable[[Project], Project],
                                   patch_fields: Sequence[str]) -> Project:
        """
        乐观更新当前项目：先发布到缓存列表与当前项目，再写库；
        失败时恢复调用前的列表与当前项目并抛出。
        """
        before_projects = self.state.projects
        before_active = self.state.active_project

        def publish(value: Project):
            if value is project:
                self._set(projects=before_projects, active_project=before_active)
            else:
                self.state = upsert_project(self.state, value)

        def commit(value: Project):
            patch = {name: getattr(value, name) for name in patch_fields}
            patch["last_modified"] = value.last_modified
            self.projects.update(value.id, value.user_id, patch)

        return with_optimistic_update(project, mutate, commit, publish)

    def _snapshot(self, project: Project, label: str) -> Optional[ProjectVersion]:
        """写入版本快照；失败不影响已保存的修改，只提示。"""
        try:
            version = self.versions.snapshot(project, label)
        except PersistenceError as e:
            logger.error(f"保存版本快照失败 ({project.id}, '{label}'): {e}")
            self._notify(f"Could not save version history: {e}", "error")
            return None
        if self.state.history_open:
            self._refresh_versions(project)
        return version

    def _refresh_versions(self, project: Project) -> List[ProjectVersion]:
        try:
            versions = self.versions.list_versions(project.id, project.user_id)
        except PersistenceError as e:
            self._notify(f"Could not load project history: {e}", "error")
            return list(self.state.versions)
        self._set(versions=tuple(versions))
        return versions

    # ------------------------------------------------------------------ #
    # 会话与引导
    # ------------------------------------------------------------------ #
    def open_session(self, user_id: str, tier: SubscriptionTier = SubscriptionTier.FREE) -> AppState:
        """
        以已认证的用户 id 打开会话：读取资料、项目列表，并尽力恢复本地草稿与最近项目。
        """
        tier = SubscriptionTier(tier)
        self.state = AppState(user_id=user_id, tier=tier)
        self.usage.tier = tier
        self.usage.reset()
        logger.info(f"打开会话: 用户 {user_id} (档位 {tier.value})")

        try:
            profile = self.profiles.get(user_id)
            self._set(profile=profile, needs_onboarding=profile is None or not profile.onboarding_completed)
        except PersistenceError as e:
            self._notify(f"Could not load your profile: {e}", "error")

        try:
            projects = self.projects.list_by_user(user_id)
            self._set(projects=tuple(projects))
        except PersistenceError as e:
            self._set(error=str(e))
            self._notify("Could not load your projects.", "error")

        last_id = state_store.load_value(state_store.last_active_project_key(user_id), None, self.state_dir)
        restored = next((p for p in self.state.projects if p.id == last_id), None) if last_id else None
        if restored is not None:
            self._set(active_project=restored, raw_idea=restored.raw_story_idea or "")
        else:
            if last_id:
                self._remember_active(None)
            draft = state_store.load_value(state_store.RAW_IDEA_DRAFT_KEY, "", self.state_dir)
            self._set(raw_idea=draft if isinstance(draft, str) else "")
        return self.state

    def complete_onboarding(self, display_name: Optional[str] = None,
                            preferred_genres: Optional[List[str]] = None) -> bool:
        if not self.state.user_id:
            return False
        try:
            profile = self.profiles.upsert(self.state.user_id, display_name=display_name,
                                           preferred_genres=preferred_genres, onboarding_completed=True)
        except PersistenceError as e:
            self._notify(f"Failed to save profile: {e}", "error")
            return False
        self._set(profile=profile, needs_onboarding=False)
        self._notify("Profile saved!", "success")
        return True

    def skip_onboarding(self) -> bool:
        """跳过引导同样标记为已完成，避免重复弹出。"""
        if not self.state.user_id:
            return False
        try:
            profile = self.profiles.upsert(self.state.user_id, onboarding_completed=True)
        except PersistenceError as e:
            self._notify(f"Failed to save profile: {e}", "error")
            return False
        self._set(profile=profile, needs_onboarding=False)
        return True

    def logout(self):
        """完全重置会话状态与当日配额"""
        logger.info(f"用户登出: {self.state.user_id}")
        self.state = logged_out_state()
        self.usage.tier = SubscriptionTier.FREE
        self.usage.reset()

    def upgrade_to_pro(self):
        self._set(tier=SubscriptionTier.PRO, upgrade_prompt=None)
        self.usage.tier = SubscriptionTier.PRO
        self.usage.reset()
        self._notify("You are now on the PRO plan!", "success")

    def dismiss_upgrade_prompt(self):
        self._set(upgrade_prompt=None)

    def dismiss_notifications(self):
        self._set(notifications=())

    def clear_error(self):
        self._set(error=None)

    # ------------------------------------------------------------------ #
    # 新建故事
    # ------------------------------------------------------------------ #
    def set_raw_idea(self, text: str):
        """更新灵感文本；仅在没有当前项目与待建项目时作为本地草稿保存。"""
        text = text or ""
        self._set(raw_idea=text)
        s = self.state
        if s.active_project is None and s.pending_project is None and not s.awaiting_title:
            state_store.save_value(state_store.RAW_IDEA_DRAFT_KEY, text, self.state_dir)

    def start_new_story(self) -> bool:
        if not can_create_project(self.state.tier, len(self.state.projects)):
            self.state = request_upgrade(self.state, UPGRADE_SOURCE_PROJECT_LIMIT)
            return False
        self.state = reset_new_story(self.state)
        if self.state.user_id:
            self._remember_active(None)
        state_store.remove_value(state_store.RAW_IDEA_DRAFT_KEY, self.state_dir)
        return True

    def select_framework(self, framework_id: str) -> bool:
        """
        选定框架后进入标题输入。
        有灵感且模型可用时先将灵感映射到各阶段；映射失败回到空闲状态并提示错误。
        """
        if not self.state.user_id:
            self._set(error="You must be logged in to create a project.")
            return False
        if self._busy():
            logger.warning("已有进行中的操作，忽略框架选择。")
            return False
        if not can_create_project(self.state.tier, len(self.state.projects)):
            self.state = request_upgrade(self.state, UPGRADE_SOURCE_PROJECT_LIMIT)
            return False
        framework = get_framework(framework_id)
        if framework is None:
            self._set(error=f"Unknown story framework: '{framework_id}'.")
            return False

        idea = self.state.raw_idea.strip()
        self._set(selected_framework_id=framework.id, error=None)

        if idea and self.provider_available():
            self._set(loading_mapping=True)
            try:
                contents = AssistService.map_idea_to_framework(idea, framework)
            except ProviderError as e:
                self._set(loading_mapping=False, pending_project=None, selected_framework_id=None,
                          awaiting_title=False, error=f"Failed to map your idea to the framework: {e}")
                return False
            self._set(loading_mapping=False)
        else:
            contents = empty_stages_content(framework)

        pending = PendingProject(framework_id=framework.id, stages_content=contents, raw_story_idea=idea or None)
        self._set(pending_project=pending, awaiting_title=True)
        return True

    def cancel_title_input(self):
        self._set(pending_project=None, awaiting_title=False, selected_framework_id=None)

    def submit_project_title(self, title: str) -> Optional[Project]:
        pending = self.state.pending_project
        if pending is None or not self.state.user_id:
            return None

        name = (title or "").strip() or f"Untitled Story ({self.clock().strftime('%Y-%m-%d')})"
        draft = ProjectDraft(
            user_id=self.state.user_id,
            name=name,
            framework_id=pending.framework_id,
            stages_content=dict(pending.stages_content),
            raw_story_idea=pending.raw_story_idea,
        )
        try:
            project = self.projects.create(draft)
        except PersistenceError as e:
            self._set(error=str(e))
            self._notify(f"Failed to create project: {e}", "error")
            return None

        self.state = upsert_project(self.state, project, make_active=True)
        self._set(pending_project=None, awaiting_title=False, selected_framework_id=None,
                  raw_idea="", versions=(), error=None)
        self._snapshot(project, "Project Created")
        state_store.remove_value(state_store.RAW_IDEA_DRAFT_KEY, self.state_dir)
        self._remember_active(project.id)
        self._notify(f"Project '{project.name}' created!", "success")
        return project

    def load_project(self, project_id: str) -> Optional[Project]:
        if self._busy():
            return None
        project = next((p for p in self.state.projects if p.id == project_id), None)
        if project is None:
            try:
                project = self.projects.get(project_id, self.state.user_id)
            except PersistenceError as e:
                self._notify(f"Could not load project: {e}", "error")
                return None
            if project is None:
                self._notify("Project not found on server or already deleted.", "warning")
                return None
        self.state = upsert_project(self.state, project, make_active=True)
        self._set(versions=(), history_open=False, assist=None, pending_project=None,
                  awaiting_title=False, error=None)
        self._remember_active(project.id)
        return project

    # ------------------------------------------------------------------ #
    # 阶段编辑与单阶段 AI
    # ------------------------------------------------------------------ #
    def update_stage_content(self, stage_id: str, content: str) -> bool:
        """乐观更新单个阶段，成功后写入版本快照；失败回滚并给出行内错误。"""
        if self.state.bulk_operation_in_progress:
            logger.warning(f"批量操作进行中，拒绝更新阶段 '{stage_id}'。")
            return False
        project, _, stage = self._resolve_stage(stage_id)
        if project is None:
            return False

        now = self.clock()
        try:
            updated = self._optimistic_project_update(
                project,
                lambda p: with_stage_content(p, stage_id, content, now=now),
                ("stages_content",),
            )
        except NotFoundError as e:
            logger.warning(f"项目 {project.id} 在服务端已不存在，从本地移除。")
            self._forget_project(project, str(e))
            return False
        except PersistenceError as e:
            self._set(error=f"Failed to save changes: {e}")
            return False

        self._set(error=None)
        self._snapshot(updated, f"Stage: '{stage.name}' Updated")
        return True

    def _assist_for(self, target: str) -> AssistSession:
        current = self.state.assist
        if current is not None and current.target == target:
            return current
        return AssistSession(target=target)

    def request_clarifying_questions(self, stage_id: str, instruction: Optional[str] = None) -> List[str]:
        if self.state.bulk_operation_in_progress:
            return []
        project, framework, stage = self._resolve_stage(stage_id)
        if project is None:
            return []
        if not self.usage.check_and_increment(UsageKind.CLARIFYING_QUESTIONS):
            return []

        assist = replace(self._assist_for(stage_id), error=None)
        context = AssistService.build_stage_context(project, framework, stage_id)
        try:
            questions = AssistService.clarifying_questions(stage, context, instruction)
        except ProviderError as e:
            self._set(assist=replace(assist, error=str(e)))
            return []
        self._set(assist=replace(assist, questions=tuple(questions)))
        return questions

    def generate_stage_suggestion(self, stage_id: str, output_mode: OutputMode = OutputMode.CREATIVE,
                                  qa_pairs: Optional[Sequence[QAPair]] = None,
                                  instruction: Optional[str] = None) -> Optional[str]:
        """生成单阶段建议并暂存，等待用户接受。"""
        if self.state.bulk_operation_in_progress:
            return None
        project, framework, stage = self._resolve_stage(stage_id)
        if project is None:
            return None
        if not self.usage.check_and_increment(UsageKind.SINGLE_STAGE_GENERATIONS):
            return None

        mode = OutputMode(output_mode)
        assist = replace(self._assist_for(stage_id), output_mode=mode, error=None, single_suggestion=None)
        context = AssistService.build_stage_context(project, framework, stage_id, include_current_draft=True)
        try:
            suggestion = AssistService.single_stage_suggestion(
                framework.id, stage, context, mode, qa_pairs=qa_pairs, instruction=instruction
            )
        except ProviderError as e:
            self._set(assist=replace(assist, error=str(e)))
            return None
        self._set(assist=replace(assist, single_suggestion=suggestion))
        return suggestion

    def accept_stage_suggestion(self) -> bool:
        assist = self.state.assist
        if assist is None or assist.target == ALL_STAGES_TARGET or assist.single_suggestion is None:
            return False
        if not self.update_stage_content(assist.target, assist.single_suggestion):
            return False
        self._set(assist=None)
        return True

    def close_assist(self):
        self._set(assist=None)

    # ------------------------------------------------------------------ #
    # 整篇生成
    # ------------------------------------------------------------------ #
    def open_full_story_assist(self) -> bool:
        """
        打开整篇生成面板。

        有原始灵感 -> 整篇草稿；无灵感且部分阶段已填 -> 补全剩余阶段。
        FREE 档位直接提示升级，不计数也不调用模型。
        """
        project, framework = self._active()
        if project is None or self._busy():
            return False
        if not is_feature_enabled(self.state.tier, FEATURE_FULL_STORY_AI):
            self.state = request_upgrade(self.state, UPGRADE_SOURCE_FULL_STORY)
            return False

        has_idea = bool(project.raw_story_idea and project.raw_story_idea.strip())
        filled = [s for s in framework.stages if project.stage_text(s.id).strip()]
        if has_idea:
            completion_mode = False
        elif filled and len(filled) < len(framework.stages):
            completion_mode = True
        elif filled:
            self._notify("All stages already have content.", "info")
            return False
        else:
            self._notify("Add a story idea or write at least one stage before using full story assist.", "info")
            return False

        if not self.usage.check_and_increment(UsageKind.FULL_STORY_DRAFTERS):
            return False
        self._set(assist=AssistSession(target=ALL_STAGES_TARGET, completion_mode=completion_mode))
        return True

    def generate_all_stages(self, output_mode: OutputMode = OutputMode.CREATIVE,
                            instruction: Optional[str] = None) -> Optional[Dict[str, str]]:
        """执行整篇生成并暂存结果；错误只记录在面板中，不修改项目。"""
        assist = self.state.assist
        project, framework = self._active()
        if project is None or assist is None or assist.target != ALL_STAGES_TARGET:
            return None
        if self.state.bulk_operation_in_progress:
            return None

        mode = OutputMode(output_mode)
        assist = replace(assist, output_mode=mode, error=None, all_stages_suggestion=None)
        self._set(generating_all_stages=True, assist=assist)
        try:
            if assist.completion_mode:
                generated = AssistService.complete_remaining_stages(
                    framework, project.stages_content, mode, instruction
                )
                result = {s.id: project.stage_text(s.id) for s in framework.stages}
                result.update(generated)
            else:
                result = AssistService.full_draft_from_idea(framework, project.raw_story_idea or "", mode, instruction)
        except ProviderError as e:
            self._set(assist=replace(assist, error=str(e)))
            return None
        finally:
            self._set(generating_all_stages=False)

        self._set(assist=replace(assist, all_stages_suggestion=result))
        return result

    def accept_all_stages_suggestion(self, contents: Optional[Dict[str, str]] = None) -> bool:
        """一次性应用整篇结果（可传入用户编辑后的内容）。"""
        assist = self.state.assist
        if contents is None and assist is not None:
            contents = assist.all_stages_suggestion
        project, framework = self._active()
        if project is None or contents is None:
            return False
        if self.state.bulk_operation_in_progress:
            return False

        merged = {s.id: contents.get(s.id, project.stage_text(s.id)) for s in framework.stages}
        now = self.clock()
        self._set(generating_all_stages=True)
        try:
            updated = self._optimistic_project_update(
                project,
                lambda p: with_all_stages_content(p, merged, now=now),
                ("stages_content",),
            )
        except NotFoundError as e:
            self._forget_project(project, str(e))
            return False
        except PersistenceError as e:
            self._set(error=f"Failed to apply full story draft: {e}")
            self._notify(f"Failed to apply full story draft: {e}", "error")
            return False
        finally:
            self._set(generating_all_stages=False)

        self._snapshot(updated, "Full Story Draft Applied")
        self._set(assist=None, error=None)
        self._notify("Full story draft applied!", "success")
        return True

    # ------------------------------------------------------------------ #
    # 历史版本
    # ------------------------------------------------------------------ #
    def open_project_history(self) -> List[ProjectVersion]:
        project, _ = self._active()
        if project is None:
            return []
        self._set(history_open=True)
        return self._refresh_versions(project)

    def close_project_history(self):
        self._set(history_open=False)

    def revert_to_version(self, version_id: int) -> bool:
        """
        将版本内容作为一次普通更新写回，再记录一条 “Reverted to version from …” 快照。
        """
        if self._busy():
            logger.warning("已有进行中的操作，拒绝回滚。")
            return False
        project, _ = self._active()
        if project is None:
            return False

        version = next((v for v in self.state.versions if v.id == version_id), None)
        if version is None:
            try:
                version = self.versions.get_version(version_id, project.user_id)
            except PersistenceError as e:
                self._notify(f"Could not load version: {e}", "error")
                return False
        if version is None or version.project_id != project.id:
            self._notify("Version not found for this project.", "error")
            return False

        now = self.clock()
        self._set(reverting_version_id=version_id)
        try:
            updated = self._optimistic_project_update(
                project,
                lambda p: with_all_stages_content(p, version.stages_content, version.raw_story_idea,
                                                  now=now, replace_idea=True),
                ("stages_content", "raw_story_idea"),
            )
        except NotFoundError as e:
            self._forget_project(project, str(e))
            return False
        except PersistenceError as e:
            self._set(error=f"Failed to revert project: {e}")
            self._notify(f"Failed to revert project: {e}", "error")
            return False
        finally:
            self._set(reverting_version_id=None)

        stamp = version.created_at.strftime("%Y-%m-%d %H:%M:%S UTC") if version.created_at else str(version.id)
        self._snapshot(updated, f"Reverted to version from {stamp}")
        self._set(error=None)
        self._notify(f"Project reverted to version from {stamp}.", "success")
        return True

    # ------------------------------------------------------------------ #
    # 删除
    # ------------------------------------------------------------------ #
    def attempt_delete(self, project_id: str) -> bool:
        if self._busy():
            return False
        project = next((p for p in self.state.projects if p.id == project_id), None)
        if project is None:
            return False
        self._set(project_to_delete=project)
        return True

    def cancel_delete(self):
        if not self.state.processing_delete:
            self._set(project_to_delete=None)

    def confirm_delete(self) -> bool:
        """
        删除待确认的项目。

        - 服务端未找到 (0 行)：提示警告并从本地移除。
        - 删除数不确定或数据库错误：提示错误，本地列表不变。
        """
        project = self.state.project_to_delete
        if project is None or self.state.processing_delete:
            return False

        self._set(processing_delete=True)
        try:
            self.projects.delete(project.id, project.user_id)
            message, kind = f"Project '{project.name}' deleted.", "success"
        except NotFoundError as e:
            message, kind = str(e), "warning"
        except PersistenceError as e:
            self._set(processing_delete=False, project_to_delete=None)
            self._notify(f"Failed to delete project: {e}", "error")
            return False

        self._set(processing_delete=False, project_to_delete=None)
        self._forget_project(project, message, kind)
        return True

    # ------------------------------------------------------------------ #
    # 导出
    # ------------------------------------------------------------------ #
    def export_project(self, fmt: str, options: Optional[ExportOptions] = None) -> Optional[export_service.ExportResult]:
        if not is_feature_enabled(self.state.tier, FEATURE_EXPORT):
            self.state = request_upgrade(self.state, UPGRADE_SOURCE_EXPORT)
            return None
        project, framework = self._active()
        if project is None:
            return None
        try:
            return export_service.export_project(project, framework, fmt, options or ExportOptions())
        except ExportError as e:
            self._notify(str(e), "error")
            return None
