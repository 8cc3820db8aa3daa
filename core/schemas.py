"""
业务对象定义 (Schemas)
定义系统各层级间传递的强类型数据结构，确保数据流透明且可预测。
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Tuple


class SubscriptionTier(str, Enum):
    FREE = "free"
    PRO = "pro"


class OutputMode(str, Enum):
    """AI 输出形态：叙事正文 / 要点大纲 / 引导性问题"""
    CREATIVE = "creative"
    OUTLINE = "outline"
    PROMPT = "prompt"


class UsageKind(str, Enum):
    """受每日配额限制的三类 AI 操作"""
    SINGLE_STAGE_GENERATIONS = "single_stage_generations"
    CLARIFYING_QUESTIONS = "clarifying_questions"
    FULL_STORY_DRAFTERS = "full_story_drafters"


@dataclass(frozen=True)
class Stage:
    id: str
    name: str
    description: str = ""


@dataclass(frozen=True)
class Framework:
    """叙事框架：有序的阶段列表，启动时加载，运行期不可变。"""
    id: str
    name: str
    description: str
    stages: Tuple[Stage, ...] = ()

    def get_stage(self, stage_id: str) -> Optional[Stage]:
        return next((s for s in self.stages if s.id == stage_id), None)

    @property
    def stage_ids(self) -> List[str]:
        return [s.id for s in self.stages]


@dataclass(frozen=True)
class Project:
    """
    用户的故事项目 (领域模型)
    stages_content 以阶段 id 为键，缺失的键视为空内容。
    """
    id: str
    user_id: str
    name: str
    framework_id: str
    stages_content: Dict[str, str] = field(default_factory=dict)
    raw_story_idea: Optional[str] = None
    last_modified: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def stage_text(self, stage_id: str) -> str:
        return self.stages_content.get(stage_id) or ""


@dataclass(frozen=True)
class ProjectDraft:
    """尚未落库的新项目"""
    user_id: str
    name: str
    framework_id: str
    stages_content: Dict[str, str] = field(default_factory=dict)
    raw_story_idea: Optional[str] = None


@dataclass(frozen=True)
class ProjectVersion:
    """项目内容的不可变快照"""
    id: int
    project_id: str
    user_id: str
    stages_content: Dict[str, str]
    raw_story_idea: Optional[str]
    version_name: str
    created_at: Optional[datetime] = None


@dataclass
class AIUsageState:
    single_stage_generations: int = 0
    clarifying_questions: int = 0
    full_story_drafters: int = 0
    last_reset_date: str = ""  # YYYY-MM-DD

    def count(self, kind: UsageKind) -> int:
        return getattr(self, kind.value)


@dataclass(frozen=True)
class UserProfile:
    id: str
    display_name: Optional[str] = None
    preferred_genres: Optional[List[str]] = None
    onboarding_completed: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class QAPair:
    question: str
    answer: str = ""


@dataclass(frozen=True)
class ExportOptions:
    include_original_idea: bool = True
    include_framework_title: bool = True
    include_stage_titles: bool = True
    include_continuous_narrative: bool = False

    def normalized(self) -> "ExportOptions":
        """阶段标题与连续叙事互斥：勾选阶段标题时强制关闭连续叙事。"""
        if self.include_stage_titles and self.include_continuous_narrative:
            return ExportOptions(
                include_original_idea=self.include_original_idea,
                include_framework_title=self.include_framework_title,
                include_stage_titles=True,
                include_continuous_narrative=False,
            )
        return self


@dataclass(frozen=True)
class PendingProject:
    """已选框架、等待用户输入标题的项目数据"""
    framework_id: str
    stages_content: Dict[str, str]
    raw_story_idea: Optional[str] = None


@dataclass(frozen=True)
class Notification:
    message: str
    kind: str = "info"  # success | error | info | warning


@dataclass(frozen=True)
class AssistSession:
    """
    AI 辅助面板的临时状态。
    target 为阶段 id，或 "all" 表示整篇生成。
    """
    target: str
    completion_mode: bool = False
    output_mode: OutputMode = OutputMode.CREATIVE
    questions: Tuple[str, ...] = ()
    single_suggestion: Optional[str] = None
    all_stages_suggestion: Optional[Dict[str, str]] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class AppState:
    """
    会话级应用状态 (显式传递，替代全局变量)。
    所有本地状态迁移都通过 core.state 中的纯函数返回新实例。
    """
    user_id: Optional[str] = None
    tier: SubscriptionTier = SubscriptionTier.FREE
    profile: Optional[UserProfile] = None
    needs_onboarding: bool = False

    projects: Tuple[Project, ...] = ()
    active_project: Optional[Project] = None
    versions: Tuple[ProjectVersion, ...] = ()

    raw_idea: str = ""
    selected_framework_id: Optional[str] = None
    pending_project: Optional[PendingProject] = None

    # 进行中的操作标记
    awaiting_title: bool = False
    loading_mapping: bool = False
    generating_all_stages: bool = False
    reverting_version_id: Optional[int] = None
    processing_delete: bool = False

    project_to_delete: Optional[Project] = None
    history_open: bool = False
    assist: Optional[AssistSession] = None

    error: Optional[str] = None
    notifications: Tuple[Notification, ...] = ()
    upgrade_prompt: Optional[str] = None

    @property
    def bulk_operation_in_progress(self) -> bool:
        return self.generating_all_stages or self.reverting_version_id is not None
