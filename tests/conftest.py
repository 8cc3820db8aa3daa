"""
StoryGen - Test Configuration and Fixtures
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel

from core.frameworks import get_framework
from infra.storage.profile_store import ProfileStore
from infra.storage.project_store import ProjectRepository
from infra.storage.version_store import VersionStore
from services.workflow import StoryWorkflow

TEST_USER_ID = "user-123"
TEST_DAY = "2026-01-15"


class FrozenClock:
    """可手动推进的时钟，每次调用默认前进 1 秒，保证时间戳严格递增"""

    def __init__(self, start: datetime = None, step: float = 1.0):
        self.current = start or datetime.now(timezone.utc)
        self.step = timedelta(seconds=step)

    def __call__(self) -> datetime:
        self.current = self.current + self.step
        return self.current


@pytest.fixture
def database_url(tmp_path) -> str:
    """每个测试使用独立的 SQLite 文件库"""
    return f"sqlite:///{tmp_path / 'storygen_test.db'}"


@pytest.fixture
def state_dir(tmp_path) -> str:
    return str(tmp_path / "local_state")


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def project_repo(database_url) -> ProjectRepository:
    return ProjectRepository(database_url)


@pytest.fixture
def version_store(database_url) -> VersionStore:
    return VersionStore(database_url, max_versions=15)


@pytest.fixture
def profile_store(database_url) -> ProfileStore:
    return ProfileStore(database_url)


@pytest.fixture
def hero_framework():
    return get_framework("herosJourney")


@pytest.fixture
def six_stage_framework():
    return get_framework("sixStagePlot")


@pytest.fixture
def mock_get_llm():
    """替换链中使用的模型工厂；测试通过 return_value 指定假模型"""
    with patch("chains.assist.get_llm") as mocked:
        yield mocked


@pytest.fixture
def use_llm(mock_get_llm):
    """让后续的链调用依次返回给定文本"""
    def _use(*responses: str):
        mock_get_llm.return_value = FakeListChatModel(responses=list(responses))
        return mock_get_llm
    return _use


@pytest.fixture
def workflow(project_repo, version_store, profile_store, state_dir, clock) -> StoryWorkflow:
    wf = StoryWorkflow(
        projects=project_repo,
        versions=version_store,
        profiles=profile_store,
        state_dir=state_dir,
        today=lambda: TEST_DAY,
        clock=clock,
        provider_available=lambda: True,
    )
    wf.open_session(TEST_USER_ID)
    return wf


@pytest.fixture
def pro_workflow(workflow) -> StoryWorkflow:
    workflow.upgrade_to_pro()
    workflow.dismiss_notifications()
    return workflow


def create_project(wf: StoryWorkflow, framework_id: str = "sixStagePlot", title: str = "Test Story",
                   idea: str = ""):
    """通过控制器走完“选框架 -> 输入标题”流程（不调用模型）"""
    wf.start_new_story()
    if idea:
        wf.set_raw_idea(idea)
    provider = wf.provider_available
    wf.provider_available = lambda: False
    try:
        assert wf.select_framework(framework_id)
    finally:
        wf.provider_available = provider
    return wf.submit_project_title(title)


@pytest.fixture
def make_project():
    return create_project
