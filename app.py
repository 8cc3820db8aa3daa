import logging
import os
from config import load_environment
from config import loader as config_manager
from core import logger as logger_config
from core.frameworks import list_frameworks
from infra.storage import sql_db
from infra.storage.profile_store import ProfileStore
from infra.storage.project_store import ProjectRepository
from infra.storage.version_store import VersionStore
from services.workflow import StoryWorkflow

app_logger = logging.getLogger(__name__)


def _ensure_sqlite_dir(database_url: str):
    """SQLite 文件库需要目录预先存在"""
    prefix = "sqlite:///"
    if database_url.startswith(prefix) and ":memory:" not in database_url:
        directory = os.path.dirname(database_url[len(prefix):])
        if directory:
            os.makedirs(directory, exist_ok=True)


def create_app(database_url: str = None, state_dir: str = None, configure_logging: bool = True) -> StoryWorkflow:
    """
    初始化环境、日志与存储，返回装配好的 StoryWorkflow。
    宿主界面（或测试）随后调用 open_session(user_id) 开始会话。
    """
    load_environment()
    if configure_logging:
        logger_config.setup_logging()

    config = config_manager.load_config()
    storage = config_manager.get_storage_settings(config)
    database_url = database_url or storage["database_url"]
    state_dir = state_dir or storage["state_dir"]

    _ensure_sqlite_dir(database_url)
    sql_db.get_engine(database_url)
    list_frameworks()

    app_logger.info(f"StoryGen 已初始化 (数据库: {database_url.split('@')[-1]}, 本地状态: {state_dir})")
    return StoryWorkflow(
        projects=ProjectRepository(database_url),
        versions=VersionStore(database_url, max_versions=config_manager.get_max_versions(config)),
        profiles=ProfileStore(database_url),
        state_dir=state_dir,
    )


if __name__ == "__main__":
    create_app()
    for framework in list_frameworks():
        print(f"{framework.id}: {framework.name} ({len(framework.stages)} stages)")
