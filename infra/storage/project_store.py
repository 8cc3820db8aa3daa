"""
项目仓储 (Project Repository)
对 projects 表的增删改查。所有数据库异常统一转换为 PersistenceError。
"""
import logging
from typing import Dict, List, Optional

from sqlalchemy import delete as sa_delete
from sqlalchemy.exc import SQLAlchemyError

from core.exceptions import NotFoundError, PersistenceError
from core.frameworks import get_framework
from core.models import ProjectRecord
from core.schemas import Framework, Project, ProjectDraft
from infra.storage.sql_db import get_session, ensure_utc

logger = logging.getLogger(__name__)

# 领域字段 -> 表字段
_PATCH_COLUMNS = {
    "name": "name",
    "stages_content": "stagescontent",
    "raw_story_idea": "rawstoryidea",
    "last_modified": "lastmodified",
}


def to_project(record: ProjectRecord) -> Project:
    return Project(
        id=record.id,
        user_id=record.user_id,
        name=record.name,
        framework_id=record.frameworkid,
        stages_content=dict(record.stagescontent or {}),
        raw_story_idea=record.rawstoryidea,
        last_modified=ensure_utc(record.lastmodified),
        created_at=ensure_utc(record.createdat),
    )


def clean_stages_content(framework: Framework, contents: Dict[str, str]) -> Dict[str, str]:
    """只保留属于该框架的阶段键，值统一为字符串。"""
    valid_ids = set(framework.stage_ids)
    cleaned = {}
    for key, value in (contents or {}).items():
        if key not in valid_ids:
            logger.warning(f"忽略不属于框架 '{framework.id}' 的阶段键: '{key}'")
            continue
        cleaned[key] = value if isinstance(value, str) else ("" if value is None else str(value))
    return cleaned


def _require_framework(framework_id: str) -> Framework:
    framework = get_framework(framework_id)
    if framework is None:
        raise PersistenceError(f"未知的框架 id: '{framework_id}'")
    return framework


class ProjectRepository:
    def __init__(self, database_url: str):
        self.database_url = database_url

    def create(self, draft: ProjectDraft) -> Project:
        """插入新项目，返回带服务端 id 与时间戳的记录。"""
        framework = _require_framework(draft.framework_id)
        session = get_session(self.database_url)
        try:
            record = ProjectRecord(
                user_id=draft.user_id,
                name=draft.name,
                frameworkid=framework.id,
                stagescontent=clean_stages_content(framework, draft.stages_content),
                rawstoryidea=draft.raw_story_idea,
            )
            session.add(record)
            session.commit()
            session.refresh(record)
            project = to_project(record)
            logger.info(f"项目已创建: {project.id} ('{project.name}')")
            return project
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"创建项目失败: {e}", exc_info=True)
            raise PersistenceError(f"Failed to save project: {e}") from e
        finally:
            session.close()

    def update(self, project_id: str, user_id: str, patch: dict) -> int:
        """
        按 id + 所有者更新项目。

        Returns:
            受影响的行数 (1)。
        Raises:
            NotFoundError: 没有匹配的行。
            PersistenceError: 数据库错误。
        """
        values = {}
        for field_name, value in patch.items():
            column = _PATCH_COLUMNS.get(field_name)
            if column is None:
                raise PersistenceError(f"不支持更新的字段: '{field_name}'")
            values[column] = value

        if "stagescontent" in values:
            existing = self.get(project_id, user_id)
            if existing is None:
                raise NotFoundError("Project not found on server or already deleted.")
            values["stagescontent"] = clean_stages_content(
                _require_framework(existing.framework_id), values["stagescontent"]
            )

        session = get_session(self.database_url)
        try:
            count = (
                session.query(ProjectRecord)
                .filter(ProjectRecord.id == project_id, ProjectRecord.user_id == user_id)
                .update(values, synchronize_session=False)
            )
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"更新项目 {project_id} 失败: {e}", exc_info=True)
            raise PersistenceError(f"Failed to save changes: {e}") from e
        finally:
            session.close()

        if count == 0:
            raise NotFoundError("Project not found on server or already deleted.")
        return count

    def delete(self, project_id: str, user_id: str) -> int:
        """
        删除项目。影响行数为 0 视为 NotFound；无法确定影响行数时按失败处理。
        """
        session = get_session(self.database_url)
        try:
            result = session.execute(
                sa_delete(ProjectRecord).where(
                    ProjectRecord.id == project_id, ProjectRecord.user_id == user_id
                )
            )
            count = result.rowcount
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"删除项目 {project_id} 失败: {e}", exc_info=True)
            raise PersistenceError(f"Failed to delete project: {e}") from e
        finally:
            session.close()

        if count is None or count < 0:
            raise PersistenceError("Server did not confirm deletion count.")
        if count == 0:
            raise NotFoundError("Project not found on server or already deleted.")
        logger.info(f"项目已删除: {project_id}")
        return count

    def list_by_user(self, user_id: str) -> List[Project]:
        """返回用户的所有项目，按最后修改时间倒序。"""
        session = get_session(self.database_url)
        try:
            records = (
                session.query(ProjectRecord)
                .filter(ProjectRecord.user_id == user_id)
                .order_by(ProjectRecord.lastmodified.desc())
                .all()
            )
            return [to_project(r) for r in records]
        except SQLAlchemyError as e:
            logger.error(f"读取项目列表失败: {e}", exc_info=True)
            raise PersistenceError(f"Could not load your projects. {e}") from e
        finally:
            session.close()

    def get(self, project_id: str, user_id: str) -> Optional[Project]:
        session = get_session(self.database_url)
        try:
            record = (
                session.query(ProjectRecord)
                .filter(ProjectRecord.id == project_id, ProjectRecord.user_id == user_id)
                .first()
            )
            return to_project(record) if record else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not load project: {e}") from e
        finally:
            session.close()
