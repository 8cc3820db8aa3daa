"""
项目历史版本 (Version Store)
每次被接受的修改都会插入一个快照，并将同一项目的快照裁剪到最近的 max_versions 条。
"""
import logging
from typing import List

from sqlalchemy.exc import SQLAlchemyError

from config.loader import DEFAULT_MAX_VERSIONS
from core.exceptions import PersistenceError
from core.models import ProjectVersionRecord
from core.schemas import Project, ProjectVersion
from infra.storage.sql_db import get_session, ensure_utc

logger = logging.getLogger(__name__)


def to_version(record: ProjectVersionRecord) -> ProjectVersion:
    return ProjectVersion(
        id=record.id,
        project_id=record.project_id,
        user_id=record.user_id,
        stages_content=dict(record.stagescontent or {}),
        raw_story_idea=record.rawstoryidea,
        version_name=record.version_name,
        created_at=ensure_utc(record.created_at),
    )


class VersionStore:
    def __init__(self, database_url: str, max_versions: int = DEFAULT_MAX_VERSIONS):
        self.database_url = database_url
        self.max_versions = max_versions

    def snapshot(self, project: Project, label: str) -> ProjectVersion:
        """
        先插入快照，再裁剪旧版本。
        插入失败抛出 PersistenceError；裁剪失败只记录日志，不回滚已插入的快照。
        """
        if not project.id or not project.user_id:
            raise PersistenceError("Cannot save version: missing user id or project id.")

        session = get_session(self.database_url)
        try:
            record = ProjectVersionRecord(
                project_id=project.id,
                user_id=project.user_id,
                stagescontent=dict(project.stages_content),
                rawstoryidea=project.raw_story_idea,
                version_name=label,
            )
            session.add(record)
            session.commit()
            session.refresh(record)
            version = to_version(record)
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"保存项目版本失败 ({project.id}): {e}", exc_info=True)
            raise PersistenceError(f"Failed to save project version: {e}") from e
        finally:
            session.close()

        self._trim(project.id)
        return version

    def _trim(self, project_id: str):
        """删除第 max_versions 条之后的所有旧版本（一次批量删除）。"""
        session = get_session(self.database_url)
        try:
            rows = (
                session.query(ProjectVersionRecord.id)
                .filter(ProjectVersionRecord.project_id == project_id)
                .order_by(ProjectVersionRecord.created_at.desc(), ProjectVersionRecord.id.desc())
                .all()
            )
            stale_ids = [row.id for row in rows[self.max_versions:]]
            if stale_ids:
                (
                    session.query(ProjectVersionRecord)
                    .filter(ProjectVersionRecord.id.in_(stale_ids))
                    .delete(synchronize_session=False)
                )
                session.commit()
                logger.info(f"项目 {project_id} 已裁剪 {len(stale_ids)} 个旧版本。")
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"裁剪项目 {project_id} 旧版本失败: {e}", exc_info=True)
        finally:
            session.close()

    def list_versions(self, project_id: str, user_id: str) -> List[ProjectVersion]:
        """返回最多 max_versions 个版本，最新的在前。"""
        session = get_session(self.database_url)
        try:
            records = (
                session.query(ProjectVersionRecord)
                .filter(
                    ProjectVersionRecord.project_id == project_id,
                    ProjectVersionRecord.user_id == user_id,
                )
                .order_by(ProjectVersionRecord.created_at.desc(), ProjectVersionRecord.id.desc())
                .limit(self.max_versions)
                .all()
            )
            return [to_version(r) for r in records]
        except SQLAlchemyError as e:
            logger.error(f"读取项目版本失败 ({project_id}): {e}", exc_info=True)
            raise PersistenceError(f"Failed to load project versions: {e}") from e
        finally:
            session.close()

    def get_version(self, version_id: int, user_id: str):
        session = get_session(self.database_url)
        try:
            record = (
                session.query(ProjectVersionRecord)
                .filter(ProjectVersionRecord.id == version_id, ProjectVersionRecord.user_id == user_id)
                .first()
            )
            return to_version(record) if record else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load project version: {e}") from e
        finally:
            session.close()
