"""
用户资料存储 (Profile Store)
首次登录或完成引导时 upsert，每个会话读取一次。
"""
import logging
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from core.exceptions import PersistenceError
from core.models import UserProfileRecord
from core.schemas import UserProfile
from infra.storage.sql_db import get_session, ensure_utc

logger = logging.getLogger(__name__)


def to_profile(record: UserProfileRecord) -> UserProfile:
    return UserProfile(
        id=record.id,
        display_name=record.display_name,
        preferred_genres=list(record.preferred_genres) if record.preferred_genres else None,
        onboarding_completed=bool(record.onboarding_completed),
        created_at=ensure_utc(record.created_at),
        updated_at=ensure_utc(record.updated_at),
    )


class ProfileStore:
    def __init__(self, database_url: str):
        self.database_url = database_url

    def get(self, user_id: str) -> Optional[UserProfile]:
        """读取用户资料，不存在时返回 None。"""
        session = get_session(self.database_url)
        try:
            record = session.get(UserProfileRecord, user_id)
            return to_profile(record) if record else None
        except SQLAlchemyError as e:
            logger.error(f"读取用户资料失败 ({user_id}): {e}", exc_info=True)
            raise PersistenceError(f"Failed to load user profile: {e}") from e
        finally:
            session.close()

    def upsert(self, user_id: str, display_name: Optional[str] = None,
               preferred_genres: Optional[List[str]] = None,
               onboarding_completed: bool = True) -> UserProfile:
        session = get_session(self.database_url)
        try:
            record = session.get(UserProfileRecord, user_id)
            if record is None:
                record = UserProfileRecord(id=user_id)
                session.add(record)
            if display_name is not None:
                record.display_name = display_name.strip() or None
            if preferred_genres is not None:
                record.preferred_genres = [g for g in preferred_genres if g] or None
            record.onboarding_completed = onboarding_completed
            session.commit()
            session.refresh(record)
            return to_profile(record)
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"保存用户资料失败 ({user_id}): {e}", exc_info=True)
            raise PersistenceError(f"Failed to save user profile: {e}") from e
        finally:
            session.close()
