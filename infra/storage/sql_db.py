"""
数据库管理器 (SQL Store)
负责按数据库 URL 创建并缓存引擎，提供会话。
"""
import logging
from datetime import datetime, timezone
from functools import lru_cache
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session
from core.models import Base

logger = logging.getLogger(__name__)

@lru_cache(maxsize=5)
def get_engine(database_url: str):
    """
    获取指定数据库的引擎 (带缓存)，首次获取时自动建表。
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        # 允许在多线程宿主中访问
        connect_args = {"check_same_thread": False}
    engine = create_engine(database_url, connect_args=connect_args)

    if database_url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def _enable_sqlite_fk(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    Base.metadata.create_all(engine)
    logger.info(f"数据库引擎已就绪: {engine.url.render_as_string(hide_password=True)}")
    return engine

def get_session(database_url: str) -> Session:
    """获取一个新的数据库会话"""
    engine = get_engine(database_url)
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
    return SessionLocal()

def ensure_utc(value: datetime) -> datetime:
    """SQLite 读回的时间不带时区，统一视为 UTC。"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
