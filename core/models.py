"""
核心数据模型 (Data Models)
定义记录存储中的表结构：projects / project_versions / user_profiles。
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, JSON, ForeignKey, Index
from sqlalchemy.orm import declarative_base

Base = declarative_base()

def _utcnow():
    return datetime.now(timezone.utc)

def _new_id():
    return str(uuid.uuid4())

class ProjectRecord(Base):
    """
    项目表
    stagescontent 以 JSON 存储 {stage_id: text}。
    """
    __tablename__ = 'projects'

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    frameworkid = Column(String, nullable=False)
    stagescontent = Column(JSON, nullable=False, default=dict)
    rawstoryidea = Column(Text, nullable=True)
    lastmodified = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    createdat = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

class ProjectVersionRecord(Base):
    """
    项目历史版本表 (每个项目最多保留 MAX_VERSIONS 条)
    """
    __tablename__ = 'project_versions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(String, ForeignKey('projects.id', ondelete='CASCADE'), nullable=False)
    user_id = Column(String, nullable=False)
    stagescontent = Column(JSON, nullable=False, default=dict)
    rawstoryidea = Column(Text, nullable=True)
    version_name = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index('ix_project_versions_project_created', 'project_id', 'created_at'),
    )

class UserProfileRecord(Base):
    """用户资料表，id 与认证用户 id 一致"""
    __tablename__ = 'user_profiles'

    id = Column(String, primary_key=True)
    display_name = Column(String, nullable=True)
    preferred_genres = Column(JSON, nullable=True)
    onboarding_completed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
