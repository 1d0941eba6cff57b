# backend/core/database.py
# 功能: 数据库连接管理
# 主要函数: get_engine(), get_session_maker(), init_db(), get_db()
# 数据结构: Base (SQLAlchemy declarative base)

"""
数据库连接管理模块
使用 SQLAlchemy 2.0 同步模式，Session 通过 FastAPI 依赖按请求注入
"""

from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.pool import StaticPool

from core.config import settings


class Base(DeclarativeBase):
    """SQLAlchemy 声明式基类"""
    pass


@lru_cache()
def get_engine(database_url: str = ""):
    """
    获取数据库引擎（同一 URL 只创建一次）
    SQLite 使用 StaticPool 确保单连接；其它后端（Postgres）使用默认连接池
    """
    url = database_url or settings.database_url
    if url.startswith("sqlite"):
        _ensure_sqlite_dir(url)
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    return create_engine(url, pool_pre_ping=True)


def _ensure_sqlite_dir(url: str) -> None:
    """SQLite 文件库：确保父目录存在"""
    import os

    path = url.split("///", 1)[-1]
    if path and path != ":memory:":
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)


@lru_cache()
def get_session_maker():
    """获取Session工厂（随引擎缓存）"""
    engine = get_engine()
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine=None):
    """初始化数据库（创建所有表）"""
    engine = engine or get_engine()
    # 导入所有模型以确保它们被注册
    import core.models  # noqa
    Base.metadata.create_all(bind=engine)


# 依赖注入用的Session生成器
def get_db():
    """FastAPI依赖: 获取数据库Session"""
    SessionLocal = get_session_maker()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
