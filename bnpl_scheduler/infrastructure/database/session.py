"""Database engine and session factory, created lazily from settings"""

from functools import lru_cache
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from bnpl_scheduler.config import settings


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    # Connection pool: max 20 connections, recycle after 1 hour to avoid stale connections
    return create_engine(
        settings.database_url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=10,
        pool_recycle=3600,
    )


@lru_cache(maxsize=1)
def get_session_factory() -> sessionmaker:
    """Shared factory; services open one short-lived session per unit of work"""
    return sessionmaker(autocommit=False, autoflush=False, bind=get_engine())

