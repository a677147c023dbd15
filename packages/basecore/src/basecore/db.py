import functools

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from basecore.settings import get_settings


def build_engine(database_url: str):
    """
    Create a SQLAlchemy engine for the given URL.

    In-memory SQLite shares one connection so every session sees the same data.
    """
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url == "sqlite://":
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=False, **kwargs)
    return create_engine(database_url, pool_pre_ping=True, echo=False)


@functools.lru_cache()
def get_engine():
    """
    Get SQLAlchemy engine (cached).

    This function lazily initializes the engine to avoid import-time side effects.
    The engine is created using DATABASE_URL from settings.
    """
    settings = get_settings()
    return build_engine(settings.DATABASE_URL)


@functools.lru_cache()
def get_sessionmaker():
    """
    Get SQLAlchemy sessionmaker (cached).

    This function lazily initializes the sessionmaker to avoid import-time side effects.
    """
    engine = get_engine()
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
