import ssl
from urllib.parse import urlparse

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from app.config import get_settings

settings = get_settings()

LOCAL_DB_HOSTS = {"localhost", "127.0.0.1", "postgres"}


def connect_args(url: str) -> dict:
    """asyncpg connect args: an unverified TLS context for hosted Postgres."""
    use_ssl = settings.database_ssl
    if use_ssl is None:
        use_ssl = urlparse(url).hostname not in LOCAL_DB_HOSTS
    if not use_ssl:
        return {}
    ssl_ctx = ssl.create_default_context()
    ssl_ctx.check_hostname = False
    ssl_ctx.verify_mode = ssl.CERT_NONE
    return {"ssl": ssl_ctx}


def make_engine(pool_size: int | None = None, max_overflow: int | None = None, **kwargs) -> AsyncEngine:
    """Engine for the configured database; Celery tasks build their own with a small pool."""
    url = settings.async_database_url
    return create_async_engine(
        url,
        echo=settings.app_debug,
        pool_size=settings.database_pool_size if pool_size is None else pool_size,
        max_overflow=settings.database_max_overflow if max_overflow is None else max_overflow,
        pool_pre_ping=True,
        connect_args=connect_args(url),
        **kwargs,
    )


engine = make_engine()

async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncSession:
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
