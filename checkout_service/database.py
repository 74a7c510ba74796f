import logging

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from . import config

logger = logging.getLogger(__name__)

_url = make_url(config.DATABASE_URL)

try:
    logger.info(f"Creating checkout database engine for {_url.render_as_string(hide_password=True)}")
    engine = create_async_engine(_url, echo=config.DB_ECHO, pool_pre_ping=True)
    AsyncSessionFactory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
except Exception as e:
    logger.error(f"FATAL: checkout database engine could not be created: {e}")
    raise RuntimeError(f"Could not initialize database connection: {e}")

Base = declarative_base()


async def get_db_session() -> AsyncSession:
    """Request-scoped session; any uncommitted work is rolled back when the handler raises."""
    async with AsyncSessionFactory() as session:
        try:
            yield session
        except Exception:
            logger.exception("Rolling back checkout session after handler error")
            await session.rollback()
            raise
