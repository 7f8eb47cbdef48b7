from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from marketauth.config import settings
import logging

logger = logging.getLogger(__name__)

DATABASE_URL = settings.database_url


def _engine_options(url: str) -> dict:
    # SQLite drivers do not accept pool sizing arguments
    if url.startswith("sqlite"):
        return {"echo": settings.debug}
    if settings.environment == "production":
        return {
            "pool_size": 20,
            "max_overflow": 50,
            "pool_timeout": 60,
            "pool_recycle": 1800,
        }
    return {
        "echo": settings.debug,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
    }


engine = create_async_engine(DATABASE_URL, **_engine_options(DATABASE_URL))

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    autoflush=False,
    expire_on_commit=False,
)

Base = declarative_base()


async def get_db():
    async with AsyncSessionLocal() as db:
        try:
            yield db
        except Exception as e:
            logger.error(f"Database session error: {e}")
            await db.rollback()
            raise
