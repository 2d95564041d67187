from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from utils.logger import app_logger


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an asynchronous engine for the given connection string.

    'pool_pre_ping=True' checks the health of connections before using them.
    """
    return create_async_engine(
        database_url,
        echo=echo,  # Set to True to see generated SQL statements
        pool_pre_ping=True,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Create a factory for asynchronous database sessions.

    'expire_on_commit=False' matters for async code: objects handed back to
    callers after a commit must stay readable without another round trip.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """
    Create all tables that do not exist yet.

    Production deployments should manage the schema with migrations instead.
    """
    # Imported here so every model is registered on the metadata first.
    from models import account, rental, service, transaction  # noqa: F401
    from models.base import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    app_logger.info("Database schema is up to date.")
