from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from shipyard.config import get_settings

settings = get_settings()

engine = create_async_engine(settings.database_url, echo=settings.sql_echo)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


def configure_sqlite(async_engine) -> None:
    """
    Tune SQLite connections for one writer and many pollers.

    WAL lets the log feed read while the executor commits log chunks, and the
    busy timeout makes a second writer wait instead of failing outright.
    """
    if async_engine.dialect.name != "sqlite":
        return

    @event.listens_for(async_engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        if ":memory:" not in str(async_engine.url):
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()


configure_sqlite(engine)


async def get_db():
    async with async_session() as session:
        yield session


async def init_db(target_engine=None):
    # Import models so their tables are registered on Base.metadata
    import shipyard.models  # noqa: F401

    async with (target_engine or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
