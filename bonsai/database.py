from sqlmodel import SQLModel
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker

from bonsai.core.config import settings
from bonsai.models import story  # noqa: F401  registers the tables

# Create an async engine
async_engine = create_async_engine(settings.DATABASE_URL, echo=False, future=True)

async def init_db():
    """
    Initializes the database and creates tables.
    """
    async with async_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

# Create a configured "Session" class
AsyncSessionLocal = sessionmaker(
    bind=async_engine, class_=AsyncSession, expire_on_commit=False
)

async def get_session() -> AsyncSession:
    """
    Dependency to get an async database session.
    """
    async with AsyncSessionLocal() as session:
        yield session
