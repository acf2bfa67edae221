from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine
from sqlalchemy.orm import sessionmaker
from .config import settings

DATABASE_URL = settings.database_url

connect_args = {}
if DATABASE_URL.startswith("sqlite"):
    # let concurrent writers wait on the file lock instead of failing fast
    connect_args["timeout"] = 30

# async engine
engine: AsyncEngine = create_async_engine(
    DATABASE_URL,
    echo=False,
    future=True,
    connect_args=connect_args,
)

async_session = sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)

async def get_session():
    async with async_session() as session:
        yield session

# helper to create tables (call at startup)
async def init_db():
    from . import models  # noqa: F401  registers tables on SQLModel.metadata

    async with engine.begin() as conn:
        # if you prefer migrations, run alembic instead
        await conn.run_sync(SQLModel.metadata.create_all)
