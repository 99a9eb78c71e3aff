"""
Single async engine and session factory for docmind.

The API (get_db) and the queue worker share the same connection pool. One session
= one connection from the pool; sessions are closed after each request/item so
connections return to the pool.
"""
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from docmind.config import DATABASE_URL

# Connection timeout (seconds) so a dead DB does not hang requests
_connect_args = {"timeout": 15} if "asyncpg" in DATABASE_URL else {}
engine = create_async_engine(
    DATABASE_URL,
    echo=False,
    connect_args=_connect_args,
    pool_size=5,
    max_overflow=5,
    pool_pre_ping=True,
    pool_recycle=300,
)
AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()


async def get_db():
    async with AsyncSessionLocal() as session:
        yield session
