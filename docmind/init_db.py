import asyncio
import logging

from sqlalchemy.ext.asyncio import create_async_engine
from docmind.database import Base
from docmind.config import DATABASE_URL
import docmind.models  # noqa: F401 (registers tables with Base.metadata)

logger = logging.getLogger(__name__)


async def init_db():
    engine = create_async_engine(DATABASE_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()
    logger.info("Database tables created: %s", ", ".join(sorted(Base.metadata.tables)))


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - [INIT-DB] - %(levelname)s - %(message)s")
    asyncio.run(init_db())
