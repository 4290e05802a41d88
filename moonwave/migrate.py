import asyncio

from sqlalchemy.ext.asyncio import AsyncEngine

from moonwave.config import load_config
from moonwave.db import make_engine
from moonwave.models import Base

async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

async def main():
    engine = make_engine(load_config())
    try:
        await create_tables(engine)
    finally:
        await engine.dispose()

if __name__ == "__main__":
    asyncio.run(main())
