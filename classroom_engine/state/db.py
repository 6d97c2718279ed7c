from __future__ import annotations

from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine


class DB:
    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self.url = f"sqlite+aiosqlite:///{self.db_path}"
        self._engine: AsyncEngine | None = None
        self._maker: async_sessionmaker[AsyncSession] | None = None

    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(self.url)
        return self._engine

    def sessionmaker(self) -> async_sessionmaker[AsyncSession]:
        if self._maker is None:
            self._maker = async_sessionmaker(self.engine(), expire_on_commit=False)
        return self._maker

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._maker = None


def make_db(db_path: Path | str) -> DB:
    return DB(db_path)
