from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from contentgen.config import Settings


class Base(DeclarativeBase):
  pass


def normalize_database_url(dsn: str) -> str:
  """Map plain Postgres DSNs onto the asyncpg driver."""
  if dsn.startswith("postgresql://"):
    return dsn.replace("postgresql://", "postgresql+asyncpg://", 1)
  if dsn.startswith("postgres://"):
    return dsn.replace("postgres://", "postgresql+asyncpg://", 1)
  return dsn


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
  if not settings.pg_dsn:
    raise RuntimeError("Database connection is not configured (CONTENTGEN_PG_DSN is missing).")
  url = normalize_database_url(settings.pg_dsn)
  connect_args: dict[str, object] = {}
  if url.startswith("postgresql+asyncpg://"):
    connect_args["timeout"] = settings.pg_connect_timeout
  return create_async_engine(url, echo=settings.debug, pool_pre_ping=True, connect_args=connect_args)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
  return async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)


async def create_schema(engine: AsyncEngine) -> None:
  """Create engine tables that do not exist yet."""
  # Import models so they register on Base.metadata.
  from contentgen.schema import jobs  # noqa: F401

  async with engine.begin() as conn:
    await conn.run_sync(Base.metadata.create_all)
