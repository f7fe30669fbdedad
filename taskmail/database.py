import logging
from typing import Any, Dict, Optional, cast

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from taskmail.config import get_settings
from taskmail.logging import setup_query_logging
from taskmail.models import Base

logger = logging.getLogger("taskmail.database")

# ---------------------------------------------------------------------------
# Engine state (set up by init_db_async, torn down by shutdown_db_async)
# ---------------------------------------------------------------------------

async_engine: Optional[AsyncEngine] = None
AsyncSessionLocal: Optional[async_sessionmaker] = None
_CURRENT_DB_URL: Optional[str] = None


def _detect_driver(url: str) -> str:
    try:
        return make_url(url).drivername
    except Exception:
        return url.split(":", 1)[0]


def _is_memory_sqlite(url: str) -> bool:
    try:
        parsed = make_url(url)
    except Exception:
        return False
    return parsed.drivername.startswith("sqlite") and parsed.database in (None, "", ":memory:")


def make_engine(url: str) -> AsyncEngine:
    """Build an async engine with pooling options suited to the driver."""
    url = (url or "").strip()
    if not url:
        raise RuntimeError("DATABASE_URL is required")

    driver = _detect_driver(url)
    engine_kwargs: Dict[str, Any] = {
        "echo": False,
        "future": True,
        "pool_pre_ping": True,
    }
    if driver.startswith("postgresql+"):
        engine_kwargs["pool_size"] = 10
        engine_kwargs["max_overflow"] = 5

    # In-memory SQLite lives inside one connection; share it across sessions.
    if _is_memory_sqlite(url):
        engine_kwargs["poolclass"] = StaticPool
        engine_kwargs["pool_pre_ping"] = False

    engine = create_async_engine(url, **engine_kwargs)
    setup_query_logging(engine)
    return engine


def make_sessionmaker(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(bind=engine, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ---------------------------------------------------------------------------
# Utilities
# ---------------------------------------------------------------------------

def get_database_dsn(hide_password: bool = True) -> str:
    """Return the configured DB DSN string."""
    url_str = _CURRENT_DB_URL or ""
    try:
        url = make_url(cast(str, url_str))
        return url.render_as_string(hide_password=hide_password)
    except Exception:
        return url_str


async def init_db_async(url: Optional[str] = None) -> async_sessionmaker:
    """Create the engine, make sure tables exist and return the session factory."""
    global async_engine, AsyncSessionLocal, _CURRENT_DB_URL

    url = url or get_settings().database_url
    try:
        async_engine = make_engine(url)
        _CURRENT_DB_URL = url
        await create_schema(async_engine)
        AsyncSessionLocal = make_sessionmaker(async_engine)
        logger.info("Database initialized successfully.")
        return AsyncSessionLocal
    except Exception as e:
        logger.critical("Database initialization failed: %s", e)
        raise RuntimeError("Failed to initialize database") from e


async def shutdown_db_async() -> None:
    """Dispose the async engine cleanly."""
    global async_engine, AsyncSessionLocal
    if async_engine is None:
        return
    try:
        await async_engine.dispose()
        logger.info("Database connection pool closed.")
    except Exception as e:
        logger.error("Error shutting down database engine: %s", e)
        raise
    finally:
        async_engine = None
        AsyncSessionLocal = None
