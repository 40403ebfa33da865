"""
Database session management.

WHY: The audit trail is the only relational data this service owns. Audit
entries are written through short-lived sessions from AsyncSessionLocal so
each entry commits on its own, independent of whatever the request does.
"""

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from practice_billing.core.config import settings


# WHY: pool_pre_ping recycles stale connections between webhook bursts.
engine = create_async_engine(
    settings.async_database_url,
    echo=settings.DEBUG,
    pool_pre_ping=True,
    pool_size=5,
    max_overflow=10,
)

# expire_on_commit=False keeps returned audit rows readable after commit.
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)
