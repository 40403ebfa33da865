"""Database package"""

from practice_billing.db.session import AsyncSessionLocal, engine
from practice_billing.models.base import Base

__all__ = ["Base", "AsyncSessionLocal", "engine"]
