"""
Base model class for all SQLAlchemy models.

WHY: Centralizing common model functionality (timestamps, ID) in a base class
keeps the audit tables consistent and lets Alembic discover them through a
single metadata object.
"""

from datetime import datetime
from sqlalchemy import Column, Integer, DateTime
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class CreatedAtMixin:
    """
    Mixin adding a creation timestamp.

    WHY: Billing audit rows are append-only, so there is no updated_at to
    maintain. Timestamps are stored as naive UTC.
    """

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)


class PrimaryKeyMixin:
    """Mixin to add an auto-incrementing integer primary key."""

    id = Column(Integer, primary_key=True, index=True)
