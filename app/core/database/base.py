"""
SQLAlchemy declarative base and common model utilities.

Every table (users, organizations, permission layers, audit logs) inherits from Base.
"""
from datetime import datetime
from sqlalchemy import DateTime, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
import ulid


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return str(ulid.new())


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy models.

    Usage:
        from app.core.database.base import Base

        class PlanPermissionPreset(Base):
            __tablename__ = "plan_permission_presets"

            id: Mapped[str] = mapped_column(String(26), primary_key=True)
            plan_name: Mapped[str] = mapped_column(String(50))
    """
    pass


class TimestampMixin:
    """
    Mixin adding server-side created_at and updated_at columns.

    Both are filled by the database, so freshly flushed or updated rows must be
    refreshed before their timestamps are read in async code.
    """
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
